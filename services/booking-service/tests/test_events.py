import pytest

from app import events


@pytest.mark.anyio
async def test_notify_addresses_the_user(published):
    await events.notify("booking.confirmed", "guest-1", "Your booking #abcd1234 has been confirmed.", booking_id="b-1")

    assert published == [
        (
            "booking.confirmed",
            {"user_id": "guest-1", "message": "Your booking #abcd1234 has been confirmed.", "booking_id": "b-1"},
        )
    ]


@pytest.mark.anyio
async def test_publish_is_best_effort_when_rabbitmq_is_down(monkeypatch):
    monkeypatch.setattr(events, "EVENTS_STRICT", False)

    async def _boom(*args, **kwargs):
        raise RuntimeError("rabbitmq down")

    monkeypatch.setattr(events.aio_pika, "connect_robust", _boom)

    await events.notify("booking.held", "guest-1", "Items added to your booking.")


@pytest.mark.anyio
async def test_strict_mode_surfaces_publish_failures(monkeypatch):
    monkeypatch.setattr(events, "EVENTS_STRICT", True)

    async def _boom(*args, **kwargs):
        raise RuntimeError("rabbitmq down")

    monkeypatch.setattr(events.aio_pika, "connect_robust", _boom)

    with pytest.raises(RuntimeError):
        await events.publish("booking.held", {"user_id": "guest-1"})

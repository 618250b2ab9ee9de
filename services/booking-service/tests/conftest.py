import sys
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Ensure `services/booking-service` is on sys.path so `import app` works when
# running tests from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import events  # noqa: E402
from app.db import ensure_schema, session  # noqa: E402
from app.models import Hotel, RoomType  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    # One shared in-memory connection so TestClient threads see the same DB.
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    ensure_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def published(monkeypatch):
    """Capture events instead of talking to RabbitMQ."""
    sent: list[tuple[str, dict]] = []

    async def _publish(routing_key, payload):
        sent.append((routing_key, payload))

    monkeypatch.setattr(events, "publish", _publish)
    return sent


def make_room_type(engine, total_rooms=5, price_per_night=100_00, owner_id="owner-1") -> RoomType:
    now = datetime.now(tz=timezone.utc)
    hotel = Hotel(id=str(uuid4()), name="Seaside", owner_id=owner_id, created_at=now)
    rt = RoomType(
        id=str(uuid4()),
        hotel_id=hotel.id,
        name="Double",
        price_per_night=price_per_night,
        total_rooms=total_rooms,
        created_at=now,
    )
    with session(engine) as s:
        s.add(hotel)
        s.add(rt)
        s.commit()
    return rt


def principal(sub: str, role: str = "user") -> dict:
    return {"sub": sub, "role": role}


def auth_headers(sub: str, role: str = "user") -> dict[str, str]:
    token = jwt.encode({"sub": sub, "role": role}, "dev-secret-change-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="nima-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/unused.db"
os.environ["LOG_DIR"] = os.path.join(_TMP, "logs")
os.environ["MEDIA_DIR"] = os.path.join(_TMP, "media")
os.environ["PAYMENT_API_KEY"] = ""
os.environ["PAYMENT_WEBHOOK_SECRET"] = ""

import uuid  # noqa: E402
from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from nima.core import config, database  # noqa: E402
from nima.models.base import generate_public_id, new_id, utcnow  # noqa: E402
from nima.models.item import Item  # noqa: E402
from nima.models.look import Look  # noqa: E402
from nima.models.user import User  # noqa: E402
from nima.services import image_service, notification_service  # noqa: E402
from nima.services.image_service import ImageProvider  # noqa: E402
from nima.core.errors import ProviderFailure  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    eng = database.make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def media_dir(tmp_path, monkeypatch):
    path = tmp_path / "media"
    path.mkdir()
    monkeypatch.setattr(config, "MEDIA_DIR", path)
    return path


@pytest.fixture
def notifications(monkeypatch):
    sent = []

    async def record(user_id, kind, payload):
        sent.append((user_id, kind, payload))

    monkeypatch.setattr(notification_service, "send_notification", record)
    return sent


class FakeImageProvider(ImageProvider):
    name = "fake-provider"

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def generate(self, user_photo_ref, item_refs):
        self.calls.append((user_photo_ref, item_refs))
        if self.error:
            raise ProviderFailure(self.error)
        return b"\x89PNG fake image"


@pytest.fixture
def provider(monkeypatch):
    fake = FakeImageProvider()
    monkeypatch.setattr(image_service, "_provider", fake)
    return fake


@pytest.fixture
def make_user(session_factory):
    async def _make(**kw):
        values = {
            "id": new_id(),
            "email": f"{uuid.uuid4().hex[:8]}@example.com",
            "password_hash": "x",
            "name": "Wanjiru",
            "primary_photo_url": "https://cdn.example.com/me.jpg",
            "purchased_credits": 0,
            "free_credits_used_this_week": 0,
            "weekly_credits_reset_at": utcnow(),
            "credit_version": 0,
        }
        values.update(kw)
        async with session_factory() as s:
            user = User(**values)
            s.add(user)
            await s.commit()
        return user
    return _make


@pytest.fixture
def make_item(session_factory):
    async def _make(**kw):
        values = {
            "id": new_id(),
            "name": "Linen Shirt",
            "brand": "Kiko",
            "price": 2500,
            "currency": "KES",
            "tags": ["casual"],
            "colors": ["white"],
            "image_url": "https://cdn.example.com/item.jpg",
            "is_active": True,
        }
        values.update(kw)
        async with session_factory() as s:
            item = Item(**values)
            s.add(item)
            await s.commit()
        return item
    return _make


@pytest.fixture
def make_look(session_factory):
    async def _make(creator_user_id, **kw):
        values = {
            "id": new_id(),
            "public_id": generate_public_id("look"),
            "item_ids": ["a", "b"],
            "total_price": 5000,
            "currency": "KES",
            "name": "Weekend Look",
            "style_tags": ["casual"],
            "generation_status": "completed",
            "generation_attempt": 1,
            "curation_status": "pending",
            "created_by": "user",
            "creator_user_id": creator_user_id,
            "creation_source": "apparel",
            "is_public": False,
            "shared_with_friends": False,
            "is_active": True,
        }
        values.update(kw)
        async with session_factory() as s:
            look = Look(**values)
            s.add(look)
            await s.commit()
        return look
    return _make


def hours_ago(hours):
    return utcnow() - timedelta(hours=hours)


def as_user(user):
    return {"id": user.id, "email": user.email, "name": user.name}

"""Shared fixtures: in-memory database, bot runtime and fake Telegram objects."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import vpnshop.models  # noqa: F401  (register tables)
from vpnshop.core.rate_limiter import RateLimitedDispatcher
from vpnshop.db.base import Base
from vpnshop.db.init_db import seed_products
from vpnshop.flows.broadcast import BroadcastCoordinator
from vpnshop.services.vpn_provider import MockVPNProvider
from vpnshop.telegram.utils import RUNTIME_KEY, BotRuntime

ADMIN_ID = 555
SUPPORT_GROUP_ID = -1001234567890


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = factory()
    seed_products(db)
    db.close()
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def runtime(session_factory):
    return BotRuntime(
        session_factory=session_factory,
        provider=MockVPNProvider(),
        admin_ids={ADMIN_ID},
        support_group_id=SUPPORT_GROUP_ID,
        coordinator=BroadcastCoordinator(lambda: RateLimitedDispatcher(interval_ms=0), progress_every=100),
    )


def make_bot():
    bot = AsyncMock()
    bot.send_message.return_value = SimpleNamespace(message_id=42)
    bot.send_photo.return_value = SimpleNamespace(message_id=43)
    return bot


def make_context(runtime, args=None):
    return SimpleNamespace(bot=make_bot(), bot_data={RUNTIME_KEY: runtime}, args=args or [])


def make_message(chat_id, text=None, reply_to=None, photo=None, caption=None):
    return SimpleNamespace(
        chat_id=chat_id,
        message_id=1,
        text=text,
        caption=caption,
        photo=photo,
        document=None,
        video=None,
        reply_to_message=reply_to,
        forward_origin=None,
        from_user=None,
        reply_text=AsyncMock(),
    )


def make_update(user_id, text=None, chat_id=None, chat_type="private", callback=False, username="tester", **kwargs):
    chat_id = chat_id if chat_id is not None else user_id
    message = make_message(chat_id, text=text, **kwargs)
    query = None
    if callback:
        query = MagicMock()
        query.answer = AsyncMock()
        query.edit_message_text = AsyncMock()
        query.message = message
    return SimpleNamespace(
        effective_user=SimpleNamespace(id=user_id, username=username),
        effective_chat=SimpleNamespace(id=chat_id, type=chat_type),
        effective_message=message,
        callback_query=query,
    )

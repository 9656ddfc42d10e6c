"""Shared fixtures: in-memory database, users, chat sessions and fake LLM streams."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ORDISCAN_API_KEY", "test-ordiscan-key")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bitx import models  # noqa: F401 registers tables
from bitx.database import Base
from bitx.models import User, Wallet
from bitx.session import ChatSession

ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    """Session factory bound to the test engine, patched in wherever code opens its own sessions."""
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    with patch("bitx.database.async_session_factory", factory), \
            patch("bitx.scheduler.async_session_factory", factory):
        yield factory


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(db):
    from bitx.queries import db_get_user_by_privy_id
    u = User(privy_id="did:privy:alice", free_messages_remaining=10)
    db.add(u)
    await db.commit()
    db.add(Wallet(owner_id=u.id, public_key=ADDRESS, name="Default", provider="unisat"))
    await db.commit()
    db.expunge_all()
    return await db_get_user_by_privy_id(db, "did:privy:alice")


@pytest.fixture
def chat_session():
    return ChatSession(user_id=1, conversation_id="conv-1", public_key=ADDRESS)


# ── Fake streaming completions ────────────────────────────────

def chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)],
        usage=usage,
    )


def usage_chunk(prompt_tokens, completion_tokens):
    return SimpleNamespace(
        choices=[],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def tool_call_delta(index, call_id, name, arguments):
    return SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


async def fake_stream(chunks):
    for c in chunks:
        yield c


def text_step(text, prompt_tokens=10, completion_tokens=5):
    return fake_stream([
        chunk(content=text),
        chunk(finish_reason="stop"),
        usage_chunk(prompt_tokens, completion_tokens),
    ])


def tool_step(*calls, prompt_tokens=10, completion_tokens=5):
    """One step that calls tools; ``calls`` are (call_id, name, arguments_json)."""
    deltas = [tool_call_delta(i, cid, name, args) for i, (cid, name, args) in enumerate(calls)]
    return fake_stream([
        chunk(tool_calls=deltas),
        chunk(finish_reason="tool_calls"),
        usage_chunk(prompt_tokens, completion_tokens),
    ])

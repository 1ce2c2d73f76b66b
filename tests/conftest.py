"""
Pytest configuration and shared fixtures
"""
import pytest
import pytest_asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bi_assistant.models import Base, AuthorizedNumber, Connection, MessagingInstance
from bi_assistant.powerbi import QueryResult

# In-memory store shared by every connection of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite://"

# 09:00 in America/Sao_Paulo
MORNING_UTC = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


class FakeModel:
    """Scripted stand-in for ModelClient.complete"""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system, messages, tools=None, max_tokens=1000):
        self.calls.append({"system": system, "messages": list(messages), "tools": tools})
        if not self.replies:
            raise AssertionError("FakeModel ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


class FakeExecutor:
    """Stand-in for PowerBIExecutor that returns canned results per query"""

    def __init__(self, result: Optional[QueryResult] = None, by_query: Optional[Dict[str, Any]] = None):
        self.result = result or QueryResult(success=True, rows=[])
        self.by_query = by_query or {}
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, session, connection_id, dataset_id, query):
        self.calls.append({"connection_id": connection_id, "dataset_id": dataset_id, "query": query})
        outcome = self.by_query.get(query, self.result)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeGateway:
    """Records sends instead of calling the messaging API"""

    def __init__(self, text_ok: bool = True, audio_ok: bool = True, audio_bytes: Optional[bytes] = b"\x00" * 512):
        self.text_ok = text_ok
        self.audio_ok = audio_ok
        self.audio_bytes = audio_bytes
        self.texts: List[Dict[str, str]] = []
        self.audios: List[Dict[str, str]] = []
        self.typing: List[str] = []

    async def send_text(self, instance, phone, text):
        self.texts.append({"instance": instance.instance_name, "phone": phone, "text": text})
        return self.text_ok

    async def send_audio(self, instance, phone, audio_base64):
        self.audios.append({"instance": instance.instance_name, "phone": phone, "audio": audio_base64})
        return self.audio_ok

    async def send_typing(self, instance, phone):
        self.typing.append(phone)

    async def download_audio(self, instance, message):
        return self.audio_bytes


class FakeSpeech:
    def __init__(self, audio: Optional[str] = "YXVkaW8=", transcript: Optional[str] = None):
        self.audio = audio
        self.transcript = transcript
        self.synthesized: List[str] = []

    async def synthesize(self, text):
        self.synthesized.append(text)
        return self.audio

    async def transcribe(self, audio):
        return self.transcript


@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        await session.rollback()
        await session.close()


@pytest_asyncio.fixture
async def seeded(db_session):
    """One tenant with a connected instance, a Power BI connection and an authorized number"""
    instance = MessagingInstance(
        id="inst-1",
        tenant_id="t1",
        instance_name="empresa",
        api_url="https://evo.test",
        api_key="evo-key",
        is_connected=True,
    )
    connection = Connection(
        id="conn-1",
        tenant_id="t1",
        directory_tenant_id="dir-1",
        client_id="client-1",
        client_secret="secret-1",
        workspace_id="ws-1",
    )
    number = AuthorizedNumber(
        id="num-1",
        tenant_id="t1",
        phone_number="5511999990001",
        name="Maria Souza",
        instance_id="inst-1",
        connection_id="conn-1",
        dataset_id="ds-1",
        is_active=True,
    )
    db_session.add_all([instance, connection, number])
    await db_session.commit()
    return {"instance": instance, "connection": connection, "number": number}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def speech():
    return FakeSpeech()

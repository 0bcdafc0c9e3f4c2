"""Pytest configuration and fixtures."""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable, Optional

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_podlearn.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["TRANSCRIPTION_API_KEY"] = "test-stt-key"
os.environ["LLM_API_KEY"] = "test-llm-key"

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from podlearn.api.deps import (
    get_llm_client,
    get_stream_session_factory,
    get_transcription_client,
)
from podlearn.clients.llm import ChatMessage
from podlearn.clients.transcription import WordEvent
from podlearn.db.models import (
    Episode,
    Transcript,
    TranscriptChunk,
    TranscriptSpeaker,
    TranscriptStatus,
)
from podlearn.db.session import Base, build_engine, get_db
from podlearn.main import app

TEST_JWT_SECRET = "test-secret"


class FakeTranscriptionClient:
    """Yields a fixed list of words, then optionally fails."""

    model = "nova-3"
    language = "en"

    def __init__(self, words: Optional[list[WordEvent]] = None, error: Optional[Exception] = None):
        self.words = words or []
        self.error = error
        self.calls: list[str] = []

    async def stream(self, audio_url, options=None):
        self.calls.append(audio_url)
        for word in self.words:
            yield word
        if self.error is not None:
            raise self.error


class FakeLLMClient:
    """Answers chat calls through a handler taking (system_prompt, user_prompt)."""

    def __init__(self, handler: Optional[Callable[[str, str], str]] = None):
        self.handler = handler
        self.calls: list[dict] = []

    async def chat(self, messages: list[ChatMessage], max_tokens: int, temperature: float = 0.3, timeout: float = 60.0) -> str:
        system = next((m.content for m in messages if m.role == "system"), "")
        user = next((m.content for m in messages if m.role == "user"), "")
        self.calls.append(
            {"system": system, "user": user, "max_tokens": max_tokens, "temperature": temperature, "timeout": timeout}
        )
        if self.handler is None:
            return ""
        return self.handler(system, user)


def word(text: str, start: float, end: float, speaker: int) -> WordEvent:
    return WordEvent(word=text.lower(), punctuated_word=text, start=start, end=end, speaker_index=speaker)


def make_token(user_id, secret: str = TEST_JWT_SECRET, expires_in: int = 3600, typ: str = "access") -> str:
    payload = {
        "user_id": user_id,
        "typ": typ,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def parse_sse(body: str) -> list[tuple[str, dict]]:
    """Split an SSE body into (event, data) pairs."""
    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        lines = block.split("\n")
        assert lines[0].startswith("event: ")
        assert lines[1].startswith("data: ")
        events.append((lines[0][len("event: "):], json.loads(lines[1][len("data: "):])))
    return events


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_stt() -> FakeTranscriptionClient:
    return FakeTranscriptionClient()


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest_asyncio.fixture
async def client(session_factory, fake_stt, fake_llm) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client backed by the per-test database and fake upstreams."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stream_session_factory] = lambda: session_factory
    app.dependency_overrides[get_transcription_client] = lambda: fake_stt
    app.dependency_overrides[get_llm_client] = lambda: fake_llm

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    """Auth headers for user 1."""
    return {"Authorization": f"Bearer {make_token(1)}"}


@pytest.fixture
def other_auth_headers() -> dict:
    """Auth headers for user 2."""
    return {"Authorization": f"Bearer {make_token(2)}"}


@pytest_asyncio.fixture
async def episode(db_session: AsyncSession) -> Episode:
    """An episode without a transcript."""
    ep = Episode(audio_url="https://cdn.example.com/ep1.mp3", description="Alice talks to Bob about tide pools.")
    db_session.add(ep)
    await db_session.commit()
    return ep


@pytest_asyncio.fixture
async def complete_transcript(db_session: AsyncSession, episode: Episode) -> Transcript:
    """A complete transcript with two named speakers and four chunks."""
    transcript = Transcript(
        episode_id=episode.id,
        status=TranscriptStatus.COMPLETE,
        completed_at=datetime.now(timezone.utc),
    )
    db_session.add(transcript)
    await db_session.flush()

    db_session.add_all(
        [
            TranscriptSpeaker(transcript_id=transcript.id, speaker_index=0, speaker_name="Alice"),
            TranscriptSpeaker(transcript_id=transcript.id, speaker_index=1, speaker_name="Bob"),
            TranscriptChunk(transcript_id=transcript.id, position=0, speaker_index=0, start_time=0.0, end_time=0.4, text="Welcome,"),
            TranscriptChunk(transcript_id=transcript.id, position=1, speaker_index=0, start_time=0.4, end_time=0.9, text="Bob."),
            TranscriptChunk(transcript_id=transcript.id, position=2, speaker_index=1, start_time=1.0, end_time=1.3, text="Thanks"),
            TranscriptChunk(transcript_id=transcript.id, position=3, speaker_index=1, start_time=1.3, end_time=1.8, text="Alice."),
        ]
    )
    await db_session.commit()
    return transcript

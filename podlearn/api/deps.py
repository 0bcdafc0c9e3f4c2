"""Shared route dependencies for upstream clients and background sessions."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from podlearn.clients.llm import LLMClient
from podlearn.clients.transcription import TranscriptionClient
from podlearn.config import get_settings
from podlearn.db.session import get_session_factory


def get_transcription_client() -> TranscriptionClient:
    return TranscriptionClient.from_settings(get_settings())


def get_llm_client() -> LLMClient:
    return LLMClient.from_settings(get_settings())


def get_stream_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for work that continues after the response has started."""
    return get_session_factory()

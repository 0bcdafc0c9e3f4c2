"""Persistence for transcripts, their chunks and speakers."""

import logging
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from podlearn.core.errors import DatabaseError, database_errors
from podlearn.db.models import (
    Episode,
    Transcript,
    TranscriptChunk,
    TranscriptSpeaker,
    TranscriptStatus,
    utcnow,
)
from podlearn.schemas.schemas import ChunkEvent

logger = logging.getLogger(__name__)

CHUNK_BATCH_SIZE = 500
SPEAKER_UPSERT_ATTEMPTS = 3
SPEAKER_UPSERT_BACKOFF = 0.1


def dialect_insert(db: AsyncSession, table):
    """INSERT construct supporting ON CONFLICT for the session's backend."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise DatabaseError(f"unsupported database dialect: {name}")


class TranscriptStore:
    """Data access for the transcript pipeline."""

    async def get_episode(self, db: AsyncSession, episode_id: int) -> Optional[Episode]:
        with database_errors("get episode"):
            return await db.get(Episode, episode_id)

    async def get_transcript_by_episode(
        self, db: AsyncSession, episode_id: int
    ) -> Optional[Transcript]:
        """
        Get the transcript for an episode.

        Returns:
            Transcript, or None when the episode has never been transcribed
        """
        with database_errors("get transcript"):
            result = await db.execute(
                select(Transcript).where(Transcript.episode_id == episode_id)
            )
            return result.scalar_one_or_none()

    async def create_transcript(self, db: AsyncSession, episode_id: int) -> int:
        """
        Create the episode's transcript, or restart an existing one.

        An existing row is reset to ``processing`` and keeps its id.

        Returns:
            Transcript id
        """
        now = utcnow()
        stmt = dialect_insert(db, Transcript).values(
            episode_id=episode_id,
            status=TranscriptStatus.PROCESSING,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Transcript.episode_id],
            set_={
                "status": TranscriptStatus.PROCESSING.value,
                "error_message": None,
                "completed_at": None,
                "created_at": now,
            },
        ).returning(Transcript.id)

        with database_errors("create transcript"):
            result = await db.execute(stmt)
            return result.scalar_one()

    async def update_transcript_status(
        self,
        db: AsyncSession,
        transcript_id: int,
        status: TranscriptStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """Update transcript status, stamping completion or recording the failure."""
        update_data = {"status": status}

        if status == TranscriptStatus.COMPLETE:
            update_data["completed_at"] = utcnow()
            update_data["error_message"] = None
        elif status == TranscriptStatus.FAILED and error_message:
            update_data["error_message"] = error_message

        with database_errors("update transcript status"):
            await db.execute(
                update(Transcript).where(Transcript.id == transcript_id).values(**update_data)
            )

    async def save_chunks(
        self,
        db: AsyncSession,
        transcript_id: int,
        chunks: list[ChunkEvent],
        batch_size: int = CHUNK_BATCH_SIZE,
    ) -> None:
        """
        Insert chunks in multi-row batches, ignoring positions already stored.

        Args:
            db: Database session
            transcript_id: Owning transcript
            chunks: Chunks in position order
            batch_size: Maximum rows per INSERT statement
        """
        if not chunks:
            return

        for offset in range(0, len(chunks), batch_size):
            batch = chunks[offset : offset + batch_size]
            rows = [
                {
                    "transcript_id": transcript_id,
                    "position": c.position,
                    "speaker_index": c.speaker_index,
                    "start_time": c.start,
                    "end_time": c.end,
                    "text": c.text,
                }
                for c in batch
            ]
            stmt = dialect_insert(db, TranscriptChunk).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["transcript_id", "position"])
            with database_errors("save chunks"):
                await db.execute(stmt)

        logger.debug(
            f"Saved {len(chunks)} chunks for transcript {transcript_id} "
            f"in {(len(chunks) + batch_size - 1) // batch_size} batch(es)"
        )

    async def get_chunks(self, db: AsyncSession, transcript_id: int) -> list[TranscriptChunk]:
        with database_errors("get chunks"):
            result = await db.execute(
                select(TranscriptChunk)
                .where(TranscriptChunk.transcript_id == transcript_id)
                .order_by(TranscriptChunk.position)
            )
            return list(result.scalars().all())

    async def get_transcript_text(self, db: AsyncSession, transcript_id: int) -> str:
        """Chunk texts joined by single spaces, in position order."""
        with database_errors("get transcript text"):
            result = await db.execute(
                select(TranscriptChunk.text)
                .where(TranscriptChunk.transcript_id == transcript_id)
                .order_by(TranscriptChunk.position)
            )
            return " ".join(result.scalars().all())

    async def upsert_speaker(
        self,
        db: AsyncSession,
        transcript_id: int,
        speaker_index: int,
        speaker_name: str,
    ) -> None:
        """Insert or rename a speaker. Last writer wins."""
        now = utcnow()
        stmt = dialect_insert(db, TranscriptSpeaker).values(
            transcript_id=transcript_id,
            speaker_index=speaker_index,
            speaker_name=speaker_name,
            inferred_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["transcript_id", "speaker_index"],
            set_={"speaker_name": speaker_name, "inferred_at": now},
        )
        with database_errors("upsert speaker"):
            await db.execute(stmt)

    async def upsert_speaker_with_retry(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transcript_id: int,
        speaker_index: int,
        speaker_name: str,
        attempts: int = SPEAKER_UPSERT_ATTEMPTS,
        backoff: float = SPEAKER_UPSERT_BACKOFF,
    ) -> None:
        """
        Upsert a speaker in its own transaction, retrying with linear backoff.

        Raises:
            DatabaseError: If every attempt failed
        """

        def log_failed_attempt(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Speaker upsert attempt {retry_state.attempt_number}/{attempts} failed for "
                f"transcript {transcript_id} speaker {speaker_index}: "
                f"{retry_state.outcome.exception()}"
            )

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_incrementing(start=backoff, increment=backoff),
                retry=retry_if_exception_type((DatabaseError, SQLAlchemyError)),
                before_sleep=log_failed_attempt,
                reraise=True,
            ):
                with attempt:
                    async with session_factory.begin() as db:
                        await self.upsert_speaker(db, transcript_id, speaker_index, speaker_name)
        except DatabaseError as e:
            logger.error(f"Giving up on speaker {speaker_index} of transcript {transcript_id}: {e}")
            raise
        except SQLAlchemyError as e:
            # Commit failures surface raw from the session context manager
            logger.error(f"Giving up on speaker {speaker_index} of transcript {transcript_id}: {e}")
            raise DatabaseError("upsert speaker failed") from e

    async def get_speakers(
        self, db: AsyncSession, transcript_id: int
    ) -> list[TranscriptSpeaker]:
        with database_errors("get speakers"):
            result = await db.execute(
                select(TranscriptSpeaker)
                .where(TranscriptSpeaker.transcript_id == transcript_id)
                .order_by(TranscriptSpeaker.speaker_index)
            )
            return list(result.scalars().all())


def chunks_to_events(chunks: Iterable[TranscriptChunk]) -> list[ChunkEvent]:
    return [
        ChunkEvent(
            position=c.position,
            speaker_index=c.speaker_index,
            start=c.start_time,
            end=c.end_time,
            text=c.text,
        )
        for c in chunks
    ]


# Singleton instance
transcript_store = TranscriptStore()

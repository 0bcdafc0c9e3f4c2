"""Transcript ingestion, replay and speaker naming."""

import asyncio
import logging
from contextlib import aclosing
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from podlearn.clients.llm import CLASSIFY_TEMPERATURE, ChatMessage, LLMClient
from podlearn.clients.transcription import StreamOptions, TranscriptionClient
from podlearn.core.errors import AppError, NotFoundError
from podlearn.db.models import TranscriptStatus
from podlearn.schemas.schemas import ChunkEvent
from podlearn.services import prompts
from podlearn.services.sse import SSEEmitter, StreamClosedError
from podlearn.services.transcript_store import chunks_to_events, transcript_store

logger = logging.getLogger(__name__)

# Speaker naming
CONTEXT_WORDS_BEFORE = 30
CONTEXT_WORDS_AFTER = 30
MAX_SEGMENTS_PER_SPEAKER = 3
MAX_PROMPT_WORDS = 200
SPEAKER_NAME_MAX_TOKENS = 50
SPEAKER_NAME_TIMEOUT = 30.0
# Width of the speaker_name column
MAX_SPEAKER_NAME_LENGTH = 255

# Cached replay pacing
REPLAY_BATCH_SIZE = 5
REPLAY_BATCH_DELAY = 0.02


def provisional_name(speaker_index: int) -> str:
    return f"Speaker {speaker_index}"


class StreamPlan(BaseModel):
    """What an opened stream will do: replay a stored transcript or ingest a new one."""

    mode: str
    episode_id: int
    transcript_id: int
    audio_url: str = ""
    episode_description: str = ""

    @property
    def is_replay(self) -> bool:
        return self.mode == "replay"


class IngestState:
    """
    Accumulators for one ingest run.

    ``chunks`` grows in STT order, each chunk numbered by its index.
    ``speaker_words`` keeps each speaker's words for naming.
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self.chunks: list[ChunkEvent] = []
        self.speakers_seen: set[int] = set()
        self.speaker_words: dict[int, list[str]] = {}


def build_speaker_contexts(chunks: list[ChunkEvent]) -> dict[int, list[str]]:
    """
    Collect, per speaker, the words around their turns.

    The chunk sequence is split into contiguous same-speaker segments. For up
    to three evenly spaced segments of each speaker, the words just before,
    during and just after the segment are gathered, so that introductions
    made by other speakers are included.
    """
    segments: dict[int, list[tuple[int, int]]] = {}
    current: Optional[int] = None
    start = 0
    for i, chunk in enumerate(chunks):
        if chunk.speaker_index != current:
            if current is not None:
                segments.setdefault(current, []).append((start, i - 1))
            current = chunk.speaker_index
            start = i
    if current is not None:
        segments.setdefault(current, []).append((start, len(chunks) - 1))

    contexts: dict[int, list[str]] = {}
    for speaker, spans in segments.items():
        step = len(spans) // MAX_SEGMENTS_PER_SPEAKER if len(spans) > MAX_SEGMENTS_PER_SPEAKER else 1
        words: list[str] = []
        for n in range(min(len(spans), MAX_SEGMENTS_PER_SPEAKER)):
            first, last = spans[n * step]
            lo = max(0, first - CONTEXT_WORDS_BEFORE)
            hi = min(len(chunks) - 1, last + CONTEXT_WORDS_AFTER)
            words.extend(c.text for c in chunks[lo : hi + 1])
        contexts[speaker] = words
    return contexts


class TranscriptService:
    """Drives transcript streams for clients."""

    def __init__(self):
        # Finalisation tasks outlive the request that started them
        self._background: set[asyncio.Task] = set()

    async def open_stream(self, db: AsyncSession, episode_id: int) -> StreamPlan:
        """
        Decide how to serve a stream and prepare the transcript row.

        Raises:
            NotFoundError: If the episode does not exist
        """
        transcript = await transcript_store.get_transcript_by_episode(db, episode_id)
        if transcript is not None and transcript.status == TranscriptStatus.COMPLETE:
            logger.info(f"Replaying stored transcript {transcript.id} for episode {episode_id}")
            return StreamPlan(mode="replay", episode_id=episode_id, transcript_id=transcript.id)

        episode = await transcript_store.get_episode(db, episode_id)
        if episode is None:
            raise NotFoundError(f"episode {episode_id} not found")

        transcript_id = await transcript_store.create_transcript(db, episode_id)
        await db.commit()

        logger.info(f"Starting ingest of episode {episode_id} into transcript {transcript_id}")
        return StreamPlan(
            mode="ingest",
            episode_id=episode_id,
            transcript_id=transcript_id,
            audio_url=episode.audio_url,
            episode_description=episode.description or "",
        )

    async def run(
        self,
        plan: StreamPlan,
        emitter: SSEEmitter,
        session_factory: async_sessionmaker[AsyncSession],
        stt: TranscriptionClient,
        llm: LLMClient,
    ) -> None:
        """Produce every event of a stream. Failures end with an ``error`` event."""
        try:
            if plan.is_replay:
                await self.replay(plan, emitter, session_factory)
            else:
                await self.ingest(plan, emitter, session_factory, stt, llm)
        except StreamClosedError:
            logger.info(f"Client left transcript stream for episode {plan.episode_id}")
        except AppError as e:
            logger.error(f"Transcript stream for episode {plan.episode_id} failed: {e.details}")
            await self._send_error(emitter, e.details)

    async def replay(
        self,
        plan: StreamPlan,
        emitter: SSEEmitter,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Send stored speakers, then stored chunks, then ``complete``. Read-only."""
        async with session_factory() as db:
            speakers = await transcript_store.get_speakers(db, plan.transcript_id)
            chunks = chunks_to_events(await transcript_store.get_chunks(db, plan.transcript_id))

        for speaker in speakers:
            await emitter.send_speaker(speaker.speaker_index, speaker.speaker_name)

        for offset in range(0, len(chunks), REPLAY_BATCH_SIZE):
            if offset:
                await asyncio.sleep(REPLAY_BATCH_DELAY)
            for chunk in chunks[offset : offset + REPLAY_BATCH_SIZE]:
                await emitter.send_chunk(chunk)

        await emitter.send_complete()

    async def ingest(
        self,
        plan: StreamPlan,
        emitter: SSEEmitter,
        session_factory: async_sessionmaker[AsyncSession],
        stt: TranscriptionClient,
        llm: LLMClient,
    ) -> None:
        """
        Stream words from the STT provider to the client, then persist.

        The STT read is tied to this task, so a disconnect aborts it and the
        transcript stays ``processing``. Once the provider has finished,
        persistence and speaker naming run in a separate task that a
        disconnect does not cancel.
        """
        state = IngestState()
        options = StreamOptions(model=stt.model, language=stt.language)

        try:
            async with aclosing(stt.stream(plan.audio_url, options)) as words:
                async for word in words:
                    async with state.lock:
                        chunk = ChunkEvent(
                            position=len(state.chunks),
                            speaker_index=word.speaker_index,
                            start=word.start,
                            end=word.end,
                            text=word.punctuated_word,
                        )
                        state.chunks.append(chunk)
                        state.speaker_words.setdefault(word.speaker_index, []).append(word.punctuated_word)
                        if word.speaker_index not in state.speakers_seen:
                            state.speakers_seen.add(word.speaker_index)
                            await emitter.send_speaker(
                                word.speaker_index, provisional_name(word.speaker_index)
                            )
                    await emitter.send_chunk(chunk)
        except AppError as e:
            logger.error(f"Transcription of episode {plan.episode_id} failed: {e.details}")
            await self._mark_failed(session_factory, plan.transcript_id, e.details)
            await self._send_error(emitter, e.details)
            return

        logger.info(
            f"Transcription of episode {plan.episode_id} finished: "
            f"{len(state.chunks)} words, {len(state.speakers_seen)} speakers"
        )

        task = asyncio.create_task(
            self.finalize(plan, state, emitter, session_factory, llm)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        completed = await asyncio.shield(task)
        if completed:
            await emitter.send_complete()

    async def finalize(
        self,
        plan: StreamPlan,
        state: IngestState,
        emitter: SSEEmitter,
        session_factory: async_sessionmaker[AsyncSession],
        llm: LLMClient,
    ) -> bool:
        """
        Persist chunks, name speakers concurrently and complete the transcript.

        Returns:
            True if the transcript reached ``complete``
        """
        try:
            async with session_factory.begin() as db:
                await transcript_store.save_chunks(db, plan.transcript_id, state.chunks)
        except AppError as e:
            logger.error(f"Saving chunks for transcript {plan.transcript_id} failed: {e.details}")
            await self._mark_failed(session_factory, plan.transcript_id, e.details)
            await self._send_error(emitter, e.details)
            return False

        contexts = build_speaker_contexts(state.chunks)
        tasks = [
            asyncio.create_task(
                self._name_speaker(
                    plan,
                    speaker_index,
                    contexts.get(speaker_index, words),
                    emitter,
                    session_factory,
                    llm,
                )
            )
            for speaker_index, words in state.speaker_words.items()
        ]
        if tasks:
            done, _ = await asyncio.wait(tasks)
            for t in done:
                if t.exception() is not None:
                    logger.error(f"Speaker naming task crashed: {t.exception()!r}")

        try:
            async with session_factory.begin() as db:
                await transcript_store.update_transcript_status(
                    db, plan.transcript_id, TranscriptStatus.COMPLETE
                )
        except AppError as e:
            logger.error(f"Completing transcript {plan.transcript_id} failed: {e.details}")
            await self._send_error(emitter, e.details)
            return False

        logger.info(f"Transcript {plan.transcript_id} saved successfully")
        return True

    async def infer_speaker_name(
        self,
        llm: LLMClient,
        episode_description: str,
        speaker_index: int,
        context_words: list[str],
    ) -> str:
        """
        Ask the LLM who a speaker is.

        Returns:
            The first line of the reply, cut to the column width, or the
            provisional name when the model is unsure
        """
        excerpt = " ".join(context_words[:MAX_PROMPT_WORDS])
        reply = await llm.chat(
            [
                ChatMessage(role="system", content=prompts.INFER_SPEAKER_NAME_SYSTEM),
                ChatMessage(
                    role="user",
                    content=prompts.infer_speaker_name_user(
                        episode_description, speaker_index, excerpt
                    ),
                ),
            ],
            max_tokens=SPEAKER_NAME_MAX_TOKENS,
            temperature=CLASSIFY_TEMPERATURE,
            timeout=SPEAKER_NAME_TIMEOUT,
        )
        lines = reply.strip().splitlines()
        name = lines[0].strip().strip('"').strip() if lines else ""
        name = name[:MAX_SPEAKER_NAME_LENGTH].rstrip()
        if not name or name.startswith("Speaker"):
            return provisional_name(speaker_index)
        return name

    async def _name_speaker(
        self,
        plan: StreamPlan,
        speaker_index: int,
        context_words: list[str],
        emitter: SSEEmitter,
        session_factory: async_sessionmaker[AsyncSession],
        llm: LLMClient,
    ) -> None:
        fallback = provisional_name(speaker_index)
        name = fallback
        try:
            name = await self.infer_speaker_name(
                llm, plan.episode_description, speaker_index, context_words
            )
        except AppError as e:
            logger.warning(f"Speaker {speaker_index} name inference failed: {e.details}")

        try:
            await transcript_store.upsert_speaker_with_retry(
                session_factory, plan.transcript_id, speaker_index, name
            )
        except AppError as e:
            logger.error(f"Saving speaker {speaker_index} failed: {e.details}")
            return

        if name == fallback:
            return
        logger.info(f"Speaker {speaker_index} of transcript {plan.transcript_id} is {name}")
        try:
            await emitter.send_speaker(speaker_index, name)
        except StreamClosedError:
            logger.debug(f"Client gone before speaker {speaker_index} refinement")

    async def _mark_failed(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transcript_id: int,
        message: str,
    ) -> None:
        try:
            async with session_factory.begin() as db:
                await transcript_store.update_transcript_status(
                    db, transcript_id, TranscriptStatus.FAILED, message
                )
        except AppError as e:
            logger.error(f"Marking transcript {transcript_id} failed did not persist: {e.details}")

    async def _send_error(self, emitter: SSEEmitter, message: str) -> None:
        try:
            await emitter.send_error(message)
        except StreamClosedError:
            logger.debug("Client gone before error event")


# Singleton instance
transcript_service = TranscriptService()

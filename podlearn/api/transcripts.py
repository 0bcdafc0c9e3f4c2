"""Transcript streaming routes."""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from podlearn.api.deps import (
    get_llm_client,
    get_stream_session_factory,
    get_transcription_client,
)
from podlearn.auth.security import get_current_user_id
from podlearn.clients.llm import LLMClient
from podlearn.clients.transcription import TranscriptionClient
from podlearn.db.session import get_db
from podlearn.middleware.rate_limit import rate_limit_llm
from podlearn.schemas.schemas import error_responses
from podlearn.services.sse import SSEEmitter, stream_events
from podlearn.services.transcript_service import transcript_service

router = APIRouter(
    prefix="/transcripts",
    tags=["Transcripts"],
    responses=error_responses(400, 401, 500),
)


@router.get(
    "/stream/sse",
    summary="Stream an episode transcript",
    description=(
        "Server-sent events carrying speakers and word chunks. Served from storage "
        "when the transcript is complete, otherwise transcribed live."
    ),
    response_class=StreamingResponse,
    responses=error_responses(404),
)
@rate_limit_llm()
async def stream_transcript(
    request: Request,
    episode_id: int = Query(..., ge=1, description="Episode to transcribe"),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_stream_session_factory),
    stt: TranscriptionClient = Depends(get_transcription_client),
    llm: LLMClient = Depends(get_llm_client),
    user_id: int = Depends(get_current_user_id),
):
    """
    Stream a transcript as ``speaker``, ``chunk``, ``error`` and ``complete`` events.

    - **episode_id**: Episode to stream
    """
    # Resolved before the response starts so a missing episode is a plain 404
    plan = await transcript_service.open_stream(db, episode_id)

    emitter = SSEEmitter()
    producer = transcript_service.run(plan, emitter, session_factory, stt, llm)
    return StreamingResponse(
        stream_events(emitter, producer),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )

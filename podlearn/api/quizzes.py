"""Quiz session API routes."""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from podlearn.api.deps import get_llm_client
from podlearn.auth.security import get_current_user_id
from podlearn.clients.llm import LLMClient
from podlearn.db.session import get_db
from podlearn.middleware.rate_limit import rate_limit_llm
from podlearn.schemas.schemas import (
    AnswerResponse,
    QuizSessionDetail,
    SessionResponse,
    StartQuizRequest,
    SubmitAnswerRequest,
    UpdateSessionStatusRequest,
    error_responses,
)
from podlearn.services.quiz_service import quiz_service

router = APIRouter(
    prefix="/quizzes",
    tags=["Quizzes"],
    responses=error_responses(400, 401, 500),
)


@router.get(
    "",
    response_model=list[QuizSessionDetail],
    summary="List quiz sessions",
    description="All quiz sessions of the authenticated user, most recently updated first.",
)
async def list_quiz_sessions(
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """List the caller's quiz sessions with their questions and answers."""
    return await quiz_service.list_sessions(db, user_id)


@router.post(
    "",
    response_model=QuizSessionDetail,
    summary="Start or resume a quiz",
    description=(
        "Return the caller's latest session for the episode, creating it (and the "
        "episode's questions, on first use) when there is none."
    ),
)
@rate_limit_llm()
async def start_quiz(
    request: Request,
    body: StartQuizRequest,
    db: AsyncSession = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
    user_id: int = Depends(get_current_user_id),
):
    """
    Get or create a quiz session.

    - **episode_id**: Episode with a complete transcript
    """
    detail = await quiz_service.get_or_create_session(db, llm, user_id, body.episode_id)
    await db.commit()
    return detail


@router.get(
    "/{session_id}",
    response_model=QuizSessionDetail,
    summary="Get quiz session",
    responses=error_responses(404),
    description="A session with its questions and answers.",
)
async def get_quiz_session(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """Get one of the caller's sessions."""
    return await quiz_service.get_session_detail(db, session_id, user_id)


@router.post(
    "/{session_id}/answers",
    response_model=AnswerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit an answer",
    responses=error_responses(403, 404, 409),
    description=(
        "Grade an answer to one question. Option questions take `selected_option_id`, "
        "open-ended questions take `text_answer`."
    ),
)
async def submit_answer(
    session_id: int,
    body: SubmitAnswerRequest,
    db: AsyncSession = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
    user_id: int = Depends(get_current_user_id),
):
    """
    Submit an answer.

    - **question_id**: Question being answered
    - **selected_option_id**: Chosen option, for multiple choice and true/false
    - **text_answer**: Free text, for open-ended questions
    """
    answer = await quiz_service.submit_answer(db, llm, session_id, user_id, body)
    await db.commit()
    return answer


@router.patch(
    "/{session_id}/status",
    response_model=SessionResponse,
    summary="Finish a quiz session",
    responses=error_responses(403, 404),
    description="Mark a session `completed` or `abandoned`.",
)
async def update_quiz_session_status(
    session_id: int,
    body: UpdateSessionStatusRequest,
    db: AsyncSession = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """Update a session's status."""
    session = await quiz_service.update_session_status(db, session_id, user_id, body.status)
    await db.commit()
    return session

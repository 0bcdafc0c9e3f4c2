"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from podlearn.db.models import QuestionType, SessionStatus


# ============== Transcript Stream Payloads ==============


class ChunkEvent(BaseModel):
    """Payload of an SSE ``chunk`` event."""

    position: int
    speaker_index: int
    start: float
    end: float
    text: str


class SpeakerEvent(BaseModel):
    """Payload of an SSE ``speaker`` event."""

    index: int
    name: str


class ErrorEvent(BaseModel):
    """Payload of an SSE ``error`` event."""

    error: str


# ============== Quiz Schemas ==============


class QuestionOptionResponse(BaseModel):
    """An answer option."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    question_id: int
    option_text: str
    position: int
    is_correct: bool
    created_at: datetime


class QuestionResponse(BaseModel):
    """A quiz question with its options."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    episode_id: int
    question_text: str
    type: QuestionType
    position: int
    created_at: datetime
    updated_at: datetime
    options: list[QuestionOptionResponse] = []


class SessionResponse(BaseModel):
    """A user's quiz session."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    episode_id: int
    status: SessionStatus
    total_questions: int
    answered_questions: int
    correct_answers: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    updated_at: datetime


class AnswerResponse(BaseModel):
    """A graded answer."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    question_id: int
    user_id: int
    selected_option_id: Optional[int] = None
    text_answer: Optional[str] = None
    is_correct: bool
    feedback: str
    answered_at: datetime


class QuizSessionDetail(BaseModel):
    """Session together with the episode's questions and the answers so far."""

    session: SessionResponse
    questions: list[QuestionResponse]
    answers: list[AnswerResponse]


class StartQuizRequest(BaseModel):
    """Request to get or create a quiz session for an episode."""

    episode_id: int = Field(..., ge=1, description="Episode to be quizzed on")


class SubmitAnswerRequest(BaseModel):
    """Answer to one question. Exactly one of option or text must be given."""

    question_id: int = Field(..., ge=1)
    selected_option_id: Optional[int] = Field(
        None, ge=1, description="Chosen option (multiple choice / true-false)"
    )
    text_answer: Optional[str] = Field(
        None, min_length=1, description="Free-text answer (open-ended)"
    )

    @model_validator(mode="after")
    def exactly_one_answer(self) -> "SubmitAnswerRequest":
        if (self.selected_option_id is None) == (self.text_answer is None):
            raise ValueError("exactly one of selected_option_id or text_answer must be provided")
        return self


class UpdateSessionStatusRequest(BaseModel):
    """Terminal status transition requested by the client."""

    status: Literal["completed", "abandoned"]


# ============== LLM Reply Schemas ==============


class GeneratedOption(BaseModel):
    text: str
    is_correct: bool = False


class GeneratedQuestion(BaseModel):
    question_text: str
    type: str
    options: list[GeneratedOption] = []


class GeneratedQuestionSet(BaseModel):
    """Reply expected from the question-generation prompt."""

    questions: list[GeneratedQuestion]


class OpenEndedEvaluation(BaseModel):
    """Reply expected from the open-ended grading prompt."""

    is_correct: bool
    feedback: str = ""


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    transcription: str
    llm: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    message: str
    details: Optional[str] = None


def error_responses(*codes: int) -> dict:
    """OpenAPI ``responses`` entries documenting the error body for each status code."""
    return {code: {"model": ErrorResponse} for code in codes}

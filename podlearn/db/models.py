"""Database models for the podlearn service."""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from podlearn.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class TranscriptStatus(str, enum.Enum):
    """Lifecycle of a transcript."""

    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class QuestionType(str, enum.Enum):
    """Kinds of quiz questions."""

    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    OPEN_ENDED = "open_ended"


class SessionStatus(str, enum.Enum):
    """Status of a user's quiz session."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class Episode(Base):
    """Podcast episode. Owned by the catalogue; read-only here."""

    __tablename__ = "episodes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audio_url: Mapped[str] = mapped_column(Text)
    description: Mapped[str] = mapped_column(Text, default="")


class Transcript(Base):
    """One transcript per episode."""

    __tablename__ = "transcripts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    episode_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("episodes.id", ondelete="CASCADE"), unique=True
    )
    status: Mapped[TranscriptStatus] = mapped_column(
        Enum(TranscriptStatus, name="transcriptstatus", values_callable=_enum_values),
        default=TranscriptStatus.PROCESSING,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    chunks: Mapped[list["TranscriptChunk"]] = relationship(
        "TranscriptChunk",
        back_populates="transcript",
        cascade="all, delete-orphan",
        order_by="TranscriptChunk.position",
    )
    speakers: Mapped[list["TranscriptSpeaker"]] = relationship(
        "TranscriptSpeaker",
        back_populates="transcript",
        cascade="all, delete-orphan",
        order_by="TranscriptSpeaker.speaker_index",
    )


class TranscriptChunk(Base):
    """A single word of a transcript with timing and diarized speaker."""

    __tablename__ = "transcript_chunks"
    __table_args__ = (
        UniqueConstraint("transcript_id", "position", name="uq_transcript_chunks_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transcript_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transcripts.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    speaker_index: Mapped[int] = mapped_column(Integer, default=0)
    start_time: Mapped[float] = mapped_column(Float, default=0.0)
    end_time: Mapped[float] = mapped_column(Float, default=0.0)
    text: Mapped[str] = mapped_column(Text, default="")

    transcript: Mapped["Transcript"] = relationship("Transcript", back_populates="chunks")


class TranscriptSpeaker(Base):
    """Name assigned to a diarized speaker index."""

    __tablename__ = "transcript_speakers"
    __table_args__ = (
        UniqueConstraint("transcript_id", "speaker_index", name="uq_transcript_speakers_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transcript_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transcripts.id", ondelete="CASCADE"), index=True
    )
    speaker_index: Mapped[int] = mapped_column(Integer)
    speaker_name: Mapped[str] = mapped_column(String(255))
    inferred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    transcript: Mapped["Transcript"] = relationship("Transcript", back_populates="speakers")


class Question(Base):
    """A generated quiz question for an episode."""

    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    episode_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("episodes.id", ondelete="CASCADE"), index=True
    )
    question_text: Mapped[str] = mapped_column(Text)
    type: Mapped[QuestionType] = mapped_column(
        Enum(QuestionType, name="questiontype", values_callable=_enum_values)
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    options: Mapped[list["QuestionOption"]] = relationship(
        "QuestionOption",
        back_populates="question",
        cascade="all, delete-orphan",
        order_by="QuestionOption.position",
        lazy="selectin",
    )


class QuestionOption(Base):
    """An answer option for a multiple-choice or true/false question."""

    __tablename__ = "question_options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("questions.id", ondelete="CASCADE"), index=True
    )
    option_text: Mapped[str] = mapped_column(Text)
    position: Mapped[int] = mapped_column(Integer, default=0)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    question: Mapped["Question"] = relationship("Question", back_populates="options")


class UserQuizSession(Base):
    """A user's attempt at an episode's quiz."""

    __tablename__ = "user_quiz_sessions"
    __table_args__ = (
        Index(
            "uq_user_quiz_sessions_active",
            "user_id",
            "episode_id",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    episode_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("episodes.id", ondelete="CASCADE")
    )
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="sessionstatus", values_callable=_enum_values),
        default=SessionStatus.IN_PROGRESS,
    )
    total_questions: Mapped[int] = mapped_column(Integer, default=0)
    answered_questions: Mapped[int] = mapped_column(Integer, default=0)
    correct_answers: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    # Relationships
    answers: Mapped[list["UserAnswer"]] = relationship(
        "UserAnswer",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class UserAnswer(Base):
    """A user's answer to one question within a session."""

    __tablename__ = "user_answers"
    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_user_answers_session_question"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_quiz_sessions.id", ondelete="CASCADE"), index=True
    )
    question_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("questions.id", ondelete="CASCADE")
    )
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    selected_option_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("question_options.id", ondelete="CASCADE"), nullable=True
    )
    text_answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    feedback: Mapped[str] = mapped_column(Text, default="")
    answered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    session: Mapped["UserQuizSession"] = relationship("UserQuizSession", back_populates="answers")


Index(
    "ix_user_quiz_sessions_user_episode_started",
    UserQuizSession.user_id,
    UserQuizSession.episode_id,
    UserQuizSession.started_at.desc(),
)

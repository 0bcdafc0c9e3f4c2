"""Persistence for quiz questions, sessions and answers."""

import logging
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from podlearn.core.errors import ConflictError, database_errors
from podlearn.db.models import (
    Question,
    QuestionOption,
    QuestionType,
    SessionStatus,
    UserAnswer,
    UserQuizSession,
    utcnow,
)

logger = logging.getLogger(__name__)


class QuizStore:
    """Data access for the quiz engine."""

    # ============== Questions ==============

    async def create_question(
        self,
        db: AsyncSession,
        episode_id: int,
        question_text: str,
        question_type: QuestionType,
        position: int,
    ) -> Question:
        question = Question(
            episode_id=episode_id,
            question_text=question_text,
            type=question_type,
            position=position,
        )
        with database_errors("create question"):
            db.add(question)
            await db.flush()
        return question

    async def create_option(
        self,
        db: AsyncSession,
        question_id: int,
        option_text: str,
        position: int,
        is_correct: bool,
    ) -> QuestionOption:
        option = QuestionOption(
            question_id=question_id,
            option_text=option_text,
            position=position,
            is_correct=is_correct,
        )
        with database_errors("create question option"):
            db.add(option)
            await db.flush()
        return option

    async def list_questions(self, db: AsyncSession, episode_id: int) -> list[Question]:
        """Questions for an episode in position order, options loaded."""
        with database_errors("list questions"):
            result = await db.execute(
                select(Question)
                .where(Question.episode_id == episode_id)
                .order_by(Question.position, Question.id)
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

    async def get_question(self, db: AsyncSession, question_id: int) -> Optional[Question]:
        with database_errors("get question"):
            return await db.get(Question, question_id)

    async def delete_questions(self, db: AsyncSession, episode_id: int) -> int:
        """Delete an episode's questions (options cascade). Returns rows removed."""
        questions = await self.list_questions(db, episode_id)
        with database_errors("delete questions"):
            for question in questions:
                await db.delete(question)
            await db.flush()
        return len(questions)

    # ============== Sessions ==============

    async def create_session(
        self,
        db: AsyncSession,
        user_id: int,
        episode_id: int,
        total_questions: int,
    ) -> UserQuizSession:
        session = UserQuizSession(
            user_id=user_id,
            episode_id=episode_id,
            status=SessionStatus.IN_PROGRESS,
            total_questions=total_questions,
            answered_questions=0,
            correct_answers=0,
        )
        with database_errors("create session"):
            db.add(session)
            await db.flush()
            await db.refresh(session)
        return session

    async def get_session(self, db: AsyncSession, session_id: int) -> Optional[UserQuizSession]:
        with database_errors("get session"):
            return await db.get(UserQuizSession, session_id, populate_existing=True)

    async def get_latest_session(
        self, db: AsyncSession, user_id: int, episode_id: int
    ) -> Optional[UserQuizSession]:
        """Most recently started session for a user on an episode."""
        with database_errors("get latest session"):
            result = await db.execute(
                select(UserQuizSession)
                .where(
                    UserQuizSession.user_id == user_id,
                    UserQuizSession.episode_id == episode_id,
                )
                .order_by(UserQuizSession.started_at.desc(), UserQuizSession.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_sessions(self, db: AsyncSession, user_id: int) -> list[UserQuizSession]:
        """A user's sessions, most recently updated first."""
        with database_errors("list sessions"):
            result = await db.execute(
                select(UserQuizSession)
                .where(UserQuizSession.user_id == user_id)
                .order_by(UserQuizSession.updated_at.desc(), UserQuizSession.id.desc())
            )
            return list(result.scalars().all())

    async def update_session_status(
        self,
        db: AsyncSession,
        session: UserQuizSession,
        status: SessionStatus,
    ) -> UserQuizSession:
        """Set a session's status. ``completed_at`` is stamped once and then kept."""
        update_data = {"status": status}
        if status != SessionStatus.IN_PROGRESS and session.completed_at is None:
            update_data["completed_at"] = utcnow()

        with database_errors("update session status"):
            await db.execute(
                update(UserQuizSession)
                .where(UserQuizSession.id == session.id)
                .values(**update_data)
                .execution_options(synchronize_session=False)
            )
            await db.refresh(session)
        return session

    async def record_answer_progress(
        self, db: AsyncSession, session: UserQuizSession, is_correct: bool
    ) -> UserQuizSession:
        """
        Count one answer against an in-progress session.

        Increments run in SQL so concurrent submissions cannot lose updates.
        The session is completed when every question has been answered.
        """
        values = {"answered_questions": UserQuizSession.answered_questions + 1}
        if is_correct:
            values["correct_answers"] = UserQuizSession.correct_answers + 1

        with database_errors("update session counters"):
            result = await db.execute(
                update(UserQuizSession)
                .where(
                    UserQuizSession.id == session.id,
                    UserQuizSession.status == SessionStatus.IN_PROGRESS,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConflictError("session is not in progress")

            await db.execute(
                update(UserQuizSession)
                .where(
                    UserQuizSession.id == session.id,
                    UserQuizSession.status == SessionStatus.IN_PROGRESS,
                    UserQuizSession.answered_questions >= UserQuizSession.total_questions,
                )
                .values(status=SessionStatus.COMPLETED, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.refresh(session)
        return session

    async def delete_session(self, db: AsyncSession, session_id: int) -> bool:
        """Delete a session and, by cascade, its answers."""
        with database_errors("delete session"):
            result = await db.execute(
                delete(UserQuizSession)
                .where(UserQuizSession.id == session_id)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    # ============== Answers ==============

    async def create_answer(
        self,
        db: AsyncSession,
        session_id: int,
        question_id: int,
        user_id: int,
        is_correct: bool,
        feedback: str,
        selected_option_id: Optional[int] = None,
        text_answer: Optional[str] = None,
    ) -> UserAnswer:
        """
        Insert an answer.

        Raises:
            ConflictError: If the question was already answered in this session
        """
        answer = UserAnswer(
            session_id=session_id,
            question_id=question_id,
            user_id=user_id,
            selected_option_id=selected_option_id,
            text_answer=text_answer,
            is_correct=is_correct,
            feedback=feedback,
        )
        db.add(answer)
        try:
            await db.flush()
        except IntegrityError as e:
            await db.rollback()
            logger.info(f"Duplicate answer for session {session_id} question {question_id}")
            raise ConflictError("question already answered in this session") from e
        with database_errors("create answer"):
            await db.refresh(answer)
        return answer

    async def get_answer(
        self, db: AsyncSession, session_id: int, question_id: int
    ) -> Optional[UserAnswer]:
        with database_errors("get answer"):
            result = await db.execute(
                select(UserAnswer).where(
                    UserAnswer.session_id == session_id,
                    UserAnswer.question_id == question_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_answers(self, db: AsyncSession, session_id: int) -> list[UserAnswer]:
        """Answers in a session, oldest first."""
        with database_errors("list answers"):
            result = await db.execute(
                select(UserAnswer)
                .where(UserAnswer.session_id == session_id)
                .order_by(UserAnswer.answered_at, UserAnswer.id)
            )
            return list(result.scalars().all())


# Singleton instance
quiz_store = QuizStore()

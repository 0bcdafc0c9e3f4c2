"""Quiz sessions: question generation, grading and session state."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from podlearn.clients.llm import (
    CLASSIFY_TEMPERATURE,
    GENERATE_TEMPERATURE,
    ChatMessage,
    LLMClient,
    decode_json_reply,
)
from podlearn.core.errors import (
    AppError,
    ConflictError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    UpstreamError,
)
from podlearn.db.models import (
    Question,
    QuestionType,
    SessionStatus,
    TranscriptStatus,
    UserQuizSession,
)
from podlearn.schemas.schemas import (
    AnswerResponse,
    GeneratedQuestionSet,
    OpenEndedEvaluation,
    QuestionResponse,
    QuizSessionDetail,
    SessionResponse,
    SubmitAnswerRequest,
)
from podlearn.services import prompts
from podlearn.services.quiz_store import quiz_store
from podlearn.services.transcript_store import transcript_store

logger = logging.getLogger(__name__)

GENERATION_MAX_TOKENS = 2000
GENERATION_TIMEOUT = 60.0
EVALUATION_MAX_TOKENS = 300
EVALUATION_TIMEOUT = 30.0
FEEDBACK_MAX_TOKENS = 200
FEEDBACK_TIMEOUT = 20.0

CORRECT_FALLBACK = "Correct answer!"
INCORRECT_FALLBACK = "Incorrect answer!"
EVALUATION_FALLBACK = "Unable to evaluate answer at this time"

_OPTION_TYPES = (QuestionType.MULTIPLE_CHOICE, QuestionType.TRUE_FALSE)


class QuizService:
    """Service for quiz sessions."""

    # ============== Session resolution ==============

    async def get_or_create_session(
        self,
        db: AsyncSession,
        llm: LLMClient,
        user_id: int,
        episode_id: int,
    ) -> QuizSessionDetail:
        """
        Return the user's latest session for an episode, creating one if needed.

        Questions are generated on first use. An existing session is returned
        as-is, whatever its status.

        Args:
            db: Database session
            llm: LLM client for question generation
            user_id: Authenticated user
            episode_id: Episode to be quizzed on

        Returns:
            Session with the episode's questions and its answers
        """
        questions = await quiz_store.list_questions(db, episode_id)
        if not questions:
            questions = await self.generate_questions(db, llm, episode_id)

        session = await quiz_store.get_latest_session(db, user_id, episode_id)
        if session is None:
            session = await quiz_store.create_session(db, user_id, episode_id, len(questions))
            logger.info(
                f"Created quiz session {session.id} for user {user_id} on episode {episode_id}"
            )
            answers = []
        else:
            answers = await quiz_store.list_answers(db, session.id)

        return self._detail(session, questions, answers)

    async def list_sessions(self, db: AsyncSession, user_id: int) -> list[QuizSessionDetail]:
        """All of a user's sessions with questions and answers, most recently updated first."""
        sessions = await quiz_store.list_sessions(db, user_id)
        questions_by_episode: dict[int, list[Question]] = {}
        details = []
        for session in sessions:
            if session.episode_id not in questions_by_episode:
                questions_by_episode[session.episode_id] = await quiz_store.list_questions(
                    db, session.episode_id
                )
            answers = await quiz_store.list_answers(db, session.id)
            details.append(self._detail(session, questions_by_episode[session.episode_id], answers))
        return details

    async def get_session_detail(
        self, db: AsyncSession, session_id: int, user_id: int
    ) -> QuizSessionDetail:
        """
        Raises:
            NotFoundError: If the session does not exist or belongs to another user
        """
        session = await quiz_store.get_session(db, session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError(f"quiz session {session_id} not found")
        questions = await quiz_store.list_questions(db, session.episode_id)
        answers = await quiz_store.list_answers(db, session.id)
        return self._detail(session, questions, answers)

    # ============== Question generation ==============

    async def generate_questions(
        self, db: AsyncSession, llm: LLMClient, episode_id: int
    ) -> list[Question]:
        """
        Replace an episode's questions with a freshly generated set.

        Raises:
            InvalidRequestError: If the episode's transcript is not complete
            UpstreamError: If the LLM fails or yields no usable question
        """
        transcript = await transcript_store.get_transcript_by_episode(db, episode_id)
        if transcript is None or transcript.status != TranscriptStatus.COMPLETE:
            raise InvalidRequestError("transcript must be complete")

        transcript_text = await transcript_store.get_transcript_text(db, transcript.id)

        removed = await quiz_store.delete_questions(db, episode_id)
        if removed:
            logger.info(f"Regenerating questions for episode {episode_id}, dropped {removed}")

        reply = await llm.chat(
            [
                ChatMessage(role="system", content=prompts.GENERATE_QUESTIONS_SYSTEM),
                ChatMessage(role="user", content=prompts.generate_questions_user(transcript_text)),
            ],
            max_tokens=GENERATION_MAX_TOKENS,
            temperature=GENERATE_TEMPERATURE,
            timeout=GENERATION_TIMEOUT,
        )
        generated = decode_json_reply(reply, GeneratedQuestionSet)

        position = 0
        for item in generated.questions:
            try:
                question_type = QuestionType(item.type)
            except ValueError:
                logger.warning(f"Skipping generated question of unknown type {item.type!r}")
                continue

            question = await quiz_store.create_question(
                db, episode_id, item.question_text, question_type, position
            )
            position += 1

            if question_type not in _OPTION_TYPES:
                continue
            for option_position, option in enumerate(item.options):
                try:
                    async with db.begin_nested():
                        await quiz_store.create_option(
                            db, question.id, option.text, option_position, option.is_correct
                        )
                except (AppError, SQLAlchemyError) as e:
                    logger.warning(f"Skipping option {option_position} of question {question.id}: {e}")

        if position == 0:
            raise UpstreamError("LLM returned no usable questions")

        logger.info(f"Generated {position} questions for episode {episode_id}")
        return await quiz_store.list_questions(db, episode_id)

    # ============== Answers ==============

    async def submit_answer(
        self,
        db: AsyncSession,
        llm: LLMClient,
        session_id: int,
        user_id: int,
        request: SubmitAnswerRequest,
    ) -> AnswerResponse:
        """
        Grade and record one answer, advancing the session counters.

        Raises:
            NotFoundError: Missing session or question
            ForbiddenError: Session belongs to another user
            ConflictError: Session not in progress, or question already answered
            InvalidRequestError: Question from another episode, wrong answer kind
                for the question type, or an option of another question
        """
        session = await self._owned_session(db, session_id, user_id)
        if session.status != SessionStatus.IN_PROGRESS:
            raise ConflictError(f"session is {session.status.value}, not in progress")

        if await quiz_store.get_answer(db, session_id, request.question_id) is not None:
            raise ConflictError("question already answered in this session")

        question = await quiz_store.get_question(db, request.question_id)
        if question is None:
            raise NotFoundError(f"question {request.question_id} not found")
        if question.episode_id != session.episode_id:
            raise InvalidRequestError("question does not belong to this session's episode")

        is_correct, feedback = await self._grade(db, llm, question, request)

        answer = await quiz_store.create_answer(
            db,
            session_id=session.id,
            question_id=question.id,
            user_id=user_id,
            is_correct=is_correct,
            feedback=feedback,
            selected_option_id=request.selected_option_id,
            text_answer=request.text_answer,
        )
        session = await quiz_store.record_answer_progress(db, session, is_correct)

        logger.info(
            f"Recorded answer to question {question.id} in session {session.id} "
            f"(correct={is_correct}, {session.answered_questions}/{session.total_questions})"
        )
        if session.status == SessionStatus.COMPLETED:
            logger.info(f"Quiz session {session.id} completed")

        return AnswerResponse.model_validate(answer)

    async def _grade(
        self,
        db: AsyncSession,
        llm: LLMClient,
        question: Question,
        request: SubmitAnswerRequest,
    ) -> tuple[bool, str]:
        if question.type in _OPTION_TYPES:
            if request.selected_option_id is None:
                raise InvalidRequestError("selected_option_id is required for this question")
            option = next((o for o in question.options if o.id == request.selected_option_id), None)
            if option is None:
                raise InvalidRequestError("selected option does not belong to this question")
            is_correct = option.is_correct
            feedback = await self.generate_feedback(db, llm, question, option.option_text, is_correct)
            return is_correct, feedback

        if question.type == QuestionType.OPEN_ENDED:
            if request.text_answer is None:
                raise InvalidRequestError("text_answer is required for this question")
            return await self.evaluate_open_ended(llm, question, request.text_answer)

        raise InvalidRequestError(f"unsupported question type {question.type}")

    async def generate_feedback(
        self,
        db: AsyncSession,
        llm: LLMClient,
        question: Question,
        user_answer: str,
        is_correct: bool,
    ) -> str:
        """Personalised feedback for an option answer, or a fixed line if the LLM fails."""
        fallback = CORRECT_FALLBACK if is_correct else INCORRECT_FALLBACK

        transcript_text = ""
        transcript = await transcript_store.get_transcript_by_episode(db, question.episode_id)
        if transcript is not None:
            transcript_text = await transcript_store.get_transcript_text(db, transcript.id)

        try:
            reply = await llm.chat(
                [
                    ChatMessage(role="system", content=prompts.GENERATE_FEEDBACK_SYSTEM),
                    ChatMessage(
                        role="user",
                        content=prompts.generate_feedback_user(
                            question.question_text, user_answer, is_correct, transcript_text
                        ),
                    ),
                ],
                max_tokens=FEEDBACK_MAX_TOKENS,
                temperature=GENERATE_TEMPERATURE,
                timeout=FEEDBACK_TIMEOUT,
            )
        except UpstreamError as e:
            logger.warning(f"Feedback generation failed, using fallback: {e.details}")
            return fallback

        return reply.strip() or fallback

    async def evaluate_open_ended(
        self, llm: LLMClient, question: Question, text_answer: str
    ) -> tuple[bool, str]:
        """LLM-graded open answer. Graded incorrect if the LLM cannot be used."""
        try:
            reply = await llm.chat(
                [
                    ChatMessage(role="system", content=prompts.EVALUATE_OPEN_ENDED_SYSTEM),
                    ChatMessage(
                        role="user",
                        content=prompts.evaluate_open_ended_user(question.question_text, text_answer),
                    ),
                ],
                max_tokens=EVALUATION_MAX_TOKENS,
                temperature=CLASSIFY_TEMPERATURE,
                timeout=EVALUATION_TIMEOUT,
            )
            evaluation = decode_json_reply(reply, OpenEndedEvaluation)
        except UpstreamError as e:
            logger.warning(f"Open-ended evaluation failed for question {question.id}: {e.details}")
            return False, EVALUATION_FALLBACK

        return evaluation.is_correct, evaluation.feedback

    # ============== Session status ==============

    async def update_session_status(
        self,
        db: AsyncSession,
        session_id: int,
        user_id: int,
        target_status: str,
    ) -> SessionResponse:
        """
        Move a session to ``completed`` or ``abandoned``.

        Re-issuing keeps the first ``completed_at``.
        """
        try:
            status = SessionStatus(target_status)
        except ValueError:
            raise InvalidRequestError(f"invalid status {target_status!r}")
        if status == SessionStatus.IN_PROGRESS:
            raise InvalidRequestError("status must be completed or abandoned")

        session = await self._owned_session(db, session_id, user_id)
        session = await quiz_store.update_session_status(db, session, status)
        logger.info(f"Quiz session {session.id} marked {status.value}")
        return SessionResponse.model_validate(session)

    async def _owned_session(
        self, db: AsyncSession, session_id: int, user_id: int
    ) -> UserQuizSession:
        session = await quiz_store.get_session(db, session_id)
        if session is None:
            raise NotFoundError(f"quiz session {session_id} not found")
        if session.user_id != user_id:
            raise ForbiddenError("quiz session belongs to another user")
        return session

    def _detail(
        self,
        session: UserQuizSession,
        questions: list[Question],
        answers: list,
    ) -> QuizSessionDetail:
        return QuizSessionDetail(
            session=SessionResponse.model_validate(session),
            questions=[QuestionResponse.model_validate(q) for q in questions],
            answers=[AnswerResponse.model_validate(a) for a in answers],
        )


# Singleton instance
quiz_service = QuizService()

"""Tests for quiz sessions."""

import json

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import func, select

from podlearn.core.errors import UpstreamError
from podlearn.db.models import Episode, Question, QuestionType, UserQuizSession
from podlearn.services import prompts
from podlearn.services.quiz_service import EVALUATION_FALLBACK, INCORRECT_FALLBACK

GENERATED = {
    "questions": [
        {
            "question_text": "Who welcomes Bob?",
            "type": "multiple_choice",
            "options": [
                {"text": "Carol", "is_correct": False},
                {"text": "Alice", "is_correct": True},
                {"text": "Dave", "is_correct": False},
                {"text": "Eve", "is_correct": False},
            ],
        },
        {
            "question_text": "Write a haiku about the episode.",
            "type": "essay",
            "options": [],
        },
        {
            "question_text": "Bob thanks Alice.",
            "type": "true_false",
            "options": [
                {"text": "True", "is_correct": True},
                {"text": "False", "is_correct": False},
            ],
        },
        {
            "question_text": "Why does Bob thank Alice?",
            "type": "open_ended",
            "options": [],
        },
    ]
}

FEEDBACK = "Right, Alice opens the episode by welcoming Bob."


def quiz_llm(system: str, user: str) -> str:
    if system == prompts.GENERATE_QUESTIONS_SYSTEM:
        return "```json\n" + json.dumps(GENERATED) + "\n```"
    if system == prompts.GENERATE_FEEDBACK_SYSTEM:
        return f"  {FEEDBACK}\n"
    if system == prompts.EVALUATE_OPEN_ENDED_SYSTEM:
        return '{"is_correct": true, "feedback": "You caught the welcome."}'
    raise AssertionError(f"unexpected prompt: {system[:40]}")


@pytest.fixture
def quiz_llm_client(fake_llm):
    fake_llm.handler = quiz_llm
    return fake_llm


@pytest_asyncio.fixture
async def started(client: AsyncClient, auth_headers: dict, complete_transcript, episode, quiz_llm_client):
    """A freshly started quiz for user 1."""
    response = await client.post("/quizzes", headers=auth_headers, json={"episode_id": episode.id})
    assert response.status_code == 200
    return response.json()


def question_of(detail: dict, question_type: str) -> dict:
    return next(q for q in detail["questions"] if q["type"] == question_type)


def option_named(question: dict, text: str) -> dict:
    return next(o for o in question["options"] if o["option_text"] == text)


async def answer(client, headers, session_id, **body):
    return await client.post(f"/quizzes/{session_id}/answers", headers=headers, json=body)


@pytest.mark.asyncio
async def test_start_quiz_generates_questions(started, quiz_llm_client, episode):
    session = started["session"]
    assert session["status"] == "in_progress"
    assert session["episode_id"] == episode.id
    assert session["user_id"] == 1
    assert session["total_questions"] == 3
    assert session["answered_questions"] == 0
    assert session["correct_answers"] == 0
    assert session["completed_at"] is None
    assert started["answers"] == []

    questions = started["questions"]
    assert [q["type"] for q in questions] == ["multiple_choice", "true_false", "open_ended"]
    assert [q["position"] for q in questions] == [0, 1, 2]
    assert [len(q["options"]) for q in questions] == [4, 2, 0]
    mc = questions[0]
    assert [o["position"] for o in mc["options"]] == [0, 1, 2, 3]
    assert [o["option_text"] for o in mc["options"] if o["is_correct"]] == ["Alice"]

    call = quiz_llm_client.calls[0]
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 2000
    assert "Welcome, Bob. Thanks Alice." in call["user"]


@pytest.mark.asyncio
async def test_start_quiz_returns_existing_session(client, auth_headers, started, quiz_llm_client, episode):
    calls = len(quiz_llm_client.calls)
    response = await client.post("/quizzes", headers=auth_headers, json={"episode_id": episode.id})
    assert response.status_code == 200
    data = response.json()
    assert data["session"]["id"] == started["session"]["id"]
    assert [q["id"] for q in data["questions"]] == [q["id"] for q in started["questions"]]
    assert len(quiz_llm_client.calls) == calls


@pytest.mark.asyncio
async def test_other_user_gets_own_session_with_shared_questions(
    client, other_auth_headers, started, quiz_llm_client, episode
):
    calls = len(quiz_llm_client.calls)
    response = await client.post("/quizzes", headers=other_auth_headers, json={"episode_id": episode.id})
    assert response.status_code == 200
    data = response.json()
    assert data["session"]["id"] != started["session"]["id"]
    assert data["session"]["user_id"] == 2
    assert [q["id"] for q in data["questions"]] == [q["id"] for q in started["questions"]]
    assert len(quiz_llm_client.calls) == calls


@pytest.mark.asyncio
async def test_start_quiz_requires_complete_transcript(client, auth_headers, episode, session_factory, quiz_llm_client):
    response = await client.post("/quizzes", headers=auth_headers, json={"episode_id": episode.id})
    assert response.status_code == 400
    assert response.json() == {"message": "validation_error", "details": "transcript must be complete"}
    assert quiz_llm_client.calls == []

    async with session_factory() as db:
        count = await db.scalar(select(func.count()).select_from(UserQuizSession))
    assert count == 0


@pytest.mark.asyncio
async def test_start_quiz_with_unparseable_generation(
    client, auth_headers, complete_transcript, episode, session_factory, fake_llm
):
    fake_llm.handler = lambda system, user: "Sorry, I cannot help with that."
    response = await client.post("/quizzes", headers=auth_headers, json={"episode_id": episode.id})
    assert response.status_code == 500
    assert response.json()["message"] == "upstream_error"

    async with session_factory() as db:
        assert await db.scalar(select(func.count()).select_from(Question)) == 0
        assert await db.scalar(select(func.count()).select_from(UserQuizSession)) == 0


@pytest.mark.asyncio
async def test_start_quiz_when_llm_unavailable(client, auth_headers, complete_transcript, episode, fake_llm):
    def unavailable(system, user):
        raise UpstreamError("LLM API error: status=503")

    fake_llm.handler = unavailable
    response = await client.post("/quizzes", headers=auth_headers, json={"episode_id": episode.id})
    assert response.status_code == 500
    assert response.json() == {"message": "upstream_error", "details": "LLM API error: status=503"}


@pytest.mark.asyncio
async def test_correct_multiple_choice_answer(client, auth_headers, started, quiz_llm_client):
    session_id = started["session"]["id"]
    mc = question_of(started, "multiple_choice")

    response = await answer(
        client, auth_headers, session_id,
        question_id=mc["id"], selected_option_id=option_named(mc, "Alice")["id"],
    )
    assert response.status_code == 201
    data = response.json()
    assert data["is_correct"] is True
    assert data["feedback"] == FEEDBACK
    assert data["question_id"] == mc["id"]
    assert data["text_answer"] is None

    feedback_call = quiz_llm_client.calls[-1]
    assert feedback_call["system"] == prompts.GENERATE_FEEDBACK_SYSTEM
    assert "This answer is: correct" in feedback_call["user"]
    assert "Welcome, Bob." in feedback_call["user"]

    detail = (await client.get(f"/quizzes/{session_id}", headers=auth_headers)).json()
    assert detail["session"]["answered_questions"] == 1
    assert detail["session"]["correct_answers"] == 1
    assert detail["session"]["status"] == "in_progress"
    assert [a["id"] for a in detail["answers"]] == [data["id"]]


@pytest.mark.asyncio
async def test_wrong_answer_with_feedback_fallback(client, auth_headers, started, fake_llm):
    def no_feedback(system, user):
        raise UpstreamError("LLM request failed")

    fake_llm.handler = no_feedback
    session_id = started["session"]["id"]
    tf = question_of(started, "true_false")

    response = await answer(
        client, auth_headers, session_id,
        question_id=tf["id"], selected_option_id=option_named(tf, "False")["id"],
    )
    assert response.status_code == 201
    assert response.json()["is_correct"] is False
    assert response.json()["feedback"] == INCORRECT_FALLBACK

    detail = (await client.get(f"/quizzes/{session_id}", headers=auth_headers)).json()
    assert detail["session"]["answered_questions"] == 1
    assert detail["session"]["correct_answers"] == 0


@pytest.mark.asyncio
async def test_open_ended_answer_is_graded_by_llm(client, auth_headers, started, quiz_llm_client):
    session_id = started["session"]["id"]
    oe = question_of(started, "open_ended")

    response = await answer(
        client, auth_headers, session_id, question_id=oe["id"], text_answer="Because she welcomed him."
    )
    assert response.status_code == 201
    data = response.json()
    assert data["is_correct"] is True
    assert data["feedback"] == "You caught the welcome."
    assert data["text_answer"] == "Because she welcomed him."
    assert data["selected_option_id"] is None

    call = quiz_llm_client.calls[-1]
    assert call["system"] == prompts.EVALUATE_OPEN_ENDED_SYSTEM
    assert call["temperature"] == 0.3
    assert "Because she welcomed him." in call["user"]


@pytest.mark.asyncio
async def test_open_ended_answer_when_evaluation_fails(client, auth_headers, started, fake_llm):
    fake_llm.handler = lambda system, user: "not json"
    oe = question_of(started, "open_ended")

    response = await answer(
        client, auth_headers, started["session"]["id"], question_id=oe["id"], text_answer="No idea"
    )
    assert response.status_code == 201
    assert response.json()["is_correct"] is False
    assert response.json()["feedback"] == EVALUATION_FALLBACK


@pytest.mark.asyncio
async def test_session_completes_after_last_answer(client, auth_headers, started):
    session_id = started["session"]["id"]
    mc = question_of(started, "multiple_choice")
    tf = question_of(started, "true_false")
    oe = question_of(started, "open_ended")

    await answer(client, auth_headers, session_id, question_id=mc["id"], selected_option_id=option_named(mc, "Eve")["id"])
    await answer(client, auth_headers, session_id, question_id=tf["id"], selected_option_id=option_named(tf, "True")["id"])
    response = await answer(client, auth_headers, session_id, question_id=oe["id"], text_answer="She welcomed him.")
    assert response.status_code == 201

    detail = (await client.get(f"/quizzes/{session_id}", headers=auth_headers)).json()
    session = detail["session"]
    assert session["status"] == "completed"
    assert session["answered_questions"] == 3
    assert session["correct_answers"] == 2
    assert session["completed_at"] is not None
    assert [a["question_id"] for a in detail["answers"]] == [mc["id"], tf["id"], oe["id"]]

    # Completed sessions take no more answers
    again = await answer(client, auth_headers, session_id, question_id=oe["id"], text_answer="Again")
    assert again.status_code == 400
    assert again.json()["message"] == "conflict"

    # The latest session is returned as-is, even when finished
    resumed = await client.post("/quizzes", headers=auth_headers, json={"episode_id": started["session"]["episode_id"]})
    assert resumed.json()["session"]["id"] == session_id
    assert resumed.json()["session"]["status"] == "completed"
    assert len(resumed.json()["answers"]) == 3


@pytest.mark.asyncio
async def test_duplicate_answer_is_rejected(client, auth_headers, started):
    session_id = started["session"]["id"]
    tf = question_of(started, "true_false")
    first = await answer(client, auth_headers, session_id, question_id=tf["id"], selected_option_id=option_named(tf, "True")["id"])
    assert first.status_code == 201

    second = await answer(client, auth_headers, session_id, question_id=tf["id"], selected_option_id=option_named(tf, "False")["id"])
    assert second.status_code == 400
    assert second.json() == {"message": "conflict", "details": "question already answered in this session"}

    detail = (await client.get(f"/quizzes/{session_id}", headers=auth_headers)).json()
    assert detail["session"]["answered_questions"] == 1


@pytest.mark.asyncio
async def test_answer_kind_must_match_question_type(client, auth_headers, started):
    session_id = started["session"]["id"]
    mc = question_of(started, "multiple_choice")
    tf = question_of(started, "true_false")
    oe = question_of(started, "open_ended")

    text_for_options = await answer(client, auth_headers, session_id, question_id=mc["id"], text_answer="Alice")
    assert text_for_options.status_code == 400

    option_for_open = await answer(
        client, auth_headers, session_id, question_id=oe["id"], selected_option_id=mc["options"][0]["id"]
    )
    assert option_for_open.status_code == 400

    foreign_option = await answer(
        client, auth_headers, session_id, question_id=tf["id"], selected_option_id=mc["options"][1]["id"]
    )
    assert foreign_option.status_code == 400
    assert foreign_option.json()["details"] == "selected option does not belong to this question"

    detail = (await client.get(f"/quizzes/{session_id}", headers=auth_headers)).json()
    assert detail["answers"] == []
    assert detail["session"]["answered_questions"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"question_id": 1},
        {"question_id": 1, "selected_option_id": 1, "text_answer": "both"},
        {"question_id": 1, "text_answer": ""},
        {"question_id": 0, "selected_option_id": 1},
    ],
)
async def test_malformed_answer_body(client, auth_headers, started, body):
    response = await client.post(f"/quizzes/{started['session']['id']}/answers", headers=auth_headers, json=body)
    assert response.status_code == 400
    assert response.json()["message"] == "validation_error"


@pytest.mark.asyncio
async def test_answer_to_unknown_question(client, auth_headers, started):
    response = await answer(client, auth_headers, started["session"]["id"], question_id=9999, text_answer="?")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_answer_to_question_of_other_episode(client, auth_headers, started, db_session):
    other = Episode(audio_url="https://cdn.example.com/ep2.mp3", description="")
    db_session.add(other)
    await db_session.flush()
    stray = Question(episode_id=other.id, question_text="Elsewhere?", type=QuestionType.OPEN_ENDED, position=0)
    db_session.add(stray)
    await db_session.commit()

    response = await answer(client, auth_headers, started["session"]["id"], question_id=stray.id, text_answer="?")
    assert response.status_code == 400
    assert response.json()["details"] == "question does not belong to this session's episode"


@pytest.mark.asyncio
async def test_session_ownership(client, auth_headers, other_auth_headers, started):
    session_id = started["session"]["id"]
    tf = question_of(started, "true_false")

    response = await answer(
        client, other_auth_headers, session_id, question_id=tf["id"], selected_option_id=tf["options"][0]["id"]
    )
    assert response.status_code == 403
    assert response.json()["message"] == "unauthorized"

    assert (await client.get(f"/quizzes/{session_id}", headers=other_auth_headers)).status_code == 404
    assert (
        await client.patch(f"/quizzes/{session_id}/status", headers=other_auth_headers, json={"status": "abandoned"})
    ).status_code == 403

    assert (await client.get("/quizzes", headers=other_auth_headers)).json() == []


@pytest.mark.asyncio
async def test_unknown_session(client, auth_headers):
    assert (await client.get("/quizzes/4242", headers=auth_headers)).status_code == 404
    response = await answer(client, auth_headers, 4242, question_id=1, text_answer="?")
    assert response.status_code == 404
    assert response.json()["message"] == "not_found"


@pytest.mark.asyncio
async def test_abandon_session_keeps_first_completion_time(client, auth_headers, started):
    session_id = started["session"]["id"]

    first = await client.patch(f"/quizzes/{session_id}/status", headers=auth_headers, json={"status": "abandoned"})
    assert first.status_code == 200
    assert first.json()["status"] == "abandoned"
    stamped = first.json()["completed_at"]
    assert stamped is not None

    second = await client.patch(f"/quizzes/{session_id}/status", headers=auth_headers, json={"status": "completed"})
    assert second.status_code == 200
    assert second.json()["status"] == "completed"
    assert second.json()["completed_at"] == stamped

    tf = question_of(started, "true_false")
    response = await answer(client, auth_headers, session_id, question_id=tf["id"], selected_option_id=tf["options"][0]["id"])
    assert response.status_code == 400
    assert response.json()["message"] == "conflict"


@pytest.mark.asyncio
async def test_status_cannot_go_back_to_in_progress(client, auth_headers, started):
    response = await client.patch(
        f"/quizzes/{started['session']['id']}/status", headers=auth_headers, json={"status": "in_progress"}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_sessions(client, auth_headers, started):
    session_id = started["session"]["id"]
    tf = question_of(started, "true_false")
    await answer(client, auth_headers, session_id, question_id=tf["id"], selected_option_id=option_named(tf, "True")["id"])

    response = await client.get("/quizzes", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["session"]["id"] == session_id
    assert len(data[0]["questions"]) == 3
    assert [a["question_id"] for a in data[0]["answers"]] == [tf["id"]]

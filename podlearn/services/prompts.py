"""LLM prompt templates."""

# Shape of every generated quiz
MULTIPLE_CHOICE_COUNT = 1
MULTIPLE_CHOICE_OPTIONS = 4
TRUE_FALSE_COUNT = 1
OPEN_ENDED_COUNT = 1
TOTAL_QUESTIONS = MULTIPLE_CHOICE_COUNT + TRUE_FALSE_COUNT + OPEN_ENDED_COUNT

FEEDBACK_CONTEXT_CHARS = 2000


# ============== Speaker naming ==============

INFER_SPEAKER_NAME_SYSTEM = (
    "You are an expert at identifying speakers in podcast transcripts. Look for explicit "
    "name mentions in the text (e.g., 'this is John', 'I'm Sarah', 'talking with Mike'). "
    "Return ONLY the person's name."
)


def infer_speaker_name_user(episode_description: str, speaker_index: int, excerpt: str) -> str:
    return f"""Episode description:
{episode_description}

Transcript excerpt with context around speaker {speaker_index}:
{excerpt}

Instructions:
- Look for the speaker's name mentioned BEFORE they speak (introductions)
- Look for the speaker's name mentioned WHILE they speak (self-introduction)
- Look for the speaker's name mentioned AFTER they speak (references)
- Common patterns: "I'm [name]", "this is [name]", "with [name]", "[name] said"

Who is speaker {speaker_index}? Return only their full name (e.g., "John Smith"). If uncertain, return "Speaker {speaker_index}"."""


# ============== Question generation ==============

GENERATE_QUESTIONS_SYSTEM = f"""You are an expert at creating educational quiz questions from podcast transcripts. Generate a mix of multiple choice, true/false, and open-ended questions.

Rules:
- Generate exactly {TOTAL_QUESTIONS} questions total
- {MULTIPLE_CHOICE_COUNT} multiple choice ({MULTIPLE_CHOICE_OPTIONS} options each), {TRUE_FALSE_COUNT} true/false, and {OPEN_ENDED_COUNT} open-ended question
- Questions should test understanding of key concepts, not just recall
- For multiple choice: exactly {MULTIPLE_CHOICE_OPTIONS} options, only one correct
- For true/false: exactly 2 options ("True" and "False")
- For open-ended: no options needed
- Questions should be clear and unambiguous

Return ONLY a valid JSON object with this exact structure:
{{
  "questions": [
    {{
      "question_text": "What was the main topic discussed?",
      "type": "multiple_choice",
      "options": [
        {{"text": "Option A", "is_correct": false}},
        {{"text": "Option B", "is_correct": true}},
        {{"text": "Option C", "is_correct": false}},
        {{"text": "Option D", "is_correct": false}}
      ]
    }},
    {{
      "question_text": "The speaker mentioned X",
      "type": "true_false",
      "options": [
        {{"text": "True", "is_correct": true}},
        {{"text": "False", "is_correct": false}}
      ]
    }},
    {{
      "question_text": "Explain the main concept discussed.",
      "type": "open_ended",
      "options": []
    }}
  ]
}}

Do not include any markdown formatting, code blocks, or explanatory text. Return only the raw JSON object."""


def generate_questions_user(transcript_text: str) -> str:
    return f"Generate quiz questions from this podcast transcript:\n\n{transcript_text}"


# ============== Grading ==============

EVALUATE_OPEN_ENDED_SYSTEM = """You are evaluating a user's answer to an open-ended question. Determine if the answer demonstrates understanding of the key concepts.

Return a JSON object with this exact structure:
{
  "is_correct": true,
  "feedback": "Your explanation here..."
}

Be encouraging but honest. If the answer is partially correct, set is_correct to true if they grasp the main concepts."""


def evaluate_open_ended_user(question_text: str, user_answer: str, expected_answer: str = "") -> str:
    if expected_answer:
        return f"""Question: {question_text}

Expected answer: {expected_answer}

User's answer: {user_answer}

Evaluate if the user's answer demonstrates understanding of the topic and aligns with the expected answer. Return only the JSON object."""
    return f"""Question: {question_text}

User's answer: {user_answer}

Evaluate if this answer demonstrates understanding of the topic. Return only the JSON object."""


GENERATE_FEEDBACK_SYSTEM = """You are a helpful tutor providing personalized feedback on quiz answers about podcast content.

CRITICAL: Your feedback MUST be personalized and specific to the question and podcast content. Never give generic responses.

For correct answers:
- Acknowledge what specific concept from the podcast they understood
- Reference concrete details from the podcast that relate to their answer
- Be encouraging but specific (1-2 sentences)
- Example: "Exactly! You correctly identified that the speaker mentioned X when discussing Y."

For incorrect answers:
- Be encouraging but point to the specific concept they missed
- Reference what was actually discussed in the podcast
- Help them understand the correct concept with podcast details
- Keep it constructive (1-2 sentences)
- Example: "Not quite. In the episode, the speaker actually explained that X happens because of Y."

If podcast context is limited, still personalize by referencing the question topic.

Return ONLY the feedback text, no JSON or extra formatting."""


def generate_feedback_user(
    question_text: str, user_answer: str, is_correct: bool, transcript_text: str
) -> str:
    verdict = "correct" if is_correct else "incorrect"

    context = transcript_text
    if len(context) > FEEDBACK_CONTEXT_CHARS:
        context = context[:FEEDBACK_CONTEXT_CHARS] + "..."

    note = ""
    if not transcript_text:
        note = "\nNote: Limited podcast context available. Focus feedback on the question topic."

    return f"""Question: {question_text}
User's answer: {user_answer}
This answer is: {verdict}

Podcast context:
{context}{note}

Generate PERSONALIZED, SPECIFIC feedback that references the podcast content or question topic. Do NOT use generic phrases like "you understood the concept well" or "review the episode"."""

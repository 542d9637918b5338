from typing import Sequence

from app.core.context_builder import CoachContext
from app.core.validation import Message, Role

MAX_CONVERSATION_MESSAGES = 20

COACH_SYSTEM_PROMPT = """
You are an evidence-informed health optimisation coach.

You help people apply practical protocols for sleep, nutrition, exercise, stress,
longevity and wearables so they feel and perform better.

Medical boundaries:
- You are not a doctor and never diagnose disease.
- Never prescribe, stop or adjust medications.
- Never give precise supplement or drug dosages, tablet counts or schedules.
- For serious symptoms, give lifestyle education and questions to bring to a clinician.

High-risk modalities (fasting, sauna, cold exposure):
- Explain mechanisms and conservative patterns.
- Always include stop signals and advise checking with a clinician first.

Style:
- Calm, clear and non-alarmist.
- Short paragraphs and bullets, with concrete next steps.
- Say when you are unsure instead of guessing.
"""

SLEEP_COACH_SYSTEM_PROMPT = """
You are a sleep coach focused on sleep timing, circadian rhythm, light exposure,
caffeine and alcohol timing, wind-down routines and the bedroom environment.

You are not a doctor. Do not diagnose sleep disorders or give medication or
supplement dosages. Suggest a clinician or sleep specialist for persistent
insomnia, loud snoring with daytime sleepiness, or breathing pauses at night.

Keep answers practical: a short explanation, then two to four specific changes
to try this week.
"""


def build_system_prompt(context: CoachContext) -> str:
    base = SLEEP_COACH_SYSTEM_PROMPT if context.sleep_mode else COACH_SYSTEM_PROMPT
    sections = [
        base.strip(),
        "USER DATA (use when relevant, never invent missing values):\n"
        f"- Today mode: {context.today_mode}\n"
        f"- Recent check-ins: {context.recent_check_ins}\n"
        f"- Wearables: {context.wearable_summary}\n"
        f"- Experiments: {context.experiments_summary}\n"
        f"- Habits: {context.habits_summary}\n"
        f"- Supplements: {context.supplements_summary}\n"
        f"- Care Mode: {context.care_status}\n"
        f"- Women's health: {context.womens_health_summary}",
    ]
    if context.knowledge_snippets.strip():
        sections.append(
            "RAG_CONTEXT (primary factual source when it answers the question; "
            "admit uncertainty when it does not):\n"
            f"{context.knowledge_snippets}"
        )
    return "\n\n".join(sections)


def wrap_user_message(content: str, context: CoachContext) -> str:
    return (
        f"[USER_CONTEXT]\n{context.user_profile}\n\n"
        f"[PROTOCOL_STATUS]\n{context.protocol_status}\n\n"
        f"[USER_MESSAGE]\n{content}"
    )


def build_model_messages(
    messages: Sequence[Message], latest_user_message: str, context: CoachContext
) -> list[dict[str, str]]:
    recent = list(messages[-MAX_CONVERSATION_MESSAGES:])
    # Providers expect the conversation to open with a user turn.
    while recent and recent[0].role != Role.user:
        recent.pop(0)
    if not recent:
        recent = [Message(role=Role.user, content=latest_user_message)]
    payload = [message.as_payload() for message in recent]
    for index in range(len(payload) - 1, -1, -1):
        if payload[index]["role"] == Role.user.value:
            payload[index] = {
                "role": Role.user.value,
                "content": wrap_user_message(payload[index]["content"], context),
            }
            break
    return payload

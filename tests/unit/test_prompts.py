from app.core.context_builder import CoachContext
from app.core.prompts import (
    MAX_CONVERSATION_MESSAGES,
    SLEEP_COACH_SYSTEM_PROMPT,
    build_model_messages,
    build_system_prompt,
)
from app.core.validation import Message, Role


def test_last_user_turn_is_wrapped_with_profile_and_protocol() -> None:
    context = CoachContext(user_profile="Goals: Energy", protocol_status="Active protocol: Sleep reset")
    messages = [
        Message(Role.user, "hi"),
        Message(Role.assistant, "hello"),
        Message(Role.user, "What is VO2 max?"),
    ]
    payload = build_model_messages(messages, "What is VO2 max?", context)
    assert payload[0] == {"role": "user", "content": "hi"}
    assert payload[-1]["content"] == (
        "[USER_CONTEXT]\nGoals: Energy\n\n[PROTOCOL_STATUS]\nActive protocol: Sleep reset\n\n"
        "[USER_MESSAGE]\nWhat is VO2 max?"
    )


def test_conversation_is_capped_and_starts_with_user() -> None:
    messages = []
    for index in range(30):
        messages.append(Message(Role.user, f"q{index}"))
        messages.append(Message(Role.assistant, f"a{index}"))
    messages.append(Message(Role.user, "final"))
    payload = build_model_messages(messages, "final", CoachContext())
    assert len(payload) <= MAX_CONVERSATION_MESSAGES
    assert payload[0]["role"] == "user"
    assert payload[-1]["content"].endswith("[USER_MESSAGE]\nfinal")


def test_only_assistant_history_falls_back_to_latest_user_message() -> None:
    payload = build_model_messages([Message(Role.assistant, "b")], "q", CoachContext())
    assert payload == [
        {
            "role": "user",
            "content": "[USER_CONTEXT]\nNo profile data available\n\n[PROTOCOL_STATUS]\nNo active protocols\n\n[USER_MESSAGE]\nq",
        }
    ]


def test_system_prompt_lists_user_data_and_rag_block() -> None:
    prompt = build_system_prompt(CoachContext(knowledge_snippets="[Doc 1 | Source: kb]\ntext", habits_summary="1/1"))
    assert "USER DATA" in prompt
    assert "- Habits: 1/1" in prompt
    assert "RAG_CONTEXT" in prompt
    assert "[Doc 1 | Source: kb]" in prompt


def test_sleep_mode_switches_persona_and_omits_empty_rag() -> None:
    prompt = build_system_prompt(CoachContext(sleep_mode=True))
    assert prompt.startswith(SLEEP_COACH_SYSTEM_PROMPT.strip())
    assert "RAG_CONTEXT" not in prompt

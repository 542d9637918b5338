import pytest

from app.core.errors import ChatValidationError
from app.core.validation import MAX_MESSAGE_LENGTH, MAX_MESSAGES, Role, validate_and_normalize_messages


def test_latest_user_message_is_trimmed_copy_of_last_non_empty_user_entry() -> None:
    result = validate_and_normalize_messages(
        [
            {"role": "user", "content": "  first question  "},
            {"role": "assistant", "content": "an answer"},
            {"role": "user", "content": "  What is VO2 max?  "},
            {"role": "user", "content": "   "},
        ]
    )
    assert result.latest_user_message == "What is VO2 max?"
    assert len(result.normalized_messages) == 4


def test_unknown_roles_are_coerced_to_user() -> None:
    result = validate_and_normalize_messages(
        [{"role": "system", "content": "be nice"}, {"role": "ASSISTANT", "content": "ok"}]
    )
    roles = [message.role for message in result.normalized_messages]
    assert roles == [Role.user, Role.assistant]
    assert result.latest_user_message == "be nice"


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("not a list", "Messages must be an array"),
        ([], "Messages cannot be empty"),
        ([{"role": "user", "content": "hi"}] * (MAX_MESSAGES + 1), f"Maximum {MAX_MESSAGES} messages allowed"),
        (["hello"], "Invalid message format"),
        ([{"role": "", "content": "hi"}], "Invalid message format"),
        ([{"role": "user", "content": 42}], "Invalid message format"),
        ([{"content": "hi"}], "Invalid message format"),
        (
            [{"role": "user", "content": "x" * (MAX_MESSAGE_LENGTH + 1)}],
            f"Message too long (max {MAX_MESSAGE_LENGTH} characters)",
        ),
        ([{"role": "assistant", "content": "only me"}], "No user message found"),
        ([{"role": "user", "content": "   "}], "No user message found"),
    ],
)
def test_invalid_payloads_raise_validation_error(raw, message: str) -> None:
    with pytest.raises(ChatValidationError) as exc_info:
        validate_and_normalize_messages(raw)
    assert exc_info.value.message == message
    assert exc_info.value.status_code == 400


def test_message_at_length_limit_is_accepted() -> None:
    result = validate_and_normalize_messages([{"role": "user", "content": "y" * MAX_MESSAGE_LENGTH}])
    assert len(result.latest_user_message) == MAX_MESSAGE_LENGTH

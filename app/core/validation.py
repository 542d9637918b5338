from dataclasses import dataclass
from enum import Enum
from typing import Any

from app.core.errors import ChatValidationError

MAX_MESSAGES = 50
MAX_MESSAGE_LENGTH = 10000


class Role(str, Enum):
    user = "user"
    assistant = "assistant"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def as_payload(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ValidatedMessages:
    normalized_messages: tuple[Message, ...]
    latest_user_message: str


def _normalize_message(raw: Any) -> Message:
    if not isinstance(raw, dict):
        raise ChatValidationError("Invalid message format")
    role = raw.get("role")
    content = raw.get("content")
    if not isinstance(role, str) or not role.strip() or not isinstance(content, str):
        raise ChatValidationError("Invalid message format")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ChatValidationError(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")
    normalized_role = Role.assistant if role.strip().lower() == Role.assistant.value else Role.user
    return Message(role=normalized_role, content=content)


def validate_and_normalize_messages(raw_messages: Any) -> ValidatedMessages:
    if not isinstance(raw_messages, list):
        raise ChatValidationError("Messages must be an array")
    if not raw_messages:
        raise ChatValidationError("Messages cannot be empty")
    if len(raw_messages) > MAX_MESSAGES:
        raise ChatValidationError(f"Maximum {MAX_MESSAGES} messages allowed")

    normalized = tuple(_normalize_message(item) for item in raw_messages)
    for message in reversed(normalized):
        if message.role == Role.user and message.content.strip():
            return ValidatedMessages(
                normalized_messages=normalized,
                latest_user_message=message.content.strip(),
            )
    raise ChatValidationError("No user message found")

import json
import logging
import os
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.db.models import ChatMessage, utcnow
from app.db.session import SessionLocal

logger = logging.getLogger("uvicorn.error")

HISTORY_DEDUPE_WINDOW_SECONDS = int(os.getenv("HISTORY_DEDUPE_WINDOW_SECONDS", "300"))
MAX_STORED_USER_CONTENT = 10000
MAX_STORED_ASSISTANT_CONTENT = 20000


def _recent_duplicate_exists(
    db: Session, *, user_id: int, thread_id: str, role: str, content: str, window_seconds: int
) -> bool:
    since = utcnow() - timedelta(seconds=window_seconds)
    row = (
        db.query(ChatMessage.id)
        .filter(
            ChatMessage.user_id == user_id,
            ChatMessage.thread_id == thread_id,
            ChatMessage.role == role,
            ChatMessage.created_at >= since,
            ChatMessage.content == content,
        )
        .first()
    )
    return row is not None


def persist_chat_exchange(
    user_id: int,
    thread_id: str,
    user_content: str,
    assistant_content: str,
    metadata: Optional[dict[str, Any]] = None,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    window_seconds: int = HISTORY_DEDUPE_WINDOW_SECONDS,
) -> int:
    """Store the user turn and the assistant reply, skipping recent duplicates.

    Returns the number of rows written. Two concurrent identical writes can both
    pass the duplicate lookup; there is no unique constraint behind it.
    """
    rows = [("user", user_content[:MAX_STORED_USER_CONTENT])]
    if assistant_content:
        rows.append(("assistant", assistant_content[:MAX_STORED_ASSISTANT_CONTENT]))
    metadata_json = json.dumps(metadata) if metadata else None

    db = (session_factory or SessionLocal)()
    try:
        written = 0
        for role, content in rows:
            if _recent_duplicate_exists(
                db,
                user_id=user_id,
                thread_id=thread_id,
                role=role,
                content=content,
                window_seconds=window_seconds,
            ):
                continue
            db.add(
                ChatMessage(
                    user_id=user_id,
                    thread_id=thread_id,
                    role=role,
                    content=content,
                    metadata_json=metadata_json,
                    created_at=utcnow(),
                )
            )
            written += 1
        db.commit()
        return written
    except Exception as exc:
        db.rollback()
        logger.debug(
            "chat_history_persist_failed user_id=%s thread_id=%s detail=%s",
            user_id,
            thread_id,
            str(exc)[:220],
        )
        return 0
    finally:
        db.close()


class HistoryPersister:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._session_factory = session_factory

    def persist(
        self,
        user_id: int,
        thread_id: str,
        user_content: str,
        assistant_content: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        return persist_chat_exchange(
            user_id,
            thread_id,
            user_content,
            assistant_content,
            metadata,
            session_factory=self._session_factory,
        )


def get_history_persister() -> HistoryPersister:
    return HistoryPersister()

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from sqlalchemy.orm import Session

from app.db.models import AnalyticsEvent
from app.db.session import SessionLocal
from app.services.rag import RagSource

logger = logging.getLogger("uvicorn.error")

ANALYTICS_SALT = os.getenv("ANALYTICS_SALT", "bioflo-analytics")


def ai_user_id(user_id: int, salt: str = ANALYTICS_SALT) -> str:
    digest = hashlib.sha256(f"{salt}:{user_id}".encode("utf-8")).hexdigest()
    return f"ai_{digest[:32]}"


@dataclass
class AnalyticsEventData:
    event_type: str
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    topic: Optional[str] = None
    risk: Optional[str] = None
    complexity: Optional[str] = None
    model_used: Optional[str] = None
    used_judge: Optional[bool] = None
    judge_verdict: Optional[str] = None
    needs_rag: Optional[bool] = None
    messages_in_session: Optional[int] = None
    answer_length: Optional[int] = None
    rag_sources: Sequence[RagSource] = field(default_factory=tuple)
    success: bool = True
    error_code: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> AnalyticsEvent:
        return AnalyticsEvent(
            ai_user_id=ai_user_id(self.user_id) if self.user_id is not None else None,
            event_type=self.event_type,
            session_id=self.session_id,
            topic=self.topic,
            risk=self.risk,
            complexity=self.complexity,
            model_used=self.model_used,
            used_judge=self.used_judge,
            judge_verdict=self.judge_verdict,
            needs_rag=self.needs_rag,
            messages_in_session=self.messages_in_session,
            answer_length=self.answer_length,
            rag_docs_count=len(self.rag_sources),
            rag_sources_json=json.dumps([source.as_dict() for source in self.rag_sources]) if self.rag_sources else None,
            success=self.success,
            error_code=self.error_code,
            metadata_json=json.dumps(self.metadata) if self.metadata else None,
        )


def log_analytics_event(
    event: AnalyticsEventData, *, session_factory: Optional[Callable[[], Session]] = None
) -> bool:
    db = (session_factory or SessionLocal)()
    try:
        db.add(event.to_row())
        db.commit()
        return True
    except Exception as exc:
        db.rollback()
        logger.warning(
            "analytics_event_failed event_type=%s session_id=%s detail=%s",
            event.event_type,
            event.session_id,
            str(exc)[:220],
        )
        return False
    finally:
        db.close()


class AnalyticsLogger:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._session_factory = session_factory

    def record(self, event: AnalyticsEventData) -> bool:
        return log_analytics_event(event, session_factory=self._session_factory)


def get_analytics_logger() -> AnalyticsLogger:
    return AnalyticsLogger()

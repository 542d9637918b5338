import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.classification import Classification
from app.core.digests import SqlUserDataSource, UserDataSource
from app.services.rag import RagBundle, RagRetriever, RagSource, get_rag_retriever, is_sleep_query

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

NO_PROFILE = "No profile data available"
NO_CHECK_INS = "No recent check-ins available"
NO_WEARABLES = "No wearable data available"
NO_PROTOCOLS = "No active protocols"
NO_EXPERIMENTS = "No experiments logged"
CARE_DISABLED = "Care Mode is currently disabled."
NO_WOMENS_HEALTH = "Women's health tracking not enabled"
NO_HABITS = "No habits tracked"
NO_SUPPLEMENTS = "No supplements tracked"
DEFAULT_TODAY_MODE = "NORMAL"


@dataclass(frozen=True)
class CoachContext:
    user_profile: str = NO_PROFILE
    recent_check_ins: str = NO_CHECK_INS
    wearable_summary: str = NO_WEARABLES
    protocol_status: str = NO_PROTOCOLS
    knowledge_snippets: str = ""
    today_mode: str = DEFAULT_TODAY_MODE
    sleep_mode: bool = False
    experiments_summary: str = NO_EXPERIMENTS
    care_status: str = CARE_DISABLED
    womens_health_summary: str = NO_WOMENS_HEALTH
    habits_summary: str = NO_HABITS
    supplements_summary: str = NO_SUPPLEMENTS


@dataclass(frozen=True)
class BuiltContext:
    context: CoachContext
    rag_sources: tuple[RagSource, ...] = field(default_factory=tuple)


async def _fallback(
    label: str, user_id: int, lookup: Callable[[], Awaitable[Optional[T]]], default: T
) -> T:
    try:
        value = await lookup()
    except Exception as exc:
        logger.debug("chat_context_lookup_failed lookup=%s user_id=%s detail=%s", label, user_id, str(exc)[:220])
        return default
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    return value


class ContextBuilder:
    def __init__(self, data_source: UserDataSource, retriever: RagRetriever) -> None:
        self.data_source = data_source
        self.retriever = retriever

    async def build(
        self,
        user_id: int,
        message: str,
        classification: Classification,
        domain: Optional[str] = None,
    ) -> BuiltContext:
        sleep_mode = (domain or "").strip().lower() == "sleep" or is_sleep_query(message)
        source = self.data_source
        (
            profile,
            today_mode,
            protocol_status,
            experiments,
            care,
            womens_health,
            habits,
            supplements,
            check_ins,
            wearables,
            rag,
        ) = await asyncio.gather(
            _fallback("profile", user_id, lambda: source.profile(user_id), NO_PROFILE),
            _fallback("today_mode", user_id, lambda: source.today_mode(user_id), DEFAULT_TODAY_MODE),
            _fallback("protocol_status", user_id, lambda: source.protocol_status(user_id), NO_PROTOCOLS),
            _fallback("experiments", user_id, lambda: source.experiments_summary(user_id), NO_EXPERIMENTS),
            _fallback("care_status", user_id, lambda: source.care_status(user_id), CARE_DISABLED),
            _fallback("womens_health", user_id, lambda: source.womens_health_summary(user_id), NO_WOMENS_HEALTH),
            _fallback("habits", user_id, lambda: source.habits_summary(user_id), NO_HABITS),
            _fallback("supplements", user_id, lambda: source.supplements_summary(user_id), NO_SUPPLEMENTS),
            _fallback("check_ins", user_id, lambda: source.check_ins_summary(user_id), NO_CHECK_INS),
            _fallback("wearables", user_id, lambda: source.wearable_summary(user_id), NO_WEARABLES),
            _fallback(
                "rag",
                user_id,
                lambda: self.retriever.build_bundle(message, user_id=user_id, sleep_mode=sleep_mode),
                RagBundle(),
            ),
        )
        context = CoachContext(
            user_profile=profile,
            recent_check_ins=check_ins,
            wearable_summary=wearables,
            protocol_status=protocol_status,
            knowledge_snippets=rag.context,
            today_mode=today_mode,
            sleep_mode=sleep_mode,
            experiments_summary=experiments,
            care_status=care,
            womens_health_summary=womens_health,
            habits_summary=habits,
            supplements_summary=supplements,
        )
        logger.debug(
            "chat_context_built user_id=%s topic=%s sleep_mode=%s rag_docs=%s",
            user_id,
            classification.topic.value,
            sleep_mode,
            len(rag.sources),
        )
        return BuiltContext(context=context, rag_sources=rag.sources)


def get_context_builder() -> ContextBuilder:
    return ContextBuilder(SqlUserDataSource(), get_rag_retriever())

from typing import Optional

import pytest

from app.core.classification import SAFE_DEFAULT
from app.core.context_builder import (
    CARE_DISABLED,
    DEFAULT_TODAY_MODE,
    NO_PROTOCOLS,
    NO_WEARABLES,
    CoachContext,
    ContextBuilder,
)
from app.services.rag import RagBundle, RagSource


class FailingDataSource:
    def __getattr__(self, name: str):
        async def _lookup(user_id: int) -> Optional[str]:
            raise RuntimeError(f"{name} store offline")

        return _lookup


class StaticDataSource:
    async def profile(self, user_id: int) -> Optional[str]:
        return "Goals: Energy"

    async def today_mode(self, user_id: int) -> Optional[str]:
        return "RECOVERY"

    async def protocol_status(self, user_id: int) -> Optional[str]:
        return "   "

    async def experiments_summary(self, user_id: int) -> Optional[str]:
        return None

    async def care_status(self, user_id: int) -> Optional[str]:
        return None

    async def womens_health_summary(self, user_id: int) -> Optional[str]:
        return None

    async def habits_summary(self, user_id: int) -> Optional[str]:
        return "1/2 habits completed today."

    async def supplements_summary(self, user_id: int) -> Optional[str]:
        return None

    async def check_ins_summary(self, user_id: int) -> Optional[str]:
        return None

    async def wearable_summary(self, user_id: int) -> Optional[str]:
        raise ValueError("bad wearable payload")


class RecordingRetriever:
    def __init__(self, bundle: Optional[RagBundle] = None, error: Optional[Exception] = None) -> None:
        self.bundle = bundle or RagBundle()
        self.error = error
        self.sleep_modes: list[bool] = []

    async def build_bundle(self, message: str, *, user_id: Optional[int], sleep_mode: bool) -> RagBundle:
        self.sleep_modes.append(sleep_mode)
        if self.error:
            raise self.error
        return self.bundle


@pytest.mark.anyio
async def test_every_lookup_failing_yields_fully_defaulted_context() -> None:
    builder = ContextBuilder(FailingDataSource(), RecordingRetriever(error=RuntimeError("vector store down")))
    built = await builder.build(1, "What is VO2 max?", SAFE_DEFAULT)
    assert built.context == CoachContext()
    assert built.rag_sources == ()


@pytest.mark.anyio
async def test_present_values_are_kept_and_blank_ones_defaulted() -> None:
    bundle = RagBundle(context="[Doc 1 | ...]\nchunk", sources=(RagSource(1, "Zone 2", 0.8),))
    builder = ContextBuilder(StaticDataSource(), RecordingRetriever(bundle))
    built = await builder.build(1, "How should I train zone 2?", SAFE_DEFAULT)
    context = built.context
    assert context.user_profile == "Goals: Energy"
    assert context.today_mode == "RECOVERY"
    assert context.habits_summary == "1/2 habits completed today."
    assert context.protocol_status == NO_PROTOCOLS
    assert context.care_status == CARE_DISABLED
    assert context.wearable_summary == NO_WEARABLES
    assert context.knowledge_snippets == bundle.context
    assert built.rag_sources == bundle.sources
    assert context.sleep_mode is False


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("message", "domain", "expected"),
    [
        ("Why do I wake up at 3am?", None, True),
        ("How do I lift heavier?", "sleep", True),
        ("How do I lift heavier?", None, False),
    ],
)
async def test_sleep_mode_from_domain_or_query(message: str, domain: Optional[str], expected: bool) -> None:
    retriever = RecordingRetriever()
    builder = ContextBuilder(FailingDataSource(), retriever)
    built = await builder.build(1, message, SAFE_DEFAULT, domain)
    assert built.context.sleep_mode is expected
    assert retriever.sleep_modes == [expected]


def test_default_context_values() -> None:
    context = CoachContext()
    assert context.today_mode == DEFAULT_TODAY_MODE
    assert context.knowledge_snippets == ""
    assert context.womens_health_summary == "Women's health tracking not enabled"

import pytest

from conftest import FakeProvider, FakeScenario

from app.core.classification import (
    SAFE_DEFAULT,
    Classification,
    Complexity,
    RequestClassifier,
    Risk,
    Topic,
    build_classification,
    detect_deterministic_classification,
)
from app.services.llm import ProviderRegistry


def test_dosage_question_is_blocked_deterministically() -> None:
    result = detect_deterministic_classification("How many mg of melatonin should I take?")
    assert result == Classification(Topic.supplements_safety, Risk.high, Complexity.simple, allow_answer=False)


def test_crisis_outranks_other_matches() -> None:
    result = detect_deterministic_classification("I want to die, how many pills should I take?")
    assert result is not None
    assert result.topic == Topic.emotional_crisis
    assert result.allow_answer is False


def test_acute_symptoms_are_blocked() -> None:
    result = detect_deterministic_classification("sudden chest pain while running")
    assert result is not None
    assert result.topic == Topic.medical_acute
    assert result.risk == Risk.high


def test_moderate_protocol_is_allowed_with_rag() -> None:
    result = detect_deterministic_classification("How do I prepare for a 3-day fast?")
    assert result == Classification(
        Topic.fasting, Risk.moderate, Complexity.complex, allow_answer=True, needs_rag=True
    )


def test_extreme_protocol_is_blocked() -> None:
    result = detect_deterministic_classification("Walk me through a dry fast")
    assert result is not None
    assert result.allow_answer is False
    assert result.topic == Topic.fasting


def test_plain_question_has_no_deterministic_match() -> None:
    assert detect_deterministic_classification("What is VO2 max?") is None


def test_build_classification_normalises_aliases() -> None:
    result = build_classification(
        {"topic": "Exercise", "risk": "medium", "complexity": "high", "needs_rag": True, "allow_answer": True}
    )
    assert result.topic == Topic.exercise
    assert result.risk == Risk.moderate
    assert result.complexity == Complexity.complex
    assert result.needs_rag is True


def test_build_classification_unknown_values_fall_back() -> None:
    result = build_classification({"topic": "astrology", "risk": "spicy", "complexity": "??"})
    assert result == Classification(Topic.general, Risk.low, Complexity.simple, allow_answer=True, needs_rag=False)


def test_build_classification_forces_block_for_crisis_topics() -> None:
    result = build_classification({"topic": "medical_acute", "risk": "low", "allow_answer": True})
    assert result.allow_answer is False
    assert result.risk == Risk.high


@pytest.mark.anyio
async def test_classifier_skips_llm_for_deterministic_match() -> None:
    provider = FakeProvider("openai", json_response={"topic": "sleep"})
    classifier = RequestClassifier(ProviderRegistry([provider]), provider="openai", model="cheap")
    result = await classifier.classify("How many mg of melatonin should I take?")
    assert result.allow_answer is False
    assert provider.json_calls == 0


@pytest.mark.anyio
async def test_classifier_uses_cheap_model_json() -> None:
    provider = FakeProvider(
        "openai",
        json_response={"topic": "sleep", "risk": "low", "complexity": "low", "needs_rag": True, "allow_answer": True},
    )
    classifier = RequestClassifier(ProviderRegistry([provider]), provider="openai", model="cheap")
    result = await classifier.classify("Why do I wake up at 3am?")
    assert result.topic == Topic.sleep
    assert result.needs_rag is True
    assert provider.models == ["cheap"]


@pytest.mark.anyio
async def test_classifier_failure_returns_safe_default() -> None:
    provider = FakeProvider("openai", scenario=FakeScenario.PROVIDER_ERROR)
    classifier = RequestClassifier(ProviderRegistry([provider]), provider="openai", model="cheap")
    assert await classifier.classify("What is VO2 max?") == SAFE_DEFAULT


@pytest.mark.anyio
async def test_classifier_without_provider_returns_safe_default() -> None:
    classifier = RequestClassifier(ProviderRegistry(), provider="openai", model="cheap")
    result = await classifier.classify("What is VO2 max?")
    assert result.topic == Topic.general
    assert result.risk == Risk.low
    assert result.complexity == Complexity.simple
    assert result.allow_answer is True

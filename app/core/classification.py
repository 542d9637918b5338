import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

from app.core import safety
from app.core.errors import ProviderError
from app.services.llm import ProviderRegistry, get_provider_registry

logger = logging.getLogger("uvicorn.error")

CLASSIFIER_PROVIDER = os.getenv("CLASSIFIER_PROVIDER", "openai")
CLASSIFIER_MODEL = os.getenv("OPENAI_CHEAP_MODEL", "gpt-4o-mini")
CLASSIFIER_MAX_TOKENS = int(os.getenv("CLASSIFIER_MAX_TOKENS", "200"))


class Topic(str, Enum):
    sleep = "sleep"
    anxiety = "anxiety"
    stress = "stress"
    nutrition = "nutrition"
    meal_planning = "meal_planning"
    supplements_general = "supplements_general"
    supplements_safety = "supplements_safety"
    exercise = "exercise"
    longevity = "longevity"
    fasting = "fasting"
    sauna_cold = "sauna_cold"
    condition_support = "condition_support"
    lab_interpretation_general = "lab_interpretation_general"
    metrics_analysis = "metrics_analysis"
    wearable_analysis = "wearable_analysis"
    general = "general"
    emotional_crisis = "emotional_crisis"
    medical_acute = "medical_acute"
    other = "other"


class Risk(str, Enum):
    none = "none"
    low = "low"
    moderate = "moderate"
    high = "high"


class Complexity(str, Enum):
    simple = "simple"
    complex = "complex"


BLOCKING_TOPICS = {Topic.emotional_crisis, Topic.medical_acute}

_RISK_ALIASES = {
    "none": Risk.none,
    "low": Risk.low,
    "medium": Risk.moderate,
    "moderate": Risk.moderate,
    "high": Risk.high,
}

_COMPLEXITY_ALIASES = {
    "simple": Complexity.simple,
    "low": Complexity.simple,
    "medium": Complexity.complex,
    "high": Complexity.complex,
    "complex": Complexity.complex,
}


@dataclass(frozen=True)
class Classification:
    topic: Topic = Topic.general
    risk: Risk = Risk.low
    complexity: Complexity = Complexity.simple
    allow_answer: bool = True
    needs_rag: bool = False


SAFE_DEFAULT = Classification()

CLASSIFIER_SYSTEM_PROMPT = """You are a classifier for a health optimisation coaching assistant.

You never answer questions, only label them.

Respond ONLY with JSON of this exact shape:
{
  "topic": string,
  "complexity": "low" | "medium" | "high",
  "risk": "none" | "low" | "medium" | "high",
  "needs_rag": boolean,
  "allow_answer": boolean
}

Topic options: sleep, anxiety, stress, nutrition, meal_planning, supplements_general,
supplements_safety, exercise, longevity, fasting, sauna_cold, condition_support,
lab_interpretation_general, metrics_analysis, wearable_analysis, general,
emotional_crisis, medical_acute, other.

Risk:
- "none"/"low": general education, no protocols, no acute issues
- "medium": biohacking protocols (fasting, sauna/cold, supplements) but not acute
- "high": supplement or drug dosages, long fasts, extreme protocols, acute symptoms, emotional crisis

needs_rag: true when the question asks for detailed explanations, protocols or expert material.

allow_answer is false for self-harm or suicide, explicit medication or supplement dosing
(mg, tablets per day, titration schedules) and signs of an acute emergency. Otherwise true.
"""


def detect_deterministic_classification(message: str) -> Optional[Classification]:
    if safety.has_crisis_language(message):
        return Classification(Topic.emotional_crisis, Risk.high, Complexity.complex, allow_answer=False)
    if safety.has_acute_symptoms(message):
        return Classification(Topic.medical_acute, Risk.high, Complexity.complex, allow_answer=False)
    if safety.is_dosage_question(message):
        return Classification(Topic.supplements_safety, Risk.high, Complexity.simple, allow_answer=False)
    if safety.has_extreme_protocol(message):
        return Classification(Topic.fasting, Risk.high, Complexity.complex, allow_answer=False)
    if safety.has_moderate_protocol(message):
        return Classification(
            Topic.fasting, Risk.moderate, Complexity.complex, allow_answer=True, needs_rag=True
        )
    return None


def build_classification(raw: dict[str, Any]) -> Classification:
    try:
        topic = Topic(str(raw.get("topic") or "general").strip().lower())
    except ValueError:
        topic = Topic.general
    risk = _RISK_ALIASES.get(str(raw.get("risk") or "").strip().lower(), Risk.low)
    complexity = _COMPLEXITY_ALIASES.get(
        str(raw.get("complexity") or "").strip().lower(), Complexity.simple
    )
    allow_answer = raw.get("allow_answer")
    classification = Classification(
        topic=topic,
        risk=risk,
        complexity=complexity,
        allow_answer=allow_answer if isinstance(allow_answer, bool) else True,
        needs_rag=raw.get("needs_rag") is True,
    )
    if classification.topic in BLOCKING_TOPICS:
        classification = replace(classification, allow_answer=False, risk=Risk.high)
    return classification


class RequestClassifier:
    def __init__(
        self,
        registry: ProviderRegistry,
        provider: str = CLASSIFIER_PROVIDER,
        model: str = CLASSIFIER_MODEL,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.model = model

    async def classify(self, message: str) -> Classification:
        deterministic = detect_deterministic_classification(message)
        if deterministic is not None:
            return deterministic
        try:
            provider = self.registry.get(self.provider)
            raw = await provider.complete_json(
                self.model,
                CLASSIFIER_SYSTEM_PROMPT,
                f'Classify this user message:\n\n"{message}"\n\nRespond with ONLY valid JSON.',
                CLASSIFIER_MAX_TOKENS,
            )
        except (ProviderError, ValueError) as exc:
            logger.warning(
                "chat_classifier_failed provider=%s detail=%s question=%s",
                self.provider,
                str(exc)[:220],
                message[:100],
            )
            return SAFE_DEFAULT
        return build_classification(raw)


def get_request_classifier() -> RequestClassifier:
    return RequestClassifier(get_provider_registry())

import re

CRISIS_PATTERNS = [
    "kill myself",
    "suicide",
    "end my life",
    "want to die",
    "wish i was dead",
    "hurt myself",
    "self harm",
    "self-harm",
    "harm myself",
    "hurt someone",
    "voices telling me",
]

ACUTE_SYMPTOM_PATTERNS = [
    "chest pain",
    "face drooping",
    "stroke",
    "can't breathe",
    "cannot breathe",
    "trouble breathing",
    "shortness of breath",
    "severe allergic",
    "throat is swelling",
    "heart attack",
]

EXTREME_PROTOCOL_PATTERNS = [
    "7-day fast",
    "7 day fast",
    "dry fast",
    "dry fasting",
    "water fast for a week",
    "water-only fast",
    "multi-day fast",
    "stacking extreme stressors",
    "sauna endurance",
]

MODERATE_PROTOCOL_PATTERNS = [
    "3-day fast",
    "3 day fast",
    "three day fast",
    "extended fast",
    "prolonged fast",
    "ice bath protocol",
    "sauna protocol",
]

DOSING_CUE_PATTERNS = [
    "how many",
    "how much",
    "dose",
    "dosage",
    "dosing",
    "should i take",
    "titrat",
]

DOSE_UNIT_RE = re.compile(
    r"(\d\s*|\b)(mg|mcg|µg|ug|iu|ml|milligrams?|micrograms?|grams?|tablets?|pills?|capsules?)\b"
)


def _contains_any(text: str, patterns: list[str]) -> bool:
    lowered = text.lower()
    return any(pattern in lowered for pattern in patterns)


def has_crisis_language(question: str) -> bool:
    return _contains_any(question, CRISIS_PATTERNS)


def has_acute_symptoms(question: str) -> bool:
    return _contains_any(question, ACUTE_SYMPTOM_PATTERNS)


def has_extreme_protocol(question: str) -> bool:
    return _contains_any(question, EXTREME_PROTOCOL_PATTERNS)


def has_moderate_protocol(question: str) -> bool:
    return _contains_any(question, MODERATE_PROTOCOL_PATTERNS)


def is_dosage_question(question: str) -> bool:
    lowered = question.lower()
    if not DOSE_UNIT_RE.search(lowered):
        return False
    return any(cue in lowered for cue in DOSING_CUE_PATTERNS)


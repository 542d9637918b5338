from app.core.safety import (
    has_acute_symptoms,
    has_crisis_language,
    has_extreme_protocol,
    has_moderate_protocol,
    is_dosage_question,
)


def test_detects_acute_chest_pain() -> None:
    assert has_acute_symptoms("I have chest pain and feel faint.")
    assert not has_acute_symptoms("My chest day at the gym went well.")


def test_detects_crisis_language_case_insensitive() -> None:
    assert has_crisis_language("Sometimes I Want To Die")
    assert not has_crisis_language("I want to improve my deadlift")


def test_dosage_question_needs_unit_and_cue() -> None:
    assert is_dosage_question("How many mg of melatonin should I take?")
    assert is_dosage_question("What dose of vitamin D in IU is right?")
    assert is_dosage_question("how much magnesium, 400mg?")
    assert not is_dosage_question("Is melatonin useful for jet lag?")
    assert not is_dosage_question("I take 5 mg of melatonin already")


def test_protocol_patterns_split_extreme_and_moderate() -> None:
    assert has_extreme_protocol("Can I do a 7-day fast next week?")
    assert not has_moderate_protocol("Can I do a 7-day fast next week?")
    assert has_moderate_protocol("Thinking about an extended fast")
    assert not has_extreme_protocol("Thinking about an extended fast")

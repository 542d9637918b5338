from dataclasses import dataclass
from typing import Optional

from app.core.classification import Classification, RequestClassifier, Risk, Topic

CRISIS_SUPPORT_TEXT = (
    "I'm really glad you reached out. When thoughts of self-harm or suicide are present, "
    "you deserve immediate support from a real person.\n\n"
    "Please contact one of these now:\n"
    "- Your local emergency number or a crisis line (988 in the U.S.)\n"
    "- Your GP or mental health service\n"
    "- Someone you trust who can stay with you\n\n"
    "Feeling this way does not make you weak or broken. A clinician can help you build a plan. "
    "Once you're connected with support I can help with routines, sleep and small daily habits."
)

ACUTE_SYMPTOM_TEXT = (
    "I can't safely help with symptoms like chest pain, stroke signs or serious breathing problems.\n\n"
    "Please get medical help right away:\n"
    "- Call your local emergency number\n"
    "- Go to the nearest emergency department\n"
    "- Do not drive yourself if you feel faint or unstable\n\n"
    "These symptoms need an in-person assessment by a healthcare professional."
)

GENERIC_REFUSAL_TEXT = (
    "I'm not able to give safe guidance on this without professional oversight.\n\n"
    "Your healthcare provider can look at your full situation and give advice that fits you.\n\n"
    "I'm happy to help with general sleep, nutrition, exercise and lifestyle questions in the meantime."
)

GENERIC_SAFE_ANSWERS: dict[Topic, str] = {
    Topic.sleep: (
        "Some general principles for better sleep:\n\n"
        "- Keep a consistent wake time, including weekends\n"
        "- Get outdoor light within an hour of waking\n"
        "- Stop caffeine 8-10 hours before bed\n"
        "- Keep the bedroom cool, dark and quiet\n"
        "- Dim screens and lights in the last hour before bed\n\n"
        "If sleep problems persist, a sleep specialist or your GP can help."
    ),
    Topic.anxiety: (
        "Some general strategies that help many people with anxiety:\n\n"
        "- Regular movement, especially rhythmic cardio\n"
        "- Slow breathing with long exhales\n"
        "- Journaling and predictable daily routines\n"
        "- Time with people you trust\n\n"
        "If anxiety is persistent or disabling, please speak with a mental health professional."
    ),
    Topic.nutrition: (
        "Some general nutrition principles:\n\n"
        "- Build meals around whole, minimally processed foods\n"
        "- Include a protein source at each meal\n"
        "- Eat plenty of vegetables and fibre\n"
        "- Stay hydrated through the day\n\n"
        "A registered dietitian can personalise this for you."
    ),
}


@dataclass(frozen=True)
class ClassificationOutcome:
    classification: Classification
    triage_message: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.triage_message is not None


def build_triage_message(topic: Topic, risk: Risk) -> str:
    if topic == Topic.emotional_crisis:
        return CRISIS_SUPPORT_TEXT
    if topic == Topic.medical_acute:
        return ACUTE_SYMPTOM_TEXT
    if risk == Risk.high and topic in {Topic.supplements_general, Topic.supplements_safety, Topic.fasting}:
        subject = "extended fasting" if topic == Topic.fasting else "supplements or medications"
        return (
            f"I can't give specific dosages, schedules or detailed protocols for {subject} "
            "without medical oversight.\n\n"
            "Your clinician or a qualified healthcare provider can check your health status, "
            "medications and any contraindications, and give guidance that is safe for you.\n\n"
            "I'm happy to explain general principles and how these approaches work."
        )
    return GENERIC_REFUSAL_TEXT


def build_generic_safe_answer(topic: Topic) -> str:
    answer = GENERIC_SAFE_ANSWERS.get(topic)
    if answer:
        return answer
    label = topic.value.replace("_", " ")
    return (
        f"I'd be glad to help with {label}, but I need a little more about your situation first.\n\n"
        f"- Which part of {label} are you most interested in?\n"
        "- What are your goals or concerns?\n"
        "- What have you already tried?"
    )


async def classify_and_triage(message: str, classifier: RequestClassifier) -> ClassificationOutcome:
    classification = await classifier.classify(message)
    if classification.allow_answer:
        return ClassificationOutcome(classification=classification)
    return ClassificationOutcome(
        classification=classification,
        triage_message=build_triage_message(classification.topic, classification.risk),
    )

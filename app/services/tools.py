import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("uvicorn.error")

TOOL_INPUT_HELP = (
    "I couldn't work out the details for that request. Try something like "
    "\"Calculate my macros for weight loss, 80 kg, active\" or "
    "\"Build me a sleep plan, I wake up at 6:30\"."
)

Goal = Literal["weight_loss", "muscle_gain", "maintenance", "performance", "body_recomposition"]
ActivityLevel = Literal["sedentary", "light", "moderate", "active", "very_active", "athlete"]
DietaryPreference = Literal["standard", "keto", "low_carb", "high_carb", "high_protein", "paleo"]
SleepIssue = Literal["falling_asleep", "staying_asleep", "waking_early", "poor_quality", "fatigue"]
SleepGoal = Literal["better_sleep", "energy", "performance", "recovery"]
StressLevel = Literal["low", "moderate", "high", "chronic"]
StressGoal = Literal["reduce_stress", "improve_sleep", "enhance_focus", "manage_anxiety"]
TimeAvailable = Literal["minimal", "moderate", "extensive"]


class MacroCalculatorInput(BaseModel):
    goal: Goal = "maintenance"
    activity_level: ActivityLevel = "moderate"
    weight_kg: float = Field(ge=30, le=300)
    dietary_preference: DietaryPreference = "standard"
    meals_per_day: int = Field(default=3, ge=1, le=6)


class SleepOptimizerInput(BaseModel):
    wake_time: str = Field(default="06:30", pattern=r"^([01]?\d|2[0-3]):[0-5]\d$")
    target_hours: float = Field(default=8, ge=6, le=10)
    sleep_issues: list[SleepIssue] = Field(default_factory=list)
    goals: list[SleepGoal] = Field(default_factory=lambda: ["better_sleep"])


class StressManagementInput(BaseModel):
    stress_level: StressLevel = "moderate"
    goals: list[StressGoal] = Field(default_factory=lambda: ["reduce_stress"])
    time_available: TimeAvailable = "moderate"


@dataclass(frozen=True)
class ToolDef:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: Callable[[Any], dict[str, Any]]
    formatter: Callable[[dict[str, Any]], str]


@dataclass(frozen=True)
class ToolCall:
    name: str
    args: dict[str, Any]


@dataclass(frozen=True)
class ToolOutcome:
    name: str
    text: str
    success: bool


# --- macro calculator ---

ACTIVITY_MULTIPLIERS = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
    "very_active": 1.9,
    "athlete": 2.0,
}

GOAL_ADJUSTMENTS = {
    "weight_loss": -500,
    "muscle_gain": 300,
    "body_recomposition": -200,
    "performance": 100,
    "maintenance": 0,
}

DIET_SPLITS = {
    "keto": (20, 5, 75),
    "low_carb": (30, 20, 50),
    "high_carb": (20, 60, 20),
    "high_protein": (35, 35, 30),
    "paleo": (30, 30, 40),
}

MEAL_SPLITS = {
    1: [("One Meal", 1.0)],
    2: [("Meal 1", 0.4), ("Meal 2", 0.6)],
    3: [("Breakfast", 0.3), ("Lunch", 0.35), ("Dinner", 0.35)],
}
EXTRA_MEAL_NAMES = ["Breakfast", "Mid-Morning Snack", "Lunch", "Afternoon Snack", "Dinner", "Evening Snack"]


def _macro_split(goal: str, preference: str) -> tuple[int, int, int]:
    if preference in DIET_SPLITS:
        return DIET_SPLITS[preference]
    if goal == "weight_loss":
        return 35, 35, 30
    return 30, 40, 30


def _meal_shares(meals_per_day: int) -> list[tuple[str, float]]:
    if meals_per_day in MEAL_SPLITS:
        return MEAL_SPLITS[meals_per_day]
    return [(EXTRA_MEAL_NAMES[index], 1 / meals_per_day) for index in range(meals_per_day)]


def calculate_macros(data: MacroCalculatorInput) -> dict[str, Any]:
    # Weight-only estimate of BMR; height and age are not collected from chat text.
    bmr = data.weight_kg * 22
    tdee = round(bmr * ACTIVITY_MULTIPLIERS[data.activity_level])
    adjustment = GOAL_ADJUSTMENTS[data.goal]
    target = tdee + adjustment
    if data.goal == "weight_loss":
        target = max(target, round(bmr * 1.1))

    protein_pct, carbs_pct, fat_pct = _macro_split(data.goal, data.dietary_preference)
    if data.goal in ("muscle_gain", "body_recomposition"):
        protein = round(data.weight_kg * 2.3)
        remaining = target - protein * 4
        carbs = round(remaining * carbs_pct / (carbs_pct + fat_pct) / 4)
        fat = round(remaining * fat_pct / (carbs_pct + fat_pct) / 9)
    else:
        protein = round(target * protein_pct / 100 / 4)
        carbs = round(target * carbs_pct / 100 / 4)
        fat = round(target * fat_pct / 100 / 9)

    meals = [
        {
            "meal": name,
            "calories": round(target * share),
            "protein": round(protein * share),
            "carbs": round(carbs * share),
            "fat": round(fat * share),
        }
        for name, share in _meal_shares(data.meals_per_day)
    ]
    tips = []
    if data.goal == "weight_loss":
        tips.append("Prioritise protein to keep muscle while in a deficit.")
        tips.append("Aim for 0.5-1 kg per week and adjust by 100-200 kcal if progress stalls.")
    if data.goal == "muscle_gain":
        tips.append("Spread protein across meals, especially around training.")
    if data.dietary_preference == "keto":
        tips.append("Keep net carbs low and watch electrolytes during adaptation.")
    tips.append("Track for 2-4 weeks, then adjust based on results.")
    return {
        "goal": data.goal,
        "bmr": round(bmr),
        "tdee": tdee,
        "target_calories": target,
        "adjustment": adjustment,
        "macros": {"protein": protein, "carbs": carbs, "fat": fat},
        "meals": meals,
        "tips": tips,
    }


def format_macros(result: dict[str, Any]) -> str:
    macros = result["macros"]
    lines = [
        f"## Daily macro targets ({result['target_calories']} kcal)",
        "",
        f"Estimated maintenance: {result['tdee']} kcal (adjustment {result['adjustment']:+d} kcal for {result['goal'].replace('_', ' ')}).",
        "",
        f"**Protein** {macros['protein']} g · **Carbs** {macros['carbs']} g · **Fat** {macros['fat']} g",
        "",
        "### Per meal",
    ]
    for meal in result["meals"]:
        lines.append(
            f"- {meal['meal']}: {meal['calories']} kcal, P {meal['protein']} g / C {meal['carbs']} g / F {meal['fat']} g"
        )
    lines.append("")
    lines.append("### Tips")
    lines.extend(f"- {tip}" for tip in result["tips"])
    lines.append("")
    lines.append("These are estimates, not medical advice. A dietitian can tailor them to you.")
    return "\n".join(lines)


# --- sleep optimizer ---

SLEEP_ISSUE_TIPS = {
    "falling_asleep": "Start a 60 minute wind-down and keep the bedroom for sleep only.",
    "staying_asleep": "Keep the room cool and dark, and limit fluids in the last two hours.",
    "waking_early": "Avoid bright light before your planned wake time and keep evenings dim.",
    "poor_quality": "Keep alcohol and heavy meals away from the last three hours before bed.",
    "fatigue": "Protect a fixed wake time for two weeks before changing anything else.",
}


def _minutes(clock: str) -> int:
    hours, minutes = clock.split(":")
    return int(hours) * 60 + int(minutes)


def _clock(total_minutes: float) -> str:
    total = int(round(total_minutes)) % (24 * 60)
    return f"{total // 60:02d}:{total % 60:02d}"


def optimize_sleep(data: SleepOptimizerInput) -> dict[str, Any]:
    wake = _minutes(data.wake_time)
    bedtime = wake - data.target_hours * 60
    schedule = [
        (_clock(wake), "Get outdoor light for 5-10 minutes within an hour of waking."),
        (_clock(wake + 8 * 60), "Last caffeine of the day."),
        (_clock(bedtime - 180), "Finish your last large meal."),
        (_clock(bedtime - 120), "Dim the lights and lower the bedroom temperature to 18-20 °C."),
        (_clock(bedtime - 60), "Screens off, start your wind-down routine."),
        (_clock(bedtime), "Lights out."),
    ]
    return {
        "bedtime": _clock(bedtime),
        "wake_time": _clock(wake),
        "target_hours": data.target_hours,
        "schedule": schedule,
        "issue_tips": [SLEEP_ISSUE_TIPS[issue] for issue in data.sleep_issues],
        "goals": list(data.goals),
    }


def format_sleep_plan(result: dict[str, Any]) -> str:
    lines = [
        f"## Sleep plan: bed at {result['bedtime']}, up at {result['wake_time']}",
        "",
        f"This gives you a {result['target_hours']:g} hour sleep window.",
        "",
        "### Daily schedule",
    ]
    lines.extend(f"- **{time}** {action}" for time, action in result["schedule"])
    if result["issue_tips"]:
        lines.append("")
        lines.append("### For the issues you mentioned")
        lines.extend(f"- {tip}" for tip in result["issue_tips"])
    lines.append("")
    lines.append("Keep the same wake time every day, including weekends. If poor sleep persists, talk to your GP.")
    return "\n".join(lines)


# --- stress management ---

STRESS_TECHNIQUES = {
    "minimal": [
        ("Physiological sigh", "2 minutes", "Two inhales through the nose, one long exhale. Repeat 3-5 times."),
        ("Box breathing", "3 minutes", "Inhale 4, hold 4, exhale 4, hold 4."),
    ],
    "moderate": [
        ("Box breathing", "5 minutes", "Inhale 4, hold 4, exhale 4, hold 4."),
        ("Outdoor walk", "15 minutes", "Easy pace, no phone."),
        ("Body scan", "10 minutes", "Lying down, move attention slowly from feet to head."),
    ],
    "extensive": [
        ("Box breathing", "5 minutes", "Inhale 4, hold 4, exhale 4, hold 4."),
        ("Zone 2 cardio", "30 minutes", "Conversational pace."),
        ("Non-sleep deep rest", "20 minutes", "Guided NSDR or yoga nidra recording."),
        ("Journaling", "10 minutes", "Write down open loops before bed."),
    ],
}

STRESS_GOAL_TIPS = {
    "reduce_stress": "Schedule the practice at the same time each day so it becomes automatic.",
    "improve_sleep": "Do the longest practice in the evening, at least an hour before bed.",
    "enhance_focus": "Use the breathing drill between deep-work blocks.",
    "manage_anxiety": "Longer exhales than inhales calm the nervous system fastest.",
}


def plan_stress_routine(data: StressManagementInput) -> dict[str, Any]:
    return {
        "stress_level": data.stress_level,
        "techniques": STRESS_TECHNIQUES[data.time_available],
        "goal_tips": [STRESS_GOAL_TIPS[goal] for goal in data.goals],
        "escalate": data.stress_level == "chronic",
    }


def format_stress_routine(result: dict[str, Any]) -> str:
    lines = ["## Stress management routine", "", "### Daily practices"]
    lines.extend(f"- **{name}** ({duration}): {how}" for name, duration, how in result["techniques"])
    if result["goal_tips"]:
        lines.append("")
        lines.append("### Focus")
        lines.extend(f"- {tip}" for tip in result["goal_tips"])
    if result["escalate"]:
        lines.append("")
        lines.append("Chronic stress deserves real support: please consider talking to your GP or a therapist.")
    return "\n".join(lines)


# --- registry and detection ---


class ToolRegistry:
    """Name -> tool lookup, filled explicitly before first use."""

    def __init__(self, tools: tuple[ToolDef, ...] = ()) -> None:
        self._tools: dict[str, ToolDef] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDef) -> ToolDef:
        self._tools[tool.name] = tool
        return tool

    def get(self, name: str) -> Optional[ToolDef]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)


def build_tool_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolDef(
            name="sleep_optimizer",
            description="Sleep schedule built backwards from a fixed wake time.",
            input_model=SleepOptimizerInput,
            handler=optimize_sleep,
            formatter=format_sleep_plan,
        )
    )
    registry.register(
        ToolDef(
            name="macro_calculator",
            description="Calorie and macronutrient targets from goal, activity and body weight.",
            input_model=MacroCalculatorInput,
            handler=calculate_macros,
            formatter=format_macros,
        )
    )
    registry.register(
        ToolDef(
            name="stress_management",
            description="Daily breathing and recovery routine sized to the time available.",
            input_model=StressManagementInput,
            handler=plan_stress_routine,
            formatter=format_stress_routine,
        )
    )
    return registry


_tool_registry: Optional[ToolRegistry] = None


def get_tool_registry() -> ToolRegistry:
    global _tool_registry
    if _tool_registry is None:
        _tool_registry = build_tool_registry()
    return _tool_registry


_PLAN_INTENT = re.compile(r"\b(plans?|protocols?|schedules?|routines?|program(?:me)?s?|optimi[sz](?:e|ing))\b", re.IGNORECASE)
_SLEEP_TERMS = re.compile(r"\b(sleep|insomnia|circadian|bedtime)", re.IGNORECASE)
_MACRO_TERMS = re.compile(r"\b(macros?|macronutrients?|calories|kcal)\b", re.IGNORECASE)
_MACRO_INTENT = re.compile(r"\b(calculate|work out|need|target|goal|should)\b", re.IGNORECASE)
_STRESS_TERMS = re.compile(r"\b(stress|stressed|anxiety|anxious|overwhelm(ed)?|cortisol|calm down)\b", re.IGNORECASE)
_STRESS_INTENT = re.compile(r"\b(plan|protocol|routine|manage|reduce|technique|techniques)\b", re.IGNORECASE)
_WEIGHT = re.compile(r"(\d{2,3}(?:\.\d+)?)\s*(kg|kilos?|lbs?|pounds?)\b", re.IGNORECASE)
_WAKE = re.compile(r"\bwake(?: up)?(?: at)?\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)?", re.IGNORECASE)


def _first(patterns: list[tuple[str, str]], text: str, default: str) -> str:
    for pattern, value in patterns:
        if re.search(pattern, text, re.IGNORECASE):
            return value
    return default


def _sleep_args(text: str) -> dict[str, Any]:
    args: dict[str, Any] = {}
    wake = _WAKE.search(text)
    if wake:
        hour = int(wake.group(1))
        minute = int(wake.group(2) or 0)
        meridiem = (wake.group(3) or "").lower()
        if meridiem == "pm" and hour < 12:
            hour += 12
        if meridiem == "am" and hour == 12:
            hour = 0
        args["wake_time"] = f"{hour:02d}:{minute:02d}"
    issues = [
        issue
        for pattern, issue in [
            (r"fall(ing)? asleep", "falling_asleep"),
            (r"stay(ing)? asleep|wake up at night|waking up at night", "staying_asleep"),
            (r"wak(e|ing) (up )?(too )?early", "waking_early"),
            (r"restless|unrefreshed|poor (sleep )?quality", "poor_quality"),
            (r"tired|fatigue|exhausted", "fatigue"),
        ]
        if re.search(pattern, text, re.IGNORECASE)
    ]
    if issues:
        args["sleep_issues"] = issues
    return args


def _macro_args(text: str) -> dict[str, Any]:
    args: dict[str, Any] = {
        "goal": _first(
            [
                (r"weight loss|lose weight|fat loss|\bcut\b", "weight_loss"),
                (r"muscle gain|build muscle|gain muscle|\bbulk", "muscle_gain"),
                (r"recomp", "body_recomposition"),
                (r"performance|athletic", "performance"),
            ],
            text,
            "maintenance",
        ),
        "activity_level": _first(
            [
                (r"\bathlete", "athlete"),
                (r"very active", "very_active"),
                (r"\bactive\b", "active"),
                (r"\blight(ly active)?\b", "light"),
                (r"sedentary|desk job", "sedentary"),
            ],
            text,
            "moderate",
        ),
        "dietary_preference": _first(
            [
                (r"\bketo", "keto"),
                (r"low[- ]carb", "low_carb"),
                (r"high[- ]carb", "high_carb"),
                (r"high[- ]protein", "high_protein"),
                (r"\bpaleo", "paleo"),
            ],
            text,
            "standard",
        ),
        "weight_kg": 70.0,
    }
    weight = _WEIGHT.search(text)
    if weight:
        value = float(weight.group(1))
        if weight.group(2).lower().startswith(("lb", "pound")):
            value *= 0.453592
        args["weight_kg"] = round(value, 1)
    meals = re.search(r"(\d)\s*meals", text, re.IGNORECASE)
    if meals:
        args["meals_per_day"] = int(meals.group(1))
    return args


def _stress_args(text: str) -> dict[str, Any]:
    goals = [
        goal
        for pattern, goal in [
            (r"reduce stress|manage stress|lower stress", "reduce_stress"),
            (r"\bsleep", "improve_sleep"),
            (r"focus|concentration", "enhance_focus"),
            (r"anxi|panic|worry", "manage_anxiety"),
        ]
        if re.search(pattern, text, re.IGNORECASE)
    ]
    return {
        "stress_level": _first(
            [(r"chronic|severe|extreme", "chronic"), (r"\bhigh|very stressed", "high"), (r"\blow\b|a little", "low")],
            text,
            "moderate",
        ),
        "goals": goals or ["reduce_stress"],
        "time_available": _first(
            [(r"busy|quick|little time|minimal", "minimal"), (r"plenty of time|lots of time", "extensive")],
            text,
            "moderate",
        ),
    }


def detect_tool_from_text(text: str) -> Optional[ToolCall]:
    """Map a plain-language request onto a tool call, or None for ordinary questions."""
    if _SLEEP_TERMS.search(text) and _PLAN_INTENT.search(text):
        return ToolCall("sleep_optimizer", _sleep_args(text))
    if _MACRO_TERMS.search(text) and _MACRO_INTENT.search(text):
        return ToolCall("macro_calculator", _macro_args(text))
    if _STRESS_TERMS.search(text) and _STRESS_INTENT.search(text):
        return ToolCall("stress_management", _stress_args(text))
    return None


def run_tool(tool: ToolDef, args: dict[str, Any]) -> ToolOutcome:
    try:
        data = tool.input_model.model_validate(args)
    except ValidationError as exc:
        logger.warning("chat_tool_input_invalid tool=%s errors=%s", tool.name, exc.error_count())
        return ToolOutcome(name=tool.name, text=TOOL_INPUT_HELP, success=False)
    return ToolOutcome(name=tool.name, text=tool.formatter(tool.handler(data)), success=True)

from datetime import timedelta
from typing import Callable, Optional, Protocol

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.db.models import (
    CareCheckIn,
    CareContact,
    CareSettings,
    CheckIn,
    Experiment,
    Habit,
    HabitLog,
    ProtocolLog,
    ProtocolRun,
    Supplement,
    SupplementLog,
    UserProfile,
    WearableDaily,
    WomensHealthProfile,
    utcnow,
)

CHECK_IN_LOOKBACK_DAYS = 7
WEARABLE_LOOKBACK_DAYS = 7
TOP_STREAKS = 3
MAX_EXPERIMENTS = 5


def _avg(values: list[float]) -> Optional[float]:
    if not values:
        return None
    return round(sum(values) / len(values), 1)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def profile_digest(db: Session, user_id: int) -> Optional[str]:
    profile = db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
    if not profile:
        return None
    lines = []
    for label, value in (
        ("Goals", profile.goals),
        ("Main struggles", profile.main_struggles),
        ("Age", profile.age_years),
        ("Sex at birth", profile.sex_at_birth),
        ("Activity level", profile.activity_level),
    ):
        if value not in (None, ""):
            lines.append(f"{label}: {value}")
    return "\n".join(lines) or None


def today_mode(db: Session, user_id: int) -> Optional[str]:
    profile = db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
    if not profile or not profile.today_mode:
        return None
    return profile.today_mode.strip().upper()


def protocol_status_digest(db: Session, user_id: int) -> Optional[str]:
    run = (
        db.query(ProtocolRun)
        .filter(ProtocolRun.user_id == user_id, ProtocolRun.status == "active")
        .order_by(ProtocolRun.started_at.desc())
        .first()
    )
    if not run:
        return None
    day_number = min(run.duration_days, (utcnow().date() - run.started_at.date()).days + 1)
    status = f"Active protocol: {run.name} (day {day_number} of {run.duration_days})."
    today_log = (
        db.query(ProtocolLog)
        .filter(ProtocolLog.run_id == run.id, ProtocolLog.log_date == utcnow().date())
        .first()
    )
    if today_log and today_log.items_total:
        status += f" Today's checklist: {today_log.items_completed}/{today_log.items_total} complete."
    return status


def experiments_digest(db: Session, user_id: int) -> Optional[str]:
    rows = (
        db.query(Experiment)
        .filter(Experiment.user_id == user_id)
        .order_by(Experiment.started_at.desc())
        .limit(MAX_EXPERIMENTS)
        .all()
    )
    if not rows:
        return None
    parts = []
    for row in rows:
        line = f"{row.name} (since {row.started_at.date().isoformat()}) – {row.status}"
        if row.verdict:
            line += f" {row.verdict}"
        parts.append(line)
    return "; ".join(parts)


def care_status_digest(db: Session, user_id: int) -> Optional[str]:
    settings = db.query(CareSettings).filter(CareSettings.user_id == user_id).first()
    if not settings or not settings.enabled:
        return None
    contacts = db.query(func.count(CareContact.id)).filter(CareContact.user_id == user_id).scalar() or 0
    pending = (
        db.query(func.count(CareCheckIn.id))
        .filter(CareCheckIn.user_id == user_id, CareCheckIn.status == "pending")
        .scalar()
        or 0
    )
    return (
        f"Care Mode enabled with {_plural(int(contacts), 'contact')}. "
        f"{_plural(int(pending), 'pending check-in')}."
    )


def womens_health_digest(db: Session, user_id: int) -> Optional[str]:
    profile = db.query(WomensHealthProfile).filter(WomensHealthProfile.user_id == user_id).first()
    if not profile or not profile.enabled:
        return None
    parts = []
    if profile.cycle_phase:
        parts.append(f"Cycle phase: {profile.cycle_phase}.")
    if profile.cycle_day:
        parts.append(f"Cycle day {profile.cycle_day}.")
    symptoms = [item.strip() for item in (profile.recent_symptoms or "").split(",") if item.strip()]
    if symptoms:
        parts.append(f"Recent symptoms: {', '.join(symptoms)}.")
    return " ".join(parts) or "Women's health tracking enabled with no recent entries."


def habits_digest(db: Session, user_id: int) -> Optional[str]:
    habits = db.query(Habit).filter(Habit.user_id == user_id, Habit.is_active.is_(True)).all()
    if not habits:
        return None
    completed = (
        db.query(func.count(HabitLog.id))
        .filter(
            HabitLog.habit_id.in_([habit.id for habit in habits]),
            HabitLog.log_date == utcnow().date(),
            HabitLog.completed.is_(True),
        )
        .scalar()
        or 0
    )
    summary = f"{completed}/{len(habits)} habits completed today."
    streaks = sorted((habit for habit in habits if habit.current_streak > 0), key=lambda h: -h.current_streak)
    if streaks:
        top = ", ".join(f"{habit.name} ({habit.current_streak} days)" for habit in streaks[:TOP_STREAKS])
        summary += f" Top streaks: {top}"
    return summary


def supplements_digest(db: Session, user_id: int) -> Optional[str]:
    supplements = (
        db.query(Supplement).filter(Supplement.user_id == user_id, Supplement.is_active.is_(True)).all()
    )
    if not supplements:
        return None
    taken = (
        db.query(func.count(SupplementLog.id))
        .filter(
            SupplementLog.supplement_id.in_([item.id for item in supplements]),
            SupplementLog.log_date == utcnow().date(),
            SupplementLog.taken.is_(True),
        )
        .scalar()
        or 0
    )
    stack = ", ".join(
        f"{item.name} ({item.dosage})" if item.dosage else item.name for item in supplements
    )
    return f"{taken}/{len(supplements)} supplements taken today. Current stack: {stack}"


def check_ins_digest(db: Session, user_id: int) -> Optional[str]:
    since = utcnow() - timedelta(days=CHECK_IN_LOOKBACK_DAYS)
    rows = (
        db.query(CheckIn)
        .filter(CheckIn.user_id == user_id, CheckIn.created_at >= since)
        .order_by(CheckIn.created_at.asc())
        .all()
    )
    if not rows:
        return None
    summary = f"{_plural(len(rows), 'check-in')} in the last {CHECK_IN_LOOKBACK_DAYS} days."
    for label, attr in (("energy", "energy"), ("mood", "mood"), ("sleep quality", "sleep_quality")):
        avg = _avg([float(getattr(row, attr)) for row in rows if getattr(row, attr) is not None])
        if avg is not None:
            summary += f" Avg {label}: {avg}/10."
    notes = [row.note.strip() for row in rows if row.note and row.note.strip()]
    if notes:
        summary += f' Latest note: "{notes[-1][:200]}"'
    return summary


def wearable_digest(db: Session, user_id: int) -> Optional[str]:
    since = utcnow().date() - timedelta(days=WEARABLE_LOOKBACK_DAYS)
    rows = (
        db.query(WearableDaily)
        .filter(WearableDaily.user_id == user_id, WearableDaily.day >= since)
        .order_by(WearableDaily.day.asc())
        .all()
    )
    if not rows:
        return None
    parts = []
    sleep = _avg([row.sleep_hours for row in rows if row.sleep_hours is not None])
    hrv = _avg([row.hrv_ms for row in rows if row.hrv_ms is not None])
    resting_hr = _avg([row.resting_hr for row in rows if row.resting_hr is not None])
    steps = _avg([float(row.steps) for row in rows if row.steps is not None])
    if sleep is not None:
        parts.append(f"avg sleep {sleep}h")
    if hrv is not None:
        parts.append(f"avg HRV {hrv} ms")
    if resting_hr is not None:
        parts.append(f"avg resting HR {resting_hr} bpm")
    if steps is not None:
        parts.append(f"avg steps {int(steps)}")
    if not parts:
        return None
    return f"Last {_plural(len(rows), 'day')}: {', '.join(parts)}."


class UserDataSource(Protocol):
    async def profile(self, user_id: int) -> Optional[str]:
        ...

    async def today_mode(self, user_id: int) -> Optional[str]:
        ...

    async def protocol_status(self, user_id: int) -> Optional[str]:
        ...

    async def experiments_summary(self, user_id: int) -> Optional[str]:
        ...

    async def care_status(self, user_id: int) -> Optional[str]:
        ...

    async def womens_health_summary(self, user_id: int) -> Optional[str]:
        ...

    async def habits_summary(self, user_id: int) -> Optional[str]:
        ...

    async def supplements_summary(self, user_id: int) -> Optional[str]:
        ...

    async def check_ins_summary(self, user_id: int) -> Optional[str]:
        ...

    async def wearable_summary(self, user_id: int) -> Optional[str]:
        ...


class SqlUserDataSource:
    """Runs each digest query in the threadpool with its own session."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._session_factory = session_factory

    async def _run(self, digest: Callable[[Session, int], Optional[str]], user_id: int) -> Optional[str]:
        def _query() -> Optional[str]:
            factory = self._session_factory or SessionLocal
            db = factory()
            try:
                return digest(db, user_id)
            finally:
                db.close()

        return await run_in_threadpool(_query)

    async def profile(self, user_id: int) -> Optional[str]:
        return await self._run(profile_digest, user_id)

    async def today_mode(self, user_id: int) -> Optional[str]:
        return await self._run(today_mode, user_id)

    async def protocol_status(self, user_id: int) -> Optional[str]:
        return await self._run(protocol_status_digest, user_id)

    async def experiments_summary(self, user_id: int) -> Optional[str]:
        return await self._run(experiments_digest, user_id)

    async def care_status(self, user_id: int) -> Optional[str]:
        return await self._run(care_status_digest, user_id)

    async def womens_health_summary(self, user_id: int) -> Optional[str]:
        return await self._run(womens_health_digest, user_id)

    async def habits_summary(self, user_id: int) -> Optional[str]:
        return await self._run(habits_digest, user_id)

    async def supplements_summary(self, user_id: int) -> Optional[str]:
        return await self._run(supplements_digest, user_id)

    async def check_ins_summary(self, user_id: int) -> Optional[str]:
        return await self._run(check_ins_digest, user_id)

    async def wearable_summary(self, user_id: int) -> Optional[str]:
        return await self._run(wearable_digest, user_id)

"""
Coach Context Builder

Assembles the plain-text training snapshot injected into every coach prompt.

Sections, in order:
- Race goal (always present; neutral placeholder when there is none)
- Recent training, trailing 14 days (always present; placeholder when empty)
- Weekly summaries, up to 6 weeks
- Volume trend (newest week vs mean of the prior up-to-3 weeks)
- Consistency (weeks among the last 4 with 3+ runs)
- Longest run, trailing 21 days
- Upcoming planned workouts, next 7 days

Every section is fetched independently. A failing query is logged and its
section dropped (or replaced by its placeholder); partial context always beats
no answer.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import UUID

logger = logging.getLogger(__name__)

NO_GOAL_TEXT = "Race Goal: No active race goal set yet."
NO_RECENT_TRAINING_TEXT = "Recent Training: No activities recorded in the last 14 days."

RECENT_TRAINING_DAYS = 14
WEEKLY_SUMMARY_LIMIT = 6
TREND_PRIOR_WEEKS = 3
TREND_INCREASING_RATIO = 1.1
TREND_DECREASING_RATIO = 0.8
CONSISTENCY_WEEKS = 4
CONSISTENT_WEEK_MIN_RUNS = 3
LONGEST_RUN_DAYS = 21
UPCOMING_DAYS = 7


class VolumeTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass(frozen=True)
class ContextSection:
    name: str
    text: str


@dataclass
class ContextSnapshot:
    """Ordered, render-ready view of an athlete's training state. Never persisted."""
    sections: List[ContextSection] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.sections]

    def section(self, name: str) -> Optional[ContextSection]:
        for s in self.sections:
            if s.name == name:
                return s
        return None

    def render(self) -> str:
        return "\n".join(s.text for s in self.sections)


def classify_volume_ratio(ratio: float) -> VolumeTrend:
    """Bounds are exclusive: exactly 1.1 or 0.8 is stable."""
    if ratio > TREND_INCREASING_RATIO:
        return VolumeTrend.INCREASING
    if ratio < TREND_DECREASING_RATIO:
        return VolumeTrend.DECREASING
    return VolumeTrend.STABLE


def volume_trend(this_week: float, prior_weeks: Sequence[float]) -> Optional[Tuple[VolumeTrend, float]]:
    """
    Compare this week's distance to the mean of the prior weeks.

    `prior_weeks` is newest first; only the first TREND_PRIOR_WEEKS are used.
    Returns (trend, prior_mean), or None when there is no usable baseline.
    """
    prior = list(prior_weeks)[:TREND_PRIOR_WEEKS]
    if not prior:
        return None
    prior_mean = sum(prior) / len(prior)
    if prior_mean <= 0:
        return None
    return classify_volume_ratio(this_week / prior_mean), prior_mean


def average_pace_s_per_km(total_duration_s: float, total_distance_m: float) -> float:
    """Seconds per km; 0 when no distance was covered."""
    if total_distance_m <= 0:
        return 0.0
    return total_duration_s / (total_distance_m / 1000.0)


def format_time(seconds: Optional[int]) -> str:
    """H:MM:SS, or "Just finish" when there is no target."""
    if seconds is None:
        return "Just finish"
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hours}:{minutes:02d}:{secs:02d}"


def _short_date(d: date) -> str:
    return f"{d:%b} {d.day}"


class ContextBuilder:
    """
    Builds a ContextSnapshot from the training data store and the calendar.

    `data_store` needs active_goal / recent_activities / recent_weekly_summaries /
    longest_recent_distance; `calendar` needs upcoming_entries. Both expose
    reset() to clear a failed transaction before the next query.
    """

    def __init__(self, data_store, calendar=None):
        self.data_store = data_store
        self.calendar = calendar

    def build(self, athlete_id: UUID, now: Optional[datetime] = None) -> ContextSnapshot:
        now = now or datetime.now(timezone.utc)
        snapshot = ContextSnapshot()

        goal = self._fetch("goal", self.data_store, lambda: self._goal_section(athlete_id, now))
        snapshot.sections.append(goal or ContextSection("goal", NO_GOAL_TEXT))

        recent = self._fetch("recent_training", self.data_store, lambda: self._recent_training_section(athlete_id, now))
        snapshot.sections.append(recent or ContextSection("recent_training", NO_RECENT_TRAINING_TEXT))

        weekly = self._fetch("weekly_summaries", self.data_store, lambda: self._weekly_sections(athlete_id))
        snapshot.sections.extend(weekly or [])

        longest = self._fetch("longest_run", self.data_store, lambda: self._longest_run_section(athlete_id, now))
        if longest:
            snapshot.sections.append(longest)

        if self.calendar is not None:
            upcoming = self._fetch("upcoming_workouts", self.calendar, lambda: self._upcoming_section(athlete_id, now))
            if upcoming:
                snapshot.sections.append(upcoming)

        return snapshot

    def _fetch(self, name: str, source, fn: Callable):
        try:
            return fn()
        except Exception as e:
            logger.warning(f"Coach context section '{name}' unavailable: {e}")
            try:
                source.reset()
            except Exception as reset_error:
                logger.error(f"Failed to reset data source after '{name}' failure: {reset_error}")
            return None

    def _goal_section(self, athlete_id: UUID, now: datetime) -> Optional[ContextSection]:
        goal = self.data_store.active_goal(athlete_id)
        if goal is None:
            return None
        days_until = (goal.race_date - now.date()).days
        text = (
            f"Race Goal: {goal.race_name} on {goal.race_date.isoformat()} ({days_until} days away)\n"
            f"Distance: {goal.race_distance_meters / 1000.0:.2f} km\n"
            f"Target Time: {format_time(goal.target_time_seconds)}"
        )
        return ContextSection("goal", text)

    def _recent_training_section(self, athlete_id: UUID, now: datetime) -> Optional[ContextSection]:
        activities = self.data_store.recent_activities(athlete_id, RECENT_TRAINING_DAYS, now=now)
        if not activities:
            return None
        total_distance = sum(a.distance_m or 0 for a in activities)
        total_duration = sum(a.duration_s or 0 for a in activities)
        pace = average_pace_s_per_km(total_duration, total_distance)
        text = (
            f"Recent Training (last {RECENT_TRAINING_DAYS} days):\n"
            f"- Total runs: {len(activities)}\n"
            f"- Total distance: {total_distance / 1000.0:.1f} km\n"
            f"- Average pace: {pace:.0f} seconds/km"
        )
        return ContextSection("recent_training", text)

    def _weekly_sections(self, athlete_id: UUID) -> List[ContextSection]:
        summaries = self.data_store.recent_weekly_summaries(athlete_id, limit=WEEKLY_SUMMARY_LIMIT)
        if not summaries:
            return []

        lines = ["Weekly Summaries (recent weeks):"]
        for ws in summaries:
            longest_km = (ws.longest_run_m or 0) / 1000.0
            lines.append(
                f"- Week of {_short_date(ws.week_start)}: {ws.total_distance_m / 1000.0:.1f} km across "
                f"{ws.run_count} runs, avg pace {ws.avg_pace_s_per_km:.0f} s/km, longest run {longest_km:.1f} km"
            )
        sections = [ContextSection("weekly_summaries", "\n".join(lines))]

        this_week = summaries[0].total_distance_m
        trend = volume_trend(this_week, [ws.total_distance_m for ws in summaries[1:]])
        if trend is not None:
            label, prior_mean = trend
            sections.append(ContextSection(
                "volume_trend",
                f"Volume Trend: {label.value} (this week {this_week / 1000.0:.1f} km vs avg {prior_mean / 1000.0:.1f} km)",
            ))

        recent = summaries[:CONSISTENCY_WEEKS]
        consistent = sum(1 for ws in recent if ws.run_count >= CONSISTENT_WEEK_MIN_RUNS)
        sections.append(ContextSection(
            "consistency",
            f"Consistency: {consistent} out of last {len(recent)} weeks had {CONSISTENT_WEEK_MIN_RUNS}+ runs",
        ))
        return sections

    def _longest_run_section(self, athlete_id: UUID, now: datetime) -> Optional[ContextSection]:
        longest_m = self.data_store.longest_recent_distance(athlete_id, LONGEST_RUN_DAYS, now=now)
        if longest_m <= 0:
            return None
        return ContextSection("longest_run", f"Longest Run (last 3 weeks): {longest_m / 1000.0:.1f} km")

    def _upcoming_section(self, athlete_id: UUID, now: datetime) -> Optional[ContextSection]:
        entries = self.calendar.upcoming_entries(athlete_id, now.date(), days=UPCOMING_DAYS)
        if not entries:
            return None
        lines = [f"Upcoming Planned Workouts (next {UPCOMING_DAYS} days):"]
        for entry in entries:
            dist = ""
            if entry.planned_distance_m is not None:
                dist = f", {entry.planned_distance_m / 1000.0:.1f} km"
            lines.append(f"- {entry.date:%a %b} {entry.date.day}: {entry.title} ({entry.workout_type}{dist})")
        return ContextSection("upcoming_workouts", "\n".join(lines))

"""
Training Data Store

Read-only queries the coach runs against an athlete's training history:
active goal, recent activities, weekly aggregates and longest recent run.
Also rebuilds the weekly aggregates after an activity sync.
"""
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Activity, RaceGoal, WeeklySummary

logger = logging.getLogger(__name__)

WEEKLY_REBUILD_WEEKS = 8


def week_start_for(day: date) -> date:
    """Monday of the week containing `day`."""
    return day - timedelta(days=day.weekday())


class TrainingDataStore:
    """SQL-backed training history for one request."""

    def __init__(self, db: Session):
        self.db = db

    def reset(self) -> None:
        """Clear a failed transaction so later reads can run."""
        self.db.rollback()

    def active_goal(self, athlete_id: UUID) -> Optional[RaceGoal]:
        return (
            self.db.query(RaceGoal)
            .filter(RaceGoal.athlete_id == athlete_id, RaceGoal.is_active == True)  # noqa: E712
            .order_by(RaceGoal.updated_at.desc())
            .first()
        )

    def recent_activities(
        self,
        athlete_id: UUID,
        since_days: int,
        now: Optional[datetime] = None,
    ) -> List[Activity]:
        """Activities started within the trailing window, newest first."""
        since = (now or datetime.now(timezone.utc)) - timedelta(days=since_days)
        return (
            self.db.query(Activity)
            .filter(Activity.athlete_id == athlete_id, Activity.start_time >= since)
            .order_by(Activity.start_time.desc())
            .all()
        )

    def recent_weekly_summaries(self, athlete_id: UUID, limit: int = 6) -> List[WeeklySummary]:
        """Most recent weekly aggregates, newest first."""
        return (
            self.db.query(WeeklySummary)
            .filter(WeeklySummary.athlete_id == athlete_id)
            .order_by(WeeklySummary.week_start.desc())
            .limit(limit)
            .all()
        )

    def longest_recent_distance(
        self,
        athlete_id: UUID,
        since_days: int,
        now: Optional[datetime] = None,
    ) -> float:
        """Longest single activity distance (meters) in the trailing window; 0 when none."""
        since = (now or datetime.now(timezone.utc)) - timedelta(days=since_days)
        longest = (
            self.db.query(func.coalesce(func.max(Activity.distance_m), 0))
            .filter(Activity.athlete_id == athlete_id, Activity.start_time >= since)
            .scalar()
        )
        return float(longest or 0)

    def rebuild_weekly_summaries(
        self,
        athlete_id: UUID,
        weeks: int = WEEKLY_REBUILD_WEEKS,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Recompute weekly aggregates from raw activities for the trailing window.

        Upserts one row per (athlete, week_start). Returns the number of weeks written.
        """
        activities = self.recent_activities(athlete_id, since_days=weeks * 7, now=now)

        buckets: Dict[date, List[Activity]] = defaultdict(list)
        for act in activities:
            buckets[week_start_for(act.start_time.date())].append(act)

        for week_start, acts in buckets.items():
            total_distance = sum(a.distance_m or 0 for a in acts)
            total_duration = sum(a.duration_s or 0 for a in acts)
            avg_pace = total_duration / (total_distance / 1000.0) if total_distance > 0 else 0.0

            summary = (
                self.db.query(WeeklySummary)
                .filter(WeeklySummary.athlete_id == athlete_id, WeeklySummary.week_start == week_start)
                .first()
            )
            if summary is None:
                summary = WeeklySummary(athlete_id=athlete_id, week_start=week_start)
                self.db.add(summary)

            summary.total_distance_m = total_distance
            summary.total_duration_s = total_duration
            summary.run_count = len(acts)
            summary.avg_pace_s_per_km = avg_pace
            summary.longest_run_m = max((a.distance_m or 0) for a in acts)

        self.db.commit()
        logger.info(f"Rebuilt {len(buckets)} weekly summaries for athlete {athlete_id}")
        return len(buckets)

"""
Training calendar collaborator.

The coach reads the next week of planned workouts and writes generated plans
back. Writes are idempotent: one entry per (athlete, date), replaced in place.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import CalendarEntry

logger = logging.getLogger(__name__)

VALID_STATUSES = ("planned", "completed", "missed", "skipped")


class CalendarService:
    def __init__(self, db: Session):
        self.db = db

    def reset(self) -> None:
        self.db.rollback()

    def upcoming_entries(self, athlete_id: UUID, start: date, days: int = 7) -> List[CalendarEntry]:
        """Entries with start <= date < start + days, ascending by date."""
        end = start + timedelta(days=days)
        return (
            self.db.query(CalendarEntry)
            .filter(
                CalendarEntry.athlete_id == athlete_id,
                CalendarEntry.date >= start,
                CalendarEntry.date < end,
            )
            .order_by(CalendarEntry.date.asc())
            .all()
        )

    def upsert_entry(
        self,
        athlete_id: UUID,
        entry_date: date,
        *,
        workout_type: str,
        title: str,
        description: Optional[str] = None,
        planned_distance_m: Optional[int] = None,
        planned_duration_min: Optional[int] = None,
        planned_pace_s_per_km: Optional[int] = None,
        status: str = "planned",
        source: str = "manual",
    ) -> CalendarEntry:
        """
        Create or replace the athlete's entry for `entry_date`.

        Commits on success; rolls back and re-raises on failure so one bad
        entry never poisons the session for the next write.
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"invalid status: {status}")

        try:
            entry = (
                self.db.query(CalendarEntry)
                .filter(CalendarEntry.athlete_id == athlete_id, CalendarEntry.date == entry_date)
                .first()
            )
            if entry is None:
                entry = CalendarEntry(athlete_id=athlete_id, date=entry_date)
                self.db.add(entry)

            entry.workout_type = workout_type
            entry.title = title
            entry.description = description
            entry.planned_distance_m = planned_distance_m
            entry.planned_duration_min = planned_duration_min
            entry.planned_pace_s_per_km = planned_pace_s_per_km
            entry.status = status
            entry.source = source
            entry.updated_at = datetime.now(timezone.utc)

            self.db.commit()
            self.db.refresh(entry)
            return entry
        except Exception:
            self.db.rollback()
            raise

"""
Coach plan parsing and calendar application.

Parsing is strict: the only cleanup applied to model output is removal of a
surrounding markdown code fence. Anything that then fails to decode or to match
the plan schema is a PlanParseError; nothing is guessed or partially applied.

Writing is per entry: each entry is an idempotent upsert on (athlete, date), so
an entry with a bad date (or a failed write) is skipped and the rest proceed.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Literal, Sequence
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

WorkoutType = Literal["easy", "tempo", "interval", "long", "recovery", "rest", "race", "cross_train"]

PLAN_DATE_FORMAT = "%Y-%m-%d"
PLAN_SOURCE = "ai_coach"

# Opening fence with optional language tag, closing fence
_FENCE_OPEN = re.compile(r"^```[\w+-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?[ \t]*```$")


class PlanEntry(BaseModel):
    # Kept as text: a malformed date only skips its own entry at write time
    date: str
    workout_type: WorkoutType
    title: str
    description: str = ""
    distance_km: float = Field(default=0, ge=0)
    pace_per_km: int = Field(default=0, ge=0)  # seconds per km


class PlanResponse(BaseModel):
    plan: List[PlanEntry]
    summary: str = ""


class PlanParseError(Exception):
    """Model output was not a valid plan. Keeps the raw text for diagnostics."""

    def __init__(self, message: str, raw_text: str):
        super().__init__(message)
        self.raw_text = raw_text


class PlanWriteError(Exception):
    """Not a single entry of a non-empty plan could be written."""


def strip_code_fences(text: str) -> str:
    """Remove one leading ``` / ```lang fence and one trailing ``` fence, if present."""
    stripped = (text or "").strip()
    stripped = _FENCE_OPEN.sub("", stripped, count=1)
    stripped = _FENCE_CLOSE.sub("", stripped, count=1)
    return stripped.strip()


def parse_plan(raw_text: str) -> PlanResponse:
    payload = strip_code_fences(raw_text)
    try:
        return PlanResponse.model_validate_json(payload)
    except ValidationError as e:
        logger.error(f"Failed to parse plan JSON: {e}\nRaw response: {raw_text}")
        raise PlanParseError(f"failed to parse AI plan response: {e.error_count()} validation error(s)", raw_text) from e


@dataclass
class PlanWriteResult:
    written: List[date] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class PlanWriter:
    """Applies parsed plan entries to the training calendar."""

    def __init__(self, calendar):
        self.calendar = calendar

    def write_plan(self, athlete_id: UUID, entries: Sequence[PlanEntry]) -> PlanWriteResult:
        result = PlanWriteResult()

        for entry in entries:
            try:
                entry_date = datetime.strptime(entry.date, PLAN_DATE_FORMAT).date()
            except ValueError:
                logger.warning(f"Skipping plan entry with unparseable date: {entry.date!r}")
                result.skipped.append(entry.date)
                continue

            try:
                self.calendar.upsert_entry(
                    athlete_id,
                    entry_date,
                    workout_type=entry.workout_type,
                    title=entry.title,
                    description=entry.description,
                    planned_distance_m=int(round(entry.distance_km * 1000)),
                    planned_pace_s_per_km=entry.pace_per_km,
                    status="planned",
                    source=PLAN_SOURCE,
                )
            except Exception as e:
                logger.error(f"Failed to write calendar entry for {entry.date}: {e}")
                result.skipped.append(entry.date)
                continue

            result.written.append(entry_date)

        if entries and not result.written:
            raise PlanWriteError(f"none of the {len(entries)} plan entries could be saved")

        logger.info(
            f"Plan written for athlete {athlete_id}: {len(result.written)} saved, {len(result.skipped)} skipped"
        )
        return result

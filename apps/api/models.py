from sqlalchemy import Column, Integer, Boolean, Float, Date, DateTime, ForeignKey, Text, Index, UniqueConstraint, CheckConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base
import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Athlete(Base):
    __tablename__ = "athlete"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)

    # --- RELATIONSHIPS ---
    goals = relationship("RaceGoal", back_populates="athlete", lazy="dynamic")
    activities = relationship("Activity", back_populates="athlete", lazy="dynamic")


class RaceGoal(Base):
    """
    The athlete's target race (the "North Star").

    At most one goal is active at a time; the coach only ever reads the active one.
    """
    __tablename__ = "race_goal"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    race_name = Column(Text, nullable=False)
    race_date = Column(Date, nullable=False)
    race_distance_meters = Column(Integer, nullable=False)
    target_time_seconds = Column(Integer, nullable=True)  # None = "just finish"
    goal_type = Column(Text, default="finish", nullable=False)  # 'finish', 'time', 'pr'
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    athlete = relationship("Athlete", back_populates="goals")


class Activity(Base):
    __tablename__ = "activity"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False, index=True)
    source = Column(Text, default="manual", nullable=False)  # 'strava', 'garmin', 'manual'
    source_activity_id = Column(Text, nullable=True)
    activity_type = Column(Text, default="run", nullable=False)  # 'run', 'long_run', 'workout', 'race'
    name = Column(Text, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    distance_m = Column(Float, nullable=False, default=0)
    duration_s = Column(Integer, nullable=False, default=0)
    avg_pace_s_per_km = Column(Float, nullable=True)
    avg_hr = Column(Integer, nullable=True)
    max_hr = Column(Integer, nullable=True)
    synced_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("source", "source_activity_id", name="uq_activity_source_external_id"),
        Index("ix_activity_athlete_start", "athlete_id", "start_time"),
    )

    athlete = relationship("Athlete", back_populates="activities")


class WeeklySummary(Base):
    """
    Per-week training aggregate, rebuilt after each activity sync.

    week_start is the Monday of the ISO week.
    """
    __tablename__ = "weekly_summary"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    week_start = Column(Date, nullable=False)
    total_distance_m = Column(Float, nullable=False, default=0)
    total_duration_s = Column(Integer, nullable=False, default=0)
    run_count = Column(Integer, nullable=False, default=0)
    avg_pace_s_per_km = Column(Float, nullable=False, default=0)
    longest_run_m = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("athlete_id", "week_start", name="uq_weekly_summary_athlete_week"),
    )


class CalendarEntry(Base):
    """
    A planned or completed workout on a specific day.

    One entry per athlete per day; writers upsert on (athlete_id, date).
    """
    __tablename__ = "training_calendar"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    date = Column(Date, nullable=False)
    workout_type = Column(Text, nullable=False)  # 'easy', 'tempo', 'interval', 'long', 'recovery', 'rest', 'race', 'cross_train'
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    planned_distance_m = Column(Integer, nullable=True)
    planned_duration_min = Column(Integer, nullable=True)
    planned_pace_s_per_km = Column(Integer, nullable=True)
    status = Column(Text, default="planned", nullable=False)
    completed_activity_id = Column(Uuid(as_uuid=True), ForeignKey("activity.id"), nullable=True)
    source = Column(Text, default="manual", nullable=False)  # 'manual', 'ai_coach'
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("athlete_id", "date", name="uq_training_calendar_athlete_date"),
        CheckConstraint(
            "status IN ('planned', 'completed', 'missed', 'skipped')",
            name="ck_training_calendar_status",
        ),
    )


class CoachConversation(Base):
    """
    One turn of the athlete/coach conversation.

    Rows are append-only and read back in created_at order.
    """
    __tablename__ = "coach_conversation"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    athlete_id = Column(Uuid(as_uuid=True), ForeignKey("athlete.id"), nullable=False)
    role = Column(Text, nullable=False)  # 'user', 'assistant'
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_coach_conversation_athlete_created", "athlete_id", "created_at"),
        CheckConstraint("role IN ('user', 'assistant')", name="ck_coach_conversation_role"),
    )

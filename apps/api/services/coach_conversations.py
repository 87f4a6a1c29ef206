"""
Coach conversation persistence.

Append-only log of athlete/coach turns. Reads always come back oldest first so
they can be replayed to a provider as-is.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from models import CoachConversation

logger = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant")
DEFAULT_HISTORY_LIMIT = 50

# Smallest step that survives a round-trip through every backend we run on
_TICK = timedelta(microseconds=1)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConversationStore:
    def __init__(self, db: Session):
        self.db = db

    def _latest_timestamp(self, athlete_id: UUID) -> Optional[datetime]:
        row = (
            self.db.query(CoachConversation.created_at)
            .filter(CoachConversation.athlete_id == athlete_id)
            .order_by(CoachConversation.created_at.desc())
            .first()
        )
        return _as_utc(row[0]) if row else None

    def _next_timestamp(self, athlete_id: UUID, now: Optional[datetime] = None) -> datetime:
        """Wall-clock time, bumped past the newest stored turn so order is strict."""
        ts = _as_utc(now or datetime.now(timezone.utc))
        latest = self._latest_timestamp(athlete_id)
        if latest is not None and ts <= latest:
            ts = latest + _TICK
        return ts

    def append(self, athlete_id: UUID, role: str, content: str, now: Optional[datetime] = None) -> CoachConversation:
        if role not in VALID_ROLES:
            raise ValueError(f"invalid role: {role}")

        message = CoachConversation(
            athlete_id=athlete_id,
            role=role,
            content=content,
            created_at=self._next_timestamp(athlete_id, now),
        )
        try:
            self.db.add(message)
            self.db.commit()
            self.db.refresh(message)
        except Exception:
            self.db.rollback()
            raise
        return message

    def append_exchange(
        self,
        athlete_id: UUID,
        user_content: str,
        assistant_content: str,
        now: Optional[datetime] = None,
    ) -> Tuple[CoachConversation, CoachConversation]:
        """Store a user turn and its reply together; the reply always sorts after the question."""
        user_ts = self._next_timestamp(athlete_id, now)
        user_msg = CoachConversation(athlete_id=athlete_id, role="user", content=user_content, created_at=user_ts)
        assistant_msg = CoachConversation(
            athlete_id=athlete_id,
            role="assistant",
            content=assistant_content,
            created_at=user_ts + _TICK,
        )
        try:
            self.db.add_all([user_msg, assistant_msg])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return user_msg, assistant_msg

    def recent(self, athlete_id: UUID, n: int) -> List[CoachConversation]:
        """The last `n` turns, oldest first."""
        if n <= 0:
            return []
        rows = (
            self.db.query(CoachConversation)
            .filter(CoachConversation.athlete_id == athlete_id)
            .order_by(CoachConversation.created_at.desc())
            .limit(n)
            .all()
        )
        rows.reverse()
        return rows

    def history(self, athlete_id: UUID, limit: int = DEFAULT_HISTORY_LIMIT) -> List[CoachConversation]:
        return self.recent(athlete_id, limit)

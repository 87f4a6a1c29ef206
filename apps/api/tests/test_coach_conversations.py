"""
Tests for coach conversation persistence (services/coach_conversations.py).
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from models import CoachConversation
from services.coach_conversations import ConversationStore

T0 = datetime(2026, 3, 14, 8, 0, tzinfo=timezone.utc)


class TestConversationStore:
    def test_recent_returns_oldest_first(self, db_session, test_athlete):
        store = ConversationStore(db_session)
        store.append(test_athlete.id, "user", "A", now=T0)
        store.append(test_athlete.id, "assistant", "B", now=T0 + timedelta(seconds=1))
        store.append(test_athlete.id, "user", "C", now=T0 + timedelta(seconds=2))

        assert [m.content for m in store.recent(test_athlete.id, 10)] == ["A", "B", "C"]

    def test_recent_keeps_only_the_newest_n(self, db_session, test_athlete):
        store = ConversationStore(db_session)
        for i in range(5):
            store.append(test_athlete.id, "user", f"m{i}", now=T0 + timedelta(minutes=i))

        assert [m.content for m in store.recent(test_athlete.id, 2)] == ["m3", "m4"]

    def test_same_timestamp_appends_keep_insertion_order(self, db_session, test_athlete):
        store = ConversationStore(db_session)
        for content in ["A", "B", "C"]:
            store.append(test_athlete.id, "user", content, now=T0)

        assert [m.content for m in store.history(test_athlete.id)] == ["A", "B", "C"]

    def test_exchange_stores_user_before_assistant(self, db_session, test_athlete):
        store = ConversationStore(db_session)

        user_msg, assistant_msg = store.append_exchange(test_athlete.id, "How was my week?", "Solid.", now=T0)

        assert user_msg.created_at < assistant_msg.created_at
        assert [(m.role, m.content) for m in store.recent(test_athlete.id, 10)] == [
            ("user", "How was my week?"),
            ("assistant", "Solid."),
        ]

    def test_exchange_after_clock_skew_still_sorts_last(self, db_session, test_athlete):
        store = ConversationStore(db_session)
        store.append_exchange(test_athlete.id, "first", "reply one", now=T0)
        # Clock went backwards
        store.append_exchange(test_athlete.id, "second", "reply two", now=T0 - timedelta(minutes=5))

        assert [m.content for m in store.history(test_athlete.id)] == ["first", "reply one", "second", "reply two"]

    def test_invalid_role_rejected(self, db_session, test_athlete):
        with pytest.raises(ValueError):
            ConversationStore(db_session).append(test_athlete.id, "system", "nope")

    def test_history_is_per_athlete(self, db_session, test_athlete):
        store = ConversationStore(db_session)
        store.append(test_athlete.id, "user", "mine", now=T0)
        store.append(uuid4(), "user", "theirs", now=T0)

        assert [m.content for m in store.history(test_athlete.id)] == ["mine"]

    def test_zero_limit_returns_nothing(self, db_session, test_athlete):
        store = ConversationStore(db_session)
        store.append(test_athlete.id, "user", "A", now=T0)
        assert store.recent(test_athlete.id, 0) == []

    def test_rows_are_persisted(self, db_session, test_athlete):
        ConversationStore(db_session).append_exchange(test_athlete.id, "q", "a", now=T0)
        assert db_session.query(CoachConversation).count() == 2

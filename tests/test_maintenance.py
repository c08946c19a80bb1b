"""
Tests for idle refresh and the reaper.
"""

from datetime import timedelta

import pytest

from conftest import T0, as_set, make_session
from roadlimit_core.maintenance import IdleTracker, Reaper
from roadlimit_core.notify import TerminationEvent
from roadlimit_core.sessions import StoreUnavailable


class TestIdleTracker:
    """Tests for maintenance.IdleTracker."""

    def test_refresh_sets_deadline(self):
        session = make_session("a")
        refreshed = IdleTracker.refresh(session, 2, T0)
        assert refreshed.idle_expiry == T0 + timedelta(hours=2)
        assert session.idle_expiry is None

    def test_zero_clears_deadline(self):
        session = make_session("a", idle_expiry=T0)
        assert IdleTracker.refresh(session, 0, T0).idle_expiry is None

        untouched = make_session("b")
        assert IdleTracker.refresh(untouched, 0, T0) is untouched

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            IdleTracker.refresh(make_session("a"), -1, T0)


class TestReaperSweep:
    """Tests for maintenance.Reaper.sweep."""

    def test_idle_takes_precedence(self):
        past = T0 - timedelta(hours=1)
        sessions = as_set(
            make_session("both", idle_expiry=past, absolute_expiry=past),
            make_session("expired", absolute_expiry=past),
            make_session("idle", idle_expiry=past),
            make_session("live", idle_expiry=T0 + timedelta(hours=1)),
        )
        result = Reaper.sweep(sessions, T0)

        assert sorted(result.idle_tokens) == ["both", "idle"]
        assert result.expired_tokens == ["expired"]
        assert set(result.remaining) == {"live"}
        assert result.terminated == 3

    def test_deadline_equal_to_now_survives(self):
        sessions = as_set(make_session("a", idle_expiry=T0, absolute_expiry=T0))
        result = Reaper.sweep(sessions, T0)
        assert result.terminated == 0
        assert set(result.remaining) == {"a"}

    def test_sweep_is_idempotent(self):
        past = T0 - timedelta(minutes=1)
        sessions = as_set(make_session("a", idle_expiry=past), make_session("b"))
        first = Reaper.sweep(sessions, T0)
        second = Reaper.sweep(first.remaining, T0)

        assert second.terminated == 0
        assert second.remaining == first.remaining


class TestReaperReap:
    """Tests for maintenance.Reaper.reap."""

    def test_reap_persists_and_notifies(self, store, notifier):
        past = T0 - timedelta(hours=1)
        store.save("1", as_set(
            make_session("idle1", idle_expiry=past),
            make_session("idle2", idle_expiry=past),
            make_session("expired", absolute_expiry=past),
            make_session("live"),
        ))
        result = Reaper(store, notifier).reap("1", T0)

        assert result.terminated == 3
        assert set(store.load("1")) == {"live"}
        assert notifier.events == [
            (TerminationEvent.IDLE, "1", 2),
            (TerminationEvent.EXPIRED, "1", 1),
        ]

    def test_clean_set_is_not_written(self, notifier):
        class CountingStore:
            saves = 0

            def load(self, user_id):
                return as_set(make_session("live"))

            def save(self, user_id, sessions):
                CountingStore.saves += 1
                return True

        result = Reaper(CountingStore(), notifier).reap("1", T0)
        assert result.terminated == 0
        assert CountingStore.saves == 0
        assert notifier.events == []

    def test_reap_without_store(self):
        with pytest.raises(StoreUnavailable):
            Reaper().reap("1", T0)

    def test_store_errors_become_store_unavailable(self, notifier):
        class BrokenStore:
            def load(self, user_id):
                raise ConnectionError("db down")

            def save(self, user_id, sessions):
                raise ConnectionError("db down")

        with pytest.raises(StoreUnavailable):
            Reaper(BrokenStore(), notifier).reap("1", T0)

    def test_failed_save_raises(self, notifier):
        class RefusingStore:
            def load(self, user_id):
                return as_set(make_session("old", absolute_expiry=T0 - timedelta(hours=1)))

            def save(self, user_id, sessions):
                return False

        with pytest.raises(StoreUnavailable):
            Reaper(RefusingStore(), notifier).reap("1", T0)
        assert notifier.events == []

"""RoadLimit Maintenance - Idle tracking and session reaping.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional

from roadlimit_core.notify import EventNotifier, Notifier, TerminationEvent, notify
from roadlimit_core.sessions import (
    SessionRecord,
    SessionSet,
    SessionStore,
    StoreUnavailable,
    load_sessions,
    save_sessions,
)

logger = logging.getLogger(__name__)


class IdleTracker:
    """Computes idle expiry deadlines."""

    @staticmethod
    def refresh(session: SessionRecord, idle_timeout_hours: int, now: datetime) -> SessionRecord:
        """Refresh the idle deadline of a session.

        Args:
            session: Session of the current requester
            idle_timeout_hours: Idle timeout, 0 disables idle tracking
            now: Current time

        Returns:
            Session with idle_expiry set to now + timeout, or cleared
        """
        if idle_timeout_hours < 0:
            raise ValueError(f"Idle timeout must be non-negative, got {idle_timeout_hours}")

        if idle_timeout_hours == 0:
            if session.idle_expiry is None:
                return session
            return replace(session, idle_expiry=None)

        return replace(session, idle_expiry=now + timedelta(hours=idle_timeout_hours))


@dataclass
class SweepResult:
    """Result of a reaper sweep."""

    remaining: SessionSet
    idle_terminated: int = 0
    expired_terminated: int = 0
    idle_tokens: List[str] = field(default_factory=list)
    expired_tokens: List[str] = field(default_factory=list)

    @property
    def terminated(self) -> int:
        """Total number of terminated sessions."""
        return self.idle_terminated + self.expired_terminated


class Reaper:
    """Removes idle and expired sessions."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        """Initialize reaper.

        Args:
            store: Session store used by reap()
            notifier: Termination hooks
        """
        self.store = store
        self.notifier = notifier or EventNotifier()

    @staticmethod
    def sweep(sessions: SessionSet, now: datetime) -> SweepResult:
        """Split sessions into survivors and terminated ones.

        A session past both deadlines counts as idle-terminated.

        Args:
            sessions: Sessions of one user
            now: Current time

        Returns:
            Sweep result
        """
        result = SweepResult(remaining={})
        for token, session in sessions.items():
            if session.is_idle(now):
                result.idle_tokens.append(token)
            elif session.is_expired(now):
                result.expired_tokens.append(token)
            else:
                result.remaining[token] = session

        result.idle_terminated = len(result.idle_tokens)
        result.expired_terminated = len(result.expired_tokens)
        return result

    def reap(self, user_id: str, now: datetime) -> SweepResult:
        """Sweep a user's stored sessions and persist the survivors.

        Args:
            user_id: User ID
            now: Current time

        Returns:
            Sweep result

        Raises:
            StoreUnavailable: If sessions cannot be loaded or saved
        """
        if self.store is None:
            raise StoreUnavailable("Reaper has no session store")

        result = self.sweep(load_sessions(self.store, user_id), now)
        if result.terminated == 0:
            return result

        save_sessions(self.store, user_id, result.remaining)

        notify(self.notifier, TerminationEvent.IDLE, user_id, result.idle_terminated)
        notify(self.notifier, TerminationEvent.EXPIRED, user_id, result.expired_terminated)

        logger.info(
            f"Terminated {result.terminated} session(s) for user {user_id} "
            f"({result.idle_terminated} idle, {result.expired_terminated} expired)"
        )
        return result


__all__ = [
    "IdleTracker",
    "Reaper",
    "SweepResult",
]

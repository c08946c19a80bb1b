"""RoadLimit Notifications - Session termination hooks.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class TerminationEvent(Enum):
    """Why sessions were terminated."""

    FORCED = "forced"  # evicted by a limit or an explicit termination
    IDLE = "idle"
    EXPIRED = "expired"


class Notifier(ABC):
    """Fire-and-forget observability hooks for session terminations."""

    @abstractmethod
    def on_forced_terminate(self, user_id: str, count: int = 1) -> None:
        """Sessions were evicted."""
        pass

    @abstractmethod
    def on_idle_terminate(self, user_id: str, count: int = 1) -> None:
        """Sessions were terminated for inactivity."""
        pass

    @abstractmethod
    def on_expired_terminate(self, user_id: str, count: int = 1) -> None:
        """Sessions were terminated after expiration."""
        pass


class EventNotifier(Notifier):
    """Notifier dispatching to registered handlers.

    Handler errors are logged and swallowed; a failing handler never
    prevents the remaining handlers from running.
    """

    def __init__(self):
        """Initialize notifier."""
        self._handlers: Dict[TerminationEvent, List[Callable[[str, int], None]]] = {
            event: [] for event in TerminationEvent
        }
        self._lock = threading.RLock()

    def on(self, event: TerminationEvent, handler: Callable[[str, int], None]) -> None:
        """Register event handler.

        Args:
            event: Event type
            handler: Handler called with (user_id, count)
        """
        with self._lock:
            self._handlers[event].append(handler)

    def on_forced_terminate(self, user_id: str, count: int = 1) -> None:
        self._fire_event(TerminationEvent.FORCED, user_id, count)

    def on_idle_terminate(self, user_id: str, count: int = 1) -> None:
        self._fire_event(TerminationEvent.IDLE, user_id, count)

    def on_expired_terminate(self, user_id: str, count: int = 1) -> None:
        self._fire_event(TerminationEvent.EXPIRED, user_id, count)

    def _fire_event(self, event: TerminationEvent, user_id: str, count: int) -> None:
        """Fire event to handlers."""
        with self._lock:
            handlers = list(self._handlers[event])
        for handler in handlers:
            try:
                handler(user_id, count)
            except Exception as e:
                logger.error(f"Event handler error: {e}")


def notify(notifier: Notifier, event: TerminationEvent, user_id: str, count: int = 1) -> None:
    """Deliver a termination notification without letting it fail the caller."""
    if count <= 0:
        return
    hook = {
        TerminationEvent.FORCED: notifier.on_forced_terminate,
        TerminationEvent.IDLE: notifier.on_idle_terminate,
        TerminationEvent.EXPIRED: notifier.on_expired_terminate,
    }[event]
    try:
        hook(user_id, count)
    except Exception as e:
        logger.error(f"Notifier error on {event.value} termination for user {user_id}: {e}")


__all__ = [
    "TerminationEvent",
    "Notifier",
    "EventNotifier",
    "notify",
]

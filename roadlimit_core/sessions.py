"""RoadLimit Sessions - Session records and per-user session stores.

Provides the session-side data model of the limiter:
- Session records (token, login time, origin, expiries)
- Per-user session sets
- Session stores (Memory, Redis)

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

# Configure logging
logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    """Session store could not be read or written."""

    pass


@dataclass(frozen=True)
class SessionRecord:
    """A single login session of a user.

    Records are immutable; idle refresh and eviction produce new
    records or new session sets rather than mutating in place.
    """

    token: str
    login_time: datetime
    source_ip: str = ""
    user_agent: str = ""
    idle_expiry: Optional[datetime] = None
    absolute_expiry: Optional[datetime] = None

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        """Ordering used for every oldest-first decision."""
        return (self.login_time, self.token)

    def is_idle(self, now: datetime) -> bool:
        """Check if the idle deadline has passed."""
        return self.idle_expiry is not None and now > self.idle_expiry

    def is_expired(self, now: datetime) -> bool:
        """Check if the absolute deadline has passed."""
        return self.absolute_expiry is not None and now > self.absolute_expiry

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "token": self.token,
            "login_time": self.login_time.isoformat(),
            "source_ip": self.source_ip,
            "user_agent": self.user_agent,
            "idle_expiry": self.idle_expiry.isoformat() if self.idle_expiry else None,
            "absolute_expiry": self.absolute_expiry.isoformat() if self.absolute_expiry else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SessionRecord:
        """Create from dictionary."""
        return cls(
            token=data["token"],
            login_time=datetime.fromisoformat(data["login_time"]),
            source_ip=data.get("source_ip", ""),
            user_agent=data.get("user_agent", ""),
            idle_expiry=datetime.fromisoformat(data["idle_expiry"]) if data.get("idle_expiry") else None,
            absolute_expiry=datetime.fromisoformat(data["absolute_expiry"]) if data.get("absolute_expiry") else None,
        )


# token -> record, scoped to a single user
SessionSet = Dict[str, SessionRecord]


def session_set(records: List[SessionRecord]) -> SessionSet:
    """Build a session set from a list of records.

    Raises:
        ValueError: If two records share a token
    """
    sessions: SessionSet = {}
    for record in records:
        if record.token in sessions:
            raise ValueError(f"Duplicate session token: {record.token}")
        sessions[record.token] = record
    return sessions


def oldest_first(sessions: SessionSet) -> List[SessionRecord]:
    """Return records sorted by login time, ties broken by token."""
    return sorted(sessions.values(), key=lambda s: s.sort_key)


class SessionStore(ABC):
    """Abstract per-user session store interface."""

    @abstractmethod
    def load(self, user_id: str) -> SessionSet:
        """Load all sessions for user."""
        pass

    @abstractmethod
    def save(self, user_id: str, sessions: SessionSet) -> bool:
        """Replace all sessions for user."""
        pass

    def users(self) -> List[str]:
        """List users having at least one stored session."""
        return []


def load_sessions(store: SessionStore, user_id: str) -> SessionSet:
    """Load sessions, converting any store failure to StoreUnavailable."""
    try:
        return store.load(user_id)
    except StoreUnavailable:
        raise
    except Exception as e:
        logger.error(f"Failed to load sessions for user {user_id}: {e}")
        raise StoreUnavailable(f"Cannot load sessions for user {user_id}") from e


def save_sessions(store: SessionStore, user_id: str, sessions: SessionSet) -> None:
    """Save sessions, converting any store failure to StoreUnavailable.

    Raises:
        StoreUnavailable: If the store raised or reported a failed write
    """
    try:
        saved = store.save(user_id, sessions)
    except StoreUnavailable:
        raise
    except Exception as e:
        logger.error(f"Failed to save sessions for user {user_id}: {e}")
        raise StoreUnavailable(f"Cannot save sessions for user {user_id}") from e

    if not saved:
        raise StoreUnavailable(f"Cannot save sessions for user {user_id}")


class InMemorySessionStore(SessionStore):
    """In-memory session store."""

    def __init__(self):
        """Initialize store."""
        self._sessions: Dict[str, SessionSet] = {}
        self._lock = threading.RLock()

    def load(self, user_id: str) -> SessionSet:
        """Load all sessions for user."""
        with self._lock:
            return dict(self._sessions.get(user_id, {}))

    def save(self, user_id: str, sessions: SessionSet) -> bool:
        """Replace all sessions for user."""
        with self._lock:
            if sessions:
                self._sessions[user_id] = dict(sessions)
            else:
                self._sessions.pop(user_id, None)
            return True

    def users(self) -> List[str]:
        """List users having at least one stored session."""
        with self._lock:
            return list(self._sessions.keys())

    @property
    def count(self) -> int:
        """Get total session count."""
        with self._lock:
            return sum(len(s) for s in self._sessions.values())


class RedisSessionStore(SessionStore):
    """Redis-backed session store for distributed deployments.

    Each user's session set is a Redis hash of token -> JSON record.
    """

    def __init__(
        self,
        redis_client: Any,
        prefix: str = "sessions:",
    ):
        """Initialize Redis store.

        Args:
            redis_client: Redis client instance
            prefix: Key prefix
        """
        self._redis = redis_client
        self._prefix = prefix

    def _user_key(self, user_id: str) -> str:
        """Generate user sessions key."""
        return f"{self._prefix}user:{user_id}"

    def load(self, user_id: str) -> SessionSet:
        """Load all sessions for user."""
        try:
            raw = self._redis.hgetall(self._user_key(user_id)) or {}
        except Exception as e:
            logger.error(f"Failed to load sessions for user {user_id}: {e}")
            raise StoreUnavailable(f"Cannot load sessions for user {user_id}") from e

        sessions: SessionSet = {}
        for token, data in raw.items():
            token = token.decode() if isinstance(token, bytes) else token
            record = SessionRecord.from_dict(json.loads(data))
            sessions[token] = record
        return sessions

    def save(self, user_id: str, sessions: SessionSet) -> bool:
        """Replace all sessions for user."""
        key = self._user_key(user_id)
        try:
            pipe = self._redis.pipeline()
            pipe.delete(key)
            if sessions:
                pipe.hset(key, mapping={
                    token: json.dumps(record.to_dict())
                    for token, record in sessions.items()
                })
            pipe.execute()
            return True
        except Exception as e:
            logger.error(f"Failed to save sessions for user {user_id}: {e}")
            raise StoreUnavailable(f"Cannot save sessions for user {user_id}") from e

    def users(self) -> List[str]:
        """List users having at least one stored session."""
        try:
            pattern = f"{self._prefix}user:*"
            offset = len(self._prefix) + len("user:")
            result = []
            for key in self._redis.scan_iter(match=pattern):
                key = key.decode() if isinstance(key, bytes) else key
                result.append(key[offset:])
            return result
        except Exception as e:
            logger.error(f"Failed to list session users: {e}")
            raise StoreUnavailable("Cannot list session users") from e


__all__ = [
    "SessionRecord",
    "SessionSet",
    "SessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "StoreUnavailable",
    "session_set",
    "oldest_first",
    "load_sessions",
    "save_sessions",
]

"""Shared pytest fixtures for RoadLimit tests."""
import os
import sys
from datetime import datetime, timedelta

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

from roadlimit_core.engine import LimiterConfig, SessionLimiter
from roadlimit_core.notify import EventNotifier, TerminationEvent
from roadlimit_core.policy import InMemoryPolicyCatalog
from roadlimit_core.sessions import InMemorySessionStore, SessionRecord


T0 = datetime(2026, 1, 5, 9, 0, 0)

WINDOWS_CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
MAC_SAFARI = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15"
)
IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
)


def make_session(token, minutes=0, ip="203.0.113.10", ua=WINDOWS_CHROME, **kwargs):
    """Create a session that logged in `minutes` after T0."""
    return SessionRecord(
        token=token,
        login_time=T0 + timedelta(minutes=minutes),
        source_ip=ip,
        user_agent=ua,
        **kwargs,
    )


def as_set(*records):
    return {r.token: r for r in records}


class RecordingNotifier(EventNotifier):
    """EventNotifier that records every delivered event."""

    def __init__(self):
        super().__init__()
        self.events = []
        for event in TerminationEvent:
            self.on(event, lambda user_id, count, event=event: self.events.append((event, user_id, count)))

    def count(self, event):
        return sum(c for e, _, c in self.events if e == event)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def catalog():
    return InMemoryPolicyCatalog.from_dict({
        "roles": {
            "administrator": {"limit": "ip:2", "method": "override"},
            "editor": {"limit": "ip:2", "method": "default"},
            "author": {"limit": "user:2", "method": "override", "block": "external"},
            "subscriber": {"limit": "user:3", "method": "default", "idle": 2},
            "contributor": {"limit": "none", "block": "local", "cookie_ttl": 12, "cookie_rttl": 72},
        }
    })


@pytest.fixture
def make_limiter(store, catalog, notifier):
    """Factory building a limiter over the shared store/catalog/notifier."""

    def _make(mode="lenient", **kwargs):
        kwargs.setdefault("store", store)
        kwargs.setdefault("catalog", catalog)
        kwargs.setdefault("notifier", notifier)
        config = LimiterConfig(
            enforcement_mode=mode,
            delegate_after_trim=kwargs.pop("delegate_after_trim", True),
        )
        return SessionLimiter(config=config, **kwargs)

    return _make


@pytest.fixture
def limiter(make_limiter):
    return make_limiter()

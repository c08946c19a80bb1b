"""RoadLimit - Concurrent session limiting for BlackRoad OS.

RoadLimit decides, for every login attempt, whether the new session may
be opened, which existing session has to make room, or whether the login
is refused:
- Role-based session policies (YAML catalogs)
- IP range admission (private-only / public-only)
- Concurrent session limits per user, IP, country or device attribute
- Overflow resolution: evict the oldest session or deny the login
- Idle tracking and reaping of idle or expired sessions

Architecture:
    ┌─────────────────────────────────────────────────────────────────────┐
    │                       SessionLimiter                                │
    ├─────────────────────────────────────────────────────────────────────┤
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────┐                  │
    │  │   Policy    │  │   IPGate    │  │  Dimension  │                  │
    │  │   Catalog   │──│             │──│   Limiter   │                  │
    │  └─────────────┘  └─────────────┘  └─────────────┘                  │
    │         │               │               │                           │
    │  ┌─────────────┐  ┌─────────────┐  ┌─────────────┐                  │
    │  │  Session    │  │  Geo / UA   │  │  Idle &     │                  │
    │  │   Store     │──│ Classifiers │──│  Reaper     │                  │
    │  └─────────────┘  └─────────────┘  └─────────────┘                  │
    └─────────────────────────────────────────────────────────────────────┘

Usage:
    from roadlimit_core import SessionLimiter, LimiterConfig, InMemoryPolicyCatalog

    catalog = InMemoryPolicyCatalog.from_dict({
        "roles": {
            "administrator": {"limit": "ip:2", "method": "override"},
            "subscriber": {"limit": "user:1", "method": "default", "idle": 4},
        }
    })
    limiter = SessionLimiter(catalog=catalog, config=LimiterConfig(enforcement_mode="strict"))

    result = limiter.evaluate_login("42", ["subscriber"], "203.0.113.7", user_agent)
    if not result.is_allowed:
        refuse_login(result.reason)

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

__version__ = "1.0.0"
__author__ = "BlackRoad OS, Inc."
__email__ = "engineering@blackroad.io"

# Core exports
from roadlimit_core.engine import (
    EnforcementMode,
    LimiterConfig,
    LoginResult,
    LoginStatus,
    SessionLimiter,
    create_limiter,
)

# Policy exports
from roadlimit_core.policy import (
    ConfigurationError,
    InMemoryPolicyCatalog,
    IPBlockMode,
    LimitDimension,
    OverflowMethod,
    Policy,
    PolicyCatalog,
    parse_limit_expression,
    resolve_role,
)

# Session exports
from roadlimit_core.sessions import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionRecord,
    SessionSet,
    SessionStore,
    StoreUnavailable,
)

# Limiter exports
from roadlimit_core.limiter import (
    DimensionLimiter,
    IPGate,
    ReasonCode,
    Verdict,
    VerdictAction,
    per_user_limit,
)
from roadlimit_core.maintenance import IdleTracker, Reaper, SweepResult

# Collaborator exports
from roadlimit_core.devices import (
    ClassifierUnavailable,
    DeviceClassifier,
    DeviceProfile,
    GeoResolver,
    KeywordDeviceClassifier,
    StaticGeoResolver,
)
from roadlimit_core.notify import EventNotifier, Notifier, TerminationEvent

__all__ = [
    # Version
    "__version__",

    # Core
    "SessionLimiter",
    "LimiterConfig",
    "LoginResult",
    "LoginStatus",
    "EnforcementMode",
    "create_limiter",

    # Policies
    "Policy",
    "PolicyCatalog",
    "InMemoryPolicyCatalog",
    "IPBlockMode",
    "LimitDimension",
    "OverflowMethod",
    "ConfigurationError",
    "parse_limit_expression",
    "resolve_role",

    # Sessions
    "SessionRecord",
    "SessionSet",
    "SessionStore",
    "InMemorySessionStore",
    "RedisSessionStore",
    "StoreUnavailable",

    # Limiting
    "IPGate",
    "DimensionLimiter",
    "per_user_limit",
    "Verdict",
    "VerdictAction",
    "ReasonCode",
    "IdleTracker",
    "Reaper",
    "SweepResult",

    # Collaborators
    "DeviceClassifier",
    "DeviceProfile",
    "KeywordDeviceClassifier",
    "GeoResolver",
    "StaticGeoResolver",
    "ClassifierUnavailable",
    "Notifier",
    "EventNotifier",
    "TerminationEvent",
]

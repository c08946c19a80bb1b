"""RoadLimit Limiter - Admission and concurrency limiting algorithms.

Provides the decision procedures applied to a login attempt:
- IP range admission (IPGate)
- Per-user session limiting
- Generic per-dimension limiting (ip, country, device attributes)

Every procedure here is pure: it works on a copy of the session set and
returns the verdict together with the trimmed set and the tokens it
removed. Persisting the outcome and notifying about removals is left to
the orchestrator, which only commits outcomes it acts upon.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

from roadlimit_core.devices import UNKNOWN, DeviceClassifier, GeoResolver, StaticGeoResolver
from roadlimit_core.policy import IPBlockMode, LimitDimension
from roadlimit_core.sessions import SessionRecord, SessionSet, oldest_first

logger = logging.getLogger(__name__)


class VerdictAction(Enum):
    """Verdict tags."""

    ALLOW = auto()
    EVICT = auto()
    DENY = auto()
    MISCONFIGURED = auto()


class ReasonCode(Enum):
    """Machine-readable reasons attached to verdicts."""

    IP_RANGE_BLOCKED = "ip_range_blocked"
    LIMIT_EXCEEDED = "limit_exceeded"
    POLICY_MISSING = "policy_missing"
    POLICY_INVALID = "policy_invalid"
    UNKNOWN_OVERFLOW_METHOD = "unknown_overflow_method"
    LIMIT_DIMENSION_UNAVAILABLE = "limit_dimension_unavailable"
    ENFORCEMENT_DISABLED = "enforcement_disabled"


@dataclass(frozen=True)
class Verdict:
    """Result of a single evaluation step."""

    action: VerdictAction
    token: Optional[str] = None
    reason: Optional[ReasonCode] = None
    message: str = ""

    @classmethod
    def allow(cls, message: str = "") -> Verdict:
        return cls(VerdictAction.ALLOW, message=message)

    @classmethod
    def evict(cls, token: str) -> Verdict:
        return cls(VerdictAction.EVICT, token=token)

    @classmethod
    def deny(cls, reason: ReasonCode, message: str = "") -> Verdict:
        return cls(VerdictAction.DENY, reason=reason, message=message)

    @classmethod
    def misconfigured(cls, reason: ReasonCode, message: str = "") -> Verdict:
        return cls(VerdictAction.MISCONFIGURED, reason=reason, message=message)

    @property
    def is_allowed(self) -> bool:
        """Check if the step admits the login as is."""
        return self.action == VerdictAction.ALLOW


@dataclass
class LimitOutcome:
    """Verdict of a limiter plus the session set it converged to."""

    verdict: Verdict
    sessions: SessionSet
    removed: List[str] = field(default_factory=list)


# =============================================================================
# IP Gate
# =============================================================================


class IPGate:
    """Evaluates the IP range admission rule."""

    def __init__(self, geo: Optional[GeoResolver] = None):
        """Initialize gate.

        Args:
            geo: Resolver used for private/public classification
        """
        self.geo = geo or StaticGeoResolver()

    def evaluate(self, mode: Any, request_ip: str) -> Verdict:
        """Check whether a login from request_ip passes the rule.

        Args:
            mode: IP block mode of the policy
            request_ip: Address of the login attempt

        Returns:
            Allow or Deny(ip_range_blocked)
        """
        if not isinstance(mode, IPBlockMode):
            logger.warning(f'Unknown IP block mode {mode!r}: IP range limitation set to "Allow For All".')
            return Verdict.allow(message=f"unknown ip block mode {mode!r}")

        if mode == IPBlockMode.NONE:
            return Verdict.allow()

        try:
            if mode == IPBlockMode.ALLOW_PRIVATE_ONLY:
                allowed = self.geo.is_private(request_ip)
            else:
                allowed = self.geo.is_public(request_ip)
        except Exception as e:
            logger.error(f"IP classification failed for {request_ip}: {e}")
            allowed = False

        if allowed:
            return Verdict.allow()
        return Verdict.deny(
            ReasonCode.IP_RANGE_BLOCKED,
            message=f"{request_ip} not allowed by {mode.value}",
        )


# =============================================================================
# Key functions
# =============================================================================


KeyFunction = Callable[[SessionRecord], str]


def _cached(lookup: Callable[[str], str], what: str) -> Callable[[str], str]:
    """Memoize a lookup and degrade failures to "unknown"."""
    cache: Dict[str, str] = {}

    def wrapped(value: str) -> str:
        if value not in cache:
            try:
                cache[value] = lookup(value) or UNKNOWN
            except Exception as e:
                logger.warning(f"{what} lookup failed for {value!r}: {e}")
                cache[value] = UNKNOWN
        return cache[value]

    return wrapped


def key_function_for(
    dimension: LimitDimension,
    geo: Optional[GeoResolver] = None,
    classifier: Optional[DeviceClassifier] = None,
) -> KeyFunction:
    """Build the grouping key function for a dimension.

    Args:
        dimension: Limit dimension
        geo: Resolver for the country dimension
        classifier: Classifier for device dimensions

    Returns:
        Function mapping a session record to its group key

    Raises:
        ValueError: If the dimension needs a collaborator that is missing
    """
    if dimension in (LimitDimension.USER, LimitDimension.NONE):
        return lambda session: "*"

    if dimension == LimitDimension.IP:
        return lambda session: session.source_ip

    if dimension == LimitDimension.COUNTRY:
        if geo is None:
            raise ValueError("Country limiting requires a geo resolver")
        country_of = _cached(geo.country_of, "Country")
        return lambda session: country_of(session.source_ip)

    if dimension.is_device:
        if classifier is None:
            raise ValueError(f"{dimension.value} limiting requires a device classifier")
        selector = dimension.value
        device_id = _cached(lambda ua: classifier.classify(ua).selector(selector), "Device")
        return lambda session: device_id(session.user_agent)

    raise ValueError(f"Unsupported limit dimension: {dimension!r}")


# =============================================================================
# Limiters
# =============================================================================


def per_user_limit(sessions: SessionSet, limit: int) -> LimitOutcome:
    """Limit the number of concurrent sessions of a user.

    Below the limit the login is allowed. Otherwise the oldest sessions
    are trimmed until exactly ``limit`` remain and the oldest survivor is
    returned as the victim to make room for the new login.

    Args:
        sessions: Current sessions of the user
        limit: Maximum concurrent sessions

    Returns:
        Outcome with Allow or Evict(token)
    """
    if limit <= 0:
        raise ValueError(f"Limit must be positive, got {limit}")

    working = dict(sessions)
    if len(working) < limit:
        return LimitOutcome(Verdict.allow(), working)

    ordered = oldest_first(working)
    removed = []
    while len(ordered) > limit:
        oldest = ordered.pop(0)
        del working[oldest.token]
        removed.append(oldest.token)

    return LimitOutcome(Verdict.evict(ordered[0].token), working, removed)


class DimensionLimiter:
    """Limits concurrent sessions sharing the same dimension key.

    A single routine serves every dimension; only the key function
    changes. When a group holds more sessions than allowed, the oldest
    ones are trimmed and, with ``delegate_after_trim`` set, admission is
    then decided by a per-user pass over the whole trimmed set.
    """

    def __init__(self, key_function: KeyFunction, delegate_after_trim: bool = True):
        """Initialize limiter.

        Args:
            key_function: Maps a session to its group key
            delegate_after_trim: Run the per-user pass after trimming
        """
        self.key_function = key_function
        self.delegate_after_trim = delegate_after_trim

    @classmethod
    def for_dimension(
        cls,
        dimension: LimitDimension,
        geo: Optional[GeoResolver] = None,
        classifier: Optional[DeviceClassifier] = None,
        delegate_after_trim: bool = True,
    ) -> DimensionLimiter:
        """Create a limiter for a policy dimension."""
        return cls(key_function_for(dimension, geo, classifier), delegate_after_trim)

    def partition(self, sessions: SessionSet, candidate_key: str) -> Tuple[SessionSet, SessionSet]:
        """Split sessions into (matching, rest) by group key."""
        matching: SessionSet = {}
        rest: SessionSet = {}
        for token, session in sessions.items():
            if self.key_function(session) == candidate_key:
                matching[token] = session
            else:
                rest[token] = session
        return matching, rest

    def evaluate(self, sessions: SessionSet, candidate_key: str, limit: int) -> LimitOutcome:
        """Decide whether a login with candidate_key fits in its group.

        Args:
            sessions: Current sessions of the user
            candidate_key: Group key of the login attempt
            limit: Maximum concurrent sessions per group

        Returns:
            Outcome with Allow or Evict(token)
        """
        if limit <= 0:
            raise ValueError(f"Limit must be positive, got {limit}")

        matching, rest = self.partition(sessions, candidate_key)
        if len(matching) < limit:
            return LimitOutcome(Verdict.allow(), dict(sessions))

        ordered = oldest_first(matching)
        removed = []
        while len(ordered) > limit:
            removed.append(ordered.pop(0).token)

        if not removed:
            return LimitOutcome(Verdict.evict(ordered[0].token), dict(sessions))

        working: SessionSet = {s.token: s for s in ordered}
        working.update(rest)
        logger.debug(f"Trimmed {len(removed)} session(s) in group {candidate_key!r}")

        if not self.delegate_after_trim:
            return LimitOutcome(Verdict.evict(ordered[0].token), working, removed)

        second_pass = per_user_limit(working, limit)
        return LimitOutcome(second_pass.verdict, second_pass.sessions, removed + second_pass.removed)


__all__ = [
    "VerdictAction",
    "ReasonCode",
    "Verdict",
    "LimitOutcome",
    "IPGate",
    "KeyFunction",
    "key_function_for",
    "per_user_limit",
    "DimensionLimiter",
]

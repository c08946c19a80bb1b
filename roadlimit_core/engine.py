"""RoadLimit Engine - Concurrent session limiting orchestrator.

Provides the SessionLimiter class that decides, for every login attempt,
whether it may proceed and which existing session has to make room:
- Role and policy resolution
- IP range admission
- Per-user and per-dimension session limits
- Overflow resolution (evict oldest or deny)
- Idle tracking, reaping and session termination

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections import defaultdict
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml

from roadlimit_core.devices import DeviceClassifier, GeoResolver
from roadlimit_core.limiter import (
    DimensionLimiter,
    IPGate,
    LimitOutcome,
    ReasonCode,
    per_user_limit,
)
from roadlimit_core.maintenance import IdleTracker, Reaper, SweepResult
from roadlimit_core.notify import EventNotifier, Notifier, TerminationEvent, notify
from roadlimit_core.policy import (
    ConfigurationError,
    InMemoryPolicyCatalog,
    LimitDimension,
    OverflowMethod,
    Policy,
    PolicyCatalog,
    resolve_role,
)
from roadlimit_core.sessions import (
    InMemorySessionStore,
    SessionRecord,
    SessionSet,
    SessionStore,
    load_sessions,
    save_sessions,
)

# Configure logging
logger = logging.getLogger(__name__)

# Default paths
DEFAULT_CONFIG_PATH = Path.home() / ".roadlimit" / "config.yaml"

HOUR_IN_SECONDS = 3600


class EnforcementMode(Enum):
    """How misconfigured policies are handled."""

    STRICT = "strict"  # misconfiguration blocks the login
    LENIENT = "lenient"  # misconfiguration is logged, login allowed
    DISABLED = "disabled"  # no session policy is enforced at all


class LoginStatus(Enum):
    """Final status of a login evaluation."""

    ALLOWED = auto()
    EVICTED_THEN_ALLOWED = auto()
    DENIED = auto()
    MISCONFIGURED = auto()


@dataclass
class LimiterConfig:
    """Session limiter configuration."""

    # strict, lenient or disabled
    enforcement_mode: str = "lenient"

    # Run the per-user pass after a dimension group was trimmed
    delegate_after_trim: bool = True

    # Cookie durations used when no policy applies
    default_cookie_ttl_hours: int = 48
    default_cookie_rttl_hours: int = 336

    # Policy catalog YAML file
    policy_file: Optional[str] = None

    @property
    def mode(self) -> EnforcementMode:
        """Get the enforcement mode.

        Raises:
            ConfigurationError: If the mode is unknown
        """
        try:
            return EnforcementMode(str(self.enforcement_mode).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown enforcement mode: {self.enforcement_mode!r}") from None

    @classmethod
    def from_file(cls, path: Path) -> LimiterConfig:
        """Load config from YAML file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        names = {item.name for item in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def to_file(self, path: Path) -> None:
        """Save config to YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(self.__dict__, f, default_flow_style=False)


@dataclass
class LoginResult:
    """Result of a login evaluation.

    Carries the reason code and the policy context (role, dimension,
    limit) needed by the host for audit logging.
    """

    status: LoginStatus
    user_id: str
    reason: Optional[ReasonCode] = None
    role: str = ""
    dimension: Optional[LimitDimension] = None
    limit: Optional[int] = None
    evicted: List[str] = field(default_factory=list)
    sessions: SessionSet = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def is_allowed(self) -> bool:
        """Check if the login may proceed."""
        return self.status in (LoginStatus.ALLOWED, LoginStatus.EVICTED_THEN_ALLOWED)

    @property
    def is_fatal(self) -> bool:
        """Check if the login must be blocked as an internal error."""
        return self.status == LoginStatus.MISCONFIGURED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for audit logging."""
        return {
            "status": self.status.name.lower(),
            "user_id": self.user_id,
            "reason": self.reason.value if self.reason else None,
            "role": self.role,
            "dimension": self.dimension.value if self.dimension else None,
            "limit": self.limit,
            "evicted": list(self.evicted),
            "warnings": list(self.warnings),
            "message": self.message,
        }


# =============================================================================
# Main Session Limiter
# =============================================================================


class SessionLimiter:
    """Concurrent session limiting engine.

    Each evaluation receives its full context explicitly; the only state
    kept between calls is the per-user lock registry and statistics.
    Evaluations for the same user are serialized, evaluations for
    different users run in parallel.
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        catalog: Optional[PolicyCatalog] = None,
        geo: Optional[GeoResolver] = None,
        classifier: Optional[DeviceClassifier] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[LimiterConfig] = None,
        config_path: Optional[Path] = None,
    ):
        """Initialize session limiter.

        Args:
            store: Session store implementation
            catalog: Role policy catalog
            geo: IP resolver (required for country limits)
            classifier: User agent classifier (required for device limits)
            notifier: Termination hooks
            config: Limiter configuration
            config_path: Path to config file
        """
        # Load configuration
        if config:
            self.config = config
        elif config_path:
            self.config = LimiterConfig.from_file(config_path)
        else:
            self.config = LimiterConfig.from_file(DEFAULT_CONFIG_PATH)

        if catalog is not None:
            self.catalog = catalog
        elif self.config.policy_file:
            self.catalog = InMemoryPolicyCatalog.from_file(Path(self.config.policy_file).expanduser())
        else:
            self.catalog = InMemoryPolicyCatalog()

        self.store = store or InMemorySessionStore()
        self.geo = geo
        self.classifier = classifier
        self.notifier = notifier or EventNotifier()

        # Components
        self.ip_gate = IPGate(geo)
        self.idle_tracker = IdleTracker()
        self.reaper = Reaper(self.store, self.notifier)

        # Thread safety
        # Entries disappear once no caller holds the lock
        self._user_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._lock = threading.RLock()
        self._stats: Dict[str, int] = defaultdict(int)

        logger.info(f"Session limiter initialized ({self.config.mode.value} mode)")

    # -------------------------------------------------------------------------
    # Login evaluation
    # -------------------------------------------------------------------------

    def evaluate_login(
        self,
        user_id: str,
        roles: Union[str, Sequence[str]],
        candidate_ip: str,
        candidate_user_agent: str = "",
        now: Optional[datetime] = None,
    ) -> LoginResult:
        """Decide whether a new login may proceed.

        Args:
            user_id: Authenticating user
            roles: Roles assigned to the user
            candidate_ip: Address of the login attempt
            candidate_user_agent: User agent of the login attempt
            now: Evaluation time

        Returns:
            LoginResult; any required eviction is already persisted

        Raises:
            StoreUnavailable: If sessions cannot be loaded or saved
        """
        now = now or datetime.now()

        if self.config.mode == EnforcementMode.DISABLED:
            result = LoginResult(
                status=LoginStatus.ALLOWED,
                user_id=user_id,
                reason=ReasonCode.ENFORCEMENT_DISABLED,
            )
        else:
            with self.user_lock(user_id):
                result = self._evaluate(user_id, roles, candidate_ip, candidate_user_agent, now)

        with self._lock:
            self._stats[result.status.name.lower()] += 1
        return result

    def _evaluate(
        self,
        user_id: str,
        roles: Union[str, Sequence[str]],
        candidate_ip: str,
        candidate_user_agent: str,
        now: datetime,
    ) -> LoginResult:
        role, policy, reason, message = self._resolve_policy(roles)
        if policy is None:
            return self._misconfigured(user_id, role, reason, message)

        dimension = policy.limit_dimension
        if not isinstance(dimension, LimitDimension):
            return self._misconfigured(
                user_id, role, ReasonCode.POLICY_INVALID, f"Unknown limit dimension {dimension!r}"
            )

        result = LoginResult(
            status=LoginStatus.ALLOWED,
            user_id=user_id,
            role=role,
            dimension=dimension,
            limit=policy.limit_count,
        )

        if not self._is_dimension_available(dimension):
            logger.critical(f"No lookup configured for {dimension.value} limits (user {user_id}).")
            logger.warning(
                f'Session policy for user {user_id} downgraded from "{policy.limit_expression}" to "No limit".'
            )
            result.warnings.append(
                f"{ReasonCode.LIMIT_DIMENSION_UNAVAILABLE.value}: {dimension.value} downgraded to none"
            )
            dimension = LimitDimension.NONE

        gate = self.ip_gate.evaluate(policy.ip_block_mode, candidate_ip)
        if not gate.is_allowed:
            logger.warning(f"New session not allowed for user {user_id}. Reason: IP range.")
            result.status = LoginStatus.DENIED
            result.reason = ReasonCode.IP_RANGE_BLOCKED
            result.message = gate.message
            return result
        if gate.message:
            result.warnings.append(gate.message)

        if dimension == LimitDimension.NONE:
            logger.debug(f"New session allowed for user {user_id}.")
            return result

        sessions = load_sessions(self.store, user_id)
        outcome = self._limit(sessions, dimension, policy.limit_count, candidate_ip, candidate_user_agent, now)
        result.sessions = sessions

        if outcome.verdict.is_allowed:
            logger.debug(f"New session allowed for user {user_id}.")
            return result

        method = policy.overflow_method
        if method == OverflowMethod.EVICT_OLDEST:
            return self._commit_eviction(result, outcome)

        if method == OverflowMethod.DENY:
            logger.warning(f"New session not allowed for user {user_id}. Reason: {dimension.value}.")
            result.status = LoginStatus.DENIED
            result.reason = ReasonCode.LIMIT_EXCEEDED
            result.message = f"Maximum of {policy.limit_count} session(s) per {dimension.value} reached"
            return result

        misconfigured = self._misconfigured(
            user_id, role, ReasonCode.UNKNOWN_OVERFLOW_METHOD, f"Unknown overflow method {method!r}"
        )
        misconfigured.dimension = result.dimension
        misconfigured.limit = result.limit
        misconfigured.sessions = sessions
        misconfigured.warnings = result.warnings + misconfigured.warnings
        return misconfigured

    def _resolve_policy(
        self, roles: Union[str, Sequence[str]]
    ) -> Tuple[str, Optional[Policy], Optional[ReasonCode], str]:
        """Resolve (role, policy, failure reason, failure message)."""
        if isinstance(roles, str):
            roles = [roles]

        role = resolve_role(roles, self.catalog.roles())
        try:
            policy = self.catalog.get(role) if role else None
        except ConfigurationError as e:
            return role, None, ReasonCode.POLICY_INVALID, str(e)

        if policy is None:
            return role, None, ReasonCode.POLICY_MISSING, f"No session policy found for role {role or '(none)'}"
        return role, policy, None, ""

    def _misconfigured(
        self,
        user_id: str,
        role: str,
        reason: Optional[ReasonCode],
        message: str,
    ) -> LoginResult:
        """Build the result for a misconfiguration according to the mode."""
        if self.config.mode == EnforcementMode.STRICT:
            logger.critical(f"{message} (user {user_id}).")
            return LoginResult(
                status=LoginStatus.MISCONFIGURED,
                user_id=user_id,
                reason=reason,
                role=role,
                message=message,
            )

        logger.warning(f"{message} (user {user_id}). New session allowed.")
        return LoginResult(
            status=LoginStatus.ALLOWED,
            user_id=user_id,
            reason=reason,
            role=role,
            message=message,
            warnings=[message],
        )

    def _is_dimension_available(self, dimension: LimitDimension) -> bool:
        """Check that the collaborators a dimension needs are configured."""
        if dimension == LimitDimension.COUNTRY:
            return self.geo is not None
        if dimension.is_device:
            return self.classifier is not None
        return True

    def _limit(
        self,
        sessions: SessionSet,
        dimension: LimitDimension,
        limit: int,
        candidate_ip: str,
        candidate_user_agent: str,
        now: datetime,
    ) -> LimitOutcome:
        """Run the limiter for a dimension."""
        if dimension == LimitDimension.USER:
            return per_user_limit(sessions, limit)

        limiter = DimensionLimiter.for_dimension(
            dimension,
            geo=self.geo,
            classifier=self.classifier,
            delegate_after_trim=self.config.delegate_after_trim,
        )
        candidate = SessionRecord(
            token="",
            login_time=now,
            source_ip=candidate_ip,
            user_agent=candidate_user_agent,
        )
        return limiter.evaluate(sessions, limiter.key_function(candidate), limit)

    def _commit_eviction(self, result: LoginResult, outcome: LimitOutcome) -> LoginResult:
        """Persist trimmed sessions and the victim's removal."""
        remaining = dict(outcome.sessions)
        evicted = list(outcome.removed)

        victim = outcome.verdict.token
        if victim in remaining:
            del remaining[victim]
            evicted.append(victim)

        save_sessions(self.store, result.user_id, remaining)
        for _ in evicted:
            notify(self.notifier, TerminationEvent.FORCED, result.user_id)

        logger.info(
            f"Session overridden for user {result.user_id}. "
            f"Reason: {result.dimension.value.replace('device-', '')}."
        )
        result.status = LoginStatus.EVICTED_THEN_ALLOWED
        result.evicted = evicted
        result.sessions = remaining
        return result

    def register_session(self, user_id: str, session: SessionRecord) -> None:
        """Add the session created for an admitted login.

        Args:
            user_id: User ID
            session: New session record

        Raises:
            ValueError: If the token is already in use for the user
            StoreUnavailable: If sessions cannot be loaded or saved
        """
        with self.user_lock(user_id):
            sessions = load_sessions(self.store, user_id)
            if session.token in sessions:
                raise ValueError(f"Duplicate session token: {session.token}")
            sessions[session.token] = session
            save_sessions(self.store, user_id, sessions)
            logger.debug(f"Session registered for user {user_id}.")

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def refresh_idle(
        self,
        user_id: str,
        token: str,
        roles: Union[str, Sequence[str]],
        now: Optional[datetime] = None,
    ) -> bool:
        """Refresh the idle deadline of the requester's session.

        Args:
            user_id: Current user
            token: Session token of the current request
            roles: Roles assigned to the user
            now: Current time

        Returns:
            True if idle tracking is active for the session
        """
        now = now or datetime.now()

        with self.user_lock(user_id):
            _, policy, _, message = self._resolve_policy(roles)
            if policy is None:
                logger.debug(f"Idle tracking skipped for user {user_id}: {message}")
                return False

            sessions = load_sessions(self.store, user_id)
            session = sessions.get(token)
            if session is None:
                return False

            refreshed = self.idle_tracker.refresh(session, policy.idle_timeout_hours, now)
            if refreshed != session:
                sessions[token] = refreshed
                save_sessions(self.store, user_id, sessions)

            return policy.idle_timeout_hours > 0

    def reap(self, user_id: str, now: Optional[datetime] = None) -> SweepResult:
        """Terminate idle and expired sessions of a user.

        Args:
            user_id: User ID
            now: Current time

        Returns:
            Sweep result
        """
        now = now or datetime.now()
        with self.user_lock(user_id):
            return self.reaper.reap(user_id, now)

    def reap_all(self, now: Optional[datetime] = None) -> int:
        """Terminate idle and expired sessions of every stored user.

        Returns:
            Number of terminated sessions
        """
        now = now or datetime.now()
        total = 0
        for user_id in self.store.users():
            total += self.reap(user_id, now).terminated
        return total

    def terminate_others(self, user_id: str, keep_token: str) -> int:
        """Terminate every session of a user except one.

        Args:
            user_id: User ID
            keep_token: Session to keep

        Returns:
            Number of terminated sessions
        """
        with self.user_lock(user_id):
            sessions = load_sessions(self.store, user_id)
            remaining = {t: s for t, s in sessions.items() if t == keep_token}
            return self._terminate(user_id, sessions, remaining)

    def terminate_all(self, user_id: str) -> int:
        """Terminate every session of a user.

        Returns:
            Number of terminated sessions
        """
        with self.user_lock(user_id):
            return self._terminate(user_id, load_sessions(self.store, user_id), {})

    def _terminate(self, user_id: str, sessions: SessionSet, remaining: SessionSet) -> int:
        count = len(sessions) - len(remaining)
        if count == 0:
            logger.info(f"No sessions to delete for user {user_id}.")
            return 0

        save_sessions(self.store, user_id, remaining)
        for _ in range(count):
            notify(self.notifier, TerminationEvent.FORCED, user_id)

        logger.info(f"Deleted {count} session(s) for user {user_id}.")
        return count

    # -------------------------------------------------------------------------
    # Cookies
    # -------------------------------------------------------------------------

    def cookie_expiration(
        self,
        roles: Union[str, Sequence[str]],
        remember: bool = False,
        default: Optional[int] = None,
    ) -> int:
        """Get the auth cookie duration for a user.

        Args:
            roles: Roles assigned to the user
            remember: Whether the user asked to be remembered
            default: Duration in seconds when no policy applies

        Returns:
            Cookie duration in seconds
        """
        _, policy, _, _ = self._resolve_policy(roles)
        if policy is None:
            if default is not None:
                return default
            hours = self.config.default_cookie_rttl_hours if remember else self.config.default_cookie_ttl_hours
            return hours * HOUR_IN_SECONDS

        ttl = policy.cookie_rttl if remember else policy.cookie_ttl
        return int(ttl.total_seconds())

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def user_lock(self, user_id: str) -> threading.RLock:
        """Get the lock serializing evaluations of a user.

        The lock is reentrant: a host creating the new session after an
        admitted login can hold it across evaluate_login() and
        register_session() so concurrent logins cannot overshoot a limit.
        """
        with self._lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._user_locks[user_id] = lock
            return lock

    def get_stats(self) -> Dict[str, Any]:
        """Get evaluation statistics."""
        with self._lock:
            stats = dict(self._stats)
        return {
            "evaluations": sum(stats.values()),
            "by_status": stats,
            "mode": self.config.mode.value,
            "roles": len(self.catalog.roles()),
        }


# =============================================================================
# Factory Functions
# =============================================================================


def create_limiter(
    config_path: Optional[Path] = None,
    policy_path: Optional[Path] = None,
    **kwargs,
) -> SessionLimiter:
    """Create a SessionLimiter instance.

    Args:
        config_path: Path to config file
        policy_path: Path to policy catalog file
        **kwargs: Collaborators (store, geo, classifier, notifier)

    Returns:
        Configured SessionLimiter instance
    """
    catalog = kwargs.pop("catalog", None)
    if policy_path:
        catalog = InMemoryPolicyCatalog.from_file(policy_path)
    return SessionLimiter(catalog=catalog, config_path=config_path, **kwargs)


__all__ = [
    "SessionLimiter",
    "LimiterConfig",
    "LoginResult",
    "LoginStatus",
    "EnforcementMode",
    "create_limiter",
]

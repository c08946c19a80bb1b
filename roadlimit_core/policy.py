"""RoadLimit Policy - Role-based concurrent session policies.

Provides the policy side of the limiter:
- Policy definitions (IP range rule, limit dimension, overflow method)
- Limit expression parsing ("device-os:3")
- Policy catalogs keyed by role, loaded from YAML
- Role resolution

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml

# Configure logging
logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Policy configuration is missing or malformed."""

    pass


class IPBlockMode(Enum):
    """IP range admission rule."""

    NONE = "none"
    ALLOW_PRIVATE_ONLY = "allow_private_only"
    ALLOW_PUBLIC_ONLY = "allow_public_only"


class LimitDimension(Enum):
    """Axis along which concurrent sessions are grouped."""

    NONE = "none"
    USER = "user"
    IP = "ip"
    COUNTRY = "country"
    DEVICE_CLASS = "device-class"
    DEVICE_TYPE = "device-type"
    DEVICE_CLIENT = "device-client"
    DEVICE_BROWSER = "device-browser"
    DEVICE_OS = "device-os"

    @property
    def is_device(self) -> bool:
        """Check if the dimension is derived from the user agent."""
        return self.value.startswith("device-")


class OverflowMethod(Enum):
    """What to do when a limit is reached."""

    EVICT_OLDEST = "evict_oldest"
    DENY = "deny"


# Encoded values accepted from older configuration files
LEGACY_BLOCK_MODES = {
    "none": IPBlockMode.NONE,
    "external": IPBlockMode.ALLOW_PRIVATE_ONLY,
    "local": IPBlockMode.ALLOW_PUBLIC_ONLY,
}

LEGACY_OVERFLOW_METHODS = {
    "override": OverflowMethod.EVICT_OLDEST,
    "default": OverflowMethod.DENY,
    "block": OverflowMethod.DENY,
}


def _enum_value(enum_cls, value: Any, aliases: Optional[Dict[str, Enum]] = None):
    """Coerce a configuration value to an enum member."""
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    if aliases and text in aliases:
        return aliases[text]
    for member in enum_cls:
        if text in (member.value, member.value.replace("-", "_")):
            return member
    raise ConfigurationError(f"Unknown {enum_cls.__name__} value: {value!r}")


def _block_mode(value: Any) -> Union[IPBlockMode, str]:
    """Coerce an IP block mode, keeping unrecognized values as strings."""
    try:
        return _enum_value(IPBlockMode, value, LEGACY_BLOCK_MODES)
    except ConfigurationError:
        logger.warning(f"Unknown IP block mode {value!r} in session policy")
        return str(value)


def parse_limit_expression(expression: str) -> Tuple[LimitDimension, Optional[int]]:
    """Parse an encoded limit expression.

    Expressions have the form ``<selector>:<count>`` (e.g. ``"ip:2"``,
    ``"device-os:3"``) or the literal ``"none"``.

    Args:
        expression: Encoded limit

    Returns:
        (dimension, count) with count None for "none"

    Raises:
        ConfigurationError: If the selector is unknown or the count invalid
    """
    text = str(expression).strip().lower()
    if text == "none":
        return LimitDimension.NONE, None

    selector, sep, count = text.rpartition(":")
    if not sep:
        raise ConfigurationError(f"Malformed limit expression: {expression!r}")

    dimension = _enum_value(LimitDimension, selector)
    if dimension == LimitDimension.NONE:
        raise ConfigurationError(f"Malformed limit expression: {expression!r}")

    try:
        limit = int(count)
    except ValueError:
        raise ConfigurationError(f"Invalid limit count in {expression!r}") from None
    if limit <= 0:
        raise ConfigurationError(f"Limit count must be positive in {expression!r}")

    return dimension, limit


@dataclass(frozen=True)
class Policy:
    """Concurrent session policy for one role.

    Immutable; a fresh instance is read from the catalog for every
    evaluation.
    """

    # Unrecognized modes are kept as configured; IPGate fails open on them
    ip_block_mode: Union[IPBlockMode, str] = IPBlockMode.NONE
    limit_dimension: LimitDimension = LimitDimension.NONE
    limit_count: Optional[int] = None
    overflow_method: OverflowMethod = OverflowMethod.DENY
    idle_timeout_hours: int = 0
    cookie_ttl: timedelta = timedelta(hours=48)
    cookie_rttl: timedelta = timedelta(hours=336)

    def __post_init__(self):
        if self.limit_dimension == LimitDimension.NONE:
            if self.limit_count is not None:
                raise ConfigurationError("limit_count must be absent when limit_dimension is none")
        elif not isinstance(self.limit_count, int) or self.limit_count <= 0:
            raise ConfigurationError(
                "limit_count must be a positive integer for dimension "
                f"{getattr(self.limit_dimension, 'value', self.limit_dimension)}"
            )
        if self.idle_timeout_hours < 0:
            raise ConfigurationError("idle_timeout_hours must be non-negative")

    @property
    def limit_expression(self) -> str:
        """Get the encoded limit expression."""
        if self.limit_dimension == LimitDimension.NONE:
            return "none"
        return f"{self.limit_dimension.value}:{self.limit_count}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Policy:
        """Create policy from a configuration mapping.

        Accepts structured keys (``limit_dimension``/``limit_count``) as
        well as the encoded ``limit`` expression, ``method``, ``block`` and
        ``idle`` keys.

        Raises:
            ConfigurationError: If any value is malformed
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"Policy must be a mapping, got {type(data).__name__}")

        if "limit" in data:
            dimension, count = parse_limit_expression(data["limit"])
        else:
            dimension = _enum_value(LimitDimension, data.get("limit_dimension", "none"))
            count = data.get("limit_count")
            if count is not None:
                try:
                    count = int(count)
                except (TypeError, ValueError):
                    raise ConfigurationError(f"Invalid limit_count: {count!r}") from None

        block = data.get("ip_block_mode", data.get("block", "none"))
        method = data.get("overflow_method", data.get("method", "deny"))

        try:
            idle = int(data.get("idle_timeout_hours", data.get("idle", 0)))
            cookie_ttl = int(data.get("cookie_ttl", 48))
            cookie_rttl = int(data.get("cookie_rttl", 336))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid duration: {e}") from None

        return cls(
            ip_block_mode=_block_mode(block),
            limit_dimension=dimension,
            limit_count=count,
            overflow_method=_enum_value(OverflowMethod, method, LEGACY_OVERFLOW_METHODS),
            idle_timeout_hours=idle,
            cookie_ttl=timedelta(hours=cookie_ttl),
            cookie_rttl=timedelta(hours=cookie_rttl),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "ip_block_mode": getattr(self.ip_block_mode, "value", self.ip_block_mode),
            "limit_dimension": self.limit_dimension.value,
            "limit_count": self.limit_count,
            "overflow_method": self.overflow_method.value,
            "idle_timeout_hours": self.idle_timeout_hours,
            "cookie_ttl": int(self.cookie_ttl.total_seconds() // 3600),
            "cookie_rttl": int(self.cookie_rttl.total_seconds() // 3600),
        }


def resolve_role(user_roles: Sequence[str], known_roles: Sequence[str]) -> str:
    """Pick the role used for policy resolution.

    Args:
        user_roles: Roles assigned to the user
        known_roles: Catalog roles, in catalog order

    Returns:
        First known role the user holds, or "" if none
    """
    assigned = set(user_roles)
    for role in known_roles:
        if role in assigned:
            return role
    return ""


class PolicyCatalog(ABC):
    """Abstract role -> policy lookup."""

    @abstractmethod
    def get(self, role: str) -> Optional[Policy]:
        """Get policy for role.

        Returns:
            Policy, or None if the role has no policy

        Raises:
            ConfigurationError: If the role's policy entry is invalid
        """
        pass

    @abstractmethod
    def roles(self) -> List[str]:
        """List roles in resolution order."""
        pass


@dataclass
class _CatalogEntry:
    policy: Optional[Policy] = None
    error: Optional[str] = None


class InMemoryPolicyCatalog(PolicyCatalog):
    """Policy catalog held in memory.

    Role order is insertion order, which for YAML catalogs is the order
    roles appear in the file.
    """

    def __init__(self, policies: Optional[Dict[str, Policy]] = None):
        """Initialize catalog.

        Args:
            policies: Initial role -> policy mapping
        """
        self._entries: Dict[str, _CatalogEntry] = {}
        self._lock = threading.RLock()

        for role, policy in (policies or {}).items():
            self.set(role, policy)

    def get(self, role: str) -> Optional[Policy]:
        """Get policy for role."""
        entry = self._entries.get(role)
        if entry is None:
            return None
        if entry.error:
            raise ConfigurationError(f"Invalid policy for role {role}: {entry.error}")
        return entry.policy

    def roles(self) -> List[str]:
        """List roles in resolution order."""
        return list(self._entries.keys())

    def set(self, role: str, policy: Policy) -> None:
        """Set policy for role."""
        with self._lock:
            self._entries[role] = _CatalogEntry(policy=policy)
            logger.info(f"Session policy set for role {role}: {policy.limit_expression}")

    def remove(self, role: str) -> bool:
        """Remove policy for role.

        Returns:
            True if removed
        """
        with self._lock:
            return self._entries.pop(role, None) is not None

    def load(self, data: Dict[str, Any]) -> int:
        """Load role entries from a configuration mapping.

        Invalid entries are kept as errors so that lookups for the role
        report them instead of silently finding no policy.

        Args:
            data: Mapping with a ``roles`` key (or a bare role mapping)

        Returns:
            Number of valid entries loaded
        """
        roles = data.get("roles", data) if isinstance(data, dict) else {}
        loaded = 0
        with self._lock:
            for role, settings in (roles or {}).items():
                try:
                    policy = Policy.from_dict(settings)
                except ConfigurationError as e:
                    logger.error(f"Invalid session policy for role {role}: {e}")
                    self._entries[str(role)] = _CatalogEntry(error=str(e))
                    continue
                self._entries[str(role)] = _CatalogEntry(policy=policy)
                loaded += 1
        return loaded

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InMemoryPolicyCatalog:
        """Create catalog from a configuration mapping."""
        catalog = cls()
        catalog.load(data)
        return catalog

    @classmethod
    def from_file(cls, path: Path) -> InMemoryPolicyCatalog:
        """Load catalog from YAML file."""
        if not path.exists():
            logger.warning(f"Policy file not found: {path}")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def to_file(self, path: Path) -> None:
        """Save valid entries to YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        roles = {
            role: entry.policy.to_dict()
            for role, entry in self._entries.items()
            if entry.policy is not None
        }
        with open(path, "w") as f:
            yaml.safe_dump({"roles": roles}, f, default_flow_style=False, sort_keys=False)


__all__ = [
    "ConfigurationError",
    "IPBlockMode",
    "LimitDimension",
    "OverflowMethod",
    "Policy",
    "PolicyCatalog",
    "InMemoryPolicyCatalog",
    "parse_limit_expression",
    "resolve_role",
]

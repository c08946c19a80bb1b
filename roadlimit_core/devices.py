"""RoadLimit Devices - Device classification and IP geolocation.

Collaborators used to derive grouping keys from a session's origin:
- Device classification from the user agent (class, type, client, browser, os)
- Country and private/public classification of IP addresses

The bundled implementations are lightweight: keyword matching for user
agents and a static CIDR table for countries. Production deployments plug
in their own classifier or GeoIP database behind the same interfaces.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
OTHER = "other"


class ClassifierUnavailable(Exception):
    """Device or geo lookup could not be performed."""

    pass


@dataclass(frozen=True)
class DeviceProfile:
    """Categorical description of a user agent."""

    device_class: str = OTHER  # bot, mobile, desktop, other
    device_type: str = OTHER  # smartphone, featurephone, tablet, phablet, console, tv, ...
    client: str = OTHER  # browser, feed-reader, mobile-app, pim, library, media-player
    browser: str = UNKNOWN  # short client name
    os: str = UNKNOWN  # short os name

    def selector(self, name: str) -> str:
        """Get the value for a device selector name (e.g. "device-os")."""
        attribute = {
            "device-class": "device_class",
            "device-type": "device_type",
            "device-client": "client",
            "device-browser": "browser",
            "device-os": "os",
        }.get(name)
        if attribute is None:
            raise KeyError(f"Unknown device selector: {name}")
        return getattr(self, attribute)


class DeviceClassifier(ABC):
    """Abstract user agent classifier."""

    @abstractmethod
    def classify(self, user_agent: str) -> DeviceProfile:
        """Classify a user agent string.

        Raises:
            ClassifierUnavailable: If classification cannot be performed
        """
        pass


class KeywordDeviceClassifier(DeviceClassifier):
    """User agent classifier based on keyword matching.

    Rules are checked in order; the first match wins.
    """

    BOT_KEYWORDS = ("bot", "crawler", "spider", "slurp", "curl", "wget")

    DEVICE_TYPES: List[Tuple[str, str]] = [
        # iPod touch agents also carry "iphone os"
        ("ipod", "portable-media-player"),
        ("walkman", "portable-media-player"),
        ("ipad", "tablet"),
        ("tablet", "tablet"),
        ("phablet", "phablet"),
        ("tesla", "car-browser"),
        ("automotive", "car-browser"),
        ("smart-tv", "tv"),
        ("smarttv", "tv"),
        ("smart-display", "smart-display"),
        ("smart display", "smart-display"),
        ("camera", "camera"),
        ("playstation", "console"),
        ("xbox", "console"),
        ("nintendo", "console"),
        # KaiOS agents also carry "android" and "mobile"
        ("kaios", "featurephone"),
        ("j2me", "featurephone"),
        ("midp", "featurephone"),
        ("iphone", "smartphone"),
        ("android", "smartphone"),
        ("mobile", "smartphone"),
    ]

    MOBILE_TYPES = ("smartphone", "featurephone", "tablet", "phablet", "portable-media-player", "camera")

    LIBRARIES = ("python-requests", "python-urllib", "okhttp", "go-http-client", "java/", "curl", "wget")
    FEED_READERS = ("feedly", "feedburner", "rss", "newsblur")
    MOBILE_APPS = ("fban", "fbav", "instagram", "wv)")
    PIMS = ("thunderbird", "outlook", "airmail", "evolution/")
    MEDIA_PLAYERS = ("vlc/", "itunes", "winamp", "foobar2000", "nsplayer", "windows-media-player")

    # Order matters: Edge and Opera also carry "chrome", Chrome also carries "safari"
    BROWSERS: List[Tuple[str, str]] = [
        ("edg/", "PS"),
        ("opr/", "OP"),
        ("firefox/", "FF"),
        ("chrome/", "CH"),
        ("safari/", "SF"),
        ("msie", "IE"),
        ("trident/", "IE"),
    ]

    OPERATING_SYSTEMS: List[Tuple[str, str]] = [
        ("windows", "WIN"),
        ("iphone", "IOS"),
        ("ipad", "IOS"),
        ("android", "AND"),
        ("mac os x", "MAC"),
        ("cros", "COS"),
        ("linux", "LIN"),
    ]

    def classify(self, user_agent: str) -> DeviceProfile:
        """Classify a user agent string."""
        ua = (user_agent or "").lower()
        if not ua:
            return DeviceProfile()

        device_type = self._first_match(ua, self.DEVICE_TYPES, OTHER)
        client = self._client(ua)

        if any(k in ua for k in self.BOT_KEYWORDS):
            device_class = "bot"
        elif device_type in self.MOBILE_TYPES:
            device_class = "mobile"
        elif "windows" in ua or "macintosh" in ua or "x11" in ua or "cros" in ua:
            device_class = "desktop"
        else:
            device_class = OTHER

        return DeviceProfile(
            device_class=device_class,
            device_type=device_type,
            client=client,
            browser=self._first_match(ua, self.BROWSERS, UNKNOWN) if client == "browser" else UNKNOWN,
            os=self._first_match(ua, self.OPERATING_SYSTEMS, UNKNOWN),
        )

    def _client(self, ua: str) -> str:
        if any(k in ua for k in self.LIBRARIES):
            return "library"
        if any(k in ua for k in self.FEED_READERS):
            return "feed-reader"
        if any(k in ua for k in self.MOBILE_APPS):
            return "mobile-app"
        if any(k in ua for k in self.PIMS):
            return "pim"
        if any(k in ua for k in self.MEDIA_PLAYERS):
            return "media-player"
        if ua.startswith("mozilla/") or ua.startswith("opera/"):
            return "browser"
        return OTHER

    @staticmethod
    def _first_match(ua: str, rules: List[Tuple[str, str]], default: str) -> str:
        for keyword, value in rules:
            if keyword in ua:
                return value
        return default


class GeoResolver(ABC):
    """Abstract IP address resolver."""

    @abstractmethod
    def country_of(self, ip: str) -> str:
        """Get ISO 3166 alpha-2 country code, or "unknown".

        Raises:
            ClassifierUnavailable: If the lookup cannot be performed
        """
        pass

    @abstractmethod
    def is_private(self, ip: str) -> bool:
        """Check if the address belongs to a private range."""
        pass

    def is_public(self, ip: str) -> bool:
        """Check if the address is globally routable."""
        try:
            return ipaddress.ip_address(ip).is_global
        except ValueError:
            return False


IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class StaticGeoResolver(GeoResolver):
    """Geo resolver backed by a static CIDR -> country table."""

    def __init__(self, networks: Optional[Dict[str, str]] = None):
        """Initialize resolver.

        Args:
            networks: Mapping of CIDR range to country code
        """
        self._networks: List[Tuple[IPNetwork, str]] = []
        self._lock = threading.RLock()

        for cidr, country in (networks or {}).items():
            self.add_range(cidr, country)

    def add_range(self, cidr: str, country: str) -> None:
        """Add a CIDR range for a country.

        Args:
            cidr: CIDR notation range
            country: Country code
        """
        with self._lock:
            try:
                network = ipaddress.ip_network(cidr, strict=False)
            except ValueError as e:
                logger.error(f"Invalid CIDR: {cidr} - {e}")
                return
            self._networks.append((network, country.upper()))
            # Most specific range first
            self._networks.sort(key=lambda n: n[0].prefixlen, reverse=True)

    def country_of(self, ip: str) -> str:
        """Get country code for an address."""
        try:
            ip_obj = ipaddress.ip_address(ip)
        except ValueError:
            return UNKNOWN

        with self._lock:
            for network, country in self._networks:
                if ip_obj.version == network.version and ip_obj in network:
                    return country
        return UNKNOWN

    def is_private(self, ip: str) -> bool:
        """Check if the address belongs to a private range."""
        try:
            return ipaddress.ip_address(ip).is_private
        except ValueError:
            return False


__all__ = [
    "ClassifierUnavailable",
    "DeviceProfile",
    "DeviceClassifier",
    "KeywordDeviceClassifier",
    "GeoResolver",
    "StaticGeoResolver",
    "UNKNOWN",
]

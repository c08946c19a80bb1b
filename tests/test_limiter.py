"""
Tests for the limiting algorithms: IP gate, per-user limit, dimension limit.

All collaborators are in-process; no GeoIP database or UA parser needed.
"""

from unittest.mock import MagicMock

import pytest

from conftest import IPHONE_SAFARI, MAC_SAFARI, WINDOWS_CHROME, as_set, make_session
from roadlimit_core.devices import UNKNOWN, KeywordDeviceClassifier, StaticGeoResolver
from roadlimit_core.limiter import (
    DimensionLimiter,
    IPGate,
    ReasonCode,
    VerdictAction,
    key_function_for,
    per_user_limit,
)
from roadlimit_core.policy import IPBlockMode, LimitDimension


# ---------------------------------------------------------------------------
# IPGate
# ---------------------------------------------------------------------------

class TestIPGate:
    """Tests for limiter.IPGate."""

    def test_none_allows_everything(self):
        gate = IPGate()
        assert gate.evaluate(IPBlockMode.NONE, "8.8.8.8").is_allowed
        assert gate.evaluate(IPBlockMode.NONE, "10.0.0.1").is_allowed

    def test_private_only(self):
        gate = IPGate()
        assert gate.evaluate(IPBlockMode.ALLOW_PRIVATE_ONLY, "192.168.1.20").is_allowed

        verdict = gate.evaluate(IPBlockMode.ALLOW_PRIVATE_ONLY, "8.8.8.8")
        assert verdict.action == VerdictAction.DENY
        assert verdict.reason == ReasonCode.IP_RANGE_BLOCKED

    def test_public_only(self):
        gate = IPGate()
        assert gate.evaluate(IPBlockMode.ALLOW_PUBLIC_ONLY, "8.8.8.8").is_allowed

        verdict = gate.evaluate(IPBlockMode.ALLOW_PUBLIC_ONLY, "10.1.2.3")
        assert verdict.action == VerdictAction.DENY
        assert verdict.reason == ReasonCode.IP_RANGE_BLOCKED

    def test_unknown_mode_fails_open_with_warning(self, caplog):
        gate = IPGate()
        verdict = gate.evaluate("intranet", "8.8.8.8")
        assert verdict.is_allowed
        assert "intranet" in verdict.message
        assert "Allow For All" in caplog.text

    def test_resolver_failure_denies_gated_modes(self):
        geo = MagicMock()
        geo.is_private.side_effect = RuntimeError("geo database missing")
        gate = IPGate(geo)

        verdict = gate.evaluate(IPBlockMode.ALLOW_PRIVATE_ONLY, "10.0.0.1")
        assert verdict.action == VerdictAction.DENY
        assert gate.evaluate(IPBlockMode.NONE, "10.0.0.1").is_allowed


# ---------------------------------------------------------------------------
# Per-user limiter
# ---------------------------------------------------------------------------

class TestPerUserLimit:
    """Tests for limiter.per_user_limit."""

    def test_allow_iff_below_limit(self):
        for size in range(0, 6):
            sessions = as_set(*[make_session(f"s{i}", minutes=i) for i in range(size)])
            for limit in range(1, 5):
                outcome = per_user_limit(sessions, limit)
                if size < limit:
                    assert outcome.verdict.is_allowed
                    assert outcome.removed == []
                    assert len(outcome.sessions) == size
                else:
                    assert outcome.verdict.action == VerdictAction.EVICT
                    assert len(outcome.sessions) == min(size, limit)

    def test_at_limit_names_oldest_without_trimming(self):
        sessions = as_set(make_session("b", 5), make_session("a", 10))
        outcome = per_user_limit(sessions, 2)
        assert outcome.verdict.token == "b"
        assert outcome.removed == []
        assert set(outcome.sessions) == {"a", "b"}

    def test_trims_oldest_then_names_next_survivor(self):
        sessions = as_set(
            make_session("t3", 30),
            make_session("t1", 10),
            make_session("t4", 40),
            make_session("t2", 20),
        )
        outcome = per_user_limit(sessions, 2)
        assert outcome.removed == ["t1", "t2"]
        assert set(outcome.sessions) == {"t3", "t4"}
        assert outcome.verdict.token == "t3"

    def test_ties_broken_by_token(self):
        sessions = as_set(make_session("b", 0), make_session("c", 0), make_session("a", 0))
        outcome = per_user_limit(sessions, 1)
        assert outcome.removed == ["a", "b"]
        assert outcome.verdict.token == "c"

    def test_input_is_not_mutated(self):
        sessions = as_set(make_session("a", 0), make_session("b", 1), make_session("c", 2))
        per_user_limit(sessions, 1)
        assert set(sessions) == {"a", "b", "c"}

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            per_user_limit({}, 0)


# ---------------------------------------------------------------------------
# DimensionLimiter
# ---------------------------------------------------------------------------

class TestDimensionLimiter:
    """Tests for limiter.DimensionLimiter."""

    def test_room_in_group_allows(self):
        sessions = as_set(
            make_session("a1", 0, ip="198.51.100.1"),
            make_session("b1", 1, ip="198.51.100.2"),
            make_session("b2", 2, ip="198.51.100.2"),
        )
        limiter = DimensionLimiter.for_dimension(LimitDimension.IP)
        outcome = limiter.evaluate(sessions, "198.51.100.1", 2)
        assert outcome.verdict.is_allowed
        assert outcome.removed == []

    def test_full_group_names_its_oldest(self):
        sessions = as_set(
            make_session("a1", 5, ip="198.51.100.1"),
            make_session("a2", 6, ip="198.51.100.1"),
            make_session("b1", 0, ip="198.51.100.2"),
        )
        limiter = DimensionLimiter.for_dimension(LimitDimension.IP)
        outcome = limiter.evaluate(sessions, "198.51.100.1", 2)
        assert outcome.verdict.action == VerdictAction.EVICT
        assert outcome.verdict.token == "a1"
        assert outcome.removed == []

    def test_overfull_group_trims_then_delegates(self):
        ip_a, ip_b = "198.51.100.1", "198.51.100.2"
        sessions = as_set(
            make_session("A1", 1, ip=ip_a),
            make_session("A2", 2, ip=ip_a),
            make_session("B1", 3, ip=ip_b),
            make_session("B2", 4, ip=ip_b),
            make_session("B3", 5, ip=ip_b),
        )
        limiter = DimensionLimiter.for_dimension(LimitDimension.IP)
        outcome = limiter.evaluate(sessions, ip_b, 2)

        # B1 trimmed from the group, then the per-user pass trims A1 and A2
        assert outcome.removed == ["B1", "A1", "A2"]
        assert set(outcome.sessions) == {"B2", "B3"}
        assert outcome.verdict.token == "B2"

    def test_overfull_group_without_delegation(self):
        ip_a, ip_b = "198.51.100.1", "198.51.100.2"
        sessions = as_set(
            make_session("A1", 1, ip=ip_a),
            make_session("A2", 2, ip=ip_a),
            make_session("B1", 3, ip=ip_b),
            make_session("B2", 4, ip=ip_b),
            make_session("B3", 5, ip=ip_b),
        )
        limiter = DimensionLimiter.for_dimension(LimitDimension.IP, delegate_after_trim=False)
        outcome = limiter.evaluate(sessions, ip_b, 2)

        assert outcome.removed == ["B1"]
        assert set(outcome.sessions) == {"A1", "A2", "B2", "B3"}
        assert outcome.verdict.token == "B2"

    def test_constant_key_matches_per_user_limit(self):
        limiter = DimensionLimiter(lambda session: "*")
        for size in range(0, 6):
            sessions = as_set(*[make_session(f"s{i}", minutes=(i * 7) % 5) for i in range(size)])
            for limit in range(1, 5):
                grouped = limiter.evaluate(sessions, "*", limit)
                base = per_user_limit(sessions, limit)
                assert grouped.verdict == base.verdict
                assert grouped.removed == base.removed
                assert set(grouped.sessions) == set(base.sessions)

    def test_country_grouping(self):
        geo = StaticGeoResolver({"203.0.113.0/24": "FR", "198.51.100.0/24": "DE"})
        sessions = as_set(
            make_session("fr1", 0, ip="203.0.113.5"),
            make_session("fr2", 1, ip="203.0.113.9"),
            make_session("de1", 2, ip="198.51.100.3"),
        )
        limiter = DimensionLimiter.for_dimension(LimitDimension.COUNTRY, geo=geo)
        assert limiter.evaluate(sessions, "DE", 2).verdict.is_allowed
        assert limiter.evaluate(sessions, "FR", 2).verdict.token == "fr1"

    def test_device_grouping(self):
        classifier = KeywordDeviceClassifier()
        sessions = as_set(
            make_session("win", 0, ua=WINDOWS_CHROME),
            make_session("mac", 1, ua=MAC_SAFARI),
            make_session("phone", 2, ua=IPHONE_SAFARI),
        )
        limiter = DimensionLimiter.for_dimension(LimitDimension.DEVICE_CLASS, classifier=classifier)
        matching, rest = limiter.partition(sessions, "desktop")
        assert set(matching) == {"win", "mac"}
        assert set(rest) == {"phone"}


class TestKeyFunctions:
    """Tests for limiter.key_function_for."""

    def test_lookup_failure_degrades_to_unknown(self):
        geo = MagicMock()
        geo.country_of.side_effect = RuntimeError("lookup timed out")
        key = key_function_for(LimitDimension.COUNTRY, geo=geo)
        assert key(make_session("a")) == UNKNOWN

    def test_classifier_failure_degrades_to_unknown(self):
        classifier = MagicMock()
        classifier.classify.side_effect = RuntimeError("parser crashed")
        key = key_function_for(LimitDimension.DEVICE_OS, classifier=classifier)
        assert key(make_session("a")) == UNKNOWN

    def test_lookups_are_cached(self):
        geo = MagicMock()
        geo.country_of.return_value = "FR"
        key = key_function_for(LimitDimension.COUNTRY, geo=geo)
        key(make_session("a", ip="203.0.113.1"))
        key(make_session("b", ip="203.0.113.1"))
        assert geo.country_of.call_count == 1

    def test_missing_collaborator_rejected(self):
        with pytest.raises(ValueError):
            key_function_for(LimitDimension.COUNTRY)
        with pytest.raises(ValueError):
            key_function_for(LimitDimension.DEVICE_BROWSER)

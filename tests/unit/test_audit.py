"""
Unit tests for the AuditTrail: risk scoring, burst detection, dashboard
aggregation and CSV export.
"""
import csv
import io
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from actguard.security.audit import AuditTrail, clamp_score, is_unusual_hour
from actguard.security.errors import ValidationError
from actguard.security.models import Location, SecurityEventType


NOON = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
ATTACKER_IP = "198.51.100.7"


class TestRiskScoring:

    def test_failed_login_at_noon(self, audit):
        assert audit.calculate_risk_score(SecurityEventType.LOGIN_FAILED, success=False, local_time=NOON) == 50

    def test_untrusted_country_penalty(self, audit):
        score = audit.calculate_risk_score(
            SecurityEventType.LOGIN_SUCCESS, location=Location(country="JP"), local_time=NOON
        )
        assert score == 25

    def test_trusted_country_has_no_penalty(self, audit):
        score = audit.calculate_risk_score(
            SecurityEventType.LOGIN_SUCCESS, location=Location(country="fr"), local_time=NOON
        )
        assert score == 10

    def test_unusual_hours_penalty(self, audit):
        late = NOON.replace(hour=23)
        assert audit.calculate_risk_score(SecurityEventType.LOGIN_SUCCESS, local_time=late) == 20

    def test_unknown_event_type_uses_default(self, audit):
        assert audit.calculate_risk_score("something_custom", local_time=NOON) == 20

    def test_uses_clock_when_no_time_given(self, audit, clock):
        clock.set(NOON.replace(hour=3))
        assert audit.calculate_risk_score(SecurityEventType.LOGOUT) == 15

    def test_score_stays_in_range(self, audit):
        rng = random.Random(7)
        event_types = [t.value for t in SecurityEventType] + ["custom"]
        for _ in range(500):
            score = audit.calculate_risk_score(
                rng.choice(event_types),
                success=rng.random() < 0.5,
                location=Location(country=rng.choice(["US", "RU", "BR", None])),
                local_time=NOON.replace(hour=rng.randrange(24)),
            )
            assert 0 <= score <= 100

    @pytest.mark.parametrize("hour,expected", [(0, True), (5, True), (6, False), (22, False), (23, True)])
    def test_is_unusual_hour(self, hour, expected):
        assert is_unusual_hour(NOON.replace(hour=hour)) is expected

    def test_clamp_score(self):
        assert clamp_score(-5) == 0
        assert clamp_score(140) == 100
        assert clamp_score(42.4) == 42


class TestLogging:

    def test_log_records_event(self, audit, store, clock):
        event = audit.log(
            SecurityEventType.LOGIN_FAILED,
            "Failed login",
            account_id="acct-1",
            ip_address=ATTACKER_IP,
            success=False,
            failure_reason="invalid_password",
        )

        assert event.event_type == "login_failed"
        assert event.risk_score == 50
        assert event.created_at == clock.now()
        assert store.get_security_events_since(clock.now()) == [event]

    def test_failure_reason_dropped_on_success(self, audit):
        event = audit.log(SecurityEventType.LOGOUT, "Logout", failure_reason="ignored")
        assert event.failure_reason is None

    def test_preset_risk_score(self, audit):
        assert audit.log("custom", "Preset", risk_score=77, detect=False).risk_score == 77

    def test_disabled_audit_logging(self, audit, store, policy):
        store.update_security_policy(policy.with_updates({"enable_audit_logging": False}))

        assert audit.log(SecurityEventType.LOGIN_SUCCESS, "Ignored") is None
        assert store.query_security_events() == []

    def test_store_failure_is_swallowed(self, audit, store):
        with patch.object(store, "create_security_event", side_effect=RuntimeError("database is down")):
            assert audit.log(SecurityEventType.LOGIN_SUCCESS, "Lost") is None


class TestSuspiciousActivity:

    def _suspicious(self, store):
        return store.query_security_events(event_type=SecurityEventType.SUSPICIOUS_ACTIVITY.value)

    def test_account_failure_burst(self, audit, store):
        for _ in range(5):
            audit.log(
                SecurityEventType.LOGIN_FAILED, "Failed login",
                account_id="acct-1", ip_address=ATTACKER_IP, success=False,
            )
        assert self._suspicious(store) == []

        audit.log(
            SecurityEventType.ACCOUNT_LOCKED, "Locked",
            account_id="acct-1", ip_address=ATTACKER_IP, success=False,
        )

        suspicious = self._suspicious(store)
        assert len(suspicious) == 1
        assert suspicious[0].risk_score == 90
        assert suspicious[0].account_id == "acct-1"
        assert suspicious[0].additional_data["failed_attempts"] == 5

    def test_ip_failure_burst(self, audit, store):
        for index in range(10):
            audit.log(
                SecurityEventType.LOGIN_FAILED, "Failed login",
                account_id=f"acct-{index}", ip_address=ATTACKER_IP, success=False,
            )

        audit.log(SecurityEventType.ACCOUNT_LOCKED, "Locked", ip_address=ATTACKER_IP, success=False)

        suspicious = self._suspicious(store)
        assert len(suspicious) == 1
        assert suspicious[0].risk_score == 85
        assert suspicious[0].additional_data["affected_accounts"] == 10

    def test_old_failures_do_not_count(self, audit, store, clock):
        for _ in range(5):
            audit.log(
                SecurityEventType.LOGIN_FAILED, "Failed login",
                account_id="acct-1", ip_address=ATTACKER_IP, success=False,
            )
        clock.advance(hours=2)

        audit.log(
            SecurityEventType.ACCOUNT_LOCKED, "Locked",
            account_id="acct-1", ip_address=ATTACKER_IP, success=False,
        )

        assert self._suspicious(store) == []

    def test_no_detection_without_ip(self, audit, store):
        with patch.object(audit, "check_suspicious_activity") as check:
            audit.log(SecurityEventType.ACCOUNT_LOCKED, "Locked", account_id="acct-1", success=False)
        check.assert_not_called()


class TestDashboard:

    def test_aggregates(self, audit):
        audit.log(SecurityEventType.LOGIN_SUCCESS, "Login", account_id="a", ip_address="203.0.113.1")
        audit.log(SecurityEventType.LOGIN_FAILED, "Failed", account_id="b", ip_address="203.0.113.2", success=False)
        audit.log(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "Odd", ip_address="203.0.113.2",
            success=False, risk_score=95, detect=False,
        )

        stats = audit.dashboard("24h")

        assert stats["total_events"] == 3
        assert stats["failed_logins"] == 1
        assert stats["suspicious_activities"] == 1
        assert stats["unique_accounts"] == 2
        assert stats["unique_ips"] == 2
        assert stats["risk_distribution"] == {"low": 1, "medium": 1, "high": 1}
        assert stats["events_by_type"]["login_success"] == 1
        assert stats["top_risky_ips"][0] == {
            "ip_address": "203.0.113.2",
            "average_risk_score": 72.5,
            "event_count": 2,
        }

    def test_timeframe_window(self, audit, clock):
        audit.log(SecurityEventType.LOGIN_SUCCESS, "Login", account_id="a")
        clock.advance(hours=25)

        assert audit.dashboard("24h")["total_events"] == 0
        assert audit.dashboard("7d")["total_events"] == 1
        assert audit.dashboard("30d")["total_events"] == 1

    def test_invalid_timeframe(self, audit):
        with pytest.raises(ValidationError):
            audit.dashboard("1y")


class TestExportAndRetention:

    def test_csv_export_quotes_text(self, audit):
        description = 'Login from "office", floor 3'
        audit.log(
            SecurityEventType.LOGIN_FAILED,
            description,
            account_id="acct-1",
            ip_address="203.0.113.9",
            user_agent="Mozilla/5.0 (X11; Linux x86_64)",
            success=False,
            location=Location(country="CA"),
        )

        rows = list(csv.reader(io.StringIO(audit.export())))

        assert rows[0] == [
            "Date", "Type", "Description", "Account", "IP", "User Agent",
            "Success", "Risk Score", "Country",
        ]
        assert len(rows) == 2
        assert rows[1][1:] == [
            "login_failed", description, "acct-1", "203.0.113.9",
            "Mozilla/5.0 (X11; Linux x86_64)", "false", "50", "CA",
        ]

    def test_export_filters(self, audit):
        audit.log(SecurityEventType.LOGIN_SUCCESS, "Login", account_id="a")
        audit.log(SecurityEventType.LOGOUT, "Logout", account_id="a")
        audit.log(SecurityEventType.LOGIN_SUCCESS, "Login", account_id="b")

        rows = list(csv.reader(io.StringIO(audit.export(account_id="a", event_type=SecurityEventType.LOGOUT))))

        assert len(rows) == 2
        assert rows[1][1] == "logout"

    def test_cleanup_respects_retention(self, audit, store, clock):
        audit.log(SecurityEventType.LOGIN_SUCCESS, "Old", account_id="a")
        clock.advance(days=91)
        audit.log(SecurityEventType.LOGIN_SUCCESS, "Recent", account_id="a")

        assert audit.cleanup() == 1
        assert [e.description for e in store.query_security_events()] == ["Recent"]

    def test_events_for_account_newest_first(self, audit, clock):
        audit.log(SecurityEventType.LOGIN_SUCCESS, "First", account_id="a")
        clock.advance(minutes=1)
        audit.log(SecurityEventType.LOGOUT, "Second", account_id="a")

        assert [e.description for e in audit.events_for_account("a")] == ["Second", "First"]


def test_audit_trail_defaults_to_system_clock(store):
    trail = AuditTrail(store)
    assert trail.clock.now().tzinfo is not None

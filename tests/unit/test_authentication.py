"""
Unit tests for the AccessGuard authentication state machine, lockout,
CAPTCHA gating, policy administration and maintenance.
"""
from datetime import timedelta
from unittest.mock import patch

import pyotp
import pytest

from actguard.database.memory import InMemorySecurityStore
from actguard.security.authentication import AccessGuard
from actguard.security.errors import ResultCode, SecurityError, ValidationError
from actguard.security.models import SafeAccount, SecurityEventType

from conftest import STRONG_PASSWORD


CLIENT_IP = "203.0.113.50"
ATTACKER_IP = "198.51.100.66"


@pytest.fixture
def mfa_secret(mfa, alice, clock):
    setup = mfa.begin_enrollment(alice.id)
    mfa.confirm_enrollment(alice.id, setup.secret, pyotp.TOTP(setup.secret).at(clock.now()), setup.backup_codes)
    return setup


class TestAuthenticate:

    def test_success(self, guard, alice, store):
        result = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP, user_agent="pytest")

        assert result.success is True
        assert result.code == ResultCode.OK
        assert isinstance(result.user, SafeAccount)
        assert result.user.id == alice.id
        assert not hasattr(result.user, "password_hash")
        assert store.get_session_by_token(result.session_token).account_id == alice.id

        events = store.get_security_events_for_account(
            alice.id, event_type=SecurityEventType.LOGIN_SUCCESSFUL.value
        )
        assert len(events) == 1

    def test_email_is_normalized(self, guard, alice):
        result = guard.authenticate("  ALICE@Example.COM ", STRONG_PASSWORD, CLIENT_IP)
        assert result.success is True

    def test_unknown_email_and_wrong_password_look_the_same(self, guard, alice, store, clock):
        unknown = guard.authenticate("nobody@example.com", STRONG_PASSWORD, CLIENT_IP)
        wrong = guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)

        assert unknown.code == wrong.code == ResultCode.INVALID_CREDENTIALS
        assert unknown.error == wrong.error == "Invalid email or password"
        assert unknown.to_dict().keys() == wrong.to_dict().keys()

        reasons = [a.failure_reason for a in store.get_failed_login_attempts(clock.now() - timedelta(hours=1))]
        assert sorted(reasons) == ["invalid_email", "invalid_password"]

    def test_result_dict_uses_camel_case(self, guard, alice):
        data = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP).to_dict()

        assert data["code"] == "OK"
        assert "sessionToken" in data
        assert "password_hash" not in data["user"]

    def test_password_expired(self, guard, make_account, clock):
        account = make_account("old@example.com", updated_at=clock.now() - timedelta(days=91))

        result = guard.authenticate(account.email, STRONG_PASSWORD, CLIENT_IP)

        assert result.code == ResultCode.PASSWORD_EXPIRED
        assert result.session_token is None

    def test_unexpected_error_becomes_security_error(self, guard, store):
        with patch.object(store, "get_account_by_email", side_effect=RuntimeError("connection reset")):
            with pytest.raises(SecurityError) as exc_info:
                guard.authenticate("alice@example.com", STRONG_PASSWORD, CLIENT_IP)

        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "AUTH_ERROR"


class TestLockout:

    def test_account_locks_after_max_attempts(self, guard, alice, clock):
        for _ in range(5):
            result = guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)
            assert result.code == ResultCode.INVALID_CREDENTIALS
            clock.advance(seconds=10)

        result = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP)

        assert result.success is False
        assert result.code == ResultCode.ACCOUNT_LOCKED
        assert result.remaining_minutes == 15
        assert result.error == "Account temporarily locked. Try again in 15 minutes."
        assert result.session_token is None

    def test_remaining_minutes_count_down(self, guard, alice, clock):
        for _ in range(5):
            guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)

        clock.advance(minutes=10)
        assert guard.check_account_lock_status(alice.id, CLIENT_IP).remaining_minutes == 5

        clock.advance(minutes=4, seconds=30)
        assert guard.check_account_lock_status(alice.id, CLIENT_IP).remaining_minutes == 1

    def test_unlocks_after_duration(self, guard, alice, clock):
        for _ in range(5):
            guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)

        clock.advance(minutes=15, seconds=1)

        assert guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP).success is True

    def test_lock_is_per_account(self, guard, alice, make_account):
        bob = make_account("bob@example.com")
        for _ in range(5):
            guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)

        assert guard.authenticate(bob.email, STRONG_PASSWORD, "192.0.2.1").success is True

    def test_ip_locks_after_double_max_attempts(self, guard, alice):
        for index in range(10):
            guard.authenticate(f"user{index}@example.com", "Wr0ng!Guess", ATTACKER_IP)

        locked = guard.authenticate(alice.email, STRONG_PASSWORD, ATTACKER_IP)
        status = guard.check_account_lock_status(None, ATTACKER_IP)

        assert locked.code == ResultCode.ACCOUNT_LOCKED
        assert status.reason == "Too many failed attempts from this IP address"
        assert guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP).success is True

    def test_lock_check_fails_open(self, guard, alice, store):
        with patch.object(store, "get_failed_login_attempts", side_effect=RuntimeError("timeout")):
            status = guard.check_account_lock_status(alice.id, CLIENT_IP)

        assert status.is_locked is False

    def test_policy_change_applies_immediately(self, guard, alice):
        guard.update_security_policy({"max_login_attempts": 2})
        for _ in range(2):
            guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)

        assert guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP).code == ResultCode.ACCOUNT_LOCKED


class TestCaptcha:

    def test_captcha_flag_after_threshold(self, guard, alice):
        flags = [
            guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP).requires_captcha
            for _ in range(4)
        ]
        assert flags == [False, False, False, True]

    def test_captcha_can_be_disabled(self, guard, alice):
        guard.update_security_policy({"enable_captcha": False})
        for _ in range(4):
            guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)

        assert guard.should_require_captcha(CLIENT_IP) is False

    def test_captcha_window_is_one_hour(self, guard, alice, clock):
        for _ in range(3):
            guard.authenticate(alice.email, "Wr0ng!Guess", CLIENT_IP)
        assert guard.should_require_captcha(CLIENT_IP) is True

        clock.advance(hours=1, seconds=1)
        assert guard.should_require_captcha(CLIENT_IP) is False


class TestMfaGate:

    def test_mfa_required_without_penalty(self, guard, alice, mfa_secret, store, clock):
        result = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP)

        assert result.code == ResultCode.MFA_REQUIRED
        assert result.requires_mfa is True
        assert store.get_failed_login_attempts(clock.now() - timedelta(hours=1)) == []

    def test_invalid_mfa_is_a_failed_attempt(self, guard, alice, mfa_secret, store, clock):
        result = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP, mfa_code="ZZZZZZZZ")

        assert result.code == ResultCode.INVALID_MFA
        attempts = store.get_failed_login_attempts(clock.now() - timedelta(hours=1))
        assert [a.failure_reason for a in attempts] == ["invalid_mfa"]

    def test_valid_totp(self, guard, alice, mfa_secret, clock):
        code = pyotp.TOTP(mfa_secret.secret).at(clock.now())

        result = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP, mfa_code=code)

        assert result.success is True
        assert result.session_token

    def test_backup_code_login(self, guard, alice, mfa_secret, mfa):
        result = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP, mfa_code=mfa_secret.backup_codes[0])

        assert result.success is True
        assert mfa.status(alice.id).backup_codes_count == 9

    def test_policy_requires_mfa_for_unenrolled_accounts(self, guard, alice):
        guard.update_security_policy({"mfa_required": True})

        result = guard.authenticate(alice.email, STRONG_PASSWORD, CLIENT_IP, mfa_code="123456")

        assert result.code == ResultCode.MFA_REQUIRED
        assert result.error == "MFA enrollment required"


class TestRecordFailedAttempt:

    def test_records_and_audits(self, guard, store, clock):
        guard.record_failed_login_attempt("x@example.com", ATTACKER_IP, "invalid_email")

        assert len(store.get_failed_login_attempts(clock.now(), ip_address=ATTACKER_IP)) == 1
        events = store.get_security_events_for_ip(ATTACKER_IP, event_type=SecurityEventType.LOGIN_FAILED.value)
        assert events[0].failure_reason == "invalid_email"

    def test_store_failure_raises(self, guard, store):
        with patch.object(store, "create_failed_login_attempt", side_effect=RuntimeError("disk full")):
            with pytest.raises(SecurityError) as exc_info:
                guard.record_failed_login_attempt("x@example.com", ATTACKER_IP, "invalid_email")

        assert exc_info.value.code == "RECORD_FAILED_ATTEMPT_ERROR"


class TestSecurityPolicyAdministration:

    def test_initialize_is_idempotent(self, guard, policy):
        assert guard.initialize_security_policy() == policy
        assert guard.initialize_security_policy() == policy

    def test_initialize_from_settings(self, cipher, clock):
        store = InMemorySecurityStore()
        guard = AccessGuard(store, cipher=cipher, clock=clock)

        created = guard.initialize_security_policy()

        assert store.get_security_policy() == created
        assert created.max_login_attempts == 5

    def test_update_is_validated(self, guard):
        with pytest.raises(ValidationError) as exc_info:
            guard.update_security_policy({"max_login_attempts": 0, "session_timeout_minutes": 2})

        joined = " ".join(exc_info.value.errors)
        assert "max_login_attempts" in joined
        assert "session_timeout_minutes" in joined
        assert guard.get_security_policy().max_login_attempts == 5

    def test_unknown_setting_is_rejected(self, guard):
        with pytest.raises(ValidationError):
            guard.update_security_policy({"not_a_setting": True})

    def test_length_bounds_must_be_consistent(self, guard):
        with pytest.raises(ValidationError):
            guard.update_security_policy({"password_min_length": 40, "password_max_length": 20})

    def test_update_is_audited(self, guard, alice, store):
        updated = guard.update_security_policy({"lockout_duration_minutes": 30}, actor_id=alice.id)

        assert updated.lockout_duration_minutes == 30
        events = store.get_security_events_for_account(
            alice.id, event_type=SecurityEventType.SECURITY_SETTINGS_CHANGED.value
        )
        assert events[0].additional_data == {"changes": {"lockout_duration_minutes": 30}}


class TestMaintenance:

    def test_purges_stale_records(self, guard, alice, clock, credentials):
        guard.sessions.create(alice.id, CLIENT_IP)
        guard.record_failed_login_attempt(alice.email, CLIENT_IP, "invalid_password", account_id=alice.id)
        credentials.issue_reset_token(alice.id)

        clock.advance(days=91)
        results = guard.run_maintenance_tasks()

        assert results["expired_sessions"] == 1
        assert results["failed_attempts"] == 1
        assert results["reset_tokens"] == 1
        assert results["security_events"] >= 3

    def test_failed_task_is_reported(self, guard, store):
        with patch.object(store, "delete_expired_reset_tokens", side_effect=RuntimeError("locked")):
            results = guard.run_maintenance_tasks()

        assert results["reset_tokens"] == -1
        assert results["expired_sessions"] == 0

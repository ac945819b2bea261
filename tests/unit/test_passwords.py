"""
Unit tests for the CredentialPolicy: strength scoring, hashing, reset tokens
and password changes.
"""
import random
import string
from datetime import timedelta
from unittest.mock import patch

import pytest

from actguard.security.errors import ResultCode, SecurityError
from actguard.security.models import SecurityEventType, SecurityPolicy
from actguard.security.passwords import CredentialPolicy

from conftest import STRONG_PASSWORD


NEW_PASSWORD = "N3w!Garden#Path"


class TestPasswordValidation:
    """Policy-driven strength scoring"""

    def test_weak_password_collects_every_failure(self, policy):
        result = CredentialPolicy.validate("abc123", policy)

        assert result.is_valid is False
        assert len(result.errors) >= 3
        assert "Password must be at least 8 characters long" in result.errors
        assert "Password must contain at least one uppercase letter" in result.errors
        assert "Password must contain at least one special character" in result.errors
        assert any("common" in error for error in result.errors)

    def test_strong_password(self, policy):
        result = CredentialPolicy.validate(STRONG_PASSWORD, policy)

        assert result.is_valid is True
        assert result.errors == []
        assert result.score == 90

    def test_repeated_characters_are_rejected(self, policy):
        result = CredentialPolicy.validate("Baaad#Pass9x", policy)

        assert result.is_valid is False
        assert any("repeated" in error for error in result.errors)

    def test_common_sequence_is_case_insensitive(self, policy):
        result = CredentialPolicy.validate("My#PASSWORD9", policy)
        assert any("common" in error for error in result.errors)

    def test_max_length(self):
        policy = SecurityPolicy(password_max_length=16)
        result = CredentialPolicy.validate("Aa1!" + "xyzw" * 4, policy)

        assert "Password must be at most 16 characters long" in result.errors

    def test_disabled_character_classes_are_not_required(self):
        policy = SecurityPolicy(
            password_require_uppercase=False,
            password_require_numbers=False,
            password_require_special_chars=False,
        )
        result = CredentialPolicy.validate("lowercaseonly", policy)

        assert result.is_valid is True

    def test_score_is_always_in_range(self, policy):
        rng = random.Random(2024)
        alphabet = string.ascii_letters + string.digits + "!@#$%^&*()"
        for _ in range(300):
            candidate = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 40)))
            result = CredentialPolicy.validate(candidate, policy)

            assert 0 <= result.score <= 100
            assert result.is_valid == (result.errors == [])

    def test_validation_is_deterministic(self, policy):
        assert CredentialPolicy.validate("Xy1!abc", policy) == CredentialPolicy.validate("Xy1!abc", policy)


class TestHashing:
    """bcrypt hashing"""

    def test_hash_and_verify(self, credentials):
        hashed = credentials.hash(STRONG_PASSWORD)

        assert hashed != STRONG_PASSWORD
        assert hashed.startswith("$2")
        assert credentials.verify(STRONG_PASSWORD, hashed) is True
        assert credentials.verify("wrong", hashed) is False

    def test_verify_with_garbage_hash(self, credentials):
        assert credentials.verify(STRONG_PASSWORD, "not-a-bcrypt-hash") is False

    def test_long_passwords_are_accepted(self, credentials):
        long_password = "Aa1!" + "x" * 200
        assert credentials.verify(long_password, credentials.hash(long_password)) is True


class TestPasswordExpiry:

    def test_fresh_password_is_not_expired(self, credentials, alice):
        assert credentials.is_password_expired(alice) is False

    def test_old_password_is_expired(self, credentials, make_account, clock):
        account = make_account(updated_at=clock.now() - timedelta(days=91))
        assert credentials.is_password_expired(account) is True

    def test_zero_expiration_disables_expiry(self, credentials, make_account, clock):
        account = make_account(updated_at=clock.now() - timedelta(days=3000))
        policy = SecurityPolicy(password_expiration_days=0)

        assert credentials.is_password_expired(account, policy) is False


class TestPasswordReset:
    """Single-use, time-limited reset tokens"""

    def test_reset_flow(self, credentials, store, alice):
        token = credentials.issue_reset_token(alice.id)

        outcome = credentials.consume_reset_token(token, NEW_PASSWORD)

        assert outcome.success is True
        assert outcome.code == ResultCode.OK
        updated = store.get_account_by_id(alice.id)
        assert credentials.verify(NEW_PASSWORD, updated.password_hash)

    def test_token_is_single_use(self, credentials, store, alice):
        token = credentials.issue_reset_token(alice.id)
        assert credentials.consume_reset_token(token, NEW_PASSWORD).success is True

        second = credentials.consume_reset_token(token, "An0ther!Secret")

        assert second.success is False
        assert second.code == ResultCode.RESET_TOKEN_USED
        assert credentials.verify(NEW_PASSWORD, store.get_account_by_id(alice.id).password_hash)

    def test_expired_token_leaves_password_unchanged(self, credentials, store, alice, clock):
        token = credentials.issue_reset_token(alice.id)
        clock.advance(hours=2)

        outcome = credentials.consume_reset_token(token, NEW_PASSWORD)

        assert outcome.code == ResultCode.RESET_TOKEN_EXPIRED
        assert credentials.verify(STRONG_PASSWORD, store.get_account_by_id(alice.id).password_hash)

    def test_unknown_token(self, credentials, alice):
        outcome = credentials.consume_reset_token("deadbeef" * 8, NEW_PASSWORD)
        assert outcome.code == ResultCode.RESET_TOKEN_INVALID

    def test_plaintext_token_is_not_stored(self, credentials, store, alice, cipher):
        token = credentials.issue_reset_token(alice.id)

        stored = store.get_reset_token_by_hash(cipher.lookup_digest(token))

        assert stored is not None
        assert token not in (stored.token_hash, stored.token_digest, stored.token_salt)

    def test_policy_failure_keeps_token_usable(self, credentials, alice):
        token = credentials.issue_reset_token(alice.id)

        rejected = credentials.consume_reset_token(token, "weak")
        assert rejected.code == ResultCode.PASSWORD_POLICY
        assert rejected.errors

        assert credentials.consume_reset_token(token, NEW_PASSWORD).success is True

    def test_reusing_current_password_is_rejected(self, credentials, alice):
        token = credentials.issue_reset_token(alice.id)

        outcome = credentials.consume_reset_token(token, STRONG_PASSWORD)

        assert outcome.code == ResultCode.PASSWORD_REUSED

    def test_interleaved_consumers_keep_the_winning_password(self, credentials, store, alice):
        token = credentials.issue_reset_token(alice.id)
        write_password = store.update_account_password_hash
        late = {}

        def write_while_second_consumer_runs(*args, **kwargs):
            if "outcome" not in late:
                late["outcome"] = credentials.consume_reset_token(token, "An0ther!Secret")
            return write_password(*args, **kwargs)

        with patch.object(store, "update_account_password_hash", side_effect=write_while_second_consumer_runs):
            winner = credentials.consume_reset_token(token, NEW_PASSWORD)

        assert winner.success is True
        assert late["outcome"].code == ResultCode.RESET_TOKEN_USED
        stored_hash = store.get_account_by_id(alice.id).password_hash
        assert credentials.verify(NEW_PASSWORD, stored_hash)
        assert not credentials.verify(STRONG_PASSWORD, stored_hash)
        assert not credentials.verify("An0ther!Secret", stored_hash)

    def test_failed_write_burns_token_and_keeps_password(self, credentials, store, alice):
        token = credentials.issue_reset_token(alice.id)

        with patch.object(store, "update_account_password_hash", side_effect=RuntimeError("store down")):
            with pytest.raises(SecurityError) as exc_info:
                credentials.consume_reset_token(token, NEW_PASSWORD)

        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "INTERNAL_ERROR"
        assert credentials.verify(STRONG_PASSWORD, store.get_account_by_id(alice.id).password_hash)
        assert credentials.consume_reset_token(token, NEW_PASSWORD).code == ResultCode.RESET_TOKEN_USED

    def test_request_for_unknown_email(self, credentials, store):
        assert credentials.request_password_reset("nobody@example.com") is None
        assert store.get_security_events_since(credentials.clock.now() - timedelta(days=1)) == []

    def test_request_normalizes_email(self, credentials, alice):
        token = credentials.request_password_reset("  ALICE@Example.com ")
        assert token is not None

    def test_reset_events_are_audited(self, credentials, store, alice, clock):
        token = credentials.issue_reset_token(alice.id, ip_address="203.0.113.5")
        credentials.consume_reset_token(token, NEW_PASSWORD, ip_address="203.0.113.5")

        types = [e.event_type for e in store.get_security_events_since(clock.now() - timedelta(hours=1))]
        assert SecurityEventType.PASSWORD_RESET_REQUESTED.value in types
        assert SecurityEventType.PASSWORD_RESET_COMPLETED.value in types


class TestChangePassword:

    def test_change_password(self, credentials, store, alice):
        outcome = credentials.change_password(alice.id, STRONG_PASSWORD, NEW_PASSWORD)

        assert outcome.success is True
        assert credentials.verify(NEW_PASSWORD, store.get_account_by_id(alice.id).password_hash)

    def test_wrong_current_password(self, credentials, store, alice, clock):
        outcome = credentials.change_password(alice.id, "Wr0ng!Guess", NEW_PASSWORD)

        assert outcome.code == ResultCode.INVALID_CREDENTIALS
        events = store.get_security_events_for_account(
            alice.id, clock.now() - timedelta(hours=1), event_type=SecurityEventType.PASSWORD_CHANGED.value
        )
        assert len(events) == 1
        assert events[0].success is False

    def test_new_password_must_meet_policy(self, credentials, alice):
        outcome = credentials.change_password(alice.id, STRONG_PASSWORD, "short")
        assert outcome.code == ResultCode.PASSWORD_POLICY

    def test_new_password_must_differ(self, credentials, alice):
        outcome = credentials.change_password(alice.id, STRONG_PASSWORD, STRONG_PASSWORD)
        assert outcome.code == ResultCode.PASSWORD_REUSED

    def test_unknown_account(self, credentials):
        outcome = credentials.change_password("missing", STRONG_PASSWORD, NEW_PASSWORD)
        assert outcome.code == ResultCode.ACCOUNT_NOT_FOUND

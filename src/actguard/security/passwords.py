"""
ActGuard Credential Policy
Password strength scoring, bcrypt hashing and the single-use reset token flow.
"""

import re
import secrets
from datetime import timedelta
from typing import Optional

import bcrypt

from actguard.core.clock import Clock
from actguard.core.encryption import SecretCipher
from actguard.core.logging import LoggerMixin
from actguard.database.store import SecurityStore
from .audit import AuditTrail
from .errors import ResultCode, SecurityError
from .models import (
    Account,
    PasswordOutcome,
    PasswordResetToken,
    PasswordValidation,
    SecurityEventType,
    SecurityPolicy,
)


BCRYPT_ROUNDS = 12
# bcrypt only reads the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72
RESET_TOKEN_EXPIRY_HOURS = 1
RESET_TOKEN_BYTES = 32

SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
REPEATED_CHARACTERS = re.compile(r"(.)\1{2,}")
COMMON_SEQUENCES = re.compile(r"123|abc|qwe|password|admin", re.IGNORECASE)


class CredentialPolicy(LoggerMixin):
    """Password validation, hashing and reset/change flows"""

    def __init__(
        self,
        store: SecurityStore,
        cipher: SecretCipher,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        rounds: int = BCRYPT_ROUNDS,
    ):
        self.store = store
        self.cipher = cipher
        self.clock = clock or Clock()
        self.audit = audit or AuditTrail(store, self.clock)
        self.rounds = rounds

    @staticmethod
    def validate(password: str, policy: SecurityPolicy) -> PasswordValidation:
        """Score a candidate password against the policy; pure and deterministic"""
        errors = []
        score = 0

        if len(password) < policy.password_min_length:
            errors.append(f"Password must be at least {policy.password_min_length} characters long")
        else:
            score += 20

        if len(password) > policy.password_max_length:
            errors.append(f"Password must be at most {policy.password_max_length} characters long")

        classes = [
            (policy.password_require_uppercase, re.search(r"[A-Z]", password), "one uppercase letter"),
            (policy.password_require_lowercase, re.search(r"[a-z]", password), "one lowercase letter"),
            (policy.password_require_numbers, re.search(r"\d", password), "one number"),
            (policy.password_require_special_chars, SPECIAL_CHARACTERS.search(password), "one special character"),
        ]
        for required, present, label in classes:
            if not required:
                continue
            if present:
                score += 15
            else:
                errors.append(f"Password must contain at least {label}")

        if password and len(set(password)) >= len(password) * 0.7:
            score += 10

        if REPEATED_CHARACTERS.search(password):
            errors.append("Password must not contain three or more repeated characters")
            score -= 10

        if COMMON_SEQUENCES.search(password):
            errors.append("Password must not contain common sequences or words")
            score -= 20

        return PasswordValidation(
            is_valid=not errors,
            errors=errors,
            score=max(0, min(100, score)),
        )

    def hash(self, password: str) -> str:
        hashed = bcrypt.hashpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES], bcrypt.gensalt(rounds=self.rounds))
        return hashed.decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(
                password.encode("utf-8")[:BCRYPT_MAX_BYTES],
                password_hash.encode("utf-8"),
            )
        except ValueError as e:
            self.logger.warning(f"Password hash could not be checked: {e}")
            return False

    def is_recently_used(self, account_id: str, candidate: str) -> bool:
        """Compare against the current hash; history beyond it is not stored"""
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return False
        return self.verify(candidate, account.password_hash)

    def is_password_expired(self, account: Account, policy: Optional[SecurityPolicy] = None) -> bool:
        policy = policy or self.store.current_policy()
        if policy.password_expiration_days <= 0:
            return False
        return self.clock.now() - account.updated_at > timedelta(days=policy.password_expiration_days)

    def issue_reset_token(
        self,
        account_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Persist a hashed reset token and hand the plaintext back exactly once"""
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        digest = self.cipher.hash(token)
        now = self.clock.now()

        self.store.create_reset_token(PasswordResetToken(
            account_id=account_id,
            token_hash=self.cipher.lookup_digest(token),
            token_digest=digest.hash,
            token_salt=digest.salt,
            expires_at=now + timedelta(hours=RESET_TOKEN_EXPIRY_HOURS),
            created_at=now,
            requested_ip=ip_address,
            requested_user_agent=user_agent,
        ))

        self.audit.log(
            SecurityEventType.PASSWORD_RESET_REQUESTED,
            "Password reset requested",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(f"Password reset token issued for account {account_id}")
        return token

    def request_password_reset(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Issue a token by email; unknown emails yield None without any other signal"""
        account = self.store.get_account_by_email(email.strip().lower())
        if account is None:
            self.logger.info("Password reset requested for unknown email")
            return None
        return self.issue_reset_token(account.id, ip_address, user_agent)

    def consume_reset_token(
        self,
        token: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordOutcome:
        """Set a new password with a reset token; on any rejection nothing changes"""
        stored = self.store.get_reset_token_by_hash(self.cipher.lookup_digest(token))
        if stored is None:
            return PasswordOutcome(False, ResultCode.RESET_TOKEN_INVALID, "Invalid or expired reset token")
        if stored.used_at is not None:
            return PasswordOutcome(False, ResultCode.RESET_TOKEN_USED, "Reset token has already been used")
        if self.clock.now() > stored.expires_at:
            return PasswordOutcome(False, ResultCode.RESET_TOKEN_EXPIRED, "Reset token has expired")
        if not self.cipher.verify_hash(token, stored.token_digest, stored.token_salt):
            return PasswordOutcome(False, ResultCode.RESET_TOKEN_INVALID, "Invalid or expired reset token")

        validation = self.validate(new_password, self.store.current_policy())
        if not validation.is_valid:
            return PasswordOutcome(
                False, ResultCode.PASSWORD_POLICY, "Password does not meet policy", validation.errors
            )

        account = self.store.get_account_by_id(stored.account_id)
        if account is None:
            return PasswordOutcome(False, ResultCode.ACCOUNT_NOT_FOUND, "Account not found")
        if self.verify(new_password, account.password_hash):
            return PasswordOutcome(
                False, ResultCode.PASSWORD_REUSED, "New password must differ from the current one"
            )

        new_hash = self.hash(new_password)
        now = self.clock.now()
        try:
            # The claim is the commit point: only its winner writes the password
            claimed = self.store.mark_reset_token_used(stored.id, now)
            if claimed:
                self.store.update_account_password_hash(account.id, new_hash, now)
        except Exception as e:
            # A token claimed before the failure stays burned
            self.logger.error(f"Password reset failed for account {account.id}: {e}")
            raise SecurityError("Password reset failed", ResultCode.INTERNAL_ERROR, 500)

        if not claimed:
            return PasswordOutcome(False, ResultCode.RESET_TOKEN_USED, "Reset token has already been used")

        self.audit.log(
            SecurityEventType.PASSWORD_RESET_COMPLETED,
            "Password reset completed",
            account_id=account.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(f"Password reset completed for account {account.id}")
        return PasswordOutcome(True)

    def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordOutcome:
        """Password change for an authenticated account holder"""
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return PasswordOutcome(False, ResultCode.ACCOUNT_NOT_FOUND, "Account not found")

        if not self.verify(current_password, account.password_hash):
            self.audit.log(
                SecurityEventType.PASSWORD_CHANGED,
                "Password change rejected: wrong current password",
                account_id=account_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                failure_reason="invalid_current_password",
            )
            return PasswordOutcome(False, ResultCode.INVALID_CREDENTIALS, "Current password is incorrect")

        validation = self.validate(new_password, self.store.current_policy())
        if not validation.is_valid:
            return PasswordOutcome(
                False, ResultCode.PASSWORD_POLICY, "Password does not meet policy", validation.errors
            )

        if self.is_recently_used(account_id, new_password):
            return PasswordOutcome(
                False, ResultCode.PASSWORD_REUSED, "New password must differ from the current one"
            )

        self.store.update_account_password_hash(account_id, self.hash(new_password), self.clock.now())
        self.audit.log(
            SecurityEventType.PASSWORD_CHANGED,
            "Password changed",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(f"Password changed for account {account_id}")
        return PasswordOutcome(True)

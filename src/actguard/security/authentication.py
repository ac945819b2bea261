"""
ActGuard Access Guard
Authentication state machine: lock check, CAPTCHA gate, credentials,
password expiry, MFA and session issuance.
"""

import logging
import math
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from actguard.core.clock import Clock
from actguard.core.config import settings
from actguard.core.encryption import SecretCipher
from actguard.core.logging import LoggerMixin
from actguard.database.store import SecurityStore
from .audit import AuditTrail
from .errors import MFAError, ResultCode, SecurityError, ValidationError
from .mfa_system import RecoveryCodeVault
from .models import (
    Account,
    AccountLockStatus,
    AuthenticationResult,
    FailedLoginAttempt,
    Location,
    SecurityEventType,
    SecurityPolicy,
)
from .passwords import CredentialPolicy
from .sessions import SessionRegistry


INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
CAPTCHA_LOOKBACK = timedelta(hours=1)
FAILED_ATTEMPT_RETENTION = timedelta(days=30)


class AccessGuard(LoggerMixin):
    """
    Composes the security services into one `authenticate` operation.

    Each gate either passes the attempt on or returns a rejected
    AuthenticationResult carrying a stable ResultCode.
    """

    def __init__(
        self,
        store: SecurityStore,
        cipher: Optional[SecretCipher] = None,
        clock: Optional[Clock] = None,
        audit: Optional[AuditTrail] = None,
        credentials: Optional[CredentialPolicy] = None,
        mfa: Optional[RecoveryCodeVault] = None,
        sessions: Optional[SessionRegistry] = None,
    ):
        self.store = store
        self.clock = clock or Clock()
        self.cipher = cipher or SecretCipher.from_settings()
        self.audit = audit or AuditTrail(store, self.clock)
        self.credentials = credentials or CredentialPolicy(store, self.cipher, self.audit, self.clock)
        self.mfa = mfa or RecoveryCodeVault(store, self.cipher, self.audit, self.clock)
        self.sessions = sessions or SessionRegistry(store, self.audit, self.clock)

    # Security policy

    def initialize_security_policy(self) -> SecurityPolicy:
        """Create the policy singleton from settings if it does not exist yet"""
        existing = self.store.get_security_policy()
        if existing is not None:
            return existing
        policy = self.store.create_security_policy(SecurityPolicy.from_settings(settings))
        self.logger.info("Security policy initialized with default values")
        return policy

    def get_security_policy(self) -> SecurityPolicy:
        return self.store.current_policy()

    def update_security_policy(self, updates: Dict[str, Any], actor_id: Optional[str] = None) -> SecurityPolicy:
        """Replace the policy with a validated copy carrying `updates`"""
        current = self.get_security_policy()
        try:
            policy = current.with_updates(updates)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc']) or 'policy'}: {err['msg']}"
                for err in e.errors()
            ]
            self.logger.warning(f"Security policy update rejected: {errors}")
            raise ValidationError("Invalid security policy", errors)

        if self.store.get_security_policy() is None:
            self.store.create_security_policy(policy)
        policy = self.store.update_security_policy(policy)

        self.audit.log(
            SecurityEventType.SECURITY_SETTINGS_CHANGED,
            "Security settings updated",
            account_id=actor_id,
            additional_data={"changes": updates},
        )
        self.logger.info(f"Security policy updated: {sorted(updates)}")
        return policy

    # Standalone gates

    def check_account_lock_status(self, account_id: Optional[str], ip_address: str) -> AccountLockStatus:
        """Lockout decision for an account/IP pair; unlocked on any internal error"""
        try:
            policy = self.get_security_policy()
            now = self.clock.now()
            duration = timedelta(minutes=policy.lockout_duration_minutes)
            window_start = now - duration

            checks = []
            if account_id:
                checks.append((
                    self.store.get_failed_login_attempts(window_start, account_id=account_id),
                    policy.max_login_attempts,
                    "Too many failed login attempts",
                ))
            checks.append((
                self.store.get_failed_login_attempts(window_start, ip_address=ip_address),
                policy.max_login_attempts * 2,
                "Too many failed attempts from this IP address",
            ))

            for attempts, limit, reason in checks:
                if len(attempts) < limit:
                    continue
                latest = max(a.created_at for a in attempts)
                unlock_at = latest + duration
                if now < unlock_at:
                    remaining = math.ceil((unlock_at - now).total_seconds() / 60)
                    self.logger.warning(
                        f"Login locked ({reason}) for account {account_id or 'N/A'}, "
                        f"IP {ip_address}: {remaining} minutes remaining"
                    )
                    return AccountLockStatus(is_locked=True, remaining_minutes=remaining, reason=reason)

            return AccountLockStatus(is_locked=False)

        except Exception as e:
            self.logger.error(f"Error checking account lock status: {e}")
            return AccountLockStatus(is_locked=False)

    def should_require_captcha(self, ip_address: str) -> bool:
        try:
            policy = self.get_security_policy()
            if not policy.enable_captcha:
                return False
            since = self.clock.now() - CAPTCHA_LOOKBACK
            attempts = self.store.get_failed_login_attempts(since, ip_address=ip_address)
            return len(attempts) >= policy.captcha_after_attempts
        except Exception as e:
            self.logger.error(f"Error checking CAPTCHA requirement: {e}")
            return False

    def record_failed_login_attempt(
        self,
        email: str,
        ip_address: str,
        failure_reason: str,
        account_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> FailedLoginAttempt:
        try:
            attempt = self.store.create_failed_login_attempt(FailedLoginAttempt(
                email=email,
                ip_address=ip_address,
                failure_reason=failure_reason,
                created_at=self.clock.now(),
                account_id=account_id,
                user_agent=user_agent,
            ))
        except Exception as e:
            self.logger.error(f"Failed to record failed login attempt: {e}")
            raise SecurityError("Failed to record failed login attempt", "RECORD_FAILED_ATTEMPT_ERROR")

        self.audit.log(
            SecurityEventType.LOGIN_FAILED,
            f"Failed login attempt: {failure_reason}",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            failure_reason=failure_reason,
        )
        self.logger.info(f"Failed login attempt recorded ({failure_reason}) from {ip_address}")
        return attempt

    # Authentication

    def authenticate(
        self,
        email: str,
        password: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        mfa_code: Optional[str] = None,
        location: Optional[Location] = None,
        device_name: Optional[str] = None,
    ) -> AuthenticationResult:
        """Run one authentication attempt through every gate"""
        try:
            email = (email or "").strip().lower()
            policy = self.get_security_policy()
            account = self.store.get_account_by_email(email)

            lock = self.check_account_lock_status(account.id if account else None, ip_address)
            if lock.is_locked:
                return AuthenticationResult(
                    success=False,
                    code=ResultCode.ACCOUNT_LOCKED,
                    remaining_minutes=lock.remaining_minutes,
                    error=f"Account temporarily locked. Try again in {lock.remaining_minutes} minutes.",
                )

            requires_captcha = self.should_require_captcha(ip_address)

            if account is None or not self.credentials.verify(password, account.password_hash):
                self.record_failed_login_attempt(
                    email,
                    ip_address,
                    "invalid_email" if account is None else "invalid_password",
                    account_id=account.id if account else None,
                    user_agent=user_agent,
                )
                return AuthenticationResult(
                    success=False,
                    code=ResultCode.INVALID_CREDENTIALS,
                    requires_captcha=requires_captcha,
                    error=INVALID_CREDENTIALS_MESSAGE,
                )

            if self.credentials.is_password_expired(account, policy):
                self.logger.warning(f"Authentication blocked for account {account.id}: password expired")
                return AuthenticationResult(
                    success=False,
                    code=ResultCode.PASSWORD_EXPIRED,
                    error="Password has expired. Please reset your password.",
                )

            rejection = self._check_mfa(account, policy, mfa_code, ip_address, user_agent, requires_captcha)
            if rejection is not None:
                return rejection

            token = self.sessions.create(
                account.id,
                ip_address,
                user_agent=user_agent,
                device_name=device_name,
                location=location,
            )
            self.audit.log(
                SecurityEventType.LOGIN_SUCCESSFUL,
                "User authenticated successfully",
                account_id=account.id,
                ip_address=ip_address,
                user_agent=user_agent,
                location=location,
                session_id=token,
            )
            self.log_with_context(
                logging.INFO,
                f"Authentication successful for account {account.id}",
                {"account_id": account.id, "ip_address": ip_address, "mfa_enrolled": self.mfa.is_enabled(account.id)},
            )
            return AuthenticationResult(
                success=True,
                code=ResultCode.OK,
                user=account.safe(),
                session_token=token,
            )

        except SecurityError:
            raise
        except Exception as e:
            self.logger.error(f"Authentication error: {e}")
            raise SecurityError("Authentication failed", "AUTH_ERROR", 500)

    def _check_mfa(
        self,
        account: Account,
        policy: SecurityPolicy,
        mfa_code: Optional[str],
        ip_address: str,
        user_agent: Optional[str],
        requires_captcha: bool,
    ) -> Optional[AuthenticationResult]:
        enrolled = self.mfa.is_enabled(account.id)
        if not enrolled and not policy.mfa_required:
            return None

        if not mfa_code or not enrolled:
            return AuthenticationResult(
                success=False,
                code=ResultCode.MFA_REQUIRED,
                requires_mfa=True,
                error="MFA code required" if enrolled else "MFA enrollment required",
            )

        try:
            verified = self.mfa.verify(account.id, mfa_code, ip_address, user_agent).is_valid
        except MFAError as e:
            self.logger.warning(f"MFA verification error for account {account.id}: {e.message}")
            verified = False

        if verified:
            return None

        self.record_failed_login_attempt(
            account.email,
            ip_address,
            "invalid_mfa",
            account_id=account.id,
            user_agent=user_agent,
        )
        return AuthenticationResult(
            success=False,
            code=ResultCode.INVALID_MFA,
            requires_mfa=True,
            requires_captcha=requires_captcha,
            error="Invalid MFA code",
        )

    # Maintenance

    def run_maintenance_tasks(self) -> Dict[str, int]:
        """Periodic purge of expired sessions, old attempts, expired reset tokens and old events"""
        now = self.clock.now()
        tasks = {
            "expired_sessions": self.sessions.cleanup_expired,
            "failed_attempts": lambda: self.store.delete_failed_login_attempts_older_than(
                now - FAILED_ATTEMPT_RETENTION
            ),
            "reset_tokens": lambda: self.store.delete_expired_reset_tokens(now),
            "security_events": self.audit.cleanup,
        }

        results: Dict[str, int] = {}
        for name, task in tasks.items():
            try:
                results[name] = task()
            except Exception as e:
                self.logger.error(f"Maintenance task {name} failed: {e}")
                results[name] = -1

        self.logger.info(f"Security maintenance completed: {results}")
        return results

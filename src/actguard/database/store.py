"""
ActGuard Persistence Port
The narrow record-store interface every security component talks to.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from actguard.core.config import settings
from actguard.security.models import (
    Account,
    FailedLoginAttempt,
    MfaEnrollment,
    PasswordResetToken,
    SecurityEvent,
    SecurityPolicy,
    SessionStatus,
    UserSession,
)


class SecurityStore(ABC):
    """
    Storage-engine agnostic persistence port.

    Every time-dependent operation takes the reference time explicitly so the
    caller's injected clock is the only source of "now". Returned records are
    detached copies: mutating them has no effect until written back.
    """

    # Accounts

    @abstractmethod
    def create_account(self, account: Account) -> Account:
        """Seed an account; email uniqueness is case-insensitive"""

    @abstractmethod
    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    @abstractmethod
    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    def update_account_password_hash(self, account_id: str, password_hash: str, updated_at: datetime) -> bool:
        ...

    # Failed login attempts

    @abstractmethod
    def create_failed_login_attempt(self, attempt: FailedLoginAttempt) -> FailedLoginAttempt:
        ...

    @abstractmethod
    def get_failed_login_attempts(
        self,
        since: datetime,
        account_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> List[FailedLoginAttempt]:
        """Attempts at or after `since`, newest first, matching every given filter"""

    @abstractmethod
    def delete_failed_login_attempts_older_than(self, cutoff: datetime) -> int:
        ...

    # Security policy singleton

    def current_policy(self) -> SecurityPolicy:
        """Stored policy, or the settings-seeded default when none exists yet"""
        return self.get_security_policy() or SecurityPolicy.from_settings(settings)

    @abstractmethod
    def get_security_policy(self) -> Optional[SecurityPolicy]:
        ...

    @abstractmethod
    def create_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        ...

    @abstractmethod
    def update_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        ...

    # Sessions

    @abstractmethod
    def create_session(self, session: UserSession) -> UserSession:
        ...

    @abstractmethod
    def get_session_by_token(self, token: str) -> Optional[UserSession]:
        ...

    @abstractmethod
    def touch_session_activity(self, token: str, at: datetime) -> bool:
        ...

    @abstractmethod
    def revoke_session(
        self,
        token: str,
        reason: str,
        at: datetime,
        status: SessionStatus = SessionStatus.REVOKED,
    ) -> bool:
        """Move an active session to `status`; False when it was not active"""

    @abstractmethod
    def list_sessions(self, account_id: str, status: Optional[SessionStatus] = None) -> List[UserSession]:
        """Sessions of an account ordered by creation time, oldest first"""

    @abstractmethod
    def get_sessions_by_ip(self, account_id: str, ip_address: str, since: datetime) -> List[UserSession]:
        ...

    @abstractmethod
    def delete_expired_sessions(self, now: datetime) -> int:
        """Remove sessions past expiry or no longer active"""

    # Security events

    @abstractmethod
    def create_security_event(self, event: SecurityEvent) -> SecurityEvent:
        ...

    @abstractmethod
    def get_security_events_since(self, since: datetime) -> List[SecurityEvent]:
        ...

    @abstractmethod
    def get_security_events_for_account(
        self,
        account_id: str,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        """Events of an account, newest first"""

    @abstractmethod
    def get_security_events_for_ip(
        self,
        ip_address: str,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        """Events from an IP across all accounts, newest first"""

    @abstractmethod
    def query_security_events(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        account_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> List[SecurityEvent]:
        """Filtered events, newest first"""

    @abstractmethod
    def delete_security_events_older_than(self, cutoff: datetime) -> int:
        ...

    # MFA enrollments

    @abstractmethod
    def get_mfa_enrollment(self, account_id: str) -> Optional[MfaEnrollment]:
        ...

    @abstractmethod
    def upsert_mfa_enrollment(self, enrollment: MfaEnrollment) -> MfaEnrollment:
        ...

    @abstractmethod
    def update_mfa_enrollment(self, enrollment: MfaEnrollment) -> bool:
        """Overwrite an existing enrollment; False when none exists"""

    @abstractmethod
    def delete_mfa_enrollment(self, account_id: str) -> bool:
        ...

    # Password reset tokens

    @abstractmethod
    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        ...

    @abstractmethod
    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        ...

    @abstractmethod
    def mark_reset_token_used(self, token_id: str, at: datetime) -> bool:
        """Set used_at once; False when the token is missing or already used"""

    @abstractmethod
    def delete_expired_reset_tokens(self, now: datetime) -> int:
        ...

"""
ActGuard In-Memory Store
Thread-safe dictionary backed SecurityStore for tests and embedding.
"""

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional

from actguard.core.logging import LoggerMixin
from actguard.security.errors import ValidationError
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
from .store import SecurityStore


class InMemorySecurityStore(SecurityStore, LoggerMixin):
    """Every operation runs under one re-entrant lock and returns copies"""

    def __init__(self):
        self._lock = threading.RLock()
        self._accounts: Dict[str, Account] = {}
        self._failed_attempts: List[FailedLoginAttempt] = []
        self._policy: Optional[SecurityPolicy] = None
        self._sessions: Dict[str, UserSession] = {}
        self._events: List[SecurityEvent] = []
        self._mfa: Dict[str, MfaEnrollment] = {}
        self._reset_tokens: Dict[str, PasswordResetToken] = {}

    # Accounts

    def create_account(self, account: Account) -> Account:
        with self._lock:
            email = account.email.strip().lower()
            if any(a.email == email for a in self._accounts.values()):
                raise ValidationError("Account already exists", [f"email {email} is taken"])
            stored = copy.deepcopy(account)
            stored.email = email
            self._accounts[stored.id] = stored
            return copy.deepcopy(stored)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        email = email.strip().lower()
        with self._lock:
            for account in self._accounts.values():
                if account.email == email:
                    return copy.deepcopy(account)
        return None

    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def update_account_password_hash(self, account_id: str, password_hash: str, updated_at: datetime) -> bool:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            account.password_hash = password_hash
            account.updated_at = updated_at
            return True

    # Failed login attempts

    def create_failed_login_attempt(self, attempt: FailedLoginAttempt) -> FailedLoginAttempt:
        with self._lock:
            self._failed_attempts.append(copy.deepcopy(attempt))
        return attempt

    def get_failed_login_attempts(
        self,
        since: datetime,
        account_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> List[FailedLoginAttempt]:
        with self._lock:
            matches = [
                a for a in self._failed_attempts
                if a.created_at >= since
                and (account_id is None or a.account_id == account_id)
                and (ip_address is None or a.ip_address == ip_address)
            ]
            matches.sort(key=lambda a: a.created_at, reverse=True)
            return copy.deepcopy(matches)

    def delete_failed_login_attempts_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            before = len(self._failed_attempts)
            self._failed_attempts = [a for a in self._failed_attempts if a.created_at >= cutoff]
            return before - len(self._failed_attempts)

    # Security policy singleton

    def get_security_policy(self) -> Optional[SecurityPolicy]:
        with self._lock:
            return self._policy

    def create_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        with self._lock:
            if self._policy is None:
                self._policy = policy
            return self._policy

    def update_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        with self._lock:
            self._policy = policy
            return policy

    # Sessions

    def create_session(self, session: UserSession) -> UserSession:
        with self._lock:
            self._sessions[session.session_token] = copy.deepcopy(session)
        return session

    def get_session_by_token(self, token: str) -> Optional[UserSession]:
        with self._lock:
            session = self._sessions.get(token)
            return copy.deepcopy(session) if session else None

    def touch_session_activity(self, token: str, at: datetime) -> bool:
        with self._lock:
            session = self._sessions.get(token)
            if session is None or session.status != SessionStatus.ACTIVE:
                return False
            session.last_activity_at = at
            return True

    def revoke_session(
        self,
        token: str,
        reason: str,
        at: datetime,
        status: SessionStatus = SessionStatus.REVOKED,
    ) -> bool:
        with self._lock:
            session = self._sessions.get(token)
            if session is None or session.status != SessionStatus.ACTIVE:
                return False
            session.status = status
            session.revoked_at = at
            session.revocation_reason = reason
            return True

    def list_sessions(self, account_id: str, status: Optional[SessionStatus] = None) -> List[UserSession]:
        with self._lock:
            sessions = [
                s for s in self._sessions.values()
                if s.account_id == account_id and (status is None or s.status == status)
            ]
            sessions.sort(key=lambda s: s.created_at)
            return copy.deepcopy(sessions)

    def get_sessions_by_ip(self, account_id: str, ip_address: str, since: datetime) -> List[UserSession]:
        with self._lock:
            return copy.deepcopy([
                s for s in self._sessions.values()
                if s.account_id == account_id and s.ip_address == ip_address and s.created_at >= since
            ])

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._lock:
            stale = [
                token for token, s in self._sessions.items()
                if s.expires_at < now or s.status != SessionStatus.ACTIVE
            ]
            for token in stale:
                del self._sessions[token]
            return len(stale)

    # Security events

    def create_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._lock:
            self._events.append(copy.deepcopy(event))
        return event

    def _select_events(self, predicate, limit: Optional[int] = None) -> List[SecurityEvent]:
        with self._lock:
            events = [e for e in self._events if predicate(e)]
            events.sort(key=lambda e: e.created_at, reverse=True)
            if limit is not None:
                events = events[:limit]
            return copy.deepcopy(events)

    def get_security_events_since(self, since: datetime) -> List[SecurityEvent]:
        return self._select_events(lambda e: e.created_at >= since)

    def get_security_events_for_account(
        self,
        account_id: str,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        return self._select_events(
            lambda e: e.account_id == account_id
            and (since is None or e.created_at >= since)
            and (event_type is None or e.event_type == event_type)
            and (success is None or e.success == success),
            limit,
        )

    def get_security_events_for_ip(
        self,
        ip_address: str,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        return self._select_events(
            lambda e: e.ip_address == ip_address
            and (since is None or e.created_at >= since)
            and (event_type is None or e.event_type == event_type)
            and (success is None or e.success == success),
            limit,
        )

    def query_security_events(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        account_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> List[SecurityEvent]:
        return self._select_events(
            lambda e: (since is None or e.created_at >= since)
            and (until is None or e.created_at <= until)
            and (account_id is None or e.account_id == account_id)
            and (event_type is None or e.event_type == event_type)
        )

    def delete_security_events_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.created_at >= cutoff]
            return before - len(self._events)

    # MFA enrollments

    def get_mfa_enrollment(self, account_id: str) -> Optional[MfaEnrollment]:
        with self._lock:
            enrollment = self._mfa.get(account_id)
            return copy.deepcopy(enrollment) if enrollment else None

    def upsert_mfa_enrollment(self, enrollment: MfaEnrollment) -> MfaEnrollment:
        with self._lock:
            self._mfa[enrollment.account_id] = copy.deepcopy(enrollment)
        return enrollment

    def update_mfa_enrollment(self, enrollment: MfaEnrollment) -> bool:
        with self._lock:
            if enrollment.account_id not in self._mfa:
                return False
            self._mfa[enrollment.account_id] = copy.deepcopy(enrollment)
            return True

    def delete_mfa_enrollment(self, account_id: str) -> bool:
        with self._lock:
            return self._mfa.pop(account_id, None) is not None

    # Password reset tokens

    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._lock:
            self._reset_tokens[token.id] = copy.deepcopy(token)
        return token

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._lock:
            for token in self._reset_tokens.values():
                if token.token_hash == token_hash:
                    return copy.deepcopy(token)
        return None

    def mark_reset_token_used(self, token_id: str, at: datetime) -> bool:
        with self._lock:
            token = self._reset_tokens.get(token_id)
            if token is None or token.used_at is not None:
                return False
            token.used_at = at
            return True

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._lock:
            expired = [tid for tid, t in self._reset_tokens.items() if t.expires_at < now]
            for tid in expired:
                del self._reset_tokens[tid]
            return len(expired)

"""
ActGuard SQL Store
SQLAlchemy 2.0 implementation of the SecurityStore port.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import Engine, create_engine, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from actguard.core.config import settings
from actguard.core.logging import LoggerMixin
from actguard.security.errors import ValidationError
from actguard.security.models import (
    Account,
    FailedLoginAttempt,
    Location,
    MfaEnrollment,
    PasswordResetToken,
    SecurityEvent,
    SecurityPolicy,
    SessionStatus,
    UserSession,
)
from .models import (
    AccountRow,
    Base,
    FailedLoginAttemptRow,
    MfaEnrollmentRow,
    PasswordResetTokenRow,
    SecurityEventRow,
    SecurityPolicyRow,
    UserSessionRow,
)
from .store import SecurityStore


POLICY_ROW_ID = 1


def _account(row: AccountRow) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        updated_at=row.updated_at,
        created_at=row.created_at,
        display_name=row.display_name,
        is_admin=row.is_admin,
    )


def _attempt(row: FailedLoginAttemptRow) -> FailedLoginAttempt:
    return FailedLoginAttempt(
        id=row.id,
        email=row.email,
        ip_address=row.ip_address,
        failure_reason=row.failure_reason,
        created_at=row.created_at,
        account_id=row.account_id,
        user_agent=row.user_agent,
    )


def _session(row: UserSessionRow) -> UserSession:
    return UserSession(
        id=row.id,
        session_token=row.session_token,
        account_id=row.account_id,
        ip_address=row.ip_address,
        expires_at=row.expires_at,
        last_activity_at=row.last_activity_at,
        created_at=row.created_at,
        status=SessionStatus(row.status),
        user_agent=row.user_agent,
        device_name=row.device_name,
        device_type=row.device_type,
        browser_name=row.browser_name,
        browser_version=row.browser_version,
        os_name=row.os_name,
        os_version=row.os_version,
        location=Location.from_dict(row.location),
        is_trusted=row.is_trusted,
        risk_score=row.risk_score,
        revoked_at=row.revoked_at,
        revocation_reason=row.revocation_reason,
    )


def _event(row: SecurityEventRow) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        event_type=row.event_type,
        description=row.description,
        created_at=row.created_at,
        account_id=row.account_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=row.success,
        risk_score=row.risk_score,
        location=Location.from_dict(row.location),
        session_id=row.session_id,
        failure_reason=row.failure_reason,
        additional_data=dict(row.additional_data or {}),
    )


def _enrollment(row: MfaEnrollmentRow) -> MfaEnrollment:
    return MfaEnrollment(
        account_id=row.account_id,
        enabled=row.enabled,
        totp_secret=row.totp_secret,
        backup_codes=dict(row.backup_codes or {}),
        verified_at=row.verified_at,
        backup_codes_used_count=row.backup_codes_used_count,
        recovery_email=row.recovery_email,
        last_used_at=row.last_used_at,
    )


def _reset_token(row: PasswordResetTokenRow) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        token_digest=row.token_digest,
        token_salt=row.token_salt,
        expires_at=row.expires_at,
        created_at=row.created_at,
        requested_ip=row.requested_ip,
        requested_user_agent=row.requested_user_agent,
        used_at=row.used_at,
    )


class SqlAlchemySecurityStore(SecurityStore, LoggerMixin):
    """One short-lived ORM session and transaction per store call"""

    def __init__(self, engine: Optional[Engine] = None, database_url: Optional[str] = None):
        self.engine = engine or create_engine(
            database_url or settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
        )
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        """Create every table that does not exist yet"""
        Base.metadata.create_all(self.engine)
        self.logger.info("Security store schema ready")

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._session_factory() as db:
            with db.begin():
                yield db

    # Accounts

    def create_account(self, account: Account) -> Account:
        email = account.email.strip().lower()
        try:
            with self._transaction() as db:
                db.add(AccountRow(
                    id=account.id,
                    email=email,
                    password_hash=account.password_hash,
                    display_name=account.display_name,
                    is_admin=account.is_admin,
                    created_at=account.created_at or account.updated_at,
                    updated_at=account.updated_at,
                ))
        except IntegrityError:
            raise ValidationError("Account already exists", [f"email {email} is taken"])
        return self.get_account_by_id(account.id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._transaction() as db:
            row = db.scalars(select(AccountRow).where(AccountRow.email == email.strip().lower())).first()
            return _account(row) if row else None

    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._transaction() as db:
            row = db.get(AccountRow, account_id)
            return _account(row) if row else None

    def update_account_password_hash(self, account_id: str, password_hash: str, updated_at: datetime) -> bool:
        with self._transaction() as db:
            result = db.execute(
                update(AccountRow)
                .where(AccountRow.id == account_id)
                .values(password_hash=password_hash, updated_at=updated_at)
            )
            return result.rowcount == 1

    # Failed login attempts

    def create_failed_login_attempt(self, attempt: FailedLoginAttempt) -> FailedLoginAttempt:
        with self._transaction() as db:
            db.add(FailedLoginAttemptRow(
                id=attempt.id,
                account_id=attempt.account_id,
                email=attempt.email,
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
                failure_reason=attempt.failure_reason,
                created_at=attempt.created_at,
            ))
        return attempt

    def get_failed_login_attempts(
        self,
        since: datetime,
        account_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> List[FailedLoginAttempt]:
        query = select(FailedLoginAttemptRow).where(FailedLoginAttemptRow.created_at >= since)
        if account_id is not None:
            query = query.where(FailedLoginAttemptRow.account_id == account_id)
        if ip_address is not None:
            query = query.where(FailedLoginAttemptRow.ip_address == ip_address)
        query = query.order_by(FailedLoginAttemptRow.created_at.desc())

        with self._transaction() as db:
            return [_attempt(row) for row in db.scalars(query)]

    def delete_failed_login_attempts_older_than(self, cutoff: datetime) -> int:
        with self._transaction() as db:
            result = db.execute(delete(FailedLoginAttemptRow).where(FailedLoginAttemptRow.created_at < cutoff))
            return result.rowcount

    # Security policy singleton

    def get_security_policy(self) -> Optional[SecurityPolicy]:
        with self._transaction() as db:
            row = db.get(SecurityPolicyRow, POLICY_ROW_ID)
            return SecurityPolicy.model_validate(row.document) if row else None

    def create_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        with self._transaction() as db:
            row = db.get(SecurityPolicyRow, POLICY_ROW_ID)
            if row is not None:
                return SecurityPolicy.model_validate(row.document)
            db.add(SecurityPolicyRow(id=POLICY_ROW_ID, document=policy.model_dump()))
        return policy

    def update_security_policy(self, policy: SecurityPolicy) -> SecurityPolicy:
        with self._transaction() as db:
            row = db.get(SecurityPolicyRow, POLICY_ROW_ID)
            if row is None:
                db.add(SecurityPolicyRow(id=POLICY_ROW_ID, document=policy.model_dump()))
            else:
                row.document = policy.model_dump()
        return policy

    # Sessions

    def create_session(self, session: UserSession) -> UserSession:
        with self._transaction() as db:
            db.add(UserSessionRow(
                id=session.id,
                session_token=session.session_token,
                account_id=session.account_id,
                status=session.status.value,
                ip_address=session.ip_address,
                user_agent=session.user_agent,
                device_name=session.device_name,
                device_type=session.device_type,
                browser_name=session.browser_name,
                browser_version=session.browser_version,
                os_name=session.os_name,
                os_version=session.os_version,
                location=session.location.to_dict() if session.location else None,
                is_trusted=session.is_trusted,
                risk_score=session.risk_score,
                last_activity_at=session.last_activity_at,
                expires_at=session.expires_at,
                created_at=session.created_at,
                revoked_at=session.revoked_at,
                revocation_reason=session.revocation_reason,
            ))
        return session

    def get_session_by_token(self, token: str) -> Optional[UserSession]:
        with self._transaction() as db:
            row = db.scalars(select(UserSessionRow).where(UserSessionRow.session_token == token)).first()
            return _session(row) if row else None

    def touch_session_activity(self, token: str, at: datetime) -> bool:
        with self._transaction() as db:
            result = db.execute(
                update(UserSessionRow)
                .where(
                    UserSessionRow.session_token == token,
                    UserSessionRow.status == SessionStatus.ACTIVE.value,
                )
                .values(last_activity_at=at)
            )
            return result.rowcount == 1

    def revoke_session(
        self,
        token: str,
        reason: str,
        at: datetime,
        status: SessionStatus = SessionStatus.REVOKED,
    ) -> bool:
        with self._transaction() as db:
            result = db.execute(
                update(UserSessionRow)
                .where(
                    UserSessionRow.session_token == token,
                    UserSessionRow.status == SessionStatus.ACTIVE.value,
                )
                .values(status=status.value, revoked_at=at, revocation_reason=reason)
            )
            return result.rowcount == 1

    def list_sessions(self, account_id: str, status: Optional[SessionStatus] = None) -> List[UserSession]:
        query = select(UserSessionRow).where(UserSessionRow.account_id == account_id)
        if status is not None:
            query = query.where(UserSessionRow.status == status.value)
        query = query.order_by(UserSessionRow.created_at.asc())

        with self._transaction() as db:
            return [_session(row) for row in db.scalars(query)]

    def get_sessions_by_ip(self, account_id: str, ip_address: str, since: datetime) -> List[UserSession]:
        query = select(UserSessionRow).where(
            UserSessionRow.account_id == account_id,
            UserSessionRow.ip_address == ip_address,
            UserSessionRow.created_at >= since,
        )
        with self._transaction() as db:
            return [_session(row) for row in db.scalars(query)]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._transaction() as db:
            result = db.execute(
                delete(UserSessionRow).where(
                    or_(
                        UserSessionRow.expires_at < now,
                        UserSessionRow.status != SessionStatus.ACTIVE.value,
                    )
                )
            )
            return result.rowcount

    # Security events

    def create_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._transaction() as db:
            db.add(SecurityEventRow(
                id=event.id,
                account_id=event.account_id,
                event_type=event.event_type,
                description=event.description,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                success=event.success,
                risk_score=event.risk_score,
                location=event.location.to_dict() if event.location else None,
                session_id=event.session_id,
                failure_reason=event.failure_reason,
                additional_data=event.additional_data,
                created_at=event.created_at,
            ))
        return event

    def _events(self, *criteria, limit: Optional[int] = None) -> List[SecurityEvent]:
        query = select(SecurityEventRow).where(*criteria).order_by(SecurityEventRow.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        with self._transaction() as db:
            return [_event(row) for row in db.scalars(query)]

    @staticmethod
    def _event_filters(
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> list:
        criteria = []
        if since is not None:
            criteria.append(SecurityEventRow.created_at >= since)
        if event_type is not None:
            criteria.append(SecurityEventRow.event_type == event_type)
        if success is not None:
            criteria.append(SecurityEventRow.success == success)
        return criteria

    def get_security_events_since(self, since: datetime) -> List[SecurityEvent]:
        return self._events(SecurityEventRow.created_at >= since)

    def get_security_events_for_account(
        self,
        account_id: str,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        return self._events(
            SecurityEventRow.account_id == account_id,
            *self._event_filters(since, event_type, success),
            limit=limit,
        )

    def get_security_events_for_ip(
        self,
        ip_address: str,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEvent]:
        return self._events(
            SecurityEventRow.ip_address == ip_address,
            *self._event_filters(since, event_type, success),
            limit=limit,
        )

    def query_security_events(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        account_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> List[SecurityEvent]:
        criteria = self._event_filters(since, event_type)
        if until is not None:
            criteria.append(SecurityEventRow.created_at <= until)
        if account_id is not None:
            criteria.append(SecurityEventRow.account_id == account_id)
        return self._events(*criteria)

    def delete_security_events_older_than(self, cutoff: datetime) -> int:
        with self._transaction() as db:
            result = db.execute(delete(SecurityEventRow).where(SecurityEventRow.created_at < cutoff))
            return result.rowcount

    # MFA enrollments

    def get_mfa_enrollment(self, account_id: str) -> Optional[MfaEnrollment]:
        with self._transaction() as db:
            row = db.get(MfaEnrollmentRow, account_id)
            return _enrollment(row) if row else None

    @staticmethod
    def _apply_enrollment(row: MfaEnrollmentRow, enrollment: MfaEnrollment) -> None:
        row.enabled = enrollment.enabled
        row.totp_secret = enrollment.totp_secret
        # a fresh dict so the JSON column registers the change
        row.backup_codes = dict(enrollment.backup_codes)
        row.verified_at = enrollment.verified_at
        row.backup_codes_used_count = enrollment.backup_codes_used_count
        row.recovery_email = enrollment.recovery_email
        row.last_used_at = enrollment.last_used_at

    def upsert_mfa_enrollment(self, enrollment: MfaEnrollment) -> MfaEnrollment:
        with self._transaction() as db:
            row = db.get(MfaEnrollmentRow, enrollment.account_id)
            if row is None:
                row = MfaEnrollmentRow(account_id=enrollment.account_id)
                db.add(row)
            self._apply_enrollment(row, enrollment)
        return enrollment

    def update_mfa_enrollment(self, enrollment: MfaEnrollment) -> bool:
        with self._transaction() as db:
            row = db.get(MfaEnrollmentRow, enrollment.account_id)
            if row is None:
                return False
            self._apply_enrollment(row, enrollment)
            return True

    def delete_mfa_enrollment(self, account_id: str) -> bool:
        with self._transaction() as db:
            result = db.execute(delete(MfaEnrollmentRow).where(MfaEnrollmentRow.account_id == account_id))
            return result.rowcount == 1

    # Password reset tokens

    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._transaction() as db:
            db.add(PasswordResetTokenRow(
                id=token.id,
                account_id=token.account_id,
                token_hash=token.token_hash,
                token_digest=token.token_digest,
                token_salt=token.token_salt,
                expires_at=token.expires_at,
                requested_ip=token.requested_ip,
                requested_user_agent=token.requested_user_agent,
                used_at=token.used_at,
                created_at=token.created_at,
            ))
        return token

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._transaction() as db:
            row = db.scalars(
                select(PasswordResetTokenRow).where(PasswordResetTokenRow.token_hash == token_hash)
            ).first()
            return _reset_token(row) if row else None

    def mark_reset_token_used(self, token_id: str, at: datetime) -> bool:
        with self._transaction() as db:
            result = db.execute(
                update(PasswordResetTokenRow)
                .where(
                    PasswordResetTokenRow.id == token_id,
                    PasswordResetTokenRow.used_at.is_(None),
                )
                .values(used_at=at)
            )
            return result.rowcount == 1

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._transaction() as db:
            result = db.execute(delete(PasswordResetTokenRow).where(PasswordResetTokenRow.expires_at < now))
            return result.rowcount

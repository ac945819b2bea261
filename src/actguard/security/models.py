"""
ActGuard Security Domain Models
Records owned by the authentication core and the result shapes it returns.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from actguard.core.config import Settings
from .errors import ResultCode


def new_id() -> str:
    return str(uuid.uuid4())


class SecurityEventType(str, Enum):
    """Security event types recorded by the audit trail"""
    LOGIN_SUCCESS = "login_success"
    LOGIN_SUCCESSFUL = "login_successful"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_VERIFIED = "mfa_verified"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SECURITY_SETTINGS_CHANGED = "security_settings_changed"


class SessionStatus(str, Enum):
    """Session lifecycle status"""
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Location:
    """Coarse geographic location; every part is optional"""
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"country": self.country, "region": self.region, "city": self.city}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Location"]:
        if not data:
            return None
        return cls(
            country=data.get("country"),
            region=data.get("region"),
            city=data.get("city"),
        )


@dataclass
class SafeAccount:
    """Account projection that never carries the password hash"""
    id: str
    email: str
    display_name: Optional[str] = None
    is_admin: bool = False
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class Account:
    """Identity record; `updated_at` doubles as the password age"""
    id: str
    email: str
    password_hash: str
    updated_at: datetime
    created_at: Optional[datetime] = None
    display_name: Optional[str] = None
    is_admin: bool = False

    def safe(self) -> SafeAccount:
        return SafeAccount(
            id=self.id,
            email=self.email,
            display_name=self.display_name,
            is_admin=self.is_admin,
            updated_at=self.updated_at,
        )


class SecurityPolicy(BaseModel):
    """Singleton security configuration record, replaced wholesale on update"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mfa_required: bool = False
    password_min_length: int = Field(8, ge=8, le=128)
    password_max_length: int = Field(128, ge=8, le=1024)
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_numbers: bool = True
    password_require_special_chars: bool = True
    password_expiration_days: int = Field(90, ge=0, le=3650)
    password_history_count: int = Field(5, ge=0, le=24)
    max_login_attempts: int = Field(5, ge=1, le=20)
    lockout_duration_minutes: int = Field(15, ge=1, le=1440)
    session_timeout_minutes: int = Field(480, ge=5, le=1440)
    max_concurrent_sessions: int = Field(3, ge=1, le=50)
    enable_captcha: bool = True
    captcha_after_attempts: int = Field(3, ge=1, le=100)
    enable_audit_logging: bool = True
    audit_log_retention_days: int = Field(90, ge=1, le=3650)
    encryption_enabled: bool = True
    encryption_algorithm: str = "AES-256-GCM"
    enable_security_alerts: bool = True

    @model_validator(mode="after")
    def check_length_bounds(self) -> "SecurityPolicy":
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length must not exceed password_max_length")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityPolicy":
        return cls(**settings.default_policy_values())

    def with_updates(self, updates: Dict[str, Any]) -> "SecurityPolicy":
        """Return a validated copy with `updates` applied"""
        return type(self).model_validate({**self.model_dump(), **updates})


@dataclass
class FailedLoginAttempt:
    email: str
    ip_address: str
    failure_reason: str
    created_at: datetime
    account_id: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=new_id)


@dataclass
class UserSession:
    session_token: str
    account_id: str
    ip_address: str
    expires_at: datetime
    last_activity_at: datetime
    created_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    user_agent: Optional[str] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    browser_name: Optional[str] = None
    browser_version: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    location: Optional[Location] = None
    is_trusted: bool = False
    risk_score: int = 0
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    id: str = field(default_factory=new_id)

    def is_usable(self, now: datetime) -> bool:
        return self.status == SessionStatus.ACTIVE and now <= self.expires_at


@dataclass
class MfaEnrollment:
    """Per-account MFA state; secrets and backup codes are stored encrypted"""
    account_id: str
    enabled: bool = False
    totp_secret: Optional[str] = None
    # code id -> encrypted backup code
    backup_codes: Dict[str, str] = field(default_factory=dict)
    verified_at: Optional[datetime] = None
    backup_codes_used_count: int = 0
    recovery_email: Optional[str] = None
    last_used_at: Optional[datetime] = None


@dataclass
class SecurityEvent:
    event_type: str
    description: str
    created_at: Optional[datetime] = None
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    risk_score: Optional[int] = None
    location: Optional[Location] = None
    session_id: Optional[str] = None
    failure_reason: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)


@dataclass
class PasswordResetToken:
    """Stored reset token; the plaintext token is never persisted"""
    account_id: str
    token_hash: str
    token_digest: str
    token_salt: str
    expires_at: datetime
    created_at: datetime
    requested_ip: Optional[str] = None
    requested_user_agent: Optional[str] = None
    used_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)


@dataclass
class AccountLockStatus:
    is_locked: bool
    remaining_minutes: int = 0
    reason: Optional[str] = None


@dataclass
class AuthenticationResult:
    success: bool
    code: ResultCode
    user: Optional[SafeAccount] = None
    session_token: Optional[str] = None
    requires_mfa: bool = False
    requires_captcha: bool = False
    remaining_minutes: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "code": self.code.value}
        if self.user is not None:
            data["user"] = self.user.to_dict()
        if self.session_token:
            data["sessionToken"] = self.session_token
        if self.requires_mfa:
            data["requiresMfa"] = True
        if self.requires_captcha:
            data["requiresCaptcha"] = True
        if self.remaining_minutes is not None:
            data["remainingMinutes"] = self.remaining_minutes
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class PasswordValidation:
    is_valid: bool
    errors: List[str]
    score: int


@dataclass
class PasswordOutcome:
    """Result of a password reset or change"""
    success: bool
    code: ResultCode = ResultCode.OK
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)

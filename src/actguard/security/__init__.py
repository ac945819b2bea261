"""
ActGuard Security Module
Authentication, session risk, MFA and audit services.

Services live in their own modules (authentication, sessions, mfa_system,
passwords, audit); only the shared errors and records are re-exported here.
"""

from .errors import (
    AuthenticationError,
    CryptoError,
    MFAError,
    ResultCode,
    SecurityError,
    SessionError,
    ValidationError,
)
from .models import (
    Account,
    AccountLockStatus,
    AuthenticationResult,
    FailedLoginAttempt,
    Location,
    MfaEnrollment,
    PasswordOutcome,
    PasswordResetToken,
    PasswordValidation,
    SafeAccount,
    SecurityEvent,
    SecurityEventType,
    SecurityPolicy,
    SessionStatus,
    UserSession,
)

__all__ = [
    # Errors
    "SecurityError",
    "AuthenticationError",
    "SessionError",
    "MFAError",
    "ValidationError",
    "CryptoError",
    "ResultCode",

    # Records
    "Account",
    "SafeAccount",
    "SecurityPolicy",
    "FailedLoginAttempt",
    "UserSession",
    "SessionStatus",
    "MfaEnrollment",
    "SecurityEvent",
    "SecurityEventType",
    "PasswordResetToken",
    "Location",
    "AccountLockStatus",
    "AuthenticationResult",
    "PasswordValidation",
    "PasswordOutcome",
]

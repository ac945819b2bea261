"""
ActGuard Security Errors
Typed errors and stable machine codes shared by every security component.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ResultCode(str, Enum):
    """Stable machine codes callers branch on"""
    # Consumer contract
    AUTH_REQUIRED = "AUTH_REQUIRED"
    SESSION_INVALID = "SESSION_INVALID"
    REAUTH_REQUIRED = "REAUTH_REQUIRED"
    MFA_REQUIRED = "MFA_REQUIRED"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Authentication outcomes
    OK = "OK"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    PASSWORD_EXPIRED = "PASSWORD_EXPIRED"
    INVALID_MFA = "INVALID_MFA"

    # Password reset / change outcomes
    RESET_TOKEN_INVALID = "RESET_TOKEN_INVALID"
    RESET_TOKEN_USED = "RESET_TOKEN_USED"
    RESET_TOKEN_EXPIRED = "RESET_TOKEN_EXPIRED"
    PASSWORD_POLICY = "PASSWORD_POLICY"
    PASSWORD_REUSED = "PASSWORD_REUSED"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class SecurityError(Exception):
    """Base security error carrying a machine code and an HTTP-equivalent status"""

    def __init__(self, message: str, code: str = "SECURITY_ERROR", status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.code = code.value if isinstance(code, Enum) else code
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code}


class AuthenticationError(SecurityError):
    """Credential or session authentication failure"""

    def __init__(self, message: str, code: str = "AUTH_FAILED"):
        super().__init__(message, code, 401)


class SessionError(SecurityError):
    """Session lifecycle failure"""

    def __init__(self, message: str, code: str = "SESSION_FAILED"):
        super().__init__(message, code, 401)


class MFAError(SecurityError):
    """MFA enrollment or verification failure"""

    def __init__(self, message: str, code: str = "MFA_FAILED"):
        super().__init__(message, code, 400)


class ValidationError(SecurityError):
    """Input or policy violation"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message, "VALIDATION_FAILED", 400)
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class CryptoError(SecurityError):
    """Encryption, decryption or key configuration failure"""

    def __init__(self, message: str, code: str = "CRYPTO_FAILED"):
        super().__init__(message, code, 500)

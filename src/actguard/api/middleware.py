"""
ActGuard Request Gate
Per-request authorization on top of the session registry, plus the
Starlette middleware and error handler that expose it over HTTP.
"""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from actguard.core.clock import Clock
from actguard.core.config import settings
from actguard.core.logging import LoggerMixin, get_logger
from actguard.security.authentication import AccessGuard
from actguard.security.errors import ResultCode, SecurityError
from actguard.security.models import SecurityEventType

logger = get_logger(__name__)


@dataclass
class SecurityContext:
    """Security context for an authorized request"""
    account_id: str
    email: str
    session_token: str
    ip_address: str
    user_agent: Optional[str] = None
    is_admin: bool = False
    mfa_enabled: bool = False
    risk_score: int = 0


@dataclass
class GateDecision:
    allowed: bool
    code: ResultCode
    status_code: int = status.HTTP_200_OK
    message: Optional[str] = None
    context: Optional[SecurityContext] = None
    retry_after: Optional[int] = None

    def to_response(self) -> JSONResponse:
        content: Dict[str, Any] = {"message": self.message, "code": self.code.value}
        headers = {}
        if self.retry_after is not None:
            content["retry_after"] = self.retry_after
            headers["Retry-After"] = str(self.retry_after)
        return JSONResponse(status_code=self.status_code, content=content, headers=headers)


def _deny(code: ResultCode, status_code: int, message: str, **kwargs) -> GateDecision:
    return GateDecision(allowed=False, code=code, status_code=status_code, message=message, **kwargs)


class RateLimiter:
    """Sliding-window request counter per key"""

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        self.max_requests = max_requests or settings.RATE_LIMIT_MAX_REQUESTS
        self.window = timedelta(seconds=window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS)
        self.clock = clock or Clock()
        self._hits: Dict[str, Deque] = {}
        self._lock = threading.Lock()
        self._last_sweep = self.clock.now()

    def hit(self, key: str) -> bool:
        """Count a request; False once the key is over its budget"""
        now = self.clock.now()
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def _sweep(self, now) -> None:
        """Forget keys with no hits left inside the window"""
        for key in [k for k, hits in self._hits.items() if not hits or now - hits[-1] >= self.window]:
            del self._hits[key]
        self._last_sweep = now

    def remaining(self, key: str) -> int:
        with self._lock:
            return max(0, self.max_requests - len(self._hits.get(key, ())))

    @property
    def retry_after(self) -> int:
        return int(self.window.total_seconds())


class RequestGate(LoggerMixin):
    """Turns a session token into an allow/deny decision with a stable code"""

    def __init__(
        self,
        guard: AccessGuard,
        rate_limiter: Optional[RateLimiter] = None,
        warn_risk_score: Optional[int] = None,
        reauth_risk_score: Optional[int] = None,
    ):
        self.guard = guard
        self.rate_limiter = rate_limiter or RateLimiter(clock=guard.clock)
        self.warn_risk_score = warn_risk_score if warn_risk_score is not None else settings.SESSION_WARN_RISK_SCORE
        self.reauth_risk_score = (
            reauth_risk_score if reauth_risk_score is not None else settings.SESSION_REAUTH_RISK_SCORE
        )

    def authorize(
        self,
        token: Optional[str],
        ip_address: str,
        user_agent: Optional[str] = None,
        require_mfa: bool = False,
        require_admin: bool = False,
        path: Optional[str] = None,
    ) -> GateDecision:
        try:
            if not self.rate_limiter.hit(ip_address):
                self.logger.warning(f"Rate limit exceeded for IP {ip_address} on {path or 'N/A'}")
                return _deny(
                    ResultCode.RATE_LIMIT_EXCEEDED,
                    status.HTTP_429_TOO_MANY_REQUESTS,
                    "Too many requests, please try again later",
                    retry_after=self.rate_limiter.retry_after,
                )

            if not token:
                return _deny(ResultCode.AUTH_REQUIRED, status.HTTP_401_UNAUTHORIZED, "Authentication required")

            session = self.guard.sessions.validate(token, ip_address)
            if session is None:
                self.logger.warning(f"Invalid or expired session from {ip_address}")
                return _deny(ResultCode.SESSION_INVALID, status.HTTP_401_UNAUTHORIZED, "Session invalid or expired")

            if session.risk_score > self.warn_risk_score:
                self.guard.audit.log(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    "High-risk session activity detected",
                    account_id=session.account_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    session_id=token,
                    success=False,
                    failure_reason="high_risk_session",
                    additional_data={"risk_score": session.risk_score, "path": path},
                )
                if session.risk_score > self.reauth_risk_score:
                    return _deny(
                        ResultCode.REAUTH_REQUIRED,
                        status.HTTP_401_UNAUTHORIZED,
                        "Re-authentication required",
                    )

            account = self.guard.store.get_account_by_id(session.account_id)
            if account is None:
                return _deny(ResultCode.SESSION_INVALID, status.HTTP_401_UNAUTHORIZED, "Session invalid or expired")

            mfa_enabled = self.guard.mfa.is_enabled(account.id)
            if require_mfa and not mfa_enabled:
                return _deny(
                    ResultCode.MFA_REQUIRED,
                    status.HTTP_403_FORBIDDEN,
                    "Multi-factor authentication required for this action",
                )

            if require_admin and not account.is_admin:
                self.guard.audit.log(
                    SecurityEventType.UNAUTHORIZED_ACCESS,
                    f"Non-admin attempted to access {path or 'an admin resource'}",
                    account_id=account.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    session_id=token,
                    success=False,
                    failure_reason="admin_required",
                )
                return _deny(ResultCode.ADMIN_REQUIRED, status.HTTP_403_FORBIDDEN, "Administrator access required")

            return GateDecision(
                allowed=True,
                code=ResultCode.OK,
                context=SecurityContext(
                    account_id=account.id,
                    email=account.email,
                    session_token=token,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    is_admin=account.is_admin,
                    mfa_enabled=mfa_enabled,
                    risk_score=session.risk_score,
                ),
            )

        except Exception as e:
            self.logger.error(f"Request authorization failed: {e}")
            return _deny(ResultCode.INTERNAL_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def extract_session_token(request: Request) -> Optional[str]:
    """Bearer token from Authorization, falling back to the session cookie"""
    authorization = request.headers.get("Authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return request.cookies.get("session_token")


class RequestGateMiddleware(BaseHTTPMiddleware):
    """Starlette adapter: denies with JSON {message, code}, stores the context on request.state"""

    def __init__(
        self,
        app,
        gate: RequestGate,
        exclude_paths: Optional[List[str]] = None,
        admin_paths: Optional[List[str]] = None,
        mfa_paths: Optional[List[str]] = None,
    ):
        super().__init__(app)
        self.gate = gate
        self.exclude_paths = exclude_paths if exclude_paths is not None else [
            "/health",
            "/docs",
            "/openapi.json",
            "/auth/login",
        ]
        self.admin_paths = admin_paths or []
        self.mfa_paths = mfa_paths or []

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if any(path.startswith(excluded) for excluded in self.exclude_paths):
            return await call_next(request)

        decision = self.gate.authorize(
            extract_session_token(request),
            request.client.host if request.client else "unknown",
            user_agent=request.headers.get("User-Agent"),
            require_mfa=any(path.startswith(p) for p in self.mfa_paths),
            require_admin=any(path.startswith(p) for p in self.admin_paths),
            path=path,
        )
        if not decision.allowed:
            return decision.to_response()

        request.state.security_context = decision.context
        return await call_next(request)


async def security_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map SecurityError to its status and code; anything else is a bare 500"""
    logger.error(f"Security error on {request.method} {request.url.path}: {exc}")

    if isinstance(exc, SecurityError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal server error", "code": ResultCode.INTERNAL_ERROR.value},
    )


__all__ = [
    "SecurityContext",
    "GateDecision",
    "RateLimiter",
    "RequestGate",
    "RequestGateMiddleware",
    "extract_session_token",
    "security_error_handler",
]

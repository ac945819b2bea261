"""
ActGuard Session Registry
Session issuance, validation, risk scoring, concurrency limits and revocation.
"""

import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from actguard.core.clock import Clock
from actguard.core.logging import LoggerMixin
from actguard.database.store import SecurityStore
from .audit import AuditTrail, clamp_score, is_unusual_hour
from .models import Location, SecurityEventType, SessionStatus, UserSession


SESSION_TOKEN_BYTES = 32
TRUSTED_RISK_THRESHOLD = 30
ERROR_RISK_SCORE = 50

NEW_IP_PENALTY = 20
NEW_IP_LOOKBACK = timedelta(days=30)
UNUSUAL_COUNTRY_PENALTY = 30
COMMON_COUNTRY_SAMPLE = 10
UNUSUAL_HOURS_PENALTY = 10
FAILED_LOGIN_PENALTY = 5
FAILED_LOGIN_PENALTY_CAP = 30
FAILED_LOGIN_LOOKBACK = timedelta(hours=1)


@dataclass
class DeviceInfo:
    device_name: str
    device_type: str
    browser_name: str
    browser_version: str
    os_name: str
    os_version: str


def _version(pattern: str, ua: str, dotted: bool = False) -> str:
    match = re.search(pattern, ua)
    if not match:
        return ""
    return match.group(1).replace("_", ".") if dotted else match.group(1)


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Coarse device, browser and OS labels from a User-Agent header"""
    ua = (user_agent or "").lower()

    device_type = "desktop"
    if "tablet" in ua or "ipad" in ua:
        device_type = "tablet"
    elif "mobile" in ua or "android" in ua or "iphone" in ua:
        device_type = "mobile"

    browser_name, browser_version = "unknown", ""
    if "edg/" in ua or "edge/" in ua:
        browser_name, browser_version = "Edge", _version(r"edge?/([0-9.]+)", ua)
    elif "chrome" in ua:
        browser_name, browser_version = "Chrome", _version(r"chrome/([0-9.]+)", ua)
    elif "firefox" in ua:
        browser_name, browser_version = "Firefox", _version(r"firefox/([0-9.]+)", ua)
    elif "safari" in ua:
        browser_name, browser_version = "Safari", _version(r"version/([0-9.]+)", ua)

    os_name, os_version = "unknown", ""
    if "windows" in ua:
        os_name = "Windows"
        for marker, version in (("windows nt 10", "10"), ("windows nt 6.3", "8.1"), ("windows nt 6.2", "8")):
            if marker in ua:
                os_version = version
                break
    elif "android" in ua:
        os_name, os_version = "Android", _version(r"android ([0-9.]+)", ua)
    elif "iphone" in ua or "ipad" in ua or "ios" in ua:
        os_name, os_version = "iOS", _version(r"os ([0-9_]+)", ua, dotted=True)
    elif "mac os" in ua:
        os_name, os_version = "macOS", _version(r"mac os x ([0-9_]+)", ua, dotted=True)
    elif "linux" in ua:
        os_name = "Linux"

    device_name = " ".join(f"{os_name} {os_version}".split()) + f" - {browser_name}"
    return DeviceInfo(
        device_name=device_name,
        device_type=device_type,
        browser_name=browser_name,
        browser_version=browser_version,
        os_name=os_name,
        os_version=os_version,
    )


class SessionRegistry(LoggerMixin):
    """
    Issues and tracks sessions.

    The risk score stored on a session is advisory; request gating decides
    what to do with it.
    """

    def __init__(self, store: SecurityStore, audit: Optional[AuditTrail] = None, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or Clock()
        self.audit = audit or AuditTrail(store, self.clock)

    def create(
        self,
        account_id: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        device_name: Optional[str] = None,
        location: Optional[Location] = None,
    ) -> str:
        """Issue a session and return its token"""
        device = parse_user_agent(user_agent)
        policy = self.store.current_policy()
        now = self.clock.now()

        risk_score = self.calculate_risk(account_id, ip_address, location)
        token = secrets.token_hex(SESSION_TOKEN_BYTES)

        self.store.create_session(UserSession(
            session_token=token,
            account_id=account_id,
            ip_address=ip_address,
            expires_at=now + timedelta(minutes=policy.session_timeout_minutes),
            last_activity_at=now,
            created_at=now,
            user_agent=user_agent,
            device_name=device_name or device.device_name,
            device_type=device.device_type,
            browser_name=device.browser_name,
            browser_version=device.browser_version,
            os_name=device.os_name,
            os_version=device.os_version,
            location=location,
            is_trusted=risk_score < TRUSTED_RISK_THRESHOLD,
            risk_score=risk_score,
        ))

        self.enforce_session_limit(account_id, policy.max_concurrent_sessions)

        self.audit.log(
            SecurityEventType.LOGIN_SUCCESS,
            f"New session created from {ip_address}",
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
            session_id=token,
        )
        self.logger.info(f"Session created for account {account_id} (risk: {risk_score})")
        return token

    def calculate_risk(self, account_id: str, ip_address: str, location: Optional[Location] = None) -> int:
        """Sum of independent anomaly penalties, clamped to 0-100"""
        try:
            now = self.clock.now()
            score = 0

            if not self.store.get_sessions_by_ip(account_id, ip_address, now - NEW_IP_LOOKBACK):
                score += NEW_IP_PENALTY

            if location and location.country:
                recent = self.store.list_sessions(account_id, SessionStatus.ACTIVE)[-COMMON_COUNTRY_SAMPLE:]
                common_countries = {s.location.country for s in recent if s.location and s.location.country}
                if location.country not in common_countries:
                    score += UNUSUAL_COUNTRY_PENALTY

            if is_unusual_hour(self.clock.local_now()):
                score += UNUSUAL_HOURS_PENALTY

            failures = self.store.get_failed_login_attempts(now - FAILED_LOGIN_LOOKBACK, account_id=account_id)
            score += min(FAILED_LOGIN_PENALTY_CAP, len(failures) * FAILED_LOGIN_PENALTY)

            return clamp_score(score)

        except Exception as e:
            self.logger.error(f"Session risk calculation failed: {e}")
            return ERROR_RISK_SCORE

    def validate(self, token: str, ip_address: str) -> Optional[UserSession]:
        """Return the live session for `token`, refreshing its activity, or None"""
        try:
            session = self.store.get_session_by_token(token)
            if session is None or session.status != SessionStatus.ACTIVE:
                return None

            now = self.clock.now()
            if now > session.expires_at:
                self._end(session, "expired", SessionStatus.EXPIRED)
                return None

            if session.ip_address != ip_address:
                # Dynamic IPs are common, so this is only recorded
                self.audit.log(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    f"IP address changed during session: {session.ip_address} -> {ip_address}",
                    account_id=session.account_id,
                    ip_address=ip_address,
                    session_id=token,
                    success=False,
                    failure_reason="ip_changed",
                )

            self.store.touch_session_activity(token, now)
            session.last_activity_at = now
            return session

        except Exception as e:
            self.logger.error(f"Session validation failed: {e}")
            return None

    def revoke(self, token: str, reason: str = "Manual revocation") -> bool:
        session = self.store.get_session_by_token(token)
        if session is None:
            return False
        return self._end(session, reason, SessionStatus.REVOKED)

    def revoke_all_except(
        self,
        account_id: str,
        keep_token: Optional[str] = None,
        reason: str = "All sessions revoked",
    ) -> int:
        revoked = 0
        for session in self.store.list_sessions(account_id, SessionStatus.ACTIVE):
            if session.session_token != keep_token and self._end(session, reason, SessionStatus.REVOKED):
                revoked += 1
        self.logger.info(f"Revoked {revoked} sessions for account {account_id}")
        return revoked

    def list_active(self, account_id: str) -> List[UserSession]:
        now = self.clock.now()
        return [s for s in self.store.list_sessions(account_id, SessionStatus.ACTIVE) if s.is_usable(now)]

    def enforce_session_limit(self, account_id: str, max_sessions: int) -> int:
        """Revoke the least recently active sessions beyond the cap"""
        try:
            active = self.store.list_sessions(account_id, SessionStatus.ACTIVE)
            excess = len(active) - max_sessions
            if excess <= 0:
                return 0

            active.sort(key=lambda s: (s.last_activity_at, s.created_at))
            evicted = 0
            for session in active[:excess]:
                if self._end(session, "Session limit exceeded", SessionStatus.REVOKED):
                    evicted += 1
            return evicted

        except Exception as e:
            self.logger.error(f"Failed to enforce session limit for account {account_id}: {e}")
            return 0

    def cleanup_expired(self) -> int:
        deleted = self.store.delete_expired_sessions(self.clock.now())
        self.logger.info(f"Cleaned up {deleted} expired sessions")
        return deleted

    def _end(self, session: UserSession, reason: str, status: SessionStatus) -> bool:
        if not self.store.revoke_session(session.session_token, reason, self.clock.now(), status):
            return False

        self.audit.log(
            SecurityEventType.LOGOUT,
            f"Session revoked: {reason}",
            account_id=session.account_id,
            ip_address=session.ip_address,
            session_id=session.session_token,
        )
        return True

"""
ActGuard Audit Trail
Append-only security event log with risk scoring and suspicious activity detection.
"""

import csv
import io
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from actguard.core.clock import Clock
from actguard.core.logging import LoggerMixin
from actguard.database.store import SecurityStore
from .errors import ValidationError
from .models import Location, SecurityEvent, SecurityEventType


BASE_RISK_SCORES: Dict[str, int] = {
    SecurityEventType.LOGIN_SUCCESS.value: 10,
    SecurityEventType.LOGIN_SUCCESSFUL.value: 10,
    SecurityEventType.LOGIN_FAILED.value: 30,
    SecurityEventType.LOGOUT.value: 5,
    SecurityEventType.PASSWORD_CHANGED.value: 20,
    SecurityEventType.MFA_ENABLED.value: 15,
    SecurityEventType.MFA_DISABLED.value: 40,
    SecurityEventType.MFA_VERIFIED.value: 10,
    SecurityEventType.PASSWORD_RESET_REQUESTED.value: 25,
    SecurityEventType.PASSWORD_RESET_COMPLETED.value: 30,
    SecurityEventType.ACCOUNT_LOCKED.value: 60,
    SecurityEventType.ACCOUNT_UNLOCKED.value: 40,
    SecurityEventType.SUSPICIOUS_ACTIVITY.value: 80,
}
DEFAULT_BASE_RISK_SCORE = 20

FAILURE_PENALTY = 20
FOREIGN_COUNTRY_PENALTY = 15
UNUSUAL_HOURS_PENALTY = 10
TRUSTED_COUNTRIES = frozenset({"FR", "US", "CA", "GB", "DE"})

DETECTION_THRESHOLD = 70
ACCOUNT_FAILURE_LIMIT = 5
IP_FAILURE_LIMIT = 10
ACCOUNT_BURST_RISK = 90
IP_BURST_RISK = 85

TIMEFRAMES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

EXPORT_COLUMNS = [
    "Date", "Type", "Description", "Account", "IP", "User Agent",
    "Success", "Risk Score", "Country",
]


def clamp_score(score: float) -> int:
    return int(max(0, min(100, round(score))))


def is_unusual_hour(moment: datetime) -> bool:
    """Before 06:00 or after 22:00"""
    return moment.hour < 6 or moment.hour > 22


class AuditTrail(LoggerMixin):
    """
    Security event log.

    Nothing raised while recording or analysing an event reaches the caller:
    failures are logged locally and the authentication flow carries on.
    """

    def __init__(self, store: SecurityStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or Clock()

    def calculate_risk_score(
        self,
        event_type: Union[str, SecurityEventType],
        success: bool = True,
        location: Optional[Location] = None,
        local_time: Optional[datetime] = None,
    ) -> int:
        """Base score per event type plus failure, location and time-of-day penalties"""
        key = event_type.value if isinstance(event_type, SecurityEventType) else event_type
        score = BASE_RISK_SCORES.get(key, DEFAULT_BASE_RISK_SCORE)

        if not success:
            score += FAILURE_PENALTY
        if location and location.country and location.country.upper() not in TRUSTED_COUNTRIES:
            score += FOREIGN_COUNTRY_PENALTY

        local_time = local_time or self.clock.local_now()
        if is_unusual_hour(local_time):
            score += UNUSUAL_HOURS_PENALTY

        return clamp_score(score)

    def log(
        self,
        event_type: Union[str, SecurityEventType],
        description: str,
        account_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        location: Optional[Location] = None,
        session_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
        risk_score: Optional[int] = None,
        detect: bool = True,
    ) -> Optional[SecurityEvent]:
        """
        Record a security event.

        A preset `risk_score` skips scoring; `detect=False` skips the
        suspicious activity analysis. Returns None when audit logging is
        disabled or the write failed.
        """
        try:
            if not self.store.current_policy().enable_audit_logging:
                return None

            key = event_type.value if isinstance(event_type, SecurityEventType) else str(event_type)
            if risk_score is None:
                risk_score = self.calculate_risk_score(key, success, location)

            event = SecurityEvent(
                event_type=key,
                description=description,
                created_at=self.clock.now(),
                account_id=account_id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                risk_score=clamp_score(risk_score),
                location=location,
                session_id=session_id,
                failure_reason=failure_reason if not success else None,
                additional_data=dict(additional_data or {}),
            )
            self.store.create_security_event(event)

            self.logger.info(
                f"Security event: {key} - {description} "
                f"(account: {account_id or 'N/A'}, IP: {ip_address or 'N/A'}, risk: {event.risk_score})"
            )

            if detect and event.risk_score >= DETECTION_THRESHOLD and ip_address:
                self.check_suspicious_activity(account_id, ip_address)

            return event

        except Exception as e:
            self.logger.error(f"Failed to log security event: {e}")
            return None

    def check_suspicious_activity(self, account_id: Optional[str], ip_address: str) -> List[SecurityEvent]:
        """Raise synthetic suspicious_activity events for failure bursts in the last hour"""
        raised: List[SecurityEvent] = []
        try:
            since = self.clock.now() - timedelta(hours=1)

            if account_id:
                account_failures = self.store.get_security_events_for_account(
                    account_id,
                    since=since,
                    event_type=SecurityEventType.LOGIN_FAILED.value,
                )
                if len(account_failures) >= ACCOUNT_FAILURE_LIMIT:
                    event = self.log(
                        SecurityEventType.SUSPICIOUS_ACTIVITY,
                        "Multiple failed login attempts detected",
                        account_id=account_id,
                        ip_address=ip_address,
                        success=False,
                        failure_reason="Possible brute force attack",
                        additional_data={"failed_attempts": len(account_failures)},
                        risk_score=ACCOUNT_BURST_RISK,
                        detect=False,
                    )
                    if event:
                        raised.append(event)

            ip_failures = self.store.get_security_events_for_ip(ip_address, since=since, success=False)
            if len(ip_failures) >= IP_FAILURE_LIMIT:
                event = self.log(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    "Multiple failed attempts from same IP",
                    ip_address=ip_address,
                    success=False,
                    failure_reason="Possible distributed attack",
                    additional_data={
                        "failed_attempts": len(ip_failures),
                        "affected_accounts": len({e.account_id for e in ip_failures if e.account_id}),
                    },
                    risk_score=IP_BURST_RISK,
                    detect=False,
                )
                if event:
                    raised.append(event)

        except Exception as e:
            self.logger.error(f"Suspicious activity check failed: {e}")

        return raised

    def dashboard(self, timeframe: str = "24h") -> Dict[str, Any]:
        """Aggregate event statistics over the last 24h, 7d or 30d"""
        if timeframe not in TIMEFRAMES:
            raise ValidationError(
                "Invalid timeframe",
                [f"timeframe must be one of {', '.join(TIMEFRAMES)}"],
            )

        since = self.clock.now() - TIMEFRAMES[timeframe]
        events = self.store.get_security_events_since(since)

        distribution = {"low": 0, "medium": 0, "high": 0}
        ip_scores: Dict[str, List[int]] = defaultdict(list)
        for event in events:
            score = event.risk_score or 0
            if score < 30:
                distribution["low"] += 1
            elif score < 70:
                distribution["medium"] += 1
            else:
                distribution["high"] += 1
            if event.ip_address:
                ip_scores[event.ip_address].append(score)

        top_risky_ips = sorted(
            (
                {
                    "ip_address": ip,
                    "average_risk_score": round(sum(scores) / len(scores), 2),
                    "event_count": len(scores),
                }
                for ip, scores in ip_scores.items()
            ),
            key=lambda item: item["average_risk_score"],
            reverse=True,
        )[:10]

        return {
            "timeframe": timeframe,
            "since": since.isoformat(),
            "total_events": len(events),
            "failed_logins": sum(1 for e in events if e.event_type == SecurityEventType.LOGIN_FAILED.value),
            "suspicious_activities": sum(
                1 for e in events if e.event_type == SecurityEventType.SUSPICIOUS_ACTIVITY.value
            ),
            "unique_accounts": len({e.account_id for e in events if e.account_id}),
            "unique_ips": len({e.ip_address for e in events if e.ip_address}),
            "risk_distribution": distribution,
            "events_by_type": dict(Counter(e.event_type for e in events)),
            "top_risky_ips": top_risky_ips,
        }

    def export(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        account_id: Optional[str] = None,
        event_type: Optional[Union[str, SecurityEventType]] = None,
    ) -> str:
        """Matching events as CSV; every text field is quoted"""
        if isinstance(event_type, SecurityEventType):
            event_type = event_type.value
        events = self.store.query_security_events(
            since=since, until=until, account_id=account_id, event_type=event_type
        )

        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
        writer.writerow(EXPORT_COLUMNS)
        for event in events:
            writer.writerow([
                event.created_at.isoformat() if event.created_at else "",
                event.event_type,
                event.description,
                event.account_id or "",
                event.ip_address or "",
                event.user_agent or "",
                "true" if event.success else "false",
                event.risk_score if event.risk_score is not None else 0,
                event.location.country if event.location and event.location.country else "",
            ])

        self.logger.info(f"Exported {len(events)} security events")
        return buffer.getvalue()

    def events_for_account(self, account_id: str, limit: int = 50) -> List[SecurityEvent]:
        return self.store.get_security_events_for_account(account_id, limit=limit)

    def events_for_ip(self, ip_address: str, since: Optional[datetime] = None, limit: int = 50) -> List[SecurityEvent]:
        return self.store.get_security_events_for_ip(ip_address, since=since, limit=limit)

    def cleanup(self) -> int:
        """Delete events older than the retention window"""
        retention_days = self.store.current_policy().audit_log_retention_days
        cutoff = self.clock.now() - timedelta(days=retention_days)
        deleted = self.store.delete_security_events_older_than(cutoff)
        self.logger.info(f"Cleaned up {deleted} security events older than {retention_days} days")
        return deleted

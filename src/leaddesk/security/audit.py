"""
Security audit trail.

Audit writes are best-effort: a failed insert is reported on the
fallback log channel and never reaches the caller.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger

from ..db import QueryExecutor
from ..errors import PersistenceError


ANONYMOUS = "anonymous"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class AuditLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SECURITY = "SECURITY"


class AuditCategory(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    DATA_ACCESS = "DATA_ACCESS"
    DATA_MODIFICATION = "DATA_MODIFICATION"
    SYSTEM = "SYSTEM"
    SECURITY = "SECURITY"


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    AUTHORIZATION_SUCCESS = "AUTHORIZATION_SUCCESS"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DATA_ACCESS = "DATA_ACCESS"
    DATA_MODIFICATION = "DATA_MODIFICATION"
    ROLE_CHANGE = "ROLE_CHANGE"
    ALERT_RESOLVED = "ALERT_RESOLVED"
    SQL_INJECTION_ATTEMPT = "SQL_INJECTION_ATTEMPT"
    XSS_ATTEMPT = "XSS_ATTEMPT"


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def client_ip(
    headers: Mapping[str, str],
    fallback: Optional[str] = None,
    trust_proxy_headers: bool = False,
) -> str:
    """
    Best guess at the originating client address.

    With trust_proxy_headers the order is cf-connecting-ip, x-real-ip,
    first x-forwarded-for entry, then the transport peer. Without it the
    forwarding headers are client-controlled and only the peer is used.

    Args:
        headers: Case-insensitive request headers
        fallback: Peer address from the transport
        trust_proxy_headers: Whether a reverse proxy sets the forwarding headers

    Returns:
        Address string, or "unknown"
    """
    if not trust_proxy_headers:
        return fallback or "unknown"
    for name in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return fallback or "unknown"


@dataclass
class AuditEvent:
    """
    One immutable audit record.

    Attributes:
        action: What happened
        category: Broad grouping used for reporting
        level: Severity of the record
        resource: Resource touched (table, route or subsystem)
        success: Whether the attempt succeeded
        user_id: Acting user, or "anonymous"
        resource_id: Specific record, if any
        details: Free-form structured context
        old_values: Snapshot before a modification
        new_values: Snapshot after a modification
        ip_address: Client address
        user_agent: Client user agent
        error_message: Failure reason, if any
        timestamp: When the event happened (set on write if missing)
    """
    action: str
    category: AuditCategory
    level: AuditLevel
    resource: str
    success: bool
    user_id: str = ANONYMOUS
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: Optional[datetime] = field(default=None)


def _dump(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str, sort_keys=True)


def _load(value: Optional[str]) -> Optional[Dict[str, Any]]:
    return None if value is None else json.loads(value)


class AuditLogger:
    """
    Writes and queries the audit trail.

    Args:
        executor: Parameterized query executor
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        executor: QueryExecutor,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.executor = executor
        self.clock = clock
        self._fallback = logger.bind(audit_fallback=True)

    # ========================================================================
    # Writes
    # ========================================================================

    def log_event(self, event: AuditEvent) -> bool:
        """
        Persist one audit event.

        Args:
            event: Event to record

        Returns:
            True if persisted, False if the write failed and was reported
            on the fallback channel
        """
        timestamp = event.timestamp or self.clock()
        action = event.action.value if isinstance(event.action, Enum) else str(event.action)
        try:
            self._insert(event, action, timestamp)
        except PersistenceError as e:
            self._fallback.error(
                f"Audit write failed ({e.__cause__}): {action} user={event.user_id} "
                f"ip={event.ip_address} resource={event.resource} success={event.success} "
                f"details={_dump(event.details)}"
            )
            return False

        if event.level in (AuditLevel.SECURITY, AuditLevel.ERROR):
            logger.warning(f"Audit {action}: user={event.user_id} ip={event.ip_address} resource={event.resource}")
        else:
            logger.debug(f"Audit {action}: user={event.user_id} resource={event.resource}")
        return True

    def _insert(self, event: AuditEvent, action: str, timestamp: datetime) -> None:
        try:
            self.executor.execute_query(
                """
                INSERT INTO audit_log (
                    user_id, action, category, level, resource, resource_id,
                    details, old_values, new_values, ip_address, user_agent,
                    success, error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id or ANONYMOUS,
                    action,
                    event.category.value,
                    event.level.value,
                    event.resource,
                    event.resource_id,
                    _dump(event.details),
                    _dump(event.old_values),
                    _dump(event.new_values),
                    event.ip_address,
                    event.user_agent,
                    1 if event.success else 0,
                    event.error_message,
                    format_timestamp(timestamp),
                ),
            )
        except Exception as e:
            # Any executor failure (driver error, pool timeout) is a persistence failure
            raise PersistenceError("Failed to write audit event") from e

    def log_authentication_attempt(
        self,
        email: Optional[str],
        success: bool,
        ip_address: str,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Record a login or token check outcome."""
        return self.log_event(AuditEvent(
            action=AuditAction.LOGIN_SUCCESS if success else AuditAction.LOGIN_FAILED,
            category=AuditCategory.AUTHENTICATION,
            level=AuditLevel.INFO if success else AuditLevel.SECURITY,
            resource="users",
            success=success,
            user_id=user_id or ANONYMOUS,
            details={"email": email or ANONYMOUS},
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
        ))

    def log_authorization_check(
        self,
        user_id: str,
        resource: str,
        action: str,
        success: bool,
        ip_address: str,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Record the outcome of a permission check inside a handler."""
        return self.log_event(AuditEvent(
            action=AuditAction.AUTHORIZATION_SUCCESS if success else AuditAction.AUTHORIZATION_FAILED,
            category=AuditCategory.AUTHORIZATION,
            level=AuditLevel.INFO if success else AuditLevel.WARNING,
            resource=resource,
            success=success,
            user_id=user_id,
            details={"action": action},
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
        ))

    def log_failed_authorization(
        self,
        user_id: str,
        resource: str,
        required_role: str,
        actual_role: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        method: Optional[str] = None,
    ) -> bool:
        """Record a denied route with the required and actual roles."""
        details = {"requiredRole": required_role, "actualRole": actual_role}
        if method:
            details["method"] = method
        return self.log_event(AuditEvent(
            action=AuditAction.AUTHORIZATION_FAILED,
            category=AuditCategory.AUTHORIZATION,
            level=AuditLevel.WARNING,
            resource=resource,
            success=False,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message="Insufficient permissions",
        ))

    def log_data_access(
        self,
        user_id: str,
        resource: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self.log_event(AuditEvent(
            action=AuditAction.DATA_ACCESS,
            category=AuditCategory.DATA_ACCESS,
            level=AuditLevel.INFO,
            resource=resource,
            success=True,
            user_id=user_id,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        ))

    def log_data_modification(
        self,
        user_id: str,
        resource: str,
        resource_id: Optional[str],
        old_values: Optional[Dict[str, Any]],
        new_values: Optional[Dict[str, Any]],
        ip_address: str,
        user_agent: Optional[str] = None,
        action: str = AuditAction.DATA_MODIFICATION,
    ) -> bool:
        """Record a change with before/after snapshots."""
        return self.log_event(AuditEvent(
            action=action,
            category=AuditCategory.DATA_MODIFICATION,
            level=AuditLevel.INFO,
            resource=resource,
            success=True,
            user_id=user_id,
            resource_id=resource_id,
            old_values=old_values,
            new_values=new_values,
            ip_address=ip_address,
            user_agent=user_agent,
        ))

    def log_security_incident(
        self,
        action: str,
        ip_address: str,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Record a security incident such as a rate-limit breach."""
        return self.log_event(AuditEvent(
            action=action,
            category=AuditCategory.SECURITY,
            level=AuditLevel.SECURITY,
            resource="SECURITY",
            success=False,
            user_id=user_id or ANONYMOUS,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
        ))

    # ========================================================================
    # Queries
    # ========================================================================

    def get_user_audit_logs(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Most recent events for one user.

        Args:
            user_id: User UUID (or "anonymous")
            limit: Maximum rows

        Returns:
            Event dicts, newest first
        """
        rows = self.executor.execute_query(
            "SELECT * FROM audit_log WHERE user_id = ? ORDER BY created_at DESC, audit_id DESC LIMIT ?",
            (user_id, int(limit)),
        )
        return [self._row_to_dict(row) for row in rows]

    def get_recent_events(self, limit: int = 50, action: Optional[str] = None) -> List[Dict[str, Any]]:
        if action is None:
            rows = self.executor.execute_query(
                "SELECT * FROM audit_log ORDER BY created_at DESC, audit_id DESC LIMIT ?", (int(limit),)
            )
        else:
            rows = self.executor.execute_query(
                "SELECT * FROM audit_log WHERE action = ? ORDER BY created_at DESC, audit_id DESC LIMIT ?",
                (str(action.value if isinstance(action, Enum) else action), int(limit)),
            )
        return [self._row_to_dict(row) for row in rows]

    def get_security_summary(self) -> Dict[str, int]:
        """
        Headline counters for the security dashboard.

        Returns:
            totalEvents, failedLogins, securityIncidents and last24hEvents
        """
        since = format_timestamp(self.clock() - timedelta(hours=24))
        rows = self.executor.execute_query(
            """
            SELECT
                COUNT(*) AS total_events,
                COALESCE(SUM(CASE WHEN action = ? THEN 1 ELSE 0 END), 0) AS failed_logins,
                COALESCE(SUM(CASE WHEN category = ? THEN 1 ELSE 0 END), 0) AS security_incidents,
                COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) AS last_24h_events
            FROM audit_log
            """,
            (AuditAction.LOGIN_FAILED.value, AuditCategory.SECURITY.value, since),
        )
        row = rows[0] if rows else {}
        return {
            "totalEvents": int(row.get("total_events") or 0),
            "failedLogins": int(row.get("failed_logins") or 0),
            "securityIncidents": int(row.get("security_incidents") or 0),
            "last24hEvents": int(row.get("last_24h_events") or 0),
        }

    def clean_old_audit_logs(self, retention_days: int = 90) -> None:
        """Delete events older than the retention window."""
        cutoff = format_timestamp(self.clock() - timedelta(days=retention_days))
        self.executor.execute_query("DELETE FROM audit_log WHERE created_at < ?", (cutoff,))
        logger.info(f"Purged audit events older than {retention_days} days")

    @staticmethod
    def _row_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": row["audit_id"],
            "userId": row["user_id"],
            "action": row["action"],
            "category": row["category"],
            "level": row["level"],
            "resource": row["resource"],
            "resourceId": row["resource_id"],
            "details": _load(row["details"]),
            "oldValues": _load(row["old_values"]),
            "newValues": _load(row["new_values"]),
            "ipAddress": row["ip_address"],
            "userAgent": row["user_agent"],
            "success": bool(row["success"]),
            "errorMessage": row["error_message"],
            "timestamp": row["created_at"],
        }

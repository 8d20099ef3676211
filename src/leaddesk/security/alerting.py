"""
Threshold alerts derived from the audit trail.

Each alert type has a fixed condition, window, threshold and severity.
A sweep counts matching audit events per source address and opens or
refreshes one unresolved alert per (type, source).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from ..db import QueryExecutor
from ..errors import PersistenceError
from .audit import format_timestamp


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}

NOTIFY_SEVERITIES = (AlertSeverity.HIGH, AlertSeverity.CRITICAL)


@dataclass(frozen=True)
class AlertConfig:
    """
    Static definition of one alert type.

    Attributes:
        alert_type: Identifier stored on the alert
        condition: SQL predicate over audit_log, parameterized
        condition_params: Values for the predicate placeholders
        threshold: Minimum events per source to raise the alert
        window: Lookback window
        severity: Fixed severity
        title: Alert title
        description: Alert description
        notify: Whether the notifier is called for this type
    """
    alert_type: str
    condition: str
    condition_params: Tuple[Any, ...]
    threshold: int
    window: timedelta
    severity: AlertSeverity
    title: str
    description: str
    notify: bool = True


ALERT_CONFIGS: List[AlertConfig] = [
    AlertConfig(
        alert_type="FAILED_LOGIN",
        condition="action = ?",
        condition_params=("LOGIN_FAILED",),
        threshold=5,
        window=timedelta(minutes=15),
        severity=AlertSeverity.HIGH,
        title="Brute Force Attack Detected",
        description="Multiple failed login attempts from the same IP address",
    ),
    AlertConfig(
        alert_type="AUTHORIZATION_FAILURE",
        condition="action = ?",
        condition_params=("AUTHORIZATION_FAILED",),
        threshold=3,
        window=timedelta(minutes=10),
        severity=AlertSeverity.MEDIUM,
        title="Unauthorized Access Attempts",
        description="Multiple authorization failures from the same IP address",
    ),
    AlertConfig(
        alert_type="RATE_LIMIT_EXCEEDED",
        condition="action = ?",
        condition_params=("RATE_LIMIT_EXCEEDED",),
        threshold=1,
        window=timedelta(minutes=1),
        severity=AlertSeverity.LOW,
        title="Rate Limit Exceeded",
        description="Client exceeded a request rate limit",
        notify=False,
    ),
    AlertConfig(
        alert_type="SQL_INJECTION_ATTEMPT",
        condition="action = ?",
        condition_params=("SQL_INJECTION_ATTEMPT",),
        threshold=1,
        window=timedelta(minutes=1),
        severity=AlertSeverity.CRITICAL,
        title="SQL Injection Attempt Detected",
        description="Request matched a SQL injection pattern",
    ),
    AlertConfig(
        alert_type="XSS_ATTEMPT",
        condition="action = ?",
        condition_params=("XSS_ATTEMPT",),
        threshold=1,
        window=timedelta(minutes=1),
        severity=AlertSeverity.CRITICAL,
        title="XSS Attack Attempt Detected",
        description="Request matched a cross-site scripting pattern",
    ),
    AlertConfig(
        alert_type="SUSPICIOUS_ACTIVITY",
        condition="level IN (?, ?)",
        condition_params=("WARNING", "SECURITY"),
        threshold=10,
        window=timedelta(hours=1),
        severity=AlertSeverity.MEDIUM,
        title="Suspicious Activity Detected",
        description="High volume of warning and security events from the same IP address",
    ),
]

STATISTICS_PERIODS: Dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


@dataclass
class SecurityAlert:
    """
    Alert aggregate.

    Attributes:
        alert_type: Alert type identifier
        severity: Fixed severity for the type
        title: Short title
        description: What was detected
        source: Offending source (client IP)
        count: Matching events in the latest window
        first_seen: First matching event
        last_seen: Latest matching event
        resolved: Set by an operator
        resolution: Operator note
        alert_id: Row id once persisted
    """
    alert_type: str
    severity: AlertSeverity
    title: str
    description: str
    source: str
    count: int
    first_seen: str
    last_seen: str
    resolved: bool = False
    resolution: Optional[str] = None
    alert_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.alert_id,
            "alertType": self.alert_type,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "source": self.source,
            "count": self.count,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "resolved": self.resolved,
            "resolution": self.resolution,
        }


Notifier = Callable[[SecurityAlert], None]


def log_notification(alert: SecurityAlert) -> None:
    """Default notifier: write the alert to the log."""
    logger.warning(
        f"SECURITY ALERT [{alert.severity.value}] {alert.title}: "
        f"{alert.description} (source={alert.source}, count={alert.count})"
    )


def _row_to_alert(row: Dict[str, Any]) -> SecurityAlert:
    return SecurityAlert(
        alert_id=row["alert_id"],
        alert_type=row["alert_type"],
        severity=AlertSeverity(row["severity"]),
        title=row["title"],
        description=row["description"],
        source=row["source"],
        count=int(row["count"]),
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
        resolved=bool(row["resolved"]),
        resolution=row["resolution"],
    )


class AlertMonitor:
    """
    Evaluates alert configs and maintains the alert table.

    Args:
        executor: Parameterized query executor
        notifier: Called for HIGH and CRITICAL alerts
        configs: Alert definitions (default: ALERT_CONFIGS)
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        executor: QueryExecutor,
        notifier: Notifier = log_notification,
        configs: Optional[List[AlertConfig]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.executor = executor
        self.notifier = notifier
        self.configs = ALERT_CONFIGS if configs is None else configs
        self.clock = clock

    def _query_config(self, config: AlertConfig) -> List[SecurityAlert]:
        cutoff = format_timestamp(self.clock() - config.window)
        rows = self.executor.execute_query(
            f"""
            SELECT ip_address AS source, COUNT(*) AS event_count,
                   MIN(created_at) AS first_seen, MAX(created_at) AS last_seen
            FROM audit_log
            WHERE {config.condition} AND created_at >= ?
            GROUP BY ip_address
            HAVING COUNT(*) >= ?
            ORDER BY event_count DESC
            """,
            (*config.condition_params, cutoff, config.threshold),
        )
        return [
            SecurityAlert(
                alert_type=config.alert_type,
                severity=config.severity,
                title=config.title,
                description=config.description,
                source=row["source"],
                count=int(row["event_count"]),
                first_seen=row["first_seen"],
                last_seen=row["last_seen"],
            )
            for row in rows
        ]

    def check_alerts(self) -> List[SecurityAlert]:
        """
        Run every alert query once.

        Returns:
            One candidate alert per (type, source) at or above threshold.
            A failing query is logged and skipped.
        """
        candidates: List[SecurityAlert] = []
        for config in self.configs:
            try:
                candidates.extend(self._query_config(config))
            except Exception as e:
                logger.error(f"Alert check '{config.alert_type}' failed: {e}")
        return candidates

    def find_unresolved(self, alert_type: str, source: str) -> Optional[SecurityAlert]:
        rows = self.executor.execute_query(
            "SELECT * FROM security_alerts WHERE alert_type = ? AND source = ? AND resolved = 0 "
            "ORDER BY alert_id DESC LIMIT 1",
            (alert_type, source),
        )
        return _row_to_alert(rows[0]) if rows else None

    def create_alert(self, alert: SecurityAlert) -> None:
        self.executor.execute_query(
            """
            INSERT INTO security_alerts (
                alert_type, severity, title, description, source,
                count, first_seen, last_seen, resolved
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                alert.alert_type,
                alert.severity.value,
                alert.title,
                alert.description,
                alert.source,
                alert.count,
                alert.first_seen,
                alert.last_seen,
            ),
        )
        logger.info(f"Opened alert {alert.alert_type} for {alert.source}")

    def update_alert(self, alert_id: int, count: int, last_seen: str) -> None:
        self.executor.execute_query(
            "UPDATE security_alerts SET count = ?, last_seen = ? WHERE alert_id = ?",
            (count, last_seen, alert_id),
        )

    def _persist(self, alert: SecurityAlert) -> None:
        try:
            existing = self.find_unresolved(alert.alert_type, alert.source)
            if existing is None:
                self.create_alert(alert)
            else:
                self.update_alert(existing.alert_id, alert.count, alert.last_seen)
                alert.alert_id = existing.alert_id
                alert.first_seen = existing.first_seen
        except Exception as e:
            raise PersistenceError("Failed to persist security alert") from e

    def run_monitoring(self) -> List[SecurityAlert]:
        """
        One monitoring sweep.

        Opens a new alert or refreshes the open one for each candidate,
        then notifies on HIGH and CRITICAL alerts.

        Returns:
            The candidate alerts found in this sweep
        """
        alerts = self.check_alerts()
        configs = {config.alert_type: config for config in self.configs}

        for alert in alerts:
            try:
                self._persist(alert)
            except PersistenceError as e:
                logger.bind(audit_fallback=True).error(
                    f"{e} ({e.__cause__}): {alert.alert_type} source={alert.source} count={alert.count}"
                )

            config = configs.get(alert.alert_type)
            if alert.severity in NOTIFY_SEVERITIES and (config is None or config.notify):
                try:
                    self.notifier(alert)
                except Exception as e:
                    logger.error(f"Alert notification failed for {alert.alert_type}: {e}")

        if alerts:
            logger.info(f"Security monitoring: {len(alerts)} alert(s) raised")
        return alerts

    def get_active_alerts(self) -> List[SecurityAlert]:
        """Unresolved alerts, most severe first, then most recent."""
        rows = self.executor.execute_query(
            "SELECT * FROM security_alerts WHERE resolved = 0 ORDER BY last_seen DESC"
        )
        alerts = [_row_to_alert(row) for row in rows]
        return sorted(alerts, key=lambda alert: alert.severity.rank, reverse=True)

    def get_alert(self, alert_id: int) -> Optional[SecurityAlert]:
        rows = self.executor.execute_query(
            "SELECT * FROM security_alerts WHERE alert_id = ?", (alert_id,)
        )
        return _row_to_alert(rows[0]) if rows else None

    def resolve_alert(self, alert_id: int, resolution: str) -> bool:
        """
        Mark an alert resolved.

        Args:
            alert_id: Alert row id
            resolution: Operator note

        Returns:
            True if an unresolved alert was resolved, False otherwise
        """
        alert = self.get_alert(alert_id)
        if alert is None or alert.resolved:
            return False
        self.executor.execute_query(
            "UPDATE security_alerts SET resolved = 1, resolution = ?, resolved_at = ? WHERE alert_id = ?",
            (resolution, format_timestamp(self.clock()), alert_id),
        )
        logger.info(f"Resolved alert {alert_id}: {resolution}")
        return True

    def get_alert_statistics(self, period: str = "24h") -> Dict[str, Any]:
        """
        Alert counts by type and severity over a period.

        Args:
            period: One of "1h", "24h", "7d", "30d"

        Returns:
            Dict with period, total, resolved, byType and bySeverity

        Raises:
            ValueError: For an unknown period
        """
        if period not in STATISTICS_PERIODS:
            raise ValueError(f"Unknown period: {period}")
        cutoff = format_timestamp(self.clock() - STATISTICS_PERIODS[period])
        rows = self.executor.execute_query(
            "SELECT alert_type, severity, resolved, COUNT(*) AS alert_count FROM security_alerts "
            "WHERE first_seen >= ? GROUP BY alert_type, severity, resolved",
            (cutoff,),
        )

        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        total = resolved = 0
        for row in rows:
            count = int(row["alert_count"])
            total += count
            if row["resolved"]:
                resolved += count
            by_type[row["alert_type"]] = by_type.get(row["alert_type"], 0) + count
            by_severity[row["severity"]] = by_severity.get(row["severity"], 0) + count

        return {
            "period": period,
            "total": total,
            "resolved": resolved,
            "byType": by_type,
            "bySeverity": by_severity,
        }

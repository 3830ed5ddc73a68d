"""Threshold-based operational alerts.

The completion announcer feeds failed publish attempts here so a job stuck
behind an unreachable event bus is surfaced to operators instead of being
retried silently forever.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from mediaflow.core.config import settings

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    """Alert status."""
    FIRING = "firing"
    RESOLVED = "resolved"


@dataclass
class AlertThreshold:
    """Configuration for an alert threshold."""
    name: str
    metric_name: str
    threshold_value: float
    comparison: str  # "gt", "lt", "gte", "lte", "eq"
    severity: AlertSeverity
    description: str
    cooldown_seconds: int = 300  # Minimum time between alerts
    labels: dict = field(default_factory=dict)


@dataclass
class Alert:
    """Represents an active or resolved alert."""
    id: str
    name: str
    severity: AlertSeverity
    status: AlertStatus
    message: str
    metric_name: str
    metric_value: float
    threshold_value: float
    labels: dict
    started_at: datetime
    resolved_at: Optional[datetime] = None


class AlertManager:
    """Manages threshold-based alerts."""

    def __init__(self):
        self._thresholds: dict[str, AlertThreshold] = {}
        self._active_alerts: dict[str, Alert] = {}
        self._alert_history: list[Alert] = []
        self._last_alert_times: dict[str, datetime] = {}
        self._alert_handlers: list[Callable[[Alert], None]] = []

    def register_threshold(self, threshold: AlertThreshold) -> None:
        """Register an alert threshold."""
        self._thresholds[threshold.name] = threshold
        logger.info(f"Registered alert threshold: {threshold.name}")

    def register_handler(self, handler: Callable[[Alert], None]) -> None:
        """Register an alert handler callback."""
        self._alert_handlers.append(handler)

    def check_metric(
        self,
        metric_name: str,
        value: float,
        labels: Optional[dict] = None,
    ) -> list[Alert]:
        """Check a metric value against registered thresholds.

        Args:
            metric_name: Name of the metric
            value: Current metric value
            labels: Optional metric labels

        Returns:
            List of newly triggered alerts
        """
        labels = labels or {}
        triggered_alerts = []

        for threshold in self._thresholds.values():
            if threshold.metric_name != metric_name:
                continue
            if not self._labels_match(threshold.labels, labels):
                continue

            alert_key = f"{threshold.name}:{self._labels_to_key(labels)}"

            if self._check_condition(value, threshold.threshold_value, threshold.comparison):
                alert = self._handle_condition_met(threshold, value, labels, alert_key)
                if alert:
                    triggered_alerts.append(alert)
            else:
                self._handle_condition_cleared(alert_key)

        return triggered_alerts

    def _check_condition(self, value: float, threshold: float, comparison: str) -> bool:
        if comparison == "gt":
            return value > threshold
        elif comparison == "lt":
            return value < threshold
        elif comparison == "gte":
            return value >= threshold
        elif comparison == "lte":
            return value <= threshold
        elif comparison == "eq":
            return value == threshold
        return False

    def _labels_match(self, threshold_labels: dict, metric_labels: dict) -> bool:
        for key, value in threshold_labels.items():
            if metric_labels.get(key) != value:
                return False
        return True

    def _labels_to_key(self, labels: dict) -> str:
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))

    def _handle_condition_met(
        self,
        threshold: AlertThreshold,
        value: float,
        labels: dict,
        alert_key: str,
    ) -> Optional[Alert]:
        now = datetime.now(timezone.utc)

        if alert_key in self._active_alerts:
            self._active_alerts[alert_key].metric_value = value
            return None

        last_alert = self._last_alert_times.get(alert_key)
        if last_alert and last_alert + timedelta(seconds=threshold.cooldown_seconds) > now:
            return None

        alert = Alert(
            id=f"{alert_key}:{now.timestamp()}",
            name=threshold.name,
            severity=threshold.severity,
            status=AlertStatus.FIRING,
            message=f"{threshold.description} (current: {value}, threshold: {threshold.threshold_value})",
            metric_name=threshold.metric_name,
            metric_value=value,
            threshold_value=threshold.threshold_value,
            labels=labels,
            started_at=now,
        )

        self._active_alerts[alert_key] = alert
        self._last_alert_times[alert_key] = now
        self._notify_handlers(alert)

        logger.warning(
            f"Alert triggered: {alert.name} - {alert.message}",
            extra={
                "alert_id": alert.id,
                "severity": alert.severity.value,
                "metric_name": alert.metric_name,
                "metric_value": alert.metric_value,
            },
        )
        return alert

    def _handle_condition_cleared(self, alert_key: str) -> None:
        if alert_key not in self._active_alerts:
            return

        alert = self._active_alerts.pop(alert_key)
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = datetime.now(timezone.utc)
        self._alert_history.append(alert)
        self._notify_handlers(alert)

        logger.info(f"Alert resolved: {alert.name}", extra={"alert_id": alert.id})

    def _notify_handlers(self, alert: Alert) -> None:
        for handler in self._alert_handlers:
            try:
                handler(alert)
            except Exception as e:
                logger.error(f"Alert handler error: {e}", exc_info=True)

    def get_active_alerts(self) -> list[Alert]:
        """Get all currently active alerts."""
        return list(self._active_alerts.values())

    def get_alert_history(self, limit: int = 100) -> list[Alert]:
        """Get resolved alerts, newest first."""
        return sorted(
            self._alert_history,
            key=lambda a: a.started_at,
            reverse=True,
        )[:limit]


# Global alert manager instance
alert_manager = AlertManager()


def register_default_thresholds(
    manager: AlertManager,
    notification_attempt_ceiling: int = settings.NOTIFICATION_ATTEMPT_CEILING,
) -> None:
    """Register the engine's alert thresholds on a manager.

    Args:
        manager: Alert manager to configure
        notification_attempt_ceiling: Failed publish attempts tolerated per job
    """
    manager.register_threshold(AlertThreshold(
        name="notification_retry_ceiling",
        metric_name="notification_attempts",
        threshold_value=float(notification_attempt_ceiling),
        comparison="gt",
        severity=AlertSeverity.CRITICAL,
        description="Transcoded event could not be published for a completed job",
        cooldown_seconds=3600,
    ))

    manager.register_threshold(AlertThreshold(
        name="event_dead_lettered",
        metric_name="events_dead_lettered",
        threshold_value=0.0,
        comparison="gt",
        severity=AlertSeverity.WARNING,
        description="Inbound event exhausted retries and was dead-lettered",
        cooldown_seconds=300,
    ))


def setup_default_thresholds() -> None:
    """Set up default alert thresholds on the global manager."""
    register_default_thresholds(alert_manager)

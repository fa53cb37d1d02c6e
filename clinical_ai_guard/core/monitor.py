"""
Request metrics, health scoring and alerting.

Counters are bucketed per minute, hour and day in the shared store, so every
worker contributes to, and reads, the same figures.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

from clinical_ai_guard.config.loader import ConfigSource, ThresholdBand
from clinical_ai_guard.storage.store import KeyValueStore
from .clock import PERIOD_FORMATS, PERIOD_TTLS, Clock, utc_now, window_id
from .stats import summarize_latency

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("clinical_ai_guard.alerts")

METRICS_PREFIX = "ai_metrics:"
ALERTS_TTL = 3600


@dataclass
class RequestRecord:
    """One served (or failed) AI request as seen by the monitor."""
    task: str = "unknown"
    success: bool = True
    latency_ms: float = 0
    was_overridden: bool = False
    risk_flags: List[str] = field(default_factory=list)
    from_cache: bool = False
    user_id: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestRecord":
        """Build a record from a loose mapping, ignoring unknown keys."""
        return cls(
            task=data.get("task") or "unknown",
            success=bool(data.get("success", True)),
            latency_ms=data.get("latency_ms") or 0,
            was_overridden=bool(data.get("was_overridden", False)),
            risk_flags=list(data.get("risk_flags") or []),
            from_cache=bool(data.get("from_cache", False)),
            user_id=data.get("user_id"),
        )


@dataclass(frozen=True)
class Alert:
    """Raised alert as kept in the recent-alerts buffer."""
    severity: str
    type: str
    context: Dict[str, Any]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "type": self.type,
            "context": dict(self.context),
            "timestamp": self.timestamp,
        }


class Monitor:
    """Records AI request metrics and raises debounced alerts."""

    def __init__(
        self,
        store: KeyValueStore,
        config_source: Optional[ConfigSource] = None,
        clock: Clock = time.time,
    ):
        self._store = store
        self._config_source = config_source or ConfigSource()
        self._clock = clock

    @property
    def _config(self):
        return self._config_source.current.monitor

    def _key(self, *parts: str) -> str:
        return METRICS_PREFIX + ":".join(parts)

    def record_request(self, record: Union[RequestRecord, Dict[str, Any]]) -> None:
        """Record a request in every period bucket and evaluate alerts.

        Args:
            record: The request outcome; a plain mapping is accepted too
        """
        if isinstance(record, dict):
            record = RequestRecord.from_dict(record)

        now = utc_now(self._clock)
        day_total = 0
        for period in PERIOD_FORMATS:
            wid = window_id(now, period)
            ttl = PERIOD_TTLS[period]

            total = self._increment(ttl, "requests", "total", period, wid)
            if period == "day":
                day_total = total
            self._increment(ttl, "requests", "task", record.task, period, wid)

            if record.success:
                self._increment(ttl, "requests", "success", period, wid)
            else:
                self._increment(ttl, "requests", "failure", period, wid)
                self._increment(ttl, "failures", "task", record.task, period, wid)

            if record.was_overridden:
                self._increment(ttl, "validation", "overridden", period, wid)
            if record.from_cache:
                self._increment(ttl, "requests", "cached", period, wid)

            self._remember_task(record.task, period, wid, ttl)
            self._record_latency(record.latency_ms, record.task, period, wid, ttl)

        self.check_alerts(record, day_total=day_total)

    def _increment(self, ttl: int, *parts: str) -> int:
        return self._store.increment_with_ttl(self._key(*parts), ttl)

    def _remember_task(self, task: str, period: str, wid: str, ttl: int) -> None:
        key = self._key("tasks", period, wid)
        if task in self._store.get(key, []):
            return
        self._store.mutate(key, lambda tasks: tasks if task in tasks else sorted(tasks + [task]), ttl, default=[])

    def _record_latency(self, latency_ms: float, task: str, period: str, wid: str, ttl: int) -> None:
        limit = self._config.latency_samples

        self._store.mutate(
            self._key("latency", task, period, wid),
            lambda samples: (samples + [latency_ms])[-limit:],
            ttl,
            default=[],
        )

        def fold(stats: Dict[str, float]) -> Dict[str, float]:
            if stats["count"] == 0:
                return {"min": latency_ms, "max": latency_ms, "sum": latency_ms, "count": 1}
            return {
                "min": min(stats["min"], latency_ms),
                "max": max(stats["max"], latency_ms),
                "sum": stats["sum"] + latency_ms,
                "count": stats["count"] + 1,
            }

        self._store.mutate(
            self._key("latency_stats", task, period, wid),
            fold,
            ttl,
            default={"min": 0, "max": 0, "sum": 0, "count": 0},
        )

    def get_metrics(self, period: str = "hour") -> Dict[str, Any]:
        """Aggregate metrics for the current minute, hour or day.

        Unknown periods fall back to the hour.
        """
        if period not in PERIOD_FORMATS:
            period = "hour"
        wid = window_id(utc_now(self._clock), period)

        def read(*parts: str) -> int:
            return self._store.get(self._key(*parts, period, wid), 0)

        total = read("requests", "total")
        success = read("requests", "success")
        failure = read("requests", "failure")
        overridden = read("validation", "overridden")

        error_rate = failure / total if total > 0 else 0.0
        validation_failure_rate = overridden / total if total > 0 else 0.0

        tasks = self._store.get(self._key("tasks", period, wid), [])
        latency: Dict[str, Any] = {}
        by_task: Dict[str, Any] = {}
        for task in tasks:
            stats = self._store.get(self._key("latency_stats", task, period, wid))
            if stats and stats["count"] > 0:
                samples = self._store.get(self._key("latency", task, period, wid), [])
                latency[task] = summarize_latency(stats, samples)

            requests = read("requests", "task", task)
            if requests > 0:
                failures = read("failures", "task", task)
                by_task[task] = {
                    "requests": requests,
                    "failures": failures,
                    "error_rate": round(failures / requests, 4),
                }

        return {
            "period": period,
            "key": wid,
            "requests": {
                "total": total,
                "success": success,
                "failure": failure,
                "cached": read("requests", "cached"),
                "error_rate": round(error_rate, 4),
            },
            "validation": {
                "overridden": overridden,
                "failure_rate": round(validation_failure_rate, 4),
            },
            "latency": latency,
            "by_task": by_task,
            "health": self.calculate_health(error_rate, validation_failure_rate),
        }

    def calculate_health(self, error_rate: float, validation_failure_rate: float) -> Dict[str, Any]:
        """Score 0-100 with a status label and the issues that cost points."""
        config = self._config
        score = 100
        issues: List[str] = []

        if error_rate > config.error_rate.critical:
            score -= 40
            issues.append("Critical error rate exceeded")
        elif error_rate > config.error_rate.warning:
            score -= 20
            issues.append("Warning error rate exceeded")

        if validation_failure_rate > config.validation_failure_rate.critical:
            score -= 30
            issues.append("Critical validation failure rate")
        elif validation_failure_rate > config.validation_failure_rate.warning:
            score -= 15
            issues.append("Warning validation failure rate")

        if score >= 80:
            status = "healthy"
        elif score >= 60:
            status = "degraded"
        elif score >= 40:
            status = "unhealthy"
        else:
            status = "critical"

        return {"score": max(0, score), "status": status, "issues": issues}

    def get_health_score(self) -> Dict[str, Any]:
        """Health for the current hour."""
        return self.get_metrics("hour")["health"]

    def check_alerts(self, record: RequestRecord, day_total: int = 0) -> None:
        """Raise alerts for slow requests, risky overrides and daily volume."""
        config = self._config

        if record.latency_ms > config.latency_ms.critical:
            self.trigger_alert("critical", "high_latency", {
                "latency_ms": record.latency_ms,
                "task": record.task,
                "threshold": config.latency_ms.critical,
            })
        elif record.latency_ms > config.latency_ms.warning:
            self.trigger_alert("warning", "high_latency", {
                "latency_ms": record.latency_ms,
                "task": record.task,
                "threshold": config.latency_ms.warning,
            })

        if record.was_overridden and record.risk_flags:
            self.trigger_alert("warning", "validation_override", {
                "task": record.task,
                "risk_flags": list(record.risk_flags),
            })

        if day_total > config.daily_requests.critical:
            self.trigger_alert("critical", "daily_volume", {
                "requests": day_total,
                "threshold": config.daily_requests.critical,
            })
        elif day_total > config.daily_requests.warning:
            self.trigger_alert("warning", "daily_volume", {
                "requests": day_total,
                "threshold": config.daily_requests.warning,
            })

    def trigger_alert(self, severity: str, alert_type: str, context: Dict[str, Any]) -> bool:
        """Raise an alert unless one of the same type fired this debounce window.

        Returns:
            True if the alert was raised, False if it was debounced
        """
        config = self._config
        now_ts = self._clock()
        bucket = int(now_ts // config.alert_debounce_seconds)

        # First writer in the window wins
        if self._store.increment_with_ttl(self._key("alert", alert_type, str(bucket)), config.alert_debounce_seconds) > 1:
            return False

        alert = Alert(
            severity=severity,
            type=alert_type,
            context=dict(context),
            timestamp=utc_now(self._clock).isoformat(),
        )

        log = alert_logger.critical if severity == "critical" else alert_logger.warning
        log("AI Alert: %s", alert_type, extra={"alert": alert.to_dict()})

        history = config.alert_history
        self._store.mutate(
            self._key("alerts", "recent"),
            lambda alerts: (alerts + [alert.to_dict()])[-history:],
            ALERTS_TTL,
            default=[],
        )
        return True

    def get_recent_alerts(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent alerts first."""
        alerts = self._store.get(self._key("alerts", "recent"), [])
        return list(reversed(alerts))[:limit]

    def get_dashboard(self) -> Dict[str, Any]:
        """Aggregate read for an operations view."""
        return {
            "current_hour": self.get_metrics("hour"),
            "current_day": self.get_metrics("day"),
            "recent_alerts": self.get_recent_alerts(10),
            "thresholds": self._config.thresholds(),
            "timestamp": utc_now(self._clock).isoformat(),
        }

    def configure_thresholds(self, **bands: ThresholdBand) -> None:
        """Replace alert thresholds, e.g. ``latency_ms=ThresholdBand(2000, 4000)``."""
        current = self._config_source.current
        self._config_source.update(replace(current, monitor=replace(current.monitor, **bands)))
        logger.info("AI monitoring thresholds updated: %s", self._config.thresholds())

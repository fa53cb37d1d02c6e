"""
Layered admission control for AI requests.

Three tiers are evaluated in order and the first exhausted one denies:

1. Global requests per minute, across all users
2. Requests per minute for one task and one user
3. Requests per UTC day for one user, sized by role

Counters live in the shared store under keys that embed their window, so a
new minute or day starts from zero.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from clinical_ai_guard.config.loader import ConfigSource
from clinical_ai_guard.storage.store import KeyValueStore
from .clock import Clock, next_day, next_minute, seconds_until, utc_now, window_id

logger = logging.getLogger(__name__)

RATE_PREFIX = "ai_rate:"
MINUTE_COUNTER_TTL = 120
DAY_COUNTER_TTL = 86400
RATE_RETRY_AFTER = 60

REASONS = {
    "global": "global_limit_exceeded",
    "task": "task_limit_exceeded",
    "quota": "quota_exceeded",
}


@dataclass(frozen=True)
class TierStatus:
    """Usage of one admission tier in its current window."""
    allowed: bool
    limit: int
    used: int
    remaining: int
    reset_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
        }


@dataclass
class AdmissionResult:
    """Outcome of an admission decision.

    ``limits`` holds the tiers evaluated up to and including the one that
    denied. ``retry_after`` and ``headers`` are filled in on denial.
    """
    allowed: bool
    limits: Dict[str, TierStatus] = field(default_factory=dict)
    reason: Optional[str] = None
    retry_after: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "allowed": self.allowed,
            "limits": {name: status.to_dict() for name, status in self.limits.items()},
        }
        if self.reason is not None:
            result["reason"] = self.reason
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.headers:
            result["headers"] = dict(self.headers)
        return result


@dataclass(frozen=True)
class _Tier:
    name: str
    key: str
    limit: int
    ttl: int
    reset_at: datetime


class AdmissionController:
    """Admits or denies AI requests against global, task and daily limits."""

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
        return self._config_source.current.admission

    def _tiers(self, task: str, user_id: Any, user_role: str, now: datetime) -> List[_Tier]:
        config = self._config
        minute = window_id(now, "minute")
        day = window_id(now, "day")
        return [
            _Tier("global", f"{RATE_PREFIX}global:{minute}", config.global_limit,
                  MINUTE_COUNTER_TTL, next_minute(now)),
            _Tier("task", f"{RATE_PREFIX}task:{task}:{user_id}:{minute}", config.task_limit(task),
                  MINUTE_COUNTER_TTL, next_minute(now)),
            _Tier("quota", f"{RATE_PREFIX}quota:{user_id}:{day}", config.role_quota(user_role),
                  DAY_COUNTER_TTL, next_day(now)),
        ]

    @staticmethod
    def _status(tier: _Tier, used: int, allowed: bool) -> TierStatus:
        return TierStatus(
            allowed=allowed,
            limit=tier.limit,
            used=used,
            remaining=max(0, tier.limit - used),
            reset_at=tier.reset_at,
        )

    def check(self, task: str, user_id: Any, user_role: str) -> AdmissionResult:
        """Evaluate the tiers without consuming anything.

        The answer is advisory under concurrency; use ``attempt`` to admit.
        """
        now = utc_now(self._clock)
        result = AdmissionResult(allowed=True)

        for tier in self._tiers(task, user_id, user_role, now):
            used = self._store.get(tier.key, 0)
            allowed = used < tier.limit
            result.limits[tier.name] = self._status(tier, used, allowed)
            if not allowed:
                result.allowed = False
                result.reason = REASONS[tier.name]
                break

        return result

    def attempt(self, task: str, user_id: Any, user_role: str) -> AdmissionResult:
        """Admit a request, consuming one slot in every tier.

        Each tier is reserved with an atomic increment. A reservation that
        overshoots its limit is released together with the tiers reserved
        before it, so concurrent callers never jointly exceed a limit and a
        denied request consumes nothing.

        Args:
            task: Task identifier
            user_id: Requesting user
            user_role: Role that sizes the daily quota

        Returns:
            AdmissionResult; denials carry ``retry_after`` and ``headers``
        """
        now = utc_now(self._clock)
        result = AdmissionResult(allowed=True)
        reserved: List[_Tier] = []

        for tier in self._tiers(task, user_id, user_role, now):
            count = self._store.increment_with_ttl(tier.key, tier.ttl)
            reserved.append(tier)
            if count > tier.limit:
                self._release(reserved)
                result.limits[tier.name] = self._status(tier, count - 1, False)
                result.allowed = False
                result.reason = REASONS[tier.name]
                break
            result.limits[tier.name] = self._status(tier, count, True)

        if not result.allowed:
            result.retry_after = self._retry_after(result.reason, now)
            result.headers = self.get_headers(self.get_remaining(task, user_id, user_role))
            logger.info(
                "AI request denied: task=%s user_id=%s reason=%s retry_after=%ds",
                task, user_id, result.reason, result.retry_after,
            )

        return result

    def _release(self, reserved: List[_Tier]) -> None:
        for tier in reserved:
            self._store.increment_with_ttl(tier.key, tier.ttl, amount=-1)

    @staticmethod
    def _retry_after(reason: Optional[str], now: datetime) -> int:
        if reason == REASONS["quota"]:
            return seconds_until(now, next_day(now))
        return RATE_RETRY_AFTER

    def record(self, task: str, user_id: Any, success: bool = True) -> None:
        """Count a request in every window, bypassing the limits."""
        now = utc_now(self._clock)
        for tier in self._tiers(task, user_id, "default", now):
            self._store.increment_with_ttl(tier.key, tier.ttl)
        self.record_outcome(task, success)

    def record_outcome(self, task: str, success: bool) -> None:
        """Count a finished request as a success or failure for today."""
        day = window_id(utc_now(self._clock), "day")
        outcome = "success" if success else "failure"
        self._store.increment_with_ttl(f"{RATE_PREFIX}{outcome}:{task}:{day}", DAY_COUNTER_TTL)

    def get_remaining(self, task: str, user_id: Any, user_role: str) -> Dict[str, TierStatus]:
        """Current usage of all three tiers."""
        now = utc_now(self._clock)
        remaining = {}
        for tier in self._tiers(task, user_id, user_role, now):
            used = self._store.get(tier.key, 0)
            remaining[tier.name] = self._status(tier, used, used < tier.limit)
        return remaining

    @staticmethod
    def get_headers(remaining: Dict[str, TierStatus]) -> Dict[str, str]:
        """HTTP rate-limit headers; reset values are Unix timestamps."""
        task = remaining["task"]
        quota = remaining["quota"]
        return {
            "X-RateLimit-Limit": str(task.limit),
            "X-RateLimit-Remaining": str(task.remaining),
            "X-RateLimit-Reset": str(int(task.reset_at.timestamp())),
            "X-DailyQuota-Limit": str(quota.limit),
            "X-DailyQuota-Remaining": str(quota.remaining),
            "X-DailyQuota-Reset": str(int(quota.reset_at.timestamp())),
        }

    def get_stats(self) -> Dict[str, Any]:
        """Configured limits and today's outcomes per task."""
        config = self._config
        day = window_id(utc_now(self._clock), "day")
        usage = {}
        for task in config.task_limits:
            if task == "default":
                continue
            usage[task] = {
                "success": self._store.get(f"{RATE_PREFIX}success:{task}:{day}", 0),
                "failure": self._store.get(f"{RATE_PREFIX}failure:{task}:{day}", 0),
            }
        return {
            "limits": {
                "task_limits": dict(config.task_limits),
                "role_quotas": dict(config.role_quotas),
                "global_limit": config.global_limit,
            },
            "usage": usage,
        }

    def reset_for_user(self, user_id: Any) -> None:
        """Forget a user's daily quota and this minute's task counters."""
        now = utc_now(self._clock)
        minute = window_id(now, "minute")
        day = window_id(now, "day")

        self._store.forget(f"{RATE_PREFIX}quota:{user_id}:{day}")
        if self._store.supports_patterns:
            task_keys = self._store.keys_matching(f"{RATE_PREFIX}task:*:{user_id}:{minute}")
        else:
            task_keys = [f"{RATE_PREFIX}task:{task}:{user_id}:{minute}" for task in self._config.task_limits]
        for key in task_keys:
            self._store.forget(key)

        logger.info("AI rate limits reset for user: user_id=%s", user_id)

    def update_limits(
        self,
        task_limits: Optional[Dict[str, int]] = None,
        role_quotas: Optional[Dict[str, int]] = None,
        global_limit: Optional[int] = None,
    ) -> None:
        """Merge new limits into the live configuration.

        Raises:
            ValueError: If a resulting limit is invalid
        """
        current = self._config_source.current
        admission = current.admission
        changes: Dict[str, Any] = {}
        if task_limits:
            changes["task_limits"] = {**admission.task_limits, **task_limits}
        if role_quotas:
            changes["role_quotas"] = {**admission.role_quotas, **role_quotas}
        if global_limit is not None:
            changes["global_limit"] = global_limit
        self._config_source.update(replace(current, admission=replace(admission, **changes)))


def limits_summary(remaining: Dict[str, TierStatus]) -> List[Tuple[str, int, int, int]]:
    """(tier, limit, used, remaining) rows for display."""
    return [(name, status.limit, status.used, status.remaining) for name, status in remaining.items()]

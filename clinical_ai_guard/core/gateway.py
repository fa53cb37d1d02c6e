"""
Request pipeline for governed AI calls.

One call to ``AiGateway.process`` runs admission, the response cache, the
provider, output validation, failure handling and metrics in that order.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from clinical_ai_guard.config.loader import ConfigSource
from clinical_ai_guard.sdk.base import Provider, ProviderResult
from clinical_ai_guard.storage.store import KeyValueStore
from .admission import AdmissionController
from .cache import ResponseCache
from .clock import Clock
from .errors import ErrorCategory, ErrorClassifier, GovernedError, RecoveryStrategy
from .monitor import Monitor, RequestRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationOutcome:
    """Validator verdict on generated content."""
    output: str
    was_modified: bool = False
    risk_flags: Tuple[str, ...] = ()


Validator = Callable[[str, str], ValidationOutcome]


def passthrough_validator(output: str, task: str) -> ValidationOutcome:
    return ValidationOutcome(output=output)


@dataclass
class GatewayResponse:
    """Structured result of one pipeline run."""
    success: bool
    status_code: int
    task: str
    response: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    retry_after: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    limits: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "task": self.task}
        if self.success:
            payload["response"] = self.response
            payload["metadata"] = dict(self.metadata)
        else:
            payload["error"] = dict(self.error or {})
            if self.retry_after is not None:
                payload["retry_after"] = self.retry_after
            if self.limits:
                payload["limits"] = dict(self.limits)
        return payload


class AiGateway:
    """Runs AI requests through admission, cache, provider and monitoring.

    All components share one store, so several gateways in different worker
    processes enforce the same limits and see the same cache.
    """

    def __init__(
        self,
        store: KeyValueStore,
        provider: Provider,
        config_source: Optional[ConfigSource] = None,
        fallback_provider: Optional[Provider] = None,
        validator: Optional[Validator] = None,
        clock: Clock = time.time,
    ):
        self.config_source = config_source or ConfigSource()
        self.admission = AdmissionController(store, self.config_source, clock)
        self.cache = ResponseCache(store, self.config_source, clock)
        self.errors = ErrorClassifier(self.config_source, clock)
        self.monitor = Monitor(store, self.config_source, clock)
        self._provider = provider
        self._fallback_provider = fallback_provider
        self._validator = validator or passthrough_validator
        self._clock = clock

    def process(
        self,
        task: str,
        user_id: Any,
        user_role: str,
        prompt: str,
        context: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> GatewayResponse:
        """Serve one AI task request.

        Args:
            task: Task identifier
            user_id: Requesting user
            user_role: Role that sizes the daily quota
            prompt: Prompt text for the provider
            context: Request context used for cache keys and error context
            options: Generation options (``model``, ``temperature``, ...)

        Returns:
            GatewayResponse; denials carry status 429 and ``retry_after``
        """
        context = context or {}
        options = options or {}

        admission = self.admission.attempt(task, user_id, user_role)
        if not admission.allowed:
            return GatewayResponse(
                success=False,
                status_code=429,
                task=task,
                error={"message": "Rate limit exceeded", "reason": admission.reason},
                retry_after=admission.retry_after,
                headers=admission.headers,
                limits={name: status.to_dict() for name, status in admission.limits.items()},
            )

        start = self._clock()
        headers = self.admission.get_headers(self.admission.get_remaining(task, user_id, user_role))

        cached = self.cache.get(task, context, options)
        if cached is not None:
            latency_ms = self._elapsed_ms(start)
            self.monitor.record_request(RequestRecord(
                task=task, success=True, latency_ms=latency_ms, from_cache=True, user_id=user_id,
            ))
            self.admission.record_outcome(task, True)

            metadata = dict(cached.get("metadata") or {})
            metadata.update({"from_cache": True, "latency_ms": latency_ms, "cached_at": cached["cached_at"]})
            return GatewayResponse(
                success=True,
                status_code=200,
                task=task,
                response=cached.get("response"),
                headers=headers,
                metadata=metadata,
            )

        request_context = {
            "task": task,
            "user_id": user_id,
            "patient_id": context.get("patient_id") or context.get("patientId"),
            "request_id": context.get("request_id"),
        }

        try:
            result, source = self._generate(prompt, options, request_context)
            outcome = self._validator(result.response or "", task)
        except Exception as e:
            latency_ms = self._elapsed_ms(start)
            error_response = self.errors.handle(e, request_context)
            self.monitor.record_request(RequestRecord(
                task=task, success=False, latency_ms=latency_ms, user_id=user_id,
            ))
            self.admission.record_outcome(task, False)
            return GatewayResponse(
                success=False,
                status_code=error_response.status_code,
                task=task,
                error=error_response.error,
                retry_after=error_response.error["recovery"]["retry_after_seconds"],
                headers=headers,
                metadata={"latency_ms": latency_ms},
            )

        latency_ms = self._elapsed_ms(start)
        metadata = dict(result.metadata)
        metadata.update({
            "provider": source,
            "latency_ms": latency_ms,
            "from_cache": False,
            "was_modified": outcome.was_modified,
            "risk_flags": list(outcome.risk_flags),
        })

        self.cache.put(task, context, {"success": True, "response": outcome.output, "metadata": metadata}, options)
        self.monitor.record_request(RequestRecord(
            task=task,
            success=True,
            latency_ms=latency_ms,
            was_overridden=outcome.was_modified,
            risk_flags=list(outcome.risk_flags),
            user_id=user_id,
        ))
        self.admission.record_outcome(task, True)

        return GatewayResponse(
            success=True,
            status_code=200,
            task=task,
            response=outcome.output,
            headers=headers,
            metadata=metadata,
        )

    def _generate(
        self,
        prompt: str,
        options: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Tuple[ProviderResult, str]:
        """Call the primary provider, then the fallback once if the plan says so."""
        try:
            return self._invoke_provider(self._provider, prompt, options, context), "primary"
        except GovernedError as e:
            if self._fallback_provider is None:
                raise
            plan = self.errors.determine_recovery(self.errors.classify(e, context), context)
            if plan.strategy != RecoveryStrategy.FALLBACK:
                raise
            logger.warning("Primary provider failed (%s), trying fallback: task=%s", e.category.value, context.get("task"))

        return self._invoke_provider(self._fallback_provider, prompt, options, context), "fallback"

    def _invoke_provider(
        self,
        provider: Provider,
        prompt: str,
        options: Dict[str, Any],
        context: Dict[str, Any],
    ) -> ProviderResult:
        """Call a provider and tag any failure with its category.

        Raises:
            GovernedError: For failed results and governed failures
        """
        try:
            result = provider.generate(prompt, options)
        except Exception as e:
            if self.errors.is_governed_failure(e):
                raise self.errors.tag_failure(e, context) from e
            raise

        if not result.success:
            message = result.error or "Provider request failed"
            category = self.errors.categorize_message(message) or ErrorCategory.PROVIDER
            raise self.errors.create_exception(message, category, context)
        return result

    def _elapsed_ms(self, start: float) -> int:
        return int(round((self._clock() - start) * 1000))

    def health(self) -> Dict[str, Any]:
        """Provider availability and the current monitoring health."""
        available = self._provider.is_available()
        provider: Dict[str, Any] = {"available": available}
        if self._fallback_provider is not None:
            provider["fallback_available"] = self._fallback_provider.is_available()

        return {
            "status": "ok" if available else "degraded",
            "provider": provider,
            "health": self.monitor.get_health_score(),
            "recent_alerts": self.monitor.get_recent_alerts(5),
        }

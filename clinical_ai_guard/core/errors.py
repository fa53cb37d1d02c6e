"""
Failure classification and recovery planning.

Turns a failure raised while serving an AI task into a category, a
clinically-aware severity, a sanitized user message and a recovery plan.

Classification order:
1. A GovernedError that already carries a category keeps it
2. Message patterns (timeouts, rate limits, safety, configuration)
3. Structural type of the failure (timeouts, connection errors, bad JSON)
"""

import hashlib
import json
import logging
import time
import traceback
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

import openai

from clinical_ai_guard.config.loader import ConfigSource
from .clock import Clock, utc_now

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Failure taxonomy for AI requests."""
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    SAFETY = "safety"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels in ascending order."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def escalate(self) -> "ErrorSeverity":
        """One level higher, capped at CRITICAL."""
        levels = list(ErrorSeverity)
        return levels[min(levels.index(self) + 1, len(levels) - 1)]


class RecoveryStrategy(Enum):
    """Policy-level response to a classified failure."""
    RETRY = "retry"
    FALLBACK = "fallback"
    CACHE = "cache"
    DEGRADE = "degrade"
    ABORT = "abort"


class GovernedError(Exception):
    """Failure that belongs to the AI governance taxonomy.

    Subclasses fix the category; a plain GovernedError may be tagged with
    one explicitly or left for classification.
    """
    category: Optional[ErrorCategory] = None

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        category: Optional[ErrorCategory] = None,
    ):
        super().__init__(message)
        self.context = dict(context or {})
        if category is not None:
            self.category = category


class ProviderUnavailable(GovernedError):
    category = ErrorCategory.PROVIDER


class ProviderTimeout(GovernedError):
    category = ErrorCategory.TIMEOUT


class ProviderRateLimited(GovernedError):
    category = ErrorCategory.RATE_LIMIT


class ValidationFailure(GovernedError):
    category = ErrorCategory.VALIDATION


class SafetyError(GovernedError):
    category = ErrorCategory.SAFETY


class ConfigurationError(GovernedError):
    category = ErrorCategory.CONFIGURATION


_EXCEPTION_CLASSES: Dict[ErrorCategory, Type[GovernedError]] = {
    ErrorCategory.PROVIDER: ProviderUnavailable,
    ErrorCategory.TIMEOUT: ProviderTimeout,
    ErrorCategory.RATE_LIMIT: ProviderRateLimited,
    ErrorCategory.VALIDATION: ValidationFailure,
    ErrorCategory.SAFETY: SafetyError,
    ErrorCategory.CONFIGURATION: ConfigurationError,
}

_MESSAGE_PATTERNS: Tuple[Tuple[Tuple[str, ...], ErrorCategory], ...] = (
    (("timeout", "timed out"), ErrorCategory.TIMEOUT),
    (("rate limit", "too many requests"), ErrorCategory.RATE_LIMIT),
    (("safety", "validation failed"), ErrorCategory.SAFETY),
    (("config", "not configured"), ErrorCategory.CONFIGURATION),
)

# Checked in order; subclasses must precede their bases
_TYPE_CATEGORIES: Tuple[Tuple[Type[BaseException], ErrorCategory], ...] = (
    (openai.APITimeoutError, ErrorCategory.TIMEOUT),
    (TimeoutError, ErrorCategory.TIMEOUT),
    (openai.RateLimitError, ErrorCategory.RATE_LIMIT),
    (openai.AuthenticationError, ErrorCategory.CONFIGURATION),
    (openai.NotFoundError, ErrorCategory.CONFIGURATION),
    (openai.APIConnectionError, ErrorCategory.PROVIDER),
    (openai.APIStatusError, ErrorCategory.PROVIDER),
    (ConnectionError, ErrorCategory.PROVIDER),
    (json.JSONDecodeError, ErrorCategory.VALIDATION),
)

_BASE_SEVERITY = {
    ErrorCategory.TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorCategory.PROVIDER: ErrorSeverity.MEDIUM,
    ErrorCategory.RATE_LIMIT: ErrorSeverity.LOW,
    ErrorCategory.CONFIGURATION: ErrorSeverity.HIGH,
    ErrorCategory.VALIDATION: ErrorSeverity.LOW,
    ErrorCategory.UNKNOWN: ErrorSeverity.LOW,
}

USER_MESSAGES = {
    ErrorCategory.PROVIDER: "The AI service is temporarily unavailable. Please try again.",
    ErrorCategory.TIMEOUT: "The AI request took too long to process. Please try again.",
    ErrorCategory.RATE_LIMIT: "Too many AI requests. Please wait a moment and try again.",
    ErrorCategory.VALIDATION: "The AI response could not be processed. Please try again.",
    ErrorCategory.SAFETY: "The AI response was blocked for safety reasons. Please review your input.",
    ErrorCategory.CONFIGURATION: "The AI service is not properly configured. Please contact support.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred. Please try again.",
}

STATUS_CODES = {
    ErrorCategory.PROVIDER: 503,
    ErrorCategory.TIMEOUT: 504,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.VALIDATION: 502,
    ErrorCategory.SAFETY: 422,
    ErrorCategory.CONFIGURATION: 500,
    ErrorCategory.UNKNOWN: 500,
}

RETRY_AFTER_SECONDS = {
    ErrorCategory.RATE_LIMIT: 60,
    ErrorCategory.TIMEOUT: 5,
    ErrorCategory.PROVIDER: 10,
}

RETRYABLE = frozenset({ErrorCategory.TIMEOUT, ErrorCategory.PROVIDER, ErrorCategory.RATE_LIMIT})
NEEDS_FALLBACK = frozenset({ErrorCategory.PROVIDER, ErrorCategory.TIMEOUT, ErrorCategory.CONFIGURATION})
MAX_RETRIES = 3

_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.CRITICAL,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.LOW: logging.INFO,
}


@dataclass(frozen=True)
class ErrorClassification:
    """Classified failure; never persisted."""
    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    user_message: str
    is_retryable: bool
    requires_fallback: bool


@dataclass(frozen=True)
class RecoveryPlan:
    """Recovery proposal attached to a classified failure."""
    strategy: RecoveryStrategy
    max_retries: int
    retry_after_seconds: int
    suggestions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "max_retries": self.max_retries,
            "retry_after_seconds": self.retry_after_seconds,
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True)
class ErrorResponse:
    """Structured result of handling a failure.

    ``metadata`` holds internal diagnostics (exception class, file, line) and
    is left out of ``to_dict``, which is what callers may return to users.
    """
    error: Dict[str, Any]
    status_code: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    success: bool = False

    @property
    def category(self) -> str:
        return self.error["category"]

    @property
    def strategy(self) -> str:
        return self.error["recovery"]["strategy"]

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "error": dict(self.error)}

    def to_internal_dict(self) -> Dict[str, Any]:
        """Full payload including diagnostics, for logs and audit only."""
        return asdict(self)


class ErrorClassifier:
    """Classifies AI failures and plans recovery.

    Holds no shared state; the only input besides the failure is the request
    context (``task``, ``user_id``, ``patient_id``, ``request_id``).
    """

    def __init__(self, config_source: Optional[ConfigSource] = None, clock: Clock = time.time):
        self._config_source = config_source or ConfigSource()
        self._clock = clock

    def handle(self, exception: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorResponse:
        """Classify, log and plan recovery for a failure.

        Args:
            exception: The failure that occurred
            context: Request context

        Returns:
            ErrorResponse ready to be returned to the caller
        """
        context = context or {}
        classification = self.classify(exception, context)
        self._log(exception, classification, context)
        recovery = self.determine_recovery(classification, context)

        return ErrorResponse(
            error={
                "code": classification.code,
                "category": classification.category.value,
                "severity": classification.severity.value,
                "message": classification.message,
                "user_message": classification.user_message,
                "recovery": recovery.to_dict(),
                "timestamp": utc_now(self._clock).isoformat(),
                "request_id": context.get("request_id"),
            },
            status_code=STATUS_CODES[classification.category],
            metadata=_diagnostics(exception),
        )

    def classify(self, exception: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorClassification:
        """Classify a failure without logging it."""
        context = context or {}
        category = self.categorize(exception)
        severity = self.determine_severity(category, context)
        message = str(exception) or type(exception).__name__

        return ErrorClassification(
            code=_error_code(category, _origin(exception)),
            category=category,
            severity=severity,
            message=message,
            user_message=USER_MESSAGES[category],
            is_retryable=category in RETRYABLE,
            requires_fallback=category in NEEDS_FALLBACK,
        )

    def categorize(self, exception: BaseException) -> ErrorCategory:
        """Category for a failure; tagged failures keep their tag."""
        if isinstance(exception, GovernedError) and exception.category is not None:
            return exception.category

        category = self.categorize_message(str(exception))
        if category is not None:
            return category

        for exception_class, mapped in _TYPE_CATEGORIES:
            if isinstance(exception, exception_class):
                return mapped
        return ErrorCategory.UNKNOWN

    @staticmethod
    def categorize_message(message: str) -> Optional[ErrorCategory]:
        """Category implied by a failure message, if any."""
        lowered = message.lower()
        for needles, category in _MESSAGE_PATTERNS:
            if any(needle in lowered for needle in needles):
                return category
        return None

    def is_clinical(self, context: Dict[str, Any]) -> bool:
        return context.get("task") in self._config_source.current.errors.clinical_tasks

    def determine_severity(self, category: ErrorCategory, context: Dict[str, Any]) -> ErrorSeverity:
        """Severity for a category, escalated one level for clinical tasks."""
        if category == ErrorCategory.SAFETY:
            return ErrorSeverity.CRITICAL

        severity = _BASE_SEVERITY[category]
        if self.is_clinical(context):
            severity = severity.escalate()
        return severity

    def determine_recovery(self, classification: ErrorClassification, context: Optional[Dict[str, Any]] = None) -> RecoveryPlan:
        """Recovery plan for a classified failure.

        Retryable failures start at RETRY; failures with a fallback path
        escalate to FALLBACK; rate limits escalate further to DEGRADE.
        """
        context = context or {}
        strategy = RecoveryStrategy.ABORT
        suggestions: List[str] = []

        if classification.is_retryable:
            strategy = RecoveryStrategy.RETRY
            suggestions.append("Wait a few seconds and retry the request")
            suggestions.append("Consider using exponential backoff for retries")

        if classification.requires_fallback:
            strategy = RecoveryStrategy.FALLBACK
            suggestions.append("Use fallback provider if available")
            suggestions.append("Return cached response if available")

        if classification.category == ErrorCategory.RATE_LIMIT:
            strategy = RecoveryStrategy.DEGRADE
            suggestions.append("Reduce request frequency")
            suggestions.append("Implement request queuing")

        if self.is_clinical(context):
            suggestions.append("Clinical context: Consider manual review if AI is unavailable")

        return RecoveryPlan(
            strategy=strategy,
            max_retries=MAX_RETRIES if classification.is_retryable else 0,
            retry_after_seconds=RETRY_AFTER_SECONDS.get(classification.category, 1),
            suggestions=tuple(suggestions),
        )

    def create_exception(
        self,
        message: str,
        category: ErrorCategory,
        context: Optional[Dict[str, Any]] = None,
    ) -> GovernedError:
        """Build a typed failure for callers that need to raise one."""
        exception_class = _EXCEPTION_CLASSES.get(category, GovernedError)
        if exception_class is GovernedError:
            return GovernedError(message, context, category=category)
        return exception_class(message, context)

    def tag_failure(self, exception: BaseException, context: Optional[Dict[str, Any]] = None) -> GovernedError:
        """Convert a raw failure into a tagged GovernedError.

        Used where the Provider is invoked so that downstream handling never
        has to inspect foreign exception types.
        """
        if isinstance(exception, GovernedError) and exception.category is not None:
            return exception
        merged = dict(getattr(exception, "context", {}) or {})
        merged.update(context or {})
        tagged = self.create_exception(str(exception) or type(exception).__name__, self.categorize(exception), merged)
        tagged.__cause__ = exception
        return tagged

    @staticmethod
    def is_governed_failure(exception: BaseException) -> bool:
        """Whether a failure belongs to this taxonomy or should propagate untouched."""
        return isinstance(
            exception, (GovernedError, openai.APIError, ConnectionError, TimeoutError, json.JSONDecodeError)
        )

    def _log(self, exception: BaseException, classification: ErrorClassification, context: Dict[str, Any]) -> None:
        origin = _origin(exception)
        logger.log(
            _LOG_LEVELS[classification.severity],
            "AI Error [%s]: %s",
            classification.code,
            classification.message,
            extra={
                "error_code": classification.code,
                "category": classification.category.value,
                "severity": classification.severity.value,
                "task": context.get("task"),
                "user_id": context.get("user_id"),
                "patient_id": context.get("patient_id"),
                "exception_class": _qualified_name(origin),
            },
        )


def _origin(exception: BaseException) -> BaseException:
    """The underlying failure behind a tagged wrapper."""
    if isinstance(exception, GovernedError) and exception.__cause__ is not None:
        return exception.__cause__
    return exception


def _qualified_name(exception: BaseException) -> str:
    cls = type(exception)
    return f"{cls.__module__}.{cls.__qualname__}"


def _error_code(category: ErrorCategory, exception: BaseException) -> str:
    prefix = category.value[:3].upper()
    digest = hashlib.md5(f"{_qualified_name(exception)}{exception}".encode()).hexdigest()
    return f"AI_{prefix}_{digest[:6].upper()}"


def _diagnostics(exception: BaseException) -> Dict[str, Any]:
    origin = _origin(exception)
    frames = traceback.extract_tb(origin.__traceback__) if origin.__traceback__ else []
    last = frames[-1] if frames else None
    return {
        "exception_class": _qualified_name(origin),
        "file": last.filename if last else None,
        "line": last.lineno if last else None,
    }

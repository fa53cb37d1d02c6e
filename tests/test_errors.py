"""
Unit tests for failure classification and recovery planning.
"""

import json
import logging
import re

import httpx
import openai
import pytest

from clinical_ai_guard.config.loader import ConfigSource, ErrorPolicyConfig, GovernanceConfig
from clinical_ai_guard.core.errors import (
    ConfigurationError,
    ErrorCategory,
    ErrorClassifier,
    ErrorSeverity,
    GovernedError,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
    RecoveryStrategy,
    SafetyError,
    ValidationFailure,
)
from conftest import FakeClock

REQUEST = httpx.Request("POST", "http://localhost:11434/v1/chat/completions")


class TestCategorization:
    """Test how failures map to categories."""

    def setup_method(self):
        """Set up test environment."""
        self.classifier = ErrorClassifier(clock=FakeClock())

    @pytest.mark.parametrize("message,expected", [
        ("Request timed out after 60s", ErrorCategory.TIMEOUT),
        ("read timeout", ErrorCategory.TIMEOUT),
        ("Rate limit reached for model", ErrorCategory.RATE_LIMIT),
        ("429 Too Many Requests", ErrorCategory.RATE_LIMIT),
        ("Output failed safety screening", ErrorCategory.SAFETY),
        ("Schema validation failed", ErrorCategory.SAFETY),
        ("Model not configured", ErrorCategory.CONFIGURATION),
        ("Something odd happened", ErrorCategory.UNKNOWN),
    ])
    def test_message_patterns(self, message, expected):
        assert self.classifier.categorize(RuntimeError(message)) == expected

    def test_structural_types(self):
        assert self.classifier.categorize(TimeoutError()) == ErrorCategory.TIMEOUT
        assert self.classifier.categorize(ConnectionRefusedError("refused")) == ErrorCategory.PROVIDER
        assert self.classifier.categorize(json.JSONDecodeError("Expecting value", "", 0)) == ErrorCategory.VALIDATION

    def test_openai_errors(self):
        connection = openai.APIConnectionError(request=REQUEST)
        server = openai.InternalServerError(
            "Internal error", response=httpx.Response(500, request=REQUEST), body=None
        )
        auth = openai.AuthenticationError(
            "Invalid API key", response=httpx.Response(401, request=REQUEST), body=None
        )

        assert self.classifier.categorize(connection) == ErrorCategory.PROVIDER
        assert self.classifier.categorize(server) == ErrorCategory.PROVIDER
        assert self.classifier.categorize(auth) == ErrorCategory.CONFIGURATION

    def test_tagged_category_wins_over_message(self):
        assert self.classifier.categorize(SafetyError("timed out while screening")) == ErrorCategory.SAFETY

    def test_untagged_governed_error_is_classified(self):
        assert self.classifier.categorize(GovernedError("rate limit hit")) == ErrorCategory.RATE_LIMIT

    def test_categorize_message_returns_none_without_match(self):
        assert ErrorClassifier.categorize_message("status 500") is None


class TestSeverity:
    """Test severity and clinical escalation."""

    def setup_method(self):
        """Set up test environment."""
        self.classifier = ErrorClassifier(clock=FakeClock())

    def test_base_severities(self):
        context = {"task": "imci_classification"}
        assert self.classifier.determine_severity(ErrorCategory.TIMEOUT, context) == ErrorSeverity.MEDIUM
        assert self.classifier.determine_severity(ErrorCategory.RATE_LIMIT, context) == ErrorSeverity.LOW
        assert self.classifier.determine_severity(ErrorCategory.CONFIGURATION, context) == ErrorSeverity.HIGH

    def test_clinical_tasks_escalate_one_level(self):
        context = {"task": "explain_triage"}
        assert self.classifier.determine_severity(ErrorCategory.TIMEOUT, context) == ErrorSeverity.HIGH
        assert self.classifier.determine_severity(ErrorCategory.VALIDATION, context) == ErrorSeverity.MEDIUM
        assert self.classifier.determine_severity(ErrorCategory.CONFIGURATION, context) == ErrorSeverity.CRITICAL

    def test_safety_always_critical(self):
        assert self.classifier.determine_severity(ErrorCategory.SAFETY, {}) == ErrorSeverity.CRITICAL
        assert self.classifier.determine_severity(ErrorCategory.SAFETY, {"task": "review_treatment"}) == ErrorSeverity.CRITICAL

    def test_clinical_tasks_follow_config(self):
        source = ConfigSource(GovernanceConfig(errors=ErrorPolicyConfig(clinical_tasks=("imci_classification",))))
        classifier = ErrorClassifier(source, clock=FakeClock())

        assert classifier.determine_severity(ErrorCategory.TIMEOUT, {"task": "imci_classification"}) == ErrorSeverity.HIGH
        assert classifier.determine_severity(ErrorCategory.TIMEOUT, {"task": "explain_triage"}) == ErrorSeverity.MEDIUM

    def test_escalate_caps_at_critical(self):
        assert ErrorSeverity.CRITICAL.escalate() == ErrorSeverity.CRITICAL


class TestRecovery:
    """Test recovery planning."""

    def setup_method(self):
        """Set up test environment."""
        self.classifier = ErrorClassifier(clock=FakeClock())

    def _plan(self, exception, task="imci_classification"):
        context = {"task": task}
        return self.classifier.determine_recovery(self.classifier.classify(exception, context), context)

    def test_provider_failure_falls_back(self):
        plan = self._plan(ProviderUnavailable("backend down"))

        assert plan.strategy == RecoveryStrategy.FALLBACK
        assert plan.max_retries == 3
        assert plan.retry_after_seconds == 10

    def test_rate_limit_degrades(self):
        plan = self._plan(ProviderRateLimited("slow down"))

        assert plan.strategy == RecoveryStrategy.DEGRADE
        assert plan.max_retries == 3
        assert plan.retry_after_seconds == 60
        assert "Reduce request frequency" in plan.suggestions

    def test_timeout_falls_back(self):
        plan = self._plan(ProviderTimeout("slow backend"))

        assert plan.strategy == RecoveryStrategy.FALLBACK
        assert plan.retry_after_seconds == 5

    def test_configuration_falls_back_without_retries(self):
        plan = self._plan(ConfigurationError("missing model"))

        assert plan.strategy == RecoveryStrategy.FALLBACK
        assert plan.max_retries == 0
        assert plan.retry_after_seconds == 1

    def test_validation_aborts(self):
        plan = self._plan(ValidationFailure("bad json"))

        assert plan.strategy == RecoveryStrategy.ABORT
        assert plan.max_retries == 0
        assert plan.retry_after_seconds == 1

    def test_clinical_task_suggests_manual_review(self):
        plan = self._plan(ValidationFailure("bad json"), task="review_treatment")
        assert any("manual review" in s for s in plan.suggestions)

        plan = self._plan(ValidationFailure("bad json"), task="imci_classification")
        assert not any("manual review" in s for s in plan.suggestions)


class TestHandle:
    """Test the full handle() response."""

    def setup_method(self):
        """Set up test environment."""
        self.classifier = ErrorClassifier(clock=FakeClock())

    def test_review_treatment_provider_failure(self):
        """Provider failure on a clinical task escalates and falls back."""
        response = self.classifier.handle(
            ProviderUnavailable("backend down"),
            {"task": "review_treatment", "user_id": 7, "request_id": "req-1"},
        )

        error = response.error
        assert response.success is False
        assert response.status_code == 503
        assert error["category"] == "provider"
        assert error["severity"] == "high"
        assert error["recovery"]["strategy"] == "fallback"
        assert error["recovery"]["max_retries"] == 3
        assert error["recovery"]["retry_after_seconds"] == 10
        assert error["request_id"] == "req-1"
        assert error["user_message"] == "The AI service is temporarily unavailable. Please try again."
        assert response.category == "provider"
        assert response.strategy == "fallback"

    def test_error_code_format(self):
        response = self.classifier.handle(ConnectionError("refused"), {})
        assert re.match(r"^AI_PRO_[0-9A-F]{6}$", response.error["code"])

    def test_error_code_is_stable(self):
        first = self.classifier.handle(ConnectionError("refused"), {})
        second = self.classifier.handle(ConnectionError("refused"), {})
        assert first.error["code"] == second.error["code"]

    def test_status_codes(self):
        assert self.classifier.handle(ProviderRateLimited("x"), {}).status_code == 429
        assert self.classifier.handle(ProviderTimeout("x"), {}).status_code == 504
        assert self.classifier.handle(SafetyError("x"), {}).status_code == 422
        assert self.classifier.handle(ValueError("x"), {}).status_code == 500

    def test_public_payload_omits_diagnostics(self):
        try:
            raise ConnectionError("refused")
        except ConnectionError as e:
            response = self.classifier.handle(e, {})

        public = response.to_dict()
        internal = response.to_internal_dict()

        assert "metadata" not in public
        assert public["success"] is False
        assert internal["metadata"]["exception_class"] == "builtins.ConnectionError"
        assert internal["metadata"]["line"] is not None

    def test_log_level_follows_severity(self, caplog):
        with caplog.at_level(logging.INFO, logger="clinical_ai_guard.core.errors"):
            self.classifier.handle(SafetyError("blocked"), {"task": "explain_triage"})
            self.classifier.handle(ProviderRateLimited("slow"), {"task": "imci_classification"})

        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.CRITICAL, logging.INFO]


class TestExceptionHelpers:
    """Test exception creation and call-site tagging."""

    def setup_method(self):
        """Set up test environment."""
        self.classifier = ErrorClassifier(clock=FakeClock())

    def test_create_exception_per_category(self):
        assert isinstance(self.classifier.create_exception("x", ErrorCategory.SAFETY), SafetyError)
        assert isinstance(self.classifier.create_exception("x", ErrorCategory.TIMEOUT), ProviderTimeout)

        unknown = self.classifier.create_exception("x", ErrorCategory.UNKNOWN, {"task": "t"})
        assert type(unknown) is GovernedError
        assert unknown.category == ErrorCategory.UNKNOWN
        assert unknown.context == {"task": "t"}

    def test_tag_failure_keeps_cause(self):
        original = ConnectionError("refused")
        tagged = self.classifier.tag_failure(original, {"task": "explain_triage"})

        assert isinstance(tagged, ProviderUnavailable)
        assert tagged.__cause__ is original
        assert tagged.context["task"] == "explain_triage"

    def test_tag_failure_returns_tagged_errors_unchanged(self):
        error = SafetyError("blocked")
        assert self.classifier.tag_failure(error) is error

    def test_tagged_code_matches_original(self):
        original = ConnectionError("refused")
        tagged = self.classifier.tag_failure(original)

        assert self.classifier.classify(tagged).code == self.classifier.classify(original).code

    def test_is_governed_failure(self):
        assert ErrorClassifier.is_governed_failure(SafetyError("x"))
        assert ErrorClassifier.is_governed_failure(TimeoutError())
        assert ErrorClassifier.is_governed_failure(openai.APIConnectionError(request=REQUEST))
        assert ErrorClassifier.is_governed_failure(json.JSONDecodeError("Expecting value", "<html>", 0))
        assert not ErrorClassifier.is_governed_failure(ValueError("bad input"))
        assert not ErrorClassifier.is_governed_failure(KeyError("x"))

"""
OpenAI-compatible inference provider.

Works against any endpoint that speaks the OpenAI chat completions API,
including Ollama's ``/v1`` endpoint.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ..config.loader import ProviderConfig
from .base import ProviderResult

logger = logging.getLogger(__name__)


class OpenAIProvider:
    """Chat-completions provider.

    Error statuses from the backend come back as failed results. Rate-limit,
    authentication and unknown-model errors, connection failures and timeouts
    are raised so the caller can classify them by type.
    """

    def __init__(self, config: Optional[ProviderConfig] = None):
        """Initialize provider.

        Args:
            config: Endpoint settings (defaults to a local Ollama server)
        """
        self.config = config or ProviderConfig()
        self.model = self.config.model
        self.client = OpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key,
            timeout=self.config.timeout,
        )

    def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        """Generate a completion for a prompt.

        Args:
            prompt: Prompt text (required)
            options: ``model``, ``temperature``, ``max_tokens``, ``top_p``

        Returns:
            ProviderResult with latency and token usage in metadata

        Raises:
            ValueError: If prompt is empty
            openai.RateLimitError, openai.AuthenticationError,
            openai.NotFoundError, openai.APIConnectionError,
            openai.APITimeoutError: Propagated without modification
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        options = options or {}
        model = options.get("model") or self.model
        start = time.perf_counter()

        try:
            completion = self.client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                temperature=options.get("temperature", 0.3),
                max_tokens=options.get("max_tokens", 500),
                top_p=options.get("top_p", 0.9),
            )
        except (openai.RateLimitError, openai.AuthenticationError, openai.NotFoundError):
            raise
        except openai.APIStatusError as e:
            latency_ms = int((time.perf_counter() - start) * 1000)
            logger.error("Provider request failed: status=%s model=%s", e.status_code, model)
            return ProviderResult(
                success=False,
                error=f"Provider request failed with status {e.status_code}",
                metadata={"latency_ms": latency_ms, "model": model},
            )

        latency_ms = int((time.perf_counter() - start) * 1000)
        metadata: Dict[str, Any] = {
            "latency_ms": latency_ms,
            "model": completion.model or model,
            "request_id": completion.id,
        }
        usage = completion.usage
        if usage:
            metadata["prompt_tokens"] = usage.prompt_tokens
            metadata["completion_tokens"] = usage.completion_tokens
            metadata["total_tokens"] = usage.total_tokens

        content = completion.choices[0].message.content if completion.choices else None
        return ProviderResult(success=True, response=content or "", metadata=metadata)

    def is_available(self) -> bool:
        """Whether the endpoint answers a model listing."""
        try:
            self.client.models.list()
        except openai.APIError as e:
            logger.warning("Provider unavailable at %s: %s", self.config.base_url, e)
            return False
        return True

    def list_models(self) -> List[str]:
        """Model ids served by the endpoint; empty if it cannot be reached."""
        try:
            return [model.id for model in self.client.models.list()]
        except openai.APIError as e:
            logger.warning("Could not list models at %s: %s", self.config.base_url, e)
            return []

    def has_model(self, model: str) -> bool:
        return model in self.list_models()

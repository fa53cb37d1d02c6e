"""
Unit tests for SDK layer.

Tests the OpenAI-compatible provider against a mocked client.
"""

from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from clinical_ai_guard.config.loader import ProviderConfig
from clinical_ai_guard.sdk import OpenAIProvider, Provider, ProviderResult

REQUEST = httpx.Request("POST", "http://localhost:11434/v1/chat/completions")


def _completion(content="Green: home care", model="gemma3:4b"):
    completion = Mock()
    completion.id = "chatcmpl-123"
    completion.model = model
    completion.choices = [Mock(message=Mock(content=content))]
    completion.usage = Mock(prompt_tokens=120, completion_tokens=30, total_tokens=150)
    return completion


class TestOpenAIProvider:
    """Test OpenAIProvider behavior."""

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_init_uses_config(self, mock_openai_class):
        """Test client is built from provider config."""
        config = ProviderConfig(base_url="http://ollama:11434/v1", api_key="key", model="medgemma", timeout=30)

        provider = OpenAIProvider(config)

        mock_openai_class.assert_called_once_with(base_url="http://ollama:11434/v1", api_key="key", timeout=30)
        assert provider.model == "medgemma"
        assert isinstance(provider, Provider)

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_generate_success(self, mock_openai_class):
        """Test a successful completion becomes a ProviderResult."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _completion()
        mock_openai_class.return_value = mock_client

        result = OpenAIProvider().generate("Explain triage", {"temperature": 0.1})

        assert isinstance(result, ProviderResult)
        assert result.success is True
        assert result.response == "Green: home care"
        assert result.metadata["model"] == "gemma3:4b"
        assert result.metadata["total_tokens"] == 150
        assert result.metadata["request_id"] == "chatcmpl-123"
        assert result.metadata["latency_ms"] >= 0

        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gemma3:4b"
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 500
        assert kwargs["messages"] == [{"role": "user", "content": "Explain triage"}]

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_generate_model_override(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _completion(model="medgemma")
        mock_openai_class.return_value = mock_client

        OpenAIProvider().generate("Explain", {"model": "medgemma"})

        assert mock_client.chat.completions.create.call_args.kwargs["model"] == "medgemma"

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_empty_prompt_rejected(self, mock_openai_class):
        """Test validation of prompt."""
        with pytest.raises(ValueError, match="prompt is required"):
            OpenAIProvider().generate("   ")

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_error_status_becomes_failed_result(self, mock_openai_class):
        """Test backend error statuses are returned, not raised."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = openai.InternalServerError(
            "model crashed", response=httpx.Response(500, request=REQUEST), body=None
        )
        mock_openai_class.return_value = mock_client

        result = OpenAIProvider().generate("Explain")

        assert result.success is False
        assert result.response is None
        assert result.error == "Provider request failed with status 500"

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_rate_limit_propagates(self, mock_openai_class):
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = openai.RateLimitError(
            "Rate limit reached", response=httpx.Response(429, request=REQUEST), body=None
        )
        mock_openai_class.return_value = mock_client

        with pytest.raises(openai.RateLimitError):
            OpenAIProvider().generate("Explain")

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_connection_error_propagates(self, mock_openai_class):
        """Test transport failures are loud."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)
        mock_openai_class.return_value = mock_client

        with pytest.raises(openai.APIConnectionError):
            OpenAIProvider().generate("Explain")

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_availability_and_models(self, mock_openai_class):
        mock_client = Mock()
        mock_client.models.list.return_value = [Mock(id="gemma3:4b"), Mock(id="medgemma")]
        mock_openai_class.return_value = mock_client

        provider = OpenAIProvider()

        assert provider.is_available() is True
        assert provider.list_models() == ["gemma3:4b", "medgemma"]
        assert provider.has_model("medgemma") is True
        assert provider.has_model("llama3") is False

    @patch('clinical_ai_guard.sdk.openai_client.OpenAI')
    def test_unreachable_endpoint(self, mock_openai_class):
        mock_client = Mock()
        mock_client.models.list.side_effect = openai.APIConnectionError(request=REQUEST)
        mock_openai_class.return_value = mock_client

        provider = OpenAIProvider()

        assert provider.is_available() is False
        assert provider.list_models() == []


class TestProviderResult:
    """Test the result container."""

    def test_to_dict(self):
        result = ProviderResult(success=False, error="boom", metadata={"latency_ms": 3})
        assert result.to_dict() == {
            "success": False, "response": None, "error": "boom", "metadata": {"latency_ms": 3},
        }

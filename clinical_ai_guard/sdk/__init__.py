"""
SDK for Clinical AI Guard.

Provider contract and the OpenAI-compatible provider client.
"""

from .base import Provider, ProviderResult
from .openai_client import OpenAIProvider

__all__ = ["OpenAIProvider", "Provider", "ProviderResult"]

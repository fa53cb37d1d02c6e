"""
Provider contract for inference backends.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@dataclass
class ProviderResult:
    """Outcome of one generation call.

    A backend that answered with an error status returns ``success=False``
    and a message in ``error``; transport failures are raised instead.
    """
    success: bool
    response: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "response": self.response,
            "error": self.error,
            "metadata": dict(self.metadata),
        }


@runtime_checkable
class Provider(Protocol):
    """Anything that can generate text for a prompt."""

    def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> ProviderResult:
        ...

    def is_available(self) -> bool:
        ...

    def list_models(self) -> List[str]:
        ...

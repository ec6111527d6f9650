"""Completion service interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMResponse:
    """Response from an LLM provider."""
    content: str | None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        """Providers report failures as a response with finish_reason 'error'."""
        return self.finish_reason == "error"


class LLMProvider(ABC):
    """
    Abstract base class for completion services.

    Implementations turn a list of chat messages into generated text. Errors
    are reported either by raising or by returning an LLMResponse with
    ``finish_reason == "error"``; callers must handle both.
    """

    def __init__(self, api_key: str | None = None, api_base: str | None = None):
        self.api_key = api_key
        self.api_base = api_base
        self.default_temperature: float = 0.7
        self.default_max_tokens: int = 4096

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """
        Send a chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model identifier (provider-specific).
            max_tokens: Maximum tokens in response (uses provider default if None).
            temperature: Sampling temperature (uses provider default if None).

        Returns:
            LLMResponse with the generated text.
        """
        pass

    @abstractmethod
    def get_default_model(self) -> str:
        """Get the default model for this provider."""
        pass

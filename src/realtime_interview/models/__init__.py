"""
Models module for LLM client abstraction.

Provides a unified interface for the Ollama-served decision and response models.
"""

from realtime_interview.models.llm_client import (
    LLMClient,
    LLMClientBase,
    LLMError,
    LLMResponse,
    Message,
)

__all__ = [
    "LLMClient",
    "LLMClientBase",
    "LLMError",
    "LLMResponse",
    "Message",
]

"""Convenience exports for diff-generating client implementations."""

from .gpt5 import GPT5Client
from .llm_client import (
    DiffRequest,
    LLMClient,
    LLMClientError,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .offline import OfflineClient

__all__ = [
    "DiffRequest",
    "GPT5Client",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "OfflineClient",
]

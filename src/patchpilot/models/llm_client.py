"""Client base class shared by all diff-generating language-model integrations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..prompts import SYSTEM_PROMPT, render_generation_prompt

__all__ = [
    "DiffRequest",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
]

LOGGER = logging.getLogger(__name__)


class LLMClientError(RuntimeError):
    """Base error raised for generation failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns a payload without any text."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries."""


@dataclass(slots=True)
class DiffRequest:
    """Payload sent to the model for one generation call."""

    prompt: str
    context: str
    previous_error: Optional[str] = None
    model: Optional[str] = None
    system_prompt: str = SYSTEM_PROMPT

    def user_message(self) -> str:
        return render_generation_prompt(self.prompt, self.context, self.previous_error)

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the responses API."""
        def _message(role: str, text: str) -> Dict[str, Any]:
            return {"role": role, "content": [{"type": "input_text", "text": text}]}

        return {
            "model": self.model or default_model,
            "input": [_message("system", self.system_prompt), _message("user", self.user_message())],
        }


class LLMClient:
    """Generate candidate diffs, retrying transient transport failures."""

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def generate(self, prompt: str, context: str, previous_error: Optional[str] = None) -> str:
        """Return raw diff text (or the no-changes sentinel) for ``prompt``."""
        return self.invoke(DiffRequest(prompt=prompt, context=context, previous_error=previous_error))

    def invoke(self, request: DiffRequest) -> str:
        last_error: Optional[Exception] = None
        payload = request.to_payload(self._model)
        for attempt in range(1, self._max_attempts + 1):
            try:
                raw = self._raw_invoke(payload)
                if not raw or not raw.strip():
                    raise LLMResponseFormatError("Model returned an empty response.")
                return raw
            except (LLMTransportError, LLMResponseFormatError) as error:
                last_error = error
                LOGGER.warning("Generation attempt %d/%d failed: %s", attempt, self._max_attempts, error)
                if attempt >= self._max_attempts:
                    break
                time.sleep(self._retry_delay)

        raise LLMRetryError(
            f"Failed to generate a diff after {self._max_attempts} attempt(s) for model "
            f"{request.model or self._model}: {last_error}"
        ) from last_error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

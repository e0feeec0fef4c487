"""Production GPT-5 client that speaks the Responses API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Iterable, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["GPT5Client"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class GPT5Client(LLMClient):
    """Send diff requests to the Responses API and return the assistant text.

    ``transport`` replaces the HTTP call; tests pass a function that returns a
    canned response body.  The timeout comes from ``Settings.model_timeout``
    through the caller.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("GPT5_API_KEY") or os.getenv("OPENAI_API_KEY")
        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._http_transport

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            body = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # pragma: no cover - transport implementations vary
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        text = _output_text(body)
        if text is None:
            raise LLMResponseFormatError("GPT-5 response did not contain output text.")
        return text

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        import urllib.error
        import urllib.request

        LOGGER.debug("POST %s model=%s", self._base_url, payload.get("model"))
        request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read().decode("utf-8")
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"GPT-5 request timed out after {self._timeout:g}s.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            detail = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {detail}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach GPT-5 endpoint: {error.reason}") from error


def _output_text(body: str) -> Optional[str]:
    """Return the assistant text of a response body.

    Understands the Responses envelope (``output_text`` or ``output[].content[]``)
    and chat-completion ``choices``; a body that is not JSON is returned as is.
    """

    if not body:
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body
    if not isinstance(data, dict):
        return body

    direct = data.get("output_text")
    if isinstance(direct, str) and direct.strip():
        return direct
    for item in _dicts(data.get("output")):
        for part in _dicts(item.get("content")):
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                return text
    for choice in _dicts(data.get("choices")):
        message = choice.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
    return None


def _dicts(value: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []

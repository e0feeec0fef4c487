"""Generator that never leaves the machine, for dry runs and smoke tests."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

from ..tools.patch import NO_CHANGES_TOKEN
from .llm_client import LLMClient


class OfflineClient(LLMClient):
    """Replays scripted responses, then answers with the no-changes sentinel."""

    def __init__(self, responses: Iterable[str] = ()) -> None:
        super().__init__(model="offline", max_attempts=1, retry_delay=0.0)
        self._responses: List[str] = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.calls.append(payload)
        if self._responses:
            return self._responses.pop(0)
        return NO_CHANGES_TOKEN


__all__ = ["OfflineClient"]

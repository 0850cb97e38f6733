"""
Base LLM Provider
=================
Abstract interface for the LLM used by scoring, analysis and drafting.
Bring your own keys.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..errors import TransientCollaboratorError

log = logging.getLogger("ejendom.provider")


@dataclass
class LLMResponse:
    """Normalized response from any LLM provider."""
    text: str = ""
    finish_reason: str = "stop"
    usage: Dict[str, int] = field(default_factory=dict)
    raw: Any = None


def parse_json_block(text: str) -> Any:
    """Parse a JSON object from model output, tolerating ```json fences and chatter."""
    text = (text or "").strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(text[start:end + 1])


class BaseLLMProvider(ABC):
    """Abstract base for LLM providers."""

    def __init__(self, api_key: str = "", model: str = "", **kwargs):
        self.api_key = api_key
        self.model = model
        self.extra_config = kwargs

    @abstractmethod
    def chat(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 2048,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Send a chat completion request."""
        pass

    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name."""
        pass

    def complete_json(
        self,
        system: str,
        user: str,
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ) -> Any:
        """
        One system + user turn, parsed as JSON.

        Network/API errors become TransientCollaboratorError. A reply that is not
        JSON raises ValueError so callers can fall back to defaults.
        """
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        try:
            response = self.chat(messages, temperature=temperature,
                                 max_tokens=max_tokens, json_mode=True)
        except ImportError:
            raise
        except Exception as e:
            raise TransientCollaboratorError(self.name(), str(e))

        try:
            return parse_json_block(response.text)
        except json.JSONDecodeError as e:
            log.warning(f"{self.name()} returned non-JSON output: {response.text[:200]!r}")
            raise ValueError(f"Unparseable LLM output: {e}")

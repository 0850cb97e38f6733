"""LLM providers. Bring your own keys."""
from .base import BaseLLMProvider, LLMResponse, parse_json_block
from .openai_provider import OpenAIProvider
from .anthropic_provider import AnthropicProvider

__all__ = [
    "BaseLLMProvider", "LLMResponse", "parse_json_block",
    "OpenAIProvider", "AnthropicProvider",
]

"""LLM endpoint adapters and response parsing."""

from .parsing import parse_finding
from .runner import LLMResponse, LLMRunner

__all__ = ["LLMResponse", "LLMRunner", "parse_finding"]

"""Adapter around an OpenAI-compatible chat completions endpoint."""

from __future__ import annotations

import json
import os
import socket
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ..errors import FetchTimeoutError, LLMError, RateLimitError, UpstreamError
from ..models import LLMUsage

_AUTO = object()


@dataclass
class LLMRequest:
    """Represents one inference request."""

    prompt: str
    system: Optional[str]
    model: str
    temperature: Optional[float]
    max_tokens: Optional[int]
    base_url: Optional[str]
    api_key: Optional[str]
    request_timeout: Optional[float]


@dataclass
class LLMResponse:
    """Free-form model text plus the token usage reported by the endpoint."""

    text: str
    usage: LLMUsage = field(default_factory=LLMUsage)


RunnerFn = Callable[[LLMRequest], Union[str, LLMResponse]]


class LLMRunner:
    """Executes prompts against the configured chat completions endpoint."""

    DEFAULT_MODEL = "gpt-4o-mini"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    ENV_MODEL_KEYS = ("REPOAUDIT_LLM_MODEL", "OPENAI_MODEL")
    ENV_BASE_URL_KEYS = ("REPOAUDIT_LLM_BASE_URL", "OPENAI_BASE_URL")
    ENV_API_KEY_KEYS = ("REPOAUDIT_LLM_API_KEY", "OPENAI_API_KEY")

    def __init__(
        self,
        model: str | None = None,
        *,
        base_url: str | None | object = _AUTO,
        temperature: Optional[float] = 0.2,
        max_tokens: Optional[int] = None,
        api_key: str | None | object = _AUTO,
        request_timeout: Optional[float] = 120.0,
        runner: RunnerFn | None = None,
    ) -> None:
        self.model = model or self._first_env_value(self.ENV_MODEL_KEYS) or self.DEFAULT_MODEL
        self.base_url = self._resolve_base_url(base_url)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = (
            self._first_env_value(self.ENV_API_KEY_KEYS) if api_key is _AUTO else api_key
        )
        self.request_timeout = request_timeout
        self._runner: RunnerFn = runner if runner is not None else self._http_runner

    def run(self, prompt: str, *, system: str | None = None) -> LLMResponse:
        """Send the prompt and return the response text with its token usage."""
        request = LLMRequest(
            prompt=prompt,
            system=system,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            base_url=self.base_url,
            api_key=self.api_key,  # type: ignore[arg-type]
            request_timeout=self.request_timeout,
        )
        result = self._runner(request)
        if isinstance(result, LLMResponse):
            return result
        return LLMResponse(text=str(result))

    @staticmethod
    def _http_runner(request: LLMRequest) -> LLMResponse:
        if not request.base_url:
            raise LLMError("HTTP runner requires a base_url to be configured.")
        endpoint = f"{request.base_url}/chat/completions"
        payload: dict[str, object] = {
            "model": request.model,
            "messages": LLMRunner._build_messages(request.system, request.prompt),
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens

        data = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"

        http_request = Request(endpoint, data=data, headers=headers, method="POST")
        timeout = request.request_timeout or 120.0

        try:
            with urlopen(http_request, timeout=timeout) as response:  # type: ignore[arg-type]
                raw = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore") if hasattr(exc, "read") else ""
            message = detail.strip()[:200] or exc.reason
            if exc.code == 429:
                raise RateLimitError(f"LLM endpoint rate limited the request: {message}") from exc
            if exc.code >= 500:
                raise UpstreamError(
                    f"LLM endpoint failed with status {exc.code}: {message}", status=exc.code
                ) from exc
            raise LLMError(f"LLM endpoint rejected the request with status {exc.code}: {message}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise FetchTimeoutError(f"LLM call timed out after {timeout}s") from exc
        except URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise FetchTimeoutError(f"LLM call timed out after {timeout}s") from exc
            raise UpstreamError(f"LLM endpoint unreachable: {exc.reason}") from exc

        try:
            response_payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise LLMError("LLM endpoint returned invalid JSON") from exc

        content = LLMRunner._extract_content(response_payload)
        if not content:
            raise LLMError("LLM endpoint returned an empty response")
        return LLMResponse(text=content.strip(), usage=LLMRunner._extract_usage(response_payload))

    @staticmethod
    def _build_messages(system: str | None, prompt: str) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    @staticmethod
    def _extract_content(payload: object) -> str:
        if not isinstance(payload, dict):
            return ""
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        message = first.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str):
                return content
        text = first.get("text")
        if isinstance(text, str):
            return text
        return ""

    @staticmethod
    def _extract_usage(payload: dict) -> LLMUsage:
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return LLMUsage()
        prompt_tokens = _as_count(usage.get("prompt_tokens"))
        completion_tokens = _as_count(usage.get("completion_tokens"))
        total = _as_count(usage.get("total_tokens")) or prompt_tokens + completion_tokens
        return LLMUsage(
            prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, total_tokens=total
        )

    def _resolve_base_url(self, base_url: str | None | object) -> str | None:
        if base_url is None:
            return None
        if base_url is not _AUTO:
            return str(base_url).rstrip("/")
        env_value = self._first_env_value(self.ENV_BASE_URL_KEYS)
        return (env_value or self.DEFAULT_BASE_URL).rstrip("/")

    @staticmethod
    def _first_env_value(keys: Sequence[str]) -> str | None:
        for key in keys:
            value = os.getenv(key)
            if value:
                return value
        return None


def _as_count(value: object) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) and value >= 0 else 0

"""Source-hosting API client: snapshots, tree listings and per-file content."""

from __future__ import annotations

import base64
import binascii
import json
import socket
import time
from typing import Callable, Dict, Iterable, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from ..errors import (
    AuditError,
    AuthenticationError,
    FetchTimeoutError,
    NotFoundError,
    PrivateRepoError,
    RateLimitError,
    UpstreamError,
    ValidationError,
)
from ..logging import get_logger
from ..retry import call_with_retry
from .urls import TRUSTED_FILE_HOSTS, is_trusted_file_url

DEFAULT_API_URL = "https://api.github.com"
USER_AGENT = "repoaudit"


class SourceHostClient:
    """Thin GitHub REST client with error mapping and retry.

    ``token`` is the transiently decrypted bearer credential for private
    repositories; it is kept only on this instance and never logged.
    ``declared_private`` turns 403/404 answers into ``PrivateRepoError`` so
    callers can prompt for authorization instead of reporting a missing repo.
    """

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        attempts: int = 3,
        initial_delay: float = 2.0,
        declared_private: bool = False,
        trusted_hosts: Iterable[str] = TRUSTED_FILE_HOSTS,
        opener: Callable[..., object] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.attempts = attempts
        self.initial_delay = initial_delay
        self.declared_private = declared_private
        self.trusted_hosts = tuple(trusted_hosts)
        self._opener = opener
        self._sleep = sleep
        self._logger = get_logger("github")

    @property
    def authenticated(self) -> bool:
        return bool(self._token)

    def download_snapshot(self, owner: str, repo: str, ref: str) -> bytes:
        """Download the whole repository at ``ref`` as one zip archive."""
        url = f"{self.api_url}/repos/{owner}/{repo}/zipball/{quote(ref, safe='')}"
        data = self._get(url, repository=f"{owner}/{repo}")
        self._logger.info("Downloaded %.1fKB snapshot of %s/%s@%s", len(data) / 1024, owner, repo, ref)
        return data

    def fetch_tree(self, owner: str, repo: str, ref: str) -> Dict[str, str]:
        """Return ``{path: blob_sha}`` for every file in the recursive tree at ``ref``."""
        url = f"{self.api_url}/repos/{owner}/{repo}/git/trees/{quote(ref, safe='')}?recursive=1"
        payload = self._get_json(url, repository=f"{owner}/{repo}")
        entries = payload.get("tree") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise UpstreamError(f"Unexpected tree payload for {owner}/{repo}@{ref}")
        if payload.get("truncated"):
            self._logger.warning("Tree listing for %s/%s@%s is truncated", owner, repo, ref)
        return {
            str(item["path"]): str(item["sha"])
            for item in entries
            if isinstance(item, dict) and item.get("type") == "blob" and "path" in item and "sha" in item
        }

    def fetch_file(self, owner: str, repo: str, path: str, ref: str) -> bytes:
        """Fetch one file through the contents API."""
        url = (
            f"{self.api_url}/repos/{owner}/{repo}/contents/{quote(path)}"
            f"?ref={quote(ref, safe='')}"
        )
        payload = self._get_json(url, repository=f"{owner}/{repo}")
        return _decode_contents(payload, path)

    def fetch_url(self, url: str, owner: str, repo: str) -> bytes:
        """Fetch a manifest-supplied URL after checking it belongs to ``owner/repo``."""
        if not is_trusted_file_url(url, owner, repo, self.trusted_hosts):
            raise ValidationError(f"Refusing to fetch untrusted URL for {owner}/{repo}")
        data = self._get(url, repository=f"{owner}/{repo}")
        if url.startswith("https://api.github.com/") and "/contents/" in url:
            try:
                payload = json.loads(data.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return data
            return _decode_contents(payload, url)
        return data

    def _get_json(self, url: str, *, repository: str) -> object:
        raw = self._get(url, repository=repository)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamError(f"Source host returned invalid JSON for {url}") from exc

    def _get(self, url: str, *, repository: str) -> bytes:
        return call_with_retry(
            lambda: self._request(url, repository=repository),
            attempts=self.attempts,
            initial_delay=self.initial_delay,
            description=f"GET {url}",
            sleep=self._sleep,
        )

    def _request(self, url: str, *, repository: str) -> bytes:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        request = Request(url, headers=headers, method="GET")
        opener = self._opener or urlopen
        try:
            with opener(request, timeout=self.timeout) as response:  # type: ignore[attr-defined]
                return response.read()
        except HTTPError as exc:
            raise self._map_http_error(exc, repository) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise FetchTimeoutError(f"Timed out after {self.timeout}s fetching {url}") from exc
        except URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise FetchTimeoutError(
                    f"Timed out after {self.timeout}s fetching {url}"
                ) from exc
            raise UpstreamError(f"Source host unreachable: {exc.reason}") from exc

    def _map_http_error(self, exc: HTTPError, repository: str) -> AuditError:
        status = exc.code
        headers: Mapping[str, str] = exc.headers or {}
        if status == 401:
            return AuthenticationError(
                f"Source host rejected the credential for {repository}; reconnect your account"
            )
        if status == 429 or (status == 403 and headers.get("X-RateLimit-Remaining") == "0"):
            return RateLimitError(
                f"Source host rate limit reached while reading {repository}",
                retry_after=_retry_after(headers),
            )
        if status in (403, 404) and (self.declared_private or status == 403):
            return PrivateRepoError(
                f"{repository} is private or requires authorization",
                repository=repository,
            )
        if status == 404:
            return NotFoundError(f"{repository}: resource not found")
        if status >= 500:
            return UpstreamError(f"Source host error {status} for {repository}", status=status)
        return AuditError(f"Unexpected source host status {status} for {repository}")


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("Retry-After")
    if value:
        try:
            return float(value)
        except ValueError:
            return None
    reset = headers.get("X-RateLimit-Reset")
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            return None
    return None


def _decode_contents(payload: object, label: str) -> bytes:
    if not isinstance(payload, dict) or "content" not in payload:
        raise UpstreamError(f"Unexpected contents payload for {label}")
    if payload.get("encoding", "base64") != "base64":
        return str(payload["content"]).encode("utf-8")
    try:
        return base64.b64decode(str(payload["content"]))
    except (binascii.Error, ValueError) as exc:
        raise UpstreamError(f"Could not decode contents of {label}") from exc

"""Builders for manifests, snapshots and fake collaborators used across tests."""

from __future__ import annotations

import io
import json
import threading
import zipfile
from typing import Dict, Iterable, List, Mapping, Optional, Union

from repoaudit.errors import AuditError, NotFoundError
from repoaudit.llm.runner import LLMRequest, LLMRunner
from repoaudit.models import FileEntry, Manifest
from repoaudit.stores.archive_cache import git_blob_sha

REPO_URL = "https://github.com/acme/widgets"


def make_manifest(
    files: Union[Mapping[str, int], Iterable[str]],
    *,
    repo_url: str = REPO_URL,
    ref: str = "main",
    is_private: bool = False,
    credential: Optional[str] = None,
    urls: Optional[Mapping[str, str]] = None,
) -> Manifest:
    """Build a manifest from ``path -> token estimate`` (or bare paths at 100 tokens)."""
    sizes = dict(files) if isinstance(files, Mapping) else {path: 100 for path in files}
    urls = urls or {}
    owner, repo = repo_url.rstrip("/").split("/")[-2:]
    entries = [
        FileEntry(
            path=path,
            byte_size=tokens * 4,
            token_estimate=tokens,
            source_url=urls.get(path),
        )
        for path, tokens in sizes.items()
    ]
    return Manifest(
        repo_url=repo_url,
        owner=owner,
        repo=repo,
        files=entries,
        ref=ref,
        is_private=is_private,
        credential=credential,
    )


def make_snapshot(files: Mapping[str, Union[str, bytes]], *, root: str = "acme-widgets-abc123") -> bytes:
    """Zip ``files`` under a single root folder the way the source host does."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(f"{root}/", b"")
        for path, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            archive.writestr(f"{root}/{path}", data)
    return buffer.getvalue()


def finding_json(
    *,
    local_score: int = 80,
    confidence: float = 0.9,
    issues: Optional[List[Dict[str, object]]] = None,
    **extra: object,
) -> str:
    payload: Dict[str, object] = {
        "localScore": local_score,
        "confidence": confidence,
        "issues": issues or [],
    }
    payload.update(extra)
    return json.dumps(payload)


class FakeHost:
    """In-memory stand-in for ``SourceHostClient``."""

    def __init__(
        self,
        files: Optional[Mapping[str, Union[str, bytes]]] = None,
        *,
        url_contents: Optional[Mapping[str, bytes]] = None,
        errors: Optional[Mapping[str, AuditError]] = None,
    ) -> None:
        self.files: Dict[str, bytes] = {
            path: content.encode("utf-8") if isinstance(content, str) else content
            for path, content in (files or {}).items()
        }
        self.url_contents = dict(url_contents or {})
        self.errors = dict(errors or {})
        self.snapshot_calls: List[str] = []
        self.file_calls: List[str] = []
        self.url_calls: List[str] = []

    def download_snapshot(self, owner: str, repo: str, ref: str) -> bytes:
        self.snapshot_calls.append(f"{owner}/{repo}@{ref}")
        if "snapshot" in self.errors:
            raise self.errors["snapshot"]
        return make_snapshot(self.files)

    def fetch_tree(self, owner: str, repo: str, ref: str) -> Dict[str, str]:
        return {path: git_blob_sha(content) for path, content in self.files.items()}

    def fetch_file(self, owner: str, repo: str, path: str, ref: str) -> bytes:
        self.file_calls.append(path)
        if path in self.errors:
            raise self.errors[path]
        if path not in self.files:
            raise NotFoundError(f"{owner}/{repo}: {path} not found")
        return self.files[path]

    def fetch_url(self, url: str, owner: str, repo: str) -> bytes:
        self.url_calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        return self.url_contents[url]


class ScriptedLLM:
    """Runner callable for ``LLMRunner`` that replays canned responses in order."""

    def __init__(self, *responses: object) -> None:
        self.responses = list(responses) or [finding_json()]
        self.calls: List[LLMRequest] = []
        self._lock = threading.Lock()

    def __call__(self, request: LLMRequest):
        with self._lock:
            self.calls.append(request)
            index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response

    def runner(self) -> LLMRunner:
        return LLMRunner(model="test-model", base_url=None, api_key=None, runner=self)


__all__ = ["FakeHost", "REPO_URL", "ScriptedLLM", "finding_json", "make_manifest", "make_snapshot"]

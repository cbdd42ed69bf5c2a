"""Trusted manifest (preflight record) loading, validation and local scanning."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import ValidationError
from .estimator import estimate_tokens_from_bytes
from .github.urls import TRUSTED_FILE_HOSTS, is_safe_path, is_trusted_file_url, parse_repo_url
from .logging import get_logger
from .models import FileEntry, Manifest
from .stores.archive_cache import NOISE_DIRS

MAX_MANIFEST_FILES = 10_000
MAX_FILE_BYTES = 50 * 1024 * 1024

SCAN_EXCLUDED_DIRS = NOISE_DIRS | {".repoaudit"}

_LOGGER = get_logger("manifest")


def manifest_from_dict(payload: Mapping[str, Any]) -> Manifest:
    """Build and validate a manifest from its JSON representation."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Manifest must be a JSON object")

    repo_url = payload.get("repo_url") or payload.get("repoUrl")
    if not isinstance(repo_url, str):
        raise ValidationError("Manifest is missing repo_url")
    owner, repo = parse_repo_url(repo_url)

    raw_files = payload.get("files")
    if raw_files is None:
        raw_files = payload.get("repo_map")
    if not isinstance(raw_files, list) or not raw_files:
        raise ValidationError("files must be a non-empty array")
    if len(raw_files) > MAX_MANIFEST_FILES:
        raise ValidationError(f"Too many files (max {MAX_MANIFEST_FILES:,})")

    files = [_file_entry(index, item) for index, item in enumerate(raw_files)]
    manifest = Manifest(
        repo_url=repo_url,
        owner=owner,
        repo=repo,
        files=files,
        ref=str(payload.get("ref") or payload.get("default_branch") or "main"),
        is_private=bool(payload.get("is_private", False)),
        credential=payload.get("credential") or None,
        expires_at=_parse_timestamp(payload.get("expires_at")),
    )
    validate_manifest(manifest)
    return manifest


def manifest_to_dict(manifest: Manifest) -> Dict[str, Any]:
    return {
        "repo_url": manifest.repo_url,
        "owner": manifest.owner,
        "repo": manifest.repo,
        "ref": manifest.ref,
        "is_private": manifest.is_private,
        "credential": manifest.credential,
        "expires_at": manifest.expires_at.isoformat() if manifest.expires_at else None,
        "files": [
            {
                "path": entry.path,
                "size": entry.byte_size,
                "tokens": entry.token_estimate,
                **({"url": entry.source_url} if entry.source_url else {}),
            }
            for entry in manifest.files
        ],
    }


def validate_manifest(
    manifest: Manifest, *, trusted_hosts: Iterable[str] = TRUSTED_FILE_HOSTS
) -> None:
    """Reject duplicate or unsafe paths and URLs that point outside the declared repository."""
    seen = set()
    for index, entry in enumerate(manifest.files):
        if entry.path in seen:
            raise ValidationError(f"Duplicate file path at index {index}: {entry.path}")
        seen.add(entry.path)
        if entry.source_url and not is_trusted_file_url(
            entry.source_url, manifest.owner, manifest.repo, trusted_hosts
        ):
            raise ValidationError(
                f"File URL at index {index} does not match declared repository "
                f"{manifest.repo_id}"
            )


def ensure_not_expired(manifest: Manifest, *, now: Optional[datetime] = None) -> None:
    if manifest.expires_at is None:
        return
    current = now or datetime.now(UTC)
    expires = manifest.expires_at
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=UTC)
    if current >= expires:
        raise ValidationError(
            f"Preflight for {manifest.repo_id} expired at {expires.isoformat()}; refresh it"
        )


def load_manifest(path: Path) -> Manifest:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(f"Manifest not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Manifest {path} is not valid JSON: {exc}") from exc
    return manifest_from_dict(payload)


def save_manifest(manifest: Manifest, path: Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(manifest_to_dict(manifest), indent=2), encoding="utf-8")
    return target


def scan_directory(root: Path, repo_url: str, *, ref: str = "main") -> Manifest:
    """Walk a local checkout and produce a manifest of its files."""
    root_path = Path(root).expanduser().resolve()
    if not root_path.is_dir():
        raise ValidationError(f"Repository path is not a directory: {root}")
    owner, repo = parse_repo_url(repo_url)

    files: List[FileEntry] = []
    for path in _iter_files(root_path):
        rel_path = path.relative_to(root_path).as_posix()
        size = path.stat().st_size
        files.append(
            FileEntry(path=rel_path, byte_size=size, token_estimate=estimate_tokens_from_bytes(size))
        )
    files.sort(key=lambda entry: entry.path)
    _LOGGER.info("Scanned %d files under %s", len(files), root_path)
    return Manifest(repo_url=repo_url, owner=owner, repo=repo, files=files, ref=ref)


def _iter_files(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in SCAN_EXCLUDED_DIRS)
        current = Path(dirpath)
        for filename in filenames:
            yield current / filename


def _file_entry(index: int, item: Any) -> FileEntry:
    if not isinstance(item, Mapping):
        raise ValidationError(f"Invalid file at index {index}: must be an object")
    path = item.get("path")
    if not isinstance(path, str) or not is_safe_path(path):
        raise ValidationError(f"Invalid file path at index {index}")
    size = item.get("size", 0)
    if isinstance(size, bool) or not isinstance(size, int) or not 0 <= size <= MAX_FILE_BYTES:
        raise ValidationError(f"Invalid file size at index {index}: must be 0-50MB")
    tokens = item.get("tokens")
    if not isinstance(tokens, int) or isinstance(tokens, bool) or tokens < 0:
        tokens = estimate_tokens_from_bytes(size)
    url = item.get("url")
    if url is not None and not isinstance(url, str):
        raise ValidationError(f"File at index {index} has invalid URL type")
    return FileEntry(path=path, byte_size=size, token_estimate=tokens, source_url=url or None)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError("expires_at must be an ISO-8601 timestamp")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"Invalid expires_at timestamp: {value}") from exc

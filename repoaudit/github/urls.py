"""Repository URL parsing and file-URL trust checks."""

from __future__ import annotations

import re
from typing import Iterable, Tuple
from urllib.parse import unquote, urlparse

from ..errors import ValidationError

API_HOST = "api.github.com"
TRUSTED_FILE_HOSTS = ("raw.githubusercontent.com", API_HOST)

_OWNER_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38}$")
_REPO_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,100}$")
_SSH_PATTERN = re.compile(r"^git@github\.com:(?P<path>.+)$")
_SUSPICIOUS_PATH_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
MAX_PATH_LENGTH = 1000


def parse_repo_url(value: str) -> Tuple[str, str]:
    """Return ``(owner, repo)`` from a GitHub URL, SSH remote, or ``owner/repo`` string."""
    text = (value or "").strip()
    if not text:
        raise ValidationError("Repository URL is required")

    ssh = _SSH_PATTERN.match(text)
    if ssh:
        path = ssh.group("path")
    elif "://" in text:
        parsed = urlparse(text)
        if parsed.hostname not in {"github.com", "www.github.com"}:
            raise ValidationError(
                "Invalid repository URL format. Must be a valid GitHub.com URL."
            )
        path = parsed.path
    else:
        path = text

    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        raise ValidationError(f"Could not extract owner/repo from '{value}'")
    owner, repo = parts[0], re.sub(r"\.git$", "", parts[1])
    if not _OWNER_PATTERN.match(owner) or not _REPO_PATTERN.match(repo):
        raise ValidationError(f"Invalid repository identity '{owner}/{repo}'")
    return owner, repo


def is_safe_path(path: str) -> bool:
    """Reject traversal, absolute paths and control characters in manifest paths."""
    if not path or len(path) > MAX_PATH_LENGTH:
        return False
    if path.startswith(("/", "\\")) or "../" in path or "..\\" in path:
        return False
    return not _SUSPICIOUS_PATH_CHARS.search(path)


def is_trusted_file_url(
    url: str,
    owner: str,
    repo: str,
    hosts: Iterable[str] = TRUSTED_FILE_HOSTS,
) -> bool:
    """True only for https URLs on a trusted host whose path starts at ``owner/repo``.

    ``api.github.com`` paths must begin with ``repos/<owner>/<repo>``; every
    other trusted host must begin with ``<owner>/<repo>``. Dot segments are
    rejected outright.
    """
    parsed = urlparse(url)
    if parsed.scheme != "https" or parsed.hostname not in set(hosts):
        return False
    segments = [unquote(part).lower() for part in parsed.path.split("/")[1:]]
    if any(part in {".", ".."} for part in segments):
        return False
    expected = [owner.lower(), repo.lower()]
    if parsed.hostname == API_HOST:
        expected.insert(0, "repos")
    return segments[: len(expected)] == expected

"""Task executor: validate a chunk against the manifest, fetch it, and ask the LLM."""

from __future__ import annotations

import re
import time
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Sequence, Tuple

from .errors import (
    AllFetchesFailedError,
    AuditError,
    FileFetchFailure,
    MissingInstructionError,
    NoValidFilesError,
)
from .estimator import estimate_tokens_from_text
from .llm.parsing import parse_finding
from .llm.runner import LLMResponse, LLMRunner
from .logging import get_logger
from .models import Manifest, TaskResult, WorkerTask
from .prompting.builder import PromptBuilder
from .retry import call_with_retry

if TYPE_CHECKING:  # pragma: no cover
    from .github.client import SourceHostClient
    from .stores.archive_cache import RepoArchiveCache

_GLOB_CHARS = ("*", "?")


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    parts: List[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(parts) + "$")


def expand_targets(patterns: Iterable[str], known_paths: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Resolve exact paths and glob patterns against ``known_paths`` only.

    Returns ``(accepted, rejected)``; accepted paths are de-duplicated in the
    order they were first matched. A pattern that matches nothing is rejected.
    """
    known = set(known_paths)
    accepted: List[str] = []
    seen = set()
    rejected: List[str] = []
    for pattern in patterns:
        if any(char in pattern for char in _GLOB_CHARS):
            regex = _glob_to_regex(pattern)
            matches = [path for path in known_paths if regex.match(path)]
        else:
            matches = [pattern] if pattern in known else []
        if not matches:
            rejected.append(pattern)
            continue
        for path in matches:
            if path not in seen:
                seen.add(path)
                accepted.append(path)
    return accepted, rejected


class TaskExecutor:
    """Stateless worker for one ``WorkerTask``.

    Chunk-level failures come back as ``TaskResult.error``; per-file failures
    are recorded in ``failed_paths``. ``ArchiveStorageFailure`` is the only
    error raised out of ``execute``.
    """

    def __init__(
        self,
        llm: LLMRunner,
        prompt_builder: PromptBuilder,
        *,
        archive: "RepoArchiveCache | None" = None,
        host: "SourceHostClient | None" = None,
        llm_attempts: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.prompt_builder = prompt_builder
        self.archive = archive
        self.host = host
        self.llm_attempts = llm_attempts
        self._sleep = sleep
        self._logger = get_logger("executor")

    def execute(self, task: WorkerTask, manifest: Manifest) -> TaskResult:
        valid, rejected = expand_targets(task.target_files, manifest.paths())
        if rejected:
            self._logger.warning(
                "Task %s requested %d paths not in the manifest: %s",
                task.id,
                len(rejected),
                ", ".join(rejected[:5]),
            )
        if not valid:
            self._logger.error("Task %s has no valid files; skipping analysis", task.id)
            return TaskResult(task_id=task.id, error=NoValidFilesError(rejected), rejected_paths=rejected)

        if not task.instruction or not task.instruction.strip():
            self._logger.error("Task %s has no analysis instruction", task.id)
            return TaskResult(
                task_id=task.id, error=MissingInstructionError(task.id), rejected_paths=rejected
            )

        contents, failed = self._fetch(valid, manifest)
        if not contents:
            self._logger.error(
                "Task %s could not fetch any of %d files; aborting before analysis", task.id, len(valid)
            )
            return TaskResult(
                task_id=task.id,
                error=AllFetchesFailedError(valid),
                failed_paths=failed,
                rejected_paths=rejected,
            )

        analyzed = [path for path in valid if path in contents]
        files = [(path, contents[path]) for path in analyzed]
        tokens_analyzed = sum(estimate_tokens_from_text(text) for _, text in files)
        prompt = self.prompt_builder.build(task, files)

        try:
            response: LLMResponse = call_with_retry(
                lambda: self.llm.run(prompt.user, system=prompt.system),
                attempts=self.llm_attempts,
                description=f"LLM call for task {task.id}",
                sleep=self._sleep,
            )
        except AuditError as exc:
            self._logger.error("Task %s LLM call failed: %s", task.id, exc)
            return TaskResult(
                task_id=task.id,
                error=exc,
                analyzed_paths=analyzed,
                failed_paths=failed,
                rejected_paths=rejected,
            )

        finding = parse_finding(response.text, task.id, tokens_analyzed)
        return TaskResult(
            task_id=task.id,
            finding=finding,
            usage=response.usage,
            analyzed_paths=analyzed,
            failed_paths=failed,
            rejected_paths=rejected,
        )

    def _fetch(self, paths: Sequence[str], manifest: Manifest) -> Tuple[Dict[str, str], List[str]]:
        """Fetch by manifest URL first, then from the archive, then by path."""
        raw: Dict[str, bytes] = {}
        failures: Dict[str, FileFetchFailure] = {}

        if self.host is not None:
            for path in paths:
                entry = manifest.entry(path)
                if entry is None or not entry.source_url:
                    continue
                try:
                    raw[path] = self.host.fetch_url(entry.source_url, manifest.owner, manifest.repo)
                except AuditError as exc:
                    self._logger.warning("URL fetch failed for %s: %s; falling back to path", path, exc)

        remaining = [path for path in paths if path not in raw]
        if remaining and self.archive is not None and self.archive.has_archive(manifest.repo_id):
            raw.update(self.archive.read_files(manifest.repo_id, remaining))
            remaining = [path for path in paths if path not in raw]

        for path in remaining:
            if self.host is None:
                failures[path] = FileFetchFailure(path, "no archive entry and no source host client")
                continue
            try:
                raw[path] = self.host.fetch_file(manifest.owner, manifest.repo, path, manifest.ref)
            except AuditError as exc:
                failures[path] = FileFetchFailure(path, exc.message)

        contents: Dict[str, str] = {}
        for path in paths:
            if path in failures:
                continue
            text = raw.get(path, b"").decode("utf-8", errors="replace")
            if not text.strip():
                failures[path] = FileFetchFailure(path, "empty content")
                continue
            contents[path] = text

        for failure in failures.values():
            self._logger.warning("%s", failure.message)
        return contents, [path for path in paths if path in failures]

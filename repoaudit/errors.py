"""Exception taxonomy shared by the audit pipeline."""

from __future__ import annotations

from typing import Optional, Sequence


class AuditError(RuntimeError):
    """Base class for every error raised by repoaudit."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AuditError):
    """Malformed input; retrying the same request will not help."""

    code = "invalid_request"


class ConfigError(AuditError):
    """Raised when the configuration file cannot be parsed."""

    code = "config_error"


class AuthenticationError(AuditError):
    """The credential is missing, expired, or rejected by the source host."""

    code = "unauthorized"


class PrivateRepoError(AuditError):
    """The repository exists but cannot be read without an elevated credential."""

    code = "private_repo"

    def __init__(self, message: str, *, repository: str | None = None) -> None:
        super().__init__(message)
        self.repository = repository


class NotFoundError(AuditError):
    """The repository, ref, or file does not exist on the source host."""

    code = "not_found"


class RateLimitError(AuditError):
    """The source host or LLM endpoint throttled the request."""

    code = "rate_limited"
    retryable = True

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class FetchTimeoutError(AuditError):
    """A network call exceeded its deadline."""

    code = "timeout"
    retryable = True


class UpstreamError(AuditError):
    """Transient 5xx-class failure from a collaborator."""

    code = "upstream_error"
    retryable = True

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class FileFetchFailure(AuditError):
    """Content for one file could not be retrieved."""

    code = "file_fetch_failed"

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to fetch {path}: {reason}")
        self.path = path
        self.reason = reason


class NoValidFilesError(AuditError):
    """None of a task's target files exist in the trusted manifest."""

    code = "no_valid_files"

    def __init__(self, rejected: Sequence[str]) -> None:
        preview = ", ".join(list(rejected)[:3])
        if len(rejected) > 3:
            preview += "..."
        detail = f": {preview}" if preview else ""
        super().__init__(f"The requested files do not exist in this repository{detail}")
        self.rejected = list(rejected)


class AllFetchesFailedError(AuditError):
    """Every file fetch in a chunk failed, so no analysis can be grounded."""

    code = "all_fetches_failed"

    def __init__(self, attempted: Sequence[str]) -> None:
        super().__init__(
            f"Could not retrieve any file content for the {len(attempted)} requested files. "
            "This may indicate an authentication issue for private repositories."
        )
        self.attempted = list(attempted)


class MissingInstructionError(AuditError):
    """A task reached the executor without analysis instructions."""

    code = "missing_instruction"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} has no analysis instruction")
        self.task_id = task_id


class ArchiveStorageFailure(AuditError):
    """The repository archive could not be built, persisted, or read back."""

    code = "archive_storage_failure"


class LLMError(AuditError):
    """The LLM endpoint failed to produce a response."""

    code = "llm_error"


__all__ = [
    "AllFetchesFailedError",
    "ArchiveStorageFailure",
    "AuditError",
    "AuthenticationError",
    "ConfigError",
    "FetchTimeoutError",
    "FileFetchFailure",
    "LLMError",
    "MissingInstructionError",
    "NoValidFilesError",
    "NotFoundError",
    "PrivateRepoError",
    "RateLimitError",
    "UpstreamError",
    "ValidationError",
]

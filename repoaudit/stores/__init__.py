"""Persistence for repository archives and audit reports."""

from .archive_cache import RepoArchiveCache
from .archive_store import ArchiveStore
from .report_store import ReportStore

__all__ = ["ArchiveStore", "RepoArchiveCache", "ReportStore"]

"""Source-hosting API client and repository URL helpers."""

from .client import SourceHostClient
from .urls import is_trusted_file_url, parse_repo_url

__all__ = ["SourceHostClient", "is_trusted_file_url", "parse_repo_url"]

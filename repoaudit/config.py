"""Configuration loading for repoaudit (.repoaudit.yml)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from .errors import ConfigError

CONFIG_FILENAME = ".repoaudit.yml"

DEFAULT_TRUSTED_HOSTS = ["raw.githubusercontent.com", "api.github.com", "github.com"]


@dataclass
class LLMConfig:
    """LLM runtime settings from .repoaudit.yml."""

    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    temperature: float = 0.2
    max_tokens: Optional[int] = None
    request_timeout: float = 120.0


@dataclass
class PlannerConfig:
    max_tokens_per_chunk: int = 500_000
    min_tokens_to_merge: int = 50_000


@dataclass
class ExecutorConfig:
    """Worker pool bounds and per-call deadlines."""

    max_workers: int = 4
    chunk_timeout: float = 300.0
    fetch_timeout: float = 30.0
    retry_attempts: int = 3


@dataclass
class ArchiveConfig:
    path: Path = Path(".repoaudit/archives.sqlite3")


@dataclass
class GitHubConfig:
    api_url: str = "https://api.github.com"
    trusted_hosts: List[str] = field(default_factory=lambda: list(DEFAULT_TRUSTED_HOSTS))


@dataclass
class VaultConfig:
    secret_env: str = "REPOAUDIT_TOKEN_SECRET"


@dataclass
class ReportsConfig:
    dir: Path = Path(".repoaudit/reports")


@dataclass
class AuditConfig:
    """Represents the high-level settings defined in .repoaudit.yml."""

    root: Path
    llm: LLMConfig = field(default_factory=LLMConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    reports: ReportsConfig = field(default_factory=ReportsConfig)

    @property
    def archive_path(self) -> Path:
        return _under_root(self.root, self.archive.path)

    @property
    def reports_dir(self) -> Path:
        return _under_root(self.root, self.reports.dir)


def load_config(config_path: Path, *, env: Optional[Mapping[str, str]] = None) -> AuditConfig:
    """Load configuration from disk, then apply environment overrides."""
    config_file = _resolve_config_path(config_path)
    root = config_file.parent.resolve()
    environ = os.environ if env is None else env

    if not config_file.exists():
        config = AuditConfig(root=root)
        _apply_env_overrides(config.llm, environ)
        return config

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    llm = LLMConfig()
    llm_data = _as_dict(data.get("llm"))
    if llm_data:
        llm.model = _as_str(llm_data.get("model"))
        llm.base_url = _as_str(llm_data.get("base_url"))
        llm.api_key = _as_str(llm_data.get("api_key"))
        llm.max_tokens = _as_int(llm_data.get("max_tokens"))
        llm.temperature = _or_default(_as_float(llm_data.get("temperature")), llm.temperature)
        llm.request_timeout = _or_default(
            _as_float(llm_data.get("request_timeout")), llm.request_timeout
        )
    _apply_env_overrides(llm, environ)

    planner = PlannerConfig()
    planner_data = _as_dict(data.get("planner"))
    if planner_data:
        planner.max_tokens_per_chunk = _positive_int(
            planner_data, "max_tokens_per_chunk", planner.max_tokens_per_chunk
        )
        planner.min_tokens_to_merge = _positive_int(
            planner_data, "min_tokens_to_merge", planner.min_tokens_to_merge
        )

    executor = ExecutorConfig()
    executor_data = _as_dict(data.get("executor"))
    if executor_data:
        executor.max_workers = _positive_int(executor_data, "max_workers", executor.max_workers)
        executor.retry_attempts = _positive_int(
            executor_data, "retry_attempts", executor.retry_attempts
        )
        executor.chunk_timeout = _or_default(
            _as_float(executor_data.get("chunk_timeout")), executor.chunk_timeout
        )
        executor.fetch_timeout = _or_default(
            _as_float(executor_data.get("fetch_timeout")), executor.fetch_timeout
        )

    archive = ArchiveConfig()
    archive_path = _as_str(_as_dict(data.get("archive")).get("path"))
    if archive_path:
        archive.path = Path(archive_path)

    github = GitHubConfig()
    github_data = _as_dict(data.get("github"))
    if github_data:
        github.api_url = (_as_str(github_data.get("api_url")) or github.api_url).rstrip("/")
        hosts = _as_str_list(github_data.get("trusted_hosts"))
        if hosts:
            github.trusted_hosts = hosts

    vault = VaultConfig()
    secret_env = _as_str(_as_dict(data.get("vault")).get("secret_env"))
    if secret_env:
        vault.secret_env = secret_env

    reports = ReportsConfig()
    reports_dir = _as_str(_as_dict(data.get("reports")).get("dir"))
    if reports_dir:
        reports.dir = Path(reports_dir)

    return AuditConfig(
        root=root,
        llm=llm,
        planner=planner,
        executor=executor,
        archive=archive,
        github=github,
        vault=vault,
        reports=reports,
    )


def _apply_env_overrides(llm: LLMConfig, environ: Mapping[str, str]) -> None:
    for attr, suffix in (("model", "MODEL"), ("base_url", "BASE_URL"), ("api_key", "API_KEY")):
        value = environ.get(f"REPOAUDIT_LLM_{suffix}") or environ.get(f"OPENAI_{suffix}")
        if value:
            setattr(llm, attr, value)


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    if config_path.name != CONFIG_FILENAME:
        return (config_path.parent / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded if loaded is not None else {}


def _under_root(root: Path, path: Path) -> Path:
    return path if path.is_absolute() else root / path


def _positive_int(data: Dict[str, Any], key: str, default: int) -> int:
    value = _as_int(data.get(key))
    if value is None:
        return default
    if value <= 0:
        raise ConfigError(f"{key} must be a positive integer, got {value}")
    return value


def _or_default(value: Optional[float], default: float) -> float:
    return default if value is None else value


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float, bool)) else None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float, bool))]
    return []

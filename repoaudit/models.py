"""Core data models shared across repoaudit components."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import AuditError

SEVERITY_ORDER: Dict[str, int] = {"critical": 0, "warning": 1, "info": 2}
RISK_ORDER: Dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}


@dataclass(frozen=True)
class FileEntry:
    """One file of the trusted manifest."""

    path: str
    byte_size: int
    token_estimate: int
    source_url: Optional[str] = None


@dataclass
class Chunk:
    """Token-bounded group of files analysed by a single worker task."""

    id: str
    name: str
    files: List[FileEntry]
    total_tokens: int
    priority: int

    @property
    def paths(self) -> List[str]:
        return [entry.path for entry in self.files]


@dataclass
class WorkerTask:
    """Instruction plus target files handed to the task executor.

    ``target_files`` may hold exact paths or glob patterns; both are resolved
    against the manifest only. The ``summarizing`` task is the one asked to
    report the per-run verdict fields.
    """

    id: str
    role: str
    instruction: str
    target_files: List[str]
    summarizing: bool = False


@dataclass
class Issue:
    """Single problem reported by a worker."""

    id: str
    severity: str
    category: str
    title: str
    description: str
    file: str
    line: Optional[int] = None
    bad_code: Optional[str] = None
    fixed_code: Optional[str] = None
    suggestion: Optional[str] = None


@dataclass
class AppMap:
    """Lightweight project-structure summary derived by workers.

    List fields default to empty. ``directory_count`` and ``file_count`` default
    to 0. The categorical fields default to ``None`` meaning "not reported"; the
    aggregator substitutes ``complexity="medium"``, ``testing_approach="minimal"``
    and ``config_approach="centralized"`` when no worker reports a value.
    """

    languages: List[str] = field(default_factory=list)
    frameworks: List[str] = field(default_factory=list)
    directory_count: int = 0
    file_count: int = 0
    complexity: Optional[str] = None
    key_files: List[str] = field(default_factory=list)
    architecture_patterns: List[str] = field(default_factory=list)
    testing_approach: Optional[str] = None
    config_approach: Optional[str] = None


@dataclass
class WorkerFinding:
    """Structured output of one worker.

    Defaults describe a worker that reported nothing: empty collections, a
    neutral ``local_score`` of 50 and ``confidence`` of 0.5. The per-run
    verdict fields (``risk_level``, ``production_ready``, ``overall_verdict``,
    ``category_assessments``) stay ``None`` unless the worker populated them.
    ``health_score`` is the worker's self-reported score, used only as a
    fallback baseline. ``tokens_analyzed`` counts fetched content only.
    """

    task_id: str
    issues: List[Issue] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    cross_file_flags: List[str] = field(default_factory=list)
    uncertainties: List[str] = field(default_factory=list)
    suspicious_files: List[str] = field(default_factory=list)
    local_score: int = 50
    confidence: float = 0.5
    tokens_analyzed: int = 0
    app_map: AppMap = field(default_factory=AppMap)
    risk_level: Optional[str] = None
    production_ready: Optional[bool] = None
    overall_verdict: Optional[str] = None
    category_assessments: Optional[Dict[str, Any]] = None
    health_score: Optional[int] = None


@dataclass
class LLMUsage:
    """Token accounting reported by the LLM endpoint."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class TaskResult:
    """Outcome of one executor invocation.

    Exactly one of ``finding`` and ``error`` is set.
    """

    task_id: str
    finding: Optional[WorkerFinding] = None
    error: Optional[AuditError] = None
    usage: LLMUsage = field(default_factory=LLMUsage)
    analyzed_paths: List[str] = field(default_factory=list)
    failed_paths: List[str] = field(default_factory=list)
    rejected_paths: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.finding is not None

    @property
    def token_usage(self) -> int:
        return self.usage.total_tokens


@dataclass
class WorkerStats:
    total_chunks: int
    total_tokens_analyzed: int
    avg_confidence: float


@dataclass
class SynthesisResult:
    """Deduplicated, scored outcome of all worker findings."""

    health_score: int
    summary: str
    issues: List[Issue]
    worker_stats: WorkerStats
    cross_file_flags: List[str]
    uncertainties: List[str]


@dataclass
class ComplexityFingerprint:
    """Size and composition metrics of a manifest used for cost estimation."""

    file_count: int = 0
    total_bytes: int = 0
    token_estimate: int = 0
    frontend_files: int = 0
    backend_files: int = 0
    test_files: int = 0
    config_files: int = 0
    sql_files: int = 0
    framework_flags: Dict[str, bool] = field(default_factory=dict)
    api_endpoints_estimated: int = 0


@dataclass
class FileIndexEntry:
    size: int
    hash: str
    type: str


@dataclass
class RepoArchive:
    """Canonical compressed snapshot of one repository."""

    repo_id: str
    blob: bytes
    blob_hash: str
    blob_size: int
    file_index: Dict[str, FileIndexEntry]
    repo_name: str = ""
    ref: str = ""
    last_accessed: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Manifest:
    """Trusted preflight record: the only source of truth for which paths exist."""

    repo_url: str
    owner: str
    repo: str
    files: List[FileEntry]
    ref: str = "main"
    is_private: bool = False
    credential: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def repo_id(self) -> str:
        return f"{self.owner}/{self.repo}"

    def paths(self) -> List[str]:
        return [entry.path for entry in self.files]

    def entry(self, path: str) -> Optional[FileEntry]:
        for candidate in self.files:
            if candidate.path == path:
                return candidate
        return None


@dataclass
class AuditReport:
    """Terminal artifact of an audit run, persisted by the caller."""

    repo_id: str
    tier: str
    health_score: int
    summary: str
    issues: List[Issue]
    strengths: List[str]
    weaknesses: List[str]
    worker_stats: WorkerStats
    cross_file_flags: List[str]
    uncertainties: List[str]
    app_map: AppMap
    suspicious_files: List[str] = field(default_factory=list)
    risk_level: Optional[str] = None
    production_ready: Optional[bool] = None
    overall_verdict: Optional[str] = None
    category_assessments: Optional[Dict[str, Any]] = None
    baseline_score: Optional[int] = None
    chunk_count: int = 0
    failed_chunks: List[Dict[str, str]] = field(default_factory=list)
    token_usage: int = 0
    estimated_tokens: Optional[int] = None
    deviation: Optional[Dict[str, Any]] = None
    cancelled: bool = False
    generated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

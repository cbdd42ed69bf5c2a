"""Audit orchestration: plan, fan out to a bounded worker pool, aggregate, synthesize."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .aggregator import ResultsAggregator
from .config import AuditConfig, LLMConfig
from .errors import ArchiveStorageFailure, AuditError, FetchTimeoutError
from .estimator import (
    build_fingerprint,
    check_deviation,
    estimate_tokens,
    max_tokens,
    planner_budget,
    resolve_tier,
)
from .executor import TaskExecutor
from .github.client import SourceHostClient
from .llm.runner import LLMRunner
from .logging import get_logger
from .manifest import ensure_not_expired
from .models import AuditReport, Chunk, ComplexityFingerprint, Manifest, TaskResult, WorkerTask
from .planner import ChunkPlanner
from .prompting.builder import PromptBuilder
from .prompting.constants import TIER_ROLES, default_instruction
from .stores.archive_cache import RepoArchiveCache
from .synthesis import synthesize
from .vault import CredentialVault

_START_POLL_INTERVAL = 0.05


@dataclass
class AuditPlan:
    """Everything decided before the first worker is dispatched."""

    tier: str
    fingerprint: ComplexityFingerprint
    estimated_tokens: int
    max_tokens: int
    chunk_budget: int
    chunks: List[Chunk]
    tasks: List[WorkerTask]


@dataclass
class _Dispatched:
    """A submitted chunk and the moment its worker picked it up."""

    task: WorkerTask
    started: threading.Event = field(default_factory=threading.Event)
    started_at: float = 0.0
    future: Optional[Future] = None


def build_llm_runner(llm_cfg: LLMConfig) -> LLMRunner:
    kwargs: Dict[str, object] = {}
    if llm_cfg.base_url:
        kwargs["base_url"] = llm_cfg.base_url
    if llm_cfg.api_key:
        kwargs["api_key"] = llm_cfg.api_key
    return LLMRunner(
        llm_cfg.model,
        temperature=llm_cfg.temperature,
        max_tokens=llm_cfg.max_tokens,
        request_timeout=llm_cfg.request_timeout,
        **kwargs,  # type: ignore[arg-type]
    )


class AuditOrchestrator:
    """Coordinates one audit run per call to ``run``.

    Chunks are dispatched in priority order to a fixed-size thread pool. A
    chunk that errors, crashes or exceeds ``chunk_timeout`` contributes nothing
    to the report; an archive storage failure aborts the run. ``cancel`` stops
    further dispatches and cancels queued chunks while in-flight chunks finish
    on their own; the report is then built from whatever completed.
    """

    def __init__(
        self,
        config: AuditConfig | None = None,
        *,
        llm_runner: LLMRunner | None = None,
        archive: RepoArchiveCache | None = None,
        host: SourceHostClient | None = None,
        vault: CredentialVault | None = None,
        host_factory: Callable[..., SourceHostClient] = SourceHostClient,
    ) -> None:
        self.config = config or AuditConfig(root=Path.cwd())
        self.archive = archive
        self.logger = get_logger("orchestrator")
        self._llm_runner = llm_runner
        self._host = host
        self._vault = vault
        self._host_factory = host_factory
        self._aggregator = ResultsAggregator()
        self._cancel_event = threading.Event()
        self._futures: List[Future] = []
        self._futures_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation

    def cancel(self) -> None:
        """Stop dispatching new chunks and cancel the ones still queued."""
        self._cancel_event.set()
        with self._futures_lock:
            pending = [future for future in self._futures if future.cancel()]
        if pending:
            self.logger.info("Cancellation requested; %d queued chunks cancelled", len(pending))

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Planning

    def plan(self, manifest: Manifest, tier: str = "shape") -> AuditPlan:
        """Estimate the run and split the manifest into worker tasks."""
        resolved = resolve_tier(tier)
        fingerprint = build_fingerprint(manifest.files)
        estimated = estimate_tokens(resolved, fingerprint)
        budget = planner_budget(
            resolved,
            fingerprint,
            max_tokens_per_chunk=self.config.planner.max_tokens_per_chunk,
            min_tokens_to_merge=self.config.planner.min_tokens_to_merge,
        )
        planner = ChunkPlanner(
            max_tokens_per_chunk=budget,
            min_tokens_to_merge=min(self.config.planner.min_tokens_to_merge, budget),
        )
        chunks = planner.plan(manifest.files)
        tasks = [
            WorkerTask(
                id=chunk.id,
                role=TIER_ROLES[resolved],
                instruction=default_instruction(resolved, chunk.name),
                target_files=chunk.paths,
                summarizing=index == 0,
            )
            for index, chunk in enumerate(chunks)
        ]
        self.logger.info(
            "Planned %d chunks for %s (%s tier, ~%d tokens, budget %d per chunk)",
            len(chunks),
            manifest.repo_id,
            resolved,
            estimated,
            budget,
        )
        return AuditPlan(
            tier=resolved,
            fingerprint=fingerprint,
            estimated_tokens=estimated,
            max_tokens=max_tokens(resolved, fingerprint),
            chunk_budget=budget,
            chunks=chunks,
            tasks=tasks,
        )

    # ------------------------------------------------------------------
    # Execution

    def run(
        self,
        manifest: Manifest,
        tier: str = "shape",
        *,
        declared_tokens: Optional[int] = None,
        prepare_archive: bool = False,
    ) -> AuditReport:
        """Execute a full audit of ``manifest`` and return the terminal report.

        With ``prepare_archive`` the repository archive is populated (or synced
        when one already exists) before any chunk runs; a failure there aborts
        the run. Cancellation state is reset at the start of every run.
        """
        ensure_not_expired(manifest)
        self._cancel_event.clear()
        plan = self.plan(manifest, tier)
        host = self._resolve_host(manifest)

        if prepare_archive:
            self._prepare_archive(manifest, host)

        executor = TaskExecutor(
            self._resolve_llm_runner(),
            PromptBuilder(plan.tier),
            archive=self.archive,
            host=host,
        )
        results = self._dispatch(plan, manifest, executor)

        aggregated = self._aggregator.aggregate(results)
        synthesis = synthesize(aggregated.findings)
        deviation = check_deviation(declared_tokens, plan.estimated_tokens)

        failed_chunks = [
            {
                "chunk_id": result.task_id,
                "code": result.error.code,
                "error": result.error.message,
            }
            for result in results
            if result.error is not None
        ]
        report = AuditReport(
            repo_id=manifest.repo_id,
            tier=plan.tier,
            health_score=synthesis.health_score,
            summary=synthesis.summary,
            issues=synthesis.issues,
            strengths=aggregated.strengths,
            weaknesses=aggregated.weaknesses,
            worker_stats=synthesis.worker_stats,
            cross_file_flags=synthesis.cross_file_flags,
            uncertainties=synthesis.uncertainties,
            app_map=aggregated.app_map,
            suspicious_files=aggregated.suspicious_files,
            risk_level=aggregated.risk_level,
            production_ready=aggregated.production_ready,
            overall_verdict=aggregated.overall_verdict,
            category_assessments=aggregated.category_assessments,
            baseline_score=aggregated.baseline_score,
            chunk_count=len(plan.chunks),
            failed_chunks=failed_chunks,
            token_usage=sum(result.token_usage for result in results),
            estimated_tokens=plan.estimated_tokens,
            deviation=asdict(deviation) if deviation is not None else None,
            cancelled=self.cancelled,
            generated_at=datetime.now(UTC).isoformat(),
        )
        self.logger.info(
            "Audit of %s finished: score %d, %d issues, %d/%d chunks failed%s",
            manifest.repo_id,
            report.health_score,
            len(report.issues),
            len(failed_chunks),
            len(plan.chunks),
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def _dispatch(
        self, plan: AuditPlan, manifest: Manifest, executor: TaskExecutor
    ) -> List[TaskResult]:
        settings = self.config.executor
        pool = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="audit-worker")
        submitted: List[_Dispatched] = []
        try:
            for task in plan.tasks:
                if self._cancel_event.is_set():
                    break
                entry = _Dispatched(task=task)
                entry.future = pool.submit(self._run_chunk, entry, executor, manifest)
                with self._futures_lock:
                    self._futures.append(entry.future)
                if self._cancel_event.is_set():
                    entry.future.cancel()
                submitted.append(entry)

            results: List[TaskResult] = []
            for entry in submitted:
                result = self._collect(entry, settings.chunk_timeout)
                if result is not None:
                    results.append(result)
            return results
        finally:
            with self._futures_lock:
                self._futures.clear()
            pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _run_chunk(entry: _Dispatched, executor: TaskExecutor, manifest: Manifest) -> TaskResult:
        entry.started_at = time.monotonic()
        entry.started.set()
        return executor.execute(entry.task, manifest)

    def _collect(self, entry: _Dispatched, timeout: float) -> Optional[TaskResult]:
        """Wait for one chunk; ``None`` means it was cancelled before starting.

        The timeout counts from the moment a worker picks the chunk up, so
        time spent queued behind other chunks is not charged against it.
        """
        task, future = entry.task, entry.future
        assert future is not None
        while not entry.started.wait(_START_POLL_INTERVAL):
            if future.done():
                break
        if future.cancelled():
            return None
        remaining = max(0.0, timeout - (time.monotonic() - entry.started_at))
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError:
            future.cancel()
            self.logger.error(
                "Chunk %s exceeded %.0fs after %.1fs of running; dropping it",
                task.id,
                timeout,
                time.monotonic() - entry.started_at,
            )
            return TaskResult(
                task_id=task.id,
                error=FetchTimeoutError(f"Chunk {task.id} timed out after {timeout:.0f}s"),
            )
        except ArchiveStorageFailure:
            self._cancel_event.set()
            raise
        except Exception as exc:  # noqa: BLE001
            if future.cancelled():
                return None
            self.logger.error("Chunk %s crashed: %s", task.id, exc)
            return TaskResult(task_id=task.id, error=AuditError(f"Worker crashed: {exc}"))

    # ------------------------------------------------------------------
    # Collaborators

    def _prepare_archive(self, manifest: Manifest, host: SourceHostClient) -> None:
        if self.archive is None:
            raise ArchiveStorageFailure("Archive preparation requested but no archive cache is configured")
        repo_id = manifest.repo_id
        if self.archive.has_archive(repo_id):
            self.archive.sync(repo_id, manifest.owner, manifest.repo, manifest.ref, host=host)
        else:
            self.archive.populate(repo_id, manifest.owner, manifest.repo, manifest.ref, host=host)

    def _resolve_host(self, manifest: Manifest) -> SourceHostClient:
        if self._host is not None:
            return self._host
        return self._host_factory(
            token=self._resolve_token(manifest),
            api_url=self.config.github.api_url,
            timeout=self.config.executor.fetch_timeout,
            attempts=self.config.executor.retry_attempts,
            declared_private=manifest.is_private,
            trusted_hosts=self.config.github.trusted_hosts,
        )

    def _resolve_token(self, manifest: Manifest) -> Optional[str]:
        if not manifest.is_private:
            return None
        if not manifest.credential:
            self.logger.warning(
                "%s is private but its preflight carries no credential; fetching unauthenticated",
                manifest.repo_id,
            )
            return None
        vault = self._vault or CredentialVault.from_env(self.config.vault.secret_env)
        return vault.decrypt(manifest.credential)

    def _resolve_llm_runner(self) -> LLMRunner:
        if self._llm_runner is None:
            self._llm_runner = build_llm_runner(self.config.llm)
        return self._llm_runner


__all__ = ["AuditOrchestrator", "AuditPlan", "build_llm_runner"]

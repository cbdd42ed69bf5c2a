"""Tests for the audit orchestrator."""

from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict

import pytest

from repoaudit.config import AuditConfig
from repoaudit.errors import ArchiveStorageFailure, NotFoundError, ValidationError
from repoaudit.llm.runner import LLMRequest, LLMResponse, LLMRunner
from repoaudit.models import LLMUsage
from repoaudit.orchestrator import AuditOrchestrator, build_llm_runner
from repoaudit.prompting.constants import TIER_ROLES
from repoaudit.stores.archive_cache import RepoArchiveCache
from repoaudit.vault import CredentialVault
from tests._fixtures.builders import FakeHost, ScriptedLLM, finding_json, make_manifest

LAYERED = {
    "src/a.py": 400,
    "src/b.py": 400,
    "src/c.py": 400,
    "lib/x.py": 500,
    "docs/readme.md": 100,
    "tests/t.py": 100,
    "README.md": 50,
}


def _config(tmp_path: Path, *, max_workers: int = 1, chunk_timeout: float = 30.0) -> AuditConfig:
    config = AuditConfig(root=tmp_path)
    config.planner.max_tokens_per_chunk = 1000
    config.planner.min_tokens_to_merge = 300
    config.executor.max_workers = max_workers
    config.executor.chunk_timeout = chunk_timeout
    return config


def _host(**kwargs) -> FakeHost:
    return FakeHost({path: f"# {path}\nvalue = 1\n" for path in LAYERED}, **kwargs)


def _response(score: int = 80, tokens: int = 100, **extra: object) -> LLMResponse:
    return LLMResponse(text=finding_json(local_score=score, **extra), usage=LLMUsage(total_tokens=tokens))


def test_plan_builds_one_task_per_chunk(tmp_path: Path) -> None:
    orchestrator = AuditOrchestrator(_config(tmp_path))

    plan = orchestrator.plan(make_manifest(LAYERED), "ultra")

    assert plan.tier == "security"
    assert [chunk.id for chunk in plan.chunks] == ["src-0", "src-1", "lib", "misc-0"]
    assert [task.id for task in plan.tasks] == ["src-0", "src-1", "lib", "misc-0"]
    assert [task.summarizing for task in plan.tasks] == [True, False, False, False]
    assert {task.role for task in plan.tasks} == {TIER_ROLES["security"]}
    assert "'lib' region" in plan.tasks[2].instruction
    assert plan.tasks[3].target_files == ["docs/readme.md", "tests/t.py", "README.md"]
    assert plan.chunk_budget == 1000
    assert plan.estimated_tokens <= plan.max_tokens


def test_run_aggregates_every_chunk(tmp_path: Path) -> None:
    llm = ScriptedLLM(
        _response(
            60,
            riskLevel="high",
            productionReady=False,
            overallVerdict="Needs work before launch.",
            topStrengths=["Clear module layout"],
        ),
        _response(80, crossFileFlags=["shared config"]),
    )
    host = _host()
    orchestrator = AuditOrchestrator(_config(tmp_path), llm_runner=llm.runner(), host=host)

    report = orchestrator.run(make_manifest(LAYERED), "shape", declared_tokens=1)

    assert report.repo_id == "acme/widgets"
    assert report.tier == "shape"
    assert report.chunk_count == 4
    assert report.failed_chunks == []
    assert report.worker_stats.total_chunks == 4
    assert report.token_usage == 400
    assert report.risk_level == "high"
    assert report.production_ready is False
    assert report.overall_verdict == "Needs work before launch."
    assert report.strengths == ["Clear module layout"]
    assert report.cross_file_flags == ["shared config"]
    assert report.cancelled is False
    assert report.generated_at is not None
    assert report.deviation is not None and report.deviation["flagged"] is True
    assert '"riskLevel"' in llm.calls[0].system
    assert '"riskLevel"' not in llm.calls[1].system
    assert sorted(host.file_calls) == sorted(LAYERED)


def test_failed_chunk_is_reported_and_contributes_nothing(tmp_path: Path) -> None:
    llm = ScriptedLLM(_response(90))
    host = _host(errors={"lib/x.py": NotFoundError("gone")})
    orchestrator = AuditOrchestrator(_config(tmp_path), llm_runner=llm.runner(), host=host)

    report = orchestrator.run(make_manifest(LAYERED))

    assert [(item["chunk_id"], item["code"]) for item in report.failed_chunks] == [
        ("lib", "all_fetches_failed")
    ]
    assert "Could not retrieve any file content" in report.failed_chunks[0]["error"]
    assert report.worker_stats.total_chunks == 3
    assert report.health_score == 90
    assert len(llm.calls) == 3


def test_worker_crash_becomes_chunk_error(tmp_path: Path) -> None:
    llm = ScriptedLLM(RuntimeError("segfault"), _response(70))
    orchestrator = AuditOrchestrator(_config(tmp_path), llm_runner=llm.runner(), host=_host())

    report = orchestrator.run(make_manifest(LAYERED))

    assert report.failed_chunks == [
        {"chunk_id": "src-0", "code": "internal_error", "error": "Worker crashed: segfault"}
    ]
    assert report.worker_stats.total_chunks == 3


class _BrokenArchive:
    def has_archive(self, repo_id: str) -> bool:
        return True

    def read_files(self, repo_id: str, paths) -> Dict[str, bytes]:
        raise ArchiveStorageFailure("archive blob unreadable")


def test_archive_failure_aborts_the_run(tmp_path: Path) -> None:
    orchestrator = AuditOrchestrator(
        _config(tmp_path),
        llm_runner=ScriptedLLM().runner(),
        host=_host(),
        archive=_BrokenArchive(),
    )

    with pytest.raises(ArchiveStorageFailure):
        orchestrator.run(make_manifest(LAYERED))


def test_prepare_archive_requires_a_cache(tmp_path: Path) -> None:
    orchestrator = AuditOrchestrator(_config(tmp_path), llm_runner=ScriptedLLM().runner(), host=_host())

    with pytest.raises(ArchiveStorageFailure):
        orchestrator.run(make_manifest(LAYERED), prepare_archive=True)


def test_prepare_archive_populates_then_syncs(tmp_path: Path, archive_cache: RepoArchiveCache) -> None:
    host = _host()
    orchestrator = AuditOrchestrator(
        _config(tmp_path), llm_runner=ScriptedLLM().runner(), host=host, archive=archive_cache
    )
    manifest = make_manifest(LAYERED)

    orchestrator.run(manifest, prepare_archive=True)
    orchestrator.run(manifest, prepare_archive=True)

    assert host.snapshot_calls == ["acme/widgets@main"]
    assert host.file_calls == []
    assert archive_cache.has_archive("acme/widgets")


def test_cancel_keeps_completed_findings(tmp_path: Path) -> None:
    def runner(request: LLMRequest) -> LLMResponse:
        orchestrator.cancel()
        return _response(75)

    orchestrator = AuditOrchestrator(
        _config(tmp_path),
        llm_runner=LLMRunner(model="test-model", base_url=None, api_key=None, runner=runner),
        host=_host(),
    )

    report = orchestrator.run(make_manifest(LAYERED))

    assert report.cancelled is True
    assert orchestrator.cancelled
    assert report.chunk_count == 4
    assert report.worker_stats.total_chunks == 1
    assert report.health_score == 75
    assert report.failed_chunks == []


def test_slow_chunk_times_out(tmp_path: Path) -> None:
    release = threading.Event()

    def runner(request: LLMRequest) -> LLMResponse:
        release.wait(timeout=5)
        return _response()

    orchestrator = AuditOrchestrator(
        _config(tmp_path, chunk_timeout=0.05),
        llm_runner=LLMRunner(model="test-model", base_url=None, api_key=None, runner=runner),
        host=_host(),
    )
    try:
        report = orchestrator.run(make_manifest({"src/a.py": 100, "README.md": 50}))
    finally:
        release.set()

    assert report.chunk_count == 1
    assert report.failed_chunks[0]["chunk_id"] == "all"
    assert report.failed_chunks[0]["code"] == "timeout"
    assert report.health_score == 50


def test_queued_chunk_timeout_starts_when_a_worker_picks_it_up(tmp_path: Path) -> None:
    calls = []
    lock = threading.Lock()

    def runner(request: LLMRequest) -> LLMResponse:
        with lock:
            calls.append(request)
            first = len(calls) == 1
        if first:
            time.sleep(0.6)
        return _response(70)

    orchestrator = AuditOrchestrator(
        _config(tmp_path, max_workers=1, chunk_timeout=0.2),
        llm_runner=LLMRunner(model="test-model", base_url=None, api_key=None, runner=runner),
        host=_host(),
    )

    report = orchestrator.run(make_manifest(LAYERED))

    assert report.chunk_count == 4
    assert [chunk["chunk_id"] for chunk in report.failed_chunks] == ["src-0"]
    assert report.failed_chunks[0]["code"] == "timeout"
    assert report.worker_stats.total_chunks == 3
    assert report.health_score == 70


def test_expired_manifest_is_rejected(tmp_path: Path) -> None:
    llm = ScriptedLLM()
    manifest = make_manifest(LAYERED)
    manifest.expires_at = datetime(2020, 1, 1, tzinfo=UTC)
    orchestrator = AuditOrchestrator(_config(tmp_path), llm_runner=llm.runner(), host=_host())

    with pytest.raises(ValidationError):
        orchestrator.run(manifest)
    assert llm.calls == []


def test_private_repository_token_is_decrypted_for_the_host(tmp_path: Path) -> None:
    vault = CredentialVault("server-secret")
    captured: Dict[str, object] = {}
    host = _host()

    def host_factory(**kwargs: object) -> FakeHost:
        captured.update(kwargs)
        return host

    config = _config(tmp_path)
    orchestrator = AuditOrchestrator(
        config, llm_runner=ScriptedLLM().runner(), vault=vault, host_factory=host_factory
    )
    manifest = make_manifest(LAYERED, is_private=True, credential=vault.encrypt("gho_private"))

    orchestrator.run(manifest)

    assert captured["token"] == "gho_private"
    assert captured["declared_private"] is True
    assert captured["timeout"] == config.executor.fetch_timeout
    assert captured["attempts"] == config.executor.retry_attempts


def test_private_repository_without_credential_warns(tmp_path: Path, caplog) -> None:
    captured: Dict[str, object] = {}

    def host_factory(**kwargs: object) -> FakeHost:
        captured.update(kwargs)
        return _host()

    orchestrator = AuditOrchestrator(
        _config(tmp_path), llm_runner=ScriptedLLM().runner(), host_factory=host_factory
    )

    with caplog.at_level(logging.WARNING, logger="repoaudit.orchestrator"):
        orchestrator.run(make_manifest(LAYERED, is_private=True))

    assert captured["token"] is None
    assert "carries no credential" in caplog.text


def test_public_repository_never_touches_the_vault(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("REPOAUDIT_TOKEN_SECRET", raising=False)
    captured: Dict[str, object] = {}

    def host_factory(**kwargs: object) -> FakeHost:
        captured.update(kwargs)
        return _host()

    orchestrator = AuditOrchestrator(
        _config(tmp_path), llm_runner=ScriptedLLM().runner(), host_factory=host_factory
    )

    orchestrator.run(make_manifest(LAYERED, credential="ignored"))

    assert captured["token"] is None


def test_build_llm_runner_uses_config(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.llm.model = "audit-model"
    config.llm.base_url = "http://localhost:8080/v1/"
    config.llm.api_key = "sk-test"
    config.llm.max_tokens = 2048

    runner = build_llm_runner(config.llm)

    assert runner.model == "audit-model"
    assert runner.base_url == "http://localhost:8080/v1"
    assert runner.api_key == "sk-test"
    assert runner.max_tokens == 2048

"""Tests for JSON report persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from repoaudit.errors import ValidationError
from repoaudit.models import AppMap, AuditReport, WorkerStats
from repoaudit.stores.report_store import ReportStore, report_filename


def _report(generated_at: str = "2026-10-17T09:30:05.123456+00:00", repo_id: str = "acme/widgets") -> AuditReport:
    return AuditReport(
        repo_id=repo_id,
        tier="security",
        health_score=71,
        summary="Code quality is good.",
        issues=[],
        strengths=["Typed API"],
        weaknesses=[],
        worker_stats=WorkerStats(total_chunks=2, total_tokens_analyzed=900, avg_confidence=0.8),
        cross_file_flags=[],
        uncertainties=[],
        app_map=AppMap(languages=["python"]),
        generated_at=generated_at,
    )


def test_report_filename_is_filesystem_safe() -> None:
    assert report_filename(_report()) == "acme__widgets-security-20261017T093005.123456Z.json"
    assert report_filename(_report(generated_at=None)) == "acme__widgets-security-latest.json"


def test_save_and_load(tmp_path: Path, caplog) -> None:
    store = ReportStore(tmp_path / "reports")

    with caplog.at_level("INFO", logger="repoaudit"):
        path = store.save(_report())

    payload = store.load(path)
    assert payload["health_score"] == 71
    assert payload["app_map"]["languages"] == ["python"]
    assert payload["worker_stats"]["avg_confidence"] == 0.8
    assert "Saved security report for acme/widgets" in caplog.text


def test_load_rejects_missing_or_invalid_files(tmp_path: Path) -> None:
    store = ReportStore(tmp_path)
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "list.json").write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(ValidationError):
        store.load(tmp_path / "absent.json")
    with pytest.raises(ValidationError):
        store.load(tmp_path / "broken.json")
    with pytest.raises(ValidationError):
        store.load(tmp_path / "list.json")


def test_list_and_latest_filter_by_repository(tmp_path: Path) -> None:
    store = ReportStore(tmp_path)
    assert store.list_reports() == []
    assert store.latest("acme/widgets") is None

    store.save(_report(generated_at="2026-10-16T08:00:00+00:00"))
    store.save(_report(generated_at="2026-10-17T08:00:00+00:00"))
    store.save(_report(repo_id="acme/gadgets"))

    assert len(store.list_reports()) == 3
    assert len(store.list_reports("acme/widgets")) == 2
    latest = store.latest("acme/widgets")
    assert latest is not None
    assert latest["generated_at"] == "2026-10-17T08:00:00+00:00"

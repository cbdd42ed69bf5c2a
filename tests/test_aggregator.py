"""Tests for the results aggregator."""

from __future__ import annotations

from repoaudit.aggregator import ResultsAggregator
from repoaudit.errors import AllFetchesFailedError
from repoaudit.models import AppMap, Issue, TaskResult, WorkerFinding


def _issue(title: str, severity: str = "warning", file: str = "src/app.py") -> Issue:
    return Issue(id=title, severity=severity, category="security", title=title, description="", file=file)


def _ok(finding: WorkerFinding) -> TaskResult:
    return TaskResult(task_id=finding.task_id, finding=finding)


def test_errored_results_contribute_nothing() -> None:
    results = [
        _ok(WorkerFinding(task_id="a", issues=[_issue("one")], strengths=["typed"])),
        TaskResult(task_id="b", error=AllFetchesFailedError(["x.py"])),
    ]

    report = ResultsAggregator().aggregate(results)

    assert [finding.task_id for finding in report.findings] == ["a"]
    assert [issue.title for issue in report.issues] == ["one"]
    assert report.strengths == ["typed"]


def test_lists_concatenate_and_top_items_are_capped() -> None:
    results = [
        _ok(
            WorkerFinding(
                task_id="a",
                issues=[_issue("one")],
                strengths=[f"s{index}" for index in range(4)],
                weaknesses=["w0"],
                suspicious_files=["a.py"],
            )
        ),
        _ok(
            WorkerFinding(
                task_id="b",
                issues=[_issue("two"), _issue("one")],
                strengths=["s4", "s5"],
                weaknesses=["w1"],
                suspicious_files=["b.py"],
            )
        ),
    ]

    report = ResultsAggregator().aggregate(results)

    assert [issue.title for issue in report.issues] == ["one", "two", "one"]
    assert report.strengths == ["s0", "s1", "s2", "s3", "s4"]
    assert report.weaknesses == ["w0", "w1"]
    assert report.suspicious_files == ["a.py", "b.py"]


def test_app_maps_union_lists_and_take_max_counts() -> None:
    first = AppMap(languages=["python"], frameworks=["fastapi"], directory_count=3, file_count=10)
    second = AppMap(
        languages=["python", "sql"],
        key_files=["main.py"],
        directory_count=7,
        file_count=4,
        testing_approach="comprehensive",
    )
    results = [
        _ok(WorkerFinding(task_id="a", app_map=first)),
        _ok(WorkerFinding(task_id="b", app_map=second)),
    ]

    app_map = ResultsAggregator().aggregate(results).app_map

    assert app_map.languages == ["python", "sql"]
    assert app_map.frameworks == ["fastapi"]
    assert app_map.key_files == ["main.py"]
    assert app_map.directory_count == 7
    assert app_map.file_count == 10
    assert app_map.testing_approach == "comprehensive"
    assert app_map.complexity == "medium"
    assert app_map.config_approach == "centralized"


def test_most_severe_risk_level_wins() -> None:
    results = [
        _ok(WorkerFinding(task_id="a", risk_level="medium")),
        _ok(WorkerFinding(task_id="b", risk_level="high")),
        _ok(WorkerFinding(task_id="c", risk_level="low")),
    ]

    assert ResultsAggregator().aggregate(results).risk_level == "high"


def test_single_value_fields_take_first_non_null_in_dispatch_order() -> None:
    results = [
        _ok(WorkerFinding(task_id="a")),
        _ok(
            WorkerFinding(
                task_id="b",
                production_ready=False,
                overall_verdict="Needs work",
                category_assessments={"security": "weak"},
            )
        ),
        _ok(
            WorkerFinding(
                task_id="c",
                production_ready=True,
                overall_verdict="Great",
                category_assessments={"security": "strong"},
            )
        ),
    ]

    report = ResultsAggregator().aggregate(results)

    assert report.production_ready is False
    assert report.overall_verdict == "Needs work"
    assert report.category_assessments == {"security": "weak"}


def test_baseline_score_averages_self_reported_health() -> None:
    results = [
        _ok(WorkerFinding(task_id="a", health_score=70)),
        _ok(WorkerFinding(task_id="b", health_score=81)),
        _ok(WorkerFinding(task_id="c")),
    ]

    assert ResultsAggregator().aggregate(results).baseline_score == 76
    assert ResultsAggregator().aggregate([]).baseline_score == 50


def test_baseline_score_rounds_halves_up() -> None:
    results = [
        _ok(WorkerFinding(task_id="a", health_score=70)),
        _ok(WorkerFinding(task_id="b", health_score=75)),
    ]

    assert ResultsAggregator().aggregate(results).baseline_score == 73

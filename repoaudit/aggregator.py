"""Merge raw per-chunk findings into one run-level view."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .estimator import round_half_up
from .logging import get_logger
from .models import RISK_ORDER, AppMap, Issue, TaskResult, WorkerFinding

TOP_ITEMS_LIMIT = 5
DEFAULT_BASELINE_SCORE = 50

DEFAULT_COMPLEXITY = "medium"
DEFAULT_TESTING_APPROACH = "minimal"
DEFAULT_CONFIG_APPROACH = "centralized"


@dataclass
class AggregatedReport:
    """Concatenated findings of one audit run before deduplication and scoring."""

    issues: List[Issue] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    suspicious_files: List[str] = field(default_factory=list)
    app_map: AppMap = field(default_factory=AppMap)
    risk_level: Optional[str] = None
    production_ready: Optional[bool] = None
    overall_verdict: Optional[str] = None
    category_assessments: Optional[Dict[str, Any]] = None
    baseline_score: int = DEFAULT_BASELINE_SCORE
    findings: List[WorkerFinding] = field(default_factory=list)


def _union(target: List[str], values: Iterable[str]) -> None:
    for value in values:
        if value not in target:
            target.append(value)


class ResultsAggregator:
    """Folds findings in dispatch order; errored results contribute nothing."""

    def __init__(self, top_items_limit: int = TOP_ITEMS_LIMIT) -> None:
        self.top_items_limit = top_items_limit
        self._logger = get_logger("aggregator")

    def aggregate(self, results: Sequence[TaskResult]) -> AggregatedReport:
        findings = [result.finding for result in results if result.ok and result.finding is not None]
        report = AggregatedReport(findings=findings)
        strengths: List[str] = []
        weaknesses: List[str] = []
        health_scores: List[int] = []

        for finding in findings:
            report.issues.extend(finding.issues)
            strengths.extend(finding.strengths)
            weaknesses.extend(finding.weaknesses)
            report.suspicious_files.extend(finding.suspicious_files)
            self._merge_app_map(report.app_map, finding.app_map)

            if finding.health_score is not None:
                health_scores.append(finding.health_score)
            if finding.risk_level in RISK_ORDER and (
                report.risk_level is None
                or RISK_ORDER[finding.risk_level] < RISK_ORDER[report.risk_level]
            ):
                report.risk_level = finding.risk_level
            if report.production_ready is None and finding.production_ready is not None:
                report.production_ready = finding.production_ready
            if report.overall_verdict is None and finding.overall_verdict:
                report.overall_verdict = finding.overall_verdict
            if report.category_assessments is None and finding.category_assessments:
                report.category_assessments = finding.category_assessments

        report.strengths = strengths[: self.top_items_limit]
        report.weaknesses = weaknesses[: self.top_items_limit]
        if health_scores:
            report.baseline_score = round_half_up(sum(health_scores) / len(health_scores))

        app_map = report.app_map
        app_map.complexity = app_map.complexity or DEFAULT_COMPLEXITY
        app_map.testing_approach = app_map.testing_approach or DEFAULT_TESTING_APPROACH
        app_map.config_approach = app_map.config_approach or DEFAULT_CONFIG_APPROACH

        skipped = len(results) - len(findings)
        self._logger.info(
            "Aggregated %d findings (%d chunks contributed nothing), %d raw issues",
            len(findings),
            skipped,
            len(report.issues),
        )
        return report

    @staticmethod
    def _merge_app_map(target: AppMap, incoming: AppMap) -> None:
        _union(target.languages, incoming.languages)
        _union(target.frameworks, incoming.frameworks)
        _union(target.key_files, incoming.key_files)
        _union(target.architecture_patterns, incoming.architecture_patterns)
        target.directory_count = max(target.directory_count, incoming.directory_count)
        target.file_count = max(target.file_count, incoming.file_count)
        target.complexity = target.complexity or incoming.complexity
        target.testing_approach = target.testing_approach or incoming.testing_approach
        target.config_approach = target.config_approach or incoming.config_approach

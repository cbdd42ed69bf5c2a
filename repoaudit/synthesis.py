"""Deduplication and scoring of worker findings."""

from __future__ import annotations

import re
from typing import Iterable, List, Sequence, Tuple

from .estimator import round_half_up
from .logging import get_logger
from .models import SEVERITY_ORDER, Issue, SynthesisResult, WorkerFinding, WorkerStats

DEFAULT_SCORE = 50
CONFIDENCE_TARGET = 0.8
CONFIDENCE_PENALTY_FACTOR = 25
CROSS_FILE_FLAG_PENALTY = 2
CROSS_FILE_FLAG_CAP = 10
UNCERTAINTY_PENALTY = 1
UNCERTAINTY_CAP = 5
EMPTY_SUMMARY = "No analysis results available."

_WHITESPACE = re.compile(r"\s+")

_LOGGER = get_logger("synthesis")


def _issue_key(issue: Issue) -> Tuple[str, str]:
    title = _WHITESPACE.sub(" ", issue.title).strip().lower()
    return title, issue.file.strip()


def deduplicate_issues(issues: Iterable[Issue]) -> List[Issue]:
    """Drop issues whose normalised title and file were already seen."""
    seen = set()
    unique: List[Issue] = []
    for issue in issues:
        key = _issue_key(issue)
        if key in seen:
            continue
        seen.add(key)
        unique.append(issue)
    return unique


def sort_by_severity(issues: Iterable[Issue]) -> List[Issue]:
    """Stable sort: critical, then warning, then info."""
    return sorted(issues, key=lambda issue: SEVERITY_ORDER.get(issue.severity, len(SEVERITY_ORDER)))


def weighted_score(findings: Sequence[WorkerFinding]) -> int:
    """Average of ``local_score`` weighted by ``tokens_analyzed * confidence``."""
    total_weight = 0.0
    weighted_sum = 0.0
    for finding in findings:
        weight = finding.tokens_analyzed * finding.confidence
        total_weight += weight
        weighted_sum += finding.local_score * weight
    if total_weight <= 0:
        return DEFAULT_SCORE
    return round_half_up(weighted_sum / total_weight)


def _distinct(values: Iterable[str]) -> List[str]:
    result: List[str] = []
    for value in values:
        if value not in result:
            result.append(value)
    return result


def apply_penalties(
    score: int,
    *,
    cross_file_flags: Sequence[str],
    uncertainties: Sequence[str],
    avg_confidence: float,
) -> int:
    """Subtract flag, uncertainty and low-confidence penalties and clamp to [0, 100]."""
    penalized = score
    penalized -= min(len(set(cross_file_flags)) * CROSS_FILE_FLAG_PENALTY, CROSS_FILE_FLAG_CAP)
    penalized -= min(len(set(uncertainties)) * UNCERTAINTY_PENALTY, UNCERTAINTY_CAP)
    if avg_confidence < CONFIDENCE_TARGET:
        penalized -= round_half_up((CONFIDENCE_TARGET - avg_confidence) * CONFIDENCE_PENALTY_FACTOR)
    return max(0, min(100, penalized))


def quality_band(score: int) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good with room for improvement"
    if score >= 40:
        return "needs significant work"
    return "requires immediate attention"


def generate_summary(score: int, issues: Sequence[Issue], chunk_count: int) -> str:
    """Deterministic summary from the score band and literal issue counts."""
    critical = sum(1 for issue in issues if issue.severity == "critical")
    warnings = sum(1 for issue in issues if issue.severity == "warning")
    parts = [
        f"Multi-agent analysis across {chunk_count} code regions found {len(issues)} issues.",
        f"Overall code quality is {quality_band(score)}.",
    ]
    if critical:
        verb = "requires" if critical == 1 else "require"
        noun = "issue" if critical == 1 else "issues"
        parts.append(f"{critical} critical {noun} {verb} immediate attention.")
    if warnings:
        noun = "warning" if warnings == 1 else "warnings"
        parts.append(f"{warnings} {noun} should be addressed soon.")
    return " ".join(parts).strip()


def synthesize(findings: Sequence[WorkerFinding]) -> SynthesisResult:
    """Merge findings into one deduplicated, scored result."""
    if not findings:
        return SynthesisResult(
            health_score=DEFAULT_SCORE,
            summary=EMPTY_SUMMARY,
            issues=[],
            worker_stats=WorkerStats(total_chunks=0, total_tokens_analyzed=0, avg_confidence=0.0),
            cross_file_flags=[],
            uncertainties=[],
        )

    issues = sort_by_severity(deduplicate_issues(issue for finding in findings for issue in finding.issues))
    cross_file_flags = _distinct(flag for finding in findings for flag in finding.cross_file_flags)
    uncertainties = _distinct(item for finding in findings for item in finding.uncertainties)
    avg_confidence = sum(finding.confidence for finding in findings) / len(findings)

    base = weighted_score(findings)
    score = apply_penalties(
        base,
        cross_file_flags=cross_file_flags,
        uncertainties=uncertainties,
        avg_confidence=avg_confidence,
    )
    _LOGGER.debug(
        "Weighted score %d -> %d after penalties (%d flags, %d uncertainties, confidence %.2f)",
        base,
        score,
        len(cross_file_flags),
        len(uncertainties),
        avg_confidence,
    )
    return SynthesisResult(
        health_score=score,
        summary=generate_summary(score, issues, len(findings)),
        issues=issues,
        worker_stats=WorkerStats(
            total_chunks=len(findings),
            total_tokens_analyzed=sum(finding.tokens_analyzed for finding in findings),
            avg_confidence=round(avg_confidence, 2),
        ),
        cross_file_flags=cross_file_flags,
        uncertainties=uncertainties,
    )

"""Turn free-form worker responses into ``WorkerFinding`` records."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from ..logging import get_logger
from ..models import RISK_ORDER, SEVERITY_ORDER, AppMap, Issue, WorkerFinding

FALLBACK_CONFIDENCE = 0.2
FALLBACK_UNCERTAINTY = "Worker response could not be parsed as structured JSON"

_FENCE_PATTERN = re.compile(r"^```[A-Za-z0-9_-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)

_LOGGER = get_logger("llm.parsing")


def strip_code_fences(text: str) -> str:
    """Remove one surrounding markdown code fence, if present."""
    stripped = text.strip()
    match = _FENCE_PATTERN.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first JSON object in ``text``; ``None`` when there is none."""
    candidate = strip_code_fences(text)
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            payload = json.loads(candidate[start : end + 1])
        except json.JSONDecodeError:
            return None
    return payload if isinstance(payload, dict) else None


def parse_finding(text: str, task_id: str, tokens_analyzed: int) -> WorkerFinding:
    """Build a finding from model output, degrading to a low-confidence default."""
    payload = extract_json_object(text or "")
    if payload is None:
        _LOGGER.warning("Task %s returned unparseable output; using low-confidence default", task_id)
        return WorkerFinding(
            task_id=task_id,
            confidence=FALLBACK_CONFIDENCE,
            uncertainties=[FALLBACK_UNCERTAINTY],
            tokens_analyzed=tokens_analyzed,
        )

    health_score = _as_score(payload.get("healthScore"))
    local_score = _as_score(payload.get("localScore"))
    if local_score is None:
        local_score = health_score if health_score is not None else 50
    production_ready = payload.get("productionReady")
    assessments = payload.get("categoryAssessments")
    return WorkerFinding(
        task_id=task_id,
        issues=normalize_issues(payload.get("issues")),
        strengths=_as_text_list(_first_present(payload, "topStrengths", "strengths")),
        weaknesses=_as_text_list(_first_present(payload, "topWeaknesses", "weaknesses")),
        cross_file_flags=_as_text_list(payload.get("crossFileFlags")),
        uncertainties=_as_text_list(payload.get("uncertainties")),
        suspicious_files=_as_text_list(payload.get("suspiciousFiles")),
        local_score=local_score,
        confidence=_as_confidence(payload.get("confidence")),
        tokens_analyzed=tokens_analyzed,
        app_map=parse_app_map(payload.get("appMap")),
        risk_level=normalize_risk_level(payload.get("riskLevel")),
        production_ready=production_ready if isinstance(production_ready, bool) else None,
        overall_verdict=_as_optional_text(payload.get("overallVerdict")),
        category_assessments=assessments if isinstance(assessments, dict) and assessments else None,
        health_score=health_score,
    )


def normalize_issues(raw: Any) -> List[Issue]:
    """Coerce model-reported issues into ``Issue`` records.

    ``filePath`` is accepted for ``file`` and ``remediation`` for ``suggestion``;
    unknown severities become ``info`` and missing ids become ``issue-<n>``.
    """
    if not isinstance(raw, list):
        return []
    issues: List[Issue] = []
    for index, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            continue
        severity = str(item.get("severity") or "info").strip().lower()
        if severity not in SEVERITY_ORDER:
            severity = "info"
        line = item.get("line")
        issues.append(
            Issue(
                id=str(item.get("id") or f"issue-{index}"),
                severity=severity,
                category=str(item.get("category") or "general"),
                title=str(item.get("title") or "Untitled issue"),
                description=str(item.get("description") or ""),
                file=str(item.get("file") or item.get("filePath") or ""),
                line=line if isinstance(line, int) and not isinstance(line, bool) else None,
                bad_code=_as_optional_text(item.get("badCode")),
                fixed_code=_as_optional_text(item.get("fixedCode")),
                suggestion=_as_optional_text(item.get("suggestion") or item.get("remediation")),
            )
        )
    return issues


def parse_app_map(raw: Any) -> AppMap:
    if not isinstance(raw, dict):
        return AppMap()
    return AppMap(
        languages=_as_text_list(raw.get("languages")),
        frameworks=_as_text_list(raw.get("frameworks")),
        directory_count=_as_count(raw.get("directory_count")),
        file_count=_as_count(raw.get("file_count")),
        complexity=_as_optional_text(raw.get("complexity")),
        key_files=_as_text_list(raw.get("key_files")),
        architecture_patterns=_as_text_list(raw.get("architecture_patterns")),
        testing_approach=_as_optional_text(raw.get("testing_approach")),
        config_approach=_as_optional_text(raw.get("config_approach")),
    )


def normalize_risk_level(value: Any) -> Optional[str]:
    if not value:
        return None
    normalized = str(value).strip().lower()
    return normalized if normalized in RISK_ORDER else None


def _first_present(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _as_text_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    items: List[str] = []
    for item in value:
        if isinstance(item, str):
            text = item.strip()
        elif isinstance(item, dict):
            title = item.get("title") or item.get("area")
            detail = item.get("detail") or item.get("description")
            if title and detail:
                text = f"{title}: {detail}"
            else:
                text = str(title or detail or "").strip()
        elif isinstance(item, (int, float)) and not isinstance(item, bool):
            text = str(item)
        else:
            continue
        if text:
            items.append(text)
    return items


def _as_optional_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _as_score(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0, min(100, int(round(value))))


def _as_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return max(0.0, min(1.0, float(value)))


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))

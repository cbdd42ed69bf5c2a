"""Persist terminal audit reports as JSON documents."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import ValidationError
from ..logging import get_logger
from ..models import AuditReport

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def report_filename(report: AuditReport) -> str:
    """``owner__repo-tier-<timestamp>.json`` with filesystem-unsafe characters replaced."""
    stamp = (report.generated_at or "").replace("+00:00", "Z")
    stamp = _UNSAFE_CHARS.sub("", stamp.replace(":", "").replace("-", "")) or "latest"
    repo = _UNSAFE_CHARS.sub("_", report.repo_id.replace("/", "__"))
    return f"{repo}-{report.tier}-{stamp}.json"


class ReportStore:
    """Writes one JSON file per report under a single directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._logger = get_logger("reports")

    def save(self, report: AuditReport) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.directory / report_filename(report)
        target.write_text(json.dumps(report.to_dict(), indent=2) + "\n", encoding="utf-8")
        self._logger.info("Saved %s report for %s to %s", report.tier, report.repo_id, target)
        return target

    def load(self, path: Path) -> Dict[str, Any]:
        """Return the stored report payload as a plain dictionary."""
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ValidationError(f"Report not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Report {path.name} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValidationError(f"Report {path.name} must contain a JSON object")
        return payload

    def list_reports(self, repo_id: Optional[str] = None) -> List[Path]:
        if not self.directory.exists():
            return []
        prefix = _UNSAFE_CHARS.sub("_", repo_id.replace("/", "__")) + "-" if repo_id else ""
        return sorted(path for path in self.directory.glob("*.json") if path.name.startswith(prefix))

    def latest(self, repo_id: str) -> Optional[Dict[str, Any]]:
        reports = self.list_reports(repo_id)
        if not reports:
            return None
        return self.load(reports[-1])

"""Builds worker prompts from Jinja2 templates."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from ..estimator import resolve_tier
from ..models import WorkerTask
from .constants import TIER_CATEGORIES, TIER_FOCUS, TIER_ROLES


@dataclass(frozen=True)
class PromptMessage:
    """Represents a single chat message for LLM prompting."""

    role: str
    content: str


@dataclass
class PromptRequest:
    """System instruction plus user content for one worker call."""

    task_id: str
    system: str
    user: str

    @property
    def messages(self) -> List[PromptMessage]:
        return [PromptMessage("system", self.system), PromptMessage("user", self.user)]


@dataclass(frozen=True)
class _FileView:
    path: str
    content: str


class PromptBuilder:
    """Renders tier-scoped prompts that confine the model to the supplied files."""

    def __init__(self, tier: str = "shape", templates_dir: Path | None = None) -> None:
        self.tier = resolve_tier(tier)
        self.templates_dir = templates_dir or Path(__file__).with_name("templates")
        self._env = self._create_env(self.templates_dir)

    def build(self, task: WorkerTask, files: Sequence[Tuple[str, str]]) -> PromptRequest:
        """Render the prompt for ``task`` over ``(path, content)`` pairs that were actually fetched."""
        system = self._env.get_template("system.j2").render(
            role=task.role or TIER_ROLES[self.tier],
            instruction=task.instruction.strip(),
            categories=TIER_CATEGORIES[self.tier],
            focus=TIER_FOCUS[self.tier],
            summarizing=task.summarizing,
        )
        user = self._env.get_template("user.j2").render(
            files=[_FileView(path=path, content=content) for path, content in files],
        )
        return PromptRequest(task_id=task.id, system=system.strip(), user=user.strip())

    @staticmethod
    def _create_env(templates_dir: Path) -> Environment:
        directories = [str(templates_dir)]
        default_dir = Path(__file__).with_name("templates")
        if templates_dir != default_dir:
            directories.append(str(default_dir))
        return Environment(
            loader=FileSystemLoader(directories),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )

"""Partition a repository manifest into token-bounded analysis chunks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from .logging import get_logger
from .models import Chunk, FileEntry

DEFAULT_MAX_TOKENS_PER_CHUNK = 500_000
DEFAULT_MIN_TOKENS_TO_MERGE = 50_000

ROOT_FOLDER = "_root"
FULL_REPOSITORY_ID = "all"
FULL_REPOSITORY_NAME = "Full Repository"
MAX_PRIORITY = 10
MISC_PRIORITY = 4
DEFAULT_PRIORITY = 5

FOLDER_PRIORITIES: Dict[str, int] = {
    "src": 10,
    "app": 10,
    "auth": 10,
    "lib": 9,
    "api": 9,
    "supabase": 9,
    "functions": 9,
    "server": 9,
    "pages": 8,
    "components": 8,
    "services": 8,
    "middleware": 8,
    "hooks": 7,
    "utils": 7,
    "helpers": 7,
    "config": 6,
    "types": 5,
    "_root": 5,
    "tests": 4,
    "__tests__": 4,
    "test": 4,
    "styles": 3,
    "public": 2,
    "assets": 2,
    "docs": 1,
}


def folder_priority(folder: str) -> int:
    """Static audit importance of a top-level folder (higher is analysed first)."""
    return FOLDER_PRIORITIES.get(folder.lower(), DEFAULT_PRIORITY)


def top_level_folder(path: str) -> str:
    parts = path.split("/")
    if len(parts) > 1 and parts[0]:
        return parts[0]
    return ROOT_FOLDER


@dataclass
class _FolderGroup:
    name: str
    files: List[FileEntry] = field(default_factory=list)

    @property
    def tokens(self) -> int:
        return sum(entry.token_estimate for entry in self.files)


class ChunkPlanner:
    """Groups files by top-level folder and packs them under a token budget."""

    def __init__(
        self,
        max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK,
        min_tokens_to_merge: int = DEFAULT_MIN_TOKENS_TO_MERGE,
    ) -> None:
        self.max_tokens_per_chunk = max_tokens_per_chunk
        self.min_tokens_to_merge = min_tokens_to_merge
        self._logger = get_logger("planner")

    def plan(self, files: Iterable[FileEntry]) -> List[Chunk]:
        """Return chunks covering every input file exactly once, highest priority first."""
        entries = list(files)
        if not entries:
            return []

        total = sum(entry.token_estimate for entry in entries)
        if total <= self.max_tokens_per_chunk:
            chunks = [
                Chunk(
                    id=FULL_REPOSITORY_ID,
                    name=FULL_REPOSITORY_NAME,
                    files=entries,
                    total_tokens=total,
                    priority=MAX_PRIORITY,
                )
            ]
            self._log_chunks(chunks)
            return chunks

        chunks: List[Chunk] = []
        small_folders: List[_FolderGroup] = []
        for group in self._group_by_folder(entries):
            tokens = group.tokens
            if tokens > self.max_tokens_per_chunk:
                chunks.extend(self._split_folder(group))
            elif tokens < self.min_tokens_to_merge:
                small_folders.append(group)
            else:
                chunks.append(
                    Chunk(
                        id=group.name,
                        name=group.name,
                        files=list(group.files),
                        total_tokens=tokens,
                        priority=folder_priority(group.name),
                    )
                )

        if small_folders:
            chunks.extend(self._merge_small_folders(small_folders))

        chunks.sort(key=lambda chunk: chunk.priority, reverse=True)
        self._log_chunks(chunks)
        return chunks

    def _group_by_folder(self, entries: Sequence[FileEntry]) -> List[_FolderGroup]:
        groups: Dict[str, _FolderGroup] = {}
        for entry in entries:
            folder = top_level_folder(entry.path)
            groups.setdefault(folder, _FolderGroup(name=folder)).files.append(entry)
        return list(groups.values())

    def _split_folder(self, group: _FolderGroup) -> List[Chunk]:
        priority = folder_priority(group.name)
        parts: List[List[FileEntry]] = []
        current: List[FileEntry] = []
        current_tokens = 0

        for entry in sorted(group.files, key=lambda item: item.token_estimate):
            if current and current_tokens + entry.token_estimate > self.max_tokens_per_chunk:
                parts.append(current)
                current = []
                current_tokens = 0
            current.append(entry)
            current_tokens += entry.token_estimate
        if current:
            parts.append(current)

        chunks: List[Chunk] = []
        for index, part in enumerate(parts):
            name = group.name if len(parts) == 1 else f"{group.name} (part {index + 1})"
            chunks.append(
                Chunk(
                    id=f"{group.name}-{index}",
                    name=name,
                    files=part,
                    total_tokens=sum(entry.token_estimate for entry in part),
                    priority=priority,
                )
            )
        return chunks

    def _merge_small_folders(self, groups: Sequence[_FolderGroup]) -> List[Chunk]:
        chunks: List[Chunk] = []
        files: List[FileEntry] = []
        names: List[str] = []
        tokens = 0

        def flush() -> None:
            chunks.append(
                Chunk(
                    id=f"misc-{len(chunks)}",
                    name=" + ".join(names),
                    files=list(files),
                    total_tokens=tokens,
                    priority=MISC_PRIORITY,
                )
            )

        for group in groups:
            group_tokens = group.tokens
            if files and tokens + group_tokens > self.max_tokens_per_chunk:
                flush()
                files, names, tokens = [], [], 0
            files.extend(group.files)
            names.append(group.name)
            tokens += group_tokens
        if files:
            flush()
        return chunks

    def _log_chunks(self, chunks: Sequence[Chunk]) -> None:
        for chunk in chunks:
            self._logger.debug(
                "Chunk %s: %d tokens, %d files", chunk.name, chunk.total_tokens, len(chunk.files)
            )


def create_chunks(
    files: Iterable[FileEntry],
    max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK,
    min_tokens_to_merge: int = DEFAULT_MIN_TOKENS_TO_MERGE,
) -> List[Chunk]:
    return ChunkPlanner(max_tokens_per_chunk, min_tokens_to_merge).plan(files)


def chunk_summary(chunks: Sequence[Chunk]) -> str:
    """One ``[id] name: N files, ~Kk tokens`` line per chunk."""
    lines = []
    for chunk in chunks:
        thousands = int(chunk.total_tokens / 1000 + 0.5)
        lines.append(f"[{chunk.id}] {chunk.name}: {len(chunk.files)} files, ~{thousands}k tokens")
    return "\n".join(lines)

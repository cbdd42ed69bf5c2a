"""Tests for the chunk planner."""

from __future__ import annotations

import logging
import random

from repoaudit.planner import (
    FULL_REPOSITORY_ID,
    ChunkPlanner,
    chunk_summary,
    create_chunks,
    folder_priority,
    top_level_folder,
)
from tests._fixtures.builders import make_manifest


def _layered_manifest():
    return make_manifest(
        {
            "src/a.py": 400,
            "src/b.py": 400,
            "src/c.py": 400,
            "lib/x.py": 500,
            "docs/readme.md": 100,
            "tests/t.py": 100,
            "README.md": 50,
        }
    )


def test_small_repository_becomes_single_chunk() -> None:
    manifest = make_manifest({"src/a.py": 100, "docs/b.md": 200, "README.md": 10})

    chunks = ChunkPlanner(max_tokens_per_chunk=1000, min_tokens_to_merge=100).plan(manifest.files)

    assert len(chunks) == 1
    assert chunks[0].id == FULL_REPOSITORY_ID
    assert chunks[0].name == "Full Repository"
    assert chunks[0].paths == ["src/a.py", "docs/b.md", "README.md"]
    assert chunks[0].total_tokens == 310


def test_empty_input_yields_no_chunks() -> None:
    assert ChunkPlanner().plan([]) == []


def test_large_folders_split_and_small_folders_merge() -> None:
    chunks = create_chunks(_layered_manifest().files, 1000, 300)

    assert [chunk.id for chunk in chunks] == ["src-0", "src-1", "lib", "misc-0"]
    assert [chunk.name for chunk in chunks] == [
        "src (part 1)",
        "src (part 2)",
        "lib",
        "docs + tests + _root",
    ]
    assert [chunk.priority for chunk in chunks] == [10, 10, 9, 4]
    assert chunks[0].paths == ["src/a.py", "src/b.py"]
    assert chunks[3].total_tokens == 250
    assert all(chunk.total_tokens <= 1000 for chunk in chunks)


def test_every_file_lands_in_exactly_one_chunk() -> None:
    rng = random.Random(7)
    folders = ["src", "lib", "docs", "api", "tests", "assets", "misc"]
    sizes = {}
    for index in range(200):
        folder = rng.choice(folders)
        path = f"{folder}/file_{index}.py" if folder != "misc" else f"file_{index}.py"
        sizes[path] = rng.randint(1, 900)
    manifest = make_manifest(sizes)

    chunks = ChunkPlanner(max_tokens_per_chunk=2000, min_tokens_to_merge=500).plan(manifest.files)
    planned = [path for chunk in chunks for path in chunk.paths]

    assert sorted(planned) == sorted(sizes)
    assert len(planned) == len(set(planned))


def test_split_folder_with_one_part_keeps_plain_name() -> None:
    manifest = make_manifest({"src/huge.py": 1500, "lib/a.py": 600})

    chunks = ChunkPlanner(max_tokens_per_chunk=1000, min_tokens_to_merge=100).plan(manifest.files)

    assert chunks[0].id == "src-0"
    assert chunks[0].name == "src"


def test_planner_logs_each_chunk(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="repoaudit.planner"):
        create_chunks(_layered_manifest().files, 1000, 300)

    assert "Chunk lib: 500 tokens, 1 files" in caplog.text


def test_folder_helpers() -> None:
    assert top_level_folder("src/app/main.py") == "src"
    assert top_level_folder("setup.py") == "_root"
    assert folder_priority("SRC") == 10
    assert folder_priority("unknown") == 5


def test_chunk_summary_lines() -> None:
    chunks = create_chunks(_layered_manifest().files, 1000, 300)

    lines = chunk_summary(chunks).splitlines()

    assert lines[0] == "[src-0] src (part 1): 2 files, ~1k tokens"
    assert lines[-1] == "[misc-0] docs + tests + _root: 3 files, ~0k tokens"

"""CLI behaviour tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from repoaudit import cli
from repoaudit.cli import _build_parser, _describe_error, main
from repoaudit.errors import AuditError, PrivateRepoError, RateLimitError
from repoaudit.estimator import VALID_TIERS
from repoaudit.manifest import save_manifest
from repoaudit.orchestrator import AuditOrchestrator
from tests._fixtures.builders import REPO_URL, FakeHost, ScriptedLLM, finding_json, make_manifest


def _write_manifest(tmp_path: Path) -> Path:
    manifest = make_manifest({"src/app.py": 100, "src/util.py": 100, "README.md": 10})
    return save_manifest(manifest, tmp_path / "manifest.json")


def test_cli_accepts_verbose_before_command() -> None:
    args = _build_parser().parse_args(["--verbose", "estimate", "manifest.json"])
    assert args.verbose is True
    assert args.command == "estimate"


def test_cli_accepts_verbose_after_command() -> None:
    args = _build_parser().parse_args(["plan", "manifest.json", "--verbose"])
    assert args.verbose is True
    assert args.command == "plan"
    assert args.tier == "shape"
    assert args.config == "."


def test_cli_parses_run_and_archive_options() -> None:
    parser = _build_parser()

    run = parser.parse_args(["run", "m.json", "--tier", "ultra", "--declared-tokens", "1200", "--prepare-archive"])
    archive = parser.parse_args(["archive", "sync", "acme/widgets", "--ref", "dev", "--token-env", "GH_TOKEN"])

    assert run.declared_tokens == 1200
    assert run.prepare_archive is True
    assert archive.archive_command == "sync"
    assert archive.ref == "dev"
    assert archive.token_env == "GH_TOKEN"


def test_scan_writes_manifest(tmp_path: Path, capsys) -> None:
    repo = tmp_path / "checkout"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    (repo / "README.md").write_text("# widgets\n", encoding="utf-8")
    (repo / "node_modules" / "pkg").mkdir(parents=True)
    (repo / "node_modules" / "pkg" / "index.js").write_text("x\n", encoding="utf-8")
    output = tmp_path / "out" / "manifest.json"

    main(["scan", str(repo), "--repo-url", REPO_URL, "-o", str(output)])

    payload = json.loads(output.read_text(encoding="utf-8"))
    assert [item["path"] for item in payload["files"]] == ["README.md", "src/app.py"]
    assert payload["owner"] == "acme"
    assert "Manifest with 2 files" in capsys.readouterr().out


def test_estimate_prints_every_tier(tmp_path: Path, capsys) -> None:
    main(["estimate", str(_write_manifest(tmp_path)), "--tier", "lite", "--all-tiers"])

    out = capsys.readouterr().out
    assert out.startswith("acme/widgets [shape]: ~")
    for tier in VALID_TIERS:
        assert f"  {tier}: ~" in out


def test_plan_prints_chunk_summary(tmp_path: Path, capsys) -> None:
    main(["plan", str(_write_manifest(tmp_path)), "--config", str(tmp_path)])

    out = capsys.readouterr().out
    assert "1 chunks for acme/widgets" in out
    assert "[all] Full Repository: 3 files" in out


def test_run_saves_report(tmp_path: Path, monkeypatch, capsys) -> None:
    llm = ScriptedLLM(finding_json(local_score=85))
    host = FakeHost({"src/app.py": "print('hi')\n", "src/util.py": "X = 1\n", "README.md": "# w\n"})

    def orchestrator_factory(config, archive=None):
        return AuditOrchestrator(config, archive=archive, llm_runner=llm.runner(), host=host)

    monkeypatch.setattr(cli, "AuditOrchestrator", orchestrator_factory)

    main(["run", str(_write_manifest(tmp_path)), "--config", str(tmp_path), "--prepare-archive"])

    out = capsys.readouterr().out
    assert "Health score: 85/100" in out
    reports = list((tmp_path / ".repoaudit" / "reports").glob("*.json"))
    assert len(reports) == 1
    assert json.loads(reports[0].read_text(encoding="utf-8"))["health_score"] == 85
    assert host.snapshot_calls == ["acme/widgets@main"]
    assert (tmp_path / ".repoaudit" / "archives.sqlite3").exists()


def test_missing_manifest_exits_with_invalid_code(tmp_path: Path, capsys) -> None:
    with pytest.raises(SystemExit) as info:
        main(["estimate", str(tmp_path / "absent.json")])

    assert info.value.code == cli.EXIT_INVALID
    assert "Invalid request: Manifest not found" in capsys.readouterr().err


def test_archive_list_and_missing_show(tmp_path: Path, capsys) -> None:
    main(["archive", "--config", str(tmp_path), "list"])
    assert "No archives stored" in capsys.readouterr().out

    with pytest.raises(SystemExit) as info:
        main(["archive", "--config", str(tmp_path), "show", "acme/widgets"])

    assert info.value.code == cli.EXIT_NOT_FOUND
    assert "Not found: No archive stored for acme/widgets" in capsys.readouterr().err


def test_archive_populate_requires_token_variable(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.delenv("REPOAUDIT_TEST_TOKEN", raising=False)

    with pytest.raises(SystemExit) as info:
        main(
            [
                "archive",
                "--config",
                str(tmp_path),
                "populate",
                "acme/widgets",
                "--token-env",
                "REPOAUDIT_TEST_TOKEN",
            ]
        )

    assert info.value.code == cli.EXIT_INVALID
    assert "REPOAUDIT_TEST_TOKEN is not set" in capsys.readouterr().err


def test_describe_error_names_recovery_action() -> None:
    code, message = _describe_error(PrivateRepoError("acme/widgets is private"), "run")
    assert code == cli.EXIT_PRIVATE
    assert "authorize access" in message

    code, message = _describe_error(RateLimitError("throttled", retry_after=30), "run")
    assert code == cli.EXIT_RATE_LIMITED
    assert "Try again in 30s." in message

    code, message = _describe_error(AuditError("boom"), "plan")
    assert code == cli.EXIT_INTERNAL
    assert message.startswith("repoaudit plan failed: boom")

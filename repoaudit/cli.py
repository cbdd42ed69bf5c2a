"""CLI entrypoints for repoaudit commands."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Callable, Dict, Optional, Type

from .config import AuditConfig, load_config
from .errors import (
    AuditError,
    AuthenticationError,
    ConfigError,
    NotFoundError,
    PrivateRepoError,
    RateLimitError,
    ValidationError,
)
from .estimator import estimate_all_tiers, format_tokens, quote_price
from .github.client import SourceHostClient
from .github.urls import parse_repo_url
from .logging import configure_logging
from .manifest import load_manifest, save_manifest, scan_directory
from .orchestrator import AuditOrchestrator
from .planner import chunk_summary
from .stores.archive_cache import RepoArchiveCache, summarize_index
from .stores.archive_store import ArchiveStore
from .stores.report_store import ReportStore

EXIT_INTERNAL = 1
EXIT_INVALID = 2
EXIT_NOT_FOUND = 3
EXIT_PRIVATE = 4
EXIT_UNAUTHORIZED = 5
EXIT_RATE_LIMITED = 6

_ERROR_EXITS: Dict[Type[AuditError], int] = {
    NotFoundError: EXIT_NOT_FOUND,
    PrivateRepoError: EXIT_PRIVATE,
    AuthenticationError: EXIT_UNAUTHORIZED,
    RateLimitError: EXIT_RATE_LIMITED,
    ValidationError: EXIT_INVALID,
    ConfigError: EXIT_INVALID,
}


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _add_config_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        default=".",
        help="Directory containing .repoaudit.yml, or the file itself (defaults to current directory).",
    )


def _add_tier_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--tier",
        default="shape",
        help="Audit tier: shape, conventions, performance, security, supabase_deep_dive (aliases lite, deep, ultra).",
    )


def _add_repo_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("repo", help="Repository as owner/repo or a GitHub URL.")
    parser.add_argument("--ref", default="main", help="Branch, tag or commit to snapshot.")
    parser.add_argument(
        "--token-env",
        default=None,
        help="Environment variable holding a bearer token for private repositories.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repoaudit",
        description="Audit repositories with token-bounded, multi-worker LLM analysis.",
    )
    _add_verbose_option(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_parser = subparsers.add_parser(
        "scan",
        help="Build a trusted manifest from a local checkout.",
    )
    _add_verbose_option(scan_parser, suppress_default=True)
    scan_parser.add_argument("path", help="Path to the repository checkout.")
    scan_parser.add_argument("--repo-url", required=True, help="Canonical URL of the repository.")
    scan_parser.add_argument("--ref", default="main", help="Ref recorded in the manifest.")
    scan_parser.add_argument(
        "-o", "--output", default="manifest.json", help="Where to write the manifest JSON."
    )

    estimate_parser = subparsers.add_parser(
        "estimate",
        help="Estimate token cost and price for a manifest.",
    )
    _add_verbose_option(estimate_parser, suppress_default=True)
    _add_tier_option(estimate_parser)
    estimate_parser.add_argument("manifest", help="Path to the manifest JSON.")
    estimate_parser.add_argument(
        "--all-tiers", action="store_true", help="Print an estimate for every tier."
    )

    plan_parser = subparsers.add_parser(
        "plan",
        help="Show how a manifest would be split into analysis chunks.",
    )
    _add_verbose_option(plan_parser, suppress_default=True)
    _add_config_option(plan_parser)
    _add_tier_option(plan_parser)
    plan_parser.add_argument("manifest", help="Path to the manifest JSON.")

    run_parser = subparsers.add_parser(
        "run",
        help="Run a full audit and save the report.",
    )
    _add_verbose_option(run_parser, suppress_default=True)
    _add_config_option(run_parser)
    _add_tier_option(run_parser)
    run_parser.add_argument("manifest", help="Path to the manifest JSON.")
    run_parser.add_argument(
        "--declared-tokens",
        type=int,
        default=None,
        help="Client-side token estimate to compare against the computed one.",
    )
    run_parser.add_argument(
        "--prepare-archive",
        action="store_true",
        help="Populate or sync the repository archive before analysis.",
    )

    archive_parser = subparsers.add_parser(
        "archive",
        help="Manage cached repository archives.",
    )
    _add_verbose_option(archive_parser, suppress_default=True)
    _add_config_option(archive_parser)
    archive_sub = archive_parser.add_subparsers(dest="archive_command", required=True)

    populate_parser = archive_sub.add_parser("populate", help="Download and store a snapshot.")
    _add_repo_arguments(populate_parser)
    sync_parser = archive_sub.add_parser("sync", help="Reconcile a stored snapshot with the live tree.")
    _add_repo_arguments(sync_parser)
    show_parser = archive_sub.add_parser("show", help="Describe a stored archive.")
    show_parser.add_argument("repo", help="Repository as owner/repo or a GitHub URL.")
    show_parser.add_argument("--files", action="store_true", help="List every indexed file.")
    delete_parser = archive_sub.add_parser("delete", help="Remove a stored archive.")
    delete_parser.add_argument("repo", help="Repository as owner/repo or a GitHub URL.")
    archive_sub.add_parser("list", help="List repositories with stored archives.")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP service.",
    )
    _add_verbose_option(serve_parser, suppress_default=True)
    serve_parser.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for repoaudit commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose))

    handlers: Dict[str, Callable[[argparse.Namespace], None]] = {
        "scan": _cmd_scan,
        "estimate": _cmd_estimate,
        "plan": _cmd_plan,
        "run": _cmd_run,
        "archive": _cmd_archive,
        "serve": _cmd_serve,
    }
    handler = handlers.get(args.command)
    if handler is None:  # pragma: no cover - argparse enforces choices
        parser.exit(1, "Unknown command\n")

    try:
        handler(args)
    except AuditError as exc:
        code, message = _describe_error(exc, args.command)
        parser.exit(code, message)


def _describe_error(exc: AuditError, command: str) -> tuple[int, str]:
    """Map an error to an exit code and a message naming the recovery action."""
    code = EXIT_INTERNAL
    for error_type, exit_code in _ERROR_EXITS.items():
        if isinstance(exc, error_type):
            code = exit_code
            break

    if isinstance(exc, PrivateRepoError):
        message = f"{exc}\nThe repository is private; authorize access and refresh the preflight.\n"
    elif isinstance(exc, NotFoundError):
        message = f"Not found: {exc}\nCheck the repository name and ref.\n"
    elif isinstance(exc, AuthenticationError):
        message = f"Authentication failed: {exc}\nRe-authorize and try again.\n"
    elif isinstance(exc, RateLimitError):
        wait = f" in {exc.retry_after:.0f}s" if exc.retry_after else " later"
        message = f"Rate limited: {exc}\nTry again{wait}.\n"
    elif isinstance(exc, (ValidationError, ConfigError)):
        message = f"Invalid request: {exc}\n"
    else:
        message = f"repoaudit {command} failed: {exc}\nRun with --verbose for more details.\n"
    return code, message


def _cmd_scan(args: argparse.Namespace) -> None:
    manifest = scan_directory(Path(args.path).expanduser().resolve(), args.repo_url, ref=args.ref)
    target = save_manifest(manifest, Path(args.output))
    print(f"Manifest with {len(manifest.files)} files written to {_relativize(target)}")


def _cmd_estimate(args: argparse.Namespace) -> None:
    manifest = load_manifest(Path(args.manifest))
    orchestrator = AuditOrchestrator()
    plan = orchestrator.plan(manifest, args.tier)
    quote = quote_price(plan.estimated_tokens)
    print(
        f"{manifest.repo_id} [{plan.tier}]: ~{format_tokens(plan.estimated_tokens)} tokens "
        f"(max {format_tokens(plan.max_tokens)}), {quote.formatted}"
    )
    if args.all_tiers:
        for estimate in estimate_all_tiers(plan.fingerprint).values():
            tier_quote = quote_price(estimate.estimated_tokens)
            print(f"  {estimate.tier}: ~{estimate.formatted} tokens, {tier_quote.formatted}")


def _cmd_plan(args: argparse.Namespace) -> None:
    config = load_config(Path(args.config))
    manifest = load_manifest(Path(args.manifest))
    plan = AuditOrchestrator(config).plan(manifest, args.tier)
    print(
        f"{len(plan.chunks)} chunks for {manifest.repo_id} "
        f"({plan.tier}, budget {format_tokens(plan.chunk_budget)} tokens per chunk)"
    )
    print(chunk_summary(plan.chunks))


def _cmd_run(args: argparse.Namespace) -> None:
    config = load_config(Path(args.config))
    manifest = load_manifest(Path(args.manifest))
    store = ArchiveStore(config.archive_path)
    archive = RepoArchiveCache(store)
    try:
        report = AuditOrchestrator(config, archive=archive).run(
            manifest,
            args.tier,
            declared_tokens=args.declared_tokens,
            prepare_archive=bool(args.prepare_archive),
        )
    finally:
        archive.close()
        store.close()
    target = ReportStore(config.reports_dir).save(report)
    print(report.summary)
    print(f"Health score: {report.health_score}/100")
    if report.failed_chunks:
        print(f"{len(report.failed_chunks)} of {report.chunk_count} chunks failed")
    print(f"Report saved to {_relativize(target)}")


def _cmd_archive(args: argparse.Namespace) -> None:
    config = load_config(Path(args.config))
    store = ArchiveStore(config.archive_path)
    cache = RepoArchiveCache(store)
    try:
        _run_archive_command(args, config, cache)
    finally:
        cache.close()
        store.close()


def _run_archive_command(
    args: argparse.Namespace, config: AuditConfig, cache: RepoArchiveCache
) -> None:
    command = args.archive_command
    if command == "list":
        repo_ids = cache.store.list_repo_ids()
        if not repo_ids:
            print("No archives stored")
        for repo_id in repo_ids:
            print(repo_id)
        return

    owner, repo = parse_repo_url(args.repo)
    repo_id = f"{owner}/{repo}"

    if command in {"populate", "sync"}:
        host = SourceHostClient(
            token=_token_from_env(args.token_env),
            api_url=config.github.api_url,
            timeout=config.executor.fetch_timeout,
            attempts=config.executor.retry_attempts,
            trusted_hosts=config.github.trusted_hosts,
        )
        if command == "populate":
            archive = cache.populate(repo_id, owner, repo, args.ref, host=host)
            print(
                f"Stored {len(archive.file_index)} files for {repo_id} "
                f"({archive.blob_size / 1024:.1f}KB compressed)"
            )
        else:
            changes = cache.sync(repo_id, owner, repo, args.ref, host=host)
            print(f"Synced {repo_id}: {changes} files changed")
    elif command == "show":
        index = cache.get_file_index(repo_id)
        if index is None:
            raise NotFoundError(f"No archive stored for {repo_id}")
        count, total_bytes = summarize_index(index)
        print(f"{repo_id}: {count} files, {total_bytes} bytes")
        if args.files:
            for path in sorted(index):
                entry = index[path]
                print(f"  {path} ({entry.type}, {entry.size} bytes, {entry.hash[:12]})")
    elif command == "delete":
        if not cache.delete(repo_id):
            raise NotFoundError(f"No archive stored for {repo_id}")
        print(f"Deleted archive for {repo_id}")


def _cmd_serve(args: argparse.Namespace) -> None:  # pragma: no cover - integration path
    from .service.app import run_service

    run_service(host=args.host, port=args.port)


def _token_from_env(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    token = os.environ.get(name)
    if not token:
        raise ConfigError(f"Environment variable {name} is not set")
    return token


def _relativize(path: Path) -> str:
    try:
        return str(path.relative_to(Path.cwd()))
    except ValueError:
        return str(path)


if __name__ == "__main__":
    main(sys.argv[1:])

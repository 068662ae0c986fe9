"""archive_repo: turn a source tree into a single archive for LLM consumption.

The tree is walked with gitignore-compatible rules, filtered (extensions,
size, hidden files, binary sniff), and read by a pool of threads. With
``--cache`` the run is incremental: every file is tagged new, modified or
unchanged against the previous run and deleted files are listed.

Usage
-----
Run `python -m archive_repo.cli --help` for full options. Common examples:
    - Markdown archive of the current directory:
        uv run archive-repo --output repo_for_llm.md

    - Incremental JSONL export, content of unchanged files omitted:
        uv run archive-repo --output corpus.jsonl --cache .archive-cache.json --changed-only

    - Only Python and TOML files, no tests:
        uv run archive-repo --include-ext py,toml --exclude-glob "tests/" --output out.md
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from archive_repo import __version__
from archive_repo.cache import ChangeCache
from archive_repo.config import FilterConfig, GitStatus, HiddenPolicy
from archive_repo.exceptions import EntryReadError, NotAGitRepositoryError, PatternSyntaxError, RootNotFoundError
from archive_repo.file_manipulation import git_metadata, git_statuses, relpath
from archive_repo.logging import logger, setup_logging
from archive_repo.output_construction import EMITTERS, infer_format
from archive_repo.patterns import PatternSource, command_line_source, compile_patterns, default_pattern_set, escape_pattern
from archive_repo.scheduler import Scheduler
from archive_repo.settings import Settings, env_defaults

if TYPE_CHECKING:
    from collections.abc import Sequence

    from archive_repo.config import FileRecord, RunSummary

EXIT_OK = 0
EXIT_FILE_ERROR = 1
EXIT_USAGE_ERROR = 2

_LIST_FIELDS = ("include_glob", "exclude_glob")


def parse_args(argv: Sequence[str] | None = None) -> Settings:
    p = argparse.ArgumentParser(
        prog="archive-repo",
        description="Archive a source tree for LLM consumption (md/txt/jsonl/json/yaml/csv).",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--repo", type=str, default=".", help="Directory to archive.")
    p.add_argument(
        "--output",
        type=str,
        required=True,
        help="Output file; its suffix picks the format.",
    )
    p.add_argument(
        "--format",
        type=str,
        choices=sorted(EMITTERS),
        default="",
        help="Force format.",
    )
    p.add_argument("--log-file", type=str, default="", help="Log file path.")
    p.add_argument("-v", "--verbose", action="store_true", help="Log per-entry decisions.")

    sel = p.add_argument_group("selection")
    sel.add_argument(
        "--include-glob",
        action="append",
        default=[],
        help="Only keep files matching this glob (repeatable).",
    )
    sel.add_argument(
        "--exclude-glob",
        action="append",
        default=[],
        help="Gitignore-style exclude pattern (repeatable, overrides ignore files).",
    )
    sel.add_argument("--include-ext", type=str, default="", help="Comma list of extensions to keep.")
    sel.add_argument("--exclude-ext", type=str, default="", help="Comma list of extensions to drop.")
    sel.add_argument(
        "--max-bytes",
        type=int,
        default=500_000,
        help="Skip files larger than this (0: no limit).",
    )
    sel.add_argument(
        "--hidden",
        choices=["include", "exclude"],
        default="exclude",
        help="Dot-file policy.",
    )
    sel.add_argument("--include-binary", action="store_true", help="Do not skip binary files.")
    sel.add_argument("--no-ignore-files", action="store_true", help="Ignore .gitignore/.ignore/.archiveignore.")
    sel.add_argument("--no-default-excludes", action="store_true", help="Drop the built-in exclude list.")
    sel.add_argument("--no-follow-symlinks", action="store_true", help="Do not follow symlinks.")

    run = p.add_argument_group("execution")
    run.add_argument("--workers", type=int, default=0, help="Reader threads (0: available CPUs).")
    run.add_argument("--queue-size", type=int, default=0, help="Work queue capacity (0: 4 per worker).")
    run.add_argument("--cache", type=str, default="", help="Change cache file (enables incremental runs).")
    run.add_argument("--strict-hash", action="store_true", help="Compare content hashes, not only mtime and size.")
    run.add_argument("--changed-only", action="store_true", help="Omit the content of unchanged files.")
    run.add_argument("--fail-fast", action="store_true", help="Stop at the first unreadable file.")

    out = p.add_argument_group("output")
    out.add_argument("--compact", action="store_true", help="Reduce markdown verbosity.")
    out.add_argument("--chunk-chars", type=int, default=24_000, help="Chunk size for jsonl.")
    out.add_argument("--max-lines", type=int, default=0, help="Keep head and tail of longer files (0: all).")
    out.add_argument("--no-tree", action="store_true", help="Do not write the structure tree.")
    out.add_argument("--no-sha", action="store_true", help="Do not compute sha256 digests.")
    out.add_argument("--git-status", action="store_true", help="Tag each file with its git working tree state.")

    defaults: dict[str, object] = dict(env_defaults())
    for name in _LIST_FIELDS:
        if isinstance(defaults.get(name), str):
            defaults[name] = [g.strip() for g in str(defaults[name]).split(",") if g.strip()]
    p.set_defaults(**defaults)

    args = p.parse_args(argv)
    return Settings(**vars(args))


def build_filter_config(settings: Settings) -> FilterConfig:
    return FilterConfig(
        include_extensions=settings.include_ext,
        exclude_extensions=settings.exclude_ext,
        max_file_size=settings.max_bytes or None,
        hidden_policy=HiddenPolicy(settings.hidden),
        skip_binary=not settings.include_binary,
    )


def own_files_excludes(repo: Path, settings: Settings) -> list[str]:
    """Rules keeping the archive's own output and cache files out of the archive."""
    rules: list[str] = []
    for candidate in (settings.output, settings.cache):
        if not candidate:
            continue
        path = Path(candidate).resolve()
        if path.is_relative_to(repo):
            rules.append(escape_pattern(relpath(path, repo)))
    return rules


def archive(
    repo: Path,
    settings: Settings,
    *,
    cancel_event: threading.Event | None = None,
) -> tuple[list[FileRecord], RunSummary]:
    """Run the scheduler over `repo` as configured by `settings`.

    Args:
        repo (Path): the archive root
        settings (Settings): parsed command-line settings
        cancel_event (threading.Event | None, optional): set it to stop the run early.

    Raises:
        RootNotFoundError: if `repo` is not a directory.
        PatternSyntaxError: if an exclude/include glob or a root ignore file is malformed.
        EntryReadError: on the first unreadable file with `fail_fast`.

    Returns:
        tuple[list[FileRecord], RunSummary]: the ordered records and the run summary
    """
    if not repo.is_dir():
        raise RootNotFoundError(root=repo)
    repo = repo.resolve()
    # own files go in after the command-line excludes so a negation cannot bring them back
    own_files = PatternSource.from_lines(own_files_excludes(repo, settings), label="<own files>", priority=1)
    pattern_set = default_pattern_set(repo, settings.exclude_glob, default_excludes=not settings.no_default_excludes)
    pattern_set = pattern_set.extend([own_files])
    includes = None
    if settings.include_glob:
        includes = compile_patterns([command_line_source(settings.include_glob, label="<include>")])

    if settings.cache:
        cache = ChangeCache.load(Path(settings.cache), strict=settings.strict_hash)
    else:
        cache = ChangeCache.disabled(strict=settings.strict_hash)

    scheduler = Scheduler(
        repo,
        pattern_set,
        build_filter_config(settings),
        cache,
        settings.workers or None,
        queue_size=settings.queue_size or None,
        includes=includes,
        skip_unchanged=settings.changed_only,
        fail_fast=settings.fail_fast,
        hash_content=not settings.no_sha,
        respect_ignore_files=not settings.no_ignore_files,
        follow_symlinks=not settings.no_follow_symlinks,
        persist_cache=bool(settings.cache),
        cancel_event=cancel_event,
    )
    records = list(scheduler.run())
    if settings.git_status:
        records = with_git_status(repo, records)
    return records, scheduler.summary


def with_git_status(repo: Path, records: list[FileRecord]) -> list[FileRecord]:
    """Tag records with their git working tree state; outside a checkout they stay untagged."""
    try:
        statuses = git_statuses(repo)
    except NotAGitRepositoryError:
        logger.warning("git_status_unavailable", repo=str(repo))
        return records
    return [
        rec.model_copy(update={"git_status": statuses.get(rec.relative_path, GitStatus.UNMODIFIED)})
        for rec in records
    ]


def repo_metadata(repo: Path) -> dict[str, str]:
    try:
        return git_metadata(repo)
    except NotAGitRepositoryError:
        return {}


def main(argv: Sequence[str] | None = None) -> int:
    settings = parse_args(argv)
    if settings.log_file or settings.verbose:
        setup_logging(
            settings.log_file or None,
            level=logging.DEBUG if settings.verbose else logging.INFO,
            force=True,
        )

    repo = Path(settings.repo).resolve()
    out_path = Path(settings.output)
    fmt = infer_format(out_path, settings.format)
    if fmt not in EMITTERS:
        print(f"error: unknown format {fmt!r} (known: {', '.join(sorted(EMITTERS))})", file=sys.stderr)
        return EXIT_USAGE_ERROR

    cancel_event = threading.Event()
    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel_event.set())
    try:
        records, summary = archive(repo, settings, cancel_event=cancel_event)
    except (RootNotFoundError, PatternSyntaxError) as e:
        logger.error("archive_aborted", error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR
    except EntryReadError as e:
        logger.error("archive_aborted", error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FILE_ERROR
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    content = EMITTERS[fmt](repo, records, summary, settings=settings, metadata=repo_metadata(repo))
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(content, encoding="utf-8")

    if summary.cache_warning:
        print(f"warning: {summary.cache_warning}", file=sys.stderr)
    print(
        f"Wrote {out_path} format={fmt} files={len(records)} new={summary.new} "
        f"modified={summary.modified} unchanged={summary.unchanged} deleted={summary.deleted} "
        f"errored={summary.errored} status={summary.status}",
    )
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())

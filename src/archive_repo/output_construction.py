from __future__ import annotations

import base64
import csv
import io
import json
from typing import TYPE_CHECKING, Any, Protocol

import yaml

from archive_repo.config import ChangeClass
from archive_repo.file_manipulation import build_tree_lines, now_iso, take_head_tail
from archive_repo.filters import is_binary_chunk

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence
    from pathlib import Path

    from archive_repo.config import FileRecord, RunSummary
    from archive_repo.settings import Settings

DEFAULT_FORMAT = "md"

FORMAT_BY_SUFFIX: dict[str, str] = {
    ".md": "md",
    ".markdown": "md",
    ".txt": "txt",
    ".jsonl": "jsonl",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".csv": "csv",
}

UNCHANGED_MARKER = "(unchanged, content omitted)"


class Emitter(Protocol):
    def __call__(
        self,
        repo: Path,
        recs: Sequence[FileRecord],
        summary: RunSummary,
        *,
        settings: Settings,
        metadata: Mapping[str, str] | None = None,
    ) -> str: ...


def infer_format(output: Path, forced: str = "") -> str:
    """Pick the output format: the forced one, else from the output suffix, else markdown."""
    if forced:
        return forced
    return FORMAT_BY_SUFFIX.get(output.suffix.lower(), DEFAULT_FORMAT)


def is_binary_record(rec: FileRecord) -> bool:
    return rec.content is not None and is_binary_chunk(rec.content[:8192])


def render_body(rec: FileRecord, *, max_lines: int = 0) -> str:
    """Turn a record into the text shown for it in human readable formats.

    Args:
        rec (FileRecord): the record to render
        max_lines (int, optional): keep only the head and tail of longer files. Defaults to 0 (no limit).

    Returns:
        str: the file text, or a marker for errors, omitted and binary contents
    """
    if rec.is_error:
        return f"[read error: {rec.error}]"
    if rec.content is None:
        return UNCHANGED_MARKER
    if is_binary_record(rec):
        return f"[binary file, {rec.byte_size} bytes]"
    text = rec.text
    if max_lines > 0:
        lines = text.splitlines()
        if len(lines) > max_lines:
            tail = max_lines // 3
            text = take_head_tail(lines, max_lines - tail, tail)
    return text.rstrip("\n")


def record_header(rec: FileRecord) -> str:
    header = f"{rec.relative_path} size={rec.byte_size} change={rec.change_class.value}"
    if rec.sha256:
        header += f" sha256={rec.sha256}"
    if rec.git_status is not None:
        header += f" git={rec.git_status.value}"
    if rec.is_error:
        header += " error"
    return header


def _summary_line(summary: RunSummary) -> str:
    return (
        f"new={summary.new} modified={summary.modified} unchanged={summary.unchanged} "
        f"deleted={summary.deleted} errored={summary.errored}"
    )


def build_markdown(
    repo: Path,
    recs: Sequence[FileRecord],
    summary: RunSummary,
    *,
    settings: Settings,
    metadata: Mapping[str, str] | None = None,
) -> str:
    """Build a markdown string representing the archived files.

    The markdown includes a header with run information (and git branch/commit
    when available), a visual tree of the file structure, a section per file
    with its content fenced, and the list of deleted files when a change cache
    is in use.

    Args:
        repo (Path): the archive root
        recs (Sequence[FileRecord]): the records, in output order
        summary (RunSummary): counts of the run
        settings (Settings): rendering options, including:
            - compact: no blank line between file sections
            - max_lines: head/tail truncation of long files
            - no_tree: skip the structure section

    Returns:
        str: the generated markdown
    """
    out = io.StringIO()
    out.write("# Project Archive\n")
    out.write(f"root={repo}\n")
    out.write(f"generated_at={now_iso()}\n")
    for key, value in (metadata or {}).items():
        out.write(f"{key}={value}\n")
    out.write(f"files={len(recs)} {_summary_line(summary)}\n\n")

    if not settings.no_tree:
        tree_lines = build_tree_lines(repo.name, [r.relative_path for r in recs])
        out.write("## Structure\n")
        out.write("```text\n")
        out.write("\n".join(tree_lines))
        out.write("\n```\n\n")

    for rec in recs:
        out.write(f"## {record_header(rec)}\n")
        lang = rec.language or "text"
        body = render_body(rec, max_lines=settings.max_lines)
        if settings.compact:
            out.write(f"```{lang}\n{body}\n```\n")
        else:
            out.write(f"```{lang}\n{body}\n```\n\n")

    if summary.deleted_paths:
        out.write("## Deleted\n")
        out.writelines(f"- {path}\n" for path in summary.deleted_paths)

    return out.getvalue().rstrip() + "\n"


def build_text(
    repo: Path,
    recs: Sequence[FileRecord],
    summary: RunSummary,
    *,
    settings: Settings,
    metadata: Mapping[str, str] | None = None,
) -> str:
    """Plain text archive: one ``=== File: path ===`` section per record and a summary footer."""
    out = io.StringIO()
    out.write(f"Archive created at {now_iso()}\n")
    out.write(f"root={repo}\n")
    for key, value in (metadata or {}).items():
        out.write(f"{key}={value}\n")
    out.write("\n")
    if not settings.no_tree:
        out.write("\n".join(build_tree_lines(repo.name, [r.relative_path for r in recs])))
        out.write("\n")
    for rec in recs:
        state = rec.change_class.value if rec.git_status is None else f"{rec.change_class.value}, git {rec.git_status.value}"
        out.write(f"\n=== File: {rec.relative_path} ({state}) ===\n")
        out.write(render_body(rec, max_lines=settings.max_lines))
        out.write("\n")
    out.write("\n=== Summary ===\n")
    out.write(f"Total files processed: {len(recs)}\n")
    out.write(f"{_summary_line(summary)}\n")
    out.writelines(f"deleted: {path}\n" for path in summary.deleted_paths)
    return out.getvalue()


def chunk_content(text: str, chunk_chars: int) -> Iterator[tuple[int, int, str]]:
    """Chunk a text string into pieces of at most `chunk_chars` characters, splitting on line boundaries.

    Args:
        text (str): the text to chunk
        chunk_chars (int): the maximum number of characters in each chunk

    Yields:
        Iterator[tuple[int, int, str]]: an iterator of tuples containing the start line number,
            end line number, and chunk text for each chunk
    """
    if not text:
        yield (0, 0, "")
        return
    lines = text.splitlines()
    buf: list[str] = []
    cur = 0
    start_line = 1
    for i, ln in enumerate(lines, start=1):
        ln2 = ln + "\n"
        if cur + len(ln2) > chunk_chars and buf:
            yield (start_line, i - 1, "".join(buf))
            buf = []
            cur = 0
            start_line = i
        buf.append(ln2)
        cur += len(ln2)
    if buf:
        yield (start_line, start_line + len(buf) - 1, "".join(buf))


def build_jsonl(
    repo: Path,
    recs: Sequence[FileRecord],
    summary: RunSummary,  # noqa: ARG001
    *,
    settings: Settings,
    metadata: Mapping[str, str] | None = None,  # noqa: ARG001
) -> str:
    """One JSON object per chunk of text, suitable for ingestion pipelines.

    Binary records get a single chunk with empty text; errored records carry
    the `error` field instead of text.
    """
    buf = io.StringIO()
    for rec in recs:
        base: dict[str, Any] = {
            "repo_root": str(repo),
            "path": rec.relative_path,
            "language": rec.language,
            "change_class": rec.change_class.value,
            "size": rec.byte_size,
            "mtime": rec.modified_time,
            "sha256": rec.sha256,
        }
        if rec.git_status is not None:
            base["git_status"] = rec.git_status.value
        if rec.is_error or rec.content is None or is_binary_record(rec):
            item = {**base, "start_line": 0, "end_line": 0, "text": "", "error": rec.error}
            buf.write(json.dumps(item, ensure_ascii=False) + "\n")
            continue
        for start, end, chunk in chunk_content(rec.text, chunk_chars=settings.chunk_chars):
            item = {**base, "start_line": start, "end_line": end, "text": chunk}
            buf.write(json.dumps(item, ensure_ascii=False) + "\n")
    return buf.getvalue()


def record_to_dict(rec: FileRecord) -> dict[str, Any]:
    """Structured view of a record; binary content is base64 encoded."""
    item: dict[str, Any] = {
        "path": rec.relative_path,
        "change_class": rec.change_class.value,
        "size": rec.byte_size,
        "mtime": rec.modified_time,
        "sha256": rec.sha256,
        "language": rec.language,
    }
    if rec.git_status is not None:
        item["git_status"] = rec.git_status.value
    if rec.is_error:
        item["error"] = rec.error
    elif rec.content is None:
        item["content"] = None
    elif is_binary_record(rec):
        item["encoding"] = "base64"
        item["content"] = base64.b64encode(rec.content).decode("ascii")
    else:
        item["encoding"] = "utf-8"
        item["content"] = rec.text
    return item


def build_document(
    repo: Path,
    recs: Sequence[FileRecord],
    summary: RunSummary,
    metadata: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Assemble the document shared by the JSON and YAML emitters."""
    return {
        "root": str(repo),
        "generated_at": now_iso(),
        **dict(metadata or {}),
        "summary": {
            "status": summary.status,
            ChangeClass.NEW.value: summary.new,
            ChangeClass.MODIFIED.value: summary.modified,
            ChangeClass.UNCHANGED.value: summary.unchanged,
            ChangeClass.DELETED.value: summary.deleted,
            "errored": summary.errored,
            "rejected": {reason.value: count for reason, count in sorted(summary.rejected.items())},
            "bytes_processed": summary.bytes_processed,
            "cache_warning": summary.cache_warning,
        },
        "files": [record_to_dict(rec) for rec in recs],
        "deleted": list(summary.deleted_paths),
    }


def build_json(
    repo: Path,
    recs: Sequence[FileRecord],
    summary: RunSummary,
    *,
    settings: Settings,  # noqa: ARG001
    metadata: Mapping[str, str] | None = None,
) -> str:
    return json.dumps(build_document(repo, recs, summary, metadata), ensure_ascii=False, indent=2) + "\n"


def build_yaml(
    repo: Path,
    recs: Sequence[FileRecord],
    summary: RunSummary,
    *,
    settings: Settings,  # noqa: ARG001
    metadata: Mapping[str, str] | None = None,
) -> str:
    return yaml.safe_dump(
        build_document(repo, recs, summary, metadata),
        sort_keys=False,
        allow_unicode=True,
    )


CSV_COLUMNS = ("path", "change_class", "size", "sha256", "error", "git_status")


def build_csv(
    repo: Path,  # noqa: ARG001
    recs: Sequence[FileRecord],
    summary: RunSummary,
    *,
    settings: Settings,  # noqa: ARG001
    metadata: Mapping[str, str] | None = None,  # noqa: ARG001
) -> str:
    """Manifest of the run: one row per record, deleted files last."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for rec in recs:
        git_status = rec.git_status.value if rec.git_status is not None else ""
        writer.writerow([rec.relative_path, rec.change_class.value, rec.byte_size, rec.sha256, rec.error or "", git_status])
    for path in summary.deleted_paths:
        writer.writerow([path, ChangeClass.DELETED.value, 0, "", "", ""])
    return buf.getvalue()


EMITTERS: dict[str, Emitter] = {
    "md": build_markdown,
    "txt": build_text,
    "jsonl": build_jsonl,
    "json": build_json,
    "yaml": build_yaml,
    "csv": build_csv,
}

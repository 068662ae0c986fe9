from __future__ import annotations

import base64
import csv
import io
import json
from pathlib import Path

import pytest
import yaml

from archive_repo.config import ChangeClass, FileRecord, FilterReason, GitStatus, RunSummary
from archive_repo.output_construction import (
    CSV_COLUMNS,
    UNCHANGED_MARKER,
    build_csv,
    build_json,
    build_jsonl,
    build_markdown,
    build_text,
    build_yaml,
    chunk_content,
    infer_format,
    render_body,
)
from archive_repo.settings import Settings

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"


def _settings(**kwargs: object) -> Settings:
    return Settings(output=Path("out.md"), **kwargs)  # type: ignore[arg-type]


def _records() -> list[FileRecord]:
    return [
        FileRecord(
            relative_path="src/app.py",
            change_class=ChangeClass.MODIFIED,
            content=b"print('ok')\n",
            byte_size=12,
            sha256="deadbeef",
        ),
        FileRecord(relative_path="src/util.py", change_class=ChangeClass.UNCHANGED, byte_size=7),
        FileRecord(relative_path="logo.png", content=PNG_BYTES, byte_size=len(PNG_BYTES)),
        FileRecord(relative_path="locked.txt", error="Permission denied", byte_size=3),
    ]


def _summary() -> RunSummary:
    return RunSummary(
        new=1,
        modified=1,
        unchanged=1,
        deleted=1,
        errored=1,
        rejected={FilterReason.HIDDEN_EXCLUDED: 2},
        deleted_paths=["old.py"],
    )


@pytest.mark.unit
def test_chunk_content_handles_empty_text() -> None:
    chunks = list(chunk_content("", chunk_chars=10))

    assert chunks == [(0, 0, "")]


@pytest.mark.unit
def test_chunk_content_splits_on_lines() -> None:
    text = "a\nbb\nccc\n"

    chunks = list(chunk_content(text, chunk_chars=4))

    assert chunks == [
        (1, 1, "a\n"),
        (2, 2, "bb\n"),
        (3, 3, "ccc\n"),
    ]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("output", "forced", "expected"),
    [
        ("out.md", "", "md"),
        ("out.JSONL", "", "jsonl"),
        ("out.yml", "", "yaml"),
        ("out.csv", "", "csv"),
        ("archive", "", "md"),
        ("out.md", "json", "json"),
    ],
)
def test_infer_format(output: str, forced: str, expected: str) -> None:
    assert infer_format(Path(output), forced) == expected


@pytest.mark.unit
def test_render_body_markers() -> None:
    text, unchanged, binary, errored = _records()

    assert render_body(text) == "print('ok')"
    assert render_body(unchanged) == UNCHANGED_MARKER
    assert render_body(binary) == f"[binary file, {len(PNG_BYTES)} bytes]"
    assert render_body(errored) == "[read error: Permission denied]"


@pytest.mark.unit
def test_render_body_keeps_head_and_tail() -> None:
    rec = FileRecord(relative_path="long.txt", content="\n".join(str(i) for i in range(20)).encode())

    assert render_body(rec, max_lines=6) == "0\n1\n2\n3\n…\n18\n19"
    assert render_body(rec, max_lines=50).count("\n") == 19  # noqa: PLR2004


@pytest.mark.unit
def test_build_markdown_renders_headers_and_fences(tmp_path: Path) -> None:
    output = build_markdown(tmp_path, _records(), _summary(), settings=_settings(), metadata={"branch": "main"})

    assert output.startswith("# Project Archive\n")
    assert "branch=main" in output
    assert "files=4 new=1 modified=1 unchanged=1 deleted=1 errored=1" in output
    assert "## Structure" in output
    assert "## src/app.py size=12 change=modified sha256=deadbeef\n```python\nprint('ok')\n```" in output
    assert f"## src/util.py size=7 change=unchanged\n```python\n{UNCHANGED_MARKER}\n```" in output
    assert "## locked.txt size=3 change=new error\n```text\n[read error: Permission denied]\n```" in output
    assert output.endswith("## Deleted\n- old.py\n")


@pytest.mark.unit
def test_build_markdown_compact_mode_removes_extra_spacing(tmp_path: Path) -> None:
    recs = _records()[:2]

    compact_output = build_markdown(tmp_path, recs, _summary(), settings=_settings(compact=True, no_tree=True))
    standard_output = build_markdown(tmp_path, recs, _summary(), settings=_settings())

    assert "## Structure" not in compact_output
    assert "print('ok')\n```\n## src/util.py size=" in compact_output
    assert "print('ok')\n```\n\n## src/util.py size=" in standard_output


@pytest.mark.unit
def test_build_text_has_sections_and_summary(tmp_path: Path) -> None:
    output = build_text(tmp_path, _records(), _summary(), settings=_settings(no_tree=True))

    assert output.startswith("Archive created at ")
    assert "\n=== File: src/app.py (modified) ===\nprint('ok')\n" in output
    assert "\n=== File: src/util.py (unchanged) ===\n" in output
    assert "=== Summary ===\nTotal files processed: 4\n" in output
    assert output.endswith("deleted: old.py\n")


@pytest.mark.unit
def test_build_jsonl_one_object_per_chunk(tmp_path: Path) -> None:
    rec = FileRecord(relative_path="a.py", content=b"one\ntwo\nthree\n", byte_size=14)

    lines = build_jsonl(tmp_path, [rec, *_records()[1:]], _summary(), settings=_settings(chunk_chars=8)).splitlines()
    items = [json.loads(line) for line in lines]

    assert [(i["path"], i["start_line"], i["end_line"]) for i in items] == [
        ("a.py", 1, 2),
        ("a.py", 3, 3),
        ("src/util.py", 0, 0),
        ("logo.png", 0, 0),
        ("locked.txt", 0, 0),
    ]
    assert items[0]["text"] == "one\ntwo\n"
    assert items[0]["change_class"] == "new"
    assert items[2]["change_class"] == "unchanged"
    assert items[4]["error"] == "Permission denied"


@pytest.mark.unit
def test_build_json_document(tmp_path: Path) -> None:
    document = json.loads(build_json(tmp_path, _records(), _summary(), settings=_settings()))

    assert document["root"] == str(tmp_path)
    assert document["summary"]["status"] == "success_with_errors"
    assert document["summary"]["rejected"] == {"hidden_excluded": 2}
    assert document["deleted"] == ["old.py"]
    app, util, logo, locked = document["files"]
    assert app["content"] == "print('ok')\n"
    assert app["encoding"] == "utf-8"
    assert util["content"] is None
    assert logo["encoding"] == "base64"
    assert base64.b64decode(logo["content"]) == PNG_BYTES
    assert locked["error"] == "Permission denied"
    assert "content" not in locked


@pytest.mark.unit
def test_build_yaml_keeps_document_order(tmp_path: Path) -> None:
    document = yaml.safe_load(build_yaml(tmp_path, _records(), _summary(), settings=_settings()))

    assert list(document)[:2] == ["root", "generated_at"]
    assert [f["path"] for f in document["files"]] == ["src/app.py", "src/util.py", "logo.png", "locked.txt"]
    assert document["summary"]["deleted"] == 1


@pytest.mark.unit
def test_build_csv_lists_deleted_files_last(tmp_path: Path) -> None:
    rows = list(csv.reader(io.StringIO(build_csv(tmp_path, _records(), _summary(), settings=_settings()))))

    assert tuple(rows[0]) == CSV_COLUMNS
    assert rows[1] == ["src/app.py", "modified", "12", "deadbeef", "", ""]
    assert rows[4] == ["locked.txt", "new", "3", "", "Permission denied", ""]
    assert rows[-1] == ["old.py", "deleted", "0", "", "", ""]


@pytest.mark.unit
def test_git_status_is_shown_only_when_set(tmp_path: Path) -> None:
    tagged = FileRecord(relative_path="a.py", content=b"a = 1\n", byte_size=6, git_status=GitStatus.MODIFIED)
    plain = FileRecord(relative_path="b.py", content=b"b = 2\n", byte_size=6)
    recs = [tagged, plain]
    summary = RunSummary(new=2)

    markdown = build_markdown(tmp_path, recs, summary, settings=_settings())
    items = [json.loads(line) for line in build_jsonl(tmp_path, recs, summary, settings=_settings()).splitlines()]
    files = json.loads(build_json(tmp_path, recs, summary, settings=_settings()))["files"]
    rows = list(csv.reader(io.StringIO(build_csv(tmp_path, recs, summary, settings=_settings()))))

    assert "## a.py size=6 change=new git=modified\n" in markdown
    assert "## b.py size=6 change=new\n" in markdown
    assert "=== File: a.py (new, git modified) ===" in build_text(tmp_path, recs, summary, settings=_settings())
    assert items[0]["git_status"] == "modified"
    assert "git_status" not in items[1]
    assert files[0]["git_status"] == "modified"
    assert "git_status" not in files[1]
    assert [row[-1] for row in rows[1:]] == ["modified", ""]

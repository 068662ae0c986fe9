from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from archive_repo.cache import ChangeCache
from archive_repo.config import ChangeClass, DiagnosticKind, FilterConfig, FilterReason, HiddenPolicy
from archive_repo.exceptions import EntryReadError, PatternSyntaxError, RootNotFoundError
from archive_repo.file_manipulation import read_file_bytes
from archive_repo.patterns import PatternSource, compile_patterns
from archive_repo.scheduler import Scheduler

if TYPE_CHECKING:
    from collections.abc import Mapping

    from pytest_mock import MockerFixture


def _tree(root: Path, files: Mapping[str, str | bytes]) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")


def _paths(scheduler: Scheduler) -> list[str]:
    return [rec.relative_path for rec in scheduler.run()]


def _symlink(link: Path, target: Path, *, is_dir: bool = False) -> None:
    try:
        link.symlink_to(target, target_is_directory=is_dir)
    except OSError as e:
        pytest.skip(f"symlinks unavailable: {e}")


@pytest.mark.unit
def test_missing_root_raises_before_any_work(tmp_path: Path) -> None:
    with pytest.raises(RootNotFoundError):
        Scheduler(tmp_path / "nope")


@pytest.mark.unit
def test_output_is_sorted_and_independent_of_worker_count(tmp_path: Path) -> None:
    _tree(
        tmp_path,
        {
            "a.txt": "1",
            "a/b.txt": "2",
            "a-b.txt": "3",
            "a0.txt": "4",
            "B.md": "5",
            "z/y/x.py": "6",
            "z/a.py": "7",
        },
    )

    single = [(r.relative_path, r.content) for r in Scheduler(tmp_path, worker_count=1).run()]
    many = [(r.relative_path, r.content) for r in Scheduler(tmp_path, worker_count=8, queue_size=2).run()]

    assert single == many
    assert [p for p, _ in single] == sorted(p for p, _ in single)
    assert len(single) == 7  # noqa: PLR2004


@pytest.mark.unit
def test_read_ahead_is_bounded_while_the_consumer_holds_a_record(tmp_path: Path) -> None:
    _tree(tmp_path, {f"pkg{i % 3}/mod_{i:03}.py": f"x = {i}\n" for i in range(200)})
    read: list[str] = []
    lock = threading.Lock()

    def on_progress(rel: str) -> None:
        with lock:
            read.append(rel)

    scheduler = Scheduler(tmp_path, worker_count=1, queue_size=1, on_progress=on_progress)
    records = scheduler.run()
    first = next(records)
    time.sleep(0.5)
    with lock:
        read_while_held = len(read)
    rest = [rec.relative_path for rec in records]

    assert first.relative_path == "pkg0/mod_000.py"
    assert read_while_held <= scheduler.max_in_flight
    assert len(rest) == 199  # noqa: PLR2004
    assert rest == sorted(rest)


@pytest.mark.unit
def test_slow_first_file_does_not_let_later_reads_pile_up(tmp_path: Path, mocker: MockerFixture) -> None:
    _tree(tmp_path, {f"mod_{i:03}.py": f"x = {i}\n" for i in range(60)})
    read: list[str] = []
    read_before_first: list[int] = []
    lock = threading.Lock()

    def on_progress(rel: str) -> None:
        with lock:
            read.append(rel)

    def slow_first(path: Path) -> bytes:
        if path.name == "mod_000.py":
            time.sleep(0.3)
            with lock:
                read_before_first.append(len(read))
        return read_file_bytes(path)

    mocker.patch("archive_repo.scheduler.read_file_bytes", side_effect=slow_first)
    scheduler = Scheduler(tmp_path, worker_count=4, queue_size=1, on_progress=on_progress)

    paths = _paths(scheduler)

    assert len(paths) == 60  # noqa: PLR2004
    assert read_before_first[0] < scheduler.max_in_flight


@pytest.mark.unit
def test_ignored_directories_are_pruned(tmp_path: Path) -> None:
    _tree(
        tmp_path,
        {
            ".gitignore": "build/\n*.log\n",
            "build/out.py": "x",
            "src/main.py": "x",
            "src/debug.log": "x",
            "src/sub/.gitignore": "!keep.log\n",
            "src/sub/keep.log": "x",
        },
    )
    scheduler = Scheduler(tmp_path)

    paths = _paths(scheduler)

    assert paths == ["src/main.py", "src/sub/keep.log"]
    assert scheduler.summary.rejected[FilterReason.PATTERN_EXCLUDED] == 2  # noqa: PLR2004


@pytest.mark.unit
def test_ignore_files_can_be_disabled(tmp_path: Path) -> None:
    _tree(tmp_path, {".gitignore": "*.log\n", "a.log": "x"})

    assert _paths(Scheduler(tmp_path, respect_ignore_files=False)) == ["a.log"]


@pytest.mark.unit
def test_filters_are_applied_and_counted(tmp_path: Path) -> None:
    _tree(
        tmp_path,
        {
            "small.txt": "ok",
            "big.txt": "x" * 50,
            "blob.bin": b"\x00\x01\x02",
            ".env": "SECRET=1",
        },
    )
    scheduler = Scheduler(tmp_path, filter_config=FilterConfig(max_file_size=10))

    paths = _paths(scheduler)

    assert paths == ["small.txt"]
    rejected = scheduler.summary.rejected
    assert rejected[FilterReason.SIZE_EXCEEDED] == 1
    assert rejected[FilterReason.BINARY_EXCLUDED] == 1
    assert rejected[FilterReason.HIDDEN_EXCLUDED] == 1


@pytest.mark.unit
def test_hidden_files_can_be_included(tmp_path: Path) -> None:
    _tree(tmp_path, {".github/workflows/ci.yml": "on: push"})

    config = FilterConfig(hidden_policy=HiddenPolicy.INCLUDE)

    assert _paths(Scheduler(tmp_path, filter_config=config)) == [".github/workflows/ci.yml"]


@pytest.mark.unit
def test_include_allow_list(tmp_path: Path) -> None:
    _tree(tmp_path, {"src/a.py": "x", "docs/b.md": "x", "setup.cfg": "x"})
    includes = compile_patterns([PatternSource(text="src/\n*.cfg")])

    assert _paths(Scheduler(tmp_path, includes=includes)) == ["setup.cfg", "src/a.py"]


@pytest.mark.unit
def test_empty_result_is_a_success(tmp_path: Path) -> None:
    _tree(tmp_path, {"only.log": "x", ".gitignore": "*.log\n"})
    scheduler = Scheduler(tmp_path)

    assert _paths(scheduler) == []
    assert scheduler.summary.status == "success"
    assert scheduler.summary.emitted == 0


@pytest.mark.unit
def test_records_carry_content_size_and_hash(tmp_path: Path) -> None:
    _tree(tmp_path, {"a.py": "print('hi')\n"})

    (rec,) = Scheduler(tmp_path).run()

    assert rec.content == b"print('hi')\n"
    assert rec.byte_size == len(rec.content)
    assert len(rec.sha256) == 64  # noqa: PLR2004
    assert rec.change_class is ChangeClass.NEW
    assert rec.language == "python"
    assert not Scheduler(tmp_path, hash_content=False).collect()[0].sha256


@pytest.mark.unit
def test_read_error_is_reported_in_place(tmp_path: Path, mocker: MockerFixture) -> None:
    _tree(tmp_path, {"a.txt": "a", "b.txt": "b", "c.txt": "c"})

    def flaky(path: Path) -> bytes:
        if path.name == "b.txt":
            raise PermissionError(13, "Permission denied")
        return read_file_bytes(path)

    mocker.patch("archive_repo.scheduler.read_file_bytes", side_effect=flaky)
    scheduler = Scheduler(tmp_path, worker_count=2)

    records = scheduler.collect()

    assert [r.relative_path for r in records] == ["a.txt", "b.txt", "c.txt"]
    assert records[1].is_error
    assert records[1].content is None
    assert "Permission denied" in (records[1].error or "")
    assert scheduler.summary.errored == 1
    assert scheduler.summary.status == "success_with_errors"
    assert [d.kind for d in scheduler.diagnostics] == [DiagnosticKind.READ_ERROR]


@pytest.mark.unit
def test_fail_fast_raises_at_the_failing_file(tmp_path: Path, mocker: MockerFixture) -> None:
    _tree(tmp_path, {"a.txt": "a", "b.txt": "b", "c.txt": "c"})

    def flaky(path: Path) -> bytes:
        if path.name == "b.txt":
            raise OSError(5, "I/O error")
        return read_file_bytes(path)

    mocker.patch("archive_repo.scheduler.read_file_bytes", side_effect=flaky)
    seen: list[str] = []

    with pytest.raises(EntryReadError) as exc_info:  # noqa: PT012
        for rec in Scheduler(tmp_path, fail_fast=True).run():
            seen.append(rec.relative_path)

    assert seen == ["a.txt"]
    assert exc_info.value.path == "b.txt"


@pytest.mark.unit
def test_dangling_symlink_is_a_read_error(tmp_path: Path) -> None:
    _tree(tmp_path, {"real.txt": "x"})
    _symlink(tmp_path / "broken.txt", tmp_path / "missing.txt")
    scheduler = Scheduler(tmp_path)

    records = scheduler.collect()

    assert [r.relative_path for r in records] == ["broken.txt", "real.txt"]
    assert records[0].is_error
    assert scheduler.summary.errored == 1


@pytest.mark.unit
def test_symlink_cycle_is_skipped_once(tmp_path: Path) -> None:
    _tree(tmp_path, {"a/file.txt": "x"})
    _symlink(tmp_path / "a" / "loop", tmp_path, is_dir=True)
    scheduler = Scheduler(tmp_path)

    paths = _paths(scheduler)

    assert paths == ["a/file.txt"]
    cycles = [d for d in scheduler.diagnostics if d.kind is DiagnosticKind.SYMLINK_CYCLE_SKIPPED]
    assert [d.path for d in cycles] == ["a/loop"]


@pytest.mark.unit
def test_symlinks_can_be_ignored(tmp_path: Path) -> None:
    _tree(tmp_path, {"real.txt": "x"})
    _symlink(tmp_path / "alias.txt", tmp_path / "real.txt")

    assert _paths(Scheduler(tmp_path)) == ["alias.txt", "real.txt"]
    assert _paths(Scheduler(tmp_path, follow_symlinks=False)) == ["real.txt"]


@pytest.mark.unit
def test_malformed_root_ignore_file_aborts_before_output(tmp_path: Path) -> None:
    _tree(tmp_path, {".gitignore": "ok.txt\n[broken\n", "a.txt": "x"})

    with pytest.raises(PatternSyntaxError) as exc_info:
        next(Scheduler(tmp_path).run())

    assert exc_info.value.line_number == 2  # noqa: PLR2004


@pytest.mark.unit
@pytest.mark.parametrize("bad_line", ["[broken", "[z-a]"])
def test_malformed_nested_ignore_file_is_skipped_and_reported(tmp_path: Path, bad_line: str) -> None:
    _tree(tmp_path, {"sub/.gitignore": f"*.txt\n{bad_line}\n", "a.txt": "x", "sub/b.txt": "x"})
    scheduler = Scheduler(tmp_path)

    assert _paths(scheduler) == ["a.txt", "sub/b.txt"]
    assert [d.kind for d in scheduler.diagnostics] == [DiagnosticKind.PATTERN_SYNTAX_ERROR]


@pytest.mark.unit
def test_progress_callback_sees_every_file(tmp_path: Path) -> None:
    _tree(tmp_path, {"a.txt": "a", "b/c.txt": "c"})
    seen: list[str] = []
    lock = threading.Lock()

    def on_progress(rel: str) -> None:
        with lock:
            seen.append(rel)

    Scheduler(tmp_path, on_progress=on_progress).collect()

    assert sorted(seen) == ["a.txt", "b/c.txt"]


@pytest.mark.unit
def test_failing_progress_callback_does_not_stop_the_run(tmp_path: Path) -> None:
    _tree(tmp_path, {f"mod_{i}.py": "x" for i in range(5)})

    def on_progress(rel: str) -> None:
        raise RuntimeError(rel)

    records = Scheduler(tmp_path, worker_count=1, queue_size=1, on_progress=on_progress).collect()

    assert [rec.relative_path for rec in records] == [f"mod_{i}.py" for i in range(5)]
    assert all(rec.content == b"x" for rec in records)


@pytest.mark.unit
def test_incremental_run_classifies_changes(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    cache_path = tmp_path / "cache.json"
    _tree(repo, {"same.py": "1", "edit.py": "hi", "gone.py": "bye"})
    first = Scheduler(repo, cache=ChangeCache.load(cache_path))
    assert {r.change_class for r in first.run()} == {ChangeClass.NEW}

    (repo / "edit.py").write_text("hi!", encoding="utf-8")
    (repo / "gone.py").unlink()
    (repo / "added.py").write_text("new", encoding="utf-8")
    second = Scheduler(repo, cache=ChangeCache.load(cache_path))

    classes = {r.relative_path: r.change_class for r in second.run()}

    assert classes == {
        "added.py": ChangeClass.NEW,
        "edit.py": ChangeClass.MODIFIED,
        "same.py": ChangeClass.UNCHANGED,
    }
    summary = second.summary
    assert (summary.new, summary.modified, summary.unchanged, summary.deleted) == (1, 1, 1, 1)
    assert summary.deleted_paths == ["gone.py"]
    assert sorted(ChangeCache.load(cache_path).previous) == ["added.py", "edit.py", "same.py"]


@pytest.mark.unit
def test_rerun_without_changes_is_all_unchanged(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    cache_path = tmp_path / "cache.json"
    _tree(repo, {"a.py": "1", "pkg/b.py": "2"})
    Scheduler(repo, cache=ChangeCache.load(cache_path)).collect()

    second = Scheduler(repo, cache=ChangeCache.load(cache_path), skip_unchanged=True)
    records = second.collect()

    assert {r.change_class for r in records} == {ChangeClass.UNCHANGED}
    assert all(r.content is None for r in records)
    assert second.summary.bytes_processed == 0


@pytest.mark.unit
def test_errored_files_are_not_recorded_in_the_cache(tmp_path: Path, mocker: MockerFixture) -> None:
    repo = tmp_path / "repo"
    cache_path = tmp_path / "cache.json"
    _tree(repo, {"ok.py": "1", "bad.py": "2"})

    def flaky(path: Path) -> bytes:
        if path.name == "bad.py":
            raise OSError(5, "I/O error")
        return read_file_bytes(path)

    mocker.patch("archive_repo.scheduler.read_file_bytes", side_effect=flaky)
    scheduler = Scheduler(repo, cache=ChangeCache.load(cache_path))
    scheduler.collect()

    assert scheduler.summary.deleted == 0
    assert sorted(ChangeCache.load(cache_path).previous) == ["ok.py"]


@pytest.mark.unit
def test_cancelled_run_keeps_previous_cache_records(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    cache_path = tmp_path / "cache.json"
    _tree(repo, {"a.py": "1", "b.py": "2", "c.py": "3"})
    Scheduler(repo, cache=ChangeCache.load(cache_path)).collect()

    cancel = threading.Event()
    cancel.set()
    scheduler = Scheduler(repo, cache=ChangeCache.load(cache_path), cancel_event=cancel)

    assert scheduler.collect() == []
    assert scheduler.summary.cancelled
    assert scheduler.summary.status == "cancelled"
    assert scheduler.summary.deleted == 0
    assert sorted(ChangeCache.load(cache_path).previous) == ["a.py", "b.py", "c.py"]


@pytest.mark.unit
def test_cancel_mid_run_emits_only_whole_files(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    cache_path = tmp_path / "cache.json"
    _tree(repo, {f"f{i:02}.txt": str(i) for i in range(20)})
    scheduler = Scheduler(repo, cache=ChangeCache.load(cache_path), worker_count=1, queue_size=1)

    emitted = []
    for rec in scheduler.run():
        emitted.append(rec)
        scheduler.cancel()

    assert emitted
    assert scheduler.summary.cancelled
    assert all(rec.content == str(int(rec.relative_path[1:3])).encode() for rec in emitted)
    cached = ChangeCache.load(cache_path).previous
    assert sorted(cached) == sorted(rec.relative_path for rec in emitted)


@pytest.mark.unit
def test_cache_write_failure_becomes_a_warning(tmp_path: Path, mocker: MockerFixture) -> None:
    _tree(tmp_path / "repo", {"a.py": "1"})
    mocker.patch("archive_repo.file_manipulation.os.fsync", side_effect=OSError(28, "No space left on device"))
    scheduler = Scheduler(tmp_path / "repo", cache=ChangeCache(tmp_path / "cache.json"))

    records = scheduler.collect()

    assert [r.relative_path for r in records] == ["a.py"]
    assert "No space left" in scheduler.summary.cache_warning
    assert not (tmp_path / "cache.json").exists()
    assert os.listdir(tmp_path) == ["repo"]

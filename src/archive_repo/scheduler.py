"""Traversal, filtering, change classification and concurrent reads.

One walker thread enumerates the tree with an explicit stack and pushes
admitted files onto a bounded work queue; it blocks when the queue is full.
A fixed pool of worker threads sniffs, fingerprints and reads each file and
posts the outcome on a result queue. The consuming generator is the single
aggregator: it puts outcomes back in walk order (which is lexicographic by
relative path) before yielding them, so worker scheduling never changes the
output.
"""

from __future__ import annotations

import os
import queue
import stat
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from archive_repo.cache import ChangeCache
from archive_repo.config import (
    IGNORE_FILE_NAMES,
    ChangeClass,
    Diagnostic,
    DiagnosticKind,
    Entry,
    EntryKind,
    FileRecord,
    FilterConfig,
    FilterDecision,
    FilterReason,
    RunSummary,
)
from archive_repo.exceptions import CacheWriteError, EntryReadError, PatternSyntaxError, RootNotFoundError
from archive_repo.file_manipulation import read_file_bytes, sha256_bytes
from archive_repo.filters import FilterChain
from archive_repo.logging import logger
from archive_repo.patterns import PatternSet, load_ignore_file

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    from archive_repo.cache import Fingerprint

_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class _WorkItem:
    seq: int
    entry: Entry


@dataclass
class _Outcome:
    seq: int
    entry: Entry
    record: FileRecord | None = None
    fingerprint: Fingerprint | None = None
    rejection: FilterDecision | None = None
    cancelled: bool = False


@dataclass(frozen=True)
class _WalkDone:
    dispatched: int
    error: BaseException | None = None


@dataclass
class _StackItem:
    path: Path
    relative_path: str
    patterns: PatternSet
    is_dir: bool
    st: os.stat_result | None = None
    via_symlink: bool = False


@dataclass
class _WalkState:
    rejected: dict[FilterReason, int] = field(default_factory=dict)
    visited_dirs: set[tuple[int, int]] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def count_rejection(self, reason: FilterReason) -> None:
        with self.lock:
            self.rejected[reason] = self.rejected.get(reason, 0) + 1

    def rejection_counts(self) -> dict[FilterReason, int]:
        with self.lock:
            return dict(self.rejected)


def default_worker_count() -> int:
    """Available parallelism of this process (at least 1)."""
    return os.process_cpu_count() or 1


class Scheduler:
    """Walk a tree and produce an ordered stream of FileRecords.

    Args:
        root: Directory to archive.
        pattern_set: Root-level ignore rules (global excludes, command-line globs).
        filter_config: Extension, size, hidden and binary settings.
        cache: Change cache; use ``ChangeCache.disabled()`` for full runs.
        worker_count: Reader threads; defaults to the available parallelism.
        queue_size: Capacity of the work queue; defaults to four per worker.
        includes: Allow-list globs, a file must match one when non-empty.
        skip_unchanged: Emit unchanged files without reading them (content None).
        fail_fast: Raise EntryReadError at the first file that cannot be read.
        hash_content: Fill FileRecord.sha256 for every file read.
        respect_ignore_files: Read ignore files found in walked directories.
        ignore_file_names: Names of the per-directory ignore files.
        follow_symlinks: Follow symlinks to files and directories.
        persist_cache: Persist the cache when the stream is exhausted.
        cancel_event: Set it to stop dispatching new work.
        on_progress: Called from worker threads with each finished relative path.
    """

    def __init__(  # noqa: PLR0913
        self,
        root: Path,
        pattern_set: PatternSet | None = None,
        filter_config: FilterConfig | None = None,
        cache: ChangeCache | None = None,
        worker_count: int | None = None,
        *,
        queue_size: int | None = None,
        includes: PatternSet | None = None,
        skip_unchanged: bool = False,
        fail_fast: bool = False,
        hash_content: bool = True,
        respect_ignore_files: bool = True,
        ignore_file_names: Sequence[str] = IGNORE_FILE_NAMES,
        follow_symlinks: bool = True,
        persist_cache: bool = True,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        root = Path(root)
        if not root.is_dir():
            raise RootNotFoundError(root=root)
        self.root = root.resolve()
        self.pattern_set = pattern_set if pattern_set is not None else PatternSet()
        self.chain = FilterChain(filter_config, includes=includes)
        self.cache = cache if cache is not None else ChangeCache.disabled()
        self.worker_count = max(1, worker_count or default_worker_count())
        self.queue_size = max(1, queue_size or 4 * self.worker_count)
        # files dispatched but not yet consumed: queued, being read, or waiting for reordering
        self.max_in_flight = self.queue_size + self.worker_count
        self.skip_unchanged = skip_unchanged
        self.fail_fast = fail_fast
        self.hash_content = hash_content
        self.respect_ignore_files = respect_ignore_files
        self.ignore_file_names = tuple(ignore_file_names)
        self.follow_symlinks = follow_symlinks
        self.persist_cache = persist_cache
        self.cancel_event = cancel_event or threading.Event()
        self.on_progress = on_progress
        self.run_id = ""
        self.summary = RunSummary()
        self.diagnostics: list[Diagnostic] = []
        self._diag_lock = threading.Lock()

    # ------------------------------------------------------------------ public

    def cancel(self) -> None:
        """Stop dispatching; files already being read are finished and emitted."""
        self.cancel_event.set()

    def run(self) -> Iterator[FileRecord]:  # noqa: C901, PLR0912, PLR0915
        """Yield one FileRecord per admitted file, ordered by relative path.

        Per-file read failures are yielded as records with `error` set. When the
        stream is exhausted the cache is persisted (pruning deletions unless the
        run was cancelled) and `summary` is filled in.

        Raises:
            PatternSyntaxError: if an ignore file in the root directory is
                malformed; raised before any record is yielded.
            EntryReadError: on the first unreadable file when `fail_fast` is set.

        Yields:
            FileRecord: records in lexicographic order of `relative_path`.
        """
        started = time.perf_counter()
        self.run_id = uuid.uuid4().hex
        self.diagnostics = []
        if self.cache.load_error:
            self._diagnose(DiagnosticKind.CACHE_LOAD_ERROR, str(self.cache.path or ""), self.cache.load_error)
        root_patterns = self._directory_patterns(self.root, "", self.pattern_set)

        work: queue.Queue[_WorkItem | None] = queue.Queue(maxsize=self.queue_size)
        results: queue.Queue[_Outcome | _WalkDone] = queue.Queue()
        in_flight = threading.BoundedSemaphore(self.max_in_flight)
        stop = threading.Event()
        walk_state = _WalkState()

        walker = threading.Thread(
            target=self._walk,
            args=(work, results, stop, walk_state, root_patterns, in_flight),
            name="archive-walker",
            daemon=True,
        )
        workers = [
            threading.Thread(
                target=self._work,
                args=(work, results, stop),
                name=f"archive-worker-{i}",
                daemon=True,
            )
            for i in range(self.worker_count)
        ]
        for thread in (walker, *workers):
            thread.start()

        counts: dict[ChangeClass, int] = dict.fromkeys(ChangeClass, 0)
        errored = 0
        bytes_processed = 0
        present: set[str] = set()
        pending: dict[int, _Outcome] = {}
        next_seq = 0
        total: int | None = None
        completed = False
        try:
            while total is None or next_seq < total:
                item = results.get()
                if isinstance(item, _WalkDone):
                    if item.error is not None:
                        raise item.error
                    total = item.dispatched
                else:
                    pending[item.seq] = item
                while next_seq in pending:
                    outcome = pending.pop(next_seq)
                    next_seq += 1
                    record = outcome.record
                    if outcome.rejection is not None:
                        walk_state.count_rejection(outcome.rejection.reason)
                    if outcome.cancelled or record is None:
                        in_flight.release()
                        continue
                    present.add(record.relative_path)
                    if record.is_error:
                        errored += 1
                        if self.fail_fast:
                            raise EntryReadError(path=record.relative_path, cause=record.error or "")
                    else:
                        counts[record.change_class] += 1
                        if record.content is not None:
                            bytes_processed += len(record.content)
                    yield record
                    if not record.is_error:
                        # only emitted, successfully produced records reach the cache
                        self.cache.record_seen(outcome.entry, outcome.fingerprint)
                    # the slot frees once the consumer has moved past the record
                    in_flight.release()
            completed = True
        finally:
            stop.set()
            walker.join()
            for thread in workers:
                thread.join()
            cancelled = self.cancel_event.is_set()
            deleted: list[str] = []
            cache_warning = ""
            if completed:
                deleted = [] if cancelled else self.cache.deleted_paths(present)
                if self.persist_cache:
                    try:
                        self.cache.finalize_and_persist(self.run_id, prune=not cancelled)
                    except CacheWriteError as e:
                        cache_warning = str(e)
                        self._diagnose(DiagnosticKind.CACHE_WRITE_ERROR, str(e.path), e.cause)
            self.summary = RunSummary(
                new=counts[ChangeClass.NEW],
                modified=counts[ChangeClass.MODIFIED],
                unchanged=counts[ChangeClass.UNCHANGED],
                deleted=len(deleted),
                errored=errored,
                rejected=walk_state.rejection_counts(),
                bytes_processed=bytes_processed,
                elapsed_seconds=time.perf_counter() - started,
                cancelled=cancelled,
                cache_warning=cache_warning,
                deleted_paths=deleted,
                diagnostics=list(self.diagnostics),
            )
            if completed:
                logger.info(
                    "run_complete",
                    root=str(self.root),
                    status=self.summary.status,
                    new=self.summary.new,
                    modified=self.summary.modified,
                    unchanged=self.summary.unchanged,
                    deleted=self.summary.deleted,
                    errored=self.summary.errored,
                    elapsed=round(self.summary.elapsed_seconds, 3),
                )

    def collect(self) -> list[FileRecord]:
        """Run to completion and return the records as a list."""
        return list(self.run())

    # ----------------------------------------------------------------- walking

    def _diagnose(self, kind: DiagnosticKind, path: str, message: str) -> None:
        diagnostic = Diagnostic(kind=kind, path=path, message=message)
        with self._diag_lock:
            self.diagnostics.append(diagnostic)
        logger.warning(kind.value, path=path, message=message)

    def _reject(self, state: _WalkState, decision: FilterDecision, rel: str) -> None:
        state.count_rejection(decision.reason)
        logger.debug("entry_rejected", path=rel, reason=decision.reason.value, detail=decision.detail)

    def _acquire(self, in_flight: threading.BoundedSemaphore, stop: threading.Event) -> bool:
        """Wait for a free in-flight slot; the aggregator frees one per consumed record."""
        while not stop.is_set():
            if in_flight.acquire(timeout=_POLL_SECONDS):
                return True
        return False

    def _put(self, work: queue.Queue[_WorkItem | None], item: _WorkItem, stop: threading.Event) -> bool:
        """Block until the item is queued (backpressure) or the run is stopped."""
        while not stop.is_set():
            try:
                work.put(item, timeout=_POLL_SECONDS)
            except queue.Full:
                continue
            return True
        return False

    def _directory_patterns(self, directory: Path, rel: str, patterns: PatternSet) -> PatternSet:
        """Extend `patterns` with the ignore files found in `directory`.

        A malformed ignore file in the root aborts the run. Deeper down the
        file is skipped as a whole (never partially applied) and reported.
        """
        if not self.respect_ignore_files:
            return patterns
        for name in self.ignore_file_names:
            candidate = directory / name
            if not candidate.is_file():
                continue
            label = f"{rel}/{name}" if rel else name
            try:
                source = load_ignore_file(candidate, self.root)
            except OSError as e:
                self._diagnose(DiagnosticKind.READ_ERROR, label, str(e))
                continue
            try:
                patterns = patterns.extend([source])
            except PatternSyntaxError as e:
                if not rel:
                    raise
                self._diagnose(DiagnosticKind.PATTERN_SYNTAX_ERROR, label, str(e))
        return patterns

    def _scan(self, item: _StackItem) -> list[_StackItem]:
        """List a directory's children in reverse order of their sort key."""
        patterns = item.patterns
        if item.relative_path:
            patterns = self._directory_patterns(item.path, item.relative_path, patterns)
        children: list[tuple[str, _StackItem]] = []
        with os.scandir(item.path) as it:
            for dirent in it:
                rel = f"{item.relative_path}/{dirent.name}" if item.relative_path else dirent.name
                child_path = Path(dirent.path)
                try:
                    is_link = dirent.is_symlink()
                    is_dir = dirent.is_dir(follow_symlinks=False)
                except OSError:
                    is_link = False
                    is_dir = False
                if is_link:
                    if not self.follow_symlinks:
                        logger.debug("symlink_not_followed", path=rel)
                        continue
                    try:
                        target_st = child_path.stat()
                    except OSError as e:
                        # dangling link: reported through the worker as a read error
                        children.append((dirent.name, _StackItem(child_path, rel, patterns, is_dir=False, via_symlink=True)))
                        logger.debug("dangling_symlink", path=rel, error=str(e))
                        continue
                    is_dir = stat.S_ISDIR(target_st.st_mode)
                    if not is_dir and not stat.S_ISREG(target_st.st_mode):
                        logger.debug("special_file_skipped", path=rel)
                        continue
                    child = _StackItem(child_path, rel, patterns, is_dir=is_dir, st=target_st, via_symlink=True)
                elif is_dir or dirent.is_file(follow_symlinks=False):
                    child = _StackItem(child_path, rel, patterns, is_dir=is_dir)
                else:
                    # sockets, fifos and devices are never read
                    logger.debug("special_file_skipped", path=rel)
                    continue
                # "name/" for directories makes depth-first order equal to path order
                children.append((dirent.name + ("/" if child.is_dir else ""), child))
        children.sort(key=lambda pair: pair[0], reverse=True)
        return [child for _, child in children]

    def _entry_for(self, item: _StackItem) -> Entry:
        if item.st is None:
            item.st = item.path.stat() if item.via_symlink else item.path.lstat()
        if item.is_dir:
            kind = EntryKind.DIRECTORY
        elif item.via_symlink:
            kind = EntryKind.SYMLINK
        else:
            kind = EntryKind.FILE
        return Entry.from_stat(item.path, item.relative_path, item.st, kind=kind)

    def _walk(  # noqa: C901
        self,
        work: queue.Queue[_WorkItem | None],
        results: queue.Queue[_Outcome | _WalkDone],
        stop: threading.Event,
        state: _WalkState,
        root_patterns: PatternSet,
        in_flight: threading.BoundedSemaphore,
    ) -> None:
        dispatched = 0
        error: BaseException | None = None
        try:
            root_st = self.root.stat()
            state.visited_dirs.add((root_st.st_dev, root_st.st_ino))
            stack: list[_StackItem] = [_StackItem(self.root, "", root_patterns, is_dir=True, st=root_st)]
            while stack:
                if stop.is_set() or self.cancel_event.is_set():
                    break
                item = stack.pop()

                if item.is_dir:
                    if item.relative_path:
                        try:
                            entry = self._entry_for(item)
                        except OSError as e:
                            logger.debug("directory_vanished", path=item.relative_path, error=str(e))
                            continue
                        decision = self.chain.evaluate(entry, item.patterns, sniff=False)
                        if not decision.admitted:
                            self._reject(state, decision, item.relative_path)
                            continue
                        if item.via_symlink and item.st is not None:
                            identity = (item.st.st_dev, item.st.st_ino)
                            if identity in state.visited_dirs:
                                self._diagnose(
                                    DiagnosticKind.SYMLINK_CYCLE_SKIPPED,
                                    item.relative_path,
                                    "symlink target already visited in this walk",
                                )
                                continue
                            state.visited_dirs.add(identity)
                        elif item.st is not None:
                            state.visited_dirs.add((item.st.st_dev, item.st.st_ino))
                    try:
                        stack.extend(self._scan(item))
                    except PermissionError as e:
                        self._diagnose(DiagnosticKind.READ_ERROR, item.relative_path or ".", str(e))
                    except FileNotFoundError as e:
                        logger.debug("directory_vanished", path=item.relative_path, error=str(e))
                    continue

                try:
                    entry = self._entry_for(item)
                except OSError:
                    # dangling symlink or vanished file: judged on its name alone
                    entry = Entry(
                        absolute_path=item.path,
                        relative_path=item.relative_path,
                        entry_kind=EntryKind.SYMLINK if item.via_symlink else EntryKind.FILE,
                        is_hidden=any(p.startswith(".") for p in item.relative_path.split("/")),
                    )
                decision = self.chain.evaluate(entry, item.patterns, sniff=False)
                if not decision.admitted:
                    self._reject(state, decision, item.relative_path)
                    continue
                if not self._acquire(in_flight, stop):
                    break
                if not self._put(work, _WorkItem(dispatched, entry), stop):
                    break
                dispatched += 1
        except BaseException as e:  # noqa: BLE001
            error = e
        finally:
            for _ in range(self.worker_count):
                work.put(None)
            results.put(_WalkDone(dispatched, error))

    # ----------------------------------------------------------------- workers

    def _work(
        self,
        work: queue.Queue[_WorkItem | None],
        results: queue.Queue[_Outcome | _WalkDone],
        stop: threading.Event,
    ) -> None:
        while True:
            item = work.get()
            if item is None:
                return
            if stop.is_set():
                continue
            if self.cancel_event.is_set():
                results.put(_Outcome(item.seq, item.entry, cancelled=True))
                continue
            try:
                outcome = self._process(item)
            except Exception as e:  # noqa: BLE001
                logger.exception("worker_failed", path=item.entry.relative_path)
                outcome = self._error_outcome(item, f"{type(e).__name__}: {e}")
            results.put(outcome)
            if self.on_progress is not None and outcome.record is not None:
                try:
                    self.on_progress(item.entry.relative_path)
                except Exception:
                    logger.exception("progress_callback_failed", path=item.entry.relative_path)

    def _error_outcome(self, item: _WorkItem, cause: str) -> _Outcome:
        entry = item.entry
        self._diagnose(DiagnosticKind.READ_ERROR, entry.relative_path, cause)
        record = FileRecord(
            relative_path=entry.relative_path,
            change_class=ChangeClass.MODIFIED if entry.relative_path in self.cache else ChangeClass.NEW,
            byte_size=entry.byte_size,
            modified_time=entry.modified_time,
            error=cause,
        )
        return _Outcome(item.seq, entry, record=record)

    def _process(self, item: _WorkItem) -> _Outcome:
        """Sniff, classify and read one admitted file."""
        entry = item.entry
        decision = self.chain.check_content(entry)
        if decision.reason is FilterReason.READ_ERROR:
            return self._error_outcome(item, decision.detail)
        if not decision.admitted:
            logger.debug("entry_rejected", path=entry.relative_path, reason=decision.reason.value)
            return _Outcome(item.seq, entry, rejection=decision)

        try:
            fingerprint = self.cache.fingerprint(entry)
        except OSError as e:
            return self._error_outcome(item, f"{type(e).__name__}: {e.strerror or e}")
        change = self.cache.classify(entry, fingerprint)

        if self.skip_unchanged and change is ChangeClass.UNCHANGED:
            record = FileRecord(
                relative_path=entry.relative_path,
                change_class=change,
                content=None,
                byte_size=entry.byte_size,
                modified_time=entry.modified_time,
                sha256=fingerprint.sha256,
            )
            return _Outcome(item.seq, entry, record=record, fingerprint=fingerprint)

        try:
            content = read_file_bytes(entry.absolute_path)
        except OSError as e:
            return self._error_outcome(item, f"{type(e).__name__}: {e.strerror or e}")

        digest = fingerprint.sha256 or (sha256_bytes(content) if self.hash_content else "")
        record = FileRecord(
            relative_path=entry.relative_path,
            change_class=change,
            content=content,
            byte_size=len(content),
            modified_time=entry.modified_time,
            sha256=digest,
        )
        return _Outcome(item.seq, entry, record=record, fingerprint=fingerprint)


def run(
    root: Path,
    pattern_set: PatternSet | None = None,
    filter_config: FilterConfig | None = None,
    cache: ChangeCache | None = None,
    worker_count: int | None = None,
    **options: object,
) -> Iterator[FileRecord]:
    """Functional shorthand for ``Scheduler(...).run()``."""
    return Scheduler(root, pattern_set, filter_config, cache, worker_count, **options).run()  # type: ignore[arg-type]

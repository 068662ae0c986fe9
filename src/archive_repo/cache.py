"""Incremental change cache.

The cache maps each file's relative path to the fingerprint it had when last
emitted. It is loaded once before a run (the lookup table is then read-only),
accumulates a write-set while records are emitted, and is persisted atomically
at the end of the run. Entries not seen during a complete run are dropped,
which is how deletions are detected.
"""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from archive_repo.config import ChangeClass
from archive_repo.exceptions import CacheLoadError, CacheWriteError
from archive_repo.file_manipulation import atomic_write_text, sha256_file
from archive_repo.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from pathlib import Path

    from archive_repo.config import Entry

CACHE_FORMAT_VERSION = 1

# Coarsest first; a timestamp that is an exact multiple of one of these was
# probably truncated by the filesystem (FAT: 2 s, ext3/HFS+: 1 s, ...).
MTIME_GRANULARITIES_NS: tuple[int, ...] = (2_000_000_000, 1_000_000_000, 1_000_000, 1_000)


class Fingerprint(BaseModel):
    """Comparable signature of a file's content."""

    model_config = ConfigDict(frozen=True)

    mtime_ns: int
    size: int = Field(ge=0)
    sha256: str = ""


class CacheRecord(BaseModel):
    """Persisted per-file fingerprint from a prior run."""

    model_config = ConfigDict(frozen=True)

    relative_path: str
    fingerprint: Fingerprint
    last_seen_run_id: str


class CacheDocument(BaseModel):
    """On-disk layout of the cache file."""

    format_version: int
    run_id: str = ""
    strict: bool = False
    records: list[CacheRecord] = Field(default_factory=list)


def mtime_granularity(mtime_ns: int) -> int:
    """Guess the timestamp resolution that produced `mtime_ns` (1 when precise)."""
    for granularity in MTIME_GRANULARITIES_NS:
        if mtime_ns % granularity == 0:
            return granularity
    return 1


def mtimes_equivalent(stored_ns: int, current_ns: int) -> bool:
    """Compare modification times, tolerating coarse timestamp granularity.

    A timestamp equal to, or earlier than, the other one by less than its own
    detected granularity is treated as the same instant.
    """
    if stored_ns == current_ns:
        return True
    if current_ns < stored_ns:
        return stored_ns - current_ns < mtime_granularity(current_ns)
    return current_ns - stored_ns < mtime_granularity(stored_ns)


class ChangeCache:
    """Prior-run fingerprints plus the write-set of the current run.

    Args:
        path: Where the cache is persisted; None keeps it in memory only.
        records: Prior-run records keyed by relative path.
        strict: Fingerprint with a content hash in addition to mtime and size.
        load_error: Why loading fell back to an empty table, if it did.
    """

    def __init__(
        self,
        path: Path | None = None,
        records: Mapping[str, CacheRecord] | None = None,
        *,
        strict: bool = False,
        load_error: str = "",
    ) -> None:
        self.path = path
        self.strict = strict
        self.load_error = load_error
        self._previous: Mapping[str, CacheRecord] = MappingProxyType(dict(records or {}))
        self._seen: dict[str, Fingerprint] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._previous)

    def __contains__(self, relative_path: object) -> bool:
        return relative_path in self._previous

    @property
    def previous(self) -> Mapping[str, CacheRecord]:
        return self._previous

    @classmethod
    def disabled(cls, *, strict: bool = False) -> ChangeCache:
        """Return an empty cache that never touches the disk."""
        return cls(None, strict=strict)

    @classmethod
    def load(cls, cache_path: Path, *, strict: bool = False) -> ChangeCache:
        """Load a cache file.

        A missing, unreadable or corrupt file, or one written in the other
        `strict` mode, is not an error: the cache comes back empty so every
        file is classified new.

        Args:
            cache_path (Path): the cache file
            strict (bool, optional): fingerprint with content hashes. Defaults to False.

        Returns:
            ChangeCache: the loaded (or empty) cache
        """
        try:
            records = cls._read(cache_path, strict=strict)
        except CacheLoadError as e:
            logger.warning("cache_load_error", path=str(cache_path), cause=e.cause)
            return cls(cache_path, strict=strict, load_error=str(e))
        logger.debug("cache_loaded", path=str(cache_path), records=len(records))
        return cls(cache_path, records, strict=strict)

    @staticmethod
    def _read(cache_path: Path, *, strict: bool) -> dict[str, CacheRecord]:
        if not cache_path.exists():
            raise CacheLoadError(path=cache_path, cause="no cache file (first run)")
        try:
            raw = cache_path.read_text(encoding="utf-8")
        except OSError as e:
            raise CacheLoadError(path=cache_path, cause=str(e)) from e
        try:
            document = CacheDocument.model_validate_json(raw)
        except ValidationError as e:
            raise CacheLoadError(path=cache_path, cause=f"corrupt cache: {e.error_count()} error(s)") from e
        if document.format_version != CACHE_FORMAT_VERSION:
            raise CacheLoadError(
                path=cache_path,
                cause=f"unsupported format version {document.format_version}",
            )
        if document.strict != strict:
            # fingerprints of the other mode do not compare
            raise CacheLoadError(path=cache_path, cause=f"cache written in strict={document.strict} mode")
        return {rec.relative_path: rec for rec in document.records}

    def fingerprint(self, entry: Entry) -> Fingerprint:
        """Fingerprint an entry; strict mode hashes the content (may raise OSError)."""
        digest = sha256_file(entry.absolute_path) if self.strict else ""
        return Fingerprint(mtime_ns=entry.modified_time_ns, size=entry.byte_size, sha256=digest)

    def classify(self, entry: Entry, fingerprint: Fingerprint | None = None) -> ChangeClass:
        """Compare an entry against the prior-run record for its path.

        Args:
            entry (Entry): the admitted entry
            fingerprint (Fingerprint | None, optional): precomputed fingerprint.
                Computed with :meth:`fingerprint` when omitted.

        Returns:
            ChangeClass: new, modified or unchanged
        """
        record = self._previous.get(entry.relative_path)
        if record is None:
            return ChangeClass.NEW
        current = fingerprint or self.fingerprint(entry)
        stored = record.fingerprint
        if stored.size != current.size:
            return ChangeClass.MODIFIED
        if self.strict and stored.sha256 and current.sha256:
            return ChangeClass.UNCHANGED if stored.sha256 == current.sha256 else ChangeClass.MODIFIED
        if mtimes_equivalent(stored.mtime_ns, current.mtime_ns):
            return ChangeClass.UNCHANGED
        return ChangeClass.MODIFIED

    def record_seen(self, entry: Entry, fingerprint: Fingerprint | None = None) -> None:
        """Add an emitted entry to the write-set. Safe to call from any thread."""
        fp = fingerprint or Fingerprint(mtime_ns=entry.modified_time_ns, size=entry.byte_size)
        with self._lock:
            self._seen[entry.relative_path] = fp

    @property
    def seen_paths(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._seen)

    def deleted_paths(self, present: Iterable[str] | None = None) -> list[str]:
        """List prior-run paths absent from this run.

        Args:
            present (Iterable[str] | None, optional): paths that still exist this
                run. Defaults to the paths recorded as seen.

        Returns:
            list[str]: sorted relative paths
        """
        keep = set(present) if present is not None else self.seen_paths
        return sorted(p for p in self._previous if p not in keep)

    def build_document(self, run_id: str, *, prune: bool = True) -> CacheDocument:
        """Assemble the table to persist for `run_id`.

        With `prune`, records not seen this run are dropped; without it (an
        interrupted run) they are carried over untouched.
        """
        with self._lock:
            seen = dict(self._seen)
        rows = {
            rel: CacheRecord(relative_path=rel, fingerprint=fp, last_seen_run_id=run_id)
            for rel, fp in seen.items()
        }
        if not prune:
            for rel, rec in self._previous.items():
                rows.setdefault(rel, rec)
        return CacheDocument(
            format_version=CACHE_FORMAT_VERSION,
            run_id=run_id,
            strict=self.strict,
            records=[rows[rel] for rel in sorted(rows)],
        )

    def finalize_and_persist(self, run_id: str, *, prune: bool = True) -> list[str]:
        """Write the new table atomically and return the paths it dropped.

        Args:
            run_id (str): identifier stored as `last_seen_run_id`
            prune (bool, optional): drop records not seen this run. Defaults to True.

        Raises:
            CacheWriteError: if the file cannot be written; the previous cache
                file, if any, is left intact.

        Returns:
            list[str]: relative paths removed from the cache
        """
        document = self.build_document(run_id, prune=prune)
        dropped = self.deleted_paths() if prune else []
        if self.path is None:
            return dropped
        try:
            atomic_write_text(self.path, document.model_dump_json(indent=1))
        except OSError as e:
            raise CacheWriteError(path=self.path, cause=str(e)) from e
        logger.debug("cache_persisted", path=str(self.path), records=len(document.records), dropped=len(dropped))
        return dropped

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ArchiveRepoError(Exception):
    """Base exception for errors in the archive_repo module."""

    def __str__(self) -> str:
        return getattr(self, "message", self.__class__.__name__)


@dataclass(frozen=True)
class PatternSyntaxError(ArchiveRepoError):
    """Raised when an ignore or include pattern cannot be compiled.

    Compilation is aborted as a whole, so no partial rule set is ever applied.
    """

    source: str
    line_number: int
    pattern: str
    reason: str

    def __str__(self) -> str:
        return f"{self.source}:{self.line_number}: invalid pattern {self.pattern!r} ({self.reason})"


@dataclass(frozen=True)
class EntryReadError(ArchiveRepoError):
    """Raised when a single file cannot be read."""

    path: str
    cause: str

    def __str__(self) -> str:
        return f"cannot read {self.path}: {self.cause}"


@dataclass(frozen=True)
class CacheLoadError(ArchiveRepoError):
    """Raised internally when a cache file is missing or corrupt; always recovered."""

    path: Path
    cause: str

    def __str__(self) -> str:
        return f"cannot load cache {self.path}: {self.cause}"


@dataclass(frozen=True)
class CacheWriteError(ArchiveRepoError):
    """Raised when the cache cannot be persisted. The archive output stays valid."""

    path: Path
    cause: str

    def __str__(self) -> str:
        return f"cannot write cache {self.path}: {self.cause}"


@dataclass(frozen=True)
class RootNotFoundError(ArchiveRepoError):
    """Raised when the archive root does not exist or is not a directory."""

    root: Path
    message: str = "The archive root does not exist or is not a directory."

    def __str__(self) -> str:
        return f"{self.message} ({self.root})"


@dataclass(frozen=True)
class NotAGitRepositoryError(ArchiveRepoError):
    """Raised when the specified directory is not a Git repository."""

    folder: Path
    message: str = "The specified directory is not a Git repository."

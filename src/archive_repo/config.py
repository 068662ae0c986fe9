from __future__ import annotations

import os
import stat
from enum import StrEnum, auto
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


class FileType(StrEnum):
    """Categorization of file types for export purposes.

    This is a heuristic classification based on file extensions, used to pick
    a code fence language when rendering records.
    """

    TEXT = auto()
    BINARY = auto()
    IMAGE = auto()
    PYTHON = auto()
    TOML = auto()
    JSON = auto()
    MARKDOWN = auto()
    YAML = auto()
    HTML = auto()
    CSS = auto()
    JAVASCRIPT = auto()
    TYPESCRIPT = auto()
    BASH = auto()
    RUST = auto()
    GO = auto()
    PHP = auto()
    SQL = auto()
    JAVA = auto()
    C = auto()
    CPP = auto()
    XML = auto()
    INI = auto()
    OTHER = auto()


EXT2LANG: dict[str, FileType] = {
    ".bash": FileType.BASH,
    ".bmp": FileType.IMAGE,
    ".c": FileType.C,
    ".cc": FileType.CPP,
    ".cfg": FileType.INI,
    ".conf": FileType.INI,
    ".cpp": FileType.CPP,
    ".css": FileType.CSS,
    ".cxx": FileType.CPP,
    ".gif": FileType.IMAGE,
    ".go": FileType.GO,
    ".h": FileType.C,
    ".hpp": FileType.CPP,
    ".htm": FileType.HTML,
    ".html": FileType.HTML,
    ".ini": FileType.INI,
    ".java": FileType.JAVA,
    ".jpeg": FileType.IMAGE,
    ".jpg": FileType.IMAGE,
    ".js": FileType.JAVASCRIPT,
    ".json": FileType.JSON,
    ".markdown": FileType.MARKDOWN,
    ".md": FileType.MARKDOWN,
    ".mjs": FileType.JAVASCRIPT,
    ".php": FileType.PHP,
    ".png": FileType.IMAGE,
    ".py": FileType.PYTHON,
    ".rs": FileType.RUST,
    ".sh": FileType.BASH,
    ".sql": FileType.SQL,
    ".svg": FileType.IMAGE,
    ".toml": FileType.TOML,
    ".ts": FileType.TYPESCRIPT,
    ".tsx": FileType.TYPESCRIPT,
    ".txt": FileType.TEXT,
    ".webp": FileType.IMAGE,
    ".xml": FileType.XML,
    ".yaml": FileType.YAML,
    ".yml": FileType.YAML,
    ".zsh": FileType.BASH,
}

_FENCE_LANGUAGE: dict[FileType, str] = {
    FileType.PYTHON: "python",
    FileType.TOML: "toml",
    FileType.JSON: "json",
    FileType.MARKDOWN: "markdown",
    FileType.YAML: "yaml",
    FileType.HTML: "html",
    FileType.CSS: "css",
    FileType.JAVASCRIPT: "javascript",
    FileType.TYPESCRIPT: "typescript",
    FileType.BASH: "bash",
    FileType.RUST: "rust",
    FileType.GO: "go",
    FileType.PHP: "php",
    FileType.SQL: "sql",
    FileType.JAVA: "java",
    FileType.C: "c",
    FileType.CPP: "cpp",
    FileType.XML: "xml",
    FileType.INI: "ini",
    FileType.IMAGE: "",
    FileType.BINARY: "",
    FileType.TEXT: "",
    FileType.OTHER: "",
}

# Global excludes, compiled as the first (lowest precedence) root-level source.
DEFAULT_EXCLUDES: tuple[str, ...] = (
    # version control
    ".git/",
    ".hg/",
    ".svn/",
    # dependencies and virtual environments
    "node_modules/",
    ".venv/",
    "venv/",
    "vendor/",
    # build outputs
    "target/",
    "dist/",
    "build/",
    ".next/",
    ".nuxt/",
    "coverage/",
    "htmlcov/",
    # tool caches
    "__pycache__/",
    ".mypy_cache/",
    ".ruff_cache/",
    ".pytest_cache/",
    ".tox/",
    ".ipynb_checkpoints/",
    ".cache/",
    ".idea/",
    ".vscode/",
    # compiled artifacts
    "*.py[cod]",
    "*.so",
    "*.dll",
    "*.dylib",
    "*.o",
    "*.class",
    # lock files
    "package-lock.json",
    "yarn.lock",
    "Cargo.lock",
    "poetry.lock",
    "uv.lock",
    # OS junk and editor leftovers
    ".DS_Store",
    "Thumbs.db",
    "*.swp",
    "*~",
)

IGNORE_FILE_NAMES: tuple[str, ...] = (".gitignore", ".ignore", ".archiveignore")


class EntryKind(StrEnum):
    """Kind of filesystem node met during traversal."""

    FILE = auto()
    DIRECTORY = auto()
    SYMLINK = auto()


class HiddenPolicy(StrEnum):
    """What to do with dot-files and dot-directories."""

    INCLUDE = auto()
    EXCLUDE = auto()


class FilterReason(StrEnum):
    """Why a FilterChain admitted or rejected an entry."""

    ADMITTED = auto()
    PATTERN_EXCLUDED = auto()
    EXTENSION_DENIED = auto()
    SIZE_EXCEEDED = auto()
    HIDDEN_EXCLUDED = auto()
    BINARY_EXCLUDED = auto()
    READ_ERROR = auto()


class ChangeClass(StrEnum):
    """Classification of a file against the previous run."""

    NEW = auto()
    MODIFIED = auto()
    UNCHANGED = auto()
    DELETED = auto()


class GitStatus(StrEnum):
    """Working tree state of a file as reported by `git status`."""

    UNMODIFIED = auto()
    MODIFIED = auto()
    ADDED = auto()
    DELETED = auto()
    RENAMED = auto()
    COPIED = auto()
    UNTRACKED = auto()
    IGNORED = auto()


class DiagnosticKind(StrEnum):
    """Kinds of per-entry diagnostics pushed to the logging layer."""

    SYMLINK_CYCLE_SKIPPED = auto()
    READ_ERROR = auto()
    PATTERN_SYNTAX_ERROR = auto()
    CACHE_LOAD_ERROR = auto()
    CACHE_WRITE_ERROR = auto()


def guess_file_type(path: Path | str) -> FileType:
    """Heuristic guess of file type based on extension.

    Args:
        path (Path | str): The file path to guess the type for.

    Returns:
        FileType: The guessed file type, or FileType.OTHER if unknown.
    """
    return EXT2LANG.get(Path(path).suffix.lower(), FileType.OTHER)


def guess_language(file_type: FileType) -> str:
    """Get the suggested code fence language for a given file type.

    Args:
        file_type (FileType): The categorized file type.

    Returns:
        str: The suggested language name for code fences, or empty string if none.
    """
    return _FENCE_LANGUAGE.get(file_type, "")


def normalize_extension(ext: str) -> str:
    """Lower-case an extension and give it a leading dot ("PY" -> ".py")."""
    ext = ext.strip().lower()
    if not ext:
        return ""
    return ext if ext.startswith(".") else f".{ext}"


class Entry(BaseModel):
    """One filesystem node encountered during a walk.

    Attributes:
        absolute_path: Path on disk (not resolved, symlinks stay symlinks).
        relative_path: POSIX path relative to the archive root; the identity key.
        entry_kind: File, directory or symlink (from `lstat`).
        byte_size: Size in bytes of the entry (of the target for followed symlinks).
        modified_time_ns: Modification time in nanoseconds.
        is_hidden: Whether any component of `relative_path` starts with a dot.
    """

    model_config = ConfigDict(frozen=True)

    absolute_path: Path
    relative_path: str
    entry_kind: EntryKind
    byte_size: int = Field(default=0, ge=0)
    modified_time_ns: int = 0
    is_hidden: bool = False

    @computed_field
    @property
    def modified_time(self) -> float:
        """POSIX modification time in seconds."""
        return self.modified_time_ns / 1_000_000_000

    @property
    def is_directory(self) -> bool:
        return self.entry_kind is EntryKind.DIRECTORY

    @property
    def suffix(self) -> str:
        return Path(self.relative_path).suffix.lower()

    @classmethod
    def from_stat(cls, path: Path, relative_path: str, st: os.stat_result, *, kind: EntryKind | None = None) -> Entry:
        """Build an entry from an already fetched stat result."""
        if kind is None:
            if stat.S_ISLNK(st.st_mode):
                kind = EntryKind.SYMLINK
            elif stat.S_ISDIR(st.st_mode):
                kind = EntryKind.DIRECTORY
            else:
                kind = EntryKind.FILE
        return cls(
            absolute_path=path,
            relative_path=relative_path,
            entry_kind=kind,
            byte_size=st.st_size,
            modified_time_ns=st.st_mtime_ns,
            is_hidden=any(part.startswith(".") for part in relative_path.split("/") if part not in {"", "."}),
        )

    @classmethod
    def from_path(cls, path: Path, root: Path) -> Entry:
        """Build an entry from `lstat` of `path`, relative to `root`."""
        rel = path.relative_to(root).as_posix()
        return cls.from_stat(path, rel, path.lstat())


class FilterConfig(BaseModel):
    """Orthogonal predicates combined with the PatternSet by the FilterChain."""

    model_config = ConfigDict(frozen=True)

    include_extensions: frozenset[str] = Field(default_factory=frozenset)
    exclude_extensions: frozenset[str] = Field(default_factory=frozenset)
    max_file_size: int | None = Field(default=None, ge=0)
    hidden_policy: HiddenPolicy = HiddenPolicy.EXCLUDE
    skip_binary: bool = True
    binary_sniff_bytes: int = Field(default=8192, gt=0)

    @field_validator("include_extensions", "exclude_extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value: object) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(e for e in (normalize_extension(str(v)) for v in value) if e)  # type: ignore[union-attr]


class FilterDecision(BaseModel):
    """Output of the FilterChain for one entry; exactly one reason is set."""

    model_config = ConfigDict(frozen=True)

    admitted: bool
    reason: FilterReason
    detail: str = ""

    @model_validator(mode="after")
    def _check_reason(self) -> FilterDecision:
        if self.admitted != (self.reason is FilterReason.ADMITTED):
            msg = f"admitted={self.admitted} is inconsistent with reason={self.reason}"
            raise ValueError(msg)
        return self

    @classmethod
    def admit(cls) -> FilterDecision:
        return cls(admitted=True, reason=FilterReason.ADMITTED)

    @classmethod
    def reject(cls, reason: FilterReason, detail: str = "") -> FilterDecision:
        return cls(admitted=False, reason=reason, detail=detail)


class FileRecord(BaseModel):
    """Unit handed to the record emitters.

    Attributes:
        relative_path: File path relative to the archive root.
        change_class: New, modified or unchanged compared with the previous run.
        content: File bytes, or None for unchanged files that were not re-read
            and for files that failed to read.
        byte_size: File size in bytes.
        modified_time: POSIX mtime (float seconds since epoch).
        sha256: SHA-256 hex digest of the content (empty when not computed).
        error: Read-error marker; set instead of `content` when the read failed.
        git_status: Working tree state, filled in only when requested.
    """

    model_config = ConfigDict(frozen=True)

    relative_path: str = Field(..., description="File path relative to the archive root")
    change_class: ChangeClass = Field(default=ChangeClass.NEW)
    content: bytes | None = Field(default=None, repr=False)
    byte_size: int = Field(default=0, ge=0, description="File size in bytes")
    modified_time: float = Field(default=0.0, description="POSIX modification time (seconds)")
    sha256: str = Field(default="", description="SHA-256 hex digest (optional)")
    error: str | None = Field(default=None, description="Read error marker")
    git_status: GitStatus | None = Field(default=None, description="State reported by git status")

    @computed_field
    @property
    def file_type(self) -> FileType:
        """Categorize the file type based on its extension."""
        return guess_file_type(self.relative_path)

    @computed_field
    @property
    def language(self) -> str:
        """Get the suggested code fence language based on the file type."""
        return guess_language(self.file_type)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def text(self) -> str:
        """Content decoded as UTF-8 (invalid bytes replaced), empty when absent."""
        if self.content is None:
            return ""
        return self.content.decode("utf-8", errors="replace")


class Diagnostic(BaseModel):
    """Fire-and-forget event for the logging/progress layer."""

    model_config = ConfigDict(frozen=True)

    kind: DiagnosticKind
    path: str = ""
    message: str = ""


class RunSummary(BaseModel):
    """Counts and timings of one run."""

    new: int = 0
    modified: int = 0
    unchanged: int = 0
    deleted: int = 0
    errored: int = 0
    rejected: dict[FilterReason, int] = Field(default_factory=dict)
    bytes_processed: int = 0
    elapsed_seconds: float = 0.0
    cancelled: bool = False
    cache_warning: str = ""
    deleted_paths: list[str] = Field(default_factory=list)
    diagnostics: list[Diagnostic] = Field(default_factory=list)

    @computed_field
    @property
    def emitted(self) -> int:
        """Number of records in the output stream."""
        return self.new + self.modified + self.unchanged + self.errored

    @computed_field
    @property
    def status(self) -> str:
        """Overall outcome: success, success_with_errors or cancelled."""
        if self.cancelled:
            return "cancelled"
        if self.errored:
            return "success_with_errors"
        return "success"

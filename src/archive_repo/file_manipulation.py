from __future__ import annotations

import hashlib
import os
import subprocess  # noqa: S404
import tempfile
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

from archive_repo.config import GitStatus
from archive_repo.exceptions import NotAGitRepositoryError
from archive_repo.logging import logger

if TYPE_CHECKING:
    from collections.abc import Sequence

_HASH_BLOCK = 1024 * 1024
_BRANCH, _LAST_BRANCH = "├── ", "└── "
_PIPE, _GAP = "│   ", "    "


def relpath(path: Path, root: Path) -> str:
    """POSIX path of `path` relative to `root`, or `path` itself when outside `root`."""
    if not path.is_relative_to(root):
        return str(path)
    return path.relative_to(root).as_posix()


def sha256_file(path: Path) -> str:
    """Hex SHA-256 of a file, streamed in 1 MiB blocks."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(partial(f.read, _HASH_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def read_file_bytes(path: Path) -> bytes:
    """Read a whole file; `OSError` propagates to the caller."""
    with path.open("rb") as f:
        return f.read()


def atomic_write_text(path: Path, content: str) -> None:
    """Write `content` to `path` so readers see either the old or the new file.

    The data goes to a temporary file in the same directory, is flushed and
    fsynced, then renamed over `path`. The temporary file is removed on failure.

    Args:
        path (Path): destination file
        content (str): text to write (UTF-8)

    Raises:
        OSError: if any step fails; `path` is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        Path(tmp).replace(path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def git_metadata(repo: Path) -> dict[str, str]:
    """Get the current branch and commit of a git checkout.

    Args:
        repo (Path): the root of the git repository to query

    Raises:
        NotAGitRepositoryError: if `.git` is missing or `git` invocation fails.

    Returns:
        dict[str, str]: `branch` and `commit` of HEAD
    """
    if not (repo / ".git").exists():
        raise NotAGitRepositoryError(folder=repo)
    try:
        branch = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],  # noqa: S607
            cwd=str(repo),
            text=True,
            capture_output=True,
            check=True,
        ).stdout.strip()
        commit = subprocess.run(
            ["git", "rev-parse", "HEAD"],  # noqa: S607
            cwd=str(repo),
            text=True,
            capture_output=True,
            check=True,
        ).stdout.strip()
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("git_metadata_unavailable", repo=str(repo), error=str(e))
        raise NotAGitRepositoryError(folder=repo) from e
    return {"branch": branch, "commit": commit}


def _porcelain_status(xy: str) -> GitStatus:
    if xy == "??":
        return GitStatus.UNTRACKED
    if xy == "!!":
        return GitStatus.IGNORED
    if xy[0] == "A":
        return GitStatus.ADDED
    if "M" in xy or "T" in xy:
        return GitStatus.MODIFIED
    if "D" in xy:
        return GitStatus.DELETED
    if "R" in xy:
        return GitStatus.RENAMED
    if "C" in xy:
        return GitStatus.COPIED
    return GitStatus.UNMODIFIED


def git_statuses(repo: Path) -> dict[str, GitStatus]:
    """Working tree state of every changed file below `repo`, from one `git status` call.

    Paths are relative to `repo`, which may be a subdirectory of the checkout.
    Files missing from the result are tracked and unmodified.

    Raises:
        NotAGitRepositoryError: if `repo` is not inside a work tree or `git` fails.
    """
    try:
        prefix = subprocess.run(
            ["git", "rev-parse", "--show-prefix"],  # noqa: S607
            cwd=str(repo),
            text=True,
            capture_output=True,
            check=True,
        ).stdout.strip()
        raw = subprocess.run(
            ["git", "status", "--porcelain", "-z", "--untracked-files=all", "--", "."],  # noqa: S607
            cwd=str(repo),
            text=True,
            capture_output=True,
            check=True,
        ).stdout
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("git_status_unavailable", repo=str(repo), error=str(e))
        raise NotAGitRepositoryError(folder=repo) from e

    statuses: dict[str, GitStatus] = {}
    fields = iter(raw.split("\0"))
    for item in fields:
        if len(item) < 4:  # noqa: PLR2004
            continue
        xy, path = item[:2], item[3:]
        if "R" in xy or "C" in xy:
            # the source path of a rename or copy follows as its own field
            next(fields, None)
        if path.startswith(prefix):
            statuses[path[len(prefix) :]] = _porcelain_status(xy)
    return statuses


def build_tree_lines(root_name: str, rel_paths: Sequence[str]) -> list[str]:
    """Draw the directory structure of `rel_paths` below `root_name`.

    Directories come before files at every level, both sorted case-insensitively.

    Args:
        root_name (str): label of the first line
        rel_paths (Sequence[str]): POSIX file paths relative to the root (e.g. "src/main.py")

    Returns:
        list[str]: one string per printed line
    """
    tree: dict[str, Any] = {}
    for rel in rel_paths:
        parts = [p for p in rel.replace("\\", "/").split("/") if p]
        if not parts:
            continue
        node = tree
        for directory in parts[:-1]:
            node = node.setdefault(directory, {})
        node.setdefault(parts[-1], None)

    lines = [root_name]
    _draw(tree, "", lines)
    return lines


def _draw(node: dict[str, Any], prefix: str, lines: list[str]) -> None:
    children = sorted(node.items(), key=lambda kv: (kv[1] is None, kv[0].lower()))
    for idx, (name, child) in enumerate(children):
        last = idx == len(children) - 1
        if child is None:
            lines.append(f"{prefix}{_LAST_BRANCH if last else _BRANCH}{name}")
        else:
            lines.append(f"{prefix}{_LAST_BRANCH if last else _BRANCH}{name}/")
            _draw(child, prefix + (_GAP if last else _PIPE), lines)


def now_iso() -> str:
    """Return the current date and time in ISO 8601 format with timezone.

    Returns:
        str: the current date and time in ISO 8601 format with timezone
    """
    return datetime.now(UTC).astimezone().isoformat(timespec="seconds")


def take_head_tail(lines: list[str], head: int, tail: int) -> str:
    """Keep the first `head` and last `tail` lines, joined by an ellipsis line.

    All lines are returned when they fit, nothing when both counts are zero.
    """
    head, tail = max(0, head), max(0, tail)
    if head + tail == 0:
        return ""
    if head + tail >= len(lines):
        return "\n".join(lines)
    kept = [*lines[:head], "…"]
    if tail:
        kept.extend(lines[-tail:])
    return "\n".join(kept)

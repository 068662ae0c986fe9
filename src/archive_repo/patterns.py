"""Gitignore-compatible pattern sets.

A :class:`PatternSet` is compiled from ordered :class:`PatternSource` blocks (global
excludes, ignore files discovered during a walk, command-line globs). Each line
becomes a :class:`PatternRule`; rules are evaluated last-match-wins, sources from
deeper directories after sources from their ancestors.

Supported syntax is the commonly agreed subset of ``.gitignore``:

- blank lines and ``#`` comments are skipped, ``\\#`` and ``\\!`` escape them;
- ``!pattern`` re-includes a path excluded by an earlier rule;
- a trailing ``/`` restricts the rule to directories;
- a leading or inner ``/`` anchors the rule to the directory of its source,
  otherwise it matches at any depth;
- ``*``, ``?`` and ``[...]`` never cross ``/``; a ``**`` segment matches any
  number of directories (at least one when it ends the pattern);
- bracket expressions accept ASCII POSIX classes such as ``[[:digit:]]``.
"""

from __future__ import annotations

import re
import string
from dataclasses import dataclass, field, replace
from enum import StrEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING

from archive_repo.config import DEFAULT_EXCLUDES
from archive_repo.exceptions import PatternSyntaxError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

# Stand-in for a "**" segment in a compiled rule.
_ANY_DIRS = None

_TRAILING_SPACES = re.compile(r"(?<!\\) +$")


class Anchor(StrEnum):
    """Where a rule is allowed to match."""

    ROOT = auto()
    ANY_DEPTH = auto()


@dataclass(frozen=True)
class PatternSource:
    """A block of pattern lines tagged with the directory it was found in.

    Attributes:
        text: Raw text, one pattern per line.
        base: POSIX path of the owning directory relative to the archive root
            ("" for the root itself). Rules only see paths below `base`.
        label: Human readable origin, used in error messages.
        priority: Sources with a higher priority are evaluated after (and so
            override) every lower priority source, whatever their depth.
    """

    text: str
    base: str = ""
    label: str = "<patterns>"
    priority: int = 0

    @classmethod
    def from_lines(cls, lines: Iterable[str], *, base: str = "", label: str = "<patterns>", priority: int = 0) -> PatternSource:
        return cls(text="\n".join(lines), base=base.strip("/"), label=label, priority=priority)

    @property
    def depth(self) -> int:
        return len([p for p in self.base.split("/") if p])


@dataclass(frozen=True)
class PatternRule:
    """One compiled ignore rule.

    `segments` holds one compiled regular expression per path component, with
    `None` standing for a ``**`` component.
    """

    raw_pattern: str
    is_negation: bool
    is_directory_only: bool
    anchor: Anchor
    base: str
    source: str
    line_number: int
    source_precedence: int
    segments: tuple[re.Pattern[str] | None, ...] = field(repr=False, compare=False)

    def applies_to(self, relative_path: str) -> str | None:
        """Return `relative_path` relative to the rule base, or None when outside it."""
        if not self.base:
            return relative_path
        prefix = self.base + "/"
        if relative_path.startswith(prefix):
            return relative_path[len(prefix) :]
        return None

    def matches(self, relative_path: str, *, is_directory: bool) -> bool:
        """Check whether this rule matches the path itself (not its descendants)."""
        if self.is_directory_only and not is_directory:
            return False
        sub = self.applies_to(relative_path)
        if not sub:
            return False
        return _match_segments(self.segments, sub.split("/"))


def _match_segments(segments: Sequence[re.Pattern[str] | None], parts: Sequence[str]) -> bool:
    """Match compiled rule segments against path components."""
    si = 0
    pi = 0
    while si < len(segments):
        seg = segments[si]
        if seg is _ANY_DIRS:
            rest = segments[si + 1 :]
            if not rest:
                # a trailing "**" needs something inside the directory
                return pi < len(parts)
            return any(_match_segments(rest, parts[k:]) for k in range(pi, len(parts) + 1))
        if pi >= len(parts) or seg.fullmatch(parts[pi]) is None:
            return False
        si += 1
        pi += 1
    return pi == len(parts)


# POSIX bracket expressions such as "[[:alpha:]]", ASCII only as in git.
_POSIX_CLASSES: dict[str, str] = {
    "alpha": "a-zA-Z",
    "digit": "0-9",
    "alnum": "a-zA-Z0-9",
    "upper": "A-Z",
    "lower": "a-z",
    "xdigit": "0-9A-Fa-f",
    "space": r" \t\n\r\f\v",
    "blank": r" \t",
    "punct": re.escape(string.punctuation),
    "cntrl": r"\x00-\x1f\x7f",
    "print": r"\x20-\x7e",
    "graph": r"\x21-\x7e",
}


def _class_end(segment: str, start: int) -> int:
    """Index of the "]" closing the bracket expression whose body starts at `start`."""
    j = start
    n = len(segment)
    if j < n and segment[j] in "!^":
        j += 1
    if j < n and segment[j] == "]":
        j += 1
    while j < n and segment[j] != "]":
        if segment.startswith("[:", j):
            close = segment.find(":]", j + 2)
            if close != -1:
                j = close + 2
                continue
        j += 2 if segment[j] == "\\" else 1
    return j


def _translate_class(body: str, *, source: str, line_number: int, pattern: str) -> str:
    negate = body[:1] in {"!", "^"}
    if negate:
        body = body[1:]
    chars: list[str] = []
    k = 0
    while k < len(body):
        c = body[k]
        if c == "\\" and k + 1 < len(body):
            chars.append(re.escape(body[k + 1]))
            k += 2
        elif body.startswith("[:", k) and ":]" in body[k + 2 :]:
            close = body.index(":]", k + 2)
            name = body[k + 2 : close]
            if name not in _POSIX_CLASSES:
                raise PatternSyntaxError(
                    source=source,
                    line_number=line_number,
                    pattern=pattern,
                    reason=f"unknown character class {name!r}",
                )
            chars.append(_POSIX_CLASSES[name])
            k = close + 2
        elif c == "-" and 0 < k < len(body) - 1:
            chars.append("-")
            k += 1
        else:
            chars.append(re.escape(c))
            k += 1
    return f"[{'^' if negate else ''}{''.join(chars)}]"


def _translate_segment(segment: str, *, source: str, line_number: int, pattern: str) -> str:
    """Translate one glob path component into a regular expression."""
    out: list[str] = []
    i = 0
    n = len(segment)
    while i < n:
        ch = segment[i]
        i += 1
        if ch == "\\":
            if i >= n:
                raise PatternSyntaxError(
                    source=source,
                    line_number=line_number,
                    pattern=pattern,
                    reason="trailing backslash",
                )
            out.append(re.escape(segment[i]))
            i += 1
        elif ch == "*":
            while i < n and segment[i] == "*":
                i += 1
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            j = _class_end(segment, i)
            if j >= n:
                raise PatternSyntaxError(
                    source=source,
                    line_number=line_number,
                    pattern=pattern,
                    reason="unterminated character class",
                )
            out.append(_translate_class(segment[i:j], source=source, line_number=line_number, pattern=pattern))
            i = j + 1
        else:
            out.append(re.escape(ch))
    return "".join(out)


def compile_rule(line: str, *, source: PatternSource, line_number: int, precedence: int) -> PatternRule | None:
    """Compile one line of a pattern source.

    Args:
        line: Raw line (without its line terminator).
        source: The source the line belongs to.
        line_number: 1-based line number inside the source.
        precedence: Position of the source in evaluation order.

    Raises:
        PatternSyntaxError: If the line is not a valid pattern.

    Returns:
        PatternRule | None: The compiled rule, or None for blanks and comments.
    """
    raw = line.rstrip("\r\n")
    text = _TRAILING_SPACES.sub("", raw)
    if not text.strip() or text.startswith("#"):
        return None

    negation = False
    if text.startswith("!"):
        negation = True
        text = text[1:]
    elif text.startswith(("\\!", "\\#")):
        text = text[1:]

    if not text:
        raise PatternSyntaxError(source=source.label, line_number=line_number, pattern=raw, reason="empty negation")

    directory_only = text.endswith("/") and not text.endswith("\\/")
    body = text.rstrip("/") if directory_only else text
    if not body:
        raise PatternSyntaxError(source=source.label, line_number=line_number, pattern=raw, reason="pattern matches nothing")

    anchored = body.startswith("/") or "/" in body
    parts = [p for p in body.split("/") if p]
    if not parts:
        raise PatternSyntaxError(source=source.label, line_number=line_number, pattern=raw, reason="pattern matches nothing")

    segments: list[re.Pattern[str] | None] = []
    for part in parts:
        if part == "**":
            if segments and segments[-1] is _ANY_DIRS:
                continue
            segments.append(_ANY_DIRS)
            continue
        regex = _translate_segment(part, source=source.label, line_number=line_number, pattern=raw)
        try:
            segments.append(re.compile(regex, re.DOTALL))
        except re.error as e:
            # reversed ranges such as "[z-a]"
            raise PatternSyntaxError(source=source.label, line_number=line_number, pattern=raw, reason=e.msg) from e

    if not anchored or segments[0] is _ANY_DIRS:
        anchor = Anchor.ANY_DEPTH
        if segments[0] is not _ANY_DIRS:
            segments.insert(0, _ANY_DIRS)
    else:
        anchor = Anchor.ROOT

    return PatternRule(
        raw_pattern=raw,
        is_negation=negation,
        is_directory_only=directory_only,
        anchor=anchor,
        base=source.base,
        source=source.label,
        line_number=line_number,
        source_precedence=precedence,
        segments=tuple(segments),
    )


def _compile_source(source: PatternSource, precedence: int) -> list[PatternRule]:
    rules: list[PatternRule] = []
    for number, line in enumerate(source.text.splitlines(), start=1):
        rule = compile_rule(line, source=source, line_number=number, precedence=precedence)
        if rule is not None:
            rules.append(rule)
    return rules


class PatternSet:
    """Ordered, read-only set of compiled rules.

    Instances are immutable after construction and safe to share across threads;
    :meth:`extend` returns a new set.
    """

    def __init__(
        self,
        sources: Sequence[PatternSource] = (),
        *,
        _compiled: Sequence[tuple[PatternSource, list[PatternRule]]] = (),
    ) -> None:
        entries = [*_compiled]
        start = len(entries)
        # Compile everything first so a syntax error leaves nothing behind.
        entries.extend((src, _compile_source(src, start + idx)) for idx, src in enumerate(sources))
        ordered = sorted(entries, key=lambda item: (item[0].priority, item[0].depth))
        # precedence is the position in evaluation order, known only after sorting
        self._compiled: tuple[tuple[PatternSource, list[PatternRule]], ...] = tuple(
            (src, [replace(rule, source_precedence=pos) for rule in rules]) for pos, (src, rules) in enumerate(ordered)
        )
        self._rules: tuple[PatternRule, ...] = tuple(rule for _, rules in self._compiled for rule in rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __bool__(self) -> bool:
        return bool(self._rules)

    def __repr__(self) -> str:
        return f"PatternSet(sources={len(self._compiled)}, rules={len(self._rules)})"

    @property
    def rules(self) -> tuple[PatternRule, ...]:
        return self._rules

    @property
    def sources(self) -> tuple[PatternSource, ...]:
        return tuple(src for src, _ in self._compiled)

    def extend(self, sources: Sequence[PatternSource]) -> PatternSet:
        """Return a new set with `sources` added at their precedence position."""
        if not sources:
            return self
        return PatternSet(sources, _compiled=self._compiled)

    def matching_rule(self, relative_path: str, *, is_directory: bool) -> PatternRule | None:
        """Return the last rule matching the path itself, ignoring its ancestors."""
        path = relative_path.strip("/")
        for rule in reversed(self._rules):
            if rule.matches(path, is_directory=is_directory):
                return rule
        return None

    def _decides_ignored(self, relative_path: str, *, is_directory: bool) -> bool:
        rule = self.matching_rule(relative_path, is_directory=is_directory)
        return rule is not None and not rule.is_negation

    def is_ignored(self, relative_path: str, is_directory: bool = False) -> bool:  # noqa: FBT001, FBT002
        """Tell whether a path is ignored.

        A path inside an ignored directory is ignored whatever its own rules say:
        negation cannot re-include files of a pruned directory.

        Args:
            relative_path: POSIX path relative to the archive root.
            is_directory: Whether the path names a directory.

        Returns:
            bool: True when the path (or one of its ancestors) is ignored.
        """
        path = relative_path.strip("/")
        if not path:
            return False
        parts = path.split("/")
        for i in range(1, len(parts)):
            if self._decides_ignored("/".join(parts[:i]), is_directory=True):
                return True
        return self._decides_ignored(path, is_directory=is_directory)

    def matches(self, relative_path: str, is_directory: bool = False) -> bool:  # noqa: FBT001, FBT002
        """Allow-list reading of :meth:`is_ignored`, used for include globs."""
        return self.is_ignored(relative_path, is_directory)


def compile_patterns(sources: Sequence[PatternSource]) -> PatternSet:
    """Compile ordered pattern sources into a PatternSet.

    Args:
        sources: Pattern blocks, each tagged with the directory it applies to.

    Raises:
        PatternSyntaxError: On the first malformed pattern; nothing is compiled.

    Returns:
        PatternSet: The queryable rule set.
    """
    return PatternSet(sources)


def load_ignore_file(path: Path, root: Path, *, priority: int = 0) -> PatternSource:
    """Read an ignore file into a source scoped to its directory.

    Args:
        path: The ignore file.
        root: The archive root.
        priority: Precedence class of the resulting source.

    Raises:
        OSError: If the file cannot be read.

    Returns:
        PatternSource: Source whose base is the file's directory relative to root.
    """
    text = path.read_text(encoding="utf-8", errors="replace")
    try:
        base = path.parent.relative_to(root).as_posix()
    except ValueError:
        base = ""
    base = "" if base == "." else base
    label = path.relative_to(root).as_posix() if path.is_relative_to(root) else str(path)
    return PatternSource(text=text, base=base, label=label, priority=priority)


def global_sources(root: Path, *, default_excludes: bool = True) -> list[PatternSource]:
    """Build the lowest precedence sources for a walk rooted at `root`.

    These are the built-in default excludes and the repository's
    ``.git/info/exclude`` when present.
    """
    sources: list[PatternSource] = []
    if default_excludes:
        sources.append(PatternSource.from_lines(DEFAULT_EXCLUDES, label="<default excludes>"))
    info_exclude = root / ".git" / "info" / "exclude"
    if info_exclude.is_file():
        # lives under .git/info but its rules are root scoped
        sources.append(
            PatternSource(
                text=info_exclude.read_text(encoding="utf-8", errors="replace"),
                label=".git/info/exclude",
            ),
        )
    return sources


def command_line_source(globs: Sequence[str], *, label: str = "<command line>", priority: int = 1) -> PatternSource:
    """Turn command-line globs into a root scoped source.

    Backslashes are normalized to forward slashes and blank entries dropped.
    """
    cleaned = [g.strip().replace("\\", "/") for g in globs if g and g.strip()]
    return PatternSource.from_lines(cleaned, label=label, priority=priority)


def escape_pattern(relative_path: str) -> str:
    """Build a root-anchored rule matching exactly `relative_path`."""
    escaped = re.sub(r"([*?\[\\!#])", r"\\\1", relative_path.strip("/"))
    return "/" + escaped


def default_pattern_set(root: Path, excludes: Sequence[str] = (), *, default_excludes: bool = True) -> PatternSet:
    """Compile the global sources plus command-line excludes for `root`."""
    sources = global_sources(Path(root), default_excludes=default_excludes)
    if excludes:
        sources.append(command_line_source(excludes))
    return compile_patterns(sources)

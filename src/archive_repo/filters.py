from __future__ import annotations

from typing import TYPE_CHECKING

from archive_repo.config import EntryKind, FilterConfig, FilterDecision, FilterReason, HiddenPolicy

if TYPE_CHECKING:
    from pathlib import Path

    from archive_repo.config import Entry
    from archive_repo.patterns import PatternSet

# Bytes that commonly appear in text files besides printable ASCII.
_TEXT_CONTROL_BYTES = frozenset({7, 8, 9, 10, 12, 13, 27})
_NON_TEXT_RATIO = 0.30


def sniff_binary(path: Path, nbytes: int = 8192) -> bool:
    """Heuristically decide whether a file holds binary data.

    Reads at most `nbytes` from the start of the file. The file is binary when the
    prefix contains a NUL byte, or when it is not valid UTF-8 and more than 30% of
    its bytes are neither printable ASCII nor common whitespace. This is a guess,
    not a guarantee.

    Args:
        path (Path): the file to inspect
        nbytes (int, optional): size of the prefix to read. Defaults to 8192.

    Raises:
        OSError: if the file cannot be opened or read.

    Returns:
        bool: True if the file looks binary, False otherwise
    """
    with path.open("rb") as f:
        chunk = f.read(nbytes)
    return is_binary_chunk(chunk)


def is_binary_chunk(chunk: bytes) -> bool:
    """Apply the binary heuristic to an in-memory prefix."""
    if not chunk:
        return False
    if b"\x00" in chunk:
        return True
    try:
        chunk.decode("utf-8")
    except UnicodeDecodeError as e:
        # a multi-byte character cut by the prefix boundary is still text
        if e.start >= len(chunk) - 3 and e.reason == "unexpected end of data":
            return False
    else:
        return False
    non_text = sum(1 for b in chunk if b < 32 and b not in _TEXT_CONTROL_BYTES or b == 127)  # noqa: PLR2004
    high = sum(1 for b in chunk if b >= 128)  # noqa: PLR2004
    return (non_text + high) / len(chunk) > _NON_TEXT_RATIO


def check_hidden(entry: Entry, config: FilterConfig) -> FilterDecision | None:
    if config.hidden_policy is HiddenPolicy.EXCLUDE and entry.is_hidden:
        return FilterDecision.reject(FilterReason.HIDDEN_EXCLUDED)
    return None


def check_extension(entry: Entry, config: FilterConfig) -> FilterDecision | None:
    suffix = entry.suffix
    if config.include_extensions and suffix not in config.include_extensions:
        return FilterDecision.reject(FilterReason.EXTENSION_DENIED, suffix or "(no extension)")
    if suffix and suffix in config.exclude_extensions:
        return FilterDecision.reject(FilterReason.EXTENSION_DENIED, suffix)
    return None


def check_patterns(
    entry: Entry,
    pattern_set: PatternSet,
    includes: PatternSet | None = None,
) -> FilterDecision | None:
    is_dir = entry.entry_kind is EntryKind.DIRECTORY
    if pattern_set.is_ignored(entry.relative_path, is_dir):
        rule = pattern_set.matching_rule(entry.relative_path, is_directory=is_dir)
        detail = f"{rule.source}:{rule.line_number} {rule.raw_pattern}" if rule else "ignored parent directory"
        return FilterDecision.reject(FilterReason.PATTERN_EXCLUDED, detail)
    if includes and not is_dir and not includes.matches(entry.relative_path, False):  # noqa: FBT003
        return FilterDecision.reject(FilterReason.PATTERN_EXCLUDED, "no include pattern matched")
    return None


def check_size(entry: Entry, config: FilterConfig) -> FilterDecision | None:
    if config.max_file_size is not None and entry.byte_size > config.max_file_size:
        return FilterDecision.reject(
            FilterReason.SIZE_EXCEEDED,
            f"{entry.byte_size} > {config.max_file_size} bytes",
        )
    return None


def check_content(entry: Entry, config: FilterConfig) -> FilterDecision:
    """Run the binary sniff, the only check that touches file contents.

    A failed read is reported as a `read_error` rejection rather than dropped.

    Args:
        entry (Entry): an entry that passed every metadata check
        config (FilterConfig): the filter configuration

    Returns:
        FilterDecision: admitted, binary_excluded or read_error
    """
    if not config.skip_binary:
        return FilterDecision.admit()
    try:
        binary = sniff_binary(entry.absolute_path, config.binary_sniff_bytes)
    except OSError as e:
        return FilterDecision.reject(FilterReason.READ_ERROR, f"{type(e).__name__}: {e.strerror or e}")
    if binary:
        return FilterDecision.reject(FilterReason.BINARY_EXCLUDED)
    return FilterDecision.admit()


def evaluate(
    entry: Entry,
    pattern_set: PatternSet,
    config: FilterConfig,
    *,
    includes: PatternSet | None = None,
    sniff: bool = True,
) -> FilterDecision:
    """Combine every filter into one admit/reject decision.

    Checks run cheapest first and stop at the first rejection: hidden policy,
    extension allow/deny lists, ignore patterns (and include globs), size ceiling,
    then the binary sniff. Directories only go through the hidden and pattern
    checks. With `sniff=False` the content check is left to the caller, which
    lets the walker keep reads off its thread.

    Args:
        entry (Entry): the filesystem entry to judge
        pattern_set (PatternSet): ignore rules in effect for the entry's directory
        config (FilterConfig): extension, size, hidden and binary settings
        includes (PatternSet | None, optional): allow-list globs; when non-empty a
            file must match one of them. Defaults to None.
        sniff (bool, optional): whether to run the binary sniff. Defaults to True.

    Returns:
        FilterDecision: the decision, with exactly one reason set
    """
    decision = check_hidden(entry, config)
    if decision is not None:
        return decision
    if entry.entry_kind is EntryKind.DIRECTORY:
        return check_patterns(entry, pattern_set) or FilterDecision.admit()

    for decision in (
        check_extension(entry, config),
        check_patterns(entry, pattern_set, includes),
        check_size(entry, config),
    ):
        if decision is not None:
            return decision

    if not sniff:
        return FilterDecision.admit()
    return check_content(entry, config)


class FilterChain:
    """Bundle of filter configuration and include globs shared by all workers.

    The chain holds no mutable state; the pattern set of the entry's directory
    is passed per call because nested ignore files extend it during the walk.
    """

    def __init__(self, config: FilterConfig | None = None, *, includes: PatternSet | None = None) -> None:
        self.config = config or FilterConfig()
        self.includes = includes

    def evaluate(self, entry: Entry, pattern_set: PatternSet, *, sniff: bool = True) -> FilterDecision:
        return evaluate(entry, pattern_set, self.config, includes=self.includes, sniff=sniff)

    def check_content(self, entry: Entry) -> FilterDecision:
        return check_content(entry, self.config)

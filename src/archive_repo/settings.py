from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_FILE = find_dotenv(usecwd=True)
ENV_PREFIX = "ARCHIVE_REPO_"


def env_defaults(env_file: str | None = None) -> dict[str, str]:
    """Collect ``ARCHIVE_REPO_*`` values from the nearest .env file and the environment.

    Process environment variables win over the .env file. Keys are returned
    lower-cased without the prefix, ready to be matched against `Settings` fields.

    Args:
        env_file (str | None, optional): .env file to read. Defaults to the one
            found from the current directory upwards.

    Returns:
        dict[str, str]: field name to raw string value, for known fields only
    """
    path = ENV_FILE if env_file is None else env_file
    merged: dict[str, str | None] = dict(dotenv_values(path)) if path else {}
    merged.update(os.environ)
    out: dict[str, str] = {}
    for key, value in merged.items():
        if value is None or not key.startswith(ENV_PREFIX):
            continue
        name = key.removeprefix(ENV_PREFIX).lower()
        if name in Settings.model_fields:
            out[name] = value
    return out


class Settings(BaseModel):
    """Configuration settings for the archive_repo command line."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    repo: Path = Field(default_factory=Path.cwd, description="Directory to archive.")
    output: Path = Field(..., description="Output file; the suffix picks the format.")
    format: str = Field(default="", description="Force format (md, txt, jsonl, json, yaml, csv).")
    log_file: str = Field(default="", description="Log file path.")
    verbose: bool = Field(default=False, description="Log per-entry decisions.")

    include_glob: list[str] = Field(default_factory=list, description="Include glob.")
    exclude_glob: list[str] = Field(default_factory=list, description="Exclude glob.")
    include_ext: str = Field(default="", description="Comma list of extensions to keep.")
    exclude_ext: str = Field(default="", description="Comma list of extensions to drop.")
    max_bytes: int = Field(default=500_000, ge=0, description="Skip files above this size (0: no limit).")
    hidden: Literal["include", "exclude"] = Field(default="exclude", description="Dot-file policy.")
    include_binary: bool = Field(default=False, description="Do not skip binary files.")
    no_ignore_files: bool = Field(default=False, description="Ignore .gitignore and friends.")
    no_default_excludes: bool = Field(default=False, description="Drop the built-in exclude list.")
    no_follow_symlinks: bool = Field(default=False, description="Do not follow symlinks.")

    workers: int = Field(default=0, ge=0, description="Reader threads (0: available CPUs).")
    queue_size: int = Field(default=0, ge=0, description="Work queue capacity (0: 4 per worker).")
    cache: str = Field(default="", description="Change cache file (empty: no cache).")
    strict_hash: bool = Field(default=False, description="Fingerprint with SHA-256.")
    changed_only: bool = Field(default=False, description="Omit content of unchanged files.")
    fail_fast: bool = Field(default=False, description="Stop at the first unreadable file.")

    compact: bool = Field(default=False, description="Reduce markdown verbosity.")
    chunk_chars: int = Field(default=24_000, gt=0, description="Chunk size for jsonl.")
    max_lines: int = Field(default=0, ge=0, description="Keep head and tail of longer files (0: all).")
    no_tree: bool = Field(default=False, description="Do not write the structure tree.")
    no_sha: bool = Field(default=False, description="Do not compute sha256 digests.")
    git_status: bool = Field(default=False, description="Tag each file with its git working tree state.")

    @field_validator("include_glob", "exclude_glob", mode="before")
    @classmethod
    def _split_globs(cls, value: object) -> object:
        # environment values arrive as one comma separated string
        if isinstance(value, str):
            return [g.strip() for g in value.split(",") if g.strip()]
        return value

    @field_validator("format")
    @classmethod
    def _normalize_format(cls, value: str) -> str:
        return value.strip().lower()

"""Diff parsing: unified diff to structured FileDiff/Hunk objects."""

from __future__ import annotations

import fnmatch
import logging
import posixpath
import re
from typing import Optional

from prreview.config import BINARY_EXTENSIONS
from prreview.models import ChangeType, FileDiff, Hunk

logger = logging.getLogger(__name__)

_HUNK_HEADER = re.compile(r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@(.*)$")


def _hunk_change_type(body: list[str]) -> ChangeType:
    has_additions = any(line.startswith("+") for line in body)
    has_deletions = any(line.startswith("-") for line in body)
    if has_additions and not has_deletions:
        return ChangeType.ADD
    if has_deletions and not has_additions:
        return ChangeType.DELETE
    return ChangeType.EDIT


def parse_hunks(diff_text: str, file_path: str) -> list[Hunk]:
    """Parse the hunks of a single file's unified diff.

    Lines outside a hunk, and lines that are not `+`, `-` or context lines,
    are ignored. A header with no body lines produces no hunk. Never raises:
    text without any hunk header yields an empty list.
    """
    hunks: list[Hunk] = []
    header: Optional[re.Match] = None
    body: list[str] = []

    def flush() -> None:
        if header is None or not body:
            return
        hunks.append(
            Hunk(
                file_path=file_path,
                change_type=_hunk_change_type(body),
                old_line_start=int(header.group(1)),
                old_line_count=int(header.group(2) or 1),
                new_line_start=int(header.group(3)),
                new_line_count=int(header.group(4) or 1),
                content="\n".join(body),
                context=header.group(5).strip(),
            )
        )

    for line in (diff_text or "").splitlines():
        match = _HUNK_HEADER.match(line)
        if match:
            flush()
            header = match
            body = []
            continue
        if header is not None and line[:1] in ("+", "-", " "):
            body.append(line)

    flush()
    return hunks


def is_binary_file(path: str) -> bool:
    """Extension-based binary detection."""
    _, ext = posixpath.splitext(path.lower())
    return ext in BINARY_EXTENSIONS


def parse_diff(diff_text: str) -> list[FileDiff]:
    """Parse a multi-file `git diff` into FileDiff objects.

    Each `diff --git` section's metadata sets the file's change type; its
    hunk lines are handed to parse_hunks so file headers never leak into
    hunk bodies.
    """
    files: list[FileDiff] = []
    current_file: Optional[FileDiff] = None
    section: list[str] = []

    def finish() -> None:
        if current_file is None:
            return
        if is_binary_file(current_file.file_path):
            current_file.is_binary = True
        if current_file.is_binary:
            logger.debug("Skipping binary file: %s", current_file.file_path)
            return
        current_file.hunks = parse_hunks("\n".join(section), current_file.file_path)
        if not current_file.hunks:
            logger.warning(
                "No reviewable hunks for %s (%s)",
                current_file.file_path,
                current_file.change_type,
            )

    for line in (diff_text or "").splitlines():
        # New file header
        if line.startswith("diff --git"):
            finish()
            current_file = None
            section = []
            parts = line.split()
            if len(parts) >= 4:
                old_path = parts[2].removeprefix("a/")
                new_path = parts[3].removeprefix("b/")
                current_file = FileDiff(
                    file_path=new_path,
                    old_path=old_path if old_path != new_path else None,
                )
                files.append(current_file)
            continue

        if current_file is None:
            continue

        # File metadata, only before the first hunk
        if not section:
            if line.startswith("new file"):
                current_file.change_type = ChangeType.ADD
                continue
            if line.startswith("deleted file"):
                current_file.change_type = ChangeType.DELETE
                continue
            if line.startswith("rename from") or line.startswith("rename to"):
                current_file.change_type = ChangeType.RENAME
                continue
            if line.startswith("Binary files") or line.startswith("GIT binary patch"):
                current_file.is_binary = True
                continue
            if (
                line.startswith("index ")
                or line.startswith("---")
                or line.startswith("+++")
                or line.startswith("similarity index")
                or line.startswith("old mode")
                or line.startswith("new mode")
            ):
                continue

        section.append(line)

    finish()
    return files


def flatten_hunks(files: list[FileDiff]) -> list[Hunk]:
    """All reviewable hunks, in file order."""
    return [h for f in files if not f.is_binary for h in f.hunks]


def filter_files(
    files: list[FileDiff],
    include_patterns: Optional[list[str]] = None,
    exclude_patterns: Optional[list[str]] = None,
    specific_files: Optional[list[str]] = None,
) -> list[FileDiff]:
    """Filter files by explicit paths, or by include/exclude glob patterns."""
    if specific_files:
        wanted = set(specific_files)
        return [f for f in files if f.file_path in wanted]

    filtered = files
    if include_patterns:
        filtered = [
            f
            for f in filtered
            if any(fnmatch.fnmatch(f.file_path, p) for p in include_patterns)
        ]
    if exclude_patterns:
        filtered = [
            f
            for f in filtered
            if not any(fnmatch.fnmatch(f.file_path, p) for p in exclude_patterns)
        ]
    return filtered


def diff_stats(files: list[FileDiff]) -> dict:
    """Generate summary statistics for parsed diff files."""
    return {
        "files_changed": len(files),
        "lines_added": sum(f.added_line_count for f in files),
        "lines_removed": sum(f.removed_line_count for f in files),
        "hunks": sum(len(f.hunks) for f in files),
        "new_files": [f.file_path for f in files if f.change_type == ChangeType.ADD],
        "deleted_files": [
            f.file_path for f in files if f.change_type == ChangeType.DELETE
        ],
        "renamed_files": [
            f.file_path for f in files if f.change_type == ChangeType.RENAME
        ],
        "binary_files": [f.file_path for f in files if f.is_binary],
    }


def summarize(files: list[FileDiff]) -> str:
    """One-line human summary, e.g. '3 files (1 added, 2 modified), +10/-4 lines'."""
    counts: dict[ChangeType, int] = {}
    for f in files:
        counts[f.change_type] = counts.get(f.change_type, 0) + 1

    labels = [
        (ChangeType.ADD, "added"),
        (ChangeType.EDIT, "modified"),
        (ChangeType.DELETE, "deleted"),
        (ChangeType.RENAME, "renamed"),
    ]
    parts = [f"{counts[ct]} {label}" for ct, label in labels if counts.get(ct)]
    added = sum(f.added_line_count for f in files)
    removed = sum(f.removed_line_count for f in files)
    return f"{len(files)} files ({', '.join(parts)}), +{added}/-{removed} lines"

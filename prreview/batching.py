"""Batch planning: pack hunks into token-bounded LLM requests."""

from __future__ import annotations

import fnmatch
import logging
import math
import posixpath
from dataclasses import dataclass, field, replace

from prreview.config import (
    CHARS_PER_TOKEN,
    CRITICAL_FILE_PATTERNS,
    DEFAULT_EXCLUDE_FILE_TYPES,
    DEFAULT_MAX_FILES_PER_BATCH,
    DEFAULT_MAX_HUNKS_PER_BATCH,
    DEFAULT_MAX_TOKENS_PER_BATCH,
    DEFAULT_PRIORITIZE_FILE_TYPES,
    HUNK_OVERHEAD_TOKENS,
    TEST_FILE_PATTERNS,
)
from prreview.models import Batch, BatchPlan, ChangeType, Hunk

logger = logging.getLogger(__name__)

STRATEGY_SINGLE = "single"
STRATEGY_MIXED = "mixed"
STRATEGY_FILE_BASED = "file-based"
STRATEGY_SIZE_BASED = "size-based"
BATCH_STRATEGIES = (STRATEGY_MIXED, STRATEGY_FILE_BASED, STRATEGY_SIZE_BASED)

_CATEGORY_BY_EXT = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "py": "python",
    "java": "java",
    "css": "styles",
    "scss": "styles",
    "less": "styles",
    "md": "documentation",
    "json": "data",
    "yaml": "data",
    "yml": "data",
}


@dataclass
class PlanningOptions:
    max_tokens_per_batch: int = DEFAULT_MAX_TOKENS_PER_BATCH
    max_files_per_batch: int = DEFAULT_MAX_FILES_PER_BATCH
    max_hunks_per_batch: int = DEFAULT_MAX_HUNKS_PER_BATCH
    batch_strategy: str = STRATEGY_MIXED
    prioritize_file_types: list[str] = field(
        default_factory=lambda: list(DEFAULT_PRIORITIZE_FILE_TYPES)
    )
    exclude_file_types: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_FILE_TYPES)
    )


# ── Helpers ──────────────────────────────────────────────────────────────────


def _extension(path: str) -> str:
    """Lower-case extension without the dot ('' when there is none)."""
    return posixpath.splitext(path.lower())[1].lstrip(".")


def _normalize_types(types: list[str]) -> set[str]:
    return {t.lower().lstrip(".") for t in types if t}


def _matches(path: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(path, p) for p in patterns)


def is_test_file(path: str) -> bool:
    return _matches(path, TEST_FILE_PATTERNS)


def file_category(path: str) -> str:
    if is_test_file(path):
        return "tests"
    if _matches(path, CRITICAL_FILE_PATTERNS):
        return "config"
    return _CATEGORY_BY_EXT.get(_extension(path), "other")


def estimate_hunk_tokens(hunk: Hunk) -> int:
    """Rough estimate: path + content at ~4 chars/token, plus fixed overhead."""
    return (
        math.ceil(len(hunk.file_path) / CHARS_PER_TOKEN)
        + math.ceil(len(hunk.content) / CHARS_PER_TOKEN)
        + HUNK_OVERHEAD_TOKENS
    )


def estimate_total_tokens(hunks: list[Hunk]) -> int:
    return sum(estimate_hunk_tokens(h) for h in hunks)


def estimate_duration(batches: list[Batch]) -> float:
    """~30s per 1000 tokens plus 10s of overhead per batch."""
    return sum(b.estimated_tokens / 1000 * 30 + 10 for b in batches)


def _priority(hunks: list[Hunk], prioritized: set[str]) -> str:
    if any(
        _extension(h.file_path) in prioritized
        or _matches(h.file_path, CRITICAL_FILE_PATTERNS)
        for h in hunks
    ):
        return "high"
    if all(is_test_file(h.file_path) for h in hunks):
        return "low"
    return "medium"


def _description(hunks: list[Hunk]) -> str:
    files = list(dict.fromkeys(h.file_path for h in hunks))
    categories = ", ".join(dict.fromkeys(file_category(f) for f in files))
    return f"{len(files)} files ({categories}), {len(hunks)} hunks"


def _make_batch(
    batch_id: str, hunks: list[Hunk], tokens: int, prioritized: set[str]
) -> Batch:
    return Batch(
        id=batch_id,
        hunks=tuple(hunks),
        estimated_tokens=tokens,
        description=_description(hunks),
        priority=_priority(hunks, prioritized),
    )


# ── Planning ─────────────────────────────────────────────────────────────────


def filter_hunks(hunks: list[Hunk], exclude_file_types: list[str]) -> list[Hunk]:
    excluded = _normalize_types(exclude_file_types)
    if not excluded:
        return list(hunks)
    return [h for h in hunks if _extension(h.file_path) not in excluded]


def _pack(
    hunks: list[Hunk],
    options: PlanningOptions,
    prioritized: set[str],
    first_id: int = 1,
) -> list[Batch]:
    """Greedy in-order packing under the token, file, and hunk limits.

    Batch ids are numbered from `first_id`.
    """
    batches: list[Batch] = []
    current: list[Hunk] = []
    current_tokens = 0
    current_files: set[str] = set()

    for hunk in hunks:
        hunk_tokens = estimate_hunk_tokens(hunk)
        new_file = hunk.file_path not in current_files
        would_exceed = (
            current_tokens + hunk_tokens > options.max_tokens_per_batch
            or (new_file and len(current_files) >= options.max_files_per_batch)
            or len(current) >= options.max_hunks_per_batch
        )

        if current and would_exceed:
            batches.append(
                _make_batch(
                    f"batch-{first_id + len(batches)}", current, current_tokens, prioritized
                )
            )
            current = []
            current_tokens = 0
            current_files = set()

        current.append(hunk)
        current_tokens += hunk_tokens
        current_files.add(hunk.file_path)

    if current:
        batches.append(
            _make_batch(
                f"batch-{first_id + len(batches)}", current, current_tokens, prioritized
            )
        )

    return batches


def _create_batches(
    hunks: list[Hunk], strategy: str, options: PlanningOptions, prioritized: set[str]
) -> list[Batch]:
    if strategy == STRATEGY_FILE_BASED:
        by_category: dict[str, list[Hunk]] = {}
        for hunk in hunks:
            by_category.setdefault(file_category(hunk.file_path), []).append(hunk)

        batches: list[Batch] = []
        for category_hunks in by_category.values():
            batches.extend(
                _pack(category_hunks, options, prioritized, first_id=len(batches) + 1)
            )
        return batches

    if strategy == STRATEGY_SIZE_BASED:
        ordered = sorted(hunks, key=estimate_hunk_tokens, reverse=True)
    else:
        ordered = sorted(
            hunks, key=lambda h: 0 if _extension(h.file_path) in prioritized else 1
        )
    return _pack(ordered, options, prioritized)


def create_plan(hunks: list[Hunk], options: PlanningOptions | None = None) -> BatchPlan:
    """Group hunks into an ordered BatchPlan.

    Hunks of excluded file types are dropped; every remaining hunk lands in
    exactly one batch. When the whole review fits one batch's token budget
    the plan is `single` with exactly one batch. Otherwise the hunks are
    packed by `options.batch_strategy`:

        mixed:       prioritized extensions first (stable), then input order
        file-based:  one run of batches per file category, first-seen order
        size-based:  largest hunks first
    """
    options = options or PlanningOptions()
    prioritized = _normalize_types(options.prioritize_file_types)

    filtered = filter_hunks(hunks, options.exclude_file_types)
    if len(filtered) != len(hunks):
        logger.info(
            "Excluded %d hunks by file type", len(hunks) - len(filtered)
        )

    if not filtered:
        return BatchPlan(strategy=STRATEGY_SINGLE)

    total_tokens = estimate_total_tokens(filtered)
    total_files = len({h.file_path for h in filtered})

    if total_tokens <= options.max_tokens_per_batch:
        batches = [_make_batch("single", filtered, total_tokens, prioritized)]
        strategy = STRATEGY_SINGLE
    else:
        strategy = options.batch_strategy
        if strategy not in BATCH_STRATEGIES:
            logger.warning(
                "Unknown batch strategy %r, using %r", strategy, STRATEGY_MIXED
            )
            strategy = STRATEGY_MIXED
        batches = _create_batches(filtered, strategy, options, prioritized)

    plan = BatchPlan(
        strategy=strategy,
        batches=batches,
        total_files=total_files,
        total_hunks=len(filtered),
        estimated_tokens=total_tokens,
        estimated_duration=estimate_duration(batches),
    )
    logger.info(
        "Review plan created: %s strategy, %d batches, ~%ds estimated",
        strategy,
        len(batches),
        round(plan.estimated_duration),
    )
    return plan


def plan_summary(plan: BatchPlan) -> str:
    if not plan.batches:
        return "No changes to review"
    return (
        f"{plan.strategy} strategy: {len(plan.batches)} batches, "
        f"{plan.total_files} files, {plan.total_hunks} hunks, "
        f"~{round(plan.estimated_duration)}s"
    )


# ── Derived Batches ──────────────────────────────────────────────────────────
# Used by the executor's degradation ladder. Each returns a new Batch over a
# subset of the parent's hunks.


def reduce_batch(batch: Batch, keep_ratio: float = 0.7) -> Batch:
    """Drop the trailing 30% of hunks."""
    keep = max(1, math.floor(len(batch.hunks) * keep_ratio))
    return replace(
        batch,
        hunks=batch.hunks[:keep],
        estimated_tokens=math.floor(batch.estimated_tokens * keep_ratio),
        description=f"{batch.description} (reduced)",
    )


def simplify_batch(batch: Batch, keep_ratio: float = 0.5) -> Batch:
    """Keep only added/edited hunks, at most half of the batch."""
    limit = max(1, math.floor(len(batch.hunks) * keep_ratio))
    essential = [
        h for h in batch.hunks if h.change_type in (ChangeType.ADD, ChangeType.EDIT)
    ]
    if not essential:
        essential = list(batch.hunks[:1])
    return replace(
        batch,
        hunks=tuple(essential[:limit]),
        estimated_tokens=math.floor(batch.estimated_tokens * keep_ratio),
        description=f"{batch.description} (simplified)",
    )


def split_batch(batch: Batch, parts: int = 2) -> list[Batch]:
    """Split into contiguous sub-batches; the last one takes the remainder."""
    per_part = max(1, len(batch.hunks) // parts)
    sub_batches: list[Batch] = []

    for i in range(parts):
        start = i * per_part
        end = len(batch.hunks) if i == parts - 1 else (i + 1) * per_part
        sub_hunks = batch.hunks[start:end]
        if not sub_hunks:
            continue
        sub_batches.append(
            replace(
                batch,
                id=f"{batch.id}_sub_{i + 1}",
                hunks=sub_hunks,
                estimated_tokens=batch.estimated_tokens // parts,
                description=f"{batch.description} (part {i + 1}/{parts})",
            )
        )

    return sub_batches

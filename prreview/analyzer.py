"""Core review flow: parse the diff, plan batches, execute against the LLM."""

from __future__ import annotations

import logging
from typing import Optional

from prreview.batching import PlanningOptions, create_plan, plan_summary
from prreview.config import LLM_PROVIDER, MAX_CONTEXT_TOKENS
from prreview.diff_parser import diff_stats, flatten_hunks, parse_diff, summarize
from prreview.executor import ReviewExecutor
from prreview.llm import LLMAdapter, create_adapter, default_model
from prreview.models import BatchPlan, ReviewContext, ReviewReport, Severity

logger = logging.getLogger(__name__)

_SEVERITY_ORDER = {Severity.ERROR: 0, Severity.WARNING: 1, Severity.INFO: 2}


def plan_diff(diff_text: str, options: Optional[PlanningOptions] = None) -> BatchPlan:
    """Parse a unified diff and return the batch plan without calling the LLM."""
    files = parse_diff(diff_text)
    return create_plan(flatten_hunks(files), options)


def review_diff(
    diff_text: str,
    project_guidelines: str = "",
    review_rules: str = "",
    custom_prompt_template: Optional[str] = None,
    options: Optional[PlanningOptions] = None,
    adapter: Optional[LLMAdapter] = None,
    model: Optional[str] = None,
    max_context_tokens: int = MAX_CONTEXT_TOKENS,
    executor: Optional[ReviewExecutor] = None,
) -> ReviewReport:
    """
    Main review function: parse, plan, and run the batched LLM review.

    Args:
        diff_text: Unified diff output (e.g., from `git diff`)
        project_guidelines: Free-text project conventions for the prompt
        review_rules: Free-text review rules for the prompt
        custom_prompt_template: Optional template with {{DIFFS}} etc.
        options: Batch planning limits
        adapter: LLM adapter; defaults to the configured provider
        model: Model id; defaults to the provider's configured model
        max_context_tokens: Upper bound on per-call token budget
        executor: Pre-built executor (tests inject one with a fake sleep)
    """
    files = parse_diff(diff_text)
    if not files:
        return ReviewReport(summary="No parseable diff content found.")

    stats = diff_stats(files)
    hunks = flatten_hunks(files)
    plan = create_plan(hunks, options)
    logger.info("Diff: %s. Plan: %s", summarize(files), plan_summary(plan))

    if not plan.batches:
        return ReviewReport(
            summary=f"Reviewed {stats['files_changed']} file(s): no reviewable hunks.",
            plan_summary=plan_summary(plan),
        )

    if executor is None:
        if adapter is None:
            adapter = create_adapter(LLM_PROVIDER)
        executor = ReviewExecutor(
            adapter,
            model=model or default_model(LLM_PROVIDER),
            max_context_tokens=max_context_tokens,
        )

    base_context = ReviewContext(
        project_guidelines=project_guidelines,
        review_rules=review_rules,
        custom_prompt_template=custom_prompt_template,
    )
    report = executor.execute(plan, base_context)

    # Stable sort: errors first, batch order preserved within a severity
    report.findings.sort(key=lambda f: _SEVERITY_ORDER.get(f.severity, 99))
    report.summary = (
        f"Reviewed {stats['files_changed']} file(s): "
        f"+{stats['lines_added']}/-{stats['lines_removed']} lines. {report.summary}"
    )
    return report

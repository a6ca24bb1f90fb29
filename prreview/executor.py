"""Review execution: run a BatchPlan against an LLM adapter with graceful degradation.

Batches run strictly one after another. A failed batch walks a degradation
ladder before giving up on the LLM:

    rate limit:  back off and retry a reduced batch (x2) -> split in two
    other error: retry a simplified batch once
    otherwise:   heuristic findings for the batch

Three consecutive failed batches trigger the emergency fallback: heuristic
findings for every remaining batch and no further LLM calls.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Optional

from prreview.batching import plan_summary, reduce_batch, simplify_batch, split_batch
from prreview.checks import basic_findings
from prreview.config import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_JITTER_SECONDS,
    BACKOFF_MAX_SECONDS,
    BASE_BATCH_DELAY_SECONDS,
    DEFAULT_TEMPERATURE,
    FALLBACK_TEMPERATURE,
    MAX_CONSECUTIVE_FAILURES,
    MAX_CONTEXT_TOKENS,
    MAX_DELAY_SCALE,
    RATE_LIMIT_MAX_RETRIES,
    SPLIT_PARTS,
    SPLIT_RETRY_DELAY_SECONDS,
)
from prreview.context import build_batch_context
from prreview.errors import InternalError, is_rate_limit_error
from prreview.llm import LLMAdapter
from prreview.models import (
    Batch,
    BatchPlan,
    ExecutionStats,
    Finding,
    LLMConfig,
    ReviewContext,
    ReviewReport,
    ReviewResult,
)

logger = logging.getLogger(__name__)


@dataclass
class _RunState:
    """Mutable state of one execute() call. Never shared between runs."""

    findings: list[Finding] = field(default_factory=list)
    summaries: list[str] = field(default_factory=list)
    consecutive_failures: int = 0
    partial_responses: int = 0
    heuristic_batches: int = 0
    emergency: bool = False
    stats: ExecutionStats = field(default_factory=ExecutionStats)


def batch_delay(batch_count: int, base_delay: float = BASE_BATCH_DELAY_SECONDS) -> float:
    """Pause between successful batches; grows with plan size, max 4x base."""
    return base_delay * (1 + min(batch_count / 5, MAX_DELAY_SCALE))


def backoff_delay(attempt: int, jitter: float = 0.0) -> float:
    """Exponential backoff for rate-limit retry `attempt` (1-based)."""
    delay = min(BACKOFF_BASE_SECONDS * 2 ** (attempt - 1), BACKOFF_MAX_SECONDS)
    return delay + jitter * BACKOFF_JITTER_SECONDS


class ReviewExecutor:
    """Executes review plans against one LLM adapter.

    `sleep` and `jitter` are injectable so tests can run without waiting.
    """

    def __init__(
        self,
        adapter: Optional[LLMAdapter],
        model: str,
        max_context_tokens: int = MAX_CONTEXT_TOKENS,
        base_delay: float = BASE_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self.adapter = adapter
        self.model = model
        self.max_context_tokens = max_context_tokens
        self.base_delay = base_delay
        self._sleep = sleep
        self._jitter = jitter

    # ── Public API ───────────────────────────────────────────────────────

    def execute(self, plan: BatchPlan, base_context: ReviewContext) -> ReviewReport:
        """Run every batch of `plan` and return the aggregated report.

        Adapter failures never escape; only a missing adapter raises
        InternalError.
        """
        if self.adapter is None or not callable(getattr(self.adapter, "review_code", None)):
            raise InternalError("LLM adapter not initialized")

        state = _RunState()
        batches = plan.batches
        total = len(batches)
        state.stats.batches = total

        if not batches:
            return ReviewReport(summary="No changes to review", plan_summary=plan_summary(plan))

        delay = batch_delay(total, self.base_delay)
        if total > 1:
            logger.info("Executing %d batches with %.1fs delay between requests", total, delay)

        for i, batch in enumerate(batches):
            label = f"{i + 1}/{total}"
            logger.info("Processing batch %s: %s", label, batch.description)

            try:
                result = self._call(
                    state,
                    batch,
                    base_context,
                    max_tokens=min(int(batch.estimated_tokens * 1.2), self.max_context_tokens),
                    temperature=DEFAULT_TEMPERATURE,
                )
            except InternalError:
                raise
            except Exception as error:
                logger.error("Batch %s failed: %s", label, error)
                state.consecutive_failures += 1

                if is_rate_limit_error(error):
                    recovered = self._handle_rate_limit(state, batch, base_context, label)
                else:
                    recovered = self._handle_general_error(
                        state, batch, base_context, label, error
                    )

                if recovered:
                    state.consecutive_failures = 0
                    state.stats.succeeded += 1
                else:
                    state.stats.failed += 1

                if state.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    logger.error(
                        "Too many consecutive failures (%d), applying emergency fallback",
                        state.consecutive_failures,
                    )
                    self._apply_emergency_fallback(state, batches[i + 1 :])
                    break
                continue

            self._commit(state, result)
            state.consecutive_failures = 0
            state.stats.succeeded += 1
            logger.info("Batch %s completed: %d findings", label, len(result.findings))

            if i < total - 1:
                logger.debug("Waiting %.1fs before next batch...", delay)
                self._sleep(delay)

        logger.info(
            "Review completed: %d total findings from %d batches (%d LLM calls)",
            len(state.findings),
            total,
            state.stats.llm_calls,
        )
        return self._build_report(state, plan)

    # ── LLM Calls ────────────────────────────────────────────────────────

    def _call(
        self,
        state: _RunState,
        batch: Batch,
        base_context: ReviewContext,
        max_tokens: int,
        temperature: float,
    ) -> ReviewResult:
        context = build_batch_context(base_context, batch)
        config = LLMConfig(
            model=self.model,
            max_tokens=max(1, max_tokens),
            temperature=temperature,
        )
        state.stats.llm_calls += 1
        return self.adapter.review_code(context, config)

    @staticmethod
    def _commit(state: _RunState, result: ReviewResult) -> None:
        state.findings.extend(result.findings)
        if result.summary:
            state.summaries.append(str(result.summary))
        if result.partial:
            state.partial_responses += 1

    def _synthesize(self, state: _RunState, batch: Batch, label: str) -> None:
        findings = basic_findings(batch)
        state.findings.extend(findings)
        state.heuristic_batches += 1
        logger.warning("Generated %d basic findings for batch %s", len(findings), label)

    # ── Degradation Ladder ───────────────────────────────────────────────

    def _handle_rate_limit(
        self,
        state: _RunState,
        batch: Batch,
        base_context: ReviewContext,
        label: str,
    ) -> bool:
        """Back off and retry with a reduced batch; split if still throttled."""
        last_error: Optional[Exception] = None

        for attempt in range(1, RATE_LIMIT_MAX_RETRIES + 1):
            wait = backoff_delay(attempt, self._jitter())
            logger.warning(
                "Rate limit hit, backing off for %.1fs (attempt %d/%d)",
                wait,
                attempt,
                RATE_LIMIT_MAX_RETRIES,
            )
            self._sleep(wait)

            reduced = reduce_batch(batch)
            try:
                logger.info("Retrying batch %s with reduced context", label)
                result = self._call(
                    state,
                    reduced,
                    base_context,
                    max_tokens=min(
                        int(reduced.estimated_tokens * 1.1),
                        int(self.max_context_tokens * 0.7),
                    ),
                    temperature=DEFAULT_TEMPERATURE,
                )
            except InternalError:
                raise
            except Exception as retry_error:
                logger.error("Batch %s retry %d failed: %s", label, attempt, retry_error)
                last_error = retry_error
                continue

            self._commit(state, result)
            logger.info(
                "Batch %s retry succeeded with reduced context: %d findings",
                label,
                len(result.findings),
            )
            return True

        if last_error is not None and is_rate_limit_error(last_error):
            return self._split_and_retry(state, batch, base_context, label)

        self._synthesize(state, batch, label)
        return False

    def _split_and_retry(
        self,
        state: _RunState,
        batch: Batch,
        base_context: ReviewContext,
        label: str,
    ) -> bool:
        """Run the batch as independent halves; any success counts."""
        sub_batches = split_batch(batch, SPLIT_PARTS)
        logger.info("Splitting batch %s into %d sub-batches", label, len(sub_batches))
        failed_hunks = []
        successes = 0

        for j, sub in enumerate(sub_batches):
            self._sleep(SPLIT_RETRY_DELAY_SECONDS)
            try:
                result = self._call(
                    state,
                    sub,
                    base_context,
                    max_tokens=min(
                        sub.estimated_tokens, int(self.max_context_tokens * 0.5)
                    ),
                    temperature=DEFAULT_TEMPERATURE,
                )
            except InternalError:
                raise
            except Exception as sub_error:
                logger.error(
                    "Sub-batch %d/%d of batch %s failed: %s",
                    j + 1,
                    len(sub_batches),
                    label,
                    sub_error,
                )
                failed_hunks.extend(sub.hunks)
                continue

            self._commit(state, result)
            successes += 1
            logger.info(
                "Sub-batch %d/%d of batch %s succeeded", j + 1, len(sub_batches), label
            )

        if failed_hunks:
            self._synthesize(state, replace(batch, hunks=tuple(failed_hunks)), label)
        return successes > 0

    def _handle_general_error(
        self,
        state: _RunState,
        batch: Batch,
        base_context: ReviewContext,
        label: str,
        error: Exception,
    ) -> bool:
        """One retry with a simplified batch, then heuristics."""
        logger.warning("Attempting fallback for batch %s due to error: %s", label, error)
        simplified = simplify_batch(batch)

        try:
            result = self._call(
                state,
                simplified,
                base_context,
                max_tokens=min(
                    simplified.estimated_tokens, int(self.max_context_tokens * 0.6)
                ),
                temperature=FALLBACK_TEMPERATURE,
            )
        except InternalError:
            raise
        except Exception as fallback_error:
            logger.error("Batch %s fallback failed: %s", label, fallback_error)
            self._synthesize(state, batch, label)
            return False

        self._commit(state, result)
        logger.info(
            "Batch %s fallback succeeded: %d findings", label, len(result.findings)
        )
        return True

    def _apply_emergency_fallback(self, state: _RunState, remaining: list[Batch]) -> None:
        logger.warning("Applying emergency fallback to %d remaining batches", len(remaining))
        state.emergency = True
        emergency_findings: list[Finding] = []
        for batch in remaining:
            emergency_findings.extend(basic_findings(batch))
        state.findings.extend(emergency_findings)
        state.stats.skipped += len(remaining)
        logger.info("Emergency fallback generated %d basic findings", len(emergency_findings))

    # ── Report ───────────────────────────────────────────────────────────

    def _build_report(self, state: _RunState, plan: BatchPlan) -> ReviewReport:
        degraded = bool(
            state.heuristic_batches or state.partial_responses or state.emergency
        )
        stats = state.stats

        parts = [
            f"Reviewed {stats.batches} batch(es): {stats.succeeded} succeeded, "
            f"{stats.failed} failed"
            + (f", {stats.skipped} skipped" if stats.skipped else "")
            + f" ({stats.llm_calls} LLM calls)."
        ]
        if degraded:
            notes = []
            if state.heuristic_batches:
                notes.append(f"heuristic findings for {state.heuristic_batches} batch(es)")
            if state.partial_responses:
                notes.append(f"{state.partial_responses} partial response(s)")
            if state.emergency:
                notes.append("emergency fallback applied")
            parts.append(f"Degraded review: {'; '.join(notes)}.")
        if state.summaries:
            parts.append(f"LLM assessment: {' '.join(state.summaries)}")

        return ReviewReport(
            findings=state.findings,
            summary=" ".join(parts),
            degraded=degraded,
            stats=stats,
            plan_summary=plan_summary(plan),
        )

"""MCP tool definitions for the batched code reviewer."""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from typing import Optional

from fastmcp import Context, FastMCP

from prreview.analyzer import plan_diff as _plan_diff
from prreview.analyzer import review_diff as _review_diff
from prreview.batching import STRATEGY_MIXED, PlanningOptions, plan_summary
from prreview.config import DEFAULT_MAX_TOKENS_PER_BATCH, LLM_PROVIDER
from prreview.llm import Provider, create_adapter

logger = logging.getLogger(__name__)


def _error_response(tool_name: str, error: Exception) -> str:
    """Build a structured JSON error response for MCP tool failures."""
    logger.error("Tool %s failed: %s\n%s", tool_name, error, traceback.format_exc())
    return json.dumps(
        {
            "verdict": "ERROR",
            "summary": f"Tool '{tool_name}' failed: {error}",
            "stats": {"errors": 0, "warnings": 0, "info": 0, "total": 0},
            "findings": [],
            "error": str(error),
        },
        indent=2,
    )


def _make_progress_bridge(ctx: Context, loop: asyncio.AbstractEventLoop):
    """Create a sync callback that sends MCP log notifications during streaming.

    Log notifications keep the connection alive during long batched reviews
    and don't require the client to have sent a progressToken.
    """
    call_count = 0

    def on_progress(chars_so_far: int, elapsed: float, message: str) -> None:
        nonlocal call_count
        call_count += 1
        try:
            future = asyncio.run_coroutine_threadsafe(
                ctx.log(
                    message=f"[review] {message}",
                    level="info",
                    logger_name="prreview.llm",
                ),
                loop,
            )
            future.result(timeout=2.0)
        except Exception as e:
            logger.warning("Log notification failed (call #%d): %s", call_count, e)

    return on_progress


def _planning_options(
    max_tokens_per_batch: Optional[int], batch_strategy: Optional[str] = None
) -> PlanningOptions:
    return PlanningOptions(
        max_tokens_per_batch=max_tokens_per_batch or DEFAULT_MAX_TOKENS_PER_BATCH,
        batch_strategy=batch_strategy or STRATEGY_MIXED,
    )


def register_tools(mcp: FastMCP) -> None:
    """Register all review tools on the given FastMCP server instance."""

    @mcp.tool()
    async def review_diff(
        diff: str,
        ctx: Context,
        project_guidelines: Optional[str] = None,
        review_rules: Optional[str] = None,
        max_tokens_per_batch: Optional[int] = None,
        batch_strategy: Optional[str] = None,
    ) -> str:
        """Batched LLM code review of a git diff.

        Splits the diff into token-bounded batches, reviews them one by one,
        and degrades to heuristic findings when the model is rate limited or
        unavailable. Check the `degraded` flag before trusting the result as
        a full review.

        Args:
            diff: The unified diff output (e.g., from `git diff`)
            project_guidelines: Optional project conventions to review against
            review_rules: Optional review rules to enforce
            max_tokens_per_batch: Optional token budget per LLM request
            batch_strategy: mixed (default), file-based or size-based
        """
        try:
            adapter_kwargs = {}
            if str(LLM_PROVIDER).lower() == Provider.BEDROCK.value:
                loop = asyncio.get_running_loop()
                adapter_kwargs["on_progress"] = _make_progress_bridge(ctx, loop)
            adapter = create_adapter(LLM_PROVIDER, **adapter_kwargs)

            report = await asyncio.to_thread(
                _review_diff,
                diff_text=diff,
                project_guidelines=project_guidelines or "",
                review_rules=review_rules or "",
                options=_planning_options(max_tokens_per_batch, batch_strategy),
                adapter=adapter,
            )
            return report.to_json()
        except Exception as e:
            return _error_response("review_diff", e)

    @mcp.tool()
    def plan_review(
        diff: str,
        max_tokens_per_batch: Optional[int] = None,
        batch_strategy: Optional[str] = None,
    ) -> str:
        """Show how a diff would be batched, without calling the LLM.

        Args:
            diff: The unified diff output (e.g., from `git diff`)
            max_tokens_per_batch: Optional token budget per LLM request
            batch_strategy: mixed (default), file-based or size-based
        """
        try:
            plan = _plan_diff(diff, _planning_options(max_tokens_per_batch, batch_strategy))
            payload = plan.to_dict()
            payload["summary"] = plan_summary(plan)
            return json.dumps(payload, indent=2)
        except Exception as e:
            return _error_response("plan_review", e)

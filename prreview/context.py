"""Batch context: render a batch's hunks into the diff text sent to the LLM."""

from __future__ import annotations

from prreview.models import Batch, Hunk, ReviewContext


def render_hunks(hunks: tuple[Hunk, ...] | list[Hunk]) -> str:
    """Reconstruct a compact unified diff, grouped by file in first-seen order."""
    by_file: dict[str, list[Hunk]] = {}
    for hunk in hunks:
        by_file.setdefault(hunk.file_path, []).append(hunk)

    parts: list[str] = []
    for path, file_hunks in by_file.items():
        parts.append(f"--- a/{path}")
        parts.append(f"+++ b/{path}")
        for hunk in file_hunks:
            parts.append(
                f"@@ -{hunk.old_line_start},{hunk.old_line_count} "
                f"+{hunk.new_line_start},{hunk.new_line_count} @@ {hunk.context}".rstrip()
            )
            parts.append(hunk.content)
    return "\n".join(parts)


def build_batch_context(base: ReviewContext, batch: Batch) -> ReviewContext:
    """Copy guidelines, rules and template from `base`; diffs from the batch."""
    return ReviewContext(
        project_guidelines=base.project_guidelines,
        review_rules=base.review_rules,
        diffs=render_hunks(batch.hunks),
        custom_prompt_template=base.custom_prompt_template,
    )

"""Static heuristics: findings synthesised when the LLM cannot review a batch."""

from __future__ import annotations

import re

from prreview.config import HEURISTIC_RULES, MAX_LINE_LENGTH
from prreview.models import Batch, ChangeType, Finding, Hunk, Severity

_COMPILED_RULES = {
    rule_id: re.compile(rule["pattern"]) for rule_id, rule in HEURISTIC_RULES.items()
}


def check_hunk(hunk: Hunk) -> list[Finding]:
    """Run the heuristic rules over a hunk's added lines."""
    findings: list[Finding] = []
    if hunk.change_type not in (ChangeType.ADD, ChangeType.EDIT):
        return findings

    for line_no, line_text in hunk.added_lines:
        for rule_id, pattern in _COMPILED_RULES.items():
            if pattern.search(line_text):
                rule = HEURISTIC_RULES[rule_id]
                findings.append(
                    Finding(
                        file=hunk.file_path,
                        line=line_no,
                        severity=Severity(rule["severity"]),
                        message=rule["message"],
                        suggestion=rule["suggestion"],
                        rule_id=rule_id,
                        category="heuristic",
                    )
                )

        if len(line_text) > MAX_LINE_LENGTH:
            findings.append(
                Finding(
                    file=hunk.file_path,
                    line=line_no,
                    severity=Severity.INFO,
                    message=f"Line too long (>{MAX_LINE_LENGTH} characters)",
                    suggestion="Consider breaking this line into multiple lines",
                    rule_id="max-line-length",
                    category="heuristic",
                )
            )

    return findings


def basic_findings(batch: Batch) -> list[Finding]:
    """Heuristic findings for a whole batch.

    Always returns at least one finding so a batch the LLM never reviewed is
    still visible to the user.
    """
    findings: list[Finding] = []
    for hunk in batch.hunks:
        findings.extend(check_hunk(hunk))

    if not findings:
        findings.append(
            Finding(
                file=batch.hunks[0].file_path if batch.hunks else "unknown",
                line=max(1, batch.hunks[0].new_line_start) if batch.hunks else 1,
                severity=Severity.INFO,
                message="Code changes reviewed (AI review unavailable)",
                suggestion="Manual code review recommended due to AI service limitations",
                rule_id="manual-review-required",
                category="heuristic",
            )
        )

    return findings

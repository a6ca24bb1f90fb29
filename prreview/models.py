"""Data models for the batched code reviewer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class Severity(str, Enum):
    """Severity levels for review findings."""

    ERROR = "error"  # must fix
    WARNING = "warning"  # should fix
    INFO = "info"  # consider

    def __str__(self) -> str:
        return self.value


class ChangeType(str, Enum):
    """How a file or hunk changed."""

    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"
    RENAME = "rename"

    def __str__(self) -> str:
        return self.value


# ── Diff Model ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Hunk:
    """A single hunk from a unified diff, tied to one file."""

    file_path: str
    change_type: ChangeType
    old_line_start: int
    old_line_count: int
    new_line_start: int
    new_line_count: int
    content: str
    context: str = ""

    @property
    def lines(self) -> list[str]:
        return self.content.split("\n") if self.content else []

    @property
    def added_lines(self) -> list[tuple[int, str]]:
        """(new_line_no, text) for every `+` line."""
        added: list[tuple[int, str]] = []
        line_no = self.new_line_start
        for line in self.lines:
            if line.startswith("+"):
                added.append((line_no, line[1:]))
                line_no += 1
            elif not line.startswith("-"):
                line_no += 1
        return added

    @property
    def removed_line_count(self) -> int:
        return sum(1 for line in self.lines if line.startswith("-"))


@dataclass
class FileDiff:
    """Parsed diff for a single file."""

    file_path: str
    change_type: ChangeType = ChangeType.EDIT
    old_path: Optional[str] = None
    hunks: list[Hunk] = field(default_factory=list)
    is_binary: bool = False

    @property
    def added_line_count(self) -> int:
        return sum(len(h.added_lines) for h in self.hunks)

    @property
    def removed_line_count(self) -> int:
        return sum(h.removed_line_count for h in self.hunks)


# ── Planning Model ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Batch:
    """A bounded group of hunks sent together in one LLM request."""

    id: str
    hunks: tuple[Hunk, ...]
    estimated_tokens: int
    description: str = ""
    priority: str = "medium"  # high | medium | low

    @property
    def files(self) -> list[str]:
        return list(dict.fromkeys(h.file_path for h in self.hunks))


@dataclass
class BatchPlan:
    """Ordered batches for one review run. Order is execution order."""

    strategy: str  # single | mixed | file-based | size-based
    batches: list[Batch] = field(default_factory=list)
    total_files: int = 0
    total_hunks: int = 0
    estimated_tokens: int = 0
    estimated_duration: float = 0.0  # seconds

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "total_files": self.total_files,
            "total_hunks": self.total_hunks,
            "estimated_tokens": self.estimated_tokens,
            "estimated_duration": round(self.estimated_duration),
            "batches": [
                {
                    "id": b.id,
                    "files": b.files,
                    "hunks": len(b.hunks),
                    "estimated_tokens": b.estimated_tokens,
                    "priority": b.priority,
                    "description": b.description,
                }
                for b in self.batches
            ],
        }


# ── Review Model ─────────────────────────────────────────────────────────────


@dataclass
class Finding:
    """A single review finding, from the LLM or from heuristics."""

    file: str
    line: int
    severity: Severity
    message: str
    end_line: Optional[int] = None
    suggestion: Optional[str] = None
    rule_id: Optional[str] = None
    category: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "file": self.file,
            "line": self.line,
            "endLine": self.end_line,
            "severity": str(self.severity),
            "message": self.message,
            "suggestion": self.suggestion,
            "ruleId": self.rule_id,
            "category": self.category,
        }
        # Drop None values for cleaner output
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class ReviewResult:
    """Findings from one LLM call."""

    findings: list[Finding] = field(default_factory=list)
    summary: Optional[str] = None
    partial: bool = False


@dataclass
class ReviewContext:
    """Everything the LLM needs to review one batch."""

    project_guidelines: str = ""
    review_rules: str = ""
    diffs: str = ""
    custom_prompt_template: Optional[str] = None


@dataclass
class LLMConfig:
    """Per-call model configuration."""

    model: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    timeout: Optional[float] = None


@dataclass
class ExecutionStats:
    batches: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0  # not sent to the LLM after emergency fallback
    llm_calls: int = 0

    def to_dict(self) -> dict:
        return {
            "batches": self.batches,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "llm_calls": self.llm_calls,
        }


@dataclass
class ReviewReport:
    """Complete review report containing all findings."""

    findings: list[Finding] = field(default_factory=list)
    summary: str = ""
    degraded: bool = False
    stats: ExecutionStats = field(default_factory=ExecutionStats)
    plan_summary: str = ""
    reviewed_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def error_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.WARNING)

    @property
    def info_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == Severity.INFO)

    @property
    def verdict(self) -> str:
        if self.error_count > 0:
            return "CHANGES REQUESTED: errors must be addressed"
        if self.warning_count > 2:
            return "NEEDS ATTENTION: multiple warnings found"
        if self.warning_count > 0:
            return "ACCEPTABLE WITH RESERVATIONS: warnings should be reviewed"
        if self.info_count > 0:
            return "APPROVED: minor notes only"
        return "APPROVED: no issues found"

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict,
            "summary": self.summary,
            "degraded": self.degraded,
            "stats": {
                "errors": self.error_count,
                "warnings": self.warning_count,
                "info": self.info_count,
                "total": len(self.findings),
            },
            "execution": self.stats.to_dict(),
            "plan": self.plan_summary,
            "findings": [f.to_dict() for f in self.findings],
            "reviewed_at": self.reviewed_at,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

from __future__ import annotations

from collections.abc import Callable

import pytest

from prreview.errors import GeneralProviderError, RateLimitError
from prreview.models import (
    ChangeType,
    Finding,
    Hunk,
    LLMConfig,
    ReviewContext,
    ReviewResult,
    Severity,
)

TWO_FILE_DIFF = """\
diff --git a/src/app.py b/src/app.py
index 1111111..2222222 100644
--- a/src/app.py
+++ b/src/app.py
@@ -1,3 +1,4 @@ def main():
 import os
+import sys

 def main():
@@ -10,2 +11,2 @@ def run():
-    return 1
+    return 2
diff --git a/src/util.js b/src/util.js
new file mode 100644
index 0000000..3333333
--- /dev/null
+++ b/src/util.js
@@ -0,0 +1,2 @@
+export const add = (a, b) => a + b;
+console.log(add(1, 2));
"""


def make_hunk(
    file_path: str = "src/app.py",
    content: str = "+x = 1",
    change_type: ChangeType = ChangeType.ADD,
    new_line_start: int = 1,
) -> Hunk:
    return Hunk(
        file_path=file_path,
        change_type=change_type,
        old_line_start=new_line_start,
        old_line_count=1,
        new_line_start=new_line_start,
        new_line_count=1,
        content=content,
    )


def make_finding(file: str = "src/app.py", line: int = 1, message: str = "issue") -> Finding:
    return Finding(file=file, line=line, severity=Severity.WARNING, message=message)


class FakeAdapter:
    """Scripted adapter: each call pops the next outcome (result or exception).

    A callable outcome is invoked with (context, config) instead.
    """

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls: list[tuple[ReviewContext, LLMConfig]] = []

    def review_code(self, context: ReviewContext, config: LLMConfig) -> ReviewResult:
        self.calls.append((context, config))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if callable(outcome) and not isinstance(outcome, BaseException):
            outcome = outcome(context, config)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return ReviewResult(findings=[])
        return outcome


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def rate_limited() -> Callable[[], RateLimitError]:
    return lambda: RateLimitError("429 Too Many Requests")


@pytest.fixture
def provider_down() -> Callable[[], GeneralProviderError]:
    return lambda: GeneralProviderError("upstream exploded", status_code=500)

"""Review prompts and custom template substitution."""

from __future__ import annotations

import re

from prreview.models import ReviewContext

REVIEW_SYSTEM = (
    "You are an expert code reviewer. Respond ONLY with JSON as instructed."
)

RESPONSE_FORMAT = """```json
{
  "findings": [
    {
      "file": "path/to/file",
      "line": 123,
      "endLine": 125,
      "severity": "error|warning|info",
      "message": "Issue description",
      "suggestion": "Suggested fix",
      "ruleId": "rule-id",
      "category": "category-name"
    }
  ],
  "summary": "Overall review summary"
}
```"""

_JSON_INSTRUCTIONS = (
    "Please provide your response in the following JSON format:\n" + RESPONSE_FORMAT
)

_LEFTOVER_PLACEHOLDER = re.compile(r"\{\{[^}]+\}\}")


def apply_custom_template(context: ReviewContext, template: str) -> str:
    """Fill {{PROJECT_GUIDELINES}}, {{REVIEW_RULES}}, {{DIFFS}}, {{INSTRUCTIONS}}.

    Unknown placeholders are removed.
    """
    replacements = {
        "{{PROJECT_GUIDELINES}}": context.project_guidelines or "",
        "{{REVIEW_RULES}}": context.review_rules or "",
        "{{DIFFS}}": context.diffs or "",
        "{{INSTRUCTIONS}}": _JSON_INSTRUCTIONS,
    }
    # Strip unknown placeholders first so substituted diffs are left untouched
    result = _LEFTOVER_PLACEHOLDER.sub(
        lambda m: m.group(0) if m.group(0) in replacements else "", template
    )
    for placeholder, value in replacements.items():
        result = result.replace(placeholder, value)
    return result


def build_review_prompt(context: ReviewContext) -> str:
    """Build the user message for one review call."""
    if context.custom_prompt_template:
        return apply_custom_template(context, context.custom_prompt_template)

    sections = [
        "You are an expert code reviewer. Please review the following code "
        "changes according to the provided guidelines and rules.",
        "",
    ]

    if context.project_guidelines.strip():
        sections += ["## Project Guidelines", context.project_guidelines, ""]

    if context.review_rules.strip():
        sections += ["## Review Rules", context.review_rules, ""]

    sections += [
        "## Code Changes to Review",
        context.diffs,
        "",
        "## Instructions",
        "Please review the code changes and provide feedback in the following JSON format:",
        "",
        RESPONSE_FORMAT,
        "",
        "Focus on:",
        "- Code quality and best practices",
        "- Potential bugs and security issues",
        "- Performance considerations",
        "- Maintainability and readability",
        "- Adherence to project guidelines and rules",
        "",
        "Only report actual issues. Do not provide feedback on correct code.",
        "Be specific about line numbers and provide actionable suggestions.",
        "Return ONLY the JSON structure, with no text before or after it.",
    ]
    return "\n".join(sections)

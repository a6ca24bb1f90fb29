"""LLM response parsing: recover structured findings from noisy or partial JSON."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from typing import Any, Optional

from prreview.config import DEFAULT_SUMMARY, PARTIAL_SUMMARY, RESPONSE_NOISE_PATTERNS
from prreview.errors import ParseError
from prreview.models import Finding, ReviewResult, Severity

logger = logging.getLogger(__name__)

_NOISE = [re.compile(p, re.MULTILINE) for p in RESPONSE_NOISE_PATTERNS]

# Greedy: from the first "{" to the last "}"
_JSON_SPAN = re.compile(r"\{[\s\S]*\}")

# "key": "value" leaf pairs. A quote inside the value is allowed unless it is
# followed by a delimiter, so unescaped inner quotes stay within the value.
_STRING_PAIR = re.compile(
    r'"(\w+)"(\s*):(\s*)"((?:[^"\\]|\\.|"(?!\s*[,}\]]))*)"(?=\s*[,}\]])'
)
_INVALID_ESCAPE = re.compile(r'\\(?!["\\/bfnrt]|u[0-9a-fA-F]{4})')
_UNESCAPED_QUOTE = re.compile(r'(?<!\\)"')
_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\f": "\\f", "\b": "\\b"}

_FIELD_STRING = r'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)"'
_FIELD_INT = r'"{name}"\s*:\s*(\d+)'
_SEVERITY_FIELD = re.compile(r'"severity"\s*:\s*"(error|warning|info)"')

_SEVERITY_ALIASES = {
    "error": Severity.ERROR,
    "critical": Severity.ERROR,
    "warning": Severity.WARNING,
    "warn": Severity.WARNING,
    "info": Severity.INFO,
    "information": Severity.INFO,
}


# ── Cleanup ──────────────────────────────────────────────────────────────────


def clean_response(text: str) -> str:
    """Strip tool banners, markdown fences and lead-in prose."""
    cleaned = text or ""
    for pattern in _NOISE:
        cleaned = pattern.sub("", cleaned)
    return cleaned.strip()


def extract_json_candidate(text: str) -> str:
    match = _JSON_SPAN.search(text)
    if not match:
        raise ParseError("No JSON found in response")
    return match.group(0)


# ── Escaping Repair ──────────────────────────────────────────────────────────


def _escape_control(match: re.Match) -> str:
    char = match.group(0)
    return _CONTROL_ESCAPES.get(char, f"\\u{ord(char):04x}")


def _escape_value(value: str) -> str:
    value = _INVALID_ESCAPE.sub(r"\\\\", value)
    value = _UNESCAPED_QUOTE.sub(r'\\"', value)
    return _CONTROL_CHARS.sub(_escape_control, value)


def repair_json_escaping(json_text: str) -> str:
    """Re-escape leaf string values that are not valid JSON strings.

    Only `"key": "value"` pairs are touched; values that already parse are
    left byte-for-byte unchanged.
    """

    def fix(match: re.Match) -> str:
        key, space_before, space_after, value = match.groups()
        try:
            json.loads(f'"{value}"')
            return match.group(0)
        except json.JSONDecodeError:
            return f'"{key}"{space_before}:{space_after}"{_escape_value(value)}"'

    return _STRING_PAIR.sub(fix, json_text)


def is_truncation_error(error: json.JSONDecodeError) -> bool:
    """True when the decode error looks like the response was cut off."""
    return (
        error.msg.startswith("Unterminated string")
        or error.msg.startswith("Expecting property name")
        or error.pos >= len(error.doc.rstrip())
    )


# ── Finding Conversion ───────────────────────────────────────────────────────


def normalize_severity(value: Any) -> Severity:
    if isinstance(value, str):
        severity = _SEVERITY_ALIASES.get(value.strip().lower())
        if severity is not None:
            return severity
    return Severity.WARNING


def _as_line(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 1 or int(value) != value:
        return None
    return int(value)


def finding_from_dict(raw: Any) -> Optional[Finding]:
    """Convert one raw finding dict; None when a required field is unusable."""
    if not isinstance(raw, dict):
        return None
    if not raw.get("file") or not raw.get("message"):
        logger.warning("Skipping invalid finding: missing file or message")
        return None
    line = _as_line(raw.get("line"))
    if line is None:
        logger.warning("Skipping invalid finding: invalid line number %r", raw.get("line"))
        return None

    finding = Finding(
        file=str(raw["file"]),
        line=line,
        severity=normalize_severity(raw.get("severity")),
        message=str(raw["message"]),
    )
    end_line = _as_line(raw.get("endLine"))
    if end_line is not None:
        finding.end_line = end_line
    for key, attr in (("suggestion", "suggestion"), ("ruleId", "rule_id"), ("category", "category")):
        if raw.get(key):
            setattr(finding, attr, str(raw[key]))
    return finding


def validate_findings(raw_findings: list) -> list[Finding]:
    findings = []
    for raw in raw_findings:
        finding = finding_from_dict(raw)
        if finding is not None:
            findings.append(finding)
    return findings


# ── Partial Recovery ─────────────────────────────────────────────────────────


def _decode_string(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        return raw


def _string_field(span: str, name: str) -> Optional[str]:
    match = re.search(_FIELD_STRING.format(name=name), span)
    return _decode_string(match.group(1)) if match else None


def _int_field(span: str, name: str) -> Optional[int]:
    match = re.search(_FIELD_INT.format(name=name), span)
    return int(match.group(1)) if match else None


def _flat_objects(text: str) -> Iterator[str]:
    """Yield each closed `{...}` span that holds no nested object.

    Braces inside JSON strings do not count. An object still open at the end
    of the text is never yielded.
    """
    open_objects: list[list] = []  # [start, has_nested]
    in_string = False
    escaped = False

    for i, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            if open_objects:
                open_objects[-1][1] = True
            open_objects.append([i, False])
        elif char == "}" and open_objects:
            start, has_nested = open_objects.pop()
            if not has_nested:
                yield text[start : i + 1]


def extract_partial_findings(json_text: str) -> list[Finding]:
    """Pull complete finding-shaped objects out of a truncated response.

    An object counts only if it holds `file`, a numeric `line`, a severity of
    error/warning/info and `message`. Optional fields are read from inside the
    same object. Anything else, including a cut-off trailing object, is
    skipped.
    """
    findings: list[Finding] = []

    for span in _flat_objects(json_text):
        file = _string_field(span, "file")
        line = _int_field(span, "line")
        severity = _SEVERITY_FIELD.search(span)
        message = _string_field(span, "message")
        if not file or line is None or line < 1 or severity is None or not message:
            continue

        finding = Finding(
            file=file,
            line=line,
            severity=Severity(severity.group(1)),
            message=message,
            end_line=_int_field(span, "endLine"),
            suggestion=_string_field(span, "suggestion"),
            rule_id=_string_field(span, "ruleId"),
            category=_string_field(span, "category"),
        )
        findings.append(finding)

    logger.debug("Extracted %d partial findings from incomplete JSON", len(findings))
    return findings


# ── Entry Point ──────────────────────────────────────────────────────────────


def _summary_text(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value
    if value and not isinstance(value, str):
        logger.warning("Ignoring non-text summary of type %s", type(value).__name__)
    return DEFAULT_SUMMARY


def _result_from_data(data: Any) -> ReviewResult:
    if not isinstance(data, dict) or not isinstance(data.get("findings"), list):
        raise ParseError("Invalid response structure: missing findings array")
    return ReviewResult(
        findings=validate_findings(data["findings"]),
        summary=_summary_text(data.get("summary")),
    )


def parse_review_response(response_text: str) -> ReviewResult:
    """Parse an LLM response into a ReviewResult.

    Strict JSON first, then an escaping repair pass, then extraction of
    whichever complete finding objects survive. Raises ParseError only when
    no finding can be recovered.
    """
    cleaned = clean_response(response_text)
    candidate = extract_json_candidate(cleaned)

    try:
        return _result_from_data(json.loads(candidate))
    except json.JSONDecodeError as e:
        original_error = e

    try:
        result = _result_from_data(json.loads(repair_json_escaping(candidate)))
        logger.info("Parsed LLM response after escaping repair")
        return result
    except json.JSONDecodeError:
        pass

    truncated = is_truncation_error(original_error)
    if truncated:
        logger.warning(
            "Incomplete JSON response (%s). Attempting to extract partial findings.",
            original_error,
        )
    else:
        logger.warning(
            "JSON parsing failed (%s). Attempting to extract partial findings.",
            original_error,
        )

    findings = extract_partial_findings(candidate)
    if not findings:
        reason = "Incomplete JSON response" if truncated else "Malformed JSON response"
        raise ParseError(
            f"Failed to parse review response: {reason}: {original_error}",
            details={"truncated": truncated},
        )

    logger.info("Recovered %d findings from incomplete response", len(findings))
    return ReviewResult(findings=findings, summary=PARTIAL_SUMMARY, partial=True)

"""Configuration for the batched LLM code reviewer."""

from __future__ import annotations

import os

# ── Server Config ────────────────────────────────────────────────────────────
SERVER_NAME = "prreview-mcp"
SERVER_VERSION = "0.3.0"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 8088

# ── Provider Selection ───────────────────────────────────────────────────────
# "bedrock" or "openrouter"
LLM_PROVIDER = os.environ.get("PRREVIEW_PROVIDER", "bedrock")

# ── Bedrock Config ───────────────────────────────────────────────────────────
BEDROCK_PROFILE = os.environ.get("PRREVIEW_BEDROCK_PROFILE", "bedrock")
BEDROCK_REGION = os.environ.get("PRREVIEW_BEDROCK_REGION", "eu-west-1")
BEDROCK_MODEL_ID = os.environ.get(
    "PRREVIEW_BEDROCK_MODEL", "eu.anthropic.claude-sonnet-4-6"
)
BEDROCK_MAX_TOKENS = 8192

# ── OpenRouter Config ────────────────────────────────────────────────────────
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_MODEL = os.environ.get("PRREVIEW_OPENROUTER_MODEL", "openai/gpt-4o-mini")
OPENROUTER_TIMEOUT_SECONDS = 120.0

# ── Batch Planning ───────────────────────────────────────────────────────────
DEFAULT_MAX_TOKENS_PER_BATCH = 8000
DEFAULT_MAX_FILES_PER_BATCH = 10
DEFAULT_MAX_HUNKS_PER_BATCH = 50
DEFAULT_PRIORITIZE_FILE_TYPES = [".ts", ".js", ".tsx", ".jsx", ".py"]
DEFAULT_EXCLUDE_FILE_TYPES = [".lock", ".log", ".tmp"]

# ~4 chars per token, plus a fixed per-hunk overhead for path and header
CHARS_PER_TOKEN = 4
HUNK_OVERHEAD_TOKENS = 20

CRITICAL_FILE_PATTERNS = [
    "*.config.*",
    "*package.json",
    "*tsconfig.json",
    "*pyproject.toml",
    "*Dockerfile",
    "*.yml",
    "*.yaml",
]
TEST_FILE_PATTERNS = [
    "*.test.*",
    "*.spec.*",
    "*test_*.py",
    "*_test.py",
    "test/*",
    "tests/*",
    "*/test/*",
    "*/tests/*",
    "*/__tests__/*",
]

# ── Review Execution ─────────────────────────────────────────────────────────
MAX_CONTEXT_TOKENS = 32_000
BASE_BATCH_DELAY_SECONDS = 2.0
MAX_DELAY_SCALE = 3
MAX_CONSECUTIVE_FAILURES = 3
RATE_LIMIT_MAX_RETRIES = 2
BACKOFF_BASE_SECONDS = 5.0
BACKOFF_MAX_SECONDS = 60.0
BACKOFF_JITTER_SECONDS = 1.0
SPLIT_RETRY_DELAY_SECONDS = 3.0
SPLIT_PARTS = 2
DEFAULT_TEMPERATURE = 0.1
FALLBACK_TEMPERATURE = 0.2

RATE_LIMIT_MESSAGE_PATTERNS = [
    "rate limit",
    "rate-limit",
    "too many requests",
    "quota exceeded",
    "resource exhausted",
    "resource_exhausted",
    "throttl",
]

# ── Heuristic Fallback Rules ─────────────────────────────────────────────────
# Applied to added lines when the LLM cannot review a batch
MAX_LINE_LENGTH = 120

HEURISTIC_RULES = {
    "no-console": {
        "pattern": r"\bconsole\.(?:log|error|debug|warn)\s*\(|\bprint\s*\(|\bSystem\.out\.print",
        "severity": "warning",
        "message": "Consider removing debug print statements before production",
        "suggestion": "Use a proper logging framework instead of print/console statements",
    },
    "todo-fixme": {
        "pattern": r"\b(?:TODO|FIXME)\b",
        "severity": "info",
        "message": "TODO/FIXME comment found",
        "suggestion": "Consider addressing this TODO/FIXME item",
    },
}

# ── Response Cleanup ─────────────────────────────────────────────────────────
# Non-content noise that CLI-based providers prepend or wrap around the JSON
RESPONSE_NOISE_PATTERNS = [
    r"^\[dotenv@[^\]]+\]\s+injecting\s+env\s+\([^)]+\)\s+from\s+\.env\s*",
    r"^\[dotenv[^\]]*\][^\n]*\n?",
    r"^\s*```json\s*",
    r"\s*```\s*$",
    r"^\s*```\s*",
    r"^\s*Here's the review.*$",
    r"^\s*Based on.*$",
]
PARTIAL_SUMMARY = "Partial review completed (response was incomplete)"
DEFAULT_SUMMARY = "No summary provided"

# ── Binary Detection ─────────────────────────────────────────────────────────
BINARY_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".ico", ".svg",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".zip", ".rar", ".7z", ".tar", ".gz",
    ".exe", ".dll", ".so", ".dylib",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv",
    ".ttf", ".otf", ".woff", ".woff2",
    ".bin", ".dat", ".db",
}  # fmt: skip

# ── Usage Logging ────────────────────────────────────────────────────────────
USAGE_LOG_PATH = "usage.log"

# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("PRREVIEW_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
# Client libraries held at WARNING so batch progress stays readable
QUIET_LOGGERS = ["botocore", "boto3", "urllib3", "httpx", "httpcore"]

"""LLM adapters: Bedrock and OpenRouter implementations of the review capability."""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from prreview.config import (
    BEDROCK_MAX_TOKENS,
    BEDROCK_MODEL_ID,
    BEDROCK_PROFILE,
    BEDROCK_REGION,
    OPENROUTER_BASE_URL,
    OPENROUTER_MODEL,
    OPENROUTER_TIMEOUT_SECONDS,
    USAGE_LOG_PATH,
)
from prreview.errors import (
    ConfigurationError,
    GeneralProviderError,
    RateLimitError,
)
from prreview.llm_parsing import parse_review_response
from prreview.models import LLMConfig, ReviewContext, ReviewResult
from prreview.prompts import REVIEW_SYSTEM, build_review_prompt

logger = logging.getLogger(__name__)

# Type alias for progress callbacks: (chars_so_far, elapsed_seconds, message) -> None
ProgressCallback = Callable[[int, float, str], None]

# Response cap floor: batch-derived caps on tiny batches would truncate
# every answer
MIN_RESPONSE_TOKENS = 1024

_THROTTLING_CODES = {
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceQuotaExceededException",
}


class Provider(str, Enum):
    BEDROCK = "bedrock"
    OPENROUTER = "openrouter"

    def __str__(self) -> str:
        return self.value


@runtime_checkable
class LLMAdapter(Protocol):
    """The one capability the executor needs from a provider."""

    def review_code(self, context: ReviewContext, config: LLMConfig) -> ReviewResult: ...


def _response_tokens(config: LLMConfig, default: int) -> int:
    if config.max_tokens is None:
        return default
    return max(int(config.max_tokens), MIN_RESPONSE_TOKENS)


# ── Usage log setup ──────────────────────────────────────────────────────────


def _get_usage_logger(log_path: str) -> logging.Logger:
    """Lazy-init a dedicated TSV file logger for token usage."""
    usage_logger = logging.getLogger("prreview.usage")
    usage_logger.setLevel(logging.INFO)
    usage_logger.propagate = False  # Don't duplicate to root logger

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Check if file needs header BEFORE creating the handler (which creates the file)
    needs_header = not path.exists() or path.stat().st_size == 0

    target = str(path.resolve())
    if not any(
        getattr(h, "baseFilename", None) == target for h in usage_logger.handlers
    ):
        handler = logging.FileHandler(target, mode="a")
        handler.setFormatter(logging.Formatter("%(message)s"))
        usage_logger.addHandler(handler)

    if needs_header:
        usage_logger.info(
            "timestamp\tmodel\ttool\tinput_tokens\toutput_tokens\ttotal_tokens\tlatency_ms"
        )

    return usage_logger


def log_usage(
    model: str,
    tool: str,
    input_tokens: int,
    output_tokens: int,
    latency_ms: int,
    log_path: Optional[str] = USAGE_LOG_PATH,
) -> None:
    """Log token usage to the standard logger and, if configured, the usage file."""
    total = input_tokens + output_tokens

    logger.info(
        "LLM usage [%s]: input=%d output=%d total=%d latency=%dms model=%s",
        tool,
        input_tokens,
        output_tokens,
        total,
        latency_ms,
        model,
    )

    if not log_path:
        return

    usage = _get_usage_logger(log_path)
    ts = datetime.now(timezone.utc).isoformat()
    usage.info(
        "%s\t%s\t%s\t%d\t%d\t%d\t%d",
        ts,
        model,
        tool,
        input_tokens,
        output_tokens,
        total,
        latency_ms,
    )


# ── Bedrock ──────────────────────────────────────────────────────────────────


class BedrockAdapter:
    """Streams reviews from Anthropic models on Amazon Bedrock."""

    def __init__(
        self,
        profile: str = BEDROCK_PROFILE,
        region: str = BEDROCK_REGION,
        client=None,
        on_progress: ProgressCallback | None = None,
        usage_log_path: Optional[str] = USAGE_LOG_PATH,
    ):
        self.profile = profile
        self.region = region
        self.on_progress = on_progress
        self.usage_log_path = usage_log_path
        self._client = client

    def _get_client(self):
        """Lazy-init the Bedrock Runtime client using the configured AWS profile."""
        if self._client is None:
            session = boto3.Session(profile_name=self.profile, region_name=self.region)
            self._client = session.client(
                "bedrock-runtime",
                config=BotoConfig(
                    # Throttling is handled by the executor's backoff ladder
                    retries={"max_attempts": 1, "mode": "standard"},
                    read_timeout=120,
                    connect_timeout=10,
                    max_pool_connections=4,
                    tcp_keepalive=True,
                ),
            )
            logger.info(
                "Bedrock client initialized: profile=%s region=%s",
                self.profile,
                self.region,
            )
        return self._client

    def get_available_models(self) -> list[str]:
        return [BEDROCK_MODEL_ID]

    def get_summary(self) -> str:
        return f"Bedrock ({self.profile}@{self.region})"

    def _build_body(self, prompt: str, config: LLMConfig) -> dict:
        body = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": _response_tokens(config, BEDROCK_MAX_TOKENS),
            "temperature": config.temperature if config.temperature is not None else 0.1,
            "system": REVIEW_SYSTEM,
            "messages": [{"role": "user", "content": prompt}],
        }
        if config.top_p is not None:
            body["top_p"] = config.top_p
        if config.top_k is not None:
            body["top_k"] = config.top_k
        return body

    def _report_progress(self, chars: int, elapsed: float, message: str) -> None:
        if not self.on_progress:
            return
        try:
            self.on_progress(chars, elapsed, message)
        except Exception as cb_err:
            logger.warning("on_progress callback raised: %s", cb_err)

    def _stream_text(self, response, tool: str, start: float) -> tuple[str, str, int, int]:
        """Accumulate a streamed response into (text, stop_reason, input, output)."""
        text_chunks: list[str] = []
        stop_reason = "unknown"
        input_tokens = 0
        output_tokens = 0
        chunk_count = 0
        total_chars = 0  # Running counter -- avoids O(n^2) recounting

        for event in response["body"]:
            # Guard against non-chunk events (error events, etc.)
            if "chunk" not in event:
                if "throttlingException" in event:
                    err = event["throttlingException"]
                    raise RateLimitError(
                        f"Bedrock throttled: {err.get('message', err)}"
                    )
                for key in (
                    "internalServerException",
                    "modelStreamErrorException",
                    "validationException",
                    "serviceUnavailableException",
                ):
                    if key in event:
                        err_msg = event[key].get("message", str(event[key]))
                        logger.error("Bedrock stream error [%s]: %s: %s", tool, key, err_msg)
                        raise GeneralProviderError(
                            f"Bedrock stream error ({key}): {err_msg}"
                        )
                logger.warning("Unknown non-chunk event in stream: %s", list(event.keys()))
                continue

            try:
                chunk = json.loads(event["chunk"]["bytes"])
            except (json.JSONDecodeError, KeyError) as parse_err:
                logger.warning("Malformed stream chunk, skipping: %s", parse_err)
                continue

            chunk_type = chunk.get("type", "")

            if chunk_type == "content_block_delta":
                delta = chunk.get("delta", {})
                if delta.get("type") == "text_delta":
                    text = delta.get("text", "")
                    text_chunks.append(text)
                    total_chars += len(text)
                    chunk_count += 1

                    # Report progress every 20 chunks
                    if chunk_count % 20 == 0:
                        elapsed = time.monotonic() - start
                        msg = f"streaming {total_chars} chars, {elapsed:.0f}s"
                        logger.info("  [%s] %s", tool, msg)
                        self._report_progress(total_chars, elapsed, msg)

            elif chunk_type == "message_delta":
                stop_reason = chunk.get("delta", {}).get("stop_reason", "unknown")
                output_tokens = chunk.get("usage", {}).get("output_tokens", 0)

            elif chunk_type == "message_start":
                input_tokens = (
                    chunk.get("message", {}).get("usage", {}).get("input_tokens", 0)
                )

        return "".join(text_chunks), stop_reason, input_tokens, output_tokens

    def review_code(self, context: ReviewContext, config: LLMConfig) -> ReviewResult:
        """Send one review request and parse the streamed answer.

        Raises:
            RateLimitError: Bedrock throttled the request
            GeneralProviderError: any other Bedrock failure
            ParseError: the answer held no recoverable findings
        """
        client = self._get_client()
        model_id = config.model or BEDROCK_MODEL_ID
        tool = "review_code"
        body = self._build_body(build_review_prompt(context), config)

        start = time.monotonic()
        logger.info(
            "Bedrock stream starting [%s] model=%s max_tokens=%d",
            tool,
            model_id,
            body["max_tokens"],
        )

        try:
            response = client.invoke_model_with_response_stream(
                modelId=model_id,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(body),
            )
            full_text, stop_reason, input_tokens, output_tokens = self._stream_text(
                response, tool, start
            )
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code", "")
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            message = error.get("Message", str(e))
            if code in _THROTTLING_CODES or status == 429:
                raise RateLimitError(f"Bedrock throttled ({code}): {message}") from e
            raise GeneralProviderError(
                f"Bedrock request failed ({code}): {message}", status_code=status
            ) from e
        except BotoCoreError as e:
            latency_ms = int((time.monotonic() - start) * 1000)
            logger.error("Bedrock inference failed after %dms: %s", latency_ms, e)
            raise GeneralProviderError(f"Bedrock inference failed: {e}") from e

        latency_ms = int((time.monotonic() - start) * 1000)
        elapsed = latency_ms / 1000
        if full_text:
            self._report_progress(
                len(full_text), elapsed, f"complete {len(full_text)} chars, {elapsed:.0f}s"
            )

        log_usage(
            model=model_id,
            tool=tool,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
            log_path=self.usage_log_path,
        )

        if stop_reason == "max_tokens":
            logger.warning(
                "Response truncated (hit max_tokens=%d). Output may be incomplete.",
                body["max_tokens"],
            )

        if not full_text:
            raise GeneralProviderError("Empty response from Bedrock stream")

        return parse_review_response(full_text)


# ── OpenRouter ───────────────────────────────────────────────────────────────


class OpenRouterAdapter:
    """Chat-completions reviews through OpenRouter."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = OPENROUTER_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key or os.environ.get("OPENROUTER_API_KEY")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationError(
                "Missing OPENROUTER_API_KEY environment variable for OpenRouter provider"
            )
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if os.environ.get("OPENROUTER_REFERER"):
            headers["HTTP-Referer"] = os.environ["OPENROUTER_REFERER"]
        if os.environ.get("OPENROUTER_TITLE"):
            headers["X-Title"] = os.environ["OPENROUTER_TITLE"]
        return headers

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def get_available_models(self) -> list[str]:
        return [OPENROUTER_MODEL]

    def get_summary(self) -> str:
        return f"OpenRouter ({self.base_url})"

    def _build_request_body(self, prompt: str, config: LLMConfig) -> dict:
        body = {
            "model": config.model or OPENROUTER_MODEL,
            "messages": [
                {"role": "system", "content": REVIEW_SYSTEM},
                {"role": "user", "content": prompt},
            ],
            "temperature": config.temperature if config.temperature is not None else 0.1,
        }
        if config.max_tokens is not None:
            body["max_tokens"] = _response_tokens(config, MIN_RESPONSE_TOKENS)
        if config.top_p is not None:
            body["top_p"] = config.top_p
        if config.top_k is not None:
            body["top_k"] = config.top_k
        return body

    @staticmethod
    def _classify_error(response: httpx.Response) -> GeneralProviderError | RateLimitError:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        message = f"HTTP {response.status_code}"
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            message = payload["error"].get("message", message)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_sec = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_sec = None
            return RateLimitError(
                f"OpenRouter rate limited: {message}", retry_after=retry_after_sec
            )
        return GeneralProviderError(
            f"OpenRouter request failed: {message}", status_code=response.status_code
        )

    def review_code(self, context: ReviewContext, config: LLMConfig) -> ReviewResult:
        headers = self._get_headers()
        body = self._build_request_body(build_review_prompt(context), config)
        url = f"{self.base_url}/chat/completions"
        timeout = config.timeout if config.timeout is not None else self.timeout

        start = time.monotonic()
        try:
            response = self._get_client().post(
                url, json=body, headers=headers, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise GeneralProviderError(
                f"OpenRouter request timed out after {timeout} seconds"
            ) from e
        except httpx.HTTPError as e:
            raise GeneralProviderError(f"OpenRouter request failed: {e}") from e

        if response.status_code != 200:
            error = self._classify_error(response)
            logger.warning("OpenRouter request failed: %s", error)
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise GeneralProviderError("Non-JSON response from OpenRouter") from e

        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content")
        if not content:
            raise GeneralProviderError("Empty response content from OpenRouter")

        usage = data.get("usage") or {}
        log_usage(
            model=body["model"],
            tool="review_code",
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            latency_ms=int((time.monotonic() - start) * 1000),
            log_path=None,
        )

        return parse_review_response(content)


# ── Selection ────────────────────────────────────────────────────────────────


def create_adapter(provider: Provider | str, **kwargs) -> LLMAdapter:
    """Instantiate the adapter for an explicit provider tag."""
    try:
        provider = Provider(str(provider).lower())
    except ValueError:
        raise ConfigurationError(
            f"Unknown LLM provider {provider!r}; expected one of "
            f"{', '.join(p.value for p in Provider)}"
        ) from None

    if provider is Provider.BEDROCK:
        return BedrockAdapter(**kwargs)
    return OpenRouterAdapter(**kwargs)


def default_model(provider: Provider | str) -> str:
    return OPENROUTER_MODEL if str(provider) == Provider.OPENROUTER.value else BEDROCK_MODEL_ID

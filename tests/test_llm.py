import json

import httpx
import pytest
from botocore.exceptions import ClientError

from prreview.config import BEDROCK_MODEL_ID, OPENROUTER_MODEL
from prreview.errors import (
    ConfigurationError,
    GeneralProviderError,
    ParseError,
    RateLimitError,
)
from prreview.llm import (
    MIN_RESPONSE_TOKENS,
    BedrockAdapter,
    LLMAdapter,
    OpenRouterAdapter,
    create_adapter,
    default_model,
)
from prreview.models import LLMConfig, ReviewContext, Severity

REVIEW_JSON = json.dumps(
    {
        "findings": [
            {"file": "src/app.py", "line": 3, "severity": "warning", "message": "Shadowed name"}
        ],
        "summary": "Minor issue",
    }
)
CONTEXT = ReviewContext(diffs="--- a/src/app.py\n+++ b/src/app.py\n@@ -1,1 +1,1 @@\n+x = 1")


# ── Bedrock ──────────────────────────────────────────────────────────────────


def _chunk(payload: dict) -> dict:
    return {"chunk": {"bytes": json.dumps(payload).encode()}}


def _stream(text: str) -> list[dict]:
    return [
        _chunk({"type": "message_start", "message": {"usage": {"input_tokens": 120}}}),
        _chunk({"type": "content_block_delta", "delta": {"type": "text_delta", "text": text[:10]}}),
        _chunk({"type": "content_block_delta", "delta": {"type": "text_delta", "text": text[10:]}}),
        _chunk({"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 40}}),
    ]


class FakeBedrockClient:
    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.requests = []

    def invoke_model_with_response_stream(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return {"body": iter(self.events)}


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "InvokeModelWithResponseStream",
    )


class TestBedrockAdapter:
    def test_streams_and_parses_review(self, tmp_path):
        client = FakeBedrockClient(events=_stream(REVIEW_JSON))
        usage_log = tmp_path / "usage.log"
        adapter = BedrockAdapter(client=client, usage_log_path=str(usage_log))

        result = adapter.review_code(
            CONTEXT, LLMConfig(model="test-model", max_tokens=100, temperature=0.2)
        )

        assert result.findings[0].severity == Severity.WARNING
        assert result.summary == "Minor issue"

        request = client.requests[0]
        body = json.loads(request["body"])
        assert request["modelId"] == "test-model"
        assert body["max_tokens"] == MIN_RESPONSE_TOKENS
        assert body["temperature"] == 0.2
        assert "+x = 1" in body["messages"][0]["content"]

        rows = usage_log.read_text().splitlines()
        assert rows[0].startswith("timestamp\tmodel")
        assert rows[1].split("\t")[1:6] == ["test-model", "review_code", "120", "40", "160"]

    def test_progress_callback_receives_completion(self):
        seen = []
        adapter = BedrockAdapter(
            client=FakeBedrockClient(events=_stream(REVIEW_JSON)),
            on_progress=lambda chars, elapsed, msg: seen.append((chars, msg)),
            usage_log_path=None,
        )

        adapter.review_code(CONTEXT, LLMConfig(model="m"))

        assert seen[-1][0] == len(REVIEW_JSON)
        assert seen[-1][1].startswith("complete")

    @pytest.mark.parametrize(
        "code, status",
        [("ThrottlingException", 400), ("ServiceUnavailable", 429)],
    )
    def test_throttling_maps_to_rate_limit(self, code, status):
        adapter = BedrockAdapter(
            client=FakeBedrockClient(error=_client_error(code, status)), usage_log_path=None
        )

        with pytest.raises(RateLimitError):
            adapter.review_code(CONTEXT, LLMConfig(model="m"))

    def test_other_client_errors_are_general(self):
        adapter = BedrockAdapter(
            client=FakeBedrockClient(error=_client_error("ValidationException", 400)),
            usage_log_path=None,
        )

        with pytest.raises(GeneralProviderError) as exc_info:
            adapter.review_code(CONTEXT, LLMConfig(model="m"))

        assert exc_info.value.status_code == 400

    def test_stream_throttling_event(self):
        events = [{"throttlingException": {"message": "slow down"}}]
        adapter = BedrockAdapter(client=FakeBedrockClient(events=events), usage_log_path=None)

        with pytest.raises(RateLimitError, match="slow down"):
            adapter.review_code(CONTEXT, LLMConfig(model="m"))

    def test_stream_error_event(self):
        events = [{"modelStreamErrorException": {"message": "model died"}}]
        adapter = BedrockAdapter(client=FakeBedrockClient(events=events), usage_log_path=None)

        with pytest.raises(GeneralProviderError, match="model died"):
            adapter.review_code(CONTEXT, LLMConfig(model="m"))

    def test_empty_stream(self):
        adapter = BedrockAdapter(client=FakeBedrockClient(events=[]), usage_log_path=None)

        with pytest.raises(GeneralProviderError, match="Empty response"):
            adapter.review_code(CONTEXT, LLMConfig(model="m"))

    def test_unparseable_answer_raises_parse_error(self):
        adapter = BedrockAdapter(
            client=FakeBedrockClient(events=_stream("I refuse to answer in JSON today.")),
            usage_log_path=None,
        )

        with pytest.raises(ParseError):
            adapter.review_code(CONTEXT, LLMConfig(model="m"))


# ── OpenRouter ───────────────────────────────────────────────────────────────


def _openrouter(handler, api_key="test-key"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenRouterAdapter(api_key=api_key, base_url="https://router.test/api/v1/", client=client)


class TestOpenRouterAdapter:
    def test_successful_review(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "```json\n" + REVIEW_JSON + "\n```"}}],
                    "usage": {"prompt_tokens": 50, "completion_tokens": 20},
                },
            )

        result = _openrouter(handler).review_code(
            CONTEXT, LLMConfig(model="vendor/model", max_tokens=5000, temperature=0.1)
        )

        assert result.findings[0].message == "Shadowed name"
        assert captured["url"] == "https://router.test/api/v1/chat/completions"
        assert captured["auth"] == "Bearer test-key"
        assert captured["body"]["model"] == "vendor/model"
        assert captured["body"]["max_tokens"] == 5000
        assert captured["body"]["messages"][0]["role"] == "system"

    def test_rate_limited_with_retry_after(self):
        def handler(request):
            return httpx.Response(
                429,
                headers={"Retry-After": "7"},
                json={"error": {"message": "Rate limit exceeded"}},
            )

        with pytest.raises(RateLimitError) as exc_info:
            _openrouter(handler).review_code(CONTEXT, LLMConfig(model="m"))

        assert exc_info.value.retry_after == 7.0
        assert "Rate limit exceeded" in str(exc_info.value)

    def test_server_error_is_general(self):
        def handler(request):
            return httpx.Response(502, json={"error": {"message": "upstream down"}})

        with pytest.raises(GeneralProviderError) as exc_info:
            _openrouter(handler).review_code(CONTEXT, LLMConfig(model="m"))

        assert exc_info.value.status_code == 502
        assert exc_info.value.retryable
        assert not isinstance(exc_info.value, RateLimitError)

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GeneralProviderError, match="timed out"):
            _openrouter(handler).review_code(CONTEXT, LLMConfig(model="m"))

    def test_empty_content(self):
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": ""}}]})

        with pytest.raises(GeneralProviderError, match="Empty response content"):
            _openrouter(handler).review_code(CONTEXT, LLMConfig(model="m"))

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        with pytest.raises(ConfigurationError, match="OPENROUTER_API_KEY"):
            _openrouter(handler, api_key=None).review_code(CONTEXT, LLMConfig(model="m"))
        assert calls == []


class TestSelection:
    def test_create_adapter_by_tag(self):
        assert isinstance(create_adapter("bedrock", client=FakeBedrockClient()), BedrockAdapter)
        adapter = create_adapter("OpenRouter", api_key="k")
        assert isinstance(adapter, OpenRouterAdapter)
        assert isinstance(adapter, LLMAdapter)

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unknown LLM provider"):
            create_adapter("carrier-pigeon")

    def test_default_model(self):
        assert default_model("openrouter") == OPENROUTER_MODEL
        assert default_model("bedrock") == BEDROCK_MODEL_ID

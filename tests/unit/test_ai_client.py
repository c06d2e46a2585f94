"""
Unit tests for the rate-limited Gemini client.

The transport is replaced by a scripted fake (see conftest.py); the
GeminiTransport tests patch the google-generativeai module.
"""

import threading

import pytest
from google.api_core import exceptions as google_exceptions
from unittest.mock import MagicMock, patch

pytestmark = pytest.mark.unit


class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize("error", [
        google_exceptions.ResourceExhausted("quota"),
        google_exceptions.TooManyRequests("slow down"),
        google_exceptions.DeadlineExceeded("deadline"),
        google_exceptions.ServiceUnavailable("down"),
        google_exceptions.InternalServerError("oops"),
        TimeoutError("timed out"),
        ConnectionError("reset"),
    ])
    def test_retryable_types(self, error):
        from haru_workers.metadata.ai_client import classify_error

        assert classify_error(error) is True

    @pytest.mark.parametrize("error", [
        google_exceptions.InvalidArgument("bad image"),
        google_exceptions.Unauthenticated("no key"),
        google_exceptions.PermissionDenied("denied"),
        google_exceptions.NotFound("no model"),
    ])
    def test_non_retryable_types(self, error):
        from haru_workers.metadata.ai_client import classify_error

        assert classify_error(error) is False

    def test_message_patterns(self):
        """Test untyped errors fall back to message matching."""
        from haru_workers.metadata.ai_client import classify_error

        assert classify_error(RuntimeError("Quota exceeded for project")) is True
        assert classify_error(RuntimeError("HTTP 503 from upstream")) is True
        assert classify_error(RuntimeError("Invalid request payload")) is False
        assert classify_error(RuntimeError("blocked by safety filter")) is False

    def test_unknown_is_retryable(self):
        from haru_workers.metadata.ai_client import classify_error

        assert classify_error(RuntimeError("something odd")) is True

    def test_empty_response_errors(self):
        """Test safety and prompt blocks are final, other empties are retried."""
        from haru_workers.metadata.ai_client import classify_error
        from haru_workers.metadata.errors import EmptyResponseError

        assert classify_error(EmptyResponseError("SAFETY")) is False
        assert classify_error(EmptyResponseError("OTHER", prompt_blocked=True)) is False
        assert classify_error(EmptyResponseError("MAX_TOKENS")) is True
        assert classify_error(EmptyResponseError(None)) is True


class TestEstimateCost:
    def test_estimate(self):
        from haru_workers.metadata.ai_client import estimate_cost

        assert estimate_cost(4000, 4000) == pytest.approx(0.00075)
        assert estimate_cost(0, 0) == 0


class TestRateLimitedAIClient:
    """Tests for RateLimitedAIClient retry behavior."""

    def test_success_first_attempt(self, fake_transport, make_client, recorded_sleeps):
        from haru_workers.metadata.types import PromptPart, SamplingConfig

        transport = fake_transport(['{"exerciseType": "러닝"}'])
        client = make_client(transport)

        response = client.generate([PromptPart.from_text("hi")], SamplingConfig.for_extraction())

        assert response.text == '{"exerciseType": "러닝"}'
        assert response.attempts == 1
        assert recorded_sleeps.delays == []
        _, sampling, timeout = transport.calls[0]
        assert sampling.temperature == 0.1
        assert timeout == 30.0

    def test_transient_failure_then_success(self, fake_transport, make_client, recorded_sleeps):
        """Test one retryable failure is retried after the base backoff."""
        from haru_workers.metadata.types import PromptPart

        transport = fake_transport([google_exceptions.ServiceUnavailable("down"), "ok"])
        client = make_client(transport)

        response = client.generate([PromptPart.from_text("hi")])

        assert response.text == "ok"
        assert response.attempts == 2
        assert recorded_sleeps.delays == [1.0]

    def test_retries_exhausted(self, fake_transport, make_client, recorded_sleeps):
        """Test three 503s give exactly three calls with 1s and 2s backoff."""
        from haru_workers.metadata.errors import AIServiceError
        from haru_workers.metadata.types import PromptPart

        transport = fake_transport([google_exceptions.ServiceUnavailable("down")])
        client = make_client(transport)

        with pytest.raises(AIServiceError) as exc_info:
            client.generate([PromptPart.from_text("hi")])

        assert len(transport.calls) == 3
        assert recorded_sleeps.delays == [1.0, 2.0]
        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable is False

        stats = client.get_stats()
        assert stats["total_calls"] == 1
        assert stats["total_attempts"] == 3
        assert stats["total_retries"] == 2
        assert stats["failed_calls"] == 1

    def test_non_retryable_not_retried(self, fake_transport, make_client, recorded_sleeps):
        """Test an invalid-argument error fails after one call."""
        from haru_workers.metadata.errors import AIServiceError
        from haru_workers.metadata.types import PromptPart

        transport = fake_transport([google_exceptions.InvalidArgument("bad image")])
        client = make_client(transport)

        with pytest.raises(AIServiceError) as exc_info:
            client.generate([PromptPart.from_text("hi")])

        assert len(transport.calls) == 1
        assert recorded_sleeps.delays == []
        assert exc_info.value.attempts == 1

    def test_safety_block_not_retried(self, fake_transport, make_client):
        """Test a safety-terminated empty response fails immediately."""
        from haru_workers.metadata.errors import AIServiceError, EmptyResponseError
        from haru_workers.metadata.types import PromptPart

        transport = fake_transport([EmptyResponseError("SAFETY")])
        client = make_client(transport)

        with pytest.raises(AIServiceError) as exc_info:
            client.generate([PromptPart.from_text("hi")])

        assert len(transport.calls) == 1
        assert exc_info.value.finish_reason == "SAFETY"

    def test_blank_text_is_failure(self, fake_transport, make_client):
        """Test whitespace-only text is treated as an empty response and retried."""
        from haru_workers.metadata.errors import AIServiceError
        from haru_workers.metadata.types import AIResponse, PromptPart

        transport = fake_transport([AIResponse(text="   ", termination_reason="MAX_TOKENS")])
        client = make_client(transport)

        with pytest.raises(AIServiceError):
            client.generate([PromptPart.from_text("hi")])

        assert len(transport.calls) == 3

    def test_concurrency_ceiling(self, fake_transport, make_client):
        """Test five concurrent callers never exceed two in-flight calls."""
        from haru_workers.metadata.rate_limiter import RateLimitConfig
        from haru_workers.metadata.types import PromptPart

        transport = fake_transport(["ok"], delay=0.05)
        client = make_client(transport, RateLimitConfig(max_concurrent_requests=2, request_delay_seconds=0))
        results = []

        def call():
            results.append(client.generate([PromptPart.from_text("hi")]).text)

        threads = [threading.Thread(target=call) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert results == ["ok"] * 5
        assert transport.max_in_flight <= 2
        assert client.throttle.in_flight == 0

    def test_slot_released_after_failure(self, fake_transport, make_client):
        from haru_workers.metadata.errors import AIServiceError
        from haru_workers.metadata.types import PromptPart

        client = make_client(fake_transport([google_exceptions.InvalidArgument("bad")]))

        with pytest.raises(AIServiceError):
            client.generate([PromptPart.from_text("hi")])

        assert client.throttle.in_flight == 0

    def test_check_connection(self, fake_transport, make_client):
        client_ok = make_client(fake_transport(["Hello!"]))
        client_bad = make_client(fake_transport([google_exceptions.Unauthenticated("no key")]))

        assert client_ok.check_connection() is True
        assert client_bad.check_connection() is False

    def test_update_config(self, fake_transport, make_client):
        """Test runtime changes apply; the concurrency ceiling cannot change."""
        client = make_client(fake_transport())

        client.update_config(request_delay_seconds=0.5, max_retries=5)

        assert client.config.max_retries == 5
        assert client.throttle.get_stats()["request_delay_seconds"] == 0.5
        with pytest.raises(ValueError):
            client.update_config(max_concurrent_requests=10)
        with pytest.raises(ValueError):
            client.update_config(nonsense=1)


class TestGeminiTransport:
    """Tests for GeminiTransport with the SDK patched out."""

    def test_missing_api_key(self):
        from haru_workers.metadata.ai_client import GeminiTransport

        with pytest.raises(ValueError, match="GEMINI_API_KEY"):
            GeminiTransport("gemini-1.5-flash", None)

    @patch("haru_workers.metadata.ai_client.genai")
    def test_generate_builds_request(self, mock_genai, gemini_response):
        """Test parts become SDK contents and the timeout is forwarded."""
        from haru_workers.metadata.ai_client import GeminiTransport
        from haru_workers.metadata.types import PromptPart, SamplingConfig

        model = MagicMock()
        model.generate_content.return_value = gemini_response('{"foodName": "비빔밥"}')
        mock_genai.GenerativeModel.return_value = model

        transport = GeminiTransport("gemini-1.5-flash", "test-key")
        parts = [
            PromptPart.from_text("analyze"),
            PromptPart(inline_data=b"\xff\xd8\xff", media_type="image/jpeg"),
        ]
        response = transport.generate(parts, SamplingConfig.for_extraction(), timeout=12)

        mock_genai.configure.assert_called_once_with(api_key="test-key")
        args, kwargs = model.generate_content.call_args
        assert args[0] == ["analyze", {"mime_type": "image/jpeg", "data": b"\xff\xd8\xff"}]
        assert kwargs["request_options"] == {"timeout": 12}
        mock_genai.GenerationConfig.assert_called_once_with(
            temperature=0.1, max_output_tokens=200, top_p=0.8, top_k=40
        )

        assert response.text == '{"foodName": "비빔밥"}'
        assert response.termination_reason == "STOP"
        assert response.safety_signals[0].category == "HARM_CATEGORY_DANGEROUS_CONTENT"

    def test_prompt_blocked(self, gemini_response):
        from haru_workers.metadata.ai_client import GeminiTransport
        from haru_workers.metadata.errors import EmptyResponseError

        with pytest.raises(EmptyResponseError) as exc_info:
            GeminiTransport._to_ai_response(gemini_response(block_reason="SAFETY"), 0.1)

        assert exc_info.value.prompt_blocked is True
        assert exc_info.value.retryable is False

    def test_no_candidates(self, gemini_response):
        from haru_workers.metadata.ai_client import GeminiTransport
        from haru_workers.metadata.errors import EmptyResponseError

        with pytest.raises(EmptyResponseError) as exc_info:
            GeminiTransport._to_ai_response(gemini_response(candidates=False), 0.1)

        assert exc_info.value.finish_reason == "NO_CANDIDATES"
        assert exc_info.value.retryable is True

    def test_safety_finish_without_text(self, gemini_response):
        from haru_workers.metadata.ai_client import GeminiTransport
        from haru_workers.metadata.errors import EmptyResponseError

        with pytest.raises(EmptyResponseError) as exc_info:
            GeminiTransport._to_ai_response(gemini_response(text="", finish_reason="SAFETY"), 0.1)

        assert exc_info.value.finish_reason == "SAFETY"
        assert exc_info.value.retryable is False

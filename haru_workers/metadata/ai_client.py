"""
Rate-limited Gemini client.

Features:
- Bounded concurrency and request spacing via RequestThrottle
- Retryable/non-retryable error classification at the transport boundary
- Explicit retry loop with exponential backoff (optional jitter)
- Empty or safety-blocked responses surfaced as failures
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import HarmBlockThreshold, HarmCategory

from haru_workers.metadata.errors import AIServiceError, EmptyResponseError
from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle, compute_backoff
from haru_workers.metadata.types import AIResponse, PromptPart, SafetySignal, SamplingConfig

logger = logging.getLogger(__name__)


# USD per 1K tokens
INPUT_COST_PER_1K_TOKENS = 0.00025
OUTPUT_COST_PER_1K_TOKENS = 0.0005
CHARS_PER_TOKEN = 4

RETRYABLE_API_ERRORS = (
    google_exceptions.TooManyRequests,  # includes ResourceExhausted
    google_exceptions.DeadlineExceeded,
    google_exceptions.ServerError,  # 5xx: InternalServerError, ServiceUnavailable, ...
    google_exceptions.Aborted,
)

NON_RETRYABLE_API_ERRORS = (
    google_exceptions.BadRequest,  # includes InvalidArgument
    google_exceptions.Unauthorized,  # includes Unauthenticated
    google_exceptions.Forbidden,  # includes PermissionDenied
    google_exceptions.NotFound,
)

# Message fallbacks for errors that carry no structured type
RETRYABLE_PATTERNS = (
    "rate limit", "quota", "429", "timeout", "timed out", "deadline",
    "network", "connection", "unavailable", "internal", "500", "502", "503", "504",
)
NON_RETRYABLE_PATTERNS = (
    "invalid", "bad request", "400", "unauthorized", "401", "forbidden", "403",
    "permission", "safety", "policy",
)

DEFAULT_SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
}


def classify_error(error: BaseException) -> bool:
    """
    Decide whether a failed AI call is worth retrying.

    Structured exception types are consulted first; message matching is
    only used for errors without one. Unknown errors are retried.
    """
    if isinstance(error, AIServiceError):
        return error.retryable
    if isinstance(error, RETRYABLE_API_ERRORS):
        return True
    if isinstance(error, NON_RETRYABLE_API_ERRORS):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    if any(pattern in message for pattern in RETRYABLE_PATTERNS):
        return True
    if any(pattern in message for pattern in NON_RETRYABLE_PATTERNS):
        return False
    return True


def estimate_cost(prompt_chars: int, response_chars: int) -> float:
    """Rough USD cost of one call from character counts."""
    input_tokens = prompt_chars / CHARS_PER_TOKEN
    output_tokens = response_chars / CHARS_PER_TOKEN
    return (
        input_tokens / 1000 * INPUT_COST_PER_1K_TOKENS
        + output_tokens / 1000 * OUTPUT_COST_PER_1K_TOKENS
    )


def _enum_name(value: Any) -> str:
    return getattr(value, "name", None) or str(value)


class GeminiTransport:
    """
    Thin adapter from PromptPart lists to google-generativeai calls.
    """

    def __init__(
        self,
        model_name: str,
        api_key: Optional[str],
        safety_settings: Optional[Dict[Any, Any]] = None
    ):
        if not api_key:
            raise ValueError(
                "GEMINI_API_KEY not set. Please set the GEMINI__API_KEY environment variable "
                "or add it to your .env file."
            )
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.model = genai.GenerativeModel(
            model_name,
            safety_settings=safety_settings or DEFAULT_SAFETY_SETTINGS,
        )

    @staticmethod
    def _to_content(part: PromptPart) -> Any:
        if part.is_image:
            return {"mime_type": part.media_type, "data": part.inline_data}
        return part.text

    def generate(self, parts: List[PromptPart], sampling: SamplingConfig, timeout: float) -> AIResponse:
        start = time.time()
        response = self.model.generate_content(
            [self._to_content(part) for part in parts],
            generation_config=genai.GenerationConfig(
                temperature=sampling.temperature,
                max_output_tokens=sampling.max_output_tokens,
                top_p=sampling.top_p,
                top_k=sampling.top_k,
            ),
            request_options={"timeout": timeout},
        )
        return self._to_ai_response(response, time.time() - start)

    @staticmethod
    def _to_ai_response(response: Any, elapsed: float) -> AIResponse:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None) if feedback is not None else None
        if block_reason:
            raise EmptyResponseError(_enum_name(block_reason), prompt_blocked=True)

        candidates = list(getattr(response, "candidates", None) or [])
        if not candidates:
            raise EmptyResponseError("NO_CANDIDATES")

        candidate = candidates[0]
        finish_reason = _enum_name(candidate.finish_reason)
        content = getattr(candidate, "content", None)
        parts = getattr(content, "parts", None) or []
        text = "".join(part.text for part in parts if getattr(part, "text", None))

        signals = [
            SafetySignal(
                category=_enum_name(rating.category),
                probability=_enum_name(rating.probability),
                blocked=bool(getattr(rating, "blocked", False)),
            )
            for rating in (getattr(candidate, "safety_ratings", None) or [])
        ]

        if not text.strip():
            raise EmptyResponseError(finish_reason)

        return AIResponse(
            text=text,
            termination_reason=finish_reason,
            safety_signals=signals,
            response_time=elapsed,
        )


class RateLimitedAIClient:
    """
    Calls the AI transport under the shared throttle with retries.

    Usage:
        client = RateLimitedAIClient(GeminiTransport(model, key), RateLimitConfig())
        response = client.generate(parts, SamplingConfig.for_extraction())
    """

    def __init__(
        self,
        transport: Any,
        config: Optional[RateLimitConfig] = None,
        throttle: Optional[RequestThrottle] = None,
        sleep=time.sleep
    ):
        self.transport = transport
        self.config = config or RateLimitConfig()
        self.throttle = throttle or RequestThrottle(self.config, sleep=sleep)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stats = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "total_attempts": 0,
            "total_retries": 0,
        }

    def _count(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._stats[key] += amount

    def generate(
        self,
        parts: List[PromptPart],
        sampling: Optional[SamplingConfig] = None
    ) -> AIResponse:
        """
        Send one request, retrying retryable failures.

        Args:
            parts: Ordered text/image parts
            sampling: Generation parameters (analysis defaults if omitted)

        Returns:
            AIResponse with non-empty text

        Raises:
            AIServiceError: Non-retryable failure or retries exhausted
        """
        sampling = sampling or SamplingConfig()
        max_attempts = max(1, self.config.max_retries)
        self._count("total_calls")

        with self.throttle.slot():
            attempt = 0
            while True:
                attempt += 1
                self.throttle.wait_for_turn()
                self._count("total_attempts")
                start = time.time()
                try:
                    response = self.transport.generate(parts, sampling, self.config.timeout_seconds)
                    if not response.text or not response.text.strip():
                        raise EmptyResponseError(response.termination_reason)
                except Exception as e:
                    retryable = classify_error(e)
                    if not retryable or attempt >= max_attempts:
                        self._count("failed_calls")
                        logger.error(
                            f"AI call failed after {attempt} attempt(s) "
                            f"({'retries exhausted' if retryable else 'not retryable'}): {e}"
                        )
                        raise AIServiceError(
                            f"AI call failed after {attempt} attempt(s): {e}",
                            retryable=False,
                            attempts=attempt,
                            finish_reason=getattr(e, "finish_reason", None),
                        ) from e

                    delay = compute_backoff(
                        attempt, self.config.base_backoff_seconds, self.config.jitter_seconds
                    )
                    self._count("total_retries")
                    logger.warning(
                        f"AI call attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    self._sleep(delay)
                    continue

                response.attempts = attempt
                response.response_time = time.time() - start
                self._count("successful_calls")
                return response

    def check_connection(self) -> bool:
        """Send a tiny text-only request to verify credentials and reachability."""
        try:
            response = self.generate(
                [PromptPart.from_text("Hello")],
                SamplingConfig(temperature=0.1, max_output_tokens=10),
            )
        except AIServiceError as e:
            logger.error(f"AI connection test failed: {e}")
            return False
        logger.info(f"AI connection test succeeded ({len(response.text)} chars)")
        return True

    def update_config(self, **changes: Any) -> None:
        """Change retry/spacing parameters at runtime."""
        if "max_concurrent_requests" in changes:
            raise ValueError("max_concurrent_requests is fixed for the lifetime of the throttle")
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise ValueError(f"Unknown rate limit setting: {key}")
            if key == "request_delay_seconds":
                self.throttle.update_delay(value)
            setattr(self.config, key, value)
        logger.info(f"Rate limit config updated: {changes}")

    def get_stats(self) -> dict:
        with self._lock:
            stats = dict(self._stats)
        stats.update(self.throttle.get_stats())
        stats["max_retries"] = self.config.max_retries
        return stats

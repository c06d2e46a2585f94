"""
Metadata Extractor - Production Pipeline.

Photo → ImagePreprocessor → PromptComposer → RateLimitedAIClient
      → ResponseParser → metadata (or FallbackSynthesizer → degraded metadata)

Both public operations always return a metadata record. Expected failures
(missing image, AI outage, unparseable answer) are attached to the record
as an ExtractionError instead of being raised.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from haru_backend.core.config import Settings, get_settings
from haru_backend.storage.object_store import build_object_store
from haru_workers.metadata.ai_client import GeminiTransport, RateLimitedAIClient, estimate_cost
from haru_workers.metadata.errors import ErrorKind, ExtractionError, MetadataExtractionException
from haru_workers.metadata.fallback import FallbackSynthesizer
from haru_workers.metadata.image_preprocessor import ImageConfig, ImagePreprocessor
from haru_workers.metadata.prompts import PromptComposer
from haru_workers.metadata.rate_limiter import RateLimitConfig, compute_backoff
from haru_workers.metadata.response_parser import ResponseParser
from haru_workers.metadata.telemetry import (
    AI_CALL_COMPLETED,
    EXTRACTION_FAILED,
    EXTRACTION_SUCCEEDED,
    IMAGE_PROCESSED,
    ExtractionMetrics,
    ExtractionTelemetry,
)
from haru_workers.metadata.types import (
    DietMetadata,
    Domain,
    ExerciseMetadata,
    ExtractionRequest,
    Metadata,
    SamplingConfig,
)

logger = logging.getLogger(__name__)


class ExtractionStage(str, Enum):
    PREPROCESSING = "preprocessing"
    PROMPTING = "prompting"
    CALLING = "calling"
    PARSING = "parsing"
    FALLBACK_SYNTHESIZING = "fallback_synthesizing"
    DONE = "done"


@dataclass
class ExtractionConfig:
    """Quality gate and error bookkeeping settings."""
    min_confidence: float = 0.3
    quality_check_attempts: int = 3
    quality_retry_delay_seconds: float = 1.0
    max_retries: int = 3  # Used for ExtractionError.can_retry


class StageTimer:
    """Tracks the current stage of one extraction and how long each took."""

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        self.stage = ExtractionStage.PREPROCESSING
        self.timings: Dict[str, float] = {}
        self._started = time.time()
        self._stage_started = self._started

    def enter(self, stage: ExtractionStage) -> float:
        """Move to the next stage; returns the finished stage's duration in ms."""
        now = time.time()
        elapsed_ms = (now - self._stage_started) * 1000
        self.timings[self.stage.value] = round(elapsed_ms, 1)
        logger.debug(f"[{self.correlation_id}] {self.stage.value} -> {stage.value} ({elapsed_ms:.0f}ms)")
        self.stage = stage
        self._stage_started = now
        return elapsed_ms

    @property
    def total_ms(self) -> float:
        return (time.time() - self._started) * 1000


class MetadataExtractor:
    """
    Public entry point for photo metadata extraction.

    Usage:
        extractor = build_extractor()
        metadata = extractor.extract_exercise_metadata("gs://bucket/u1/run.jpg", "cert-123")
    """

    def __init__(
        self,
        preprocessor: ImagePreprocessor,
        client: RateLimitedAIClient,
        composer: Optional[PromptComposer] = None,
        parser: Optional[ResponseParser] = None,
        fallback: Optional[FallbackSynthesizer] = None,
        telemetry: Optional[ExtractionTelemetry] = None,
        config: Optional[ExtractionConfig] = None,
        sleep=time.sleep
    ):
        self.preprocessor = preprocessor
        self.client = client
        self.composer = composer or PromptComposer()
        self.parser = parser or ResponseParser()
        self.fallback = fallback or FallbackSynthesizer()
        self.config = config or ExtractionConfig()
        self._sleep = sleep

        self.metrics: Optional[ExtractionMetrics] = None
        if telemetry is None:
            self.metrics = ExtractionMetrics()
            telemetry = ExtractionTelemetry([self.metrics])
        self.telemetry = telemetry

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def extract_exercise_metadata(
        self,
        image_reference: str,
        correlation_id: Optional[str] = None
    ) -> ExerciseMetadata:
        return self.extract(self._request(image_reference, Domain.EXERCISE, correlation_id))

    def extract_diet_metadata(
        self,
        image_reference: str,
        correlation_id: Optional[str] = None
    ) -> DietMetadata:
        return self.extract(self._request(image_reference, Domain.DIET, correlation_id))

    def extract(self, request: ExtractionRequest) -> Metadata:
        """
        Run the full pipeline for one photo.

        Raises:
            ValueError: Only for malformed requests (caller bugs)
        """
        self._check_request(request)
        domain = request.domain
        cid = request.correlation_id
        timer = StageTimer(cid)
        logger.info(f"[{cid}] Extracting {domain.value} metadata from {request.image_reference}")

        try:
            image = self.preprocessor.process(request.image_reference)
            self._emit(
                IMAGE_PROCESSED,
                orig_size=image.original_size,
                new_size=image.byte_size,
                ms=round(timer.enter(ExtractionStage.PROMPTING), 1),
            )

            parts = self.composer.extraction_request(domain, image)
            timer.enter(ExtractionStage.CALLING)

            response = self.client.generate(parts, SamplingConfig.for_extraction())
            prompt_chars = sum(len(part.text or "") for part in parts)
            self._emit(
                AI_CALL_COMPLETED,
                domain=domain.value,
                response_len=len(response.text),
                ms=round(timer.enter(ExtractionStage.PARSING), 1),
                attempts=response.attempts,
                estimated_cost=estimate_cost(prompt_chars, len(response.text)),
            )

            result = self.parser.parse(response.text, domain)
            if result.succeeded:
                timer.enter(ExtractionStage.DONE)
                self._emit(
                    EXTRACTION_SUCCEEDED,
                    domain=domain.value,
                    ms=round(timer.total_ms, 1),
                    metadata=result.metadata.to_dict(),
                )
                logger.info(
                    f"[{cid}] {domain.value} metadata extracted via {result.strategy} "
                    f"(confidence {result.confidence:.2f})"
                )
                return result.metadata

            timer.enter(ExtractionStage.FALLBACK_SYNTHESIZING)
            metadata = self.fallback.synthesize(response.text, domain)
            metadata.error = ExtractionError.create(
                ErrorKind.PARSING,
                "AI response contained no structured data",
                max_retries=self.config.max_retries,
            )
            timer.enter(ExtractionStage.DONE)
            self._report_failure(domain, metadata.error, timer)
            return metadata

        except MetadataExtractionException as e:
            # Image and AI failures degrade to an empty record
            logger.warning(f"[{cid}] {e.kind.value} failure during {timer.stage.value}: {e}")
            error = ExtractionError.create(
                e.kind, str(e), getattr(e, "attempts", 0), self.config.max_retries
            )
        except Exception as e:
            logger.error(f"[{cid}] Unexpected extraction failure: {e}", exc_info=True)
            error = ExtractionError.create(ErrorKind.UNKNOWN, str(e), 0, self.config.max_retries)

        timer.enter(ExtractionStage.DONE)
        self._report_failure(domain, error, timer)
        return self._empty(domain, error)

    def validate_quality(self, metadata: Metadata) -> bool:
        """True when the record is confident enough and names what it saw."""
        if metadata.confidence_score < self.config.min_confidence:
            return False
        return metadata.has_primary_field

    def extract_with_quality_check(
        self,
        image_reference: str,
        domain: Domain,
        correlation_id: Optional[str] = None
    ) -> Metadata:
        """
        Re-run extraction while the result is low quality.

        Stops early on a pipeline error. Returns the most confident record seen.
        """
        request = self._request(image_reference, domain, correlation_id)
        attempts = max(1, self.config.quality_check_attempts)
        best: Optional[Metadata] = None

        for attempt in range(1, attempts + 1):
            metadata = self.extract(request)
            if best is None or metadata.confidence_score > best.confidence_score:
                best = metadata

            if self.validate_quality(metadata):
                return metadata
            if metadata.error is not None:
                break

            if attempt < attempts:
                delay = compute_backoff(attempt, self.config.quality_retry_delay_seconds)
                logger.info(
                    f"[{request.correlation_id}] Low quality result "
                    f"(confidence {metadata.confidence_score:.2f}), retrying in {delay:.1f}s"
                )
                self._sleep(delay)

        return best

    def check_health(self) -> Dict[str, Any]:
        return {
            "ai_service": self.client.check_connection(),
            "rate_limiter": self.client.get_stats(),
            "metrics": self.metrics.get_stats() if self.metrics else None,
        }

    # ------------------------------------------------------------------

    @staticmethod
    def _request(image_reference: str, domain: Domain, correlation_id: Optional[str]) -> ExtractionRequest:
        return ExtractionRequest(
            image_reference=image_reference,
            domain=domain,
            correlation_id=correlation_id or uuid.uuid4().hex[:12],
        )

    @staticmethod
    def _check_request(request: ExtractionRequest) -> None:
        if not isinstance(request.domain, Domain):
            raise ValueError(f"Unknown extraction domain: {request.domain!r}")
        if not isinstance(request.image_reference, str) or not request.image_reference.strip():
            raise ValueError("image_reference must be a non-empty string")

    @staticmethod
    def _empty(domain: Domain, error: ExtractionError) -> Metadata:
        if domain == Domain.EXERCISE:
            return ExerciseMetadata.empty(error)
        return DietMetadata.empty(error)

    def _report_failure(self, domain: Domain, error: ExtractionError, timer: StageTimer) -> None:
        self._emit(
            EXTRACTION_FAILED,
            domain=domain.value,
            error_kind=error.kind.value,
            message=error.message,
            ms=round(timer.total_ms, 1),
        )

    def _emit(self, name: str, **fields: Any) -> None:
        try:
            self.telemetry.emit(name, **fields)
        except Exception as e:
            logger.warning(f"Telemetry emit failed for {name}: {e}")


def build_extractor(settings: Optional[Settings] = None) -> MetadataExtractor:
    """Wire every component from settings. Call once at process start."""
    settings = settings or get_settings()
    logging.getLogger("haru_workers").setLevel(settings.logging.level.upper())

    preprocessor = ImagePreprocessor(
        build_object_store(settings.storage),
        ImageConfig(
            max_width=settings.image.max_width,
            max_height=settings.image.max_height,
            quality=settings.image.quality,
            format=settings.image.format,
            max_bytes=settings.image.max_bytes,
            second_pass_scale=settings.image.second_pass_scale,
            quality_step=settings.image.quality_step,
            min_quality=settings.image.min_quality,
        ),
        raw_schemes=settings.storage.raw_schemes,
    )

    rate_config = RateLimitConfig(
        max_concurrent_requests=settings.rate_limiting.max_concurrent_requests,
        request_delay_seconds=settings.rate_limiting.request_delay_seconds,
        max_retries=settings.rate_limiting.max_retries,
        base_backoff_seconds=settings.rate_limiting.base_backoff_seconds,
        jitter_seconds=settings.rate_limiting.jitter_seconds,
        timeout_seconds=settings.gemini.timeout,
    )
    client = RateLimitedAIClient(
        GeminiTransport(settings.gemini.model, settings.gemini.api_key),
        rate_config,
    )

    return MetadataExtractor(
        preprocessor=preprocessor,
        client=client,
        composer=PromptComposer(settings.prompts.max_prompt_length),
        config=ExtractionConfig(
            min_confidence=settings.extraction.min_confidence,
            quality_check_attempts=settings.extraction.quality_check_attempts,
            quality_retry_delay_seconds=settings.extraction.quality_retry_delay_seconds,
            max_retries=settings.rate_limiting.max_retries,
        ),
    )

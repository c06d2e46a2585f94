"""
Certification Photo Metadata Extraction Package.

Pipeline:
- image_preprocessor: Download, resize and re-encode photos
- prompts: Extraction and weekly analysis prompts
- rate_limiter / ai_client: Throttled Gemini calls with retries
- response_parser / validation: Structured parsing and confidence scoring
- fallback: Keyword-based degraded records and weekly reports
- extractor: End-to-end orchestration
- telemetry: Structured events and metrics
"""

from haru_workers.metadata.errors import (
    AIServiceError,
    EmptyResponseError,
    ErrorKind,
    ExtractionError,
    ImageProcessingError,
)
from haru_workers.metadata.types import (
    AIResponse,
    DietMetadata,
    Domain,
    ExerciseMetadata,
    ExtractionRequest,
    Intensity,
    ProcessedImage,
    PromptPart,
    SamplingConfig,
    TimePeriod,
    WeekData,
)
from haru_workers.metadata.image_preprocessor import ImageConfig, ImagePreprocessor
from haru_workers.metadata.prompts import PromptComposer
from haru_workers.metadata.rate_limiter import RateLimitConfig, RequestThrottle
from haru_workers.metadata.ai_client import GeminiTransport, RateLimitedAIClient, classify_error
from haru_workers.metadata.response_parser import (
    HeuristicConfidenceScorer,
    ParseResult,
    ResponseParser,
    parse_analysis_response,
)
from haru_workers.metadata.fallback import FallbackSynthesizer
from haru_workers.metadata.telemetry import ExtractionMetrics, ExtractionTelemetry
from haru_workers.metadata.extractor import MetadataExtractor, build_extractor
from haru_workers.metadata.weekly_report import WeeklyReportGenerator

__all__ = [
    # Errors
    'AIServiceError',
    'EmptyResponseError',
    'ErrorKind',
    'ExtractionError',
    'ImageProcessingError',

    # Types
    'AIResponse',
    'DietMetadata',
    'Domain',
    'ExerciseMetadata',
    'ExtractionRequest',
    'Intensity',
    'ProcessedImage',
    'PromptPart',
    'SamplingConfig',
    'TimePeriod',
    'WeekData',

    # Preprocessing
    'ImageConfig',
    'ImagePreprocessor',

    # Prompts
    'PromptComposer',

    # AI client
    'RateLimitConfig',
    'RequestThrottle',
    'GeminiTransport',
    'RateLimitedAIClient',
    'classify_error',

    # Parsing
    'HeuristicConfidenceScorer',
    'ParseResult',
    'ResponseParser',
    'parse_analysis_response',
    'FallbackSynthesizer',

    # Orchestration
    'ExtractionMetrics',
    'ExtractionTelemetry',
    'MetadataExtractor',
    'build_extractor',
    'WeeklyReportGenerator',
]

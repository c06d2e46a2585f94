"""
Error taxonomy for metadata extraction.

Failures are classified once, where they are raised, into one of four
kinds. The orchestrator turns them into ExtractionError records attached
to the returned metadata instead of propagating them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    IMAGE_PROCESSING = "image_processing"
    AI_SERVICE = "ai_service"
    PARSING = "parsing"
    UNKNOWN = "unknown"


@dataclass
class ExtractionError:
    """Failure summary stored alongside degraded metadata."""
    kind: ErrorKind
    message: str
    retry_count: int = 0
    can_retry: bool = False

    @classmethod
    def create(
        cls,
        kind: ErrorKind,
        message: str,
        retry_count: int = 0,
        max_retries: int = 3
    ) -> "ExtractionError":
        # Parsing failures are deterministic for a given response
        can_retry = kind != ErrorKind.PARSING and retry_count < max_retries
        return cls(kind=kind, message=message, retry_count=retry_count, can_retry=can_retry)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "message": self.message,
            "retryCount": self.retry_count,
            "canRetry": self.can_retry,
        }


class MetadataExtractionException(Exception):
    """Base class for pipeline failures carrying an error kind."""
    kind = ErrorKind.UNKNOWN


class ImageProcessingError(MetadataExtractionException):
    """Source image missing, unreadable or undecodable."""
    kind = ErrorKind.IMAGE_PROCESSING


class AIServiceError(MetadataExtractionException):
    """AI endpoint call failed."""
    kind = ErrorKind.AI_SERVICE

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        attempts: int = 0,
        finish_reason: Optional[str] = None
    ):
        super().__init__(message)
        self.retryable = retryable
        self.attempts = attempts
        self.finish_reason = finish_reason


class EmptyResponseError(AIServiceError):
    """Response had no usable text (blocked or no candidates)."""

    SAFETY_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY"})

    def __init__(self, finish_reason: Optional[str], prompt_blocked: bool = False):
        reason = finish_reason or "UNKNOWN"
        super().__init__(
            f"Empty or blocked response from AI service. Finish reason: {reason}",
            retryable=not prompt_blocked and reason not in self.SAFETY_REASONS,
            finish_reason=reason,
        )
        self.prompt_blocked = prompt_blocked

"""
Data types shared by the metadata extraction pipeline.

Exercise and diet records enforce their range invariants on construction,
so any instance that exists holds in-range values.
"""

import base64
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from haru_workers.metadata.errors import ExtractionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Domain(str, Enum):
    EXERCISE = "exercise"
    DIET = "diet"

    @property
    def label(self) -> str:
        return DOMAIN_LABELS[self]

    @classmethod
    def from_label(cls, value: str) -> "Domain":
        """Accept either the enum value or the Korean certification type."""
        for domain, label in DOMAIN_LABELS.items():
            if value in (domain.value, label):
                return domain
        raise ValueError(f"Unknown extraction domain: {value!r}")


class TimePeriod(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    DAWN = "dawn"
    NIGHT = "night"

    @property
    def label(self) -> str:
        return TIME_PERIOD_LABELS[self]


class Intensity(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"

    @property
    def label(self) -> str:
        return INTENSITY_LABELS[self]


DOMAIN_LABELS = {Domain.EXERCISE: "운동", Domain.DIET: "식단"}

TIME_PERIOD_LABELS = {
    TimePeriod.MORNING: "오전",
    TimePeriod.AFTERNOON: "오후",
    TimePeriod.EVENING: "저녁",
    TimePeriod.DAWN: "새벽",
    TimePeriod.NIGHT: "밤",
}

INTENSITY_LABELS = {
    Intensity.LOW: "낮음",
    Intensity.MODERATE: "보통",
    Intensity.HIGH: "높음",
}

# Declared value ranges
DURATION_RANGE = (1, 480)
CALORIES_RANGE = (1, 5000)
MAX_FOOD_NAME_LENGTH = 50
MAX_INGREDIENT_LENGTH = 20
MAX_INGREDIENTS = 2


@dataclass(frozen=True)
class ExtractionRequest:
    """One photo to analyze."""
    image_reference: str
    domain: Domain
    correlation_id: str


@dataclass(frozen=True)
class ProcessedImage:
    """Encoded photo ready to be sent inline to the AI endpoint."""
    encoded_bytes: bytes
    media_type: str
    byte_size: int
    original_size: int = 0
    width: int = 0
    height: int = 0
    resized: bool = False

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.encoded_bytes).decode("ascii")


@dataclass(frozen=True)
class PromptPart:
    """Either a text part or an inline image part of a request."""
    text: Optional[str] = None
    inline_data: Optional[bytes] = None
    media_type: Optional[str] = None

    @classmethod
    def from_text(cls, text: str) -> "PromptPart":
        return cls(text=text)

    @classmethod
    def from_image(cls, image: ProcessedImage) -> "PromptPart":
        return cls(inline_data=image.encoded_bytes, media_type=image.media_type)

    @property
    def is_image(self) -> bool:
        return self.inline_data is not None

    @property
    def base64_data(self) -> Optional[str]:
        if self.inline_data is None:
            return None
        return base64.b64encode(self.inline_data).decode("ascii")


@dataclass(frozen=True)
class SamplingConfig:
    """Generation parameters for one AI call."""
    temperature: float = 0.7
    max_output_tokens: int = 2048
    top_p: float = 0.8
    top_k: int = 40

    @classmethod
    def for_extraction(cls) -> "SamplingConfig":
        # Short, near-deterministic JSON answers
        return cls(temperature=0.1, max_output_tokens=200)


@dataclass(frozen=True)
class SafetySignal:
    category: str
    probability: str
    blocked: bool = False


@dataclass
class AIResponse:
    """Text returned by the AI endpoint plus how generation ended."""
    text: str
    termination_reason: str = "STOP"
    safety_signals: List[SafetySignal] = field(default_factory=list)
    response_time: float = 0.0
    attempts: int = 1


@dataclass
class ExerciseMetadata:
    exercise_type: Optional[str] = None
    duration_minutes: Optional[int] = None
    time_period: Optional[TimePeriod] = None
    intensity: Optional[Intensity] = None
    confidence_score: float = 0.0
    extracted_at: datetime = field(default_factory=utcnow)
    error: Optional[ExtractionError] = None
    fallback: bool = False

    def __post_init__(self):
        _check_confidence(self.confidence_score)
        _check_range("duration_minutes", self.duration_minutes, DURATION_RANGE)

    @classmethod
    def empty(cls, error: Optional[ExtractionError] = None) -> "ExerciseMetadata":
        return cls(error=error)

    @property
    def has_primary_field(self) -> bool:
        return bool(self.exercise_type)

    def to_dict(self) -> Dict[str, Any]:
        """Document shape written back to the certification record."""
        return {
            "exerciseType": self.exercise_type,
            "duration": self.duration_minutes,
            "timePeriod": self.time_period.label if self.time_period else None,
            "intensity": self.intensity.label if self.intensity else None,
            "confidenceScore": self.confidence_score,
            "extractedAt": self.extracted_at.isoformat(),
        }


@dataclass
class DietMetadata:
    food_name: Optional[str] = None
    main_ingredients: List[str] = field(default_factory=list)
    estimated_calories: Optional[int] = None
    confidence_score: float = 0.0
    extracted_at: datetime = field(default_factory=utcnow)
    error: Optional[ExtractionError] = None
    fallback: bool = False

    def __post_init__(self):
        _check_confidence(self.confidence_score)
        _check_range("estimated_calories", self.estimated_calories, CALORIES_RANGE)
        if self.food_name is not None and len(self.food_name) > MAX_FOOD_NAME_LENGTH:
            raise ValueError(f"food_name longer than {MAX_FOOD_NAME_LENGTH} characters")
        if len(self.main_ingredients) > MAX_INGREDIENTS:
            raise ValueError(f"At most {MAX_INGREDIENTS} main ingredients allowed")

    @classmethod
    def empty(cls, error: Optional[ExtractionError] = None) -> "DietMetadata":
        return cls(error=error)

    @property
    def has_primary_field(self) -> bool:
        return bool(self.food_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "foodName": self.food_name,
            "mainIngredients": list(self.main_ingredients),
            "estimatedCalories": self.estimated_calories,
            "confidenceScore": self.confidence_score,
            "extractedAt": self.extracted_at.isoformat(),
        }


def _check_confidence(value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"confidence_score must be within [0, 1], got {value}")


def _check_range(name: str, value: Optional[int], bounds: tuple) -> None:
    if value is None:
        return
    low, high = bounds
    if not low <= value <= high:
        raise ValueError(f"{name} must be within [{low}, {high}], got {value}")


# ---------------------------------------------------------------------------
# Weekly analysis inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CertificationEntry:
    """One certification posted during the analyzed week."""
    id: str
    domain: Domain
    content: str
    created_at: datetime

    @property
    def day_of_week(self) -> int:
        """0 = Sunday ... 6 = Saturday."""
        return (self.created_at.weekday() + 1) % 7


@dataclass
class WeeklyStats:
    total_certifications: int = 0
    exercise_days: int = 0
    diet_days: int = 0
    exercise_types: Dict[str, int] = field(default_factory=dict)
    consistency_score: int = 0
    daily_breakdown: Dict[str, Dict[str, int]] = field(default_factory=dict)


@dataclass
class WeekData:
    user_id: str
    nickname: str
    week_start: date
    week_end: date
    certifications: List[CertificationEntry] = field(default_factory=list)
    stats: WeeklyStats = field(default_factory=WeeklyStats)
    has_minimum_data: bool = False


Metadata = Union[ExerciseMetadata, DietMetadata]

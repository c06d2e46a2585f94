"""
Field Validation for Extracted Metadata.

Checks values returned by the model against domain vocabularies and
declared ranges. Anything implausible becomes None; values are never
clamped into range.
"""

import logging
import math
import re
from typing import Any, List, Optional

from haru_workers.metadata.types import (
    CALORIES_RANGE,
    DURATION_RANGE,
    MAX_FOOD_NAME_LENGTH,
    MAX_INGREDIENT_LENGTH,
    MAX_INGREDIENTS,
    Intensity,
    TimePeriod,
)

logger = logging.getLogger(__name__)


# Known exercise categories
EXERCISE_TYPES = [
    "러닝", "조깅", "달리기", "마라톤",
    "웨이트 트레이닝", "헬스", "근력운동", "보디빌딩",
    "요가", "필라테스", "스트레칭",
    "수영", "아쿠아로빅",
    "사이클링", "자전거", "실내자전거",
    "배드민턴", "테니스", "탁구",
    "축구", "농구", "배구",
    "등산", "하이킹", "트레킹",
    "복싱", "태권도", "무술",
    "댄스", "에어로빅", "줌바",
    "기타",
]

# Types specific enough to earn a confidence bonus
SPECIFIC_EXERCISE_TYPES = ["러닝", "웨이트 트레이닝", "요가", "수영", "사이클링"]

# Accepted spellings, matched after lower-casing
TIME_PERIOD_ALIASES = {
    TimePeriod.MORNING: ("오전", "아침", "morning"),
    TimePeriod.AFTERNOON: ("오후", "낮", "점심", "afternoon"),
    TimePeriod.EVENING: ("저녁", "evening"),
    TimePeriod.DAWN: ("새벽", "dawn"),
    TimePeriod.NIGHT: ("밤", "야간", "night"),
}

INTENSITY_ALIASES = {
    Intensity.LOW: ("낮음", "낮은", "가벼움", "low", "light"),
    Intensity.MODERATE: ("보통", "중간", "moderate", "medium"),
    Intensity.HIGH: ("높음", "높은", "강함", "high", "intense", "hard"),
}

_LEADING_NUMBER = re.compile(r"^\s*(\d+(?:\.\d+)?)")


def clean_string(value: Any) -> Optional[str]:
    """Strip strings; map empty and non-string values to None."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or value.lower() in ("null", "none", "unknown", "n/a"):
        return None
    return value


def to_int(value: Any) -> Optional[int]:
    """
    Coerce a model-supplied number to int.

    Accepts ints, finite floats (rounded) and strings with a leading number
    such as "45" or "45분". Booleans are rejected.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(round(value))
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if match:
            return int(round(float(match.group(1))))
    return None


def _in_range(value: Optional[int], bounds: tuple) -> Optional[int]:
    if value is None:
        return None
    low, high = bounds
    return value if low <= value <= high else None


def validate_exercise_type(value: Any) -> Optional[str]:
    """Accept vocabulary matches, or any plausible short label (2-19 chars)."""
    name = clean_string(value)
    if name is None:
        return None

    lowered = name.lower()
    if any(known in lowered or lowered in known for known in EXERCISE_TYPES):
        return name
    if 1 < len(name) < 20:
        return name

    logger.debug(f"Rejected exercise type: {name!r}")
    return None


def validate_duration(value: Any) -> Optional[int]:
    return _in_range(to_int(value), DURATION_RANGE)


def _match_alias(value: Any, aliases: dict):
    text = clean_string(value)
    if text is None:
        return None
    lowered = text.lower()

    for member, names in aliases.items():
        if lowered == member.value or lowered in names:
            return member
    # Looser pass for answers like "오전 7시"
    for member, names in aliases.items():
        if any(len(name) > 1 and name in lowered for name in names):
            return member
    return None


def normalize_time_period(value: Any) -> Optional[TimePeriod]:
    return _match_alias(value, TIME_PERIOD_ALIASES)


def normalize_intensity(value: Any) -> Optional[Intensity]:
    return _match_alias(value, INTENSITY_ALIASES)


def validate_food_name(value: Any) -> Optional[str]:
    name = clean_string(value)
    if name is None or len(name) > MAX_FOOD_NAME_LENGTH:
        return None
    return name


def validate_ingredients(value: Any) -> List[str]:
    """Keep the first two ingredient names of 1-20 characters."""
    if isinstance(value, str):
        value = re.split(r"[,/]", value)
    if not isinstance(value, (list, tuple)):
        return []

    ingredients = []
    for item in value:
        name = clean_string(item)
        if name is not None and len(name) <= MAX_INGREDIENT_LENGTH:
            ingredients.append(name)
        if len(ingredients) == MAX_INGREDIENTS:
            break
    return ingredients


def validate_calories(value: Any) -> Optional[int]:
    return _in_range(to_int(value), CALORIES_RANGE)

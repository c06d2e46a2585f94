"""
Response Parsing for Photo Metadata.

Turns free-form model output into validated metadata records:
- Ordered extraction strategies (JSON object, JSON array, key/value scan)
- Per-domain field validation (see validation.py)
- Swappable confidence scoring policy
- Weekly analysis report section parsing
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from haru_workers.metadata.types import DietMetadata, Domain, ExerciseMetadata, Metadata
from haru_workers.metadata.validation import (
    SPECIFIC_EXERCISE_TYPES,
    normalize_intensity,
    normalize_time_period,
    validate_calories,
    validate_duration,
    validate_exercise_type,
    validate_food_name,
    validate_ingredients,
)

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()
_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_KEY_VALUE = re.compile(
    r'"(\w+)"\s*:\s*'
    r'("(?:[^"\\]|\\.)*"|null|true|false|-?\d+(?:\.\d+)?|\[[^\[\]]*\])'
)
_HANGUL = re.compile(r"[가-힣]")

# Field name variants the model has been seen to use
EXERCISE_KEYS = {
    "exercise_type": ("exerciseType", "exercise_type", "type"),
    "duration": ("duration", "durationMinutes", "duration_minutes"),
    "time_period": ("timePeriod", "time_period"),
    "intensity": ("intensity",),
}
DIET_KEYS = {
    "food_name": ("foodName", "food_name", "food"),
    "ingredients": ("mainIngredients", "main_ingredients", "ingredients"),
    "calories": ("estimatedCalories", "estimated_calories", "calories"),
}


def _clean_text(text: str) -> str:
    """Remove markdown code fences around JSON."""
    return _FENCE.sub("", text or "").strip()


def _decode_at(text: str, index: int) -> Tuple[Any, int]:
    try:
        return _decoder.raw_decode(text, index)
    except json.JSONDecodeError:
        return None, index


def _decode_first(
    text: str,
    opener: str,
    expected: type,
    skip: Tuple[Tuple[int, int], ...] = ()
) -> Optional[Any]:
    index = text.find(opener)
    while index != -1:
        if not any(start < index < end for start, end in skip):
            value, _ = _decode_at(text, index)
            if isinstance(value, expected) and value:
                return value
        index = text.find(opener, index + 1)
    return None


def _top_level_arrays(text: str) -> Tuple[Tuple[int, int], ...]:
    """(start, end) spans of decodable [...] arrays not nested in another one."""
    spans = []
    index = text.find("[")
    while index != -1:
        value, end = _decode_at(text, index)
        if isinstance(value, list):
            spans.append((index, end))
            index = text.find("[", end)
        else:
            index = text.find("[", index + 1)
    return tuple(spans)


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First decodable, non-empty {...} object in the text, outside any array."""
    cleaned = _clean_text(text)
    return _decode_first(cleaned, "{", dict, skip=_top_level_arrays(cleaned))


def extract_json_array(text: str) -> Optional[Dict[str, Any]]:
    """First object inside the first decodable [...] array."""
    array = _decode_first(_clean_text(text), "[", list)
    if array is None:
        return None
    for item in array:
        if isinstance(item, dict) and item:
            return item
    return None


def _coerce_token(token: str) -> Any:
    if token == "null":
        return None
    if token == "true":
        return True
    if token == "false":
        return False
    try:
        return json.loads(token)
    except ValueError:
        return token.strip('"')


def extract_key_value_pairs(text: str) -> Optional[Dict[str, Any]]:
    """Rebuild an object from loose "key": value tokens anywhere in the text."""
    pairs = {}
    for key, token in _KEY_VALUE.findall(text or ""):
        pairs.setdefault(key, _coerce_token(token))
    return pairs or None


ExtractionStrategy = Callable[[str], Optional[Dict[str, Any]]]

DEFAULT_STRATEGIES: Tuple[Tuple[str, ExtractionStrategy], ...] = (
    ("json_object", extract_json_object),
    ("json_array", extract_json_array),
    ("key_value", extract_key_value_pairs),
)


def _pick(data: Dict[str, Any], names: Tuple[str, ...]) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


class ConfidenceScorer:
    """Policy mapping a validated record and its source text to [0, 1]."""

    def score_exercise(self, metadata: ExerciseMetadata, text: str) -> float:
        raise NotImplementedError

    def score_diet(self, metadata: DietMetadata, text: str) -> float:
        raise NotImplementedError


class HeuristicConfidenceScorer(ConfidenceScorer):
    """
    Weighted field presence with small plausibility bonuses.

    The score is earned weight divided by the weight that was achievable
    given which bonuses applied. Weights are hand-tuned, not calibrated.
    """

    EXERCISE_WEIGHTS = {
        "type": 0.4, "type_bonus": 0.1,
        "duration": 0.25, "duration_bonus": 0.05,
        "time_period": 0.2,
        "intensity": 0.15,
        "keyword_bonus": 0.05,
    }
    DIET_WEIGHTS = {
        "food": 0.5, "food_bonus": 0.1,
        "ingredients": 0.25,
        "calories": 0.25, "calories_bonus": 0.05,
        "keyword_bonus": 0.05,
    }
    EXERCISE_KEYWORDS = ("운동", "분")
    DIET_KEYWORDS = ("음식", "칼로리")

    @staticmethod
    def _ratio(score: float, max_score: float) -> float:
        if max_score <= 0:
            return 0.0
        return round(min(score / max_score, 1.0), 4)

    def score_exercise(self, metadata: ExerciseMetadata, text: str) -> float:
        w = self.EXERCISE_WEIGHTS
        score, max_score = 0.0, 0.0

        max_score += w["type"]
        if metadata.exercise_type:
            score += w["type"]
            if any(kind in metadata.exercise_type for kind in SPECIFIC_EXERCISE_TYPES):
                score += w["type_bonus"]
                max_score += w["type_bonus"]

        max_score += w["duration"]
        if metadata.duration_minutes is not None:
            score += w["duration"]
            if 15 <= metadata.duration_minutes <= 120:
                score += w["duration_bonus"]
                max_score += w["duration_bonus"]

        max_score += w["time_period"]
        if metadata.time_period is not None:
            score += w["time_period"]

        max_score += w["intensity"]
        if metadata.intensity is not None:
            score += w["intensity"]

        if any(keyword in (text or "") for keyword in self.EXERCISE_KEYWORDS):
            score += w["keyword_bonus"]
            max_score += w["keyword_bonus"]

        return self._ratio(score, max_score)

    def score_diet(self, metadata: DietMetadata, text: str) -> float:
        w = self.DIET_WEIGHTS
        score, max_score = 0.0, 0.0

        max_score += w["food"]
        if metadata.food_name:
            score += w["food"]
            if _HANGUL.search(metadata.food_name):
                score += w["food_bonus"]
                max_score += w["food_bonus"]

        max_score += w["ingredients"]
        score += w["ingredients"] * len(metadata.main_ingredients) / 2

        max_score += w["calories"]
        if metadata.estimated_calories is not None:
            score += w["calories"]
            if 50 <= metadata.estimated_calories <= 1500:
                score += w["calories_bonus"]
                max_score += w["calories_bonus"]

        if any(keyword in (text or "") for keyword in self.DIET_KEYWORDS):
            score += w["keyword_bonus"]
            max_score += w["keyword_bonus"]

        return self._ratio(score, max_score)


@dataclass
class ParseResult:
    """Outcome of parsing one response; strategy is None when nothing was found."""
    metadata: Metadata
    confidence: float
    strategy: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.strategy is not None


class ResponseParser:
    """
    Parses model text into exercise or diet metadata.

    Usage:
        parser = ResponseParser()
        result = parser.parse(response.text, Domain.EXERCISE)
        if not result.succeeded:
            ...  # escalate to FallbackSynthesizer
    """

    def __init__(
        self,
        scorer: Optional[ConfidenceScorer] = None,
        strategies: Tuple[Tuple[str, ExtractionStrategy], ...] = DEFAULT_STRATEGIES
    ):
        self.scorer = scorer or HeuristicConfidenceScorer()
        self.strategies = strategies

    def extract_fields(self, text: str) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        """Run strategies in order and return the first structure found."""
        for name, strategy in self.strategies:
            data = strategy(text)
            if data:
                logger.debug(f"Response parsed with strategy '{name}'")
                return name, data
        return None, None

    def parse(self, text: str, domain: Domain) -> ParseResult:
        """
        Parse a response. Never raises.

        Args:
            text: Raw model output
            domain: Which record type to build

        Returns:
            ParseResult with an all-null record and confidence 0.0 on failure
        """
        try:
            strategy, data = self.extract_fields(text)
            if data is None:
                logger.warning(f"No structured data in AI response: {(text or '')[:200]!r}")
                return ParseResult(self._empty(domain), 0.0, None)

            if domain == Domain.EXERCISE:
                metadata = self.build_exercise(data)
                metadata.confidence_score = self.scorer.score_exercise(metadata, text)
            else:
                metadata = self.build_diet(data)
                metadata.confidence_score = self.scorer.score_diet(metadata, text)

            return ParseResult(metadata, metadata.confidence_score, strategy)
        except Exception as e:
            logger.error(f"Failed to parse {domain.value} response: {e}", exc_info=True)
            return ParseResult(self._empty(domain), 0.0, None)

    @staticmethod
    def _empty(domain: Domain) -> Metadata:
        return ExerciseMetadata() if domain == Domain.EXERCISE else DietMetadata()

    @staticmethod
    def build_exercise(data: Dict[str, Any]) -> ExerciseMetadata:
        return ExerciseMetadata(
            exercise_type=validate_exercise_type(_pick(data, EXERCISE_KEYS["exercise_type"])),
            duration_minutes=validate_duration(_pick(data, EXERCISE_KEYS["duration"])),
            time_period=normalize_time_period(_pick(data, EXERCISE_KEYS["time_period"])),
            intensity=normalize_intensity(_pick(data, EXERCISE_KEYS["intensity"])),
        )

    @staticmethod
    def build_diet(data: Dict[str, Any]) -> DietMetadata:
        return DietMetadata(
            food_name=validate_food_name(_pick(data, DIET_KEYS["food_name"])),
            main_ingredients=validate_ingredients(_pick(data, DIET_KEYS["ingredients"])),
            estimated_calories=validate_calories(_pick(data, DIET_KEYS["calories"])),
        )


# ---------------------------------------------------------------------------
# Weekly analysis reports
# ---------------------------------------------------------------------------

@dataclass
class AnalysisReport:
    exercise_insights: str
    diet_insights: str
    overall_assessment: str
    strength_areas: List[str] = field(default_factory=list)
    improvement_areas: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


_LIST_ITEM = re.compile(r"^(?:-|\*|\d+\.)\s*")


def _section(text: str, title: str) -> Optional[str]:
    match = re.search(rf"^##\s*{re.escape(title)}\s*\n?(.*?)(?=^##|\Z)", text, re.M | re.S)
    return match.group(1).strip() if match else None


def _list_items(body: Optional[str]) -> List[str]:
    if not body:
        return []
    items = []
    for line in body.splitlines():
        line = line.strip()
        if _LIST_ITEM.match(line):
            item = _LIST_ITEM.sub("", line).strip()
            if item:
                items.append(item)
    return items


def parse_analysis_response(text: str) -> AnalysisReport:
    """Split a weekly analysis answer into its '## ' sections."""
    text = text or ""
    return AnalysisReport(
        exercise_insights=_section(text, "운동 분석") or "운동 분석 정보가 없습니다.",
        diet_insights=_section(text, "식단 분석") or "식단 분석 정보가 없습니다.",
        overall_assessment=_section(text, "종합 평가") or "종합 평가 정보가 없습니다.",
        strength_areas=_list_items(_section(text, "잘하고 있는 점")),
        improvement_areas=_list_items(_section(text, "개선이 필요한 점")),
        recommendations=_list_items(_section(text, "맞춤형 추천사항")),
    )

"""
Fallback synthesis when structured parsing fails.

Scans raw model text for a handful of domain keywords and numbers so a
badly formed answer still yields something, always marked low confidence.
Also builds a statistics-only weekly report when the AI analysis call fails.
"""

import logging
import re
from typing import Optional

from haru_workers.metadata.types import (
    CALORIES_RANGE,
    DURATION_RANGE,
    DietMetadata,
    Domain,
    ExerciseMetadata,
    Metadata,
    WeekData,
)

logger = logging.getLogger(__name__)


FALLBACK_CONFIDENCE = 0.1

EXERCISE_KEYWORDS = ["러닝", "헬스", "요가", "수영", "운동"]
DIET_KEYWORDS = ["밥", "국", "찌개", "면", "빵", "샐러드", "음식"]

_MINUTES = re.compile(r"(\d+)\s*분")
_CALORIES = re.compile(r"(\d+)\s*(?:칼로리|kcal)", re.IGNORECASE)


def _first_keyword(text: str, keywords) -> Optional[str]:
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


def _first_number_in_range(pattern: re.Pattern, text: str, bounds: tuple) -> Optional[int]:
    low, high = bounds
    for match in pattern.finditer(text):
        value = int(match.group(1))
        if low <= value <= high:
            return value
    return None


class FallbackSynthesizer:
    """Keyword/number scan producing low-confidence records."""

    def __init__(self, confidence: float = FALLBACK_CONFIDENCE):
        self.confidence = confidence

    def synthesize(self, raw_text: str, domain: Domain) -> Metadata:
        text = raw_text or ""
        if domain == Domain.EXERCISE:
            metadata = ExerciseMetadata(
                exercise_type=_first_keyword(text, EXERCISE_KEYWORDS),
                duration_minutes=_first_number_in_range(_MINUTES, text, DURATION_RANGE),
                confidence_score=self.confidence,
                fallback=True,
            )
        else:
            metadata = DietMetadata(
                food_name=_first_keyword(text, DIET_KEYWORDS),
                estimated_calories=_first_number_in_range(_CALORIES, text, CALORIES_RANGE),
                confidence_score=self.confidence,
                fallback=True,
            )

        logger.info(f"Synthesized fallback {domain.value} metadata from {len(text)} chars")
        return metadata

    def weekly_report(self, week: WeekData) -> str:
        """Report text in the '## ' section layout, built from stats alone."""
        stats = week.stats
        exercise_days = stats.exercise_days
        diet_days = stats.diet_days
        total = stats.total_certifications
        consistency = stats.consistency_score

        if exercise_days >= 5:
            exercise = f"이번 주 {exercise_days}일 동안 운동하셨네요! 규칙적인 운동 습관이 잘 자리잡고 있어요."
        elif exercise_days >= 3:
            exercise = f"이번 주 {exercise_days}일 운동하셨어요. 좋은 흐름이에요, 하루만 더 늘려볼까요?"
        elif exercise_days > 0:
            exercise = f"이번 주 {exercise_days}일 운동하셨네요. 시작이 반이에요!"
        else:
            exercise = "이번 주에는 운동 인증이 없었어요. 가벼운 산책부터 시작해보세요."

        if diet_days >= 5:
            diet = f"이번 주 {diet_days}일 동안 식단을 기록하셨네요! 건강한 식습관을 잘 유지하고 계세요."
        elif diet_days >= 3:
            diet = f"이번 주 {diet_days}일 식단을 기록하셨어요. 꾸준히 관리하고 계시네요."
        elif diet_days > 0:
            diet = f"이번 주 {diet_days}일 식단을 기록하셨네요. 조금 더 자주 기록해보세요."
        else:
            diet = "이번 주에는 식단 인증이 없었어요. 한 끼부터 기록해보세요."

        if consistency >= 80:
            overall = f"총 {total}번 인증, 일관성 점수 {consistency}%로 훌륭한 한 주였습니다."
        elif consistency >= 60:
            overall = f"총 {total}번 인증, 일관성 점수 {consistency}%예요. 좋은 습관을 만들어가고 계세요."
        else:
            overall = f"총 {total}번 인증, 일관성 점수 {consistency}%예요. 다음 주에는 조금 더 꾸준히 해봐요."

        strengths = ["건강 관리에 대한 의지"]
        if exercise_days >= 3:
            strengths.append("규칙적인 운동 습관")
        if diet_days >= 3:
            strengths.append("식단 관리 의식")

        improvements = []
        if exercise_days < 3:
            improvements.append("운동 빈도 늘리기")
        if diet_days < 3:
            improvements.append("식단 기록 늘리기")
        if consistency < 70:
            improvements.append("일관성 높이기")
        improvements.append("꾸준한 습관 형성")

        recommendations = [
            "매일 최소 1개의 인증을 목표로 해보세요",
            "운동과 식단을 균형 있게 기록해보세요",
            "작은 목표부터 시작해서 점진적으로 늘려가세요",
        ]

        sections = [
            f"## 운동 분석\n{exercise}",
            f"## 식단 분석\n{diet}",
            f"## 종합 평가\n{overall}",
            "## 잘하고 있는 점\n" + "\n".join(f"- {item}" for item in strengths),
            "## 개선이 필요한 점\n" + "\n".join(f"- {item}" for item in improvements),
            "## 맞춤형 추천사항\n" + "\n".join(f"- {item}" for item in recommendations),
        ]
        logger.info(f"Generated fallback weekly report for user {week.user_id}")
        return "\n\n".join(sections)

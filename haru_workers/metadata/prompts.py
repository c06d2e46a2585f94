"""
Prompt templates for photo metadata extraction and weekly analysis.

Every builder is a pure function of its input: no I/O, no clock, no
randomness. Prompts over the length budget are cut and marked so the
reader can see data was omitted.
"""

import logging
from datetime import date
from typing import List

from haru_workers.metadata.types import (
    CertificationEntry,
    Domain,
    ProcessedImage,
    PromptPart,
    SamplingConfig,
    WeekData,
    WeeklyStats,
)

logger = logging.getLogger(__name__)


MAX_PROMPT_LENGTH = 8000
TRUNCATION_MARKER = "[데이터가 길어 일부 생략되었습니다. 위 정보를 바탕으로 분석해주세요.]"
TRUNCATION_SUFFIX = "\n\n" + TRUNCATION_MARKER
DAY_NAMES = ["일", "월", "화", "수", "목", "금", "토"]

# Extraction prompts - kept short, the answer must be a single JSON object
EXERCISE_PROMPT = """운동 인증 사진을 분석하세요. 설명 없이 JSON 하나만 응답합니다.
{"exerciseType":"운동 종류","duration":운동시간(분, 숫자),"timePeriod":"오전/오후/저녁/새벽/밤","intensity":"낮음/보통/높음"}
- exerciseType 예: 러닝, 웨이트 트레이닝, 요가, 수영, 사이클링, 등산
- 사진으로 판단할 수 없는 값은 null"""

DIET_PROMPT = """식단 인증 사진을 분석하세요. 설명 없이 JSON 하나만 응답합니다.
{"foodName":"음식 이름","mainIngredients":["주재료1","주재료2"],"estimatedCalories":칼로리(숫자)}
- 주재료는 최대 2개
- 사진으로 판단할 수 없는 값은 null"""

ANALYSIS_SECTIONS = """다음 형식으로 답변해주세요:

## 운동 분석
## 식단 분석
## 종합 평가
## 잘하고 있는 점
- (목록)
## 개선이 필요한 점
- (목록)
## 맞춤형 추천사항
- (목록)"""


def format_date(value: date) -> str:
    return f"{value.year}년 {value.month}월 {value.day}일"


def format_date_range(start: date, end: date) -> str:
    return f"{format_date(start)} ~ {format_date(end)}"


def format_entry(index: int, entry: CertificationEntry, with_type: bool = False) -> str:
    """Render one certification as '1. [3/4(월)] content'."""
    created = entry.created_at
    day = DAY_NAMES[entry.day_of_week]
    prefix = f"{index}. [{created.month}/{created.day}({day})]"
    if with_type:
        return f"{prefix} {entry.domain.label}: {entry.content}"
    return f"{prefix} {entry.content}"


def _entries_for(week: WeekData, domain: Domain) -> List[CertificationEntry]:
    return [c for c in week.certifications if c.domain == domain]


def format_domain_entries(week: WeekData, domain: Domain) -> str:
    entries = _entries_for(week, domain)
    if not entries:
        return f"이번 주 {domain.label} 인증이 없습니다."

    lines = [f"총 {len(entries)}개의 {domain.label} 인증:"]
    lines.extend(format_entry(i, entry) for i, entry in enumerate(entries, 1))
    return "\n".join(lines)


def format_stats(stats: WeeklyStats) -> str:
    lines = [
        f"- 총 인증 수: {stats.total_certifications}개",
        f"- 운동 인증 일수: {stats.exercise_days}일",
        f"- 식단 인증 일수: {stats.diet_days}일",
        f"- 일관성 점수: {stats.consistency_score}%",
    ]
    if stats.exercise_types:
        lines.append("- 운동 종류별 분포:")
        lines.extend(f"  * {name}: {count}회" for name, count in stats.exercise_types.items())
    if stats.daily_breakdown:
        lines.append("- 일별 활동 현황:")
        for day, counts in stats.daily_breakdown.items():
            lines.append(
                f"  * {day}: 운동 {counts.get('exercise', 0)}회, 식단 {counts.get('diet', 0)}회"
            )
    return "\n".join(lines)


def _header(week: WeekData, title: str) -> str:
    return (
        f"{title}\n\n"
        f"**분석 기간**: {format_date_range(week.week_start, week.week_end)}\n"
        f"**사용자**: {week.nickname}"
    )


class PromptComposer:
    """
    Builds extraction and weekly-analysis prompts.

    Usage:
        composer = PromptComposer()
        parts = composer.extraction_request(Domain.EXERCISE, processed_image)
    """

    def __init__(self, max_prompt_length: int = MAX_PROMPT_LENGTH):
        if max_prompt_length < len(TRUNCATION_SUFFIX):
            raise ValueError(
                f"max_prompt_length must be at least {len(TRUNCATION_SUFFIX)}, got {max_prompt_length}"
            )
        self.max_prompt_length = max_prompt_length

    # ------------------------------------------------------------------
    # Photo extraction
    # ------------------------------------------------------------------

    def exercise_prompt(self) -> str:
        return self.truncate(EXERCISE_PROMPT)

    def diet_prompt(self) -> str:
        return self.truncate(DIET_PROMPT)

    def prompt_for(self, domain: Domain) -> str:
        if domain == Domain.EXERCISE:
            return self.exercise_prompt()
        if domain == Domain.DIET:
            return self.diet_prompt()
        raise ValueError(f"Unknown extraction domain: {domain!r}")

    def extraction_request(self, domain: Domain, image: ProcessedImage) -> List[PromptPart]:
        """Ordered request parts: instruction text, then the inline photo."""
        return [PromptPart.from_text(self.prompt_for(domain)), PromptPart.from_image(image)]

    # ------------------------------------------------------------------
    # Weekly analysis
    # ------------------------------------------------------------------

    def analysis_prompt(self, week: WeekData) -> str:
        """Full weekly analysis, or the encouragement prompt when data is thin."""
        if not week.has_minimum_data:
            return self.insufficient_data_prompt(week)

        prompt = "\n\n".join([
            _header(week, "당신은 친근한 건강 코치입니다. 사용자의 한 주 운동과 식단 인증을 분석해주세요."),
            "### 운동 인증\n" + format_domain_entries(week, Domain.EXERCISE),
            "### 식단 인증\n" + format_domain_entries(week, Domain.DIET),
            "### 주간 통계\n" + format_stats(week.stats),
            ANALYSIS_SECTIONS,
            "존댓말을 사용하고, 구체적이고 실천 가능한 조언을 해주세요.",
        ])
        return self.truncate(prompt)

    def insufficient_data_prompt(self, week: WeekData) -> str:
        if week.certifications:
            lines = [f"총 {len(week.certifications)}개의 인증 (최소 3개 필요):"]
            lines.extend(
                format_entry(i, entry, with_type=True)
                for i, entry in enumerate(week.certifications, 1)
            )
            activity = "\n".join(lines)
        else:
            activity = "이번 주에는 인증 활동이 없었습니다."

        prompt = "\n\n".join([
            _header(week, "사용자의 이번 주 인증이 분석하기에 충분하지 않습니다."),
            "### 이번 주 활동\n" + activity,
            "부담스럽지 않은 말투로 꾸준한 인증을 격려하고, 다음 주에 시도해볼 수 있는 "
            "작은 목표 3가지를 제안해주세요.",
        ])
        return self.truncate(prompt)

    def exercise_focus_prompt(self, week: WeekData) -> str:
        exercise_total = len(_entries_for(week, Domain.EXERCISE))
        prompt = "\n\n".join([
            _header(week, "사용자의 한 주 운동 패턴만 집중해서 분석해주세요."),
            "### 운동 인증\n" + format_domain_entries(week, Domain.EXERCISE),
            "### 운동 통계\n"
            f"- 총 운동 인증: {exercise_total}개\n"
            f"- 운동 실시 일수: {week.stats.exercise_days}일",
            "운동 빈도, 종류의 다양성, 강도 균형을 평가하고 개선점을 알려주세요.",
        ])
        return self.truncate(prompt)

    def diet_focus_prompt(self, week: WeekData) -> str:
        diet_total = len(_entries_for(week, Domain.DIET))
        prompt = "\n\n".join([
            _header(week, "사용자의 한 주 식단 패턴만 집중해서 분석해주세요."),
            "### 식단 인증\n" + format_domain_entries(week, Domain.DIET),
            "### 식단 통계\n"
            f"- 총 식단 인증: {diet_total}개\n"
            f"- 식단 인증 일수: {week.stats.diet_days}일",
            "영양 균형과 식사 규칙성을 평가하고 개선점을 알려주세요.",
        ])
        return self.truncate(prompt)

    def recommendation_prompt(self, week: WeekData) -> str:
        stats = week.stats
        lines = [
            f"- 총 활동: {stats.total_certifications}개 인증",
            f"- 운동: {stats.exercise_days}일, 식단: {stats.diet_days}일",
            f"- 일관성: {stats.consistency_score}%",
        ]
        if stats.exercise_types:
            name, count = max(stats.exercise_types.items(), key=lambda item: item[1])
            lines.append(f"- 주요 운동: {name} ({count}회)")

        prompt = "\n\n".join([
            _header(week, "사용자의 한 주 활동 요약을 보고 다음 주 추천사항을 만들어주세요."),
            "### 활동 요약\n" + "\n".join(lines),
            "## 맞춤형 추천사항 아래에 '-'로 시작하는 항목 5개 이내로 작성해주세요.",
        ])
        return self.truncate(prompt)

    def no_data_prompt(self, week: WeekData) -> str:
        prompt = "\n\n".join([
            _header(week, "사용자에게 보낼 짧은 응원 메시지를 작성해주세요."),
            "**상황**: 이번 주에 운동이나 식단 인증이 전혀 없었습니다.",
            "비난하지 말고, 다시 시작할 수 있는 아주 쉬운 행동 하나를 제안해주세요.",
        ])
        return self.truncate(prompt)

    def generation_config(self) -> SamplingConfig:
        """Sampling used for free-text weekly analysis."""
        return SamplingConfig()

    # ------------------------------------------------------------------

    def truncate(self, prompt: str) -> str:
        """Cut the prompt to the budget, appending the truncation marker."""
        if len(prompt) <= self.max_prompt_length:
            return prompt

        keep = self.max_prompt_length - len(TRUNCATION_SUFFIX)
        logger.warning(
            f"Prompt exceeds maximum length, truncating: "
            f"{len(prompt)} -> {self.max_prompt_length} chars"
        )
        return prompt[:keep] + TRUNCATION_SUFFIX

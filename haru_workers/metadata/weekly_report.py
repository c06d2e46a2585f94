"""
Weekly analysis report generation.

Builds the weekly prompt, asks the AI client for a free-text analysis and
splits it into sections. When the AI call fails the report is built from
the weekly statistics alone.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from haru_workers.metadata.ai_client import RateLimitedAIClient
from haru_workers.metadata.errors import AIServiceError
from haru_workers.metadata.fallback import FallbackSynthesizer
from haru_workers.metadata.prompts import PromptComposer
from haru_workers.metadata.response_parser import AnalysisReport, parse_analysis_response
from haru_workers.metadata.types import PromptPart, WeekData

logger = logging.getLogger(__name__)


@dataclass
class WeeklyReport:
    report: AnalysisReport
    raw_text: str
    used_fallback: bool
    generation_time: float = 0.0


class WeeklyReportGenerator:
    """
    Usage:
        generator = WeeklyReportGenerator(client)
        weekly = generator.generate(week_data)
    """

    def __init__(
        self,
        client: RateLimitedAIClient,
        composer: Optional[PromptComposer] = None,
        fallback: Optional[FallbackSynthesizer] = None
    ):
        self.client = client
        self.composer = composer or PromptComposer()
        self.fallback = fallback or FallbackSynthesizer()

    def generate(self, week: WeekData) -> WeeklyReport:
        start = time.time()
        if not week.certifications:
            prompt = self.composer.no_data_prompt(week)
        else:
            prompt = self.composer.analysis_prompt(week)

        try:
            response = self.client.generate(
                [PromptPart.from_text(prompt)],
                self.composer.generation_config(),
            )
            text = response.text
            used_fallback = False
        except AIServiceError as e:
            logger.warning(f"Weekly analysis failed for user {week.user_id}, using fallback report: {e}")
            text = self.fallback.weekly_report(week)
            used_fallback = True

        return WeeklyReport(
            report=parse_analysis_response(text),
            raw_text=text,
            used_fallback=used_fallback,
            generation_time=time.time() - start,
        )

"""
Shared pytest fixtures for Metadata Extraction tests.

Provides generated photos, a temp-dir object store and a scripted AI
transport so no test touches the network or sleeps on real backoff.
"""

import os
import sys
import threading
import time
from datetime import date, datetime
from pathlib import Path
from types import SimpleNamespace
from typing import List

import pytest
from PIL import Image
import numpy as np

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# =============================================================================
# Environment Setup
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables."""
    os.environ["TESTING"] = "true"
    os.environ["GEMINI_API_KEY"] = "test-api-key"
    yield


# =============================================================================
# Image Fixtures
# =============================================================================

@pytest.fixture
def sample_image() -> Image.Image:
    """Landscape photo-like image larger than the 800x800 box."""
    img_array = np.zeros((1200, 1600, 3), dtype=np.uint8)
    # Horizontal gradient with a few blocks, compresses like a real photo
    img_array[:, :, 0] = np.linspace(30, 220, 1600, dtype=np.uint8)
    img_array[:, :, 1] = 120
    img_array[300:700, 400:900] = (200, 60, 40)
    return Image.fromarray(img_array, 'RGB')


@pytest.fixture
def small_image() -> Image.Image:
    """Image already inside the bounding box."""
    img_array = np.ones((300, 400, 3), dtype=np.uint8) * 180
    return Image.fromarray(img_array, 'RGB')


@pytest.fixture
def noisy_image() -> Image.Image:
    """Random noise compresses badly; used to trigger the second pass."""
    rng = np.random.default_rng(42)
    img_array = rng.integers(0, 256, size=(1000, 1000, 3), dtype=np.uint8)
    return Image.fromarray(img_array, 'RGB')


@pytest.fixture
def transparent_image() -> Image.Image:
    img_array = np.zeros((200, 200, 4), dtype=np.uint8)
    img_array[50:150, 50:150] = (255, 0, 0, 255)
    return Image.fromarray(img_array, 'RGBA')


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def store_root(tmp_path: Path) -> Path:
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def local_store(store_root: Path):
    from haru_backend.storage.object_store import LocalObjectStore
    return LocalObjectStore(str(store_root))


@pytest.fixture
def save_image(store_root: Path):
    """Write an image into the temp store and return its gs:// locator."""
    def _save(image: Image.Image, path: str = "user1/photo.png", bucket: str = "certifications") -> str:
        target = store_root / bucket / path
        target.parent.mkdir(parents=True, exist_ok=True)
        image.save(str(target))
        return f"gs://{bucket}/{path}"
    return _save


@pytest.fixture
def stored_photo(save_image, sample_image: Image.Image) -> str:
    return save_image(sample_image, "user1/run.png")


# =============================================================================
# AI Transport Fixtures
# =============================================================================

class FakeTransport:
    """
    Scripted stand-in for GeminiTransport.

    Each call consumes the next outcome; the last one repeats. An outcome is
    response text, an AIResponse, or an exception to raise.
    """

    def __init__(self, outcomes: List = None, delay: float = 0.0):
        self.outcomes = list(outcomes or ['{}'])
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def generate(self, parts, sampling, timeout):
        from haru_workers.metadata.types import AIResponse

        with self._lock:
            self.calls.append((parts, sampling, timeout))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        try:
            if self.delay:
                time.sleep(self.delay)
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, AIResponse):
                return outcome
            return AIResponse(text=outcome)
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def fake_transport():
    """Factory for scripted transports."""
    return FakeTransport


@pytest.fixture
def recorded_sleeps():
    """Sleep replacement that records requested delays."""
    delays = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def rate_limit_config():
    """Rate limiter configuration for testing (no spacing delay)."""
    from haru_workers.metadata.rate_limiter import RateLimitConfig
    return RateLimitConfig(
        max_concurrent_requests=5,
        request_delay_seconds=0.0,
        max_retries=3,
        base_backoff_seconds=1.0,
        jitter_seconds=0.0,
        timeout_seconds=30.0,
    )


@pytest.fixture
def make_client(rate_limit_config, recorded_sleeps):
    """Build a RateLimitedAIClient around a transport with recorded sleeps."""
    from haru_workers.metadata.ai_client import RateLimitedAIClient

    def _make(transport, config=None):
        return RateLimitedAIClient(transport, config or rate_limit_config, sleep=recorded_sleeps)
    return _make


@pytest.fixture
def make_extractor(local_store, make_client, recorded_sleeps):
    """Build a MetadataExtractor over the temp store and a fake transport."""
    from haru_workers.metadata.extractor import MetadataExtractor
    from haru_workers.metadata.image_preprocessor import ImagePreprocessor

    def _make(transport, telemetry=None, config=None):
        return MetadataExtractor(
            preprocessor=ImagePreprocessor(local_store),
            client=make_client(transport),
            telemetry=telemetry,
            config=config,
            sleep=recorded_sleeps,
        )
    return _make


@pytest.fixture
def gemini_response():
    """Factory for SDK-shaped generate_content responses."""
    def _make(text="", finish_reason="STOP", block_reason=0, candidates=True):
        candidate = SimpleNamespace(
            finish_reason=SimpleNamespace(name=finish_reason),
            content=SimpleNamespace(parts=[SimpleNamespace(text=text)] if text else []),
            safety_ratings=[
                SimpleNamespace(
                    category=SimpleNamespace(name="HARM_CATEGORY_DANGEROUS_CONTENT"),
                    probability=SimpleNamespace(name="NEGLIGIBLE"),
                    blocked=False,
                )
            ],
        )
        return SimpleNamespace(
            prompt_feedback=SimpleNamespace(
                block_reason=SimpleNamespace(name=block_reason) if block_reason else 0
            ),
            candidates=[candidate] if candidates else [],
        )
    return _make


# =============================================================================
# Weekly Data Fixtures
# =============================================================================

@pytest.fixture
def week_data():
    from haru_workers.metadata.types import CertificationEntry, Domain, WeekData, WeeklyStats

    certifications = [
        CertificationEntry("c1", Domain.EXERCISE, "아침 러닝 5km", datetime(2024, 3, 4, 7, 30)),
        CertificationEntry("c2", Domain.DIET, "닭가슴살 샐러드", datetime(2024, 3, 4, 12, 10)),
        CertificationEntry("c3", Domain.EXERCISE, "헬스장 하체 운동", datetime(2024, 3, 6, 19, 0)),
        CertificationEntry("c4", Domain.DIET, "현미밥과 된장국", datetime(2024, 3, 7, 19, 40)),
    ]
    stats = WeeklyStats(
        total_certifications=4,
        exercise_days=2,
        diet_days=2,
        exercise_types={"러닝": 1, "헬스": 1},
        consistency_score=57,
        daily_breakdown={"월": {"exercise": 1, "diet": 1}, "수": {"exercise": 1, "diet": 0}},
    )
    return WeekData(
        user_id="user-1",
        nickname="하루",
        week_start=date(2024, 3, 4),
        week_end=date(2024, 3, 10),
        certifications=certifications,
        stats=stats,
        has_minimum_data=True,
    )

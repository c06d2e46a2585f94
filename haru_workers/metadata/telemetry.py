"""
Extraction telemetry.

Structured events are written to the log and fanned out to registered
sinks. A failing sink is logged and skipped; it never changes what the
pipeline returns.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


IMAGE_PROCESSED = "image_processed"
AI_CALL_COMPLETED = "ai_call_completed"
EXTRACTION_SUCCEEDED = "extraction_succeeded"
EXTRACTION_FAILED = "extraction_failed"


@dataclass
class TelemetryEvent:
    name: str
    fields: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)


TelemetrySink = Callable[[TelemetryEvent], None]


class ExtractionTelemetry:
    """
    Event emitter for the extraction pipeline.

    Usage:
        telemetry = ExtractionTelemetry()
        telemetry.add_sink(ExtractionMetrics())
        telemetry.emit("image_processed", orig_size=2_000_000, new_size=180_000, ms=42)
    """

    def __init__(self, sinks: Optional[List[TelemetrySink]] = None):
        self._sinks: List[TelemetrySink] = list(sinks or [])

    def add_sink(self, sink: TelemetrySink) -> None:
        self._sinks.append(sink)

    def emit(self, name: str, **fields: Any) -> None:
        try:
            event = TelemetryEvent(name=name, fields=fields)
            logger.info(f"[telemetry] {name} {fields}", extra={"event": name})
        except Exception as e:
            logger.warning(f"Failed to record telemetry event {name}: {e}")
            return

        for sink in self._sinks:
            try:
                sink(event)
            except Exception as e:
                logger.warning(f"Telemetry sink {sink!r} failed on {name}: {e}")


@dataclass
class DomainMetrics:
    """Counters for one extraction domain."""
    successes: int = 0
    failures: int = 0
    total_ms: float = 0.0
    confidence_sum: float = 0.0

    @property
    def total(self) -> int:
        return self.successes + self.failures

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.successes / self.total

    @property
    def average_ms(self) -> float:
        if self.total == 0:
            return 0.0
        return self.total_ms / self.total

    @property
    def average_confidence(self) -> float:
        if self.successes == 0:
            return 0.0
        return self.confidence_sum / self.successes


class ExtractionMetrics:
    """In-memory aggregation sink for extraction events."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.domains: Dict[str, DomainMetrics] = defaultdict(DomainMetrics)
            self.error_kinds: Dict[str, int] = defaultdict(int)
            self.ai_calls = 0
            self.ai_total_ms = 0.0
            self.estimated_cost = 0.0
            self.images_processed = 0
            self.bytes_saved = 0

    def __call__(self, event: TelemetryEvent) -> None:
        f = event.fields
        with self._lock:
            if event.name == IMAGE_PROCESSED:
                self.images_processed += 1
                self.bytes_saved += max(0, f.get("orig_size", 0) - f.get("new_size", 0))
            elif event.name == AI_CALL_COMPLETED:
                self.ai_calls += 1
                self.ai_total_ms += f.get("ms", 0.0)
                self.estimated_cost += f.get("estimated_cost", 0.0)
            elif event.name == EXTRACTION_SUCCEEDED:
                metrics = self.domains[f["domain"]]
                metrics.successes += 1
                metrics.total_ms += f.get("ms", 0.0)
                metadata = f.get("metadata") or {}
                metrics.confidence_sum += metadata.get("confidenceScore", 0.0)
            elif event.name == EXTRACTION_FAILED:
                metrics = self.domains[f["domain"]]
                metrics.failures += 1
                metrics.total_ms += f.get("ms", 0.0)
                self.error_kinds[f.get("error_kind", "unknown")] += 1

    def get_stats(self) -> dict:
        with self._lock:
            total = sum(m.total for m in self.domains.values())
            successes = sum(m.successes for m in self.domains.values())
            return {
                "total_extractions": total,
                "successful_extractions": successes,
                "success_rate": successes / total if total else 0.0,
                "by_domain": {
                    domain: {
                        "total": m.total,
                        "success_rate": m.success_rate,
                        "average_ms": m.average_ms,
                        "average_confidence": m.average_confidence,
                    }
                    for domain, m in self.domains.items()
                },
                "error_kinds": dict(self.error_kinds),
                "ai_calls": self.ai_calls,
                "average_ai_ms": self.ai_total_ms / self.ai_calls if self.ai_calls else 0.0,
                "estimated_cost_usd": round(self.estimated_cost, 6),
                "images_processed": self.images_processed,
                "bytes_saved": self.bytes_saved,
            }

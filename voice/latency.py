"""
Latency Tracker — client-side turn timing for the voice session.

Measures each pipeline stage from the arrival of its server events:
- STT:   stt_start → stt_complete
- RAG:   rag_start → rag_complete
- TTS:   tts_start → tts_complete
- TOTAL: audio sent → tts_complete (what the user actually waits)

Measurements feed rolling percentiles per stage; anything over its budget
is logged as a violation.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from typing import Any, Callable, Optional
from dataclasses import asdict, dataclass, field
from enum import Enum

import numpy as np

from config.settings import LatencyConfig

logger = structlog.get_logger()


class TurnStage(str, Enum):
    """Stages of one turn, measured independently."""
    STT = "stt"
    RAG = "rag"
    TTS = "tts"
    TOTAL = "total"


@dataclass
class LatencyBudget:
    stt_ms: int = 1500
    rag_ms: int = 3000
    tts_ms: int = 2000
    total_ms: int = 6000

    @classmethod
    def from_config(cls, config: LatencyConfig) -> "LatencyBudget":
        return cls(
            stt_ms=config.stt_ms,
            rag_ms=config.rag_ms,
            tts_ms=config.tts_ms,
            total_ms=config.total_ms,
        )

    def budget_for(self, stage: TurnStage) -> int:
        return {
            TurnStage.STT: self.stt_ms,
            TurnStage.RAG: self.rag_ms,
            TurnStage.TTS: self.tts_ms,
            TurnStage.TOTAL: self.total_ms,
        }[stage]


@dataclass
class LatencyMeasurement:
    stage: TurnStage
    duration_ms: float
    turn: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StageSummary:
    """Point-in-time statistics for one stage's recent measurements."""
    stage: TurnStage
    count: int
    avg_ms: float = 0.0
    p50_ms: float = 0.0
    p90_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        report = {name: round(value, 1) for name, value in asdict(self).items() if name.endswith("_ms")}
        return {"stage": self.stage.value, "count": self.count, **report}


class StageWindow:
    """
    The most recent durations of one stage.

    `count` keeps growing for the whole session; the statistics cover only
    what is still in the window. Percentiles pick a recorded value (the
    next one up), never an interpolated one.
    """

    def __init__(self, stage: TurnStage, size: int = 200):
        self.stage = stage
        self._samples: deque[float] = deque(maxlen=size)
        self.count = 0

    def record(self, duration_ms: float) -> None:
        self._samples.append(duration_ms)
        self.count += 1

    def summary(self) -> StageSummary:
        if not self._samples:
            return StageSummary(self.stage, self.count)
        values = np.fromiter(self._samples, dtype=float)
        p50, p90 = np.percentile(values, [50, 90], method="higher")
        return StageSummary(
            stage=self.stage,
            count=self.count,
            avg_ms=float(values.mean()),
            p50_ms=float(p50),
            p90_ms=float(p90),
            min_ms=float(values.min()),
            max_ms=float(values.max()),
        )


# Which event starts / ends which stage
_STARTS = {
    "audio_sent": TurnStage.TOTAL,
    "stt_start": TurnStage.STT,
    "rag_start": TurnStage.RAG,
    "tts_start": TurnStage.TTS,
}
_ENDS = {
    "stt_complete": (TurnStage.STT,),
    "rag_complete": (TurnStage.RAG,),
    "tts_complete": (TurnStage.TTS, TurnStage.TOTAL),
}


class TurnLatencyTracker:
    """
    Tracks stage latency across the turns of one session.

    Usage:
        tracker.on_event("audio_sent")
        tracker.on_event("stt_start")
        tracker.on_event("stt_complete")
        ...
        tracker.on_event("done")
    """

    def __init__(self, budget: LatencyBudget = None, clock: Callable[[], float] = time.monotonic):
        self.budget = budget or LatencyBudget()
        self._clock = clock
        self._starts: dict[TurnStage, float] = {}
        self._stages: dict[TurnStage, StageWindow] = {stage: StageWindow(stage) for stage in TurnStage}
        self._measurements: list[LatencyMeasurement] = []
        self._violations: list[dict[str, Any]] = []
        self._turn_count = 0

    def start(self, stage: TurnStage) -> None:
        self._starts[stage] = self._clock()

    def end(self, stage: TurnStage) -> float:
        """Close a stage. Returns duration in ms, 0.0 if it was never started."""
        start = self._starts.pop(stage, None)
        if start is None:
            return 0.0

        duration_ms = (self._clock() - start) * 1000
        self._stages[stage].record(duration_ms)
        self._measurements.append(LatencyMeasurement(stage, duration_ms, self._turn_count))

        budget = self.budget.budget_for(stage)
        if duration_ms > budget:
            violation = {
                "stage": stage.value,
                "duration_ms": round(duration_ms, 1),
                "budget_ms": budget,
                "overage_ms": round(duration_ms - budget, 1),
                "turn": self._turn_count,
            }
            self._violations.append(violation)
            logger.warning("voice_latency_budget_exceeded", **violation)

        return duration_ms

    def on_event(self, tag: str) -> None:
        if tag in _STARTS:
            self.start(_STARTS[tag])
        elif tag in _ENDS:
            for stage in _ENDS[tag]:
                self.end(stage)
        elif tag == "done":
            self.record_turn()
        elif tag == "error":
            self._starts.clear()

    def record_turn(self) -> None:
        self._turn_count += 1
        self._starts.clear()

    def reset_pending(self) -> None:
        """Forget stages still open (e.g. after the connection dropped)."""
        self._starts.clear()

    @property
    def turns(self) -> int:
        return self._turn_count

    @property
    def violations(self) -> list[dict[str, Any]]:
        return self._violations

    def last(self, stage: TurnStage) -> Optional[float]:
        for m in reversed(self._measurements):
            if m.stage == stage:
                return m.duration_ms
        return None

    def stage_stats(self, stage: TurnStage) -> dict[str, Any]:
        return self._stages[stage].summary().to_dict()

    def to_dict(self) -> dict[str, Any]:
        return {
            "turns": self._turn_count,
            "total_measurements": len(self._measurements),
            "violations": len(self._violations),
            "stages": {
                stage.value: window.summary().to_dict()
                for stage, window in self._stages.items()
                if window.count > 0
            },
        }

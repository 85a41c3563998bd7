"""Tests for TurnLatencyTracker — per-stage timing against budgets."""
import pytest

from config.settings import LatencyConfig
from voice.latency import LatencyBudget, StageWindow, TurnLatencyTracker, TurnStage


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def advance(self, ms: float) -> None:
        self.now += ms / 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return TurnLatencyTracker(LatencyBudget(stt_ms=500, rag_ms=1000, tts_ms=800, total_ms=2000), clock=clock)


def _turn(tracker, clock, stt=300, rag=600, tts=400):
    tracker.on_event("audio_sent")
    tracker.on_event("stt_start")
    clock.advance(stt)
    tracker.on_event("stt_complete")
    tracker.on_event("rag_start")
    clock.advance(rag)
    tracker.on_event("rag_complete")
    tracker.on_event("tts_start")
    clock.advance(tts)
    tracker.on_event("tts_complete")
    tracker.on_event("done")


class TestTurnTracking:
    def test_stages_measured_from_events(self, tracker, clock):
        _turn(tracker, clock)
        assert tracker.last(TurnStage.STT) == pytest.approx(300)
        assert tracker.last(TurnStage.RAG) == pytest.approx(600)
        assert tracker.last(TurnStage.TTS) == pytest.approx(400)
        assert tracker.last(TurnStage.TOTAL) == pytest.approx(1300)
        assert tracker.turns == 1
        assert tracker.violations == []

    def test_end_without_start(self, tracker):
        assert tracker.end(TurnStage.STT) == 0.0
        assert tracker.last(TurnStage.STT) is None

    def test_budget_violation_recorded(self, tracker, clock):
        _turn(tracker, clock, stt=700)
        assert len(tracker.violations) == 1
        violation = tracker.violations[0]
        assert violation["stage"] == "stt"
        assert violation["budget_ms"] == 500
        assert violation["overage_ms"] == pytest.approx(200)

    def test_total_over_budget(self, tracker, clock):
        _turn(tracker, clock, stt=450, rag=950, tts=700)
        assert [v["stage"] for v in tracker.violations] == ["total"]

    def test_error_drops_open_stages(self, tracker, clock):
        tracker.on_event("audio_sent")
        tracker.on_event("stt_start")
        tracker.on_event("error")
        clock.advance(100)
        tracker.on_event("stt_complete")
        assert tracker.last(TurnStage.STT) is None

    def test_reset_pending(self, tracker, clock):
        tracker.on_event("audio_sent")
        tracker.reset_pending()
        tracker.on_event("tts_complete")
        assert tracker.last(TurnStage.TOTAL) is None

    def test_unrelated_events_ignored(self, tracker):
        tracker.on_event("rag_token")
        tracker.on_event("pong")
        assert tracker.to_dict()["total_measurements"] == 0


class TestReport:
    def test_to_dict(self, tracker, clock):
        _turn(tracker, clock)
        _turn(tracker, clock, stt=100)
        report = tracker.to_dict()
        assert report["turns"] == 2
        assert report["total_measurements"] == 8
        assert report["stages"]["stt"]["count"] == 2
        assert report["stages"]["stt"]["min_ms"] == pytest.approx(100)
        assert report["stages"]["stt"]["max_ms"] == pytest.approx(300)

    def test_stage_window_percentiles(self):
        window = StageWindow(TurnStage.RAG)
        for value in range(1, 11):
            window.record(value * 100.0)
        summary = window.summary()
        assert summary.avg_ms == pytest.approx(550)
        assert summary.p50_ms == 600
        assert summary.p90_ms == 1000
        assert summary.count == 10

    def test_stage_window_keeps_lifetime_count(self):
        window = StageWindow(TurnStage.STT, size=3)
        for value in (900.0, 10.0, 20.0, 30.0):
            window.record(value)
        summary = window.summary()
        assert summary.count == 4
        assert summary.max_ms == 30
        assert summary.min_ms == 10

    def test_empty_window_summary(self):
        assert StageWindow(TurnStage.TTS).summary().to_dict() == {
            "stage": "tts", "count": 0, "avg_ms": 0.0, "p50_ms": 0.0,
            "p90_ms": 0.0, "min_ms": 0.0, "max_ms": 0.0,
        }

    def test_budget_from_config(self):
        budget = LatencyBudget.from_config(LatencyConfig(stt_ms=1, rag_ms=2, tts_ms=3, total_ms=4))
        assert [budget.budget_for(s) for s in TurnStage] == [1, 2, 3, 4]

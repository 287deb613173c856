import json
from dataclasses import dataclass

import numpy as np
import pytest

from pitchengine.engine.config import EngineConfig
from pitchengine.engine.instrumentation import EngineLogger


class TestEngineLogger:
    def test_in_memory(self):
        log = EngineLogger(base_dir=None)
        assert log.run_dir is None
        log.log_event("detector", "ready", {"name": "spectral"})
        assert log.find("engine", "start")
        ready = log.find("detector", "ready")
        assert ready[0]["name"] == "spectral"
        assert log.find("detector") == ready

    def test_event_buffer_is_bounded(self):
        log = EngineLogger(base_dir=None, max_events=5)
        for i in range(20):
            log.log_event("tick", "n", {"i": i})
        assert len(log.events) == 5
        assert log.events[-1]["i"] == 19

    def test_unserializable_payload_is_written(self, tmp_path):
        log = EngineLogger(base_dir=str(tmp_path), run_name="s")
        log.log_event("x", "y", {"obj": object(), "arr": np.arange(3), "value": np.float64(1.5)})
        lines = (tmp_path / "s" / "events.jsonl").read_text().splitlines()
        entry = json.loads(lines[-1])
        assert isinstance(entry["obj"], str)
        assert entry["arr"] == [0, 1, 2]
        assert entry["value"] == 1.5

    def test_timing_summary(self):
        log = EngineLogger(base_dir=None)
        for d in (0.001, 0.002, 0.003):
            log.record_timing("tick", d)
        s = log.timing_summary()["tick"]
        assert s["count"] == 3.0
        assert s["mean_ms"] == pytest.approx(2.0)
        assert s["max_ms"] == pytest.approx(3.0)

    def test_timing_storage_is_bounded(self):
        log = EngineLogger(base_dir=None, timing_window=100)
        for i in range(5000):
            log.record_timing("tick", 0.001 if i != 10 else 0.050)
        assert len(log._timing["tick"].recent) == 100
        s = log.timing_summary()["tick"]
        # count, mean and max still cover every sample
        assert s["count"] == 5000.0
        assert s["max_ms"] == pytest.approx(50.0)
        assert s["mean_ms"] == pytest.approx(1000.0 * (4999 * 0.001 + 0.050) / 5000)
        assert s["p95_ms"] == pytest.approx(1.0)

    def test_writes_jsonl_and_timing(self, tmp_path):
        log = EngineLogger(base_dir=str(tmp_path), run_name="session")
        log.emit_config("engine", EngineConfig())
        log.record_timing("tick", 0.004, {"frame": 1})
        summary = log.finalize()

        run_dir = tmp_path / "session"
        lines = (run_dir / "events.jsonl").read_text().splitlines()
        events = [json.loads(line) for line in lines]
        assert events[0]["event"] == "start"
        config_event = next(e for e in events if e["event"] == "config")
        assert config_event["config"]["detector_strategy"] == "primary"
        assert any(e["stage"] == "tick" and e["frame"] == 1 for e in events)
        assert events[-1]["event"] == "finalize"

        timing = json.loads((run_dir / "timing.json").read_text())
        assert "session" in timing and "tick" in timing
        assert summary["tick"]["count"] == 1.0

    def test_emit_plain_dataclass(self):
        @dataclass
        class Opts:
            a: int = 1

        log = EngineLogger(base_dir=None)
        log.emit_config("opts", Opts())
        assert log.find("opts", "config")[0]["config"] == {"a": 1}

    def test_dependency_snapshot(self):
        snap = EngineLogger.dependency_snapshot(["numpy", "definitely_not_a_module_xyz"])
        assert snap == {"numpy": True, "definitely_not_a_module_xyz": False}

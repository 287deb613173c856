"""Lightweight structured logging for the engine.

Detector lifecycle transitions, fallbacks and per-tick timing are emitted as
JSONL events so a session can be replayed or diffed without a logging
framework. All writes are best-effort and never raise into the tick loop.
"""
from __future__ import annotations

import json
import os
import time
import importlib.util
from collections import deque
from dataclasses import asdict, is_dataclass
from typing import Any, Deque, Dict, List, Optional

import numpy as np


class EngineLogger:
    """Structured logger that emits JSONL events and timing summaries.

    With ``base_dir=None`` events are only kept in memory (``events``).
    """

    def __init__(
        self,
        base_dir: Optional[str] = "results",
        run_name: Optional[str] = None,
        max_events: int = 2000,
        timing_window: int = 1024,
    ):
        self.run_name = run_name or f"session_{int(time.time())}"
        self.run_dir: Optional[str] = None
        self.logs_path: Optional[str] = None
        self.timing_path: Optional[str] = None
        if base_dir is not None:
            self.run_dir = os.path.join(base_dir, self.run_name)
            os.makedirs(self.run_dir, exist_ok=True)
            self.logs_path = os.path.join(self.run_dir, "events.jsonl")
            self.timing_path = os.path.join(self.run_dir, "timing.json")
        self._events: Deque[Dict[str, Any]] = deque(maxlen=int(max_events))
        self._timing_window = max(1, int(timing_window))
        self._timing: Dict[str, _StageTiming] = {}
        self._start_time = time.perf_counter()
        self.log_event(
            "engine",
            "start",
            {
                "run_dir": self.run_dir,
                "dependencies": self.dependency_snapshot(["librosa", "scipy", "soundfile"]),
            },
        )

    @staticmethod
    def dependency_snapshot(modules: Optional[list[str]] = None) -> Dict[str, bool]:
        """Return availability flags for the requested modules."""
        snapshot: Dict[str, bool] = {}
        for name in modules or []:
            try:
                snapshot[name] = importlib.util.find_spec(name) is not None
            except (ImportError, ValueError):
                snapshot[name] = False
        return snapshot

    @property
    def events(self) -> List[Dict[str, Any]]:
        return list(self._events)

    def find(self, stage: str, event: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            e for e in self._events
            if e["stage"] == stage and (event is None or e["event"] == event)
        ]

    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {
            "stage": stage,
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                try:
                    json.dumps(value, default=_json_default)
                    entry[key] = value
                except (TypeError, ValueError):
                    entry[key] = str(value)
        self._events.append(entry)
        if self.logs_path is None:
            return
        try:
            with open(self.logs_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=_json_default) + "\n")
        except OSError:
            # Never break the tick loop due to logging failures
            pass

    def record_timing(self, stage: str, duration_s: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        stats = self._timing.get(stage)
        if stats is None:
            stats = self._timing[stage] = _StageTiming(self._timing_window)
        stats.add(float(duration_s))
        if metadata:
            payload = {"duration_s": float(duration_s)}
            payload.update(metadata)
            self.log_event(stage, "timing", payload)

    def timing_summary(self) -> Dict[str, Dict[str, float]]:
        summary: Dict[str, Dict[str, float]] = {}
        for stage, stats in self._timing.items():
            if stats.count == 0:
                continue
            # p95 is over the recent window, the rest over the whole session
            ordered = sorted(stats.recent)
            summary[stage] = {
                "count": float(stats.count),
                "mean_ms": 1000.0 * stats.total / stats.count,
                "p95_ms": 1000.0 * ordered[min(len(ordered) - 1, int(0.95 * len(ordered)))],
                "max_ms": 1000.0 * stats.max,
            }
        return summary

    def finalize(self) -> Dict[str, Dict[str, float]]:
        summary = self.timing_summary()
        summary["session"] = {"total_s": float(time.perf_counter() - self._start_time)}
        self.log_event("engine", "finalize", {"timing": summary})
        if self.timing_path is not None:
            try:
                with open(self.timing_path, "w", encoding="utf-8") as f:
                    json.dump(summary, f, indent=2)
            except OSError:
                pass
        return summary

    def emit_config(self, stage: str, config_obj: Any, extras: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"config": {}}
        to_dict = getattr(config_obj, "to_dict", None)
        if callable(to_dict):
            payload["config"] = to_dict()
        elif is_dataclass(config_obj):
            payload["config"] = asdict(config_obj)
        else:
            payload["config"] = str(config_obj)
        if extras:
            payload.update(extras)
        self.log_event(stage, "config", payload)


class _StageTiming:
    """Running count/total/max plus a bounded window of recent samples."""

    __slots__ = ("count", "total", "max", "recent")

    def __init__(self, window: int):
        self.count = 0
        self.total = 0.0
        self.max = 0.0
        self.recent: Deque[float] = deque(maxlen=window)

    def add(self, duration_s: float) -> None:
        self.count += 1
        self.total += duration_s
        self.max = max(self.max, duration_s)
        self.recent.append(duration_s)


def _json_default(o: Any) -> Any:
    if isinstance(o, np.floating):
        return float(o)
    if isinstance(o, np.integer):
        return int(o)
    if isinstance(o, np.generic):
        return o.item()
    if isinstance(o, np.ndarray):
        return o.tolist()

    if is_dataclass(o) and not isinstance(o, type):
        return asdict(o)

    # enums
    v = getattr(o, "value", None)
    if v is not None:
        return v

    return str(o)

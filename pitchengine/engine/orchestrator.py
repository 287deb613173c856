# pitchengine/engine/orchestrator.py
"""
Tick loop tying the components together.

Per tick: frame -> AGC -> conditioning -> active estimator -> harmonic
correction -> vocal analysis -> PitchSample. The orchestrator owns detector
lifecycle and selection; when the primary estimator fails to load it falls
back to the spectral estimator (if allowed) and carries on.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Union

from .capture import FrameSource, compute_transform
from .conditioning import FrameConditioner
from .config import EngineConfig
from .detectors import BasePitchDetector, create_detector
from .errors import CaptureError, DetectorLoadError, DetectorNotReadyError
from .frequency import cents_difference, frequency_to_note, hz_to_midi, midi_to_hz
from .gain import GainController
from .harmonic import HarmonicCorrector
from .instrumentation import EngineLogger
from .models import DetectorStrategy, PitchSample
from .vocal_quality import VocalQualityAnalyzer

logger = logging.getLogger(__name__)


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


class DetectorOrchestrator:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        source: Optional[FrameSource] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
        event_logger: Optional[EngineLogger] = None,
        primary_loader: Optional[Callable[[], Any]] = None,
        on_pitch: Optional[Callable[[Optional[PitchSample]], None]] = None,
    ):
        if source is None:
            raise ValueError("DetectorOrchestrator needs a frame source")
        self.config = (config or EngineConfig()).validate()
        self.source = source
        self.clock = clock or _wall_clock_ms
        self.event_logger = event_logger if event_logger is not None else EngineLogger(base_dir=None)
        self.primary_loader = primary_loader
        self.on_pitch = on_pitch

        self.requested_strategy = self.config.detector_strategy
        self.active_strategy: Optional[DetectorStrategy] = None
        self.detector: Optional[BasePitchDetector] = None
        self.fallback_used = False

        self.gain = GainController(self.config.gain, gain_sink=source.set_gain)
        self.analyzer = VocalQualityAnalyzer(self.config.vocal)
        self.corrector = HarmonicCorrector(self.config.harmonic)
        self.conditioner = FrameConditioner(self.config.conditioning)

        self.current_pitch: Optional[PitchSample] = None
        self.frame_missing = False
        self._silence_since: Optional[float] = None
        self._source_started = False

        # ticks and detector switches are serialized on this lock
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

        self.event_logger.emit_config("engine", self.config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_ready(self) -> bool:
        return self.detector is not None and self.detector.is_ready

    @property
    def is_running(self) -> bool:
        return self._running

    def initialize(self) -> None:
        """Start capture and load the requested estimator; blocks until ready or failed."""
        with self._lock:
            self._start_source()
            self._load_strategy(self.requested_strategy)

    def _start_source(self) -> None:
        if self._source_started:
            return
        try:
            self.source.start()
        except CaptureError as exc:
            self.event_logger.log_event("capture", "error", {"error": str(exc)})
            raise
        except (OSError, RuntimeError) as exc:
            self.event_logger.log_event("capture", "error", {"error": str(exc)})
            raise CaptureError(f"Audio capture failed to start: {exc}") from exc
        self._source_started = True
        self.gain.reset()

    def _load_strategy(self, strategy: DetectorStrategy) -> None:
        sr = int(self.source.sample_rate)
        detector = create_detector(strategy, self.config, sr, primary_loader=self.primary_loader)
        self.event_logger.log_event("detector", "loading", {"strategy": strategy.value})
        try:
            detector.initialize()
        except DetectorLoadError as exc:
            self.event_logger.log_event(
                "detector", "load_failed", {"strategy": strategy.value, "error": str(exc.cause)}
            )
            if strategy == DetectorStrategy.SPECTRAL or not self.config.fallback_enabled:
                raise
            logger.warning(f"{exc}; falling back to spectral detector")
            detector = create_detector(DetectorStrategy.SPECTRAL, self.config, sr)
            detector.initialize()
            strategy = DetectorStrategy.SPECTRAL
            self.fallback_used = True
            self.event_logger.log_event("detector", "fallback", {"strategy": strategy.value})
        else:
            self.fallback_used = False

        previous = self.detector
        self.detector = detector
        self.active_strategy = strategy
        if previous is not None and previous is not detector:
            previous.dispose()
        self.event_logger.log_event("detector", "ready", {"strategy": strategy.value, "name": detector.name})
        logger.info(f"Pitch detector ready: {detector.name}")

    def switch_detector(self, strategy: Union[DetectorStrategy, str]) -> None:
        """Load another strategy; pitch history and smoothing state carry over."""
        strategy = DetectorStrategy(strategy)
        with self._lock:
            if strategy == self.requested_strategy and strategy == self.active_strategy:
                return
            self.requested_strategy = strategy
            if not self._source_started:
                return
            self._load_strategy(strategy)

    def start(self) -> None:
        """Initialize if needed and tick on a background thread."""
        if self._running:
            return
        if not self.is_ready:
            self.initialize()
        else:
            with self._lock:
                self._start_source()
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="pitchengine-ticker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, 4 * self.config.update_interval_ms / 1000.0))
        self._thread = None
        self._running = False
        with self._lock:
            if self._source_started:
                self.source.stop()
                self._source_started = False
            self.current_pitch = None

    def run(self, max_ticks: Optional[int] = None, stop_when_exhausted: bool = True) -> List[PitchSample]:
        """
        Tick on the calling thread at ``update_interval_ms`` until ``max_ticks``,
        ``stop()``, or (optionally) the source runs out of frames.
        Returns the voiced samples produced.
        """
        if not self.is_ready:
            self.initialize()
        self._stop_event.clear()
        self._running = True
        try:
            return self._run_ticks(max_ticks, stop_when_exhausted, pace=False)
        finally:
            self._running = False

    def _loop(self) -> None:
        try:
            self._run_ticks(None, stop_when_exhausted=False, pace=True)
        except Exception:
            logger.exception("Pitch tick loop crashed")
            raise
        finally:
            self._running = False

    def _run_ticks(self, max_ticks: Optional[int], stop_when_exhausted: bool, pace: bool) -> List[PitchSample]:
        interval_s = float(self.config.update_interval_ms) / 1000.0
        produced: List[PitchSample] = []
        ticks = 0
        while not self._stop_event.is_set():
            if max_ticks is not None and ticks >= max_ticks:
                break
            started = time.perf_counter()
            sample = self.detect_and_notify()
            ticks += 1
            if sample is not None:
                produced.append(sample)
            if self.frame_missing and stop_when_exhausted:
                break
            if pace:
                remaining = interval_s - (time.perf_counter() - started)
                if remaining > 0:
                    self._stop_event.wait(remaining)
        return produced

    def dispose(self) -> None:
        self.stop()
        with self._lock:
            if self.detector is not None:
                self.detector.dispose()
            self.detector = None
            self.active_strategy = None
        self.event_logger.finalize()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def detect_and_notify(self) -> Optional[PitchSample]:
        with self._lock:
            if not self.is_ready:
                raise DetectorNotReadyError("initialize() must succeed before ticking")
            t0 = time.perf_counter()

            frame = self.source.read_frame()
            self.frame_missing = frame is None
            if frame is None:
                return None

            timestamp_ms = frame.timestamp_ms if frame.timestamp_ms is not None else float(self.clock())
            rms = self.gain.process(frame)
            conditioned = self.conditioner.apply(frame)
            estimate = self.detector.detect(conditioned)

            sample: Optional[PitchSample] = None
            if estimate.voiced:
                self._silence_since = None
                raw_midi = hz_to_midi(estimate.frequency)
                corrected_midi, correction = self.corrector.correct(raw_midi)
                frequency = midi_to_hz(corrected_midi) if correction else float(estimate.frequency)

                transform = compute_transform(conditioned, self.config.fft_size)
                metrics = self.analyzer.analyze(
                    conditioned, frequency, conditioned.sample_rate, transform, timestamp_ms=timestamp_ms
                )
                note = frequency_to_note(frequency)
                sample = PitchSample(
                    frequency=frequency,
                    confidence=float(estimate.confidence),
                    note_name=note["note_name"],
                    midi_note=note["midi_note"],
                    cents_off=note["cents_off"],
                    timestamp_ms=timestamp_ms,
                    rms=rms,
                    vocal_analysis=metrics,
                    detector_name=self.detector.name,
                    harmonic_correction=correction,
                )
            else:
                self._track_silence(timestamp_ms)

            self.current_pitch = sample
            self.event_logger.record_timing("tick", time.perf_counter() - t0)

        if self.on_pitch is not None:
            self.on_pitch(sample)
        return sample

    def _track_silence(self, timestamp_ms: float) -> None:
        if self._silence_since is None:
            self._silence_since = timestamp_ms
            return
        if timestamp_ms - self._silence_since > self.config.silence_reset_ms:
            if self.analyzer.history or self.corrector.buffer:
                logger.debug("Sustained silence; resetting vocal analysis and harmonic baseline")
                self.analyzer.reset()
                self.corrector.reset()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def detector_info(self) -> Dict[str, Any]:
        d = self.detector
        return {
            "requested": self.requested_strategy.value,
            "active": self.active_strategy.value if self.active_strategy else None,
            "name": d.name if d is not None else "none",
            "ready": self.is_ready,
            "state": d.state.value if d is not None else "unloaded",
            "fallback_used": self.fallback_used,
            "detector": d.info() if d is not None else {},
        }

    def debug_info(self) -> Dict[str, Any]:
        return {
            "rms": self.gain.last_rms,
            "gain": self.gain.current_gain,
            "drone_frequencies": self.conditioner.drone_frequencies,
            "history_size": len(self.analyzer.history),
            "harmonic_buffer": self.corrector.buffer,
            "timing": self.event_logger.timing_summary(),
            "detector": self.detector_info(),
        }

    def cents_from_target(self, target_hz: float) -> Optional[float]:
        if self.current_pitch is None:
            return None
        return cents_difference(target_hz, self.current_pitch.frequency)

    def is_pitch_matching(self, target_hz: float, tolerance_cents: float = 50.0) -> bool:
        cents = self.cents_from_target(target_hz)
        return cents is not None and abs(cents) <= tolerance_cents

    # ------------------------------------------------------------------
    # Drone cancellation
    # ------------------------------------------------------------------
    def enable_drone_cancellation(self, root_hz: float) -> None:
        with self._lock:
            self.conditioner.enable_drone(root_hz)

    def disable_drone_cancellation(self) -> None:
        with self._lock:
            self.conditioner.disable_drone()

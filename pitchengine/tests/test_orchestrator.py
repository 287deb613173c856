import time
from types import SimpleNamespace

import numpy as np
import pytest

from pitchengine.engine.capture import ArrayFrameSource, FileFrameSource
from pitchengine.engine.config import EngineConfig
from pitchengine.engine.errors import CaptureError, DetectorLoadError, DetectorNotReadyError
from pitchengine.engine.instrumentation import EngineLogger
from pitchengine.engine.models import DetectorStrategy, PitchSample
from pitchengine.engine.orchestrator import DetectorOrchestrator
from pitchengine.tests.audio_utils import generate_silence, generate_sine_wave

FRAME = 4096


def _dur(n_frames, sr=44100):
    return (n_frames * FRAME + 0.5) / sr


class FakeYin:
    """Stands in for librosa: returns scripted f0 values, the first one for the warm-up call."""

    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    def __call__(self):
        return SimpleNamespace(yin=self.yin, ParameterError=ValueError)

    def yin(self, y, **kwargs):
        idx = min(self.calls, len(self.values) - 1)
        self.calls += 1
        return np.array([self.values[idx]])


def _failing_loader():
    raise ImportError("no model available")


def _tone_source(freq=440.0, n_frames=8, sr=44100, loop=False):
    audio = generate_sine_wave(freq, _dur(n_frames, sr), sr)
    return ArrayFrameSource(audio, sr, frame_size=FRAME, loop=loop)


def _engine(source, strategy="primary", loader=None, **overrides):
    opts = {"detector_strategy": strategy}
    opts.update(overrides)
    return DetectorOrchestrator(
        EngineConfig.from_dict(opts),
        source,
        event_logger=EngineLogger(base_dir=None),
        primary_loader=loader,
    )


class TestLifecycle:
    def test_requires_source(self):
        with pytest.raises(ValueError):
            DetectorOrchestrator(EngineConfig())

    def test_primary_loads(self):
        engine = _engine(_tone_source(), loader=FakeYin([440.0]))
        engine.initialize()
        assert engine.is_ready
        assert engine.active_strategy == DetectorStrategy.PRIMARY
        assert engine.detector.name == "yin"
        assert not engine.fallback_used

    def test_fallback_to_spectral(self):
        engine = _engine(_tone_source(), loader=_failing_loader)
        engine.initialize()
        assert engine.is_ready
        assert engine.fallback_used
        assert engine.active_strategy == DetectorStrategy.SPECTRAL
        assert engine.requested_strategy == DetectorStrategy.PRIMARY
        assert engine.event_logger.find("detector", "load_failed")
        assert engine.event_logger.find("detector", "fallback")

        samples = engine.run(max_ticks=4)
        assert len(samples) == 4
        for s in samples:
            assert s.detector_name == "spectral"
            assert s.frequency == pytest.approx(440.0, rel=0.01)
            assert s.note_name == "A4"
            assert s.midi_note == 69

    def test_no_fallback_raises(self):
        engine = _engine(_tone_source(), loader=_failing_loader, fallback_enabled=False)
        with pytest.raises(DetectorLoadError) as excinfo:
            engine.initialize()
        assert isinstance(excinfo.value.cause, ImportError)
        assert not engine.is_ready
        with pytest.raises(DetectorNotReadyError):
            engine.detect_and_notify()

    def test_spectral_requested_directly(self):
        engine = _engine(_tone_source(), strategy="spectral")
        engine.initialize()
        assert engine.active_strategy == DetectorStrategy.SPECTRAL
        assert not engine.fallback_used

    def test_short_signal_is_capture_error(self, sr):
        source = ArrayFrameSource(np.zeros(100, dtype=np.float32), sr, frame_size=FRAME)
        engine = _engine(source, strategy="spectral")
        with pytest.raises(CaptureError):
            engine.initialize()
        assert engine.event_logger.find("capture", "error")

    def test_missing_file_is_capture_error(self, tmp_path):
        source = FileFrameSource(str(tmp_path / "missing.wav"), frame_size=FRAME, target_sr=44100)
        engine = _engine(source, strategy="spectral")
        with pytest.raises(CaptureError):
            engine.initialize()

    def test_initial_gain_is_pushed_to_source(self):
        source = _tone_source()
        engine = _engine(source, strategy="spectral")
        engine.initialize()
        assert source.gain == pytest.approx(3.5)

    def test_dispose(self):
        engine = _engine(_tone_source(), strategy="spectral")
        engine.run(max_ticks=1)
        engine.dispose()
        assert engine.detector is None
        assert not engine.is_ready
        assert engine.event_logger.find("engine", "finalize")


class TestTicks:
    def test_run_stops_when_exhausted(self):
        engine = _engine(_tone_source(n_frames=3), strategy="spectral")
        samples = engine.run()
        assert len(samples) == 3
        assert engine.frame_missing

    def test_run_max_ticks_on_looping_source(self):
        engine = _engine(_tone_source(n_frames=2, loop=True), strategy="spectral")
        assert len(engine.run(max_ticks=7)) == 7

    def test_sample_fields(self):
        engine = _engine(_tone_source(), loader=FakeYin([440.0]))
        sample = engine.run(max_ticks=1)[0]
        assert isinstance(sample, PitchSample)
        assert sample.frequency == pytest.approx(440.0)
        assert 0.3 <= sample.confidence <= 1.0
        assert sample.cents_off == pytest.approx(0.0, abs=1e-6)
        assert sample.timestamp_ms == pytest.approx(1000.0 * FRAME / 44100)
        assert sample.rms > 0.0
        assert sample.harmonic_correction == 0.0
        d = sample.to_dict()
        assert d["detector_name"] == "yin"
        assert set(d["vocal_analysis"]) == {"vibrato", "stability", "spectral_centroid", "hnr"}

    def test_harmonic_correction_applied(self):
        # 660 Hz tone: clarity is high at both 220 Hz and 660 Hz periods
        yin = FakeYin([440.0, 220.0, 220.0, 220.0, 220.0, 660.0])
        engine = _engine(_tone_source(660.0), loader=yin)
        samples = engine.run(max_ticks=5)
        assert [s.harmonic_correction for s in samples] == [0.0, 0.0, 0.0, 0.0, 19.0]
        assert samples[-1].frequency == pytest.approx(220.0, rel=0.01)
        assert samples[-1].note_name == "A3"

    def test_on_pitch_receives_none_for_silence(self, sr):
        audio = np.concatenate([generate_sine_wave(440.0, _dur(2, sr), sr), generate_silence(_dur(2, sr), sr)])
        received = []
        engine = DetectorOrchestrator(
            EngineConfig(detector_strategy="spectral"),
            ArrayFrameSource(audio, sr, frame_size=FRAME),
            event_logger=EngineLogger(base_dir=None),
            on_pitch=received.append,
        )
        engine.run()
        assert len(received) == 4
        assert all(isinstance(s, PitchSample) for s in received[:2])
        assert received[2:] == [None, None]
        assert engine.current_pitch is None

    def test_sustained_silence_resets_analysis(self, sr):
        audio = np.concatenate([generate_sine_wave(440.0, _dur(3, sr), sr), generate_silence(_dur(10, sr), sr)])
        engine = _engine(ArrayFrameSource(audio, sr, frame_size=FRAME), strategy="spectral")
        engine.run(max_ticks=3)
        assert len(engine.analyzer.history) == 3
        assert len(engine.corrector.buffer) == 3
        engine.run()
        assert len(engine.analyzer.history) == 0
        assert engine.corrector.buffer == []

    def test_short_silence_keeps_history(self, sr):
        audio = np.concatenate([generate_sine_wave(440.0, _dur(3, sr), sr), generate_silence(_dur(3, sr), sr)])
        engine = _engine(ArrayFrameSource(audio, sr, frame_size=FRAME), strategy="spectral")
        engine.run()
        assert len(engine.analyzer.history) == 3

    def test_timing_recorded(self):
        engine = _engine(_tone_source(), strategy="spectral")
        engine.run(max_ticks=2)
        assert engine.debug_info()["timing"]["tick"]["count"] == 2.0


class TestSwitching:
    def test_switch_preserves_history(self):
        engine = _engine(_tone_source(n_frames=10), loader=FakeYin([440.0]))
        engine.run(max_ticks=3)
        assert len(engine.analyzer.history) == 3

        engine.switch_detector("spectral")
        assert engine.active_strategy == DetectorStrategy.SPECTRAL
        assert engine.requested_strategy == DetectorStrategy.SPECTRAL
        assert len(engine.analyzer.history) == 3

        samples = engine.run(max_ticks=2)
        assert [s.detector_name for s in samples] == ["spectral", "spectral"]
        assert len(engine.analyzer.history) == 5

    def test_switch_to_same_strategy_is_noop(self):
        engine = _engine(_tone_source(), strategy="spectral")
        engine.initialize()
        detector = engine.detector
        engine.switch_detector(DetectorStrategy.SPECTRAL)
        assert engine.detector is detector

    def test_switch_to_failing_primary_falls_back(self):
        engine = _engine(_tone_source(), strategy="spectral", loader=_failing_loader)
        engine.initialize()
        engine.switch_detector("primary")
        assert engine.requested_strategy == DetectorStrategy.PRIMARY
        assert engine.active_strategy == DetectorStrategy.SPECTRAL
        assert engine.fallback_used

    def test_switch_before_initialize_only_records_request(self):
        engine = _engine(_tone_source(), strategy="spectral")
        engine.switch_detector("primary")
        assert engine.requested_strategy == DetectorStrategy.PRIMARY
        assert engine.detector is None

    def test_detector_info(self):
        engine = _engine(_tone_source(), loader=_failing_loader)
        engine.initialize()
        info = engine.detector_info()
        assert info["requested"] == "primary"
        assert info["active"] == "spectral"
        assert info["name"] == "spectral"
        assert info["ready"] is True
        assert info["state"] == "ready"
        assert info["fallback_used"] is True
        assert info["detector"]["window_size"] == 1024


class TestTargetMatching:
    def test_no_pitch_yet(self):
        engine = _engine(_tone_source(), strategy="spectral")
        assert engine.cents_from_target(440.0) is None
        assert not engine.is_pitch_matching(440.0)

    def test_matching(self):
        engine = _engine(_tone_source(), strategy="spectral")
        engine.run(max_ticks=1)
        assert abs(engine.cents_from_target(440.0)) < 20.0
        assert engine.is_pitch_matching(440.0)
        assert engine.is_pitch_matching(445.0)
        assert not engine.is_pitch_matching(466.16)
        assert engine.is_pitch_matching(466.16, tolerance_cents=120.0)


class TestDroneCancellation:
    def test_enable_and_disable(self):
        engine = _engine(_tone_source(), strategy="spectral")
        engine.enable_drone_cancellation(220.0)
        assert engine.debug_info()["drone_frequencies"] == [220.0, 330.0, 440.0, 880.0]
        engine.disable_drone_cancellation()
        assert engine.conditioner.drone_frequencies == []

    def test_invalid_root(self):
        engine = _engine(_tone_source(), strategy="spectral")
        with pytest.raises(ValueError):
            engine.enable_drone_cancellation(0.0)



class TestBackgroundThread:
    def test_start_and_stop(self):
        source = _tone_source(n_frames=2, loop=True)
        engine = _engine(source, strategy="spectral", update_interval_ms=5.0)
        engine.start()
        try:
            deadline = time.time() + 5.0
            while engine.current_pitch is None and time.time() < deadline:
                time.sleep(0.01)
            assert engine.is_running
            assert engine.current_pitch is not None
            assert engine.current_pitch.frequency == pytest.approx(440.0, rel=0.01)
        finally:
            engine.stop()
        assert not engine.is_running
        assert not source.running
        assert engine.current_pitch is None

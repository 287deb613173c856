import numpy as np
import pytest

from pitchengine.engine.conditioning import FrameConditioner
from pitchengine.engine.config import ConditioningConfig
from pitchengine.engine.models import AudioFrame
from pitchengine.tests.audio_utils import generate_sine_wave

N = 32768


def _amplitude(x, freq, sr, lo=N // 4, hi=3 * N // 4):
    # projection onto the tone over the centre of the frame, away from filter edge transients
    seg = np.asarray(x[lo:hi], dtype=np.float64)
    t = np.arange(lo, hi) / float(sr)
    s = np.sin(2 * np.pi * freq * t)
    c = np.cos(2 * np.pi * freq * t)
    return 2.0 * np.hypot(np.mean(seg * s), np.mean(seg * c))


def _mix(sr, *parts):
    return sum(generate_sine_wave(f, (N + 0.5) / sr, sr, amplitude=a) for f, a in parts)


class TestFrameConditioner:
    def test_inactive_returns_same_frame(self, sr):
        cond = FrameConditioner()
        frame = AudioFrame(_mix(sr, (440.0, 0.5)), sr, 12.0)
        assert not cond.active
        assert cond.apply(frame) is frame

    def test_drone_is_notched_voice_kept(self, sr):
        cond = FrameConditioner()
        cond.enable_drone(220.0)
        frame = AudioFrame(_mix(sr, (220.0, 0.5), (277.18, 0.3)), sr, 40.0)
        out = cond.apply(frame)

        assert out.sample_rate == sr
        assert out.timestamp_ms == 40.0
        assert out.samples.dtype == np.float32
        assert _amplitude(out.samples, 220.0, sr) < 0.05 * 0.5
        assert _amplitude(out.samples, 277.18, sr) > 0.8 * 0.3

    def test_fifth_and_octaves_are_notched(self, sr):
        cond = FrameConditioner()
        cond.enable_drone(110.0)
        out = cond.apply(AudioFrame(_mix(sr, (165.0, 0.3), (220.0, 0.3), (440.0, 0.3)), sr))
        for f in (165.0, 220.0, 440.0):
            assert _amplitude(out.samples, f, sr) < 0.05 * 0.3

    def test_notches_above_nyquist_are_skipped(self):
        sr = 8000
        cond = FrameConditioner()
        cond.enable_drone(3000.0)
        out = cond.apply(AudioFrame(_mix(sr, (500.0, 0.3)), sr))
        assert np.all(np.isfinite(out.samples))

    def test_disable(self, sr):
        cond = FrameConditioner()
        cond.enable_drone(220.0)
        cond.disable_drone()
        assert cond.drone_frequencies == []
        assert not cond.active

    @pytest.mark.parametrize("root", [0.0, -110.0])
    def test_invalid_root(self, root):
        with pytest.raises(ValueError):
            FrameConditioner().enable_drone(root)

    def test_high_pass_removes_rumble(self, sr):
        cfg = ConditioningConfig(high_pass={"enabled": True, "cutoff_hz": 180.0, "order": 2})
        cond = FrameConditioner(cfg)
        assert cond.active
        out = cond.apply(AudioFrame(_mix(sr, (50.0, 0.5), (440.0, 0.3)), sr))
        assert _amplitude(out.samples, 50.0, sr) < 0.05 * 0.5
        assert _amplitude(out.samples, 440.0, sr) > 0.9 * 0.3

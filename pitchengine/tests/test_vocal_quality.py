import numpy as np
import pytest

from pitchengine.engine.capture import compute_transform
from pitchengine.engine.config import VocalAnalysisConfig
from pitchengine.engine.models import AudioFrame, FrequencyTransform, VibratoResult
from pitchengine.engine.vocal_quality import VocalQualityAnalyzer
from pitchengine.tests.audio_utils import generate_harmonic_tone, vibrato_history

FFT_SIZE = 8192


def _feed(analyzer, history):
    for freq, ts in history:
        analyzer.analyze(None, freq, 44100, None, timestamp_ms=ts)


def _transform(db, sr=44100, fft_size=FFT_SIZE):
    return FrequencyTransform(np.asarray(db, dtype=np.float64), sr, fft_size)


class TestVibrato:
    @pytest.fixture
    def analyzer(self):
        return VocalQualityAnalyzer(VocalAnalysisConfig())

    def test_detects_five_hz_vibrato(self, analyzer):
        _feed(analyzer, vibrato_history(440.0, extent_cents=20.0, rate_hz=5.0, n=20, interval_ms=30.0))
        vib = analyzer.analyze_vibrato()
        assert vib.detected
        assert 4.0 <= vib.rate_hz <= 8.0
        assert vib.extent_cents >= 15.0
        assert analyzer.analysis.vibrato == vib

    def test_flat_pitch_has_no_vibrato(self, analyzer):
        _feed(analyzer, [(440.0, i * 30.0) for i in range(20)])
        assert analyzer.analyze_vibrato() == VibratoResult(False, 0.0, 0.0)

    def test_too_few_samples(self, analyzer):
        _feed(analyzer, vibrato_history(n=10))
        assert not analyzer.analyze_vibrato().detected

    def test_small_extent_is_ignored(self, analyzer):
        _feed(analyzer, vibrato_history(extent_cents=5.0, n=20))
        assert not analyzer.analyze_vibrato().detected

    def test_slow_wobble_outside_rate_range(self, analyzer):
        _feed(analyzer, vibrato_history(extent_cents=40.0, rate_hz=1.0, n=20))
        vib = analyzer.analyze_vibrato()
        assert not vib.detected
        assert vib.rate_hz == 0.0

    def test_zero_time_span(self, analyzer):
        _feed(analyzer, [(f, 0.0) for f, _ in vibrato_history(n=20)])
        assert not analyzer.analyze_vibrato().detected

    def test_history_is_capped(self, analyzer):
        _feed(analyzer, [(440.0, i * 30.0) for i in range(50)])
        assert len(analyzer.history) == 30
        assert analyzer.history[0].timestamp_ms == 20 * 30.0

    def test_unvoiced_ticks_do_not_append(self, analyzer):
        analyzer.analyze(None, None, 44100, None, timestamp_ms=0.0)
        assert len(analyzer.history) == 0


class TestStability:
    def test_constant_pitch_is_fully_stable(self):
        a = VocalQualityAnalyzer()
        _feed(a, [(330.0, i * 30.0) for i in range(12)])
        assert a.analyze_stability() == pytest.approx(1.0)

    def test_fewer_samples_than_window(self):
        a = VocalQualityAnalyzer()
        _feed(a, [(330.0 * (1 + 0.1 * (i % 2)), i * 30.0) for i in range(5)])
        assert a.analyze_stability() == 1.0

    def test_wide_jitter_is_unstable(self):
        a = VocalQualityAnalyzer()
        # alternate +/- 2 semitones: std = 200 cents
        _feed(a, [(440.0 * 2 ** ((2 if i % 2 else -2) / 12.0), i * 30.0) for i in range(10)])
        assert a.analyze_stability() == 0.0

    def test_moderate_jitter(self):
        a = VocalQualityAnalyzer()
        _feed(a, [(440.0 * 2 ** ((25 if i % 2 else -25) / 1200.0), i * 30.0) for i in range(10)])
        # cents relative to first sample alternate 0 / +50: population std 25
        assert a.analyze_stability() == pytest.approx(0.75, abs=1e-6)


class TestSpectralCentroid:
    def test_single_peak(self):
        a = VocalQualityAnalyzer()
        db = np.full(FFT_SIZE // 2, -200.0)
        peak_bin = int(round(2000.0 / (44100 / FFT_SIZE)))
        db[peak_bin] = 0.0
        value = a.analyze_spectral_centroid(_transform(db))
        raw = (peak_bin * 44100 / FFT_SIZE - 400.0) / 2100.0
        assert value == pytest.approx(0.5 * 0.3 + raw * 0.7)

    def test_empty_transform_holds_previous(self):
        a = VocalQualityAnalyzer()
        a.last_spectral_centroid = 0.42
        assert a.analyze_spectral_centroid(_transform([])) == 0.42

    @pytest.mark.parametrize(
        "db",
        [
            np.zeros(FFT_SIZE // 2),
            np.full(FFT_SIZE // 2, -np.inf),
            np.full(FFT_SIZE // 2, np.nan),
            np.full(FFT_SIZE // 2, 1e6),
            np.random.default_rng(0).uniform(-300.0, 300.0, FFT_SIZE // 2),
        ],
    )
    def test_adversarial_input_stays_bounded(self, db):
        a = VocalQualityAnalyzer()
        for _ in range(5):
            centroid = a.analyze_spectral_centroid(_transform(db))
            hnr = a.analyze_hnr(_transform(db), 220.0)
            a.last_spectral_centroid, a.last_hnr = centroid, hnr
            assert 0.0 <= centroid <= 1.0
            assert 0.0 <= hnr <= 1.0


class TestHNR:
    @pytest.fixture
    def bin_width(self):
        return 44100 / FFT_SIZE

    def test_clean_harmonics(self, bin_width):
        a = VocalQualityAnalyzer()
        db = np.full(FFT_SIZE // 2, -200.0)
        f0_bin = int(round(220.0 / bin_width))
        for h in range(1, 9):
            db[f0_bin * h] = -6.0 * h
        assert a.analyze_hnr(_transform(db), 220.0) == pytest.approx(1.0)

    def test_flat_noise_is_breathy(self):
        a = VocalQualityAnalyzer()
        db = np.full(FFT_SIZE // 2, -30.0)
        # 40 of 409 analysed bins lie near a harmonic: ratio < 0.1 -> raw 0
        assert a.analyze_hnr(_transform(db), 220.0) == pytest.approx(0.4)

    def test_no_frequency_holds_previous(self):
        a = VocalQualityAnalyzer()
        a.last_hnr = 0.7
        assert a.analyze_hnr(_transform(np.zeros(FFT_SIZE // 2)), None) == 0.7


class TestAnalyzeAndReset:
    def test_analyze_with_real_frame(self, sr):
        a = VocalQualityAnalyzer()
        audio = generate_harmonic_tone(220.0, 4096 / sr, sr)
        frame = AudioFrame(audio, sr)
        metrics = a.analyze(frame, 220.0, sr, compute_transform(frame, FFT_SIZE), timestamp_ms=0.0)
        assert 0.0 <= metrics.spectral_centroid <= 1.0
        assert metrics.hnr > 0.5
        assert metrics.stability == 1.0

    def test_reset_restores_defaults(self):
        a = VocalQualityAnalyzer()
        _feed(a, vibrato_history(n=20))
        a.last_spectral_centroid = 0.9
        a.last_hnr = 0.1
        a.reset()
        m = a.analysis
        assert m.stability == 1.0
        assert m.spectral_centroid == 0.5
        assert m.hnr == 1.0
        assert m.vibrato == VibratoResult(False, 0.0, 0.0)
        assert len(a.history) == 0
        assert m.to_dict()["vibrato"]["detected"] is False

# pitchengine/engine/vocal_quality.py
"""
Perceptual descriptors computed alongside the pitch estimate.

Vibrato and stability come from the recent pitch history; brightness
(spectral centroid) and breathiness (HNR) come from the frame's magnitude
spectrum. Centroid and HNR are exponentially smoothed across ticks, so the
analyzer is stateful and must be reset on silence or a new take.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from typing import Deque, Optional

import numpy as np

from .config import VocalAnalysisConfig
from .models import AudioFrame, FrequencyTransform, HistoryEntry, VibratoResult, VocalQualityMetrics

logger = logging.getLogger(__name__)

_NO_VIBRATO = VibratoResult(False, 0.0, 0.0)


def _finite_db(magnitudes_db: np.ndarray) -> np.ndarray:
    # -inf / nan bins are treated as silent (below any floor)
    db = np.asarray(magnitudes_db, dtype=np.float64).reshape(-1)
    return np.where(np.isfinite(db), db, -np.inf)


class VocalQualityAnalyzer:
    def __init__(self, config: Optional[VocalAnalysisConfig] = None):
        self.config = config or VocalAnalysisConfig()
        self.history: Deque[HistoryEntry] = deque(maxlen=int(self.config.max_history))
        self.last_vibrato = _NO_VIBRATO
        self.last_stability = 1.0
        self.last_spectral_centroid = 0.5
        self.last_hnr = 1.0

    @property
    def analysis(self) -> VocalQualityMetrics:
        return VocalQualityMetrics(
            vibrato=self.last_vibrato,
            stability=self.last_stability,
            spectral_centroid=self.last_spectral_centroid,
            hnr=self.last_hnr,
        )

    def analyze(
        self,
        frame: Optional[AudioFrame],
        frequency: Optional[float],
        sample_rate: int,
        transform: Optional[FrequencyTransform],
        timestamp_ms: Optional[float] = None,
    ) -> VocalQualityMetrics:
        if frequency is not None:
            ts = float(timestamp_ms) if timestamp_ms is not None else time.time() * 1000.0
            self.history.append(HistoryEntry(float(frequency), ts))

        self.last_vibrato = self.analyze_vibrato()
        self.last_stability = self.analyze_stability()

        if frame is not None and transform is not None:
            self.last_spectral_centroid = self.analyze_spectral_centroid(transform)
            self.last_hnr = self.analyze_hnr(transform, frequency)

        return self.analysis

    # ------------------------------------------------------------------
    # Pitch-history descriptors
    # ------------------------------------------------------------------
    def analyze_vibrato(self) -> VibratoResult:
        cfg = self.config
        window = int(cfg.vibrato_window)
        if len(self.history) < window:
            return _NO_VIBRATO

        recent = list(self.history)[-window:]
        freqs = np.array([e.frequency for e in recent], dtype=np.float64)
        cents = 1200.0 * np.log2(freqs / float(np.mean(freqs)))

        extent = float(np.max(cents) - np.min(cents))
        if extent < cfg.vibrato_min_extent:
            return _NO_VIBRATO

        # sign change between >= 0 and < 0
        non_negative = cents >= 0.0
        zero_crossings = int(np.count_nonzero(non_negative[1:] != non_negative[:-1]))

        span_s = (recent[-1].timestamp_ms - recent[0].timestamp_ms) / 1000.0
        if span_s <= 0.0:
            return _NO_VIBRATO

        rate = (zero_crossings / 2.0) / span_s
        if cfg.vibrato_min_rate <= rate <= cfg.vibrato_max_rate:
            return VibratoResult(True, float(rate), extent)
        return _NO_VIBRATO

    def analyze_stability(self) -> float:
        window = int(self.config.stability_window)
        if len(self.history) < window:
            return 1.0
        recent = list(self.history)[-window:]
        freqs = np.array([e.frequency for e in recent], dtype=np.float64)
        cents = 1200.0 * np.log2(freqs / freqs[0])
        std = float(np.std(cents))  # population std
        return max(0.0, 1.0 - std / 100.0)

    # ------------------------------------------------------------------
    # Spectral descriptors
    # ------------------------------------------------------------------
    def analyze_spectral_centroid(self, transform: FrequencyTransform) -> float:
        cfg = self.config
        db = _finite_db(transform.magnitudes_db)
        if db.size == 0:
            return self.last_spectral_centroid

        bin_width = transform.bin_width
        min_bin = int(np.floor(cfg.centroid_min_hz / bin_width))
        max_bin = min(db.size - 1, int(np.ceil(cfg.centroid_max_hz / bin_width)))
        if max_bin < min_bin:
            return self.last_spectral_centroid

        band = db[min_bin:max_bin + 1]
        peak = float(np.max(band))
        if not np.isfinite(peak):
            return self.last_spectral_centroid

        keep = band >= peak - cfg.centroid_floor_db
        with np.errstate(over="ignore"):
            linear = np.power(10.0, band[keep] / 20.0)
        freqs = np.arange(min_bin, max_bin + 1, dtype=np.float64)[keep] * bin_width
        total = float(np.sum(linear))
        if total <= 0.0 or not np.isfinite(total):
            return self.last_spectral_centroid

        centroid = float(np.sum(freqs * linear)) / total
        lo, hi = cfg.centroid_ref_range
        raw = float(np.clip((centroid - lo) / (hi - lo), 0.0, 1.0))
        a = float(cfg.centroid_smoothing)
        return self.last_spectral_centroid * a + raw * (1.0 - a)

    def analyze_hnr(self, transform: FrequencyTransform, frequency: Optional[float]) -> float:
        cfg = self.config
        db = _finite_db(transform.magnitudes_db)
        if db.size == 0 or not frequency:
            return self.last_hnr

        bin_width = transform.bin_width
        fundamental_bin = int(round(frequency / bin_width))
        max_hz = min(frequency * cfg.hnr_max_multiple, cfg.hnr_max_hz)
        max_bin = min(db.size - 1, int(np.ceil(max_hz / bin_width)))
        if max_bin < 1:
            return self.last_hnr

        band = db[1:max_bin + 1]
        peak = float(np.max(band))
        if not np.isfinite(peak):
            return self.last_hnr

        bins = np.arange(1, max_bin + 1)
        keep = band >= peak - cfg.hnr_floor_db
        with np.errstate(over="ignore"):
            energy = np.power(10.0, band / 20.0) ** 2
        energy = np.where(keep, energy, 0.0)

        near_harmonic = np.zeros(bins.shape, dtype=bool)
        for h in range(1, int(cfg.hnr_harmonics) + 1):
            harmonic_bin = fundamental_bin * h
            if harmonic_bin > max_bin:
                break
            near_harmonic |= np.abs(bins - harmonic_bin) <= cfg.hnr_bin_tolerance

        total = float(np.sum(energy))
        if total <= 0.0 or not np.isfinite(total):
            return self.last_hnr

        ratio = float(np.sum(energy[near_harmonic])) / total
        raw = float(np.clip((ratio - 0.1) / 0.7, 0.0, 1.0))
        a = float(cfg.hnr_smoothing)
        return self.last_hnr * a + raw * (1.0 - a)

    def reset(self) -> None:
        self.history.clear()
        self.last_vibrato = _NO_VIBRATO
        self.last_stability = 1.0
        self.last_spectral_centroid = 0.5
        self.last_hnr = 1.0

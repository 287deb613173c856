# pitchengine/engine/harmonic.py
from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List, Optional, Sequence, Tuple

import numpy as np

from .config import HarmonicConfig

logger = logging.getLogger(__name__)


class HarmonicCorrector:
    """
    Median-baseline fix for estimators that lock onto the 3rd or 5th
    harmonic instead of the fundamental.

    Each raw MIDI value is compared to the upper median of the last few
    estimates; a distance of ~19 semitones (octave + fifth) or ~28
    (two octaves + major third) is folded back onto the baseline. Exact
    octave jumps are left alone since singers make them on purpose.
    """

    def __init__(self, config: Optional[HarmonicConfig] = None):
        self.config = config or HarmonicConfig()
        self._buffer: Deque[float] = deque(maxlen=int(self.config.buffer_size))

    @property
    def buffer(self) -> List[float]:
        return list(self._buffer)

    def median(self) -> Optional[float]:
        if not self._buffer:
            return None
        ordered = sorted(self._buffer)
        return ordered[len(ordered) // 2]

    def correct(self, raw_midi: float) -> Tuple[float, float]:
        """Return ``(corrected_midi, correction_amount)``; amount is in semitones, >= 0."""
        raw_midi = float(raw_midi)
        self._buffer.append(raw_midi)
        if not self.config.enabled or len(self._buffer) < int(self.config.min_samples):
            return raw_midi, 0.0

        diff = raw_midi - self.median()
        magnitude = abs(diff)
        for lo, hi, amount in self.config.rules:
            if lo <= magnitude <= hi:
                corrected = raw_midi - amount if diff > 0 else raw_midi + amount
                self._buffer[-1] = corrected
                logger.debug(f"Harmonic correction {raw_midi:.2f} -> {corrected:.2f} (diff {diff:+.2f})")
                return corrected, float(amount)
        return raw_midi, 0.0

    def reset(self) -> None:
        self._buffer.clear()


def filter_octave_outliers(frequencies: Sequence[float], low: float = 0.7, high: float = 1.4) -> List[float]:
    """
    Drop values whose ratio to the preliminary median is outside ``(low, high)``.

    Needs at least 4 values to judge; if fewer than 3 survive the input is
    returned unchanged.
    """
    values = [float(f) for f in frequencies]
    if len(values) < 4:
        return values
    prelim = float(np.median(values))
    if prelim <= 0.0:
        return values
    kept = [f for f in values if low < f / prelim < high]
    return values if len(kept) < 3 else kept


def octave_aware_median(frequencies: Sequence[float]) -> Optional[float]:
    """Median after :func:`filter_octave_outliers`; ``None`` for an empty input."""
    values = filter_octave_outliers(frequencies)
    if not values:
        return None
    return float(np.median(values))

# pitchengine/engine/conditioning.py
"""Pre-detection frame filters: optional rumble high-pass and drone notches."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional

import numpy as np
import scipy.signal

from .config import ConditioningConfig
from .models import AudioFrame

logger = logging.getLogger(__name__)


def _high_pass(y: np.ndarray, sr: int, cutoff_hz: float, order: int = 2) -> np.ndarray:
    if y.size == 0:
        return y.astype(np.float32)
    nyq = 0.5 * sr
    norm = min(max(float(cutoff_hz) / nyq, 1e-5), 0.999)
    try:
        sos = scipy.signal.butter(int(order), norm, btype="highpass", output="sos")
        return scipy.signal.sosfiltfilt(sos, y).astype(np.float32)
    except ValueError as e:
        logger.warning(f"HPF failed: {e}")
        return y.astype(np.float32)


def _notch(y: np.ndarray, sr: int, freq_hz: float, q: float) -> np.ndarray:
    b, a = scipy.signal.iirnotch(float(freq_hz), float(q), fs=float(sr))
    try:
        return scipy.signal.filtfilt(b, a, y).astype(np.float32)
    except ValueError as e:
        # frame shorter than the filter's padding
        logger.warning(f"Notch at {freq_hz:.1f} Hz failed: {e}")
        return y.astype(np.float32)


class FrameConditioner:
    """
    Removes a backing drone (root, fifth, octave, double octave) from the
    voice signal so the estimators do not lock onto it.
    """

    def __init__(self, config: Optional[ConditioningConfig] = None):
        self.config = config or ConditioningConfig()
        self.drone_root: Optional[float] = None

    @property
    def drone_frequencies(self) -> List[float]:
        if self.drone_root is None:
            return []
        return [self.drone_root * float(r) for r in self.config.drone_ratios]

    @property
    def active(self) -> bool:
        return self.drone_root is not None or bool(self.config.high_pass.get("enabled", False))

    def enable_drone(self, root_hz: float) -> None:
        if root_hz <= 0:
            raise ValueError(f"Drone root must be positive, got {root_hz}")
        self.drone_root = float(root_hz)
        logger.info(
            f"Drone cancellation enabled at {self.drone_root:.1f}Hz "
            f"({len(self.drone_frequencies)} notches)"
        )

    def disable_drone(self) -> None:
        if self.drone_root is not None:
            logger.info("Drone cancellation disabled")
        self.drone_root = None

    def apply(self, frame: AudioFrame) -> AudioFrame:
        if not self.active:
            return frame

        sr = int(frame.sample_rate)
        y = np.asarray(frame.samples, dtype=np.float64)

        hp = self.config.high_pass
        if hp.get("enabled", False):
            y = _high_pass(y, sr, float(hp.get("cutoff_hz", 180.0)), int(hp.get("order", 2)))

        nyq = 0.5 * sr
        for freq in self.drone_frequencies:
            if freq >= nyq:
                continue
            y = _notch(y, sr, freq, self.config.drone_notch_q)

        return replace(frame, samples=np.asarray(y, dtype=np.float32))

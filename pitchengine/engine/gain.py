# pitchengine/engine/gain.py
"""Automatic gain control applied upstream of pitch detection."""
from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

from .config import GainConfig
from .models import AudioFrame, GainState

logger = logging.getLogger(__name__)


def frame_rms(samples: np.ndarray) -> float:
    x = np.asarray(samples, dtype=np.float64).reshape(-1)
    if x.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(x * x)))


class GainController:
    """
    Per-frame RMS measurement + smoothed gain adjustment.

    The frame itself is never modified; the new gain is pushed into the
    capture path through ``gain_sink`` (e.g. ``FrameSource.set_gain``) and
    takes effect on subsequent frames.
    """

    def __init__(
        self,
        config: Optional[GainConfig] = None,
        gain_sink: Optional[Callable[[float], None]] = None,
    ):
        cfg = config or GainConfig()
        self.silence_epsilon = float(cfg.silence_epsilon)
        self.state = GainState(
            current_gain=float(np.clip(cfg.initial_gain, cfg.min_gain, cfg.max_gain)),
            target_rms=float(cfg.target_rms),
            min_gain=float(cfg.min_gain),
            max_gain=float(cfg.max_gain),
            adapt_speed=float(cfg.adapt_speed),
        )
        self.gain_sink = gain_sink
        self.last_rms = 0.0

    @property
    def current_gain(self) -> float:
        return self.state.current_gain

    def process(self, frame: AudioFrame) -> float:
        rms = frame_rms(frame.samples)
        self.last_rms = rms
        if rms > self.silence_epsilon and np.isfinite(rms):
            self._update(rms)
        return rms

    def _update(self, rms: float) -> None:
        s = self.state
        desired = s.target_rms / rms * s.current_gain
        clamped = min(s.max_gain, max(s.min_gain, desired))
        new_gain = s.current_gain + (clamped - s.current_gain) * s.adapt_speed
        # stays within [min_gain, max_gain] for adapt_speed in [0, 1]
        s.current_gain = float(min(s.max_gain, max(s.min_gain, new_gain)))
        if self.gain_sink is not None:
            self.gain_sink(s.current_gain)

    def reset(self, gain: Optional[float] = None) -> None:
        s = self.state
        if gain is not None:
            s.current_gain = float(min(s.max_gain, max(s.min_gain, gain)))
        if self.gain_sink is not None:
            self.gain_sink(s.current_gain)

# pitchengine/engine/capture.py
"""
Frame sources feeding the engine, and the per-tick frequency transform.

A frame source owns the capture gain: ``set_gain`` is the sink the
GainController pushes into, and the gain is applied to every frame read
afterwards.
"""
from __future__ import annotations

import logging
import os
from typing import Optional, Protocol, Tuple

import numpy as np
import scipy.fft

from .errors import CaptureError
from .models import AudioFrame, FrequencyTransform

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    sample_rate: int

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def read_frame(self) -> Optional[AudioFrame]: ...

    def set_gain(self, gain: float) -> None: ...


class ArrayFrameSource:
    """
    Hop-driven reader over an in-memory mono signal.

    Each ``read_frame`` returns ``frame_size`` samples and advances the
    cursor by ``hop_size``. With ``loop=True`` the signal wraps around,
    otherwise the source is exhausted (``None``) once a full frame no
    longer fits.
    """

    def __init__(
        self,
        samples: np.ndarray,
        sample_rate: int,
        frame_size: int = 4096,
        hop_size: Optional[int] = None,
        loop: bool = False,
        gain: float = 1.0,
    ):
        self.samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        self.sample_rate = int(sample_rate)
        self.frame_size = int(frame_size)
        self.hop_size = int(hop_size or frame_size)
        self.loop = bool(loop)
        self.gain = float(gain)
        self.running = False
        self._pos = 0

    def start(self) -> None:
        if self.samples.size < self.frame_size:
            raise CaptureError(
                f"Signal has {self.samples.size} samples, need at least one frame of {self.frame_size}"
            )
        self._pos = 0
        self.running = True

    def stop(self) -> None:
        self.running = False

    def set_gain(self, gain: float) -> None:
        self.gain = float(gain)

    def read_frame(self) -> Optional[AudioFrame]:
        if not self.running:
            return None
        if self._pos + self.frame_size > self.samples.size:
            if not self.loop:
                return None
            self._pos = 0

        start = self._pos
        end = start + self.frame_size
        self._pos += self.hop_size
        chunk = self.samples[start:end] * np.float32(self.gain)
        return AudioFrame(
            samples=chunk,
            sample_rate=self.sample_rate,
            timestamp_ms=1000.0 * end / float(self.sample_rate),
        )


class FileFrameSource(ArrayFrameSource):
    """ArrayFrameSource over an audio file decoded with soundfile (mono-mixed)."""

    def __init__(
        self,
        path: str,
        frame_size: int = 4096,
        hop_size: Optional[int] = None,
        target_sr: Optional[int] = None,
        loop: bool = False,
        gain: float = 1.0,
    ):
        super().__init__(np.zeros((0,), dtype=np.float32), target_sr or 0, frame_size, hop_size, loop, gain)
        self.path = path
        self.target_sr = target_sr

    def start(self) -> None:
        audio, sr = load_audio(self.path, self.target_sr)
        self.samples = audio
        self.sample_rate = sr
        logger.info(f"Loaded {self.path}: {self.samples.size} samples @ {self.sample_rate} Hz")
        super().start()


def load_audio(path: str, target_sr: Optional[int] = None) -> Tuple[np.ndarray, int]:
    """Decode ``path`` with soundfile, mix to mono and optionally resample."""
    import soundfile as sf

    if not os.path.exists(path):
        raise CaptureError(f"Audio file not found: {path}")
    try:
        data, sr = sf.read(path, dtype="float32", always_2d=True)
    except (RuntimeError, OSError) as exc:
        raise CaptureError(f"Failed to read {path}: {exc}") from exc

    audio = data.mean(axis=1)
    if target_sr and int(target_sr) != int(sr):
        import librosa

        audio = librosa.resample(audio, orig_sr=int(sr), target_sr=int(target_sr))
        sr = int(target_sr)
    return np.asarray(audio, dtype=np.float32), int(sr)


def compute_transform(frame: AudioFrame, fft_size: Optional[int] = None) -> FrequencyTransform:
    """
    Blackman-windowed magnitude spectrum of ``frame`` in dB.

    Returns ``fft_size // 2`` bins; magnitudes are ``|X| / fft_size`` with a
    1e-12 floor before the log so silent input stays finite.
    """
    x = np.asarray(frame.samples, dtype=np.float64).reshape(-1)
    n_fft = int(fft_size or 2 * max(1, x.size))
    if x.size > n_fft:
        x = x[-n_fft:]
    if x.size == 0:
        return FrequencyTransform(np.zeros((0,), dtype=np.float64), int(frame.sample_rate), n_fft)

    windowed = x * np.blackman(x.size)
    spectrum = np.abs(scipy.fft.rfft(windowed, n=n_fft))[: n_fft // 2] / float(n_fft)
    magnitudes_db = 20.0 * np.log10(np.maximum(spectrum, 1e-12))
    return FrequencyTransform(magnitudes_db, int(frame.sample_rate), n_fft)

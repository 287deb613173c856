# pitchengine/engine/detectors.py
from __future__ import annotations

import importlib
import logging
import math
import warnings
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import scipy.fft

from .config import EngineConfig
from .errors import DetectorLoadError, DetectorNotReadyError
from .gain import frame_rms
from .models import AudioFrame, DetectorState, DetectorStrategy, PitchEstimate, NO_PITCH

logger = logging.getLogger(__name__)

_FFT_LIB = scipy.fft


# --------------------------------------------------------------------------------------
# Utility
# --------------------------------------------------------------------------------------
def resample_linear(y: np.ndarray, src_sr: int, dst_sr: int) -> np.ndarray:
    """Linear-interpolation resampler; cheap enough to run every tick."""
    y = np.asarray(y, dtype=np.float64).reshape(-1)
    if int(src_sr) == int(dst_sr) or y.size == 0:
        return y
    ratio = float(src_sr) / float(dst_sr)
    new_len = int(round(y.size / ratio))
    if new_len <= 0:
        return np.zeros((0,), dtype=np.float64)
    positions = np.arange(new_len, dtype=np.float64) * ratio
    # np.interp holds the last sample past the end, same as clamping the upper index
    return np.interp(positions, np.arange(y.size, dtype=np.float64), y)


def normalize_frame(x: np.ndarray) -> np.ndarray:
    """Zero mean, unit variance (a flat frame keeps std=1)."""
    x = np.asarray(x, dtype=np.float64)
    std = float(np.std(x))
    if not np.isfinite(std) or std == 0.0:
        std = 1.0
    return (x - float(np.mean(x))) / std


def autocorrelation(x: np.ndarray, method: str = "fft") -> np.ndarray:
    """
    Full (biased) autocorrelation for lags 0..n-1, normalized so lag 0 == 1.

    ``method="fft"`` uses Wiener-Khinchin with zero padding to >= 2n-1 so the
    result is the linear, not circular, correlation; ``method="direct"`` is
    the plain O(n^2) summation. Both return the same values up to float error.
    """
    x = np.asarray(x, dtype=np.float64).reshape(-1)
    n = x.size
    if n == 0:
        return np.zeros((0,), dtype=np.float64)

    if method == "direct":
        ac = np.correlate(x, x, mode="full")[n - 1:]
    else:
        n_fft = 2 ** int(np.ceil(np.log2(2 * n - 1))) if n > 1 else 1
        if hasattr(_FFT_LIB, "next_fast_len"):
            n_fft = _FFT_LIB.next_fast_len(n_fft)
        X = _FFT_LIB.rfft(x, n=n_fft)
        ac = _FFT_LIB.irfft(X * np.conj(X), n=n_fft)[:n]

    norm = float(ac[0])
    if not np.isfinite(norm) or norm == 0.0:
        norm = 1.0
    return ac / norm


def find_autocorr_peaks(ac: np.ndarray, lag_min: int, lag_max: int) -> List[Tuple[int, float]]:
    """
    Local maxima (strictly greater than both neighbours) for lags in
    [lag_min, lag_max), ranked by correlation, highest first.
    """
    n = ac.shape[0]
    lo = max(1, int(lag_min))
    hi = min(int(lag_max), n - 1)
    if hi <= lo:
        return []

    center = ac[lo:hi]
    left = ac[lo - 1:hi - 1]
    right = ac[lo + 1:hi + 1]
    idx = np.nonzero((center > left) & (center > right))[0] + lo
    if idx.size == 0:
        return []
    order = idx[np.argsort(-ac[idx], kind="stable")]
    return [(int(k), float(ac[k])) for k in order]


def parabolic_shift(y_prev: float, y_peak: float, y_next: float) -> float:
    """Sub-sample offset of a parabola through three points; 0 if degenerate."""
    denom = 2.0 * (y_prev - 2.0 * y_peak + y_next)
    if denom == 0.0:
        return 0.0
    shift = (y_prev - y_next) / denom
    return shift if math.isfinite(shift) else 0.0


def clarity_at_frequency(x: np.ndarray, sr: int, frequency: float) -> float:
    """Normalized autocorrelation of ``x`` at the period of ``frequency`` (0..1)."""
    if frequency is None or frequency <= 0.0:
        return 0.0
    ac = autocorrelation(normalize_frame(x))
    lag = float(sr) / float(frequency)
    if ac.size < 2 or lag >= ac.size - 1:
        return 0.0
    value = float(np.interp(lag, np.arange(ac.size, dtype=np.float64), ac))
    return float(np.clip(value, 0.0, 1.0)) if np.isfinite(value) else 0.0


# --------------------------------------------------------------------------------------
# Detector base + implementations
# --------------------------------------------------------------------------------------
class BasePitchDetector:
    """
    Capability interface shared by every strategy:
    ``initialize() / detect(frame) / is_ready / name``.

    ``initialize`` is blocking and drives the DetectorState machine:
    UNLOADED -> LOADING -> READY, or LOADING -> ERROR (retry: ERROR -> LOADING).
    """

    name = "base"

    def __init__(
        self,
        sample_rate: int,
        min_frequency: float = 60.0,
        max_frequency: float = 1200.0,
        silence_threshold: float = 0.005,
        **kwargs: Any,  # absorb unknown config keys safely
    ):
        self.sample_rate = int(sample_rate)
        self.min_frequency = float(min_frequency)
        self.max_frequency = float(max_frequency)
        self.silence_threshold = float(silence_threshold)
        self.state = DetectorState.UNLOADED
        self.last_error: Optional[BaseException] = None
        self._warned: Dict[str, bool] = {}
        self.kwargs = kwargs

    @property
    def is_ready(self) -> bool:
        return self.state == DetectorState.READY

    def _warn_once(self, key: str, msg: str) -> None:
        if not self._warned.get(key, False):
            warnings.warn(msg)
            self._warned[key] = True

    def initialize(self) -> None:
        if self.state == DetectorState.READY:
            return
        self.state = DetectorState.LOADING
        try:
            self._load()
        except Exception as exc:
            self.state = DetectorState.ERROR
            self.last_error = exc
            logger.warning(f"Detector {self.name} failed to load: {exc}")
            raise DetectorLoadError(self.name, exc) from exc
        self.last_error = None
        self.state = DetectorState.READY

    def _load(self) -> None:
        """Acquire models / libraries. Nothing to do by default."""

    def detect(self, frame: AudioFrame) -> PitchEstimate:
        if not self.is_ready:
            raise DetectorNotReadyError(f"Detector {self.name} is {self.state.value}; call initialize() first")
        samples = np.asarray(frame.samples, dtype=np.float64).reshape(-1)
        if samples.size == 0 or frame_rms(samples) < self.silence_threshold:
            return NO_PITCH
        return self._detect(samples, int(frame.sample_rate))

    def _detect(self, samples: np.ndarray, sr: int) -> PitchEstimate:
        raise NotImplementedError

    def dispose(self) -> None:
        self.state = DetectorState.UNLOADED

    def info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "sample_rate": self.sample_rate,
            "min_frequency": self.min_frequency,
            "max_frequency": self.max_frequency,
            "last_error": str(self.last_error) if self.last_error else None,
        }

    def _validate_frequency(self, frequency: Optional[float]) -> Optional[float]:
        if frequency is None or not math.isfinite(frequency):
            return None
        if frequency < self.min_frequency or frequency > self.max_frequency:
            return None
        return float(frequency)


class SpectralPitchDetector(BasePitchDetector):
    """
    Autocorrelation estimator working on a fixed 16 kHz / 1024-sample window.
    No external model, so loading cannot fail.
    """

    name = "spectral"

    def __init__(
        self,
        sample_rate: int,
        working_sample_rate: int = 16000,
        window_size: int = 1024,
        acceptance_threshold: float = 0.3,
        autocorr_method: str = "fft",
        **kwargs: Any,
    ):
        super().__init__(sample_rate, **kwargs)
        self.working_sample_rate = int(working_sample_rate)
        self.window_size = int(window_size)
        self.acceptance_threshold = float(acceptance_threshold)
        self.autocorr_method = str(autocorr_method)

    def min_frame_length(self, sample_rate: Optional[int] = None) -> int:
        """Capture-rate samples needed to fill one working window."""
        sr = int(sample_rate or self.sample_rate)
        return int(math.ceil(self.window_size * sr / float(self.working_sample_rate)))

    def _detect(self, samples: np.ndarray, sr: int) -> PitchEstimate:
        resampled = resample_linear(samples, sr, self.working_sample_rate)
        if resampled.size < self.window_size:
            self._warn_once(
                "short_frame",
                f"Spectral detector needs {self.min_frame_length(sr)} samples at {sr} Hz, got {samples.size}.",
            )
            return NO_PITCH

        window = normalize_frame(resampled[-self.window_size:])
        ac = autocorrelation(window, method=self.autocorr_method)

        wsr = self.working_sample_rate
        lag_min = int(math.floor(wsr / self.max_frequency))
        lag_max = int(math.ceil(wsr / self.min_frequency))

        best = None
        for lag, corr in find_autocorr_peaks(ac, lag_min, lag_max):
            if corr > self.acceptance_threshold:
                best = (lag, corr)
                break
        if best is None:
            return NO_PITCH

        lag, corr = best
        shift = parabolic_shift(float(ac[lag - 1]), float(ac[lag]), float(ac[lag + 1]))
        refined = lag + shift
        if refined <= 0.0:
            return NO_PITCH

        # Peaks come from the lag window, so the refined value may sit up to one
        # lag step past fmin/fmax; it is reported as is.
        frequency = wsr / refined
        if not math.isfinite(frequency):
            return NO_PITCH
        return PitchEstimate(float(frequency), float(np.clip(corr, 0.0, 1.0)))

    def info(self) -> Dict[str, Any]:
        d = super().info()
        d.update({
            "working_sample_rate": self.working_sample_rate,
            "window_size": self.window_size,
            "acceptance_threshold": self.acceptance_threshold,
            "autocorr_method": self.autocorr_method,
        })
        return d


class PrimaryPitchDetector(BasePitchDetector):
    """
    Third-party monophonic estimator: ``librosa.yin`` on the single frame.

    YIN always reports a period, so voicing is decided from the normalized
    autocorrelation at that period. ``loader`` replaces the librosa import
    (returns a module-like object exposing ``yin``).
    """

    name = "yin"

    def __init__(
        self,
        sample_rate: int,
        frame_length: int = 4096,
        trough_threshold: float = 0.1,
        min_clarity: float = 0.3,
        loader: Optional[Callable[[], Any]] = None,
        **kwargs: Any,
    ):
        super().__init__(sample_rate, **kwargs)
        self.frame_length = int(frame_length)
        self.trough_threshold = float(trough_threshold)
        self.min_clarity = float(min_clarity)
        self.loader = loader
        self._librosa: Any = None

    def _load(self) -> None:
        lib = self.loader() if self.loader is not None else importlib.import_module("librosa")
        self._librosa = lib
        # Warm-up also validates fmin/fmax/frame length against YIN's constraints
        t = np.arange(self.frame_length, dtype=np.float64) / float(self.sample_rate)
        probe_hz = math.sqrt(self.min_frequency * self.max_frequency)
        probe = 0.1 * np.sin(2.0 * np.pi * probe_hz * t)
        self._yin(probe, self.sample_rate)

    def _yin(self, samples: np.ndarray, sr: int) -> float:
        f0 = self._librosa.yin(
            np.asarray(samples, dtype=np.float32),
            fmin=float(self.min_frequency),
            fmax=float(self.max_frequency),
            sr=int(sr),
            frame_length=int(samples.shape[0]),
            center=False,
            trough_threshold=float(self.trough_threshold),
        )
        f0 = np.asarray(f0, dtype=np.float64).reshape(-1)
        return float(f0[-1]) if f0.size else float("nan")

    def _detect(self, samples: np.ndarray, sr: int) -> PitchEstimate:
        param_error = getattr(self._librosa, "ParameterError", ValueError)
        try:
            raw = self._yin(samples, sr)
        except param_error as exc:
            self._warn_once("yin_params", f"YIN rejected frame of {samples.size} samples: {exc}")
            return NO_PITCH

        frequency = self._validate_frequency(raw)
        if frequency is None:
            return NO_PITCH

        clarity = clarity_at_frequency(samples, sr, frequency)
        if clarity < self.min_clarity:
            return NO_PITCH
        return PitchEstimate(frequency, clarity)

    def dispose(self) -> None:
        self._librosa = None
        super().dispose()

    def info(self) -> Dict[str, Any]:
        d = super().info()
        d.update({"frame_length": self.frame_length, "trough_threshold": self.trough_threshold})
        return d


def create_detector(
    strategy: DetectorStrategy,
    config: EngineConfig,
    sample_rate: int,
    primary_loader: Optional[Callable[[], Any]] = None,
) -> BasePitchDetector:
    common = {
        "min_frequency": config.min_frequency,
        "max_frequency": config.max_frequency,
        "silence_threshold": config.silence_threshold_rms,
    }
    if strategy == DetectorStrategy.SPECTRAL:
        sc = config.spectral
        return SpectralPitchDetector(
            sample_rate,
            working_sample_rate=sc.working_sample_rate,
            window_size=sc.window_size,
            acceptance_threshold=sc.acceptance_threshold,
            autocorr_method=sc.autocorr_method,
            **common,
        )
    if strategy == DetectorStrategy.PRIMARY:
        pc = config.primary
        return PrimaryPitchDetector(
            sample_rate,
            frame_length=config.buffer_size,
            trough_threshold=pc.trough_threshold,
            min_clarity=pc.min_clarity,
            loader=primary_loader,
            **common,
        )
    raise ValueError(f"Unknown detector strategy: {strategy!r}")

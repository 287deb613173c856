"""Synthetic test signals with known ground truth.

Every generator returns a :class:`TestSignal` whose ground truth is sampled
on a 10 ms grid (``gt_times`` / ``gt_freqs``). A ground-truth frequency of
``0.0`` means unvoiced, matching the convention in :mod:`.metrics`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

GT_INTERVAL_SEC = 0.01

SCALES = {
    "major": [0, 2, 4, 5, 7, 9, 11, 12],
    "minor": [0, 2, 3, 5, 7, 8, 10, 12],
    "chromatic": list(range(13)),
    "pentatonic": [0, 2, 4, 7, 9, 12],
    "blues": [0, 3, 5, 6, 7, 10, 12],
}


@dataclass
class TestSignal:
    __test__ = False  # not a pytest class

    name: str
    kind: str
    audio: np.ndarray
    sr: int
    gt_times: np.ndarray
    gt_freqs: np.ndarray
    snr_db: Optional[float] = None

    @property
    def duration_sec(self) -> float:
        return float(self.audio.shape[0]) / float(self.sr)


def _grid(duration_sec: float) -> np.ndarray:
    return np.arange(0.0, duration_sec, GT_INTERVAL_SEC)


def sine(freq_hz: float, duration_sec: float, sr: int = 44100, amplitude: float = 0.8) -> TestSignal:
    """Pure sine at a constant frequency."""
    t = np.arange(int(sr * duration_sec)) / float(sr)
    audio = (amplitude * np.sin(2 * np.pi * freq_hz * t)).astype(np.float32)
    times = _grid(duration_sec)
    return TestSignal(f"sine_{round(freq_hz)}Hz", "sine", audio, sr, times, np.full(times.shape, float(freq_hz)))


def with_harmonics(
    fundamental_hz: float,
    duration_sec: float,
    harmonic_amplitudes: Sequence[float] = (1.0, 0.5, 0.25, 0.125),
    sr: int = 44100,
    amplitude: float = 0.8,
) -> TestSignal:
    """Voice-like tone: fundamental plus weighted harmonics, peak-normalized by weight sum."""
    weights = np.asarray(harmonic_amplitudes, dtype=np.float64)
    weights = weights / float(np.sum(weights))
    t = np.arange(int(sr * duration_sec)) / float(sr)
    audio = np.zeros_like(t)
    for h, w in enumerate(weights, start=1):
        audio += w * np.sin(2 * np.pi * fundamental_hz * h * t)
    times = _grid(duration_sec)
    return TestSignal(
        f"voice_{round(fundamental_hz)}Hz",
        "voice",
        (amplitude * audio).astype(np.float32),
        sr,
        times,
        np.full(times.shape, float(fundamental_hz)),
    )


def scale(
    scale_name: str,
    root_hz: float,
    note_duration_sec: float = 0.5,
    sr: int = 44100,
    amplitude: float = 0.8,
) -> TestSignal:
    """
    Discrete notes of a scale with 10 ms linear attack/release ramps.
    Ground truth skips the first and last 20 ms of each note.
    """
    intervals = SCALES.get(scale_name, SCALES["major"])
    n_notes = len(intervals)
    audio = np.zeros(int(sr * n_notes * note_duration_sec), dtype=np.float64)
    ramp = int(0.01 * sr)
    gt_t: List[float] = []
    gt_f: List[float] = []

    for idx, semitones in enumerate(intervals):
        freq = root_hz * 2.0 ** (semitones / 12.0)
        start = int(idx * note_duration_sec * sr)
        end = min(int((idx + 1) * note_duration_sec * sr), audio.shape[0])
        n = end - start
        t = np.arange(start, end) / float(sr)
        env = np.ones(n)
        if ramp > 0 and n > 2 * ramp:
            env[:ramp] = np.arange(ramp) / ramp
            env[n - ramp:] = np.arange(ramp, 0, -1) / ramp
        audio[start:end] = amplitude * env * np.sin(2 * np.pi * freq * t)

        note_start = idx * note_duration_sec
        for tt in np.arange(note_start + 0.02, note_start + note_duration_sec - 0.02, GT_INTERVAL_SEC):
            gt_t.append(float(tt))
            gt_f.append(float(freq))

    return TestSignal(
        f"scale_{scale_name}_{round(root_hz)}Hz",
        "scale",
        audio.astype(np.float32),
        sr,
        np.asarray(gt_t),
        np.asarray(gt_f),
    )


def sweep(
    start_hz: float,
    end_hz: float,
    duration_sec: float,
    logarithmic: bool = True,
    sr: int = 44100,
    amplitude: float = 0.8,
) -> TestSignal:
    """Glissando with phase accumulation (no discontinuities)."""

    def _freq_at(progress: np.ndarray) -> np.ndarray:
        if logarithmic:
            return start_hz * (end_hz / start_hz) ** progress
        return start_hz + (end_hz - start_hz) * progress

    n = int(sr * duration_sec)
    inst = _freq_at(np.arange(n) / float(sr) / duration_sec)
    phase = np.cumsum(2 * np.pi * inst / float(sr))
    times = _grid(duration_sec)
    return TestSignal(
        f"sweep_{round(start_hz)}_{round(end_hz)}Hz",
        "sweep",
        (amplitude * np.sin(phase)).astype(np.float32),
        sr,
        times,
        _freq_at(times / duration_sec),
    )


def vibrato_tone(
    center_hz: float,
    duration_sec: float,
    rate_hz: float = 5.5,
    extent_cents: float = 50.0,
    sr: int = 44100,
    amplitude: float = 0.8,
) -> TestSignal:
    """Sine whose pitch oscillates +/- ``extent_cents`` around ``center_hz``."""

    def _freq_at(t: np.ndarray) -> np.ndarray:
        return center_hz * 2.0 ** (extent_cents * np.sin(2 * np.pi * rate_hz * t) / 1200.0)

    t = np.arange(int(sr * duration_sec)) / float(sr)
    phase = np.cumsum(2 * np.pi * _freq_at(t) / float(sr))
    times = _grid(duration_sec)
    return TestSignal(
        f"vibrato_{round(center_hz)}Hz_{rate_hz:g}Hz",
        "vibrato",
        (amplitude * np.sin(phase)).astype(np.float32),
        sr,
        times,
        _freq_at(times),
    )


def add_noise(audio: np.ndarray, snr_db: float, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Add white Gaussian noise at the given signal-to-noise ratio (dB)."""
    rng = rng or np.random.default_rng()
    x = np.asarray(audio, dtype=np.float64)
    signal_power = float(np.mean(x * x)) if x.size else 0.0
    noise_power = signal_power / (10.0 ** (snr_db / 10.0))
    noisy = x + np.sqrt(noise_power) * rng.standard_normal(x.shape)
    return noisy.astype(np.float32)


def build_test_suite(sr: int = 44100, seed: int = 0, quick: bool = False) -> List[TestSignal]:
    """
    Standard evaluation set: sines, voice-like tones, scales, sweeps,
    vibrato and noisy variants of a 440 Hz voice-like tone.
    """
    rng = np.random.default_rng(seed)
    tests: List[TestSignal] = []

    sine_freqs = [220.0, 440.0] if quick else [220.0, 330.0, 440.0, 523.25, 659.25]
    tests.extend(sine(f, 1.0, sr) for f in sine_freqs)

    voice_freqs = [220.0] if quick else [220.0, 330.0, 440.0]
    tests.extend(with_harmonics(f, 1.0, (1.0, 0.6, 0.3, 0.15, 0.08), sr) for f in voice_freqs)

    for name in (["major"] if quick else ["major", "minor", "chromatic"]):
        tests.append(scale(name, 261.63, 0.4, sr))

    if not quick:
        tests.append(sweep(220.0, 440.0, 2.0, sr=sr))
        tests.append(sweep(330.0, 660.0, 2.0, sr=sr))
        tests.append(vibrato_tone(330.0, 1.5, sr=sr))

    reference = with_harmonics(440.0, 1.0, sr=sr)
    for snr in ([20.0] if quick else [30.0, 20.0, 10.0]):
        tests.append(
            TestSignal(
                f"noisy_440Hz_{snr:g}dB",
                "noisy",
                add_noise(reference.audio, snr, rng),
                sr,
                reference.gt_times,
                reference.gt_freqs,
                snr_db=snr,
            )
        )
    return tests


# ------------------------------------------------------------------
# Framing
# ------------------------------------------------------------------
def iter_frames(audio: np.ndarray, sr: int, frame_size: int = 4096, hop_size: int = 1024) -> Iterator[Tuple[float, np.ndarray]]:
    """Yield ``(start_time_sec, frame)`` for every full frame."""
    n = int(audio.shape[0])
    for start in range(0, n - frame_size + 1, hop_size):
        yield start / float(sr), audio[start:start + frame_size]


def align_ground_truth(gt_times: np.ndarray, gt_freqs: np.ndarray, times: np.ndarray) -> np.ndarray:
    """Nearest ground-truth frequency for each query time (0.0 if no ground truth)."""
    times = np.asarray(times, dtype=np.float64)
    gt_times = np.asarray(gt_times, dtype=np.float64)
    gt_freqs = np.asarray(gt_freqs, dtype=np.float64)
    if gt_times.size == 0:
        return np.zeros(times.shape, dtype=np.float64)
    if gt_times.size == 1:
        return np.full(times.shape, gt_freqs[0])
    right = np.clip(np.searchsorted(gt_times, times), 1, gt_times.size - 1)
    left = right - 1
    nearest = np.where(np.abs(times - gt_times[left]) <= np.abs(gt_times[right] - times), left, right)
    return gt_freqs[nearest]


def frames_with_truth(
    signal: TestSignal, frame_size: int = 4096, hop_size: int = 1024
) -> List[Tuple[float, np.ndarray, float]]:
    """``(time, frame, expected_hz)`` triples for a test signal."""
    out = list(iter_frames(signal.audio, signal.sr, frame_size, hop_size))
    times = np.array([t for t, _ in out])
    expected = align_ground_truth(signal.gt_times, signal.gt_freqs, times)
    return [(t, frame, float(e)) for (t, frame), e in zip(out, expected)]

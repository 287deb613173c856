"""
Note segmentation for recordings without ground truth.

Onsets come from a combined detection function (normalized RMS energy and
half-wave rectified spectral flux) peak-picked against an adaptive local
mean. Each onset runs until the next one or until the energy stays under
the silence floor long enough; segments shorter than ``min_note_duration``
are dropped.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Sequence

import librosa
import numpy as np

logger = logging.getLogger(__name__)

ENERGY_WEIGHT = 0.4
FLUX_WEIGHT = 0.6


@dataclass
class NoteSegment:
    start_time: float
    end_time: float
    start_sample: int
    end_sample: int
    start_frame: int
    end_frame: int
    strength: float = 0.0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["duration"] = self.duration
        return d


@dataclass
class _Onset:
    frame: int
    time: float
    strength: float


class OnsetDetector:
    def __init__(
        self,
        sample_rate: int = 44100,
        hop_size: int = 512,
        frame_size: int = 2048,
        energy_threshold: float = 0.01,
        onset_threshold: float = 1.5,
        min_note_duration: float = 0.1,
        min_silence_duration: float = 0.05,
    ):
        self.sample_rate = int(sample_rate)
        self.hop_size = int(hop_size)
        self.frame_size = int(frame_size)
        self.energy_threshold = float(energy_threshold)
        self.onset_threshold = float(onset_threshold)
        self.min_note_duration = float(min_note_duration)
        self.min_silence_duration = float(min_silence_duration)

    # ------------------------------------------------------------------
    # Detection functions
    # ------------------------------------------------------------------
    def energy_envelope(self, audio: np.ndarray) -> np.ndarray:
        return librosa.feature.rms(
            y=audio, frame_length=self.frame_size, hop_length=self.hop_size, center=False
        )[0]

    def spectral_flux(self, audio: np.ndarray) -> np.ndarray:
        mag = np.abs(librosa.stft(audio, n_fft=self.frame_size, hop_length=self.hop_size, center=False))
        return librosa.onset.onset_strength(
            S=mag, sr=self.sample_rate, lag=1, max_size=1, aggregate=np.sum, center=False
        )

    @staticmethod
    def combine(energy: np.ndarray, flux: np.ndarray) -> np.ndarray:
        n = min(energy.shape[0], flux.shape[0])
        energy, flux = energy[:n], flux[:n]
        e_max = float(np.max(energy)) if n else 0.0
        f_max = float(np.max(flux)) if n else 0.0
        return ENERGY_WEIGHT * energy / (e_max or 1.0) + FLUX_WEIGHT * flux / (f_max or 1.0)

    # ------------------------------------------------------------------
    # Segmentation
    # ------------------------------------------------------------------
    def detect_notes(self, audio: np.ndarray) -> List[NoteSegment]:
        """Segments ordered by start time and never overlapping."""
        audio = np.asarray(audio, dtype=np.float32).reshape(-1)
        # Peak picking needs a frame on each side
        if audio.shape[0] < self.frame_size + 2 * self.hop_size:
            return []

        energy = self.energy_envelope(audio)
        onset_fn = self.combine(energy, self.spectral_flux(audio))
        energy = energy[:onset_fn.shape[0]]

        onsets = self._merge_close(self._find_onsets(onset_fn))
        notes = [
            n for n in self._note_regions(onsets, energy)
            if n.duration >= self.min_note_duration
        ]
        logger.debug(f"Onset detection: {len(onsets)} onsets, {len(notes)} notes")
        return notes

    def _find_onsets(self, onset_fn: np.ndarray) -> List[_Onset]:
        n = onset_fn.shape[0]
        if n < 3:
            return []
        # Local mean over +-100 ms, window [i - w, i + w)
        w = max(1, int(0.1 * self.sample_rate / self.hop_size))
        csum = np.concatenate(([0.0], np.cumsum(onset_fn, dtype=np.float64)))
        idx = np.arange(n)
        lo = np.maximum(0, idx - w)
        hi = np.minimum(n, idx + w)
        local_mean = (csum[hi] - csum[lo]) / (hi - lo)
        threshold = np.maximum(self.energy_threshold, local_mean * self.onset_threshold)

        center = onset_fn[1:-1]
        is_peak = (center > threshold[1:-1]) & (center > onset_fn[:-2]) & (center > onset_fn[2:])
        return [
            _Onset(int(i), i * self.hop_size / float(self.sample_rate), float(onset_fn[i]))
            for i in np.nonzero(is_peak)[0] + 1
        ]

    def _merge_close(self, onsets: List[_Onset]) -> List[_Onset]:
        """Onsets closer than ``min_silence_duration`` collapse onto the stronger one."""
        merged: List[_Onset] = []
        for onset in onsets:
            if merged and onset.time - merged[-1].time < self.min_silence_duration:
                if onset.strength > merged[-1].strength:
                    merged[-1] = onset
            else:
                merged.append(onset)
        return merged

    def _note_regions(self, onsets: List[_Onset], energy: np.ndarray) -> List[NoteSegment]:
        silence_floor = 0.5 * self.energy_threshold
        min_silence_frames = max(1, int(self.min_silence_duration * self.sample_rate / self.hop_size))
        notes: List[NoteSegment] = []
        for k, onset in enumerate(onsets):
            end_frame = onsets[k + 1].frame - 1 if k + 1 < len(onsets) else energy.shape[0] - 1
            quiet = 0
            for j in range(onset.frame + 1, end_frame + 1):
                if energy[j] < silence_floor:
                    quiet += 1
                    if quiet >= min_silence_frames:
                        end_frame = j - min_silence_frames
                        break
                else:
                    quiet = 0
            notes.append(
                NoteSegment(
                    start_time=onset.time,
                    end_time=end_frame * self.hop_size / float(self.sample_rate),
                    start_sample=onset.frame * self.hop_size,
                    end_sample=end_frame * self.hop_size,
                    start_frame=onset.frame,
                    end_frame=end_frame,
                    strength=onset.strength,
                )
            )
        return notes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def extract(audio: np.ndarray, note: NoteSegment) -> np.ndarray:
        start = max(0, note.start_sample)
        end = min(audio.shape[0], note.end_sample)
        return audio[start:end]

    @staticmethod
    def validate(notes: Sequence[NoteSegment], expected_count: int) -> Dict[str, Any]:
        return {
            "detected_count": len(notes),
            "expected_count": int(expected_count),
            "is_correct": len(notes) == int(expected_count),
            "difference": len(notes) - int(expected_count),
        }

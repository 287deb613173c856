# pitchengine/engine/models.py
"""Dataclasses and enums shared by the engine components.

Everything handed between components inside a tick is immutable; the only
mutable state lives on the long-lived component instances (gain, pitch
history, smoothing, correction buffer).
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional
from enum import Enum

import numpy as np


class DetectorState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class DetectorStrategy(str, Enum):
    """Closed set of pitch-estimation strategies the orchestrator can run."""
    PRIMARY = "primary"
    SPECTRAL = "spectral"


@dataclass(frozen=True)
class AudioFrame:
    samples: np.ndarray                     # float32, normalized [-1, 1]
    sample_rate: int
    timestamp_ms: Optional[float] = None    # stamped by the frame source when known

    def __len__(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration_ms(self) -> float:
        return 1000.0 * len(self) / float(self.sample_rate)


@dataclass(frozen=True)
class FrequencyTransform:
    magnitudes_db: np.ndarray               # one value per bin, dB
    sample_rate: int
    fft_size: int

    @property
    def bin_width(self) -> float:
        return float(self.sample_rate) / float(self.fft_size)

    @property
    def n_bins(self) -> int:
        return int(self.magnitudes_db.shape[0])


@dataclass
class GainState:
    current_gain: float = 3.5
    target_rms: float = 0.12
    min_gain: float = 1.0
    max_gain: float = 12.0
    adapt_speed: float = 0.15


@dataclass(frozen=True)
class PitchEstimate:
    frequency: Optional[float] = None       # None if unvoiced / no detection
    confidence: float = 0.0                 # 0–1

    @property
    def voiced(self) -> bool:
        return self.frequency is not None


NO_PITCH = PitchEstimate(None, 0.0)


@dataclass(frozen=True)
class HistoryEntry:
    frequency: float
    timestamp_ms: float


@dataclass(frozen=True)
class VibratoResult:
    detected: bool = False
    rate_hz: float = 0.0
    extent_cents: float = 0.0


@dataclass(frozen=True)
class VocalQualityMetrics:
    vibrato: VibratoResult = field(default_factory=VibratoResult)
    stability: float = 1.0                  # 1 = perfectly stable
    spectral_centroid: float = 0.5          # normalized brightness
    hnr: float = 1.0                        # 1 = clean, 0 = breathy

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PitchSample:
    frequency: float
    confidence: float
    note_name: str
    midi_note: int
    cents_off: float
    timestamp_ms: float
    rms: float
    vocal_analysis: VocalQualityMetrics
    detector_name: str
    harmonic_correction: float = 0.0        # semitones corrected this tick

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable representation for consumers / debugging."""
        return {
            "frequency": self.frequency,
            "confidence": self.confidence,
            "note_name": self.note_name,
            "midi_note": self.midi_note,
            "cents_off": self.cents_off,
            "timestamp_ms": self.timestamp_ms,
            "rms": self.rms,
            "vocal_analysis": self.vocal_analysis.to_dict(),
            "detector_name": self.detector_name,
            "harmonic_correction": self.harmonic_correction,
        }

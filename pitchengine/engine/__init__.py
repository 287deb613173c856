"""Pitch engine package.

Re-exports the public surface: configuration, data model, the individual
components and the orchestrator that drives them per tick.
"""

from __future__ import annotations

from .capture import ArrayFrameSource, FileFrameSource, FrameSource, compute_transform
from .conditioning import FrameConditioner
from .config import EngineConfig, VOICE_PROFILES
from .detectors import (
    BasePitchDetector,
    PrimaryPitchDetector,
    SpectralPitchDetector,
    create_detector,
)
from .errors import (
    CaptureError,
    ConfigError,
    DetectorLoadError,
    DetectorNotReadyError,
    PitchEngineError,
)
from .gain import GainController
from .harmonic import HarmonicCorrector
from .instrumentation import EngineLogger
from .models import (
    AudioFrame,
    DetectorState,
    DetectorStrategy,
    FrequencyTransform,
    PitchEstimate,
    PitchSample,
    VibratoResult,
    VocalQualityMetrics,
)
from .orchestrator import DetectorOrchestrator
from .vocal_quality import VocalQualityAnalyzer

__all__ = [
    "ArrayFrameSource",
    "AudioFrame",
    "BasePitchDetector",
    "CaptureError",
    "ConfigError",
    "DetectorLoadError",
    "DetectorNotReadyError",
    "DetectorOrchestrator",
    "DetectorState",
    "DetectorStrategy",
    "EngineConfig",
    "EngineLogger",
    "FileFrameSource",
    "FrameConditioner",
    "FrameSource",
    "FrequencyTransform",
    "GainController",
    "HarmonicCorrector",
    "PitchEngineError",
    "PitchEstimate",
    "PitchSample",
    "PrimaryPitchDetector",
    "SpectralPitchDetector",
    "VOICE_PROFILES",
    "VibratoResult",
    "VocalQualityAnalyzer",
    "VocalQualityMetrics",
    "compute_transform",
    "create_detector",
]

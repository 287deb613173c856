# pitchengine/engine/errors.py
from __future__ import annotations


class PitchEngineError(Exception):
    """Base class for all engine errors."""


class ConfigError(PitchEngineError, ValueError):
    pass


class CaptureError(PitchEngineError):
    """No input device, permission denied, unreadable file. Fatal, never retried."""


class DetectorLoadError(PitchEngineError):
    """A pluggable estimator failed to load; recoverable through fallback."""

    def __init__(self, detector_name: str, cause: BaseException):
        super().__init__(f"{detector_name} failed to load: {cause}")
        self.detector_name = detector_name
        self.cause = cause


class DetectorNotReadyError(PitchEngineError):
    pass

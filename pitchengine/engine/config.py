from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict

from .errors import ConfigError
from .models import DetectorStrategy
from .utils_config import apply_dotted_overrides


# ------------------------------------------------------------
# Gain (AGC)
# ------------------------------------------------------------

@dataclass
class GainConfig:
    target_rms: float = 0.12        # level AGC steers toward
    min_gain: float = 1.0           # never attenuate
    max_gain: float = 12.0
    adapt_speed: float = 0.15       # 0-1 blend per tick, higher = faster
    initial_gain: float = 3.5
    silence_epsilon: float = 0.001  # below this RMS the gain is frozen


# ------------------------------------------------------------
# Spectral (autocorrelation) estimator
# ------------------------------------------------------------

@dataclass
class SpectralConfig:
    working_sample_rate: int = 16000
    window_size: int = 1024
    acceptance_threshold: float = 0.3
    # "fft" (Wiener-Khinchin) or "direct" (O(n^2) summation); identical output
    autocorr_method: str = "fft"


# ------------------------------------------------------------
# Primary (third-party) estimator
# ------------------------------------------------------------

@dataclass
class PrimaryConfig:
    # librosa.yin trough threshold
    trough_threshold: float = 0.1
    # minimum normalized ACF at the YIN period to accept a frame as voiced
    min_clarity: float = 0.3


# ------------------------------------------------------------
# Vocal quality analysis
# ------------------------------------------------------------

@dataclass
class VocalAnalysisConfig:
    max_history: int = 30                   # ~1 s at 30 ms ticks
    vibrato_window: int = 15                # ~450 ms at 30 ms ticks
    vibrato_min_rate: float = 4.0           # Hz
    vibrato_max_rate: float = 8.0           # Hz
    vibrato_min_extent: float = 15.0        # cents peak-to-peak
    stability_window: int = 10

    centroid_min_hz: float = 100.0
    centroid_max_hz: float = 5000.0
    centroid_floor_db: float = 40.0
    centroid_ref_range: List[float] = field(default_factory=lambda: [400.0, 2500.0])
    centroid_smoothing: float = 0.3

    hnr_max_hz: float = 5000.0
    hnr_max_multiple: float = 10.0          # analyse up to 10x fundamental
    hnr_floor_db: float = 50.0
    hnr_harmonics: int = 8
    hnr_bin_tolerance: int = 2
    hnr_smoothing: float = 0.4


# ------------------------------------------------------------
# Harmonic / octave error correction
# ------------------------------------------------------------

@dataclass
class HarmonicConfig:
    enabled: bool = True
    buffer_size: int = 8
    min_samples: int = 4
    # (lo, hi, correction) in semitones; octave jumps (12/24) are never corrected
    rules: List[List[float]] = field(
        default_factory=lambda: [
            [27.0, 29.0, 28.0],     # 5th harmonic: 2 octaves + major third
            [18.0, 20.0, 19.0],     # 3rd harmonic: octave + fifth
        ]
    )


# ------------------------------------------------------------
# Frame conditioning (drone notches, rumble filter)
# ------------------------------------------------------------

@dataclass
class ConditioningConfig:
    high_pass: Dict[str, Any] = field(
        default_factory=lambda: {"enabled": False, "cutoff_hz": 180.0, "order": 2}
    )
    drone_notch_q: float = 15.0
    drone_ratios: List[float] = field(default_factory=lambda: [1.0, 1.5, 2.0, 4.0])


# ------------------------------------------------------------
# Voice profiles (frequency search ranges)
# ------------------------------------------------------------

@dataclass
class VoiceProfile:
    voice: str
    min_frequency: float
    max_frequency: float
    recommended_strategy: str = "primary"


VOICE_PROFILES: Dict[str, VoiceProfile] = {
    p.voice: p
    for p in [
        VoiceProfile("bass", 60.0, 400.0),
        VoiceProfile("baritone", 80.0, 500.0),
        VoiceProfile("tenor", 100.0, 650.0),
        VoiceProfile("alto", 150.0, 900.0),
        VoiceProfile("soprano", 230.0, 1200.0),
    ]
}


# ------------------------------------------------------------
# Engine Config
# ------------------------------------------------------------

_GAIN_ALIASES = {
    "target_rms": "gain.target_rms",
    "min_gain": "gain.min_gain",
    "max_gain": "gain.max_gain",
    "agc_adapt_speed": "gain.adapt_speed",
}


@dataclass
class EngineConfig:
    # frame length in samples; the spectral estimator needs >= 1024 samples
    # after resampling to 16 kHz, i.e. >= 3072 at 48 kHz
    buffer_size: int = 4096
    min_frequency: float = 60.0
    max_frequency: float = 1200.0
    silence_threshold_rms: float = 0.005
    update_interval_ms: float = 50.0
    detector_strategy: DetectorStrategy = DetectorStrategy.PRIMARY
    fallback_enabled: bool = True
    silence_reset_ms: float = 500.0

    gain: GainConfig = field(default_factory=GainConfig)
    primary: PrimaryConfig = field(default_factory=PrimaryConfig)
    spectral: SpectralConfig = field(default_factory=SpectralConfig)
    vocal: VocalAnalysisConfig = field(default_factory=VocalAnalysisConfig)
    harmonic: HarmonicConfig = field(default_factory=HarmonicConfig)
    conditioning: ConditioningConfig = field(default_factory=ConditioningConfig)

    def __post_init__(self):
        if not isinstance(self.detector_strategy, DetectorStrategy):
            try:
                self.detector_strategy = DetectorStrategy(str(self.detector_strategy).lower())
            except ValueError as exc:
                raise ConfigError(f"Unknown detector strategy: {self.detector_strategy!r}") from exc

    @property
    def fft_size(self) -> int:
        return int(self.buffer_size) * 2

    def validate(self) -> "EngineConfig":
        if self.buffer_size <= 0:
            raise ConfigError(f"buffer_size must be positive, got {self.buffer_size}")
        if not (0.0 < self.min_frequency < self.max_frequency):
            raise ConfigError(
                f"Need 0 < min_frequency < max_frequency, got {self.min_frequency}..{self.max_frequency}"
            )
        g = self.gain
        if not (0.0 < g.min_gain <= g.max_gain):
            raise ConfigError(f"Need 0 < min_gain <= max_gain, got {g.min_gain}..{g.max_gain}")
        if not (0.0 <= g.adapt_speed <= 1.0):
            raise ConfigError(f"agc adapt_speed must be in [0, 1], got {g.adapt_speed}")
        if self.update_interval_ms <= 0:
            raise ConfigError("update_interval_ms must be positive")
        if self.spectral.autocorr_method not in ("fft", "direct"):
            raise ConfigError(f"Unknown autocorr_method: {self.spectral.autocorr_method}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["detector_strategy"] = self.detector_strategy.value
        return d

    @classmethod
    def from_dict(cls, options: Optional[Dict[str, Any]] = None) -> "EngineConfig":
        """
        Build a config from flat option names (``buffer_size``,
        ``target_rms`` and the other gain aliases) and/or dotted
        paths into the nested sections.
        """
        cfg = cls()
        flat: Dict[str, Any] = {}
        for key, value in (options or {}).items():
            if isinstance(value, dict) and key in ("gain", "primary", "spectral", "vocal", "harmonic", "conditioning"):
                for sub_key, sub_value in value.items():
                    flat[f"{key}.{sub_key}"] = sub_value
            else:
                flat[_GAIN_ALIASES.get(key, key)] = value
        apply_dotted_overrides(cfg, flat)
        return cfg.validate()

    @classmethod
    def for_voice(cls, voice: str, **overrides: Any) -> "EngineConfig":
        profile = VOICE_PROFILES.get(voice)
        if profile is None:
            raise ConfigError(f"Unknown voice profile: {voice!r} (known: {sorted(VOICE_PROFILES)})")
        opts: Dict[str, Any] = {
            "min_frequency": profile.min_frequency,
            "max_frequency": profile.max_frequency,
            "detector_strategy": profile.recommended_strategy,
        }
        opts.update(overrides)
        return cls.from_dict(opts)

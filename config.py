# penclick Configuration
# All default values and constants

from dataclasses import dataclass, field, is_dataclass
from enum import Enum

from logging_utils import log_event
from pens import PEN_DATA


CURRENT_CONFIG_VERSION = 1

SENSITIVITY_MIN = 0.05
SENSITIVITY_MAX = 0.4
DEFAULT_SENSITIVITY = 0.15


class DetectionMode(str, Enum):
    """Click detection strategy selected for a listening session"""
    SIMPLE = "simple"        # Volume spike over smoothed baseline
    ADVANCED = "advanced"    # Signature match, voice-rejecting fallback


@dataclass(frozen=True)
class CaptureProfile:
    """Analyser settings used while a session holds the microphone"""
    fft_size: int
    smoothing: float


# Larger transform and lighter smoothing where spectral shape matters
CAPTURE_PROFILES = {
    DetectionMode.SIMPLE: CaptureProfile(fft_size=256, smoothing=0.3),
    DetectionMode.ADVANCED: CaptureProfile(fft_size=512, smoothing=0.1),
}
CALIBRATION_PROFILE = CaptureProfile(fft_size=512, smoothing=0.1)


@dataclass
class DetectionConfig:
    """Click detection parameters"""
    mode: DetectionMode = DetectionMode.SIMPLE
    sensitivity: float = DEFAULT_SENSITIVITY   # Spike threshold (0.05-0.4), higher = less sensitive


@dataclass
class CaptureConfig:
    """Microphone capture settings"""
    # Device index - None means use system default
    device_index: int | None = None
    # None means use the device default rate
    sample_rate: int | None = None
    tick_hz: float = 60.0             # Frame polling rate (display refresh equivalent)
    min_decibels: float = -100.0      # Maps to 0.0 in a frame
    max_decibels: float = -30.0       # Maps to 1.0 in a frame


@dataclass
class PenSettings:
    """Pen in use and the dose being dialled. Never read by detection."""
    medication: str = "wegovy"
    pen_index: int = 0
    target_dose: float = 0.25


@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version for persisted configs
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    pen: PenSettings = field(default_factory=PenSettings)

    # Global
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)
    history_enabled: bool = True      # Append saved doses to the local history log


def clamp_sensitivity(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return DEFAULT_SENSITIVITY
    return max(SENSITIVITY_MIN, min(SENSITIVITY_MAX, value))


def capture_profile_for(mode: DetectionMode) -> CaptureProfile:
    return CAPTURE_PROFILES[DetectionMode(mode)]


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; Enum fields are coerced when possible."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if isinstance(current, Enum):
            try:
                setattr(target, key, current.__class__(value))
            except ValueError:
                log_event("WARNING", "Config", "Could not convert value, keeping default",
                          key=key, value=repr(value), expected=current.__class__.__name__)
            continue

        setattr(target, key, value)


# Flat camelCase keys written by the browser build of the app
_LEGACY_SETTINGS_KEYS = {
    'detectionMode': ('detection', 'mode'),
    'sensitivity': ('detection', 'sensitivity'),
    'medication': ('pen', 'medication'),
    'penIndex': ('pen', 'pen_index'),
    'targetDose': ('pen', 'target_dose'),
}


def migrate_config(config: Config, loaded_version, data: dict | None = None) -> None:
    """Upgrade older config structures to the current schema.
    Maps legacy flat settings, sanitizes values and bumps version."""
    try:
        version = int(loaded_version) if loaded_version is not None else 0
    except (TypeError, ValueError):
        version = 0

    if version < 1 and isinstance(data, dict):
        legacy = {}
        for old_key, (section, name) in _LEGACY_SETTINGS_KEYS.items():
            if old_key in data:
                legacy.setdefault(section, {})[name] = data[old_key]
        apply_dict_to_dataclass(config, legacy)

    if getattr(config.detection, 'mode', None) is None:
        config.detection.mode = DetectionMode.SIMPLE
    if getattr(config, 'history_enabled', True) is None:
        config.history_enabled = True
    if not getattr(config, 'log_level', None):
        config.log_level = "INFO"

    # Unknown pens fall back to the first pen of the default medication
    medication = str(getattr(config.pen, 'medication', '') or '').lower()
    if medication not in PEN_DATA:
        medication = PenSettings.medication
        config.pen.pen_index = 0
    config.pen.medication = medication
    try:
        pen_index = int(config.pen.pen_index)
    except (TypeError, ValueError):
        pen_index = 0
    if not 0 <= pen_index < len(PEN_DATA[medication].pens):
        pen_index = 0
    config.pen.pen_index = pen_index
    try:
        config.pen.target_dose = max(0.0, float(config.pen.target_dose))
    except (TypeError, ValueError):
        config.pen.target_dose = PenSettings.target_dose

    # Always clamp safety range for sensitivity
    config.detection.sensitivity = clamp_sensitivity(config.detection.sensitivity)

    try:
        tick_hz = float(getattr(config.capture, 'tick_hz', 60.0))
    except (TypeError, ValueError):
        tick_hz = 60.0
    config.capture.tick_hz = max(1.0, min(240.0, tick_hz))

    config.version = CURRENT_CONFIG_VERSION


# Default config instance
DEFAULT_CONFIG = Config()

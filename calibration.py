"""
penclick - Calibration recorder
Collects the band profile of each pen click heard during a calibration session.
"""

from dataclasses import dataclass
from typing import Optional

from detectors import SpikeTracker
from frequency_utils import frame_energy, frequency_profile
from logging_utils import log_event
from signature import ClickSignature, build_signature

# Fixed gate, independent of the user's sensitivity setting
CALIBRATION_SPIKE_THRESHOLD = 0.08
CALIBRATION_REFRACTORY_MS = 200
TARGET_CALIBRATION_CLICKS = 5      # Clicks the user is asked for; more are accepted


@dataclass(frozen=True)
class CalibrationSample:
    profile: tuple[float, ...]
    energy: float
    timestamp: int                 # Monotonic ms


class CalibrationRecorder:
    def __init__(self):
        self.tracker = SpikeTracker(refractory_ms=CALIBRATION_REFRACTORY_MS)
        self._samples: list[CalibrationSample] = []

    @property
    def samples(self) -> list[CalibrationSample]:
        return list(self._samples)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def on_frame(self, frame, now_ms: int) -> Optional[CalibrationSample]:
        """Feed one frame. Returns the new sample when a click is accepted."""
        energy = frame_energy(frame)
        spike = self.tracker.spike(energy)

        sample = None
        if spike > CALIBRATION_SPIKE_THRESHOLD and self.tracker.refractory_elapsed(now_ms):
            sample = CalibrationSample(
                profile=tuple(float(v) for v in frequency_profile(frame)),
                energy=energy,
                timestamp=now_ms,
            )
            self._samples.append(sample)
            self.tracker.mark_click(now_ms)
            log_event("DEBUG", "Calibration", "Click sample accepted",
                      index=len(self._samples), energy=f"{energy:.4f}", spike=f"{spike:.4f}")

        self.tracker.update(energy)
        return sample

    def build(self) -> ClickSignature:
        """Average the collected samples. Raises InsufficientCalibrationSamples."""
        return build_signature(self._samples)

    def reset(self) -> None:
        self.tracker.reset()
        self._samples.clear()

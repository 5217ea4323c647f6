"""Click signature: averaged band profile of a user's calibrated pen clicks."""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from frequency_utils import PROFILE_BANDS

MIN_CALIBRATION_SAMPLES = 3


class InsufficientCalibrationSamples(ValueError):
    """Raised when a signature is requested from fewer than three samples."""

    def __init__(self, sample_count: int):
        super().__init__(
            f"need at least {MIN_CALIBRATION_SAMPLES} calibration clicks, got {sample_count}"
        )
        self.sample_count = sample_count


@dataclass(frozen=True)
class ClickSignature:
    profile: tuple[float, ...]        # Band-wise mean of sample profiles
    avg_energy: float
    sample_count: int
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        data = asdict(self)
        data["profile"] = list(self.profile)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ClickSignature":
        """Rebuild a stored signature, rejecting records that cannot be matched against."""
        if not isinstance(data, dict):
            raise ValueError("signature record must be an object")
        profile = tuple(float(v) for v in data["profile"])
        if len(profile) != PROFILE_BANDS:
            raise ValueError(f"signature profile must have {PROFILE_BANDS} bands, got {len(profile)}")
        sample_count = int(data["sample_count"])
        if sample_count < MIN_CALIBRATION_SAMPLES:
            raise ValueError(f"signature built from too few samples ({sample_count})")
        return cls(
            profile=profile,
            avg_energy=float(data["avg_energy"]),
            sample_count=sample_count,
            created_at=str(data.get("created_at", "")),
        )


def build_signature(samples: Sequence) -> ClickSignature:
    """Average calibration samples into a signature.

    Each sample needs `profile` and `energy` attributes. Raises
    InsufficientCalibrationSamples for fewer than three samples.
    """
    if len(samples) < MIN_CALIBRATION_SAMPLES:
        raise InsufficientCalibrationSamples(len(samples))

    count = len(samples)
    band_count = len(samples[0].profile)
    # fsum is exactly rounded, so sample order never changes the result
    profile = tuple(
        math.fsum(float(s.profile[band]) for s in samples) / count
        for band in range(band_count)
    )
    return ClickSignature(
        profile=profile,
        avg_energy=math.fsum(float(s.energy) for s in samples) / count,
        sample_count=len(samples),
    )

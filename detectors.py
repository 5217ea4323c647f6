"""
penclick - Click detectors
Per-frame pen click detection on analyser frames (bin energies in 0.0-1.0).
"""

from typing import Optional, Protocol

from config import DetectionMode
from frequency_utils import cosine_similarity, frame_energy, frequency_profile, split_band_energy
from signature import ClickSignature

CLICK_REFRACTORY_MS = 150
EMA_NEW_WEIGHT = 0.3               # Weight of the current frame in the baseline

# Advanced detector gates, as fractions of sensitivity
CANDIDATE_SPIKE_RATIO = 0.5
CONFIRM_SPIKE_RATIO = 0.3
SIGNATURE_MATCH_THRESHOLD = 0.85

# Voice rejection when no signature is stored
VOICE_LOW_HIGH_RATIO = 1.5
VOICE_MIN_LOW_ENERGY = 0.1


class SpikeTracker:
    """
    Smoothed energy baseline plus a debounce timer.

    A spike is the current frame energy minus the baseline. The baseline is an
    exponential moving average (0.3 new, 0.7 history) that must be advanced
    once per frame with `update()`, after the click decision for that frame.
    No click may be accepted within `refractory_ms` of the previous one.
    """
    __slots__ = ('refractory_ms', 'smoothed_energy', 'last_click_ms')

    def __init__(self, refractory_ms: int = CLICK_REFRACTORY_MS):
        self.refractory_ms = refractory_ms
        self.smoothed_energy: float = 0.0
        self.last_click_ms: Optional[int] = None   # None = no click yet this session

    def spike(self, energy: float) -> float:
        return energy - self.smoothed_energy

    def refractory_elapsed(self, now_ms: int) -> bool:
        if self.last_click_ms is None:
            return True
        return now_ms - self.last_click_ms > self.refractory_ms

    def mark_click(self, now_ms: int) -> None:
        self.last_click_ms = now_ms

    def update(self, energy: float) -> None:
        self.smoothed_energy = EMA_NEW_WEIGHT * energy + (1.0 - EMA_NEW_WEIGHT) * self.smoothed_energy

    def reset(self) -> None:
        """Clear all state for a fresh start."""
        self.smoothed_energy = 0.0
        self.last_click_ms = None


class ClickDetector(Protocol):
    mode: DetectionMode

    def on_frame(self, frame, sensitivity: float, now_ms: int) -> bool: ...

    def reset(self) -> None: ...


class SimpleDetector:
    """Counts any abrupt rise in overall volume as a click."""
    mode = DetectionMode.SIMPLE

    def __init__(self):
        self.tracker = SpikeTracker()

    def on_frame(self, frame, sensitivity: float, now_ms: int) -> bool:
        energy = frame_energy(frame)
        spike = self.tracker.spike(energy)

        clicked = spike > sensitivity and self.tracker.refractory_elapsed(now_ms)
        if clicked:
            self.tracker.mark_click(now_ms)

        self.tracker.update(energy)
        return clicked

    def reset(self) -> None:
        self.tracker.reset()


class AdvancedDetector:
    """
    Matches candidate spikes against a calibrated click signature.

    With a signature, a spike above half the sensitivity is compared by
    cosine similarity of its 8-band profile; it counts when the similarity
    exceeds 0.85 and the spike exceeds 0.3x sensitivity. Without one, a spike
    above the full sensitivity counts unless the spectrum looks like speech
    (lower half clearly louder than the upper half).
    """
    mode = DetectionMode.ADVANCED

    def __init__(self, signature: Optional[ClickSignature] = None):
        self.signature = signature
        self.tracker = SpikeTracker()
        self.last_similarity: float = 0.0

    def on_frame(self, frame, sensitivity: float, now_ms: int) -> bool:
        energy = frame_energy(frame)
        spike = self.tracker.spike(energy)

        if self.signature is not None and spike > sensitivity * CANDIDATE_SPIKE_RATIO:
            clicked = self._matches_signature(frame, spike, sensitivity, now_ms)
        else:
            clicked = self._is_broadband_spike(frame, spike, sensitivity, now_ms)

        if clicked:
            self.tracker.mark_click(now_ms)

        self.tracker.update(energy)
        return clicked

    def _matches_signature(self, frame, spike: float, sensitivity: float, now_ms: int) -> bool:
        self.last_similarity = cosine_similarity(frequency_profile(frame), self.signature.profile)
        return (
            self.last_similarity > SIGNATURE_MATCH_THRESHOLD
            and spike > sensitivity * CONFIRM_SPIKE_RATIO
            and self.tracker.refractory_elapsed(now_ms)
        )

    def _is_broadband_spike(self, frame, spike: float, sensitivity: float, now_ms: int) -> bool:
        low_energy, high_energy = split_band_energy(frame)
        return (
            spike > sensitivity
            and not is_likely_voice(low_energy, high_energy)
            and self.tracker.refractory_elapsed(now_ms)
        )

    def reset(self) -> None:
        self.tracker.reset()
        self.last_similarity = 0.0


def is_likely_voice(low_energy: float, high_energy: float) -> bool:
    return low_energy > high_energy * VOICE_LOW_HIGH_RATIO and low_energy > VOICE_MIN_LOW_ENERGY


def create_detector(mode: DetectionMode, signature: Optional[ClickSignature] = None) -> ClickDetector:
    """Build a fresh detector for a listening session."""
    mode = DetectionMode(mode)
    if mode is DetectionMode.ADVANCED:
        return AdvancedDetector(signature)
    return SimpleDetector()

"""
penclick - Detection session controller
Owns the microphone, the active detector or calibration recorder, and the
click count. At most one session (listening or calibrating) runs at a time.
"""

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from calibration import CalibrationRecorder, CalibrationSample
from config import (
    CALIBRATION_PROFILE,
    CaptureProfile,
    Config,
    DetectionMode,
    capture_profile_for,
    clamp_sensitivity,
)
from detectors import ClickDetector, create_detector
from frame_source import CaptureConstraints, CaptureError, CaptureHandle, acquire
from frequency_utils import frame_energy
from logging_utils import log_event
from pens import PenModel, dose_for_clicks, get_pen
from pens import target_clicks as clicks_for_dose
from signature import ClickSignature, InsufficientCalibrationSamples


class SessionState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CALIBRATING = "calibrating"


class SessionBusyError(RuntimeError):
    """A session is already running."""


@dataclass(frozen=True)
class DoseRecord:
    """Final click count of a saved listening session"""
    clicks: int
    mode: DetectionMode
    pen: dict                          # Pen settings as configured
    dose_mg: float = 0.0
    target_clicks: int = 0
    pen_label: str = ""
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SessionEvents:
    """Event sink for a DetectionSession. Every hook defaults to a no-op."""

    def on_click(self) -> None:
        pass

    def on_calibration_sample(self, sample: CalibrationSample) -> None:
        pass

    def on_signature_ready(self, signature: ClickSignature) -> None:
        pass

    def on_dose_recorded(self, record: DoseRecord) -> None:
        pass

    def on_error(self, kind: str, message: str) -> None:
        pass


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class DetectionSession:
    """
    State machine: Idle -> Listening -> Idle, Idle -> Calibrating -> Idle.

    Frames are pulled one per tick; each tick runs exactly one detector (or
    recorder) evaluation. Hosts with their own timer call `tick()`; otherwise
    `run()` polls at `config.capture.tick_hz`. Stopping sets the session's
    cancel token and releases the microphone before returning, so no further
    tick does any work.
    """

    def __init__(
        self,
        config: Config,
        events: Optional[SessionEvents] = None,
        *,
        signature_store=None,
        acquire_capture: Callable[[CaptureConstraints], CaptureHandle] = acquire,
        clock: Callable[[], int] = monotonic_ms,
    ):
        self.config = config
        self.events = events or SessionEvents()
        self.signature_store = signature_store
        self._acquire_capture = acquire_capture
        self._clock = clock

        self.state = SessionState.IDLE
        self.click_count = 0
        self.signature: Optional[ClickSignature] = signature_store.load() if signature_store else None
        self.detector: Optional[ClickDetector] = None
        self.pen: Optional[PenModel] = None
        self.recorder = CalibrationRecorder()

        self._capture: Optional[CaptureHandle] = None
        self._cancel = threading.Event()
        self._cancel.set()              # Set whenever no session is running
        self._reset_session_stats()

    # ===== CONFIGURATION =====

    @property
    def is_active(self) -> bool:
        return self.state is not SessionState.IDLE

    def set_sensitivity(self, value: float) -> float:
        """Takes effect on the next frame, even mid-session."""
        self.config.detection.sensitivity = clamp_sensitivity(value)
        return self.config.detection.sensitivity

    def set_mode(self, mode: DetectionMode) -> None:
        self._require_idle("change detection mode")
        self.config.detection.mode = DetectionMode(mode)

    def clear_signature(self) -> None:
        self._require_idle("clear the click signature")
        if self.signature_store is not None:
            self.signature_store.clear()
        self.signature = None

    def _require_idle(self, action: str) -> None:
        if self.is_active:
            raise SessionBusyError(f"Cannot {action} while {self.state.value}")

    # ===== LISTENING =====

    def start_listening(self) -> bool:
        """Open the microphone and start counting. Returns False if capture failed."""
        self._require_idle("start listening")
        mode = DetectionMode(self.config.detection.mode)
        # Raises ValueError for an unknown pen before the microphone is touched
        pen = get_pen(self.config.pen.medication, self.config.pen.pen_index)

        self.click_count = 0
        self.detector = create_detector(mode, self.signature)

        if not self._open_capture(capture_profile_for(mode)):
            self.detector = None
            return False

        self._begin(SessionState.LISTENING)
        self.pen = pen
        log_event("INFO", "Session", "Listening started",
                  mode=mode.value, sensitivity=f"{self.config.detection.sensitivity:.2f}",
                  signature=self.signature is not None,
                  pen=pen.label, target_clicks=self.target_clicks)
        if mode is DetectionMode.ADVANCED and self.signature is None:
            log_event("INFO", "Session", "No click signature stored, rejecting voice-shaped spikes instead")
        return True

    def stop_listening(self, save: bool = False) -> Optional[DoseRecord]:
        """Stop counting. With save=True the final count is emitted as a DoseRecord."""
        if self.state is not SessionState.LISTENING:
            return None

        record = None
        try:
            if save:
                record = DoseRecord(
                    clicks=self.click_count,
                    mode=self.detector.mode,
                    pen=asdict(self.config.pen),
                    dose_mg=self.dose_mg,
                    target_clicks=self.target_clicks,
                    pen_label=self.pen.label,
                )
                self.events.on_dose_recorded(record)
        finally:
            self._end()
            self.detector = None
            self.pen = None
            self.click_count = 0
        return record

    @property
    def dose_mg(self) -> float:
        """Dose dialled so far with the session's pen, 0.0 when not listening."""
        if self.pen is None:
            return 0.0
        return dose_for_clicks(self.click_count, self.pen)

    @property
    def target_clicks(self) -> int:
        if self.pen is None:
            return 0
        return clicks_for_dose(self.config.pen.target_dose, self.pen)

    def adjust_clicks(self, delta: int) -> int:
        """Manual correction of the running count; never below zero."""
        self.click_count = max(0, self.click_count + int(delta))
        return self.click_count

    def reset_count(self) -> None:
        self.click_count = 0

    # ===== CALIBRATION =====

    def start_calibration(self) -> bool:
        self._require_idle("start calibration")
        self.recorder.reset()

        if not self._open_capture(CALIBRATION_PROFILE):
            return False

        self._begin(SessionState.CALIBRATING)
        log_event("INFO", "Calibration", "Calibration started")
        return True

    def finish_calibration(self) -> Optional[ClickSignature]:
        """Stop calibrating and store a signature if enough clicks were heard."""
        if self.state is not SessionState.CALIBRATING:
            return None
        self._end()

        try:
            signature = self.recorder.build()
        except InsufficientCalibrationSamples as e:
            log_event("INFO", "Calibration", "Calibration ended without a signature", reason=e)
            return None
        finally:
            self.recorder.reset()

        self.signature = signature
        if self.signature_store is not None:
            self.signature_store.save(signature)
        log_event("INFO", "Calibration", "Signature built",
                  samples=signature.sample_count, avg_energy=f"{signature.avg_energy:.4f}")
        self.events.on_signature_ready(signature)
        return signature

    def cancel_calibration(self) -> bool:
        if self.state is not SessionState.CALIBRATING:
            return False
        self._end()
        self.recorder.reset()
        log_event("INFO", "Calibration", "Calibration cancelled")
        return True

    # ===== FRAME POLLING =====

    def tick(self) -> bool:
        """Evaluate one frame. Returns False once the session is no longer running."""
        if not self.is_active or self._cancel.is_set():
            return False

        frame = self._capture.next_frame()
        if frame is None:
            return self.is_active

        now_ms = self._clock()
        self._update_session_stats(frame_energy(frame))

        if self.state is SessionState.LISTENING:
            if self.detector.on_frame(frame, self.config.detection.sensitivity, now_ms):
                self.click_count += 1
                self.events.on_click()
        else:
            sample = self.recorder.on_frame(frame, now_ms)
            if sample is not None:
                self.events.on_calibration_sample(sample)

        return self.is_active and not self._cancel.is_set()

    def run(self, duration_s: Optional[float] = None) -> None:
        """Poll frames until the session stops or `duration_s` elapses.

        Late ticks are dropped, never queued.
        """
        cancel = self._cancel
        interval = 1.0 / self.config.capture.tick_hz
        deadline = None if duration_s is None else time.monotonic() + duration_s

        while not cancel.is_set():
            started = time.monotonic()
            if not self.tick():
                break
            if deadline is not None and time.monotonic() >= deadline:
                break
            cancel.wait(max(0.0, interval - (time.monotonic() - started)))

    # ===== LIFECYCLE =====

    def _open_capture(self, profile: CaptureProfile) -> bool:
        constraints = CaptureConstraints.from_config(self.config.capture, profile)
        try:
            self._capture = self._acquire_capture(constraints)
        except CaptureError as e:
            log_event("ERROR", "Session", "Could not acquire microphone", kind=e.kind, error=e)
            self.events.on_error(e.kind, str(e))
            return False
        return True

    def _begin(self, state: SessionState) -> None:
        self._cancel = threading.Event()
        self.state = state
        self._reset_session_stats()

    def _end(self) -> None:
        self._cancel.set()
        state = self.state
        self.state = SessionState.IDLE
        capture, self._capture = self._capture, None
        try:
            if capture is not None:
                capture.release()
        finally:
            self._log_session_summary(state)

    def _reset_session_stats(self) -> None:
        self._session_started_at = time.time()
        self._session_frame_count = 0
        self._session_energy_min: float | None = None
        self._session_energy_max: float | None = None
        self._session_energy_sum = 0.0

    def _update_session_stats(self, energy: float) -> None:
        self._session_frame_count += 1
        self._session_energy_sum += energy
        if self._session_energy_min is None or energy < self._session_energy_min:
            self._session_energy_min = energy
        if self._session_energy_max is None or energy > self._session_energy_max:
            self._session_energy_max = energy

    def _log_session_summary(self, state: SessionState) -> None:
        if self._session_frame_count <= 0:
            return

        elapsed_s = max(0.0, time.time() - self._session_started_at)
        energy_min = float(self._session_energy_min or 0.0)
        energy_max = float(self._session_energy_max or 0.0)
        energy_mean = self._session_energy_sum / float(self._session_frame_count)

        if state is SessionState.CALIBRATING:
            result = {"samples": self.recorder.sample_count}
        else:
            result = {"clicks": self.click_count}

        log_event(
            "INFO",
            "Session",
            "Session levels summary",
            state=state.value,
            frames=self._session_frame_count,
            seconds=f"{elapsed_s:.1f}",
            energy_min=f"{energy_min:.6f}",
            energy_max=f"{energy_max:.6f}",
            energy_mean=f"{energy_mean:.6f}",
            energy_span=f"{(energy_max - energy_min):.6f}",
            **result,
        )

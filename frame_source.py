"""
penclick - Spectral frame source
Captures the microphone with sounddevice and turns the most recent block of
samples into an analyser frame: per-bin spectral energy scaled to 0.0-1.0.
"""

import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np

from config import CaptureConfig, CaptureProfile
from logging_utils import log_event


class CaptureError(Exception):
    """Microphone could not be acquired. `kind` is reported to the user."""
    kind = "capture_error"


class PermissionDenied(CaptureError):
    kind = "permission_denied"


class DeviceUnavailable(CaptureError):
    kind = "device_unavailable"


class Unsupported(CaptureError):
    kind = "unsupported"


_PERMISSION_HINTS = ("permission", "not allowed", "denied", "unauthorized", "not authorized")


@dataclass(frozen=True)
class CaptureConstraints:
    """What a session asks of the microphone and analyser"""
    fft_size: int = 256
    smoothing: float = 0.3            # Temporal smoothing between frames (0.0-1.0)
    device_index: Optional[int] = None
    sample_rate: Optional[int] = None
    min_decibels: float = -100.0
    max_decibels: float = -30.0

    @classmethod
    def from_config(cls, capture: CaptureConfig, profile: CaptureProfile) -> "CaptureConstraints":
        return cls(
            fft_size=profile.fft_size,
            smoothing=profile.smoothing,
            device_index=capture.device_index,
            sample_rate=capture.sample_rate,
            min_decibels=capture.min_decibels,
            max_decibels=capture.max_decibels,
        )


class SpectralAnalyser:
    """
    Frequency analyser over a sliding window of the last `fft_size` samples.

    Each frame applies a Blackman window, takes the FFT magnitude of the first
    fft_size/2 bins, blends it with the previous frame by `smoothing`, converts
    to dB and maps [min_decibels, max_decibels] linearly onto [0.0, 1.0].
    """

    def __init__(self, fft_size: int = 256, smoothing: float = 0.3,
                 min_decibels: float = -100.0, max_decibels: float = -30.0):
        if fft_size < 32 or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two >= 32, got {fft_size}")
        if max_decibels <= min_decibels:
            raise ValueError("max_decibels must be greater than min_decibels")
        self.fft_size = fft_size
        self.smoothing = float(np.clip(smoothing, 0.0, 1.0))
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels

        self._window = np.blackman(fft_size).astype(np.float32)
        self._samples = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def push(self, samples) -> None:
        """Append mono samples, keeping only the newest fft_size."""
        block = np.asarray(samples, dtype=np.float32).ravel()
        if block.size == 0:
            return
        if block.size >= self.fft_size:
            self._samples[:] = block[-self.fft_size:]
            return
        self._samples = np.roll(self._samples, -block.size)
        self._samples[-block.size:] = block

    def frame(self) -> np.ndarray:
        spectrum = np.abs(np.fft.rfft(self._samples * self._window))[:self.bin_count] / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * spectrum

        with np.errstate(divide='ignore'):
            decibels = 20.0 * np.log10(self._smoothed)
        scaled = (decibels - self.min_decibels) / (self.max_decibels - self.min_decibels)
        return np.clip(scaled, 0.0, 1.0)

    def reset(self) -> None:
        self._samples.fill(0.0)
        self._smoothed.fill(0.0)


class CaptureHandle:
    """An open microphone stream feeding a SpectralAnalyser."""

    def __init__(self, stream, analyser: SpectralAnalyser, device_name: str = ""):
        self.stream = stream
        self.analyser = analyser
        self.device_name = device_name
        self.overflow_count = 0
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def audio_callback(self, indata, frames, time_info, status) -> None:
        """sounddevice callback - runs on the audio thread"""
        if status:
            self.overflow_count += 1
        mono = indata[:, 0] if indata.ndim > 1 else indata
        with self._lock:
            self.analyser.push(mono)

    def next_frame(self) -> Optional[np.ndarray]:
        """Analyse the newest samples. Returns None once released."""
        if self._released:
            return None
        with self._lock:
            return self.analyser.frame()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self.stream.stop()
        finally:
            self.stream.close()
        log_event("INFO", "Capture", "Microphone released",
                  device=self.device_name, overflows=self.overflow_count)


def _import_sounddevice():
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        # sounddevice or the PortAudio shared library missing on this host
        raise Unsupported(f"Audio capture is not supported here: {e}") from e
    return sd


def _capture_error_from(exc: Exception) -> CaptureError:
    message = str(exc)
    lowered = message.lower()
    if any(hint in lowered for hint in _PERMISSION_HINTS):
        return PermissionDenied(f"Microphone access denied: {message}")
    return DeviceUnavailable(f"Microphone error: {message}")


def _resolve_input_device(sd, device_index: Optional[int]) -> dict:
    try:
        if device_index is None:
            device_info = sd.query_devices(kind='input')
        else:
            device_info = sd.query_devices(device_index)
    except (sd.PortAudioError, ValueError) as e:
        raise DeviceUnavailable(f"No microphone found: {e}") from e

    if int(device_info.get('max_input_channels', 0)) < 1:
        raise DeviceUnavailable(f"Device has no input channels: {device_info.get('name', device_index)}")
    return device_info


def acquire(constraints: CaptureConstraints) -> CaptureHandle:
    """Open the microphone and start streaming into a fresh analyser.

    Raises PermissionDenied, DeviceUnavailable or Unsupported. Never retries.
    """
    sd = _import_sounddevice()
    device_info = _resolve_input_device(sd, constraints.device_index)
    sample_rate = constraints.sample_rate or int(device_info['default_samplerate'])

    analyser = SpectralAnalyser(
        fft_size=constraints.fft_size,
        smoothing=constraints.smoothing,
        min_decibels=constraints.min_decibels,
        max_decibels=constraints.max_decibels,
    )

    handle = CaptureHandle(None, analyser, device_name=str(device_info.get('name', '')))
    try:
        handle.stream = sd.InputStream(
            device=constraints.device_index,
            channels=1,
            samplerate=sample_rate,
            blocksize=constraints.fft_size // 2,
            dtype='float32',
            callback=handle.audio_callback,
        )
        handle.stream.start()
    except sd.PortAudioError as e:
        if handle.stream is not None:
            handle.stream.close()
        raise _capture_error_from(e) from e

    log_event("INFO", "Capture", "Microphone acquired",
              device=handle.device_name, sample_rate=sample_rate,
              fft_size=constraints.fft_size, smoothing=constraints.smoothing)
    return handle


def check_microphone(device_index: Optional[int] = None) -> str:
    """Open and immediately close an input stream. Returns the device name.

    Surfaces the same errors as acquire() without holding the device.
    """
    handle = acquire(CaptureConstraints(device_index=device_index))
    handle.release()
    return handle.device_name


def list_input_devices() -> list[dict]:
    """List devices that can record."""
    sd = _import_sounddevice()
    devices = []
    for index, device in enumerate(sd.query_devices()):
        if device['max_input_channels'] < 1:
            continue
        devices.append({
            'index': index,
            'name': device['name'],
            'inputs': device['max_input_channels'],
            'default_samplerate': device['default_samplerate'],
        })
    return devices

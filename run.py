#!/usr/bin/env python3
"""
penclick - Dosing pen click counter

Listens to the microphone and counts the mechanical clicks of an injection
pen as the dose is dialled, optionally matching a calibrated click signature.
"""

import argparse
import cProfile
import sys

from config import SENSITIVITY_MAX, SENSITIVITY_MIN, Config, DetectionMode
from config_persistence import SignatureStore, get_config_dir, load_config, save_config
from dose_history import DoseHistory
from frame_source import CaptureError, check_microphone, list_input_devices
from logging_utils import log_event, set_log_level
from pens import PEN_DATA, dose_progress, get_pen
from session import DetectionSession, DoseRecord, SessionEvents


class ConsoleEvents(SessionEvents):
    """Prints session progress and appends saved doses to the history log."""

    def __init__(self, history: DoseHistory | None = None, out=None):
        self.history = history
        self.out = out or sys.stdout
        self.session: DetectionSession | None = None
        self.errors: list[tuple[str, str]] = []

    def _write(self, text: str) -> None:
        print(text, file=self.out, flush=True)

    def on_click(self) -> None:
        if self.session is None:
            self._write("click")
            return
        count = self.session.click_count
        target = self.session.target_clicks
        self._write(f"click {count}/{target}  {self.session.dose_mg:.3f} mg "
                    f"({dose_progress(count, target):.0f}%)")

    def on_calibration_sample(self, sample) -> None:
        count = self.session.recorder.sample_count if self.session else 0
        self._write(f"calibration click {count} (energy {sample.energy:.3f})")

    def on_signature_ready(self, signature) -> None:
        self._write(f"signature saved from {signature.sample_count} clicks")

    def on_dose_recorded(self, record: DoseRecord) -> None:
        if self.history is not None:
            self.history.append(record)
        self._write(f"saved {record.clicks} clicks ({record.dose_mg:.3f} mg)")

    def on_error(self, kind: str, message: str) -> None:
        self.errors.append((kind, message))
        self._write(f"error ({kind}): {message}")


def _sensitivity(value: str) -> float:
    number = float(value)
    if not SENSITIVITY_MIN <= number <= SENSITIVITY_MAX:
        raise argparse.ArgumentTypeError(
            f"sensitivity must be between {SENSITIVITY_MIN} and {SENSITIVITY_MAX}"
        )
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Count dosing pen clicks from the microphone")
    parser.add_argument("--log-level", default=None, help="DEBUG/INFO/WARNING/ERROR (default: from config)")
    parser.add_argument("--device", type=int, default=None, help="Input device index (see `devices`)")
    parser.add_argument(
        "--profile",
        action="store_true",
        help="Enable cProfile and save stats to --profile-out",
    )
    parser.add_argument(
        "--profile-out",
        default="profile.prof",
        help="Path to save cProfile stats (default: profile.prof)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    listen = commands.add_parser("listen", help="Count clicks until Ctrl+C or --duration")
    listen.add_argument("--mode", choices=[m.value for m in DetectionMode], default=None)
    listen.add_argument("--sensitivity", type=_sensitivity, default=None,
                        help=f"Spike threshold {SENSITIVITY_MIN}-{SENSITIVITY_MAX}, higher = less sensitive")
    listen.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    listen.add_argument("--save", action="store_true", help="Record the final count in the dose history")
    listen.add_argument("--medication", choices=list(PEN_DATA), default=None)
    listen.add_argument("--pen", type=int, default=None, dest="pen_index", help="Pen strength index (see `pens`)")
    listen.add_argument("--target-dose", type=float, default=None, help="Target dose in mg")

    calibrate = commands.add_parser("calibrate", help="Record pen clicks to build a click signature")
    calibrate.add_argument("--duration", type=float, default=None, help="Finish after this many seconds")

    commands.add_parser("clear-signature", help="Delete the stored click signature")
    commands.add_parser("pens", help="List supported pens and dose presets")
    commands.add_parser("devices", help="List input devices")
    commands.add_parser("check-mic", help="Open and close the microphone to test access")
    return parser


def _apply_overrides(config: Config, args) -> bool:
    """Copy command line choices into config. Returns True if anything changed."""
    changed = False
    if args.device is not None and args.device != config.capture.device_index:
        config.capture.device_index = args.device
        changed = True
    mode = getattr(args, "mode", None)
    if mode is not None and DetectionMode(mode) != config.detection.mode:
        config.detection.mode = DetectionMode(mode)
        changed = True
    sensitivity = getattr(args, "sensitivity", None)
    if sensitivity is not None and sensitivity != config.detection.sensitivity:
        config.detection.sensitivity = sensitivity
        changed = True

    medication = getattr(args, "medication", None)
    pen_index = getattr(args, "pen_index", None)
    if medication is not None and medication != config.pen.medication:
        config.pen.medication = medication
        config.pen.pen_index = 0
        changed = True
    if pen_index is not None and pen_index != config.pen.pen_index:
        config.pen.pen_index = pen_index
        changed = True
    target_dose = getattr(args, "target_dose", None)
    if target_dose is not None and target_dose != config.pen.target_dose:
        config.pen.target_dose = max(0.0, target_dose)
        changed = True
    if changed:
        # Raises ValueError before a bad pen choice is saved
        get_pen(config.pen.medication, config.pen.pen_index)
    return changed


def _listen(session: DetectionSession, args) -> int:
    if not session.start_listening():
        return 1
    print("Listening - dial the pen. Ctrl+C to stop.", flush=True)
    try:
        session.run(duration_s=args.duration)
    except KeyboardInterrupt:
        pass
    clicks, target, dose_mg = session.click_count, session.target_clicks, session.dose_mg
    session.stop_listening(save=args.save)
    print(f"Total clicks: {clicks} of {target} ({dose_mg:.3f} mg)", flush=True)
    return 0


def _calibrate(session: DetectionSession, args) -> int:
    if not session.start_calibration():
        return 1
    print("Calibrating - click the pen at least 3 times (5 recommended). Ctrl+C to finish.", flush=True)
    try:
        session.run(duration_s=args.duration)
    except KeyboardInterrupt:
        pass
    if session.finish_calibration() is None:
        print("Not enough clicks heard - no signature saved.", flush=True)
        return 1
    return 0


def run_command(args, config: Config | None = None, session_factory=DetectionSession) -> int:
    config = config or load_config()
    set_log_level(args.log_level or config.log_level)
    try:
        if _apply_overrides(config, args):
            save_config(config)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    if args.command == "pens":
        for key, medication in PEN_DATA.items():
            print(f"{key} ({medication.name}) doses: {', '.join(f'{d:g}' for d in medication.doses)} mg")
            for index, pen in enumerate(medication.pens):
                print(f"  [{index}] {pen.label}: {pen.total_clicks} clicks, {pen.mg_per_click} mg/click")
        return 0

    if args.command == "devices":
        for device in list_input_devices():
            print(f"[{device['index']}] {device['name']} "
                  f"({device['inputs']} ch, {device['default_samplerate']:.0f} Hz)")
        return 0

    if args.command == "check-mic":
        try:
            name = check_microphone(config.capture.device_index)
        except CaptureError as e:
            log_event("ERROR", "Capture", "Microphone check failed", kind=e.kind, error=e)
            return 1
        print(f"Microphone OK: {name}")
        return 0

    history = DoseHistory(get_config_dir()) if config.history_enabled else None
    events = ConsoleEvents(history)
    session = session_factory(config, events, signature_store=SignatureStore())
    events.session = session

    if args.command == "clear-signature":
        session.clear_signature()
        print("Click signature cleared.")
        return 0
    if args.command == "calibrate":
        return _calibrate(session, args)
    return _listen(session, args)


def main() -> None:
    args = build_parser().parse_args()

    if args.profile:
        profiler = cProfile.Profile()
        profiler.enable()
        exit_code = run_command(args)
        profiler.disable()
        profiler.dump_stats(args.profile_out)
    else:
        exit_code = run_command(args)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()

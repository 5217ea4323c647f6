import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import run
from config import Config, DetectionMode
from session import DoseRecord


class FakeSession:
    instances = []

    def __init__(self, config, events, signature_store=None):
        self.config = config
        self.events = events
        self.signature_store = signature_store
        self.click_count = 0
        self.target_clicks = 0
        self.dose_mg = 0.0
        self.start_result = True
        self.calls = []
        FakeSession.instances.append(self)

    def start_listening(self):
        self.calls.append("start_listening")
        return self.start_result

    def run(self, duration_s=None):
        self.calls.append(("run", duration_s))
        self.click_count = 7
        self.target_clicks = 19
        self.dose_mg = 7 * 0.0134

    def stop_listening(self, save=False):
        self.calls.append(("stop_listening", save))

    def start_calibration(self):
        self.calls.append("start_calibration")
        return True

    def finish_calibration(self):
        self.calls.append("finish_calibration")
        return None

    def clear_signature(self):
        self.calls.append("clear_signature")


class TestParser(unittest.TestCase):
    def test_listen_options(self):
        args = run.build_parser().parse_args(
            ["--device", "2", "listen", "--mode", "advanced", "--sensitivity", "0.2", "--save"]
        )
        self.assertEqual(args.command, "listen")
        self.assertEqual(args.device, 2)
        self.assertEqual(args.mode, "advanced")
        self.assertAlmostEqual(args.sensitivity, 0.2)
        self.assertTrue(args.save)

    def test_sensitivity_out_of_range_rejected(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                run.build_parser().parse_args(["listen", "--sensitivity", "0.9"])

    def test_command_required(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                run.build_parser().parse_args([])


class TestOverrides(unittest.TestCase):
    def test_overrides_change_config(self):
        cfg = Config()
        args = run.build_parser().parse_args(["--device", "1", "listen", "--mode", "advanced", "--sensitivity", "0.3"])
        self.assertTrue(run._apply_overrides(cfg, args))
        self.assertEqual(cfg.detection.mode, DetectionMode.ADVANCED)
        self.assertAlmostEqual(cfg.detection.sensitivity, 0.3)
        self.assertEqual(cfg.capture.device_index, 1)

    def test_pen_overrides(self):
        cfg = Config()
        args = run.build_parser().parse_args(["listen", "--medication", "ozempic", "--pen", "1", "--target-dose", "0.5"])
        self.assertTrue(run._apply_overrides(cfg, args))
        self.assertEqual((cfg.pen.medication, cfg.pen.pen_index), ("ozempic", 1))
        self.assertAlmostEqual(cfg.pen.target_dose, 0.5)

    def test_medication_change_resets_pen_index(self):
        cfg = Config()
        cfg.pen.pen_index = 3
        args = run.build_parser().parse_args(["listen", "--medication", "ozempic"])
        run._apply_overrides(cfg, args)
        self.assertEqual(cfg.pen.pen_index, 0)

    def test_unknown_pen_index_rejected(self):
        args = run.build_parser().parse_args(["listen", "--medication", "ozempic", "--pen", "5"])
        with self.assertRaises(ValueError):
            run._apply_overrides(Config(), args)

    def test_no_overrides(self):
        args = run.build_parser().parse_args(["calibrate"])
        self.assertFalse(run._apply_overrides(Config(), args))


class TestRunCommand(unittest.TestCase):
    def setUp(self):
        FakeSession.instances = []
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        patcher = mock.patch.dict("os.environ", {"PENCLICK_HOME": self._tmpdir.name})
        patcher.start()
        self.addCleanup(patcher.stop)

    def run_cli(self, argv, config=None):
        args = run.build_parser().parse_args(argv)
        with mock.patch("sys.stdout", new_callable=io.StringIO) as out:
            code = run.run_command(args, config=config or Config(), session_factory=FakeSession)
        return code, out.getvalue()

    def test_listen_runs_and_saves(self):
        code, out = self.run_cli(["listen", "--duration", "2", "--save"])
        session = FakeSession.instances[0]

        self.assertEqual(code, 0)
        self.assertEqual(session.calls, ["start_listening", ("run", 2.0), ("stop_listening", True)])
        self.assertIn("Total clicks: 7 of 19 (0.094 mg)", out)
        self.assertIs(session.events.session, session)

    def test_listen_start_failure_exits_nonzero(self):
        class FailingSession(FakeSession):
            def start_listening(self):
                return False

        args = run.build_parser().parse_args(["listen"])
        with mock.patch("sys.stdout", new_callable=io.StringIO):
            code = run.run_command(args, config=Config(), session_factory=FailingSession)
        self.assertEqual(code, 1)

    def test_calibrate_without_signature_exits_nonzero(self):
        code, out = self.run_cli(["calibrate", "--duration", "1"])
        self.assertEqual(code, 1)
        self.assertIn("no signature saved", out)
        self.assertEqual(FakeSession.instances[0].calls[-1], "finish_calibration")

    def test_clear_signature(self):
        code, _ = self.run_cli(["clear-signature"])
        self.assertEqual(code, 0)
        self.assertEqual(FakeSession.instances[0].calls, ["clear_signature"])

    def test_overrides_are_persisted(self):
        self.run_cli(["listen", "--mode", "advanced"])
        self.assertTrue((Path(self._tmpdir.name) / "config.json").exists())

    def test_bad_pen_choice_exits_before_saving(self):
        args = run.build_parser().parse_args(["listen", "--pen", "9"])
        with mock.patch("sys.stderr", new_callable=io.StringIO) as err:
            code = run.run_command(args, config=Config(), session_factory=FakeSession)
        self.assertEqual(code, 2)
        self.assertIn("out of range", err.getvalue())
        self.assertEqual(FakeSession.instances, [])
        self.assertFalse((Path(self._tmpdir.name) / "config.json").exists())

    def test_pens_lists_table(self):
        code, out = self.run_cli(["pens"])
        self.assertEqual(code, 0)
        self.assertIn("[3] 2.4mg (3mL): 75 clicks, 0.032 mg/click", out)
        self.assertIn("ozempic (Ozempic)", out)

    def test_history_disabled(self):
        cfg = Config()
        cfg.history_enabled = False
        self.run_cli(["listen"], config=cfg)
        self.assertIsNone(FakeSession.instances[0].events.history)


class TestConsoleEvents(unittest.TestCase):
    def test_dose_recorded_goes_to_history(self):
        history = mock.Mock()
        out = io.StringIO()
        events = run.ConsoleEvents(history, out=out)
        record = DoseRecord(clicks=12, mode=DetectionMode.SIMPLE, pen={})

        events.on_dose_recorded(record)

        history.append.assert_called_once_with(record)
        self.assertIn("saved 12 clicks", out.getvalue())

    def test_click_shows_dose_and_progress(self):
        out = io.StringIO()
        events = run.ConsoleEvents(out=out)
        events.session = mock.Mock(click_count=15, target_clicks=60, dose_mg=0.48)

        events.on_click()

        self.assertEqual(out.getvalue().strip(), "click 15/60  0.480 mg (25%)")

    def test_errors_are_collected(self):
        events = run.ConsoleEvents(out=io.StringIO())
        events.on_error("permission_denied", "Microphone access denied")
        self.assertEqual(events.errors, [("permission_denied", "Microphone access denied")])


if __name__ == "__main__":
    unittest.main()

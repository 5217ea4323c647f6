import unittest

import numpy as np

from config import DetectionMode
from detectors import AdvancedDetector, SimpleDetector, SpikeTracker, create_detector, is_likely_voice
from signature import ClickSignature

BINS = 256


def uniform(value: float, bins: int = BINS) -> np.ndarray:
    return np.full(bins, value)


def feed(detector, frames_with_times, sensitivity):
    """Run (time_ms, frame) pairs through a detector, returning click times."""
    clicks = []
    for now_ms, frame in frames_with_times:
        if detector.on_frame(frame, sensitivity, now_ms):
            clicks.append(now_ms)
    return clicks


def click_train(times_ms, loud=0.5, step_ms=20, end_ms=None):
    """Silent frames every step_ms with a loud frame at each click time."""
    end_ms = end_ms if end_ms is not None else max(times_ms) + 200
    hits = set(times_ms)
    return [(t, uniform(loud) if t in hits else uniform(0.0)) for t in range(0, end_ms, step_ms)]


class TestSpikeTracker(unittest.TestCase):
    def test_ema_update(self):
        tracker = SpikeTracker()
        tracker.update(1.0)
        self.assertAlmostEqual(tracker.smoothed_energy, 0.3)
        tracker.update(0.0)
        self.assertAlmostEqual(tracker.smoothed_energy, 0.21)

    def test_refractory_window(self):
        tracker = SpikeTracker(refractory_ms=150)
        self.assertTrue(tracker.refractory_elapsed(0))
        tracker.mark_click(1000)
        self.assertFalse(tracker.refractory_elapsed(1150))
        self.assertTrue(tracker.refractory_elapsed(1151))

    def test_reset(self):
        tracker = SpikeTracker()
        tracker.update(0.8)
        tracker.mark_click(10)
        tracker.reset()
        self.assertEqual(tracker.smoothed_energy, 0.0)
        self.assertIsNone(tracker.last_click_ms)


class TestSimpleDetector(unittest.TestCase):
    def test_uniform_energy_below_sensitivity_never_clicks(self):
        detector = SimpleDetector()
        frames = [(t, uniform(0.1)) for t in range(0, 2000, 16)]
        self.assertEqual(feed(detector, frames, 0.15), [])

    def test_persistent_spike_counts_once(self):
        detector = SimpleDetector()
        frames = [(t, uniform(0.0)) for t in range(0, 1000, 16)]
        frames += [(t, uniform(0.5)) for t in range(1000, 1300, 16)]
        frames += [(t, uniform(0.0)) for t in range(1300, 2000, 16)]

        self.assertEqual(feed(detector, frames, 0.15), [1000])

    def test_five_clicks_200ms_apart(self):
        detector = SimpleDetector()
        frames = click_train([0, 200, 400, 600, 800])

        self.assertEqual(feed(detector, frames, 0.15), [0, 200, 400, 600, 800])

    def test_clicks_inside_refractory_window_are_dropped(self):
        detector = SimpleDetector()
        frames = click_train([0, 100, 200, 300], step_ms=20)

        clicks = feed(detector, frames, 0.15)
        self.assertEqual(clicks, [0, 200])

    def test_refractory_invariant_on_noise(self):
        rng = np.random.default_rng(11)
        detector = SimpleDetector()
        now = 0
        frames = []
        for _ in range(3000):
            now += int(rng.integers(5, 40))
            frames.append((now, rng.random(BINS) * rng.choice([0.05, 1.0])))

        clicks = feed(detector, frames, 0.05)
        self.assertGreater(len(clicks), 1)
        self.assertTrue(all(b - a >= 150 for a, b in zip(clicks, clicks[1:])))

    def test_baseline_stays_in_unit_range(self):
        rng = np.random.default_rng(5)
        detector = SimpleDetector()
        for t in range(0, 5000, 16):
            detector.on_frame(rng.random(BINS), 0.2, t)
            self.assertGreaterEqual(detector.tracker.smoothed_energy, 0.0)
            self.assertLessEqual(detector.tracker.smoothed_energy, 1.0)

    def test_reset_clears_baseline(self):
        detector = SimpleDetector()
        for t in range(0, 500, 16):
            detector.on_frame(uniform(0.5), 0.15, t)
        self.assertFalse(detector.on_frame(uniform(0.5), 0.15, 1000))

        detector.reset()
        self.assertTrue(detector.on_frame(uniform(0.5), 0.15, 1016))


def voice_frame(low=0.2, high=0.05):
    return np.concatenate([np.full(BINS // 2, low), np.full(BINS // 2, high)])


class TestAdvancedDetectorWithoutSignature(unittest.TestCase):
    def test_voice_shaped_spike_is_rejected(self):
        detector = AdvancedDetector(signature=None)
        frame = voice_frame(low=0.2, high=0.05)   # mean 0.125

        self.assertFalse(detector.on_frame(frame, 0.1, 0))

    def test_high_heavy_spike_counts(self):
        detector = AdvancedDetector(signature=None)
        frame = voice_frame(low=0.05, high=0.2)

        self.assertTrue(detector.on_frame(frame, 0.1, 0))

    def test_quiet_low_band_is_not_voice(self):
        # Low band dominates but stays under the 0.1 floor
        self.assertFalse(is_likely_voice(0.09, 0.01))
        self.assertTrue(is_likely_voice(0.2, 0.05))
        self.assertFalse(is_likely_voice(0.2, 0.2))

    def test_spike_must_exceed_full_sensitivity(self):
        detector = AdvancedDetector(signature=None)
        self.assertFalse(detector.on_frame(uniform(0.125), 0.25, 0))
        detector.reset()
        self.assertTrue(detector.on_frame(uniform(0.375), 0.25, 0))


class TestAdvancedDetectorWithSignature(unittest.TestCase):
    def setUp(self):
        self.signature = ClickSignature(profile=(0.4,) * 8, avg_energy=0.4, sample_count=5)
        self.sensitivity = 0.25

    def test_spike_below_candidate_gate_is_ignored(self):
        detector = AdvancedDetector(self.signature)
        # spike = 0.4 x sensitivity, identical shape
        self.assertFalse(detector.on_frame(uniform(0.1), self.sensitivity, 0))
        self.assertEqual(detector.last_similarity, 0.0)

    def test_spike_exactly_at_candidate_gate_is_ignored(self):
        detector = AdvancedDetector(self.signature)
        self.assertFalse(detector.on_frame(uniform(0.125), self.sensitivity, 0))

    def test_spike_just_above_candidate_gate_matches(self):
        detector = AdvancedDetector(self.signature)
        self.assertTrue(detector.on_frame(uniform(0.126), self.sensitivity, 0))
        self.assertGreater(detector.last_similarity, 0.99)

    def test_dissimilar_shape_is_rejected_even_when_loud(self):
        detector = AdvancedDetector(self.signature)
        frame = np.zeros(BINS)
        frame[:32] = 1.0   # all energy in band 0, similarity 1/sqrt(8)

        # spike 0.125 is above the full sensitivity of 0.1
        self.assertFalse(detector.on_frame(frame, 0.1, 0))
        self.assertAlmostEqual(detector.last_similarity, 1 / np.sqrt(8))

    def test_matching_clicks_respect_refractory(self):
        detector = AdvancedDetector(self.signature)
        frames = click_train([0, 100, 300], loud=0.4)

        self.assertEqual(feed(detector, frames, self.sensitivity), [0, 300])

    def test_voice_shape_matching_signature_still_counts(self):
        # With a signature, the voice heuristic is not consulted
        signature = ClickSignature(profile=(0.2,) * 4 + (0.05,) * 4, avg_energy=0.125, sample_count=3)
        detector = AdvancedDetector(signature)

        self.assertTrue(detector.on_frame(voice_frame(0.2, 0.05), 0.1, 0))


class TestCreateDetector(unittest.TestCase):
    def test_mode_dispatch(self):
        self.assertIsInstance(create_detector(DetectionMode.SIMPLE), SimpleDetector)
        self.assertIsInstance(create_detector("advanced"), AdvancedDetector)

    def test_advanced_detector_gets_signature(self):
        signature = ClickSignature(profile=(0.1,) * 8, avg_energy=0.1, sample_count=3)
        detector = create_detector(DetectionMode.ADVANCED, signature)
        self.assertIs(detector.signature, signature)
        self.assertEqual(detector.mode, DetectionMode.ADVANCED)

    def test_unknown_mode_raises(self):
        with self.assertRaises(ValueError):
            create_detector("loud")


if __name__ == "__main__":
    unittest.main()

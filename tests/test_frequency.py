import unittest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.files import ArrayMPIFile
from mpireco.frequency import filter_frequencies, filter_frequencies_var_mean, select_frequencies
from mpireco.exceptions import ConfigurationError, EmptySelectionError
from mpireco.simulation import simulate_calibration, simulate_measurement


class TestFilterFrequencies(unittest.TestCase):
    def setUp(self):
        self.cal = simulate_calibration((4, 4, 1), num_frequencies=26, num_receivers=2, seed=3)
        self.freqs = self.cal.rx_frequencies()

    def test_band_filter(self):
        sel = filter_frequencies(self.cal, min_freq=80e3, max_freq=600e3)
        k = sel % 26
        self.assertTrue(np.all(self.freqs[k] >= 80e3))
        self.assertTrue(np.all(self.freqs[k] <= 600e3))
        # Both receivers contribute the same band
        np.testing.assert_array_equal(sel[sel < 26] + 26, sel[sel >= 26])

    def test_snr_threshold_is_subset(self):
        band = filter_frequencies(self.cal, min_freq=80e3)
        sel = filter_frequencies(self.cal, min_freq=80e3, snr_thresh=5)
        self.assertTrue(set(sel.tolist()).issubset(set(band.tolist())))
        snr = self.cal.calibration_snr().reshape(-1)
        self.assertTrue(np.all(snr[sel] >= 5))
        dropped = np.setdiff1d(band, sel)
        self.assertTrue(np.all(snr[dropped] < 5))

    def test_result_is_sorted_unique_and_deterministic(self):
        a = filter_frequencies(self.cal, snr_thresh=5, num_used_freqs=10)
        b = filter_frequencies(self.cal, snr_thresh=5, num_used_freqs=10)
        np.testing.assert_array_equal(a, b)
        np.testing.assert_array_equal(a, np.unique(a))

    def test_num_used_freqs_keeps_strongest(self):
        sel = filter_frequencies(self.cal, num_used_freqs=5)
        self.assertEqual(len(sel), 5)
        snr = self.cal.calibration_snr().reshape(-1)
        self.assertGreaterEqual(snr[sel].min(), np.sort(snr)[-5])

    def test_receive_channel_filter(self):
        sel = filter_frequencies(self.cal, rec_channels=[1])
        np.testing.assert_array_equal(sel, np.arange(26, 52))
        with self.assertRaises(ConfigurationError):
            filter_frequencies(self.cal, rec_channels=[2])

    def test_list_of_calibrations_intersects(self):
        other = simulate_calibration((4, 4, 1), num_frequencies=26, num_receivers=2, seed=4)
        a = filter_frequencies(self.cal, snr_thresh=5)
        b = filter_frequencies(other, snr_thresh=5)
        both = filter_frequencies([self.cal, other], snr_thresh=5)
        np.testing.assert_array_equal(both, np.intersect1d(a, b))

    def test_sort_by_snr_orders_strongest_first(self):
        plain = filter_frequencies(self.cal, snr_thresh=5)
        ordered = filter_frequencies(self.cal, snr_thresh=5, sort_by_snr=True)
        self.assertEqual(sorted(ordered.tolist()), plain.tolist())
        snr = self.cal.calibration_snr().reshape(-1)
        self.assertTrue(np.all(np.diff(snr[ordered]) <= 0))


class TestVarMeanFilter(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(5)
        num_frames, num_freq = 20, 6
        data = 0.1 + 0.01 * (rng.normal(size=(num_frames, 1, 1, num_freq)) +
                             1j * rng.normal(size=(num_frames, 1, 1, num_freq)))
        # Frames 0..9 carry a signal in channels 1 and 4
        data[:10, 0, 0, 1] += 1.0
        data[:10, 0, 0, 4] += 1.0
        self.meas = ArrayMPIFile(data, np.arange(num_freq) * 1e5)

    def test_signal_channels_are_kept(self):
        sel = filter_frequencies_var_mean(self.meas, self.meas, np.arange(10), np.arange(10, 20), thresh=5)
        np.testing.assert_array_equal(sel, [1, 4])

    def test_overlapping_frames_rejected(self):
        with self.assertRaises(ConfigurationError):
            filter_frequencies_var_mean(self.meas, self.meas, np.arange(10), np.arange(5, 20), thresh=5)


class TestSelectFrequencies(unittest.TestCase):
    def setUp(self):
        self.cal = simulate_calibration((4, 4, 1), num_frequencies=26, num_receivers=2, seed=3)
        self.meas = simulate_measurement(self.cal, np.ones(16))

    def test_selection_matches_calibration_filter(self):
        sel = select_frequencies(self.cal, self.meas, min_freq=80e3, snr_thresh=5)
        np.testing.assert_array_equal(sel, filter_frequencies(self.cal, min_freq=80e3, snr_thresh=5))

    def test_sort_by_snr_after_matching_the_measurement(self):
        sel = select_frequencies(self.cal, self.meas, min_freq=80e3, num_used_freqs=8, sort_by_snr=True)
        np.testing.assert_array_equal(sel, filter_frequencies(self.cal, min_freq=80e3, num_used_freqs=8,
                                                              sort_by_snr=True))
        snr = self.cal.calibration_snr().reshape(-1)
        self.assertTrue(np.all(np.diff(snr[sel]) <= 0))

    def test_empty_selection_raises(self):
        with self.assertRaises(EmptySelectionError):
            select_frequencies(self.cal, self.meas, min_freq=1e9)


if __name__ == '__main__':
    unittest.main()

import unittest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.weighting import WeightingType, get_weights
from mpireco.files import ArrayMPIFile
from mpireco.simulation import simulate_calibration
from mpireco.exceptions import ConfigurationError


class TestWeights(unittest.TestCase):
    def setUp(self):
        self.cal = simulate_calibration((2, 2, 1), num_frequencies=4, num_receivers=1, seed=50)
        self.freq = np.array([0, 2, 3])
        self.A = self.cal.system_matrix(self.freq).T

    def test_none(self):
        self.assertIsNone(get_weights('None', self.freq, self.A))

    def test_normalization(self):
        A = np.array([[1.0, 1.0], [2.0, 0.0], [0.0, 0.5]])
        w = get_weights(WeightingType.NORMALIZATION, [0, 1, 2], A)
        np.testing.assert_allclose(w, [0.125, 0.0625, 1.0])

    def test_snr_with_real_rows(self):
        snr = self.cal.calibration_snr().reshape(-1)[self.freq]
        w = get_weights('SNR', self.freq, np.zeros((6, 4)), calibration=[self.cal], load_as_real=True)
        np.testing.assert_allclose(w, np.repeat(snr / snr.max(), 2))

    def test_limit(self):
        A = np.array([[1.0], [10.0]])
        w = get_weights('Normalization', [0, 1], A, weighting_limit=0.1)
        np.testing.assert_allclose(w, [1.0, 0.1])

    def test_background_variance(self):
        data = np.zeros((4, 1, 1, 2), dtype=complex)
        data[:, 0, 0, 0] = [0, 2, 0, 2]
        data[:, 0, 0, 1] = [0, 1, 0, 1]
        bg = ArrayMPIFile(data, np.arange(2))
        w = get_weights('BGVariance', [0, 1], np.zeros((2, 3)), background=bg, bg_frames=[0, 1, 2, 3])
        np.testing.assert_allclose(w, [0.25, 1.0])
        with self.assertRaises(ConfigurationError):
            get_weights('BGVariance', [0, 1], np.zeros((2, 3)), background=bg, bg_frames=[0])

    def test_errors(self):
        with self.assertRaises(ConfigurationError):
            get_weights('Energy', self.freq, self.A)
        with self.assertRaises(ConfigurationError):
            get_weights('SNR', self.freq, self.A)
        with self.assertRaises(ConfigurationError):
            get_weights('SNR', self.freq, np.zeros((5, 4)), calibration=self.cal)


if __name__ == '__main__':
    unittest.main()

import unittest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.sparse import SparseTransform, get_sparse_transform
from mpireco.exceptions import ConfigurationError


class TestSparseTransform(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(7)
        self.shape = (8, 8, 1)
        self.c = rng.random(64)
        self.A = rng.normal(size=(10, 64)) + 1j * rng.normal(size=(10, 64))

    def test_transforms_are_unitary(self):
        for kind in ('DCT', 'FFT', 'Wavelet'):
            with self.subTest(kind=kind):
                B = SparseTransform(kind, self.shape)
                d = B.forward(self.c)
                self.assertEqual(d.shape, (64,))
                np.testing.assert_allclose(np.linalg.norm(d), np.linalg.norm(self.c), rtol=1e-10)
                np.testing.assert_allclose(B.backward(d).real, self.c, atol=1e-10)

    def test_transformed_matrix_acts_on_coefficients(self):
        for kind in ('DCT', 'FFT', 'Wavelet'):
            with self.subTest(kind=kind):
                B = SparseTransform(kind, self.shape)
                AB = B.transform_matrix(self.A)
                np.testing.assert_allclose(AB @ B.forward(self.c), self.A @ self.c, atol=1e-10)

    def test_real_matrix_stays_real_for_real_bases(self):
        A = np.random.default_rng(8).normal(size=(4, 64))
        self.assertFalse(np.iscomplexobj(SparseTransform('DCT', self.shape).transform_matrix(A)))
        self.assertTrue(np.iscomplexobj(SparseTransform('FFT', self.shape).transform_matrix(A)))

    def test_invalid_configurations(self):
        with self.assertRaises(ConfigurationError):
            SparseTransform('Curvelet', self.shape)
        with self.assertRaises(ConfigurationError):
            SparseTransform('Wavelet', self.shape, level=4)
        with self.assertRaises(ConfigurationError):
            SparseTransform('Wavelet', self.shape, wavelet_name='bior2.2')
        self.assertIsNone(get_sparse_transform(None, self.shape))


if __name__ == '__main__':
    unittest.main()

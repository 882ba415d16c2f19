import unittest
import numpy as np
import sys
import os

# Ensure mpireco is in the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.grid import RegularGridPositions, interpolate
from mpireco.exceptions import ConfigurationError


class TestRegularGridPositions(unittest.TestCase):
    def setUp(self):
        self.grid = RegularGridPositions((4, 2, 1), (0.04, 0.02, 0.001), (0.01, 0.0, 0.0))

    def test_derived_quantities(self):
        np.testing.assert_allclose(self.grid.spacing, [0.01, 0.01, 0.001])
        np.testing.assert_allclose(self.grid.origin, [-0.005, -0.005, 0.0])
        np.testing.assert_allclose(self.grid.positions(0), [-0.005, 0.005, 0.015, 0.025])
        lower, upper = self.grid.extent
        np.testing.assert_allclose(lower, [-0.01, -0.01, -0.0005])
        np.testing.assert_allclose(upper, [0.03, 0.01, 0.0005])
        self.assertEqual(self.grid.num_voxels, 8)

    def test_equality_and_isclose(self):
        same = RegularGridPositions([4, 2, 1], np.array([0.04, 0.02, 0.001]), [0.01, 0, 0])
        self.assertEqual(self.grid, same)
        nearly = RegularGridPositions((4, 2, 1), (0.04 + 1e-15, 0.02, 0.001), (0.01, 0.0, 0.0))
        self.assertTrue(self.grid.isclose(nearly))
        self.assertFalse(self.grid.isclose(self.grid.shifted((0.0, 0.0, 0.0))))

    def test_invalid_grids(self):
        with self.assertRaises(ConfigurationError):
            RegularGridPositions((4, 0, 1), (1, 1, 1))
        with self.assertRaises(ConfigurationError):
            RegularGridPositions((4, 4, 1), (1, 1))
        with self.assertRaises(ConfigurationError):
            RegularGridPositions((4, 4, 1), (1, -1, 1))


class TestInterpolate(unittest.TestCase):
    def test_identity_grid_keeps_values(self):
        grid = RegularGridPositions((4, 3, 1), (4.0, 3.0, 1.0))
        values = np.random.default_rng(0).normal(size=(4, 3, 1, 5))
        out = interpolate(values, grid, grid)
        np.testing.assert_allclose(out, values, atol=1e-12)

    def test_linear_function_is_reproduced(self):
        origin = RegularGridPositions((4, 4, 1), (4.0, 4.0, 1.0))
        target = RegularGridPositions((3, 3, 1), (3.0, 3.0, 1.0))
        xx, yy = np.meshgrid(origin.positions(0), origin.positions(1), indexing='ij')
        values = (2 * xx + 3 * yy)[:, :, None] * (1 + 1j)
        out = interpolate(values, origin, target)
        tx, ty = np.meshgrid(target.positions(0), target.positions(1), indexing='ij')
        np.testing.assert_allclose(out[:, :, 0], (2 * tx + 3 * ty) * (1 + 1j), atol=1e-12)

    def test_outside_is_filled_with_zero(self):
        origin = RegularGridPositions((2, 2, 1), (2.0, 2.0, 1.0))
        target = RegularGridPositions((2, 2, 1), (2.0, 2.0, 1.0), (10.0, 0.0, 0.0))
        out = interpolate(np.ones((2, 2, 1)), origin, target)
        np.testing.assert_array_equal(out, np.zeros((2, 2, 1)))

    def test_upsampling_keeps_border_band(self):
        origin = RegularGridPositions((4, 4, 1), (0.02, 0.02, 0.001))
        target = RegularGridPositions((8, 8, 1), (0.02, 0.02, 0.001))
        out = interpolate(np.ones((4, 4, 1, 2)), origin, target)
        np.testing.assert_allclose(out, np.ones((8, 8, 1, 2)))
        values = np.arange(16.0).reshape(4, 4, 1)
        out = interpolate(values, origin, target)
        self.assertAlmostEqual(out[0, 0, 0], values[0, 0, 0])
        self.assertAlmostEqual(out[-1, -1, 0], values[-1, -1, 0])

    def test_points_beyond_volume_get_fill_value(self):
        origin = RegularGridPositions((2, 2, 1), (2.0, 2.0, 1.0))
        target = RegularGridPositions((4, 2, 1), (4.0, 2.0, 1.0))
        out = interpolate(np.ones((2, 2, 1)), origin, target, fill_value=-1.0)
        np.testing.assert_array_equal(out[:, 0, 0], [-1.0, 1.0, 1.0, -1.0])

    def test_singleton_axis_is_broadcast(self):
        origin = RegularGridPositions((2, 2, 1), (2.0, 2.0, 1.0))
        target = RegularGridPositions((2, 2, 3), (2.0, 2.0, 3.0))
        values = np.arange(4.0).reshape(2, 2, 1)
        out = interpolate(values, origin, target)
        self.assertEqual(out.shape, (2, 2, 3))
        for z in range(3):
            np.testing.assert_allclose(out[:, :, z], values[:, :, 0])


if __name__ == '__main__':
    unittest.main()

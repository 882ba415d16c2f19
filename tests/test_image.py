import unittest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.grid import RegularGridPositions
from mpireco.image import image_coordinates, init_image, ImageWriter, vec_im_to_im, im_to_vec_im
from mpireco.exceptions import ShapeMismatchError


class TestImageCoordinates(unittest.TestCase):
    def setUp(self):
        self.grid = RegularGridPositions((4, 2, 1), (0.04, 0.02, 0.002), (0.01, 0.0, 0.0))

    def test_coordinates_follow_grid(self):
        coords = image_coordinates(self.grid, 3, cycle_duration=0.1, n_averages=2)
        np.testing.assert_allclose(coords['x'], self.grid.positions(0))
        np.testing.assert_allclose(coords['y'], self.grid.positions(1))
        np.testing.assert_allclose(coords['time'], [0.0, 0.2, 0.4])

    def test_gradient_ratio_and_focus_field(self):
        coords = image_coordinates(self.grid, 1, cycle_duration=1.0, gradient_sf=(1.0, 1.0, 2.0),
                                   gradient_meas=(2.0, 2.0, 4.0), ff_pos=(0.1, 0.0, 0.0))
        # Spacing halves and the offset is scaled around the focus field position
        np.testing.assert_allclose(coords['x'], 0.1 + 0.5 * self.grid.positions(0))


class TestImageWriter(unittest.TestCase):
    def setUp(self):
        self.grid = RegularGridPositions((2, 2, 1), (1.0, 1.0, 1.0))
        self.image = init_image(self.grid, 3, attrs={'note': 'test'})

    def test_init(self):
        self.assertEqual(self.image.dims, ('x', 'y', 'z', 'time'))
        self.assertEqual(self.image.dtype, np.float32)
        self.assertEqual(self.image.attrs['note'], 'test')
        with self.assertRaises(ShapeMismatchError):
            init_image(RegularGridPositions((2, 2), (1.0, 1.0), (0.0, 0.0)), 1)

    def test_sequential_writes(self):
        writer = ImageWriter(self.image)
        writer.write(np.arange(4.0))
        writer.write(np.stack([np.full(4, 5.0), np.full(4, 6.0)], axis=1))
        self.assertEqual(writer.cursor, 3)
        np.testing.assert_array_equal(self.image.values[..., 0].reshape(-1), np.arange(4.0))
        np.testing.assert_array_equal(self.image.values[..., 2], 6.0)
        with self.assertRaises(ShapeMismatchError):
            writer.write(np.zeros(4))

    def test_voxel_mismatch(self):
        with self.assertRaises(ShapeMismatchError):
            ImageWriter(self.image).write(np.zeros((5, 1)))

    def test_color_axis_round_trip(self):
        ImageWriter(self.image).write(np.arange(12.0).reshape(4, 3))
        im = vec_im_to_im(self.image)
        self.assertEqual(im.dims, ('color', 'x', 'y', 'z', 'time'))
        self.assertEqual(im.attrs['note'], 'test')
        np.testing.assert_array_equal(im_to_vec_im(im), np.arange(12.0).reshape(4, 3))
        self.assertEqual(len(vec_im_to_im([self.image, self.image])), 2)


if __name__ == '__main__':
    unittest.main()

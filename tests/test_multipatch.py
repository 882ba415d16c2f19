import unittest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.multipatch import resolve_mapping, build_block_matrix, patch_grids, MultiPatchWriter, combine_patches
from mpireco.grid import RegularGridPositions
from mpireco.image import init_image
from mpireco.exceptions import ConfigurationError, ShapeMismatchError


class TestMapping(unittest.TestCase):
    def test_defaults(self):
        np.testing.assert_array_equal(resolve_mapping(3, 3), [0, 1, 2])
        np.testing.assert_array_equal(resolve_mapping(1, 4), [0, 0, 0, 0])

    def test_explicit_and_invalid(self):
        np.testing.assert_array_equal(resolve_mapping(2, 4, [0, 1, 1, 0]), [0, 1, 1, 0])
        with self.assertRaises(ConfigurationError):
            resolve_mapping(2, 3)
        with self.assertRaises(ConfigurationError):
            resolve_mapping(2, 3, [0, 1])
        with self.assertRaises(ConfigurationError):
            resolve_mapping(2, 2, [0, 2])


class TestBlockMatrix(unittest.TestCase):
    def test_block_layout(self):
        A0 = np.ones((2, 3))
        A1 = 2 * np.ones((2, 4))
        A, counts = build_block_matrix([A0, A1], [1, 0, 1])
        self.assertEqual(A.shape, (6, 11))
        self.assertEqual(counts, [4, 3, 4])
        np.testing.assert_array_equal(A[0:2, 0:4], 2)
        np.testing.assert_array_equal(A[2:4, 4:7], 1)
        np.testing.assert_array_equal(A[0:2, 4:], 0)
        with self.assertRaises(ShapeMismatchError):
            build_block_matrix([A0, np.ones((3, 3))], [0, 1])

    def test_patch_grids(self):
        grids = [RegularGridPositions((4, 4, 1), (0.02, 0.02, 0.001))]
        ff_pos = np.array([[-0.01, 0.0, 0.0], [0.01, 0.0, 0.0]])
        out = patch_grids(grids, [0, 0], ff_pos, grid_center=[[0.0, 0.002, 0.0]], ratio=0.5)
        self.assertEqual(out[0].shape, (4, 4, 1))
        np.testing.assert_allclose(out[0].fov, [0.01, 0.01, 0.0005])
        np.testing.assert_allclose(out[1].center, [0.01, 0.001, 0.0])


class TestMultiPatchWriter(unittest.TestCase):
    def setUp(self):
        self.grids = [RegularGridPositions(s, (1.0, 1.0, 1.0)) for s in [(2, 2, 1), (3, 2, 1), (3, 3, 1)]]
        self.images = [init_image(g, 2) for g in self.grids]

    def test_columns_are_split_per_patch(self):
        writer = MultiPatchWriter(self.images, [4, 6, 9])
        c = np.concatenate([np.full((k, 2), i, dtype=float) for i, k in enumerate([4, 6, 9])])
        writer.write(c[:, :1])
        writer.write(c[:, 1:])
        self.assertEqual(writer.cursors, [2, 2, 2])
        for i, im in enumerate(writer.images):
            np.testing.assert_array_equal(im.values, i)

    def test_mismatches(self):
        with self.assertRaises(ShapeMismatchError):
            MultiPatchWriter(self.images, [4, 6, 8])
        writer = MultiPatchWriter(self.images, [4, 6, 9])
        with self.assertRaises(ShapeMismatchError):
            writer.write(np.zeros((18, 1)))


class TestCombinePatches(unittest.TestCase):
    def _image(self, grid, value):
        im = init_image(grid, 1)
        im.data[:] = value
        return im

    def test_adjacent_patches(self):
        left = RegularGridPositions((2, 2, 1), (2.0, 2.0, 1.0), (-1.0, 0.0, 0.0))
        right = RegularGridPositions((2, 2, 1), (2.0, 2.0, 1.0), (1.0, 0.0, 0.0))
        joint = combine_patches([self._image(left, 1.0), self._image(right, 3.0)], [left, right])
        self.assertEqual(joint.shape, (4, 2, 1, 1))
        np.testing.assert_allclose(joint.coords['x'].values, [-1.5, -0.5, 0.5, 1.5])
        np.testing.assert_array_equal(joint.values[:, 0, 0, 0], [1, 1, 3, 3])

    def test_overlap_is_averaged(self):
        a = RegularGridPositions((2, 1, 1), (2.0, 1.0, 1.0), (0.0, 0.0, 0.0))
        b = RegularGridPositions((2, 1, 1), (2.0, 1.0, 1.0), (1.0, 0.0, 0.0))
        joint = combine_patches([self._image(a, 1.0), self._image(b, 2.0)], [a, b])
        self.assertEqual(joint.shape, (3, 1, 1, 1))
        np.testing.assert_allclose(joint.values[:, 0, 0, 0], [1.0, 1.5, 2.0])


if __name__ == '__main__':
    unittest.main()

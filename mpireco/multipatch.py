"""
Multi-patch assembly.

A multi-patch acquisition records one period per patch. Each patch is
modelled by the system matrix of the calibration it is mapped to; the joint
operator is block diagonal with period-major row ranges, and every solved
column is split back into per-patch voxel blocks.
"""

import logging
import numpy as np
import scipy.linalg
import xarray as xr
from typing import List, Optional, Sequence, Tuple

from .exceptions import ConfigurationError, ShapeMismatchError
from .grid import RegularGridPositions
from .image import ImageWriter, SPATIAL_DIMS

logger = logging.getLogger(__name__)


def resolve_mapping(num_calibrations: int, num_periods: int,
                    mapping: Optional[Sequence[int]] = None) -> np.ndarray:
    """
    Calibration index used for every period (0-based).

    Defaults to the identity when there is one calibration per period and to
    all zeros when a single calibration serves every period.
    """
    if mapping is None:
        if num_calibrations == num_periods:
            return np.arange(num_periods)
        if num_calibrations == 1:
            return np.zeros(num_periods, dtype=int)
        raise ConfigurationError(
            f"Cannot infer a mapping of {num_periods} periods onto {num_calibrations} calibrations; "
            "pass `mapping` explicitly.")
    mapping = np.asarray(mapping, dtype=int).reshape(-1)
    if len(mapping) != num_periods:
        raise ConfigurationError(f"Mapping has {len(mapping)} entries but the measurement has {num_periods} periods.")
    if mapping.min() < 0 or mapping.max() >= num_calibrations:
        raise ConfigurationError(
            f"Mapping {mapping.tolist()} refers to calibrations outside [0, {num_calibrations}).")
    return mapping


def build_block_matrix(matrices: Sequence[np.ndarray], mapping: Sequence[int]) -> Tuple[np.ndarray, List[int]]:
    """
    Block-diagonal operator with one (channels x voxels) block per period.

    Returns:
        Tuple[np.ndarray, List[int]]: The operator and the voxel count of every patch.
    """
    blocks = [np.asarray(matrices[m]) for m in mapping]
    rows = {b.shape[0] for b in blocks}
    if len(rows) != 1:
        raise ShapeMismatchError(f"All patch matrices must have the same number of rows, got {sorted(rows)}.")
    voxel_counts = [b.shape[1] for b in blocks]
    return scipy.linalg.block_diag(*blocks), voxel_counts


def patch_grids(grids: Sequence[RegularGridPositions], mapping: Sequence[int],
                ff_pos: np.ndarray, grid_center: Optional[np.ndarray] = None,
                ratio: float = 1.0) -> List[RegularGridPositions]:
    """
    Physical grid of every patch.

    Patch p uses the grid of calibration mapping[p], centred at
    ff_pos[p] + grid_center[mapping[p]] and scaled by the gradient ratio.
    """
    ff_pos = np.asarray(ff_pos, dtype=float).reshape(len(mapping), -1)
    if grid_center is None:
        grid_center = np.zeros((len(grids), grids[0].ndim))
    grid_center = np.asarray(grid_center, dtype=float).reshape(len(grids), -1)
    out = []
    for p, m in enumerate(mapping):
        g = grids[m]
        out.append(RegularGridPositions(g.shape, np.asarray(g.fov) * ratio,
                                        ff_pos[p] + grid_center[m] * ratio))
    return out


class MultiPatchWriter:
    """Routes every solved column block to the per-patch images."""

    def __init__(self, images: Sequence[xr.DataArray], voxel_counts: Sequence[int]):
        if len(images) != len(voxel_counts):
            raise ConfigurationError(f"{len(images)} images for {len(voxel_counts)} patches.")
        self.writers = [ImageWriter(im) for im in images]
        self.voxel_counts = [int(k) for k in voxel_counts]
        for w, k in zip(self.writers, self.voxel_counts):
            if w.num_voxels != k:
                raise ShapeMismatchError(f"Patch image has {w.num_voxels} voxels, patch matrix has {k}.")
        self.offsets = np.concatenate([[0], np.cumsum(self.voxel_counts)])

    @property
    def images(self) -> List[xr.DataArray]:
        return [w.image for w in self.writers]

    @property
    def cursors(self) -> List[int]:
        return [w.cursor for w in self.writers]

    def write(self, c: np.ndarray) -> None:
        c = np.asarray(c)
        if c.ndim == 1:
            c = c[:, None]
        if c.shape[0] != self.offsets[-1]:
            raise ShapeMismatchError(
                f"Solved block has {c.shape[0]} voxels, patches sum up to {self.offsets[-1]}.")
        for i, w in enumerate(self.writers):
            w.write(c[self.offsets[i]:self.offsets[i + 1]])


def combine_patches(images: Sequence[xr.DataArray], grids: Sequence[RegularGridPositions]) -> xr.DataArray:
    """
    Places patch images onto the joint grid covering all of them.

    The joint grid uses the voxel spacing of the first patch. Every patch voxel
    is assigned to the joint voxel containing its centre; overlapping
    contributions are averaged and uncovered voxels stay zero.
    """
    if len(images) == 0:
        raise ConfigurationError("No patch images to combine.")
    spacing = grids[0].spacing
    lower = np.min([g.extent[0] for g in grids], axis=0)
    upper = np.max([g.extent[1] for g in grids], axis=0)
    shape = np.maximum(np.round((upper - lower) / spacing).astype(int), 1)
    joint = RegularGridPositions(shape, shape * spacing, lower + 0.5 * shape * spacing)

    num_time = images[0].sizes['time']
    total = np.zeros(tuple(joint.shape) + (num_time,))
    count = np.zeros(joint.shape)
    for im, g in zip(images, grids):
        data = im.transpose(*(SPATIAL_DIMS + ('time',))).values
        index = [np.clip(np.floor((g.positions(d) - lower[d]) / spacing[d]).astype(int), 0, joint.shape[d] - 1)
                 for d in range(joint.ndim)]
        ix, iy, iz = np.meshgrid(*index, indexing='ij')
        np.add.at(total, (ix, iy, iz), data)
        np.add.at(count, (ix, iy, iz), 1)

    covered = count > 0
    total[covered] /= count[covered][:, None]
    logger.debug("Combined %d patches onto grid %s", len(images), joint.shape)

    coords = {dim: joint.positions(d) for d, dim in enumerate(SPATIAL_DIMS)}
    coords['time'] = images[0].coords['time'].values
    return xr.DataArray(total.astype(np.float32), dims=SPATIAL_DIMS + ('time',), coords=coords,
                        attrs=dict(images[0].attrs))

"""Regular voxel grids and resampling of gridded data between them."""

import numpy as np
from dataclasses import dataclass
from typing import Tuple, Sequence
from scipy.interpolate import RegularGridInterpolator

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class RegularGridPositions:
    """
    A regular voxel lattice described by its voxel counts, field of view and
    center. Positions refer to voxel centers; all lengths are in metres.

    Two grids compare equal when shape, fov and center are identical. Use
    `isclose` for a comparison with floating point tolerance.
    """
    shape: Tuple[int, ...]
    fov: Tuple[float, ...]
    center: Tuple[float, ...] = (0.0, 0.0, 0.0)

    def __post_init__(self):
        shape = tuple(int(s) for s in np.ravel(self.shape))
        fov = tuple(float(v) for v in np.ravel(self.fov))
        center = tuple(float(v) for v in np.ravel(self.center))
        if not (len(shape) == len(fov) == len(center)):
            raise ConfigurationError(
                f"Grid shape {shape}, fov {fov} and center {center} must have the same length.")
        if any(s < 1 for s in shape):
            raise ConfigurationError(f"Grid shape must be positive in every dimension, got {shape}.")
        if any(v <= 0 for v in fov):
            raise ConfigurationError(f"Grid field of view must be positive in every dimension, got {fov}.")
        object.__setattr__(self, 'shape', shape)
        object.__setattr__(self, 'fov', fov)
        object.__setattr__(self, 'center', center)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def num_voxels(self) -> int:
        return int(np.prod(self.shape))

    @property
    def spacing(self) -> np.ndarray:
        return np.asarray(self.fov) / np.asarray(self.shape)

    @property
    def origin(self) -> np.ndarray:
        """Position of the first voxel center."""
        return np.asarray(self.center) - 0.5 * np.asarray(self.fov) + 0.5 * self.spacing

    @property
    def extent(self) -> Tuple[np.ndarray, np.ndarray]:
        """Lower and upper corner of the covered volume."""
        half = 0.5 * np.asarray(self.fov)
        return np.asarray(self.center) - half, np.asarray(self.center) + half

    def positions(self, axis: int) -> np.ndarray:
        """Voxel center coordinates along one axis."""
        return self.origin[axis] + self.spacing[axis] * np.arange(self.shape[axis])

    def shifted(self, center: Sequence[float]) -> "RegularGridPositions":
        return RegularGridPositions(self.shape, self.fov, center)

    def isclose(self, other: "RegularGridPositions", rtol: float = 1e-9, atol: float = 1e-12) -> bool:
        if self.shape != other.shape:
            return False
        return (np.allclose(self.fov, other.fov, rtol=rtol, atol=atol) and
                np.allclose(self.center, other.center, rtol=rtol, atol=atol))


def interpolate(values: np.ndarray, origin: RegularGridPositions,
                target: RegularGridPositions, fill_value: float = 0.0) -> np.ndarray:
    """
    Resamples data given on `origin` onto `target` with (multi)linear interpolation.

    Args:
        values (np.ndarray): Data of shape `origin.shape + trailing`, where the
            trailing dimensions (e.g. frequency channels) are carried along.
        origin (RegularGridPositions): Grid the data lives on.
        target (RegularGridPositions): Grid to sample onto.
        fill_value (float): Value for target voxels outside the origin volume.

    Returns:
        np.ndarray: Array of shape `target.shape + trailing`.

    Axes on which the origin grid has a single voxel are treated as constant,
    so 2-D calibrations can be placed into a 3-D target grid.
    """
    if origin.ndim != target.ndim:
        raise ConfigurationError(
            f"Cannot interpolate between a {origin.ndim}-D and a {target.ndim}-D grid.")
    values = np.asarray(values)
    trailing = values.shape[origin.ndim:]
    if values.shape[:origin.ndim] != origin.shape:
        values = values.reshape(origin.shape + trailing)

    active = [d for d in range(origin.ndim) if origin.shape[d] > 1]
    reduced = values[tuple(slice(None) if d in active else 0 for d in range(origin.ndim))]

    if not active:
        result = np.broadcast_to(reduced, target.shape + trailing)
        return np.array(result)

    mesh = np.meshgrid(*[target.positions(d) for d in active], indexing='ij')
    query = np.stack([m.ravel() for m in mesh], axis=-1)
    points = tuple(origin.positions(d) for d in active)

    # The half-voxel band between the outermost centers and the volume border
    # takes the border value; only points outside the volume get fill_value.
    lower, upper = origin.extent
    tol = 1e-9 * np.asarray(origin.spacing)[active]
    inside = np.all((query >= lower[active] - tol) & (query <= upper[active] + tol), axis=1)
    query = np.clip(query, [p[0] for p in points], [p[-1] for p in points])

    def _sample(data):
        interpolator = RegularGridInterpolator(points, data, method='linear')
        return interpolator(query)

    if np.iscomplexobj(reduced):
        sampled = _sample(reduced.real) + 1j * _sample(reduced.imag)
    else:
        sampled = _sample(reduced)
    sampled[~inside] = fill_value

    active_shape = tuple(target.shape[d] for d in active)
    sampled = sampled.reshape(active_shape + trailing)
    # Re-insert the singleton axes and broadcast along them.
    for d in range(target.ndim):
        if d not in active:
            sampled = np.expand_dims(sampled, axis=d)
    return np.array(np.broadcast_to(sampled, target.shape + trailing))

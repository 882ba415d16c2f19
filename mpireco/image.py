"""Output image container: labelled arrays with spatial and temporal coordinates."""

import logging
import numpy as np
import xarray as xr
from typing import Optional, Sequence, Union, List

from .exceptions import ShapeMismatchError
from .grid import RegularGridPositions

logger = logging.getLogger(__name__)

SPATIAL_DIMS = ('x', 'y', 'z')


def generate_header_dict(calibration, measurement) -> dict:
    """Metadata of the data sets an image was reconstructed from."""
    header = {'measurement': measurement.header()}
    calibrations = calibration if isinstance(calibration, (list, tuple)) else [calibration]
    header['calibration'] = [c.header() for c in calibrations]
    return header


def image_coordinates(grid: RegularGridPositions, num_time: int, *,
                      cycle_duration: float,
                      n_averages: int = 1,
                      gradient_sf: Sequence[float] = (1.0, 1.0, 1.0),
                      gradient_meas: Sequence[float] = (1.0, 1.0, 1.0),
                      ff_pos: Sequence[float] = (0.0, 0.0, 0.0)) -> dict:
    """
    Physical coordinates of the reconstructed voxels.

    A calibration recorded at a different gradient strength than the
    measurement is rescaled by G_sf / G_meas (first gradient component).
    """
    ratio = 1.0
    if gradient_meas[0] != 0:
        ratio = float(gradient_sf[0]) / float(gradient_meas[0])
    spacing = grid.spacing * ratio
    offset = (np.asarray(ff_pos, dtype=float)
              + (np.asarray(grid.center) - 0.5 * np.asarray(grid.fov)) * ratio
              + 0.5 * spacing)
    coords = {dim: offset[d] + spacing[d] * np.arange(grid.shape[d]) for d, dim in enumerate(SPATIAL_DIMS)}
    coords['time'] = cycle_duration * n_averages * np.arange(num_time)
    return coords


def init_image(grid: RegularGridPositions, num_time: int, coords: Optional[dict] = None,
               attrs: Optional[dict] = None) -> xr.DataArray:
    """Allocates a zero float32 image of shape grid.shape + (num_time,)."""
    if grid.ndim != 3:
        raise ShapeMismatchError(f"Images need a 3-D grid, got shape {grid.shape}.")
    if coords is None:
        coords = image_coordinates(grid, num_time, cycle_duration=1.0)
    data = np.zeros(tuple(grid.shape) + (num_time,), dtype=np.float32)
    return xr.DataArray(data, dims=SPATIAL_DIMS + ('time',), coords=coords,
                        attrs=dict(attrs) if attrs else {})


class ImageWriter:
    """
    Writes solved column blocks into consecutive time slots of one image.

    `cursor` is the next free time index; it starts at 0 and advances by the
    number of columns written.
    """
    def __init__(self, image: xr.DataArray):
        self.image = image
        self.cursor = 0

    @property
    def num_voxels(self) -> int:
        return int(np.prod(self.image.shape[:3]))

    def write(self, c: np.ndarray) -> None:
        c = np.asarray(c)
        if c.ndim == 1:
            c = c[:, None]
        if c.shape[0] != self.num_voxels:
            raise ShapeMismatchError(
                f"Solution block has {c.shape[0]} voxels, image expects {self.num_voxels}.")
        n = c.shape[1]
        if self.cursor + n > self.image.shape[3]:
            raise ShapeMismatchError(
                f"Writing {n} frames at position {self.cursor} overflows an image with "
                f"{self.image.shape[3]} frames.")
        self.image.data[..., self.cursor:self.cursor + n] = c.reshape(self.image.shape[:3] + (n,))
        self.cursor += n


def vec_im_to_im(image: Union[xr.DataArray, List[xr.DataArray]]):
    """Adds the leading color axis to a filled image, or to each image of a list."""
    if isinstance(image, (list, tuple)):
        return [vec_im_to_im(im) for im in image]
    return image.expand_dims({'color': np.arange(1)}, axis=0)




def im_to_vec_im(image: xr.DataArray) -> np.ndarray:
    """Inverse of the writer layout: (voxels, time) array of the first color channel."""
    if 'color' in image.dims:
        image = image.isel(color=0)
    image = image.transpose(*(SPATIAL_DIMS + ('time',)))
    return image.values.reshape(-1, image.shape[-1])

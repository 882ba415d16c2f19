# mpireco/plotting.py
"""Visualization of reconstructed images."""

import numpy as np
import matplotlib.pyplot as plt
import xarray as xr


def _slice(image: xr.DataArray, axis: str, index=None, frame: int = 0) -> xr.DataArray:
    if 'color' in image.dims:
        image = image.isel(color=0)
    image = image.isel(time=frame)
    if index is None:
        index = image.sizes[axis] // 2
    return image.isel({axis: index})


def plot_slice(image: xr.DataArray, axis: str = 'z', index: int = None, frame: int = 0,
               title: str = None, cmap: str = "gray", filename: str = None):
    """
    Displays or saves one slice of a reconstructed image.

    Args:
        image (xr.DataArray): Image with dims (color, x, y, z, time) or (x, y, z, time).
        axis (str, optional): Axis normal to the slice ('x', 'y' or 'z'). Defaults to 'z'.
        index (int, optional): Slice index. Defaults to the central slice.
        frame (int, optional): Time index. Defaults to 0.
        title (str, optional): Title of the plot.
        cmap (str, optional): Colormap. Defaults to "gray".
        filename (str, optional): If provided, saves the figure to this path instead of showing.
    """
    if axis not in ('x', 'y', 'z'):
        raise ValueError("axis must be one of 'x', 'y', 'z'.")
    sl = _slice(image, axis, index, frame)
    row_dim, col_dim = [d for d in ('x', 'y', 'z') if d != axis]

    fig, ax = plt.subplots()
    # Coordinates in millimetres.
    sl.transpose(col_dim, row_dim).assign_coords(
        {row_dim: sl.coords[row_dim].values * 1e3, col_dim: sl.coords[col_dim].values * 1e3}
    ).plot.imshow(ax=ax, x=row_dim, y=col_dim, cmap=cmap)
    ax.set_xlabel(f"{row_dim} / mm")
    ax.set_ylabel(f"{col_dim} / mm")
    ax.set_title(title if title else f"{axis} slice {float(sl.coords[axis]) * 1e3:.2f} mm")
    if filename:
        fig.savefig(filename)
        plt.close(fig)
    else:
        plt.show()
    return fig


def export_image(filename: str, data: np.ndarray, cmap: str = "gray", vmin: float = None, vmax: float = None):
    """Writes a 2-D array as a PNG, first axis along the image rows."""
    data = np.asarray(data)
    if data.ndim != 2:
        raise ValueError("export_image expects a 2D array.")
    if vmin is None:
        vmin = float(np.min(data))
    if vmax is None:
        vmax = float(np.max(data))
    if vmax <= vmin:
        vmax = vmin + 1.0
    plt.imsave(filename, data, cmap=cmap, vmin=vmin, vmax=vmax)

"""
Access to calibration and measurement files.

All frequency-domain data is organised as `(frames, periods, receivers,
frequencies)`. Frequency channels are addressed by the flat index
`receiver * num_frequencies + frequency` (0-based).
"""

import logging
import numpy as np
import h5py
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence, Union, List

from .exceptions import ConfigurationError, ShapeMismatchError
from .grid import RegularGridPositions

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"


class MPIFile(ABC):
    """
    Accessor interface for one calibration or measurement data set.

    Subclasses provide the metadata to `__init__` and implement
    `_read_frames`, which returns the raw frequency-domain block for a set of
    frame indices. Everything else (system matrix extraction, frame averaging,
    channel selection) is implemented here on top of these two pieces.
    """

    def __init__(self,
                 rx_frequencies: np.ndarray,
                 num_receivers: int,
                 num_frames: int,
                 num_periods: int = 1,
                 gradient: Sequence[float] = (1.0, 1.0, 1.0),
                 focus_field_positions: Optional[np.ndarray] = None,
                 cycle_duration: float = 1.0,
                 is_background_frame: Optional[np.ndarray] = None,
                 calibration_size: Optional[Sequence[int]] = None,
                 calibration_fov: Optional[Sequence[float]] = None,
                 calibration_center: Optional[Sequence[float]] = None,
                 calibration_snr: Optional[np.ndarray] = None,
                 system_matrix_path: Optional[str] = None,
                 path: Optional[str] = None):
        self._rx_frequencies = np.asarray(rx_frequencies, dtype=float)
        self._num_receivers = int(num_receivers)
        self._num_frames = int(num_frames)
        self._num_periods = int(num_periods)
        self._gradient = np.asarray(gradient, dtype=float)
        if focus_field_positions is None:
            focus_field_positions = np.zeros((self._num_periods, 3))
        self._focus_field_positions = np.atleast_2d(np.asarray(focus_field_positions, dtype=float))
        if self._focus_field_positions.shape[0] != self._num_periods:
            raise ConfigurationError(
                f"Expected {self._num_periods} focus field positions, "
                f"got {self._focus_field_positions.shape[0]}.")
        self._cycle_duration = float(cycle_duration)
        if is_background_frame is None:
            is_background_frame = np.zeros(self._num_frames, dtype=bool)
        self._is_background_frame = np.asarray(is_background_frame, dtype=bool)
        self._calibration_size = None if calibration_size is None else tuple(int(s) for s in calibration_size)
        self._calibration_fov = None if calibration_fov is None else np.asarray(calibration_fov, dtype=float)
        self._calibration_center = (np.zeros(3) if calibration_center is None
                                    else np.asarray(calibration_center, dtype=float))
        self._calibration_snr = None if calibration_snr is None else np.asarray(calibration_snr, dtype=float)
        self._system_matrix_path = system_matrix_path
        self.path = path

    def __repr__(self):
        kind = "calibration" if self.is_calibration() else "measurement"
        return (f"{type(self).__name__}({kind}, path={self.path!r}, frames={self._num_frames}, "
                f"periods={self._num_periods}, receivers={self._num_receivers}, "
                f"frequencies={self.num_frequencies()})")

    @abstractmethod
    def _read_frames(self, frames: np.ndarray) -> np.ndarray:
        """Returns the complex block of shape (len(frames), periods, receivers, frequencies)."""
        pass

    # --- metadata accessors ---

    def rx_frequencies(self) -> np.ndarray:
        return self._rx_frequencies

    def num_frequencies(self) -> int:
        return len(self._rx_frequencies)

    def num_receivers(self) -> int:
        return self._num_receivers

    def num_channels(self) -> int:
        """Total number of (receiver, frequency) channels."""
        return self.num_frequencies() * self._num_receivers

    def num_frames(self) -> int:
        return self._num_frames

    def num_periods_per_frame(self) -> int:
        return self._num_periods

    def gradient(self) -> np.ndarray:
        return self._gradient

    def focus_field_positions(self) -> np.ndarray:
        """Focus field (patch) position per period, shape (periods, 3)."""
        return self._focus_field_positions

    def cycle_duration(self) -> float:
        return self._cycle_duration

    def is_background_frame(self) -> np.ndarray:
        return self._is_background_frame

    def system_matrix_path(self) -> Optional[str]:
        return self._system_matrix_path

    def is_calibration(self) -> bool:
        return self._calibration_size is not None

    def calibration_size(self) -> tuple:
        self._require_calibration()
        return self._calibration_size

    def calibration_fov(self) -> np.ndarray:
        self._require_calibration()
        return self._calibration_fov

    def calibration_center(self) -> np.ndarray:
        """Center of the calibration grid relative to the focus field position."""
        return self._calibration_center

    def calibration_snr(self) -> np.ndarray:
        """SNR per channel, shape (receivers, frequencies)."""
        self._require_calibration()
        if self._calibration_snr is None:
            raise ConfigurationError(f"{self!r} does not provide SNR values.")
        return self._calibration_snr

    def calibration_grid(self) -> RegularGridPositions:
        return RegularGridPositions(self.calibration_size(), self.calibration_fov(), (0.0, 0.0, 0.0))

    def header(self) -> dict:
        """Flat metadata dictionary for image headers."""
        header = {
            'path': str(self.path) if self.path is not None else '',
            'numFrames': self._num_frames,
            'numPeriods': self._num_periods,
            'numReceivers': self._num_receivers,
            'numFrequencies': self.num_frequencies(),
            'cycleDuration': self._cycle_duration,
            'gradient': self._gradient.tolist(),
        }
        if self.is_calibration():
            header['calibrationSize'] = list(self._calibration_size)
            header['calibrationFov'] = self._calibration_fov.tolist()
        return header

    def _require_calibration(self):
        if not self.is_calibration():
            raise ConfigurationError(f"{self!r} is not a calibration (system matrix) data set.")

    # --- data accessors ---

    def _check_frames(self, frames) -> np.ndarray:
        if frames is None:
            return np.arange(self._num_frames)
        frames = np.atleast_1d(np.asarray(frames, dtype=int))
        if frames.size and (frames.min() < 0 or frames.max() >= self._num_frames):
            raise ConfigurationError(
                f"Frame indices must lie in [0, {self._num_frames}), got "
                f"[{frames.min()}, {frames.max()}].")
        return frames

    def _check_frequencies(self, frequencies) -> np.ndarray:
        frequencies = np.atleast_1d(np.asarray(frequencies, dtype=int))
        if frequencies.size and (frequencies.min() < 0 or frequencies.max() >= self.num_channels()):
            raise ConfigurationError(
                f"Frequency indices must lie in [0, {self.num_channels()}) for {self!r}.")
        return frequencies

    def system_matrix(self, frequencies, bg_correction: bool = False) -> np.ndarray:
        """
        Raw system matrix for the selected channels.

        Args:
            frequencies: Flat channel indices.
            bg_correction (bool): Subtract the mean of the background frames.

        Returns:
            np.ndarray: Complex array of shape (voxels, len(frequencies)).
        """
        frequencies = self._check_frequencies(frequencies)
        grid_size = self.calibration_size()
        foreground = np.flatnonzero(~self._is_background_frame)
        if len(foreground) != int(np.prod(grid_size)):
            raise ShapeMismatchError(
                f"Calibration {self!r} holds {len(foreground)} foreground frames "
                f"but its grid {grid_size} has {int(np.prod(grid_size))} voxels.")
        block = self._read_frames(foreground)[:, 0]
        S = block.reshape(len(foreground), -1)[:, frequencies]

        if bg_correction:
            background = np.flatnonzero(self._is_background_frame)
            if len(background) == 0:
                logger.warning("Background correction requested but %r has no background frames; "
                               "using the uncorrected system matrix.", self)
            else:
                bg_block = self._read_frames(background)[:, 0]
                bg = bg_block.reshape(len(background), -1)[:, frequencies]
                S = S - bg.mean(axis=0, keepdims=True)
        return S

    def measurement(self, frequencies, frames=None, num_averages: int = 1,
                    periods: Optional[Sequence[int]] = None) -> np.ndarray:
        """
        Frequency-domain measurement for the selected channels and frames.

        Consecutive groups of `num_averages` frames are averaged; the last
        group may be shorter.

        Returns:
            np.ndarray: Complex array of shape (len(frequencies), periods, ceil(len(frames)/num_averages)).
        """
        frequencies = self._check_frequencies(frequencies)
        frames = self._check_frames(frames)
        if num_averages < 1:
            raise ConfigurationError(f"num_averages must be >= 1, got {num_averages}.")
        periods = np.arange(self._num_periods) if periods is None else np.atleast_1d(np.asarray(periods, dtype=int))

        block = self._read_frames(frames)[:, periods]
        u = block.reshape(len(frames), len(periods), -1)[:, :, frequencies]

        if num_averages > 1:
            groups = [u[i:i + num_averages].mean(axis=0) for i in range(0, len(frames), num_averages)]
            u = np.stack(groups, axis=0) if groups else u[:0]
        return np.transpose(u, (2, 1, 0))


class ArrayMPIFile(MPIFile):
    """An in-memory data set built from a complex array of shape (frames, periods, receivers, frequencies)."""

    def __init__(self, data: np.ndarray, rx_frequencies: np.ndarray, **kwargs):
        data = np.asarray(data)
        if data.ndim != 4:
            raise ConfigurationError(
                f"data must have shape (frames, periods, receivers, frequencies), got {data.shape}.")
        if data.shape[3] != len(rx_frequencies):
            raise ConfigurationError(
                f"data has {data.shape[3]} frequencies but {len(rx_frequencies)} rx_frequencies were given.")
        self.data = data
        super().__init__(rx_frequencies, num_receivers=data.shape[2], num_frames=data.shape[0],
                         num_periods=data.shape[1], **kwargs)

    def _read_frames(self, frames: np.ndarray) -> np.ndarray:
        return self.data[frames]


class H5MPIFile(MPIFile):
    """
    A data set stored in an HDF5 file. Metadata is read on open, frame data
    lazily on each access, so chunked reconstruction only loads the frames of
    the current chunk.
    """

    def __init__(self, path: Union[str, Path]):
        path = str(path)
        with h5py.File(path, 'r') as f:
            if '/measurement/data' not in f:
                raise ConfigurationError(f"{path} is not an mpireco data file (missing /measurement/data).")
            shape = f['/measurement/data'].shape
            kwargs = dict(
                rx_frequencies=f['/acquisition/receiver/frequencies'][()],
                num_receivers=shape[2],
                num_frames=shape[0],
                num_periods=shape[1],
                gradient=f['/acquisition/gradient'][()],
                focus_field_positions=f['/acquisition/focusFieldPosition'][()],
                cycle_duration=float(f['/acquisition/cycleDuration'][()]),
                is_background_frame=f['/measurement/isBackgroundFrame'][()].astype(bool),
                path=path,
            )
            if 'calibration' in f:
                kwargs['calibration_size'] = f['/calibration/size'][()]
                kwargs['calibration_fov'] = f['/calibration/fieldOfView'][()]
                kwargs['calibration_center'] = f['/calibration/fieldOfViewCenter'][()]
                if 'snr' in f['calibration']:
                    kwargs['calibration_snr'] = f['/calibration/snr'][()]
            sm_path = f.attrs.get('systemMatrixPath')
            if sm_path:
                kwargs['system_matrix_path'] = sm_path.decode() if isinstance(sm_path, bytes) else str(sm_path)
        super().__init__(**kwargs)

    def _read_frames(self, frames: np.ndarray) -> np.ndarray:
        unique, inverse = np.unique(frames, return_inverse=True)
        with h5py.File(self.path, 'r') as f:
            dset = f['/measurement/data']
            if len(unique) == 0:
                return np.zeros((0,) + dset.shape[1:], dtype=dset.dtype)
            if unique[-1] - unique[0] + 1 == len(unique):
                block = dset[int(unique[0]):int(unique[-1]) + 1]
            else:
                block = dset[unique.tolist()]
        return block[inverse]


class MultiMPIFile(MPIFile):
    """
    Several single data sets acting as one. For measurements, every member
    contributes its periods (patches) to a joint multi-period measurement.
    For calibrations, the members are the per-patch system matrices and are
    iterated over individually.
    """

    def __init__(self, files: Sequence[Union[MPIFile, str, Path]]):
        self.files: List[MPIFile] = [f if isinstance(f, MPIFile) else H5MPIFile(f) for f in files]
        if not self.files:
            raise ConfigurationError("MultiMPIFile needs at least one file.")
        first = self.files[0]
        for f in self.files[1:]:
            if f.num_channels() != first.num_channels():
                raise ConfigurationError(f"{f!r} and {first!r} have a different number of channels.")
        num_frames = min(f.num_frames() for f in self.files)
        focus = np.concatenate([f.focus_field_positions() for f in self.files], axis=0)
        super().__init__(
            first.rx_frequencies(),
            num_receivers=first.num_receivers(),
            num_frames=num_frames,
            num_periods=sum(f.num_periods_per_frame() for f in self.files),
            gradient=first.gradient(),
            focus_field_positions=focus,
            cycle_duration=first.cycle_duration(),
            is_background_frame=first.is_background_frame()[:num_frames],
            calibration_size=first._calibration_size,
            calibration_fov=first._calibration_fov,
            calibration_center=first._calibration_center,
            calibration_snr=first._calibration_snr,
            system_matrix_path=first.system_matrix_path(),
            path=first.path,
        )

    def __len__(self):
        return len(self.files)

    def __iter__(self):
        return iter(self.files)

    def __getitem__(self, index):
        return self.files[index]

    def _read_frames(self, frames: np.ndarray) -> np.ndarray:
        return np.concatenate([f._read_frames(frames) for f in self.files], axis=1)


def open_mpi_file(path) -> MPIFile:
    """Opens a data file, or a list of files as a MultiMPIFile."""
    if isinstance(path, MPIFile):
        return path
    if isinstance(path, (list, tuple)):
        return MultiMPIFile(path)
    if not Path(path).exists():
        raise ConfigurationError(f"Data file {path} does not exist.")
    return H5MPIFile(path)


def save_mpi_file(path: Union[str, Path], mpi_file: MPIFile) -> None:
    """Writes any MPIFile (all frames) to the HDF5 layout read by H5MPIFile."""
    data = mpi_file._read_frames(np.arange(mpi_file.num_frames()))
    with h5py.File(str(path), 'w') as f:
        f.attrs['version'] = FORMAT_VERSION
        if mpi_file.system_matrix_path():
            f.attrs['systemMatrixPath'] = mpi_file.system_matrix_path()
        f.create_dataset('/measurement/data', data=data)
        f.create_dataset('/measurement/isBackgroundFrame',
                         data=mpi_file.is_background_frame().astype(np.uint8))
        f.create_dataset('/acquisition/receiver/frequencies', data=mpi_file.rx_frequencies())
        f.create_dataset('/acquisition/gradient', data=mpi_file.gradient())
        f.create_dataset('/acquisition/focusFieldPosition', data=mpi_file.focus_field_positions())
        f.create_dataset('/acquisition/cycleDuration', data=mpi_file.cycle_duration())
        if mpi_file.is_calibration():
            f.create_dataset('/calibration/size', data=np.asarray(mpi_file.calibration_size()))
            f.create_dataset('/calibration/fieldOfView', data=mpi_file.calibration_fov())
            f.create_dataset('/calibration/fieldOfViewCenter', data=mpi_file.calibration_center())
            if mpi_file._calibration_snr is not None:
                f.create_dataset('/calibration/snr', data=mpi_file.calibration_snr())
    logger.debug("Wrote %r to %s", mpi_file, path)

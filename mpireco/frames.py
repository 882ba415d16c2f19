"""Chunked reconstruction of long measurement sequences with bounded memory."""

import logging
import numpy as np
from tqdm import tqdm
from typing import List, Optional, Sequence

from .exceptions import ConfigurationError, ShapeMismatchError

logger = logging.getLogger(__name__)


def split_range(frames: Sequence[int], max_length: int) -> List[np.ndarray]:
    """Splits `frames` into consecutive pieces of at most `max_length` elements."""
    if max_length < 1:
        raise ConfigurationError(f"Chunk length must be >= 1, got {max_length}.")
    frames = np.asarray(frames, dtype=int)
    return [frames[i:i + max_length] for i in range(0, len(frames), max_length)]


def chunk_frames(frames: Sequence[int], chunk_size: int, n_averages: int = 1) -> List[np.ndarray]:
    """
    Chunks frames so that no group of `n_averages` consecutive frames is split.

    The chunk length is `chunk_size` rounded down to a multiple of
    `n_averages`, but at least `n_averages`.
    A chunk is therefore longer than `chunk_size` when `n_averages` exceeds it.
    """
    if n_averages < 1:
        raise ConfigurationError(f"n_averages must be >= 1, got {n_averages}.")
    # An averaging group is never split, even if it exceeds chunk_size.
    length = max(n_averages, (chunk_size // n_averages) * n_averages)
    return split_range(frames, length)


def num_output_frames(num_frames: int, n_averages: int = 1) -> int:
    return -(-num_frames // n_averages)


def to_solver_rows(u: np.ndarray, load_as_real: bool = False) -> np.ndarray:
    """
    Arranges a measurement block of shape (channels, periods, L) as solver
    rows (periods * channels, L), period-major. With `load_as_real` each
    complex row becomes two rows (real, imaginary).
    """
    u = np.asarray(u)
    num_channels, num_periods, num_cols = u.shape
    rows = np.transpose(u, (1, 0, 2)).reshape(num_periods * num_channels, num_cols)
    if load_as_real:
        real = np.empty((2 * rows.shape[0], num_cols), dtype=rows.real.dtype)
        real[0::2] = rows.real
        real[1::2] = rows.imag
        rows = real
    return rows


def get_background(background, frequencies: np.ndarray, bg_frames: Optional[Sequence[int]], *,
                   periods: Optional[Sequence[int]] = None) -> Optional[np.ndarray]:
    """
    Mean background over all `bg_frames`, shape (channels, periods, 1).

    Returns None (no subtraction) when there is no background or no frames.
    A single-period background is reused for every period.
    """
    if background is None:
        return None
    if bg_frames is None or len(bg_frames) == 0:
        logger.warning("No background frames given; continuing without background subtraction.")
        return None
    bg_frames = np.asarray(bg_frames, dtype=int)
    num_periods = 1 if periods is None else len(periods)
    if background.num_periods_per_frame() == 1 and num_periods > 1:
        u_bg = background.measurement(frequencies, bg_frames, num_averages=len(bg_frames), periods=[0])
        u_bg = np.repeat(u_bg, num_periods, axis=1)
    else:
        u_bg = background.measurement(frequencies, bg_frames, num_averages=len(bg_frames), periods=periods)
    logger.debug("Background averaged over %d frames", len(bg_frames))
    return u_bg


def set_noise_freq_to_zero(u: np.ndarray, noise_freq_thresh: float, noise_level: np.ndarray) -> np.ndarray:
    """
    Zeros entries whose magnitude is below `noise_freq_thresh` times the
    noise level of their channel.

    Args:
        u (np.ndarray): Measurement block (channels, periods, L).
        noise_freq_thresh (float): Relative threshold.
        noise_level (np.ndarray): Noise amplitude per channel, broadcastable to `u`.
    """
    u = np.array(u, copy=True)
    noise_level = np.asarray(noise_level)
    if noise_level.ndim == 1:
        noise_level = noise_level[:, None, None]
    u[np.abs(u) < noise_freq_thresh * noise_level] = 0
    return u


def noise_level_from_background(background, frequencies, bg_frames) -> np.ndarray:
    """Standard deviation of every channel over the background frames."""
    u_bg = background.measurement(frequencies, np.asarray(bg_frames, dtype=int), periods=[0])
    return np.std(u_bg.reshape(len(frequencies), -1), axis=1)


class FrameStreamer:
    """
    Runs a solver over a frame range chunk by chunk.

    For each chunk the measurement of exactly the selected channels is read
    (with averaging), corrected and solved; the solution columns go to
    `writer.write` in increasing frame order.
    """
    def __init__(self, solver, measurement, frequencies: np.ndarray, writer, *,
                 periods: Optional[Sequence[int]] = None,
                 chunk_size: int = 100,
                 n_averages: int = 1,
                 background: Optional[np.ndarray] = None,
                 load_as_real: bool = False,
                 noise_freq_thresh: float = 0.0,
                 noise_level: Optional[np.ndarray] = None,
                 progress: bool = True):
        if noise_freq_thresh > 0 and noise_level is None:
            raise ConfigurationError("noise_freq_thresh requires a noise level (background frames).")
        self.solver = solver
        self.measurement = measurement
        self.frequencies = np.asarray(frequencies, dtype=int)
        self.writer = writer
        self.periods = periods
        self.chunk_size = chunk_size
        self.n_averages = n_averages
        self.background = background
        self.load_as_real = load_as_real
        self.noise_freq_thresh = noise_freq_thresh
        self.noise_level = noise_level
        self.progress = progress

    def run(self, frames: Sequence[int]) -> int:
        """Reconstructs `frames`; returns the number of output frames written."""
        chunks = chunk_frames(frames, self.chunk_size, self.n_averages)
        total = num_output_frames(len(frames), self.n_averages)
        written = 0
        logger.info("Reconstructing %d frames in %d chunk(s)", len(frames), len(chunks))

        with tqdm(total=total, desc="Reconstructing", unit="frame", disable=not self.progress) as bar:
            for i, chunk in enumerate(chunks):
                u = self.measurement.measurement(self.frequencies, chunk, num_averages=self.n_averages,
                                                 periods=self.periods)
                if self.background is not None:
                    u = u - self.background
                if self.noise_freq_thresh > 0:
                    u = set_noise_freq_to_zero(u, self.noise_freq_thresh, self.noise_level)
                U = to_solver_rows(u, self.load_as_real)

                if i == 0 and U.shape[0] != self.solver.shape[0]:
                    raise ShapeMismatchError(
                        f"Measurement provides {U.shape[0]} rows per frame but the system matrix "
                        f"has {self.solver.shape[0]}.")

                c = self.solver.solve_batch(U)
                self.writer.write(c)
                written += c.shape[1]
                bar.update(c.shape[1])
                logger.debug("Chunk %d/%d: frames %d..%d", i + 1, len(chunks), chunk[0], chunk[-1])
        return written

"""Module for simulated calibration and measurement data sets, for examples, tests and benchmarks."""

import numpy as np
from typing import Optional, Sequence, Tuple, Union, List

from .files import ArrayMPIFile, MPIFile


def phantom_disc(shape: Tuple[int, ...], radius: float = 0.3, value: float = 1.0,
                 center: Tuple[float, float] = (0.0, 0.0)) -> np.ndarray:
    """
    Flat voxel vector of a disc in the x-y plane, extended along z.

    Args:
        shape (Tuple[int, ...]): Grid shape (nx, ny, nz).
        radius (float, optional): Radius relative to the half field of view. Defaults to 0.3.
        value (float, optional): Intensity inside the disc. Defaults to 1.0.
        center (Tuple[float, float], optional): Disc centre in relative coordinates [-1, 1].

    Returns:
        np.ndarray: Phantom of length prod(shape).
    """
    x = (np.arange(shape[0]) + 0.5) / shape[0] * 2 - 1
    y = (np.arange(shape[1]) + 0.5) / shape[1] * 2 - 1
    xx, yy = np.meshgrid(x, y, indexing='ij')
    disc = ((xx - center[0]) ** 2 + (yy - center[1]) ** 2 <= radius ** 2).astype(float) * value
    return np.repeat(disc[:, :, None], shape[2], axis=2).reshape(-1)


def simulate_calibration(shape: Tuple[int, int, int] = (8, 8, 1),
                         fov: Sequence[float] = (0.02, 0.02, 0.001),
                         center: Sequence[float] = (0.0, 0.0, 0.0),
                         num_frequencies: int = 26,
                         num_receivers: int = 2,
                         bandwidth: float = 1.25e6,
                         num_background_frames: int = 0,
                         background_level: float = 0.0,
                         gradient: Sequence[float] = (1.0, 1.0, 2.0),
                         seed: int = 0) -> ArrayMPIFile:
    """
    Random complex system matrix packaged as a calibration data set.

    Each channel is a smooth spatial pattern (a random plane wave with a
    random amplitude envelope). The SNR of a channel is its mean amplitude in
    units of a fixed noise floor, so weak channels can be filtered out.

    Args:
        shape: Calibration grid (nx, ny, nz).
        fov: Field of view in metres.
        center: Field of view center in metres.
        num_frequencies (int): Frequencies per receiver, spread evenly over [0, bandwidth].
        num_receivers (int): Number of receive channels.
        bandwidth (float): Highest receive frequency in Hz.
        num_background_frames (int): Empty measurements appended after the voxel frames.
        background_level (float): Constant offset added to every frame (removable by background correction).
        gradient: Selection field gradient in T/m.
        seed (int): Seed of the random generator.

    Returns:
        ArrayMPIFile: Calibration with frames ordered as the C-order voxel index.
    """
    rng = np.random.default_rng(seed)
    num_voxels = int(np.prod(shape))
    num_channels = num_frequencies * num_receivers

    grids = np.meshgrid(*[np.linspace(-1, 1, n) for n in shape], indexing='ij')
    pos = np.stack([g.reshape(-1) for g in grids], axis=1)
    k = rng.normal(scale=2.0, size=(num_channels, 3))
    envelope = rng.uniform(0.05, 2.0, size=num_channels)
    S = envelope[None, :] * np.exp(1j * pos @ k.T) * (1.0 + 0.5 * rng.random((num_voxels, num_channels)))

    data = np.zeros((num_voxels + num_background_frames, 1, num_receivers, num_frequencies), dtype=complex)
    data[:num_voxels, 0] = S.reshape(num_voxels, num_receivers, num_frequencies)
    data += background_level

    is_background = np.zeros(num_voxels + num_background_frames, dtype=bool)
    is_background[num_voxels:] = True

    noise_floor = 0.05
    snr = (np.abs(S).mean(axis=0) / noise_floor).reshape(num_receivers, num_frequencies)

    return ArrayMPIFile(data, np.linspace(0, bandwidth, num_frequencies),
                        gradient=gradient,
                        is_background_frame=is_background,
                        calibration_size=shape,
                        calibration_fov=fov,
                        calibration_center=center,
                        calibration_snr=snr)


def simulate_measurement(calibration: Union[MPIFile, Sequence[MPIFile]],
                         phantom: Union[np.ndarray, Sequence[np.ndarray]],
                         num_frames: int = 1,
                         noise_level: float = 0.0,
                         num_background_frames: int = 0,
                         focus_field_positions: Optional[np.ndarray] = None,
                         system_matrix_path: Optional[str] = None,
                         cycle_duration: float = 6.528e-4,
                         gradient: Optional[Sequence[float]] = None,
                         seed: int = 0) -> ArrayMPIFile:
    """
    Noise-free (or noisy) measurement of a phantom seen through one or more calibrations.

    Args:
        calibration: Calibration, or one calibration per period (patch).
        phantom: Flat voxel vector, (voxels, num_frames) array for dynamic
            phantoms, or one of these per period.
        num_frames (int): Number of foreground frames.
        noise_level (float): Standard deviation of complex Gaussian noise.
        num_background_frames (int): Frames of pure noise appended at the end.
        focus_field_positions: (periods, 3) focus field positions in metres.
        system_matrix_path (str, optional): Stored as the default calibration.
        cycle_duration (float): Duration of one frame in seconds.
        gradient: Defaults to the gradient of the (first) calibration.
        seed (int): Seed of the random generator.

    Returns:
        ArrayMPIFile: Measurement of shape (frames, periods, receivers, frequencies).
    """
    rng = np.random.default_rng(seed)
    calibrations: List[MPIFile] = list(calibration) if isinstance(calibration, (list, tuple)) else [calibration]
    phantoms = list(phantom) if isinstance(phantom, (list, tuple)) else [phantom] * len(calibrations)
    if len(phantoms) != len(calibrations):
        raise ValueError(f"Got {len(phantoms)} phantoms for {len(calibrations)} periods.")

    first = calibrations[0]
    num_receivers, num_frequencies = first.num_receivers(), first.num_frequencies()
    total = num_frames + num_background_frames
    data = np.zeros((total, len(calibrations), num_receivers, num_frequencies), dtype=complex)

    for p, (cal, ph) in enumerate(zip(calibrations, phantoms)):
        S = cal.system_matrix(np.arange(cal.num_channels()))
        ph = np.asarray(ph, dtype=float)
        if ph.ndim == 1:
            ph = np.repeat(ph[:, None], num_frames, axis=1)
        u = (S.T @ ph).T
        data[:num_frames, p] = u.reshape(num_frames, num_receivers, num_frequencies)

    if noise_level > 0:
        data += noise_level * (rng.normal(size=data.shape) + 1j * rng.normal(size=data.shape)) / np.sqrt(2)

    is_background = np.zeros(total, dtype=bool)
    is_background[num_frames:] = True

    return ArrayMPIFile(data, first.rx_frequencies(),
                        gradient=first.gradient() if gradient is None else gradient,
                        focus_field_positions=focus_field_positions,
                        cycle_duration=cycle_duration,
                        is_background_frame=is_background,
                        system_matrix_path=system_matrix_path)

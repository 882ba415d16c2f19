"""
Entry points of the reconstruction pipeline.

All call shapes (parameter mapping, file paths, open data sets, explicit
frequency selection, raw arrays) funnel into `reconstruction_with_frequencies`,
which dispatches to the single-patch or the multi-patch pipeline depending on
the number of acquisition periods per frame.
"""

import dataclasses
import logging
import numpy as np
import xarray as xr
from typing import Any, List, Mapping, Optional, Sequence, Union

from .datastore import DatasetStore
from .exceptions import ConfigurationError, EmptySelectionError, ShapeMismatchError
from .files import MPIFile, MultiMPIFile, open_mpi_file
from .frames import FrameStreamer, get_background, noise_level_from_background, num_output_frames
from .frequency import select_frequencies
from .image import ImageWriter, generate_header_dict, image_coordinates, init_image, vec_im_to_im
from .multipatch import MultiPatchWriter, build_block_matrix, combine_patches, patch_grids, resolve_mapping
from .params import RecoParams, resolve_reco_params
from .solvers import create_linear_solver
from .sparse import get_sparse_transform
from .system_matrix import get_system_matrix, make_solver_handle
from .weighting import WeightingType, get_weights

logger = logging.getLogger(__name__)

Image = Union[xr.DataArray, List[xr.DataArray]]


def _calibration_list(calibration) -> List[MPIFile]:
    if isinstance(calibration, (MultiMPIFile, list, tuple)):
        return list(calibration)
    return [calibration]


def consistence_check(calibration, measurement: MPIFile) -> None:
    """Raises ConfigurationError if calibration and measurement channels are incompatible."""
    for c in _calibration_list(calibration):
        if c.num_frequencies() != measurement.num_frequencies():
            raise ConfigurationError(
                f"Calibration {c!r} has {c.num_frequencies()} frequencies, "
                f"measurement {measurement!r} has {measurement.num_frequencies()}.")
        if c.num_receivers() != measurement.num_receivers():
            raise ConfigurationError(
                f"Calibration {c!r} has {c.num_receivers()} receivers, "
                f"measurement {measurement!r} has {measurement.num_receivers()}.")


def _background(measurement: MPIFile, params: RecoParams):
    """Background data set and frames; the measurement itself if only frames are given."""
    background = params.background
    if background is not None and not isinstance(background, MPIFile):
        background = open_mpi_file(background)
    if background is None and params.bg_frames:
        background = measurement
    return background, params.bg_frames


def _frames(measurement: MPIFile, params: RecoParams) -> np.ndarray:
    if params.frames is None:
        return np.arange(measurement.num_frames())
    frames = np.asarray(params.frames, dtype=int)
    if frames.size == 0:
        raise ConfigurationError("The frame selection is empty.")
    return frames


def _select(calibration, measurement, params, background, frequencies=None) -> np.ndarray:
    if frequencies is not None:
        frequencies = np.unique(np.asarray(frequencies, dtype=int))
        if frequencies.size == 0:
            raise EmptySelectionError("An empty list of frequency channels was passed.")
        return frequencies
    bg_frames = params.bg_frames
    fg_frames = params.frames
    return select_frequencies(calibration, measurement,
                              min_freq=params.min_freq, max_freq=params.max_freq,
                              rec_channels=params.rec_channels, snr_thresh=params.snr_thresh,
                              num_used_freqs=params.num_used_freqs,
                              var_mean_thresh=params.var_mean_thresh,
                              min_amplification=params.min_amplification,
                              background=background,
                              fg_frames=fg_frames, bg_frames=bg_frames,
                              sort_by_snr=params.sort_by_snr)


def _conditioning_kwargs(params: RecoParams, sparse: bool = True) -> dict:
    return dict(bg_correction=params.bg_correction,
                load_as_real=params.load_as_real,
                gridsize=params.gridsize,
                fov=params.fov,
                center=params.center if params.center is not None else (0.0, 0.0, 0.0),
                dead_pixels=params.dead_pixels or (),
                sparse_trafo=params.sparse_trafo if sparse else None)


def _gradient_ratio(calibration: MPIFile, measurement: MPIFile) -> float:
    g_meas = measurement.gradient()[0]
    return 1.0 if g_meas == 0 else float(calibration.gradient()[0] / g_meas)


def _run(handle, grid_shape, measurement, frequencies, writer, frames, params, background, bg_frames,
         periods=None):
    sparse_trafo = get_sparse_transform(params.sparse_trafo, grid_shape)
    solver = create_linear_solver(params.solver, handle, lambd=params.lambd,
                                  relative_lambda=params.relative_lambda,
                                  sparse_trafo=sparse_trafo, iterations=params.iterations,
                                  enforce_real=params.enforce_real,
                                  enforce_positive=params.enforce_positive,
                                  device=params.device)
    u_bg = get_background(background, frequencies, bg_frames, periods=periods)
    noise_level = None
    if params.noise_freq_thresh > 0:
        if background is None or not bg_frames:
            raise ConfigurationError("noiseFreqThresh requires background frames.")
        noise_level = noise_level_from_background(background, frequencies, bg_frames)
    streamer = FrameStreamer(solver, measurement, frequencies, writer,
                             periods=periods, chunk_size=params.chunk_size,
                             n_averages=params.n_averages, background=u_bg,
                             load_as_real=params.load_as_real,
                             noise_freq_thresh=params.noise_freq_thresh,
                             noise_level=noise_level, progress=params.progress)
    streamer.run(frames)


def reconstruction_single_patch(calibration, measurement: MPIFile, params: Optional[Any] = None,
                                frequencies: Optional[np.ndarray] = None, **kwargs) -> Image:
    """
    Reconstructs a measurement with one acquisition period per frame.

    Several calibrations are modelled jointly: their system matrices share
    the measurement channels and their voxels are concatenated, giving one
    image per calibration, each on its own grid.
    """
    params = resolve_reco_params(params, **kwargs)
    consistence_check(calibration, measurement)
    background, bg_frames = _background(measurement, params)
    frequencies = _select(calibration, measurement, params, background, frequencies)
    frames = _frames(measurement, params)

    calibrations = _calibration_list(calibration)
    if len(calibrations) > 1 and params.sparse_trafo is not None:
        raise ConfigurationError("Sparse transforms are not supported with several calibration sources.")
    conditioned = [get_system_matrix(c, frequencies, **_conditioning_kwargs(params)) for c in calibrations]
    grids = [g for _, g in conditioned]
    A = np.concatenate([S for S, _ in conditioned], axis=0).T
    weights = get_weights(params.weight_type, frequencies, A, weighting_limit=params.weighting_limit,
                          calibration=calibration, background=background, bg_frames=bg_frames,
                          load_as_real=params.load_as_real)
    handle = make_solver_handle(A, params.solver, weights)

    num_time = num_output_frames(len(frames), params.n_averages)
    header = generate_header_dict(calibrations, measurement)
    images = []
    for c, grid in zip(calibrations, grids):
        coords = image_coordinates(grid, num_time, cycle_duration=measurement.cycle_duration(),
                                   n_averages=params.n_averages,
                                   gradient_sf=c.gradient(),
                                   gradient_meas=measurement.gradient(),
                                   ff_pos=measurement.focus_field_positions()[0])
        images.append(init_image(grid, num_time, coords, attrs=header))

    if len(images) == 1:
        writer = ImageWriter(images[0])
    else:
        writer = MultiPatchWriter(images, [g.num_voxels for g in grids])
    _run(handle, grids[0].shape, measurement, frequencies, writer, frames, params, background, bg_frames,
         periods=[0])

    return vec_im_to_im(images[0] if len(images) == 1 else images)


def reconstruction_multi_patch(calibration, measurement: MPIFile, params: Optional[Any] = None,
                               frequencies: Optional[np.ndarray] = None, **kwargs) -> Image:
    """
    Reconstructs a measurement whose periods are patches of a larger field of view.

    Period p is modelled by the calibration `mapping[p]`, placed at the focus
    field position `ff_pos[p]` (from the measurement unless overridden by
    `FFPos`) shifted by `SFGridCenter[mapping[p]]`.

    Returns:
        One image per patch, or a single composite image when `combine_patches` is set.
    """
    params = resolve_reco_params(params, **kwargs)
    if params.sparse_trafo is not None:
        raise ConfigurationError("Sparse transforms are not supported for multi-patch reconstruction.")
    consistence_check(calibration, measurement)
    calibrations = _calibration_list(calibration)
    num_periods = measurement.num_periods_per_frame()
    mapping = resolve_mapping(len(calibrations), num_periods, params.mapping)

    background, bg_frames = _background(measurement, params)
    frequencies = _select(calibrations, measurement, params, background, frequencies)
    frames = _frames(measurement, params)

    conditioned = [get_system_matrix(c, frequencies, **_conditioning_kwargs(params, sparse=False))
                   for c in calibrations]
    A, voxel_counts = build_block_matrix([S.T for S, _ in conditioned], mapping)

    weights = None
    weight_type = WeightingType(params.weight_type)
    if weight_type is WeightingType.NORMALIZATION:
        weights = get_weights(weight_type, frequencies, A, weighting_limit=params.weighting_limit)
    elif weight_type is not WeightingType.NONE:
        w = get_weights(weight_type, frequencies, conditioned[0][0].T, weighting_limit=params.weighting_limit,
                        calibration=calibrations[0], background=background, bg_frames=bg_frames,
                        load_as_real=params.load_as_real)
        weights = np.tile(w, num_periods)
    handle = make_solver_handle(A, params.solver, weights)

    if params.ff_pos is not None:
        ff_pos = np.asarray(params.ff_pos, dtype=float)
    else:
        ff_pos = measurement.focus_field_positions()
    if ff_pos.shape != (num_periods, 3):
        raise ConfigurationError(f"FFPos must have shape ({num_periods}, 3), got {ff_pos.shape}.")
    grid_center = None if params.sf_grid_center is None else np.asarray(params.sf_grid_center, dtype=float)
    if grid_center is not None and grid_center.shape != (len(calibrations), 3):
        raise ConfigurationError(
            f"SFGridCenter must have shape ({len(calibrations)}, 3), got {grid_center.shape}.")

    ratio = _gradient_ratio(calibrations[0], measurement)
    grids = patch_grids([g for _, g in conditioned], mapping, ff_pos, grid_center, ratio)
    num_time = num_output_frames(len(frames), params.n_averages)
    header = generate_header_dict(calibrations, measurement)
    images = [init_image(g, num_time,
                         image_coordinates(g, num_time, cycle_duration=measurement.cycle_duration(),
                                           n_averages=params.n_averages),
                         attrs=header)
              for g in grids]
    writer = MultiPatchWriter(images, voxel_counts)
    logger.info("Multi-patch reconstruction: %d periods, mapping %s", num_periods, mapping.tolist())

    _run(handle, None, measurement, frequencies, writer, frames, params, background, bg_frames,
         periods=np.arange(num_periods))

    if params.combine_patches:
        return vec_im_to_im(combine_patches(images, grids))
    return vec_im_to_im(images)


def _attach_params(image: Image, params: RecoParams) -> Image:
    provenance = params.to_dict()
    for im in (image if isinstance(image, list) else [image]):
        im.attrs['recoParams'] = provenance
    return image


def reconstruction_with_frequencies(calibration, measurement: MPIFile, frequencies: Optional[np.ndarray] = None,
                                    params: Optional[Any] = None, **kwargs) -> Image:
    """Dispatches to the single- or multi-patch pipeline and attaches the parameters."""
    params = resolve_reco_params(params, **kwargs)
    if measurement.num_periods_per_frame() > 1:
        image = reconstruction_multi_patch(calibration, measurement, params, frequencies)
    else:
        image = reconstruction_single_patch(calibration, measurement, params, frequencies)
    return _attach_params(image, params)


def reconstruction_from_params(params: Union[Mapping[str, Any], RecoParams],
                               store: Optional[DatasetStore] = None) -> Image:
    """
    Reconstructs from a parameter mapping holding `measPath` (and optionally `SFPath`).

    With a store, an existing reconstruction with identical parameters is
    loaded instead of recomputed, and new results are saved.
    """
    params = resolve_reco_params(params)
    if params.meas_path is None:
        raise ConfigurationError("Reconstruction parameters need a measurement path (measPath).")
    measurement = open_mpi_file(params.meas_path)
    sf_path = params.sf_path
    if sf_path is None:
        sf_path = measurement.system_matrix_path()
        if not sf_path:
            raise ConfigurationError(f"No SFPath given and {measurement!r} names no system matrix.")
        params = dataclasses.replace(params, sf_path=sf_path)

    if store is not None:
        reco_id = store.find_reconstruction(params)
        if reco_id is not None:
            return store.load_reconstruction(reco_id)

    calibration = open_mpi_file(list(sf_path) if isinstance(sf_path, tuple) else sf_path)
    image = reconstruction_with_frequencies(calibration, measurement, None, params)
    if store is not None:
        store.save_reconstruction(params, image)
    return image


def reconstruction(sf_or_params=None, meas=None, frequencies: Optional[np.ndarray] = None,
                   store: Optional[DatasetStore] = None, **kwargs) -> Image:
    """
    Main entry point.

    Accepted call shapes:
        reconstruction(params_mapping, store=None, **overrides)
        reconstruction(measurement)                        # system matrix path from the measurement
        reconstruction(calibration, measurement, **options)
        reconstruction(calibration, measurement, frequencies, **options)

    Calibrations and measurements may be paths, lists of paths, or open
    `MPIFile` objects.
    """
    if isinstance(sf_or_params, (Mapping, RecoParams)):
        return reconstruction_from_params(resolve_reco_params(sf_or_params, **kwargs), store)
    if sf_or_params is None:
        raise ConfigurationError("reconstruction() needs a parameter mapping, a measurement or a calibration.")

    if meas is None:
        measurement = open_mpi_file(sf_or_params)
        sf_path = measurement.system_matrix_path()
        if not sf_path:
            raise ConfigurationError(f"{measurement!r} names no system matrix; pass the calibration explicitly.")
        calibration = open_mpi_file(sf_path)
    else:
        calibration = open_mpi_file(sf_or_params)
        measurement = open_mpi_file(meas)
    return reconstruction_with_frequencies(calibration, measurement, frequencies, **kwargs)


def reconstruction_from_arrays(S: np.ndarray, u: np.ndarray, shape: Sequence[int],
                               solver: str = 'kaczmarz', sparse_trafo: Optional[str] = None,
                               weights: Optional[np.ndarray] = None, **solver_kwargs) -> np.ndarray:
    """
    Solves raw arrays without any file handling.

    Args:
        S (np.ndarray): System matrix (voxels x channels).
        u (np.ndarray): Measurements (channels,) or (channels x L).
        shape: Grid shape; prod(shape) must equal the number of voxels.
        solver (str): Solver name.
        sparse_trafo (str, optional): Basis in which to solve.
        weights (np.ndarray, optional): Channel weights.
        **solver_kwargs: Passed to `create_linear_solver` (lambd, iterations, ...).

    Returns:
        np.ndarray: Array of shape `shape + (L,)`.
    """
    S = np.asarray(S)
    shape = tuple(int(s) for s in shape)
    if S.shape[0] != int(np.prod(shape)):
        raise ShapeMismatchError(f"System matrix has {S.shape[0]} voxels, grid {shape} has {int(np.prod(shape))}.")
    U = np.asarray(u)
    if U.ndim == 1:
        U = U[:, None]
    transform = get_sparse_transform(sparse_trafo, shape)
    A = S.T if transform is None else transform.transform_matrix(S.T)
    handle = make_solver_handle(A, solver, weights)
    linear_solver = create_linear_solver(solver, handle, sparse_trafo=transform, **solver_kwargs)
    c = linear_solver.solve_batch(U)
    return c.reshape(shape + (U.shape[1],))

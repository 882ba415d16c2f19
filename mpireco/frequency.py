"""Selection of the frequency channels used for reconstruction."""

import logging
import numpy as np
from functools import reduce
from typing import Optional, Sequence, Union

from .exceptions import ConfigurationError, EmptySelectionError
from .files import MPIFile, MultiMPIFile

logger = logging.getLogger(__name__)


def _channel_indices(f: MPIFile, band: np.ndarray, rec_channels: Optional[Sequence[int]]) -> np.ndarray:
    num_receivers = f.num_receivers()
    if rec_channels is None:
        rec_channels = range(num_receivers)
    rec_channels = np.atleast_1d(np.asarray(list(rec_channels), dtype=int))
    if rec_channels.size and (rec_channels.min() < 0 or rec_channels.max() >= num_receivers):
        raise ConfigurationError(
            f"Receive channels {rec_channels.tolist()} are out of range for {num_receivers} receivers of {f!r}.")
    n_freq = f.num_frequencies()
    if rec_channels.size == 0 or band.size == 0:
        return np.zeros(0, dtype=int)
    return np.concatenate([rx * n_freq + band for rx in rec_channels]).astype(int)


def order_by_snr(f: MPIFile, indices: np.ndarray) -> np.ndarray:
    """Reorders channel indices by descending calibration SNR; ties keep index order."""
    indices = np.asarray(indices, dtype=int)
    snr = f.calibration_snr().reshape(-1)
    return indices[np.argsort(-snr[indices], kind='stable')]


def filter_frequencies(f: Union[MPIFile, Sequence[MPIFile]],
                       min_freq: float = 0.0,
                       max_freq: float = np.inf,
                       rec_channels: Optional[Sequence[int]] = None,
                       snr_thresh: float = -1,
                       num_used_freqs: int = -1,
                       sort_by_snr: bool = False) -> np.ndarray:
    """
    Selects channel indices by frequency band, receive channel and SNR.

    Args:
        f: Data set, or a list of calibrations (the selections are intersected).
        min_freq (float): Lower band limit in Hz (inclusive).
        max_freq (float): Upper band limit in Hz (inclusive).
        rec_channels: Receive channels to use (0-based). Defaults to all.
        snr_thresh (float): If > 0, keep channels with SNR >= snr_thresh.
        num_used_freqs (int): If > 0, keep only this many channels with highest SNR.
        sort_by_snr (bool): Return the channels by descending SNR instead of sorted.

    Returns:
        np.ndarray: Unique flat channel indices, sorted unless `sort_by_snr`.
    """
    if not isinstance(f, MPIFile) or isinstance(f, MultiMPIFile):
        members = list(f)
        selections = [filter_frequencies(m, min_freq=min_freq, max_freq=max_freq,
                                         rec_channels=rec_channels, snr_thresh=snr_thresh,
                                         num_used_freqs=num_used_freqs) for m in members]
        indices = reduce(np.intersect1d, selections)
        return order_by_snr(members[0], indices) if sort_by_snr else indices

    freqs = f.rx_frequencies()
    band = np.flatnonzero((freqs >= min_freq) & (freqs <= max_freq))
    indices = _channel_indices(f, band, rec_channels)

    if snr_thresh > 0 or num_used_freqs > 0:
        snr = f.calibration_snr().reshape(-1)
        if snr_thresh > 0:
            indices = indices[snr[indices] >= snr_thresh]
        if 0 < num_used_freqs < len(indices):
            order = np.argsort(-snr[indices], kind='stable')
            indices = indices[order[:num_used_freqs]]

    indices = np.unique(indices)
    return order_by_snr(f, indices) if sort_by_snr else indices


def filter_frequencies_var_mean(measurement: MPIFile,
                                background: MPIFile,
                                fg_frames: Sequence[int],
                                bg_frames: Sequence[int],
                                thresh: float,
                                min_amplification: float = 2.0,
                                min_freq: float = 0.0,
                                max_freq: float = np.inf,
                                rec_channels: Optional[Sequence[int]] = None) -> np.ndarray:
    """
    Keeps channels in which the foreground frames stand out from the background.

    A channel is kept if the foreground mean departs from the background mean
    by more than `thresh` background standard deviations and the foreground
    amplitude is at least `min_amplification` times the background amplitude.
    """
    fg_frames = np.atleast_1d(np.asarray(fg_frames, dtype=int))
    bg_frames = np.atleast_1d(np.asarray(bg_frames, dtype=int))
    if background is measurement and np.intersect1d(fg_frames, bg_frames).size > 0:
        raise ConfigurationError("Variance-mean filtering requires separate foreground and background frames.")
    if len(bg_frames) < 2:
        raise ConfigurationError("Variance-mean filtering requires at least two background frames.")

    candidates = filter_frequencies(measurement, min_freq=min_freq, max_freq=max_freq,
                                    rec_channels=rec_channels)
    if candidates.size == 0:
        return candidates

    u_fg = measurement.measurement(candidates, fg_frames)
    u_bg = background.measurement(candidates, bg_frames)
    u_fg = u_fg.reshape(len(candidates), -1)
    u_bg = u_bg.reshape(len(candidates), -1)

    mean_fg = u_fg.mean(axis=1)
    mean_bg = u_bg.mean(axis=1)
    std_bg = u_bg.std(axis=1)
    eps = np.finfo(float).tiny

    contrast = np.abs(mean_fg - mean_bg) / (std_bg + eps)
    amplification = np.abs(mean_fg) / (np.abs(mean_bg) + eps)
    keep = (contrast > thresh) & (amplification >= min_amplification)
    return candidates[keep]


def select_frequencies(calibration, measurement: MPIFile,
                       min_freq: float = 0.0,
                       max_freq: float = np.inf,
                       rec_channels: Optional[Sequence[int]] = None,
                       snr_thresh: float = -1,
                       num_used_freqs: int = -1,
                       var_mean_thresh: float = 0.0,
                       min_amplification: float = 2.0,
                       background: Optional[MPIFile] = None,
                       fg_frames: Optional[Sequence[int]] = None,
                       bg_frames: Optional[Sequence[int]] = None,
                       sort_by_snr: bool = False) -> np.ndarray:
    """
    Final channel selection for a reconstruction: calibration filters,
    optional variance-mean filter, and intersection with the channels present
    in the measurement.

    With `sort_by_snr` the channels come back by descending calibration SNR
    (of the first calibration when several are given); otherwise sorted.

    Raises:
        EmptySelectionError: If no channel survives all filters.
    """
    freq = filter_frequencies(calibration, min_freq=min_freq, max_freq=max_freq,
                              rec_channels=rec_channels, snr_thresh=snr_thresh,
                              num_used_freqs=num_used_freqs)

    if var_mean_thresh > 0:
        bg_file = measurement if background is None else background
        if fg_frames is None or bg_frames is None:
            raise ConfigurationError("var_mean_thresh requires fg_frames and bg_frames.")
        freq_var_mean = filter_frequencies_var_mean(measurement, bg_file, fg_frames, bg_frames,
                                                    thresh=var_mean_thresh,
                                                    min_amplification=min_amplification,
                                                    min_freq=min_freq, max_freq=max_freq,
                                                    rec_channels=rec_channels)
        freq = np.intersect1d(freq, freq_var_mean)

    logger.info("Frequency selection: %d frequencies", len(freq))

    # A channel missing in the measurement cannot be used even if calibrated.
    freq = np.intersect1d(freq, filter_frequencies(measurement))
    logger.info("Frequency selection after matching the measurement: %d frequencies", len(freq))

    if len(freq) == 0:
        raise EmptySelectionError(
            "No frequency channel satisfies all filters (band, receive channels, SNR, "
            "variance-mean) and is present in the measurement.")
    if sort_by_snr:
        first = calibration if isinstance(calibration, MPIFile) and not isinstance(calibration, MultiMPIFile) \
            else list(calibration)[0]
        freq = order_by_snr(first, freq)
    return freq

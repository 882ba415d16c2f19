"""Per-channel weights for the least-squares data term."""

import logging
import numpy as np
from enum import Enum
from typing import Optional, Sequence

from .exceptions import ConfigurationError
from .files import MultiMPIFile

logger = logging.getLogger(__name__)


class WeightingType(str, Enum):
    NONE = 'None'
    NORMALIZATION = 'Normalization'
    SNR = 'SNR'
    BG_VARIANCE = 'BGVariance'


def _first(calibration):
    if isinstance(calibration, (list, tuple, MultiMPIFile)):
        return calibration[0]
    return calibration


def get_weights(weight_type,
                frequencies: np.ndarray,
                A: np.ndarray,
                weighting_limit: float = 0.0,
                calibration=None,
                background=None,
                bg_frames: Optional[Sequence[int]] = None,
                load_as_real: bool = False) -> Optional[np.ndarray]:
    """
    Computes one weight per row of A, scaled to a maximum of 1.

    Args:
        weight_type (WeightingType or str): Kind of weighting.
        frequencies (np.ndarray): Selected flat channel indices.
        A (np.ndarray): Conditioned matrix of shape (rows, voxels). With
            `load_as_real` each channel owns two consecutive rows.
        weighting_limit (float): Lower bound applied after normalization.
        calibration: File providing the SNR for `SNR` weighting.
        background: File providing noise frames for `BG_VARIANCE` weighting.
        bg_frames: Background frame indices.
        load_as_real (bool): Whether A has interleaved real/imaginary rows.

    Returns:
        np.ndarray or None: Weights, or None for `WeightingType.NONE`.
    """
    try:
        weight_type = WeightingType(weight_type)
    except ValueError:
        raise ConfigurationError(
            f"Unknown weighting '{weight_type}'. Supported: {', '.join(w.value for w in WeightingType)}.")

    if weight_type is WeightingType.NONE:
        return None

    frequencies = np.asarray(frequencies, dtype=int)
    eps = np.finfo(float).tiny

    if weight_type is WeightingType.NORMALIZATION:
        w = 1.0 / (np.sum(np.abs(A) ** 2, axis=1) + eps)
    else:
        if weight_type is WeightingType.SNR:
            if calibration is None:
                raise ConfigurationError("SNR weighting requires a calibration.")
            w = _first(calibration).calibration_snr().reshape(-1)[frequencies].astype(float)
        else:
            if background is None or bg_frames is None:
                raise ConfigurationError("Background variance weighting requires background frames.")
            if len(bg_frames) < 2:
                raise ConfigurationError("Background variance weighting requires at least two background frames.")
            u_bg = background.measurement(frequencies, np.asarray(bg_frames, dtype=int))
            variance = np.var(u_bg.reshape(len(frequencies), -1), axis=1)
            w = 1.0 / (variance + eps)
        if load_as_real:
            w = np.repeat(w, 2)

    if w.shape != (A.shape[0],):
        raise ConfigurationError(f"Computed {w.shape[0]} weights for a matrix with {A.shape[0]} rows.")

    w = w / np.max(w)
    if weighting_limit > 0:
        w = np.maximum(w, weighting_limit)
    logger.debug("%s weighting: min %.3g, max %.3g", weight_type.value, w.min(), w.max())
    return w

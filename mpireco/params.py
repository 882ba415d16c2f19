"""Reconstruction parameters and their resolution from user supplied mappings."""

import dataclasses
import numpy as np
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional, Tuple

from .exceptions import ConfigurationError
from .solvers import SOLVERS
from .sparse import SUPPORTED_TRANSFORMS
from .weighting import WeightingType


@dataclass(frozen=True)
class RecoParams:
    """
    Every option of a reconstruction. Instances are immutable; use
    `resolve_reco_params` or `dataclasses.replace` to derive new ones.

    Frame, channel, dead pixel and mapping indices are 0-based.
    """
    sf_path: Any = None
    meas_path: Any = None
    frames: Optional[Tuple[int, ...]] = None
    n_averages: int = 1
    background: Any = None
    bg_frames: Optional[Tuple[int, ...]] = None

    # frequency selection
    min_freq: float = 0.0
    max_freq: float = np.inf
    rec_channels: Optional[Tuple[int, ...]] = None
    snr_thresh: float = -1.0
    num_used_freqs: int = -1
    var_mean_thresh: float = 0.0
    min_amplification: float = 2.0
    sort_by_snr: bool = False

    # system matrix conditioning
    bg_correction: bool = False
    load_as_real: bool = False
    gridsize: Optional[Tuple[int, ...]] = None
    fov: Optional[Tuple[float, ...]] = None
    center: Tuple[float, ...] = (0.0, 0.0, 0.0)
    dead_pixels: Tuple[int, ...] = ()
    sparse_trafo: Optional[str] = None

    # solver
    solver: str = 'kaczmarz'
    lambd: float = 0.0
    relative_lambda: bool = True
    iterations: int = 10
    enforce_real: bool = True
    enforce_positive: bool = True
    weight_type: str = WeightingType.NONE.value
    weighting_limit: float = 0.0
    noise_freq_thresh: float = 0.0
    device: str = 'cpu'

    # frame loop
    chunk_size: int = 100
    progress: bool = True

    # multi-patch
    mapping: Optional[Tuple[int, ...]] = None
    ff_pos: Optional[Tuple[Tuple[float, ...], ...]] = None
    sf_grid_center: Optional[Tuple[Tuple[float, ...], ...]] = None
    combine_patches: bool = False

    def to_dict(self) -> dict:
        """JSON-compatible provenance mapping."""
        return {f.name: _jsonable(getattr(self, f.name)) for f in fields(self)}


ALIASES = {
    'SFPath': 'sf_path',
    'measPath': 'meas_path',
    'nAverages': 'n_averages',
    'bEmpty': 'background',
    'bgFrames': 'bg_frames',
    'minFreq': 'min_freq',
    'maxFreq': 'max_freq',
    'recChannels': 'rec_channels',
    'SNRThresh': 'snr_thresh',
    'numUsedFreqs': 'num_used_freqs',
    'varMeanThresh': 'var_mean_thresh',
    'minAmplification': 'min_amplification',
    'sortBySNR': 'sort_by_snr',
    'bgCorrection': 'bg_correction',
    'loadasreal': 'load_as_real',
    'loadAsReal': 'load_as_real',
    'deadPixels': 'dead_pixels',
    'sparseTrafo': 'sparse_trafo',
    'lambda': 'lambd',
    'relativeLambda': 'relative_lambda',
    'enforceReal': 'enforce_real',
    'enforcePositive': 'enforce_positive',
    'weightType': 'weight_type',
    'weightingLimit': 'weighting_limit',
    'noiseFreqThresh': 'noise_freq_thresh',
    'maxload': 'chunk_size',
    'FFPos': 'ff_pos',
    'SFGridCenter': 'sf_grid_center',
    'combinePatches': 'combine_patches',
}

_FIELD_NAMES = {f.name for f in fields(RecoParams)}
_INT_TUPLES = ('frames', 'bg_frames', 'rec_channels', 'gridsize', 'dead_pixels', 'mapping')
_FLOAT_TUPLES = ('fov', 'center')
_POSITIONS = ('ff_pos', 'sf_grid_center')


def _jsonable(value):
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (tuple, list)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, (np.floating, float)):
        return float(value) if np.isfinite(value) else str(float(value))
    if value is None or isinstance(value, (bool, int, str)):
        return value
    # Open file handles and other objects are recorded by their path or repr.
    path = getattr(value, 'path', None)
    return str(path) if path is not None else repr(value)


def _normalize(name: str, value):
    if value is None:
        return None
    if name in _INT_TUPLES:
        if isinstance(value, range):
            value = list(value)
        return tuple(int(v) for v in np.atleast_1d(np.asarray(value)).ravel())
    if name in _FLOAT_TUPLES:
        return tuple(float(v) for v in np.ravel(value))
    if name in _POSITIONS:
        arr = np.asarray(value, dtype=float)
        if arr.ndim != 2 or arr.shape[1] != 3:
            raise ConfigurationError(f"{name} must have shape (patches, 3), got {arr.shape}.")
        return tuple(tuple(row) for row in arr.tolist())
    if name == 'weight_type':
        return value.value if isinstance(value, WeightingType) else str(value)
    if name == 'sf_path' and isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return value


def _validate(params: RecoParams) -> None:
    if params.solver not in SOLVERS:
        raise ConfigurationError(f"Unknown solver '{params.solver}'. Supported: {', '.join(SOLVERS)}.")
    if params.sparse_trafo is not None and params.sparse_trafo not in SUPPORTED_TRANSFORMS:
        raise ConfigurationError(
            f"Unknown sparse transform '{params.sparse_trafo}'. Supported: {', '.join(SUPPORTED_TRANSFORMS)}.")
    if params.weight_type not in {w.value for w in WeightingType}:
        raise ConfigurationError(f"Unknown weighting '{params.weight_type}'.")
    if params.n_averages < 1:
        raise ConfigurationError(f"nAverages must be >= 1, got {params.n_averages}.")
    if params.chunk_size < 1:
        raise ConfigurationError(f"maxload must be >= 1, got {params.chunk_size}.")
    if params.iterations < 0:
        raise ConfigurationError(f"iterations must be >= 0, got {params.iterations}.")
    if params.lambd < 0:
        raise ConfigurationError(f"lambda must be >= 0, got {params.lambd}.")
    if params.min_freq > params.max_freq:
        raise ConfigurationError(f"minFreq {params.min_freq} exceeds maxFreq {params.max_freq}.")


def resolve_reco_params(params: Optional[Mapping[str, Any]] = None, **overrides) -> RecoParams:
    """
    Builds a fully populated `RecoParams`.

    Args:
        params: Mapping (or `RecoParams`) of options; keys may use the
            snake_case field names or the camelCase instrument names
            (`minFreq`, `SNRThresh`, `lambda`, `FFPos`, ...).
        **overrides: Options taking precedence over `params`.

    Returns:
        RecoParams: New instance; the inputs are not modified.

    Raises:
        ConfigurationError: For unknown keys or invalid values.
    """
    if isinstance(params, RecoParams):
        merged = {f.name: getattr(params, f.name) for f in fields(params)}
    else:
        merged = {}
        for key, value in dict(params or {}).items():
            merged[ALIASES.get(key, key)] = value
    for key, value in overrides.items():
        merged[ALIASES.get(key, key)] = value

    unknown = sorted(set(merged) - _FIELD_NAMES)
    if unknown:
        raise ConfigurationError(f"Unknown reconstruction parameter(s): {', '.join(unknown)}.")

    values = {name: _normalize(name, value) for name, value in merged.items()}
    resolved = dataclasses.replace(RecoParams(), **values)
    _validate(resolved)
    return resolved

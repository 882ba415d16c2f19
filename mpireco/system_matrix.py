"""
Conditioning of system matrices for reconstruction.

A system matrix S has one row per voxel and one column per selected
frequency channel. The solvers work with its transpose A = Sᵗ (one row per
channel), wrapped in a handle that carries any factorization the solver
family needs.
"""

import logging
import warnings
import numpy as np
import scipy.linalg
from typing import Optional, Sequence, Tuple, List, Protocol


from .exceptions import ConfigurationError, EmptySelectionError, InterpolationWarning
from .files import MPIFile, MultiMPIFile
from .grid import RegularGridPositions, interpolate
from .sparse import get_sparse_transform

logger = logging.getLogger(__name__)

ITERATIVE_SOLVERS = ('kaczmarz', 'cgnr', 'lsqr')


# --- solver handles ---

class SolverHandle(Protocol):
    """Capabilities shared by all system matrix representations."""
    kind: str
    weights: Optional[np.ndarray]

    @property
    def shape(self) -> Tuple[int, int]: ...

    @property
    def size(self) -> int: ...

    def set_regularization(self, lambd: float) -> None: ...


class MatrixHandle:
    """Plain (channels x voxels) matrix for the iterative solvers, which handle λ themselves."""
    kind = 'matrix'

    def __init__(self, matrix: np.ndarray, weights: Optional[np.ndarray] = None):
        self.matrix = np.asarray(matrix)
        self.weights = weights
        self.lambd = 0.0

    @property
    def shape(self):
        return self.matrix.shape

    @property
    def size(self):
        return self.matrix.size

    def set_regularization(self, lambd: float) -> None:
        self.lambd = float(lambd)


class SVDHandle:
    """
    Singular value decomposition A = U Σ Vᴴ with the λ-dependent factor
    D = Σ / (Σ² + λ²), so that the Tikhonov solution is V D Uᴴ u.
    """
    kind = 'svd'

    def __init__(self, U: np.ndarray, sigma: np.ndarray, V: np.ndarray,
                 weights: Optional[np.ndarray] = None):
        self.U = U
        self.sigma = sigma
        self.V = V
        self.weights = weights
        self.D = np.zeros_like(sigma)
        self.set_regularization(0.0)

    @classmethod
    def from_matrix(cls, A: np.ndarray, weights: Optional[np.ndarray] = None) -> "SVDHandle":
        U, sigma, Vh = np.linalg.svd(A, full_matrices=False)
        return cls(U, sigma, Vh.conj().T, weights=weights)

    @property
    def shape(self):
        return (self.U.shape[0], self.V.shape[0])

    @property
    def size(self):
        return int(np.prod(self.shape))

    def set_regularization(self, lambd: float) -> None:
        self.lambd = float(lambd)
        if lambd > 0:
            self.D = self.sigma / (self.sigma ** 2 + lambd ** 2)
        else:
            nonzero = self.sigma > 0
            self.D = np.zeros_like(self.sigma)
            self.D[nonzero] = 1.0 / self.sigma[nonzero]


class TikhonovLUHandle:
    """Matrix plus the LU factorization of AᴴA + λ²I for direct solves."""
    kind = 'tikhonov_lu'

    def __init__(self, matrix: np.ndarray, weights: Optional[np.ndarray] = None):
        self.matrix = np.asarray(matrix)
        self.weights = weights
        self.normal_matrix = self.matrix.conj().T @ self.matrix
        self.lambd = 0.0
        self.lu = scipy.linalg.lu_factor(self.normal_matrix)

    @property
    def shape(self):
        return self.matrix.shape

    @property
    def size(self):
        return self.matrix.size

    def set_regularization(self, lambd: float) -> None:
        self.lambd = float(lambd)
        n = self.normal_matrix.shape[0]
        self.lu = scipy.linalg.lu_factor(self.normal_matrix + (lambd ** 2) * np.eye(n))


# --- conditioning steps ---

def repair_dead_pixels(S: np.ndarray, shape: Sequence[int], dead_pixels: Sequence[int]) -> None:
    """
    Replaces the rows of dead voxels in place by neighbour averages.

    Only voxels that are strictly interior along all three axes are repaired.
    The row is overwritten with the x-neighbour average, then the
    y-neighbour average and finally the z-neighbour average, so the z average
    is what remains.
    """
    shape = tuple(int(s) for s in shape)
    if len(shape) != 3:
        raise ConfigurationError(f"Dead pixel repair needs a 3-D grid shape, got {shape}.")
    nx, ny, nz = shape
    for dp in dead_pixels:
        ix, iy, iz = np.unravel_index(int(dp), shape)
        if 0 < ix < nx - 1 and 0 < iy < ny - 1 and 0 < iz < nz - 1:
            for offset in ((1, 0, 0), (0, 1, 0), (0, 0, 1)):
                upper = np.ravel_multi_index((ix + offset[0], iy + offset[1], iz + offset[2]), shape)
                lower = np.ravel_multi_index((ix - offset[0], iy - offset[1], iz - offset[2]), shape)
                S[dp] = 0.5 * (S[upper] + S[lower])
        else:
            logger.debug("Dead pixel %d lies on the grid boundary and is left untouched.", dp)


def convert_to_real(S: np.ndarray) -> np.ndarray:
    """Complex (N, M) -> real (2N, M): real parts in rows [0, N), imaginary parts in rows [N, 2N)."""
    S = np.asarray(S)
    return np.concatenate([S.real, S.imag], axis=0)


def _as_calibration_list(calibration) -> Optional[List[MPIFile]]:
    if isinstance(calibration, MultiMPIFile):
        return list(calibration)
    if isinstance(calibration, (list, tuple)):
        return list(calibration)
    return None


def get_system_matrix(calibration,
                      frequencies,
                      bg_correction: bool = False,
                      load_as_real: bool = False,
                      gridsize: Optional[Sequence[int]] = None,
                      fov: Optional[Sequence[float]] = None,
                      center: Sequence[float] = (0.0, 0.0, 0.0),
                      dead_pixels: Sequence[int] = (),
                      sparse_trafo: Optional[str] = None) -> Tuple[np.ndarray, RegularGridPositions]:
    """
    Loads and conditions the system matrix of one calibration or a list of them.

    Args:
        calibration: MPIFile, or a list / MultiMPIFile of calibrations whose
            voxel rows are concatenated. The grid of the first one is returned.
        frequencies: Flat channel indices.
        bg_correction (bool): Subtract the calibration background.
        load_as_real (bool): Split complex columns into interleaved real/imaginary columns.
        gridsize, fov, center: Target grid. Defaults to the calibration grid.
        dead_pixels: Flat voxel indices (on the calibration grid) to repair.
        sparse_trafo (str, optional): 'DCT', 'FFT' or 'Wavelet' basis change.

    Returns:
        Tuple[np.ndarray, RegularGridPositions]: S with shape (voxels, channels) and its grid.
    """
    calibrations = _as_calibration_list(calibration)
    if calibrations is not None:
        if sparse_trafo is not None and len(calibrations) > 1:
            raise ConfigurationError("Sparse transforms are not supported with several calibration sources.")
        data = [get_system_matrix(c, frequencies, bg_correction=bg_correction, load_as_real=load_as_real,
                                  gridsize=gridsize, fov=fov, center=center, dead_pixels=dead_pixels,
                                  sparse_trafo=sparse_trafo) for c in calibrations]
        # Only the first grid is returned; per-source grids are not tracked.
        return np.concatenate([d[0] for d in data], axis=0), data[0][1]

    S = calibration.system_matrix(frequencies, bg_correction=bg_correction)
    calib_grid = calibration.calibration_grid()

    if len(dead_pixels) > 0:
        S = np.array(S, copy=True)
        repair_dead_pixels(S, calib_grid.shape, dead_pixels)

    target = RegularGridPositions(
        calib_grid.shape if gridsize is None else gridsize,
        calib_grid.fov if fov is None else fov,
        center)

    if target.isclose(calib_grid):
        grid = calib_grid
    else:
        warnings.warn(
            f"Interpolating system matrix from grid {calib_grid.shape} (fov {calib_grid.fov}) "
            f"onto grid {target.shape} (fov {target.fov}, center {target.center}).",
            InterpolationWarning, stacklevel=2)
        S = interpolate(S.reshape(calib_grid.shape + (S.shape[1],)), calib_grid, target)
        S = S.reshape(target.num_voxels, -1)
        grid = target

    if load_as_real:
        S = convert_to_real(S)
        # Column-major regrouping yields columns (re f0, im f0, re f1, im f1, ...).
        S = S.reshape((grid.num_voxels, -1), order='F')

    transform = get_sparse_transform(sparse_trafo, grid.shape)
    if transform is not None:
        S = transform.transform_matrix(S.T).T

    return S, grid


def make_solver_handle(A: np.ndarray, solver: str = 'kaczmarz',
                       weights: Optional[np.ndarray] = None) -> SolverHandle:
    """
    Wraps the (channels x voxels) matrix A for a solver family.

    Rows are scaled by sqrt(weights) before any factorization; the solver
    scales the measurement the same way.
    """
    A = np.asarray(A)
    if A.ndim != 2 or A.shape[0] == 0:
        raise EmptySelectionError(f"Cannot build a solver from a system matrix of shape {A.shape}.")
    if weights is not None:
        weights = np.asarray(weights, dtype=float)
        if weights.shape != (A.shape[0],):
            raise ConfigurationError(f"Expected {A.shape[0]} weights, got shape {weights.shape}.")
        A = A * np.sqrt(weights)[:, None]

    if solver in ITERATIVE_SOLVERS:
        return MatrixHandle(A, weights=weights)
    elif solver == 'pseudoinverse':
        return SVDHandle.from_matrix(A, weights=weights)
    elif solver == 'direct':
        return TikhonovLUHandle(A, weights=weights)
    raise ConfigurationError(
        f"Unknown solver '{solver}'. Supported: {', '.join(ITERATIVE_SOLVERS + ('pseudoinverse', 'direct'))}.")


def get_system_function(calibration, frequencies, solver: str = 'kaczmarz',
                        weights: Optional[np.ndarray] = None,
                        **kwargs) -> Tuple[SolverHandle, RegularGridPositions]:
    """
    Conditioned system matrix ready for a solver: `get_system_matrix`
    followed by the solver-specific transform (transpose, SVD or LU).

    Returns:
        Tuple[SolverHandle, RegularGridPositions]: Handle and the grid actually used.
    """
    S, grid = get_system_matrix(calibration, frequencies, **kwargs)
    logger.debug("System matrix %s for solver '%s' on grid %s", S.shape, solver, grid.shape)
    return make_solver_handle(S.T, solver, weights=weights), grid

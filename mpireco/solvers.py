"""Linear solvers and the uniform solve contract used by the frame loop."""

import logging
import numpy as np
import scipy.linalg
import scipy.sparse.linalg
import torch
from abc import ABC, abstractmethod
from typing import Optional

from .exceptions import ConfigurationError, ReconstructionError, ShapeMismatchError, SolverFailure, \
    NonConvergenceError, EmptySelectionError
from .sparse import SparseTransform
from .system_matrix import SolverHandle

logger = logging.getLogger(__name__)

SOLVERS = ('kaczmarz', 'cgnr', 'lsqr', 'pseudoinverse', 'direct')

_HANDLE_KINDS = {
    'kaczmarz': 'matrix',
    'cgnr': 'matrix',
    'lsqr': 'matrix',
    'pseudoinverse': 'svd',
    'direct': 'tikhonov_lu',
}


class IterativeSolver(ABC):
    """
    Abstract base class for iterative solvers of

        min_c ||A c - u||² + λ² ||c||²

    on torch tensors.
    """
    def __init__(self, iterations=10, lambd=0.0, enforce_real=False, enforce_positive=False, verbose=False):
        self.iterations = iterations
        self.lambd = lambd
        self.enforce_real = enforce_real
        self.enforce_positive = enforce_positive
        self.verbose = verbose

    @abstractmethod
    def solve(self, A, u):
        """
        Solves for one measurement vector.

        Args:
            A: System matrix (PyTorch tensor, channels x voxels).
            u: Measurement vector (PyTorch tensor, channels).

        Returns:
            The voxel vector (PyTorch tensor, voxels).
        """
        pass

    def _project(self, x):
        if self.enforce_real and x.is_complex():
            x = torch.complex(x.real, torch.zeros_like(x.real))
        if self.enforce_positive:
            if x.is_complex():
                x = torch.complex(torch.clamp(x.real, min=0.0), x.imag)
            else:
                x = torch.clamp(x, min=0.0)
        return x


class Kaczmarz(IterativeSolver):
    """
    Regularized Kaczmarz (algebraic reconstruction technique).

    Each sweep visits every row once. The Tikhonov term enters through the
    augmented system [A, λI] [c; v] = u, so each row update also moves its
    auxiliary variable v_k. The real/positive projections are applied after
    every sweep.
    """
    def solve(self, A, u):
        num_rows, num_cols = A.shape
        x = torch.zeros(num_cols, dtype=A.dtype, device=A.device)
        v = torch.zeros(num_rows, dtype=A.dtype, device=A.device)
        A_conj = A.conj()
        denom = torch.sum(torch.abs(A) ** 2, dim=1) + self.lambd ** 2

        for sweep in range(self.iterations):
            for k in range(num_rows):
                if denom[k] == 0:
                    continue
                tau = (u[k] - torch.dot(A[k], x) - self.lambd * v[k]) / denom[k]
                x = x + tau * A_conj[k]
                v[k] = v[k] + self.lambd * tau
            x = self._project(x)
            if self.verbose:
                residual = torch.linalg.norm(A @ x - u)
                print(f"Kaczmarz sweep {sweep + 1}/{self.iterations}, residual: {residual:.3e}")
        return x


class CGNR(IterativeSolver):
    """
    Conjugate gradients on the normal equations (AᴴA + λ²I) c = Aᴴu.

    The real/positive projections are applied once, after the last iteration.
    """
    def __init__(self, iterations=10, lambd=0.0, enforce_real=False, enforce_positive=False,
                 tol=0.0, verbose=False):
        super().__init__(iterations, lambd, enforce_real, enforce_positive, verbose)
        self.tol = tol

    def solve(self, A, u):
        A_adj = A.conj().T
        b = A_adj @ u
        x = torch.zeros(A.shape[1], dtype=A.dtype, device=A.device)

        def normal_op(p):
            return A_adj @ (A @ p) + (self.lambd ** 2) * p

        r = b.clone()
        p = r.clone()
        rs_old = torch.vdot(r, r).real
        b_norm = torch.sqrt(rs_old)
        if b_norm == 0:
            return x

        for i in range(self.iterations):
            Ap = normal_op(p)
            alpha = rs_old / torch.vdot(p, Ap).real
            x = x + alpha * p
            r = r - alpha * Ap
            rs_new = torch.vdot(r, r).real
            if self.verbose:
                print(f"CGNR iter {i + 1}/{self.iterations}, normal residual: {torch.sqrt(rs_new):.3e}")
            if torch.sqrt(rs_new) <= self.tol * b_norm or rs_new == 0:
                break
            p = r + (rs_new / rs_old) * p
            rs_old = rs_new
        return self._project(x)


def trace_of_normal_matrix(handle: SolverHandle) -> float:
    """trace(AᴴA) of the (already row-weighted) matrix held by the handle."""
    if handle.kind == 'svd':
        return float(np.sum(handle.sigma ** 2))
    return float(np.vdot(handle.matrix, handle.matrix).real)


class LinearSolver:
    """
    Uniform solve interface over all solver families.

    Regularization is fixed at construction: with `relative_lambda` a positive
    λ is scaled by trace(AᴴA) / N and handed to the handle exactly once.
    """
    def __init__(self, name: str, handle: SolverHandle,
                 lambd: float = 0.0,
                 relative_lambda: bool = True,
                 sparse_trafo: Optional[SparseTransform] = None,
                 iterations: int = 10,
                 enforce_real: bool = True,
                 enforce_positive: bool = True,
                 tol: float = 1e-10,
                 device: str = 'cpu'):
        if name not in SOLVERS:
            raise ConfigurationError(f"Unknown solver '{name}'. Supported: {', '.join(SOLVERS)}.")
        if handle.kind != _HANDLE_KINDS[name]:
            raise ConfigurationError(f"Solver '{name}' cannot use a '{handle.kind}' system matrix handle.")
        if lambd < 0:
            raise ConfigurationError(f"Regularization parameter must be non-negative, got {lambd}.")
        if handle.shape[0] == 0:
            raise EmptySelectionError("The system matrix has no frequency channels.")

        self.name = name
        self.handle = handle
        self.sparse_trafo = sparse_trafo
        self.enforce_real = enforce_real
        self.enforce_positive = enforce_positive

        num_voxels = handle.shape[1]
        if lambd > 0 and relative_lambda:
            lambd = lambd * trace_of_normal_matrix(handle) / num_voxels
        self.lambd = lambd
        handle.set_regularization(lambd)
        logger.debug("Solver '%s' with effective lambda %.4g on a %s system", name, lambd, handle.shape)

        self._sqrt_weights = None if handle.weights is None else np.sqrt(handle.weights)

        # With a basis change the projections act on the back-transformed image instead.
        project_inside = sparse_trafo is None
        self._iterative = None
        if name == 'kaczmarz':
            self._iterative = Kaczmarz(iterations, lambd, enforce_real and project_inside,
                                       enforce_positive and project_inside)
        elif name == 'cgnr':
            self._iterative = CGNR(iterations, lambd, enforce_real and project_inside,
                                   enforce_positive and project_inside, tol=tol)
        self.iterations = iterations
        self.tol = tol
        self.device = device
        self._A = None
        if self._iterative is not None:
            self._A = torch.as_tensor(handle.matrix, device=device)

    @property
    def shape(self):
        return self.handle.shape

    def _solve_one(self, u: np.ndarray) -> np.ndarray:
        if self._iterative is not None:
            u_t = torch.as_tensor(u, device=self.device).to(self._A.dtype)
            return self._iterative.solve(self._A, u_t).cpu().numpy()
        elif self.name == 'lsqr':
            return scipy.sparse.linalg.lsqr(self.handle.matrix, u, damp=self.lambd, atol=self.tol, btol=self.tol,
                                            iter_lim=self.iterations)[0]
        elif self.name == 'pseudoinverse':
            h = self.handle
            return h.V @ (h.D * (h.U.conj().T @ u))
        else:
            h = self.handle
            return scipy.linalg.lu_solve(h.lu, h.matrix.conj().T @ u)

    def _finalize(self, d: np.ndarray) -> np.ndarray:
        if not np.all(np.isfinite(d)):
            raise NonConvergenceError(f"Solver '{self.name}' produced a non-finite solution.")
        if self.sparse_trafo is not None:
            d = self.sparse_trafo.backward(d)
        c = np.real(d)
        if self.enforce_positive and (self._iterative is None or self.sparse_trafo is not None):
            c = np.maximum(c, 0.0)
        return c

    def solve(self, u: np.ndarray) -> np.ndarray:
        """
        Solves A c = u for one measurement vector.

        Args:
            u (np.ndarray): Measurement of the selected channels, length `shape[0]`.

        Returns:
            np.ndarray: Real voxel vector of length `shape[1]`.

        Raises:
            ShapeMismatchError: If `u` does not match the system matrix.
            SolverFailure: If the underlying linear algebra fails or diverges.
        """
        u = np.asarray(u)
        if u.shape != (self.shape[0],):
            raise ShapeMismatchError(
                f"Measurement of shape {u.shape} does not match a system matrix with {self.shape[0]} rows.")
        if self._sqrt_weights is not None:
            u = u * self._sqrt_weights
        try:
            d = self._solve_one(u)
        except ReconstructionError:
            raise
        except (np.linalg.LinAlgError, ValueError, RuntimeError) as e:
            raise SolverFailure(f"Solver '{self.name}' failed: {e}") from e
        return self._finalize(d)

    def solve_batch(self, U: np.ndarray) -> np.ndarray:
        """Solves every column of U (channels x L); returns (voxels x L)."""
        U = np.asarray(U)
        if U.ndim != 2 or U.shape[0] != self.shape[0]:
            raise ShapeMismatchError(
                f"Measurements of shape {U.shape} do not match a system matrix with {self.shape[0]} rows.")
        out = np.zeros((self.shape[1], U.shape[1]), dtype=float)
        for l in range(U.shape[1]):
            out[:, l] = self.solve(U[:, l])
        return out


def create_linear_solver(name: str, handle: SolverHandle, **kwargs) -> LinearSolver:
    """
    Builds a `LinearSolver` for `handle`.

    Keyword arguments are those of `LinearSolver`: lambd, relative_lambda,
    sparse_trafo, iterations, enforce_real, enforce_positive, tol, device.
    """
    return LinearSolver(name, handle, **kwargs)

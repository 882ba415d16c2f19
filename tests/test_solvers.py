import unittest
import torch
import numpy as np
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.solvers import create_linear_solver, trace_of_normal_matrix, Kaczmarz, CGNR
from mpireco.system_matrix import make_solver_handle, MatrixHandle
from mpireco.sparse import SparseTransform
from mpireco.exceptions import ConfigurationError, EmptySelectionError, NonConvergenceError, ShapeMismatchError, \
    SolverFailure


class CountingHandle(MatrixHandle):
    def __init__(self, matrix):
        super().__init__(matrix)
        self.calls = 0

    def set_regularization(self, lambd):
        self.calls += 1
        super().set_regularization(lambd)


class TestSolverAgreement(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(0)
        self.A = rng.normal(size=(20, 8)) + 1j * rng.normal(size=(20, 8))
        self.c = rng.random(8) + 0.1
        self.u = self.A @ self.c
        self.options = dict(enforce_real=False, enforce_positive=False, relative_lambda=False)
        self.iterations = {'kaczmarz': 300, 'cgnr': 50, 'lsqr': 200, 'pseudoinverse': 1, 'direct': 1}

    def _solve(self, name, lambd=0.0, u=None):
        handle = make_solver_handle(self.A, name)
        solver = create_linear_solver(name, handle, lambd=lambd, iterations=self.iterations[name], **self.options)
        return solver.solve(self.u if u is None else u)

    def test_consistent_system_recovered_by_every_solver(self):
        for name in self.iterations:
            with self.subTest(solver=name):
                np.testing.assert_allclose(self._solve(name), self.c, atol=1e-6)

    def test_tikhonov_solution_shared_by_every_solver(self):
        lambd = 2.0
        normal = self.A.conj().T @ self.A + lambd ** 2 * np.eye(8)
        expected = np.real(np.linalg.solve(normal, self.A.conj().T @ self.u))
        for name in self.iterations:
            with self.subTest(solver=name):
                np.testing.assert_allclose(self._solve(name, lambd), expected, atol=1e-6)


class TestLinearSolver(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(1)
        self.A = rng.normal(size=(12, 6))
        self.c = rng.random(6)

    def test_relative_lambda_and_single_regularization(self):
        handle = CountingHandle(self.A)
        solver = create_linear_solver('kaczmarz', handle, lambd=0.1, iterations=2)
        expected = 0.1 * np.sum(self.A ** 2) / 6
        self.assertAlmostEqual(solver.lambd, expected)
        self.assertAlmostEqual(handle.lambd, expected)
        self.assertAlmostEqual(trace_of_normal_matrix(handle), np.sum(self.A ** 2))
        solver.solve(self.A @ self.c)
        solver.solve_batch(np.stack([self.A @ self.c] * 3, axis=1))
        self.assertEqual(handle.calls, 1)

    def test_svd_trace_matches_matrix_trace(self):
        h = make_solver_handle(self.A, 'pseudoinverse')
        self.assertAlmostEqual(trace_of_normal_matrix(h), np.sum(self.A ** 2))

    def test_weighted_solution_of_consistent_system(self):
        w = np.linspace(0.2, 1.0, 12)
        handle = make_solver_handle(self.A, 'pseudoinverse', weights=w)
        solver = create_linear_solver('pseudoinverse', handle, enforce_positive=False)
        np.testing.assert_allclose(solver.solve(self.A @ self.c), self.c, atol=1e-10)

    def test_solve_batch_shape(self):
        handle = make_solver_handle(self.A, 'direct')
        solver = create_linear_solver('direct', handle)
        U = self.A @ np.stack([self.c, 2 * self.c], axis=1)
        out = solver.solve_batch(U)
        self.assertEqual(out.shape, (6, 2))
        np.testing.assert_allclose(out[:, 1], 2 * self.c, atol=1e-8)

    def test_positivity_projection(self):
        handle = make_solver_handle(np.eye(3), 'kaczmarz')
        solver = create_linear_solver('kaczmarz', handle, iterations=1)
        np.testing.assert_allclose(solver.solve(np.array([1.0, -2.0, 3.0])), [1.0, 0.0, 3.0])

    def test_sparse_basis_solution_is_back_transformed(self):
        rng = np.random.default_rng(2)
        A = rng.normal(size=(40, 16)) + 1j * rng.normal(size=(40, 16))
        c = rng.random(16)
        B = SparseTransform('DCT', (4, 4, 1))
        handle = make_solver_handle(B.transform_matrix(A), 'pseudoinverse')
        solver = create_linear_solver('pseudoinverse', handle, sparse_trafo=B, enforce_positive=False)
        np.testing.assert_allclose(solver.solve(A @ c), c, atol=1e-10)

    def test_failures(self):
        u = self.A @ self.c
        u[0] = np.nan
        pinv = create_linear_solver('pseudoinverse', make_solver_handle(self.A, 'pseudoinverse'))
        with self.assertRaises(NonConvergenceError):
            pinv.solve(u)
        direct = create_linear_solver('direct', make_solver_handle(self.A, 'direct'))
        with self.assertRaises(SolverFailure):
            direct.solve(u)
        with self.assertRaises(ShapeMismatchError):
            direct.solve(np.ones(5))

    def test_configuration_errors(self):
        handle = make_solver_handle(self.A, 'kaczmarz')
        with self.assertRaises(ConfigurationError):
            create_linear_solver('pseudoinverse', handle)
        with self.assertRaises(ConfigurationError):
            create_linear_solver('simplex', handle)
        with self.assertRaises(ConfigurationError):
            create_linear_solver('kaczmarz', handle, lambd=-1.0)

    def test_system_without_channels_rejected(self):
        with self.assertRaises(EmptySelectionError):
            make_solver_handle(np.zeros((0, 4)), 'kaczmarz')
        with self.assertRaises(EmptySelectionError):
            create_linear_solver('cgnr', MatrixHandle(np.zeros((0, 4))))


class TestTorchSolvers(unittest.TestCase):
    def setUp(self):
        torch.manual_seed(0)
        self.A = torch.randn(15, 5, dtype=torch.float64)
        self.c = torch.rand(5, dtype=torch.float64)
        self.u = self.A @ self.c

    def test_kaczmarz(self):
        x = Kaczmarz(iterations=200).solve(self.A, self.u)
        torch.testing.assert_close(x, self.c, atol=1e-8, rtol=1e-8)

    def test_cgnr(self):
        x = CGNR(iterations=30, tol=1e-12).solve(self.A, self.u)
        torch.testing.assert_close(x, self.c, atol=1e-8, rtol=1e-8)

    def test_zero_measurement(self):
        x = CGNR(iterations=5).solve(self.A, torch.zeros(15, dtype=torch.float64))
        self.assertEqual(float(torch.linalg.norm(x)), 0.0)


if __name__ == '__main__':
    unittest.main()

import time
import numpy as np

# Adjust path to import from mpireco if not installed
import sys
import os
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpireco.solvers import create_linear_solver
from mpireco.system_matrix import make_solver_handle
from mpireco.simulation import simulate_calibration, phantom_disc

def setup_problem(grid_size=16, num_frequencies=60, num_frames=50):
    # Random calibration and a static phantom repeated over all frames.
    shape = (grid_size, grid_size, 1)
    cal = simulate_calibration(shape, num_frequencies=num_frequencies, num_receivers=2)
    A = cal.system_matrix(np.arange(cal.num_channels())).T
    c = phantom_disc(shape)
    U = np.repeat((A @ c)[:, None], num_frames, axis=1)
    return A, U

def benchmark_solver(name, A, U, iterations, chunk_size, num_repeats=3):
    # Setup (factorization) and per-chunk solve time.
    start_time = time.time()
    handle = make_solver_handle(A, name)
    solver = create_linear_solver(name, handle, lambd=1e-3, iterations=iterations)
    setup_time = time.time() - start_time

    start_time = time.time()
    for _ in range(num_repeats):
        for i in range(0, U.shape[1], chunk_size):
            solver.solve_batch(U[:, i:i + chunk_size])
    solve_time = (time.time() - start_time) / num_repeats
    print(f"  {name:>13s} (chunk={chunk_size:3d}): setup {setup_time * 1000:8.2f} ms, "
          f"{solve_time * 1000 / U.shape[1]:8.3f} ms / frame")

if __name__ == "__main__":
    A, U = setup_problem()
    print(f"Benchmarking solvers on A with shape {A.shape} and {U.shape[1]} frames")
    for chunk_size in (1, 10, 50):
        benchmark_solver('kaczmarz', A, U, iterations=3, chunk_size=chunk_size)
        benchmark_solver('cgnr', A, U, iterations=10, chunk_size=chunk_size)
        benchmark_solver('lsqr', A, U, iterations=10, chunk_size=chunk_size)
        benchmark_solver('pseudoinverse', A, U, iterations=1, chunk_size=chunk_size)
        benchmark_solver('direct', A, U, iterations=1, chunk_size=chunk_size)

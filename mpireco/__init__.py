"""
mpireco: A Python library for magnetic particle imaging reconstruction.
"""

__version__ = "0.1.0"

from .exceptions import (ReconstructionError, ConfigurationError, EmptySelectionError, ShapeMismatchError,
                         SolverFailure, NonConvergenceError, InterpolationWarning)
from .logging_config import setup_logging, teardown_logging
from .grid import RegularGridPositions, interpolate
from .files import MPIFile, ArrayMPIFile, H5MPIFile, MultiMPIFile, open_mpi_file, save_mpi_file
from .frequency import filter_frequencies, filter_frequencies_var_mean, select_frequencies
from .sparse import SparseTransform, get_sparse_transform
from .system_matrix import (MatrixHandle, SVDHandle, TikhonovLUHandle, repair_dead_pixels, convert_to_real,
                            get_system_matrix, make_solver_handle, get_system_function)
from .weighting import WeightingType, get_weights
from .solvers import Kaczmarz, CGNR, LinearSolver, create_linear_solver, trace_of_normal_matrix
from .frames import split_range, chunk_frames, get_background, set_noise_freq_to_zero, FrameStreamer
from .image import init_image, image_coordinates, generate_header_dict, ImageWriter, vec_im_to_im, im_to_vec_im
from .multipatch import resolve_mapping, build_block_matrix, patch_grids, MultiPatchWriter, combine_patches
from .params import RecoParams, resolve_reco_params
from .datastore import DatasetStore
from .reconstruction import (reconstruction, reconstruction_from_params, reconstruction_single_patch,
                             reconstruction_multi_patch, reconstruction_with_frequencies,
                             reconstruction_from_arrays, consistence_check)
from .simulation import simulate_calibration, simulate_measurement, phantom_disc

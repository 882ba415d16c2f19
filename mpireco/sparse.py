"""Orthonormal basis changes in which the linear solver may operate."""

import numpy as np
import pywt
import scipy.fft
from typing import Optional, Tuple

from .exceptions import ConfigurationError

SUPPORTED_TRANSFORMS = ('DCT', 'FFT', 'Wavelet')


class SparseTransform:
    """
    Applies an orthonormal transform B and its inverse to flat voxel vectors.

    The solver works on d = B c. Its system matrix is A Bᴴ, obtained from A
    with `transform_matrix`; the solved coefficients are brought back with
    `backward`. All transforms act on the non-singleton axes of `shape` only.
    """
    def __init__(self, transform_type: str, shape: Tuple[int, ...], wavelet_name: str = 'haar',
                 level: Optional[int] = None):
        if transform_type not in SUPPORTED_TRANSFORMS:
            raise ConfigurationError(
                f"Unknown sparse transform '{transform_type}'. Supported: {', '.join(SUPPORTED_TRANSFORMS)}.")
        self.transform_type = transform_type
        self.shape = tuple(int(s) for s in shape)
        self.axes = tuple(d for d, s in enumerate(self.shape) if s > 1)
        self.wavelet_name = wavelet_name
        self.level = level
        self._coeff_slices = None

        if self.transform_type == 'Wavelet':
            wavelet = pywt.Wavelet(wavelet_name)
            if not wavelet.orthogonal:
                raise ConfigurationError(f"Wavelet '{wavelet_name}' is not orthogonal.")
            # Periodized DWT is orthonormal only while every level halves an even length.
            max_level = min(pywt.dwt_max_level(self.shape[d], wavelet.dec_len) for d in self.axes) if self.axes else 0
            divisible = 0
            while all(self.shape[d] % (2 ** (divisible + 1)) == 0 for d in self.axes) and divisible < max_level:
                divisible += 1
            if self.level is None:
                self.level = divisible
            if self.level < 1 or self.level > divisible:
                raise ConfigurationError(
                    f"Wavelet transform of shape {self.shape} supports levels 1..{divisible}, got {self.level}.")
            template = pywt.wavedecn(np.zeros(self.shape), wavelet_name, mode='periodization',
                                     level=self.level, axes=self.axes)
            _, self._coeff_slices = pywt.coeffs_to_array(template, axes=self.axes)

    @property
    def is_complex(self) -> bool:
        return self.transform_type == 'FFT'

    def forward(self, x: np.ndarray) -> np.ndarray:
        """c -> B c for a flat voxel vector."""
        image = np.asarray(x).reshape(self.shape)
        if self.transform_type == 'DCT':
            if np.iscomplexobj(image):
                out = self._dct(image.real) + 1j * self._dct(image.imag)
            else:
                out = self._dct(image)
        elif self.transform_type == 'FFT':
            out = np.fft.fftn(image, norm='ortho', axes=self.axes) if self.axes else image.astype(complex)
        else:
            coeffs = pywt.wavedecn(image, self.wavelet_name, mode='periodization',
                                   level=self.level, axes=self.axes)
            out, _ = pywt.coeffs_to_array(coeffs, axes=self.axes)
        return np.asarray(out).reshape(-1)

    def backward(self, d: np.ndarray) -> np.ndarray:
        """d -> Bᴴ d for a flat coefficient vector."""
        coeffs = np.asarray(d).reshape(self.shape)
        if self.transform_type == 'DCT':
            if np.iscomplexobj(coeffs):
                out = self._idct(coeffs.real) + 1j * self._idct(coeffs.imag)
            else:
                out = self._idct(coeffs)
        elif self.transform_type == 'FFT':
            out = np.fft.ifftn(coeffs, norm='ortho', axes=self.axes) if self.axes else coeffs
        else:
            tree = pywt.array_to_coeffs(coeffs, self._coeff_slices, output_format='wavedecn')
            out = pywt.waverecn(tree, self.wavelet_name, mode='periodization', axes=self.axes)
        return np.asarray(out).reshape(-1)

    def _dct(self, image):
        return scipy.fft.dctn(image, norm='ortho', axes=self.axes) if self.axes else image

    def _idct(self, coeffs):
        return scipy.fft.idctn(coeffs, norm='ortho', axes=self.axes) if self.axes else coeffs

    def transform_matrix(self, A: np.ndarray) -> np.ndarray:
        """
        Returns A Bᴴ for a matrix A of shape (channels, voxels).

        Row k of A Bᴴ equals conj(B conj(a_k)), which holds for every unitary B.
        """
        A = np.asarray(A)
        rows = [np.conj(self.forward(np.conj(A[k]))) for k in range(A.shape[0])]
        out = np.stack(rows, axis=0) if rows else np.zeros((0, A.shape[1]), dtype=A.dtype)
        if not self.is_complex and not np.iscomplexobj(A):
            out = out.real
        return out


def get_sparse_transform(transform_type: Optional[str], shape: Tuple[int, ...], **kwargs) -> Optional[SparseTransform]:
    """Returns None (identity) when no transform is requested."""
    if transform_type is None:
        return None
    return SparseTransform(transform_type, shape, **kwargs)

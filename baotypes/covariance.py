"""
Symmetric covariance matrix in packed storage.

A :class:`CovarianceMatrix` holds either a covariance matrix or its inverse
(the active representation, see :attr:`CovarianceMatrix.mode`). The other
representation is obtained on demand by Cholesky inversion and cached until
the next write.
"""

import logging
import functools

import numpy as np
from scipy import linalg

from .base import register_type, deep_eq, write
from .utils import packed_index, packed_size, NotPositiveDefiniteError, StateError


logger = logging.getLogger(__name__)

# Replacement values for zero diagonal elements
COVARIANCE_SENTINEL = 1e40
INVERSE_COVARIANCE_SENTINEL = 1e-30

_modes = ('covariance', 'inverse')


@functools.lru_cache(maxsize=16)
def _packed_rows_cols(n):
    # (row, col) of each packed element, row <= col, ordered column by column
    cols = np.repeat(np.arange(n), np.arange(1, n + 1))
    rows = np.arange(cols.size) - (cols * (cols + 1)) // 2
    return rows, cols


def unpack(packed, n):
    """Full symmetric ``n x n`` matrix from packed upper-triangular storage."""
    rows, cols = _packed_rows_cols(n)
    matrix = np.zeros((n, n), dtype='f8')
    matrix[rows, cols] = packed
    matrix[cols, rows] = packed
    return matrix


def _diagonal_indices(n):
    k = np.arange(n)
    return (k * (k + 3)) // 2


def pack(matrix):
    """Packed upper-triangular storage of a symmetric matrix."""
    matrix = np.asarray(matrix)
    rows, cols = _packed_rows_cols(matrix.shape[0])
    return matrix[rows, cols].copy()


def _cho_factor(matrix):
    try:
        return linalg.cho_factor(matrix, lower=False, check_finite=True)
    except (np.linalg.LinAlgError, ValueError) as exc:
        raise NotPositiveDefiniteError(f'inverse covariance not positive-definite: {exc}') from exc


def invert_symmetric(matrix):
    """
    Invert a symmetric positive-definite matrix using its Cholesky decomposition.

    Raises
    ------
    NotPositiveDefiniteError
        If the factorization fails.
    """
    n = matrix.shape[0]
    if n == 0:
        return np.zeros((0, 0), dtype='f8')
    factor = _cho_factor(matrix)
    inverse = linalg.cho_solve(factor, np.eye(n))
    return 0.5 * (inverse + inverse.T)


@register_type
class CovarianceMatrix(object):
    """
    Symmetric ``size x size`` covariance matrix, stored as either the covariance
    or the inverse covariance in packed upper-triangular form.

    Element ``(row, col)`` with ``row <= col`` is stored at ``row + col * (col + 1) / 2``.
    Writing element ``(i, j)`` is the same as writing ``(j, i)``.

    Parameters
    ----------
    size : int
        Matrix dimension.
    """
    _name = 'covariance_matrix'

    def __init__(self, size):
        self._size = int(size)
        if self._size < 0:
            raise ValueError(f'Invalid covariance size {size}')
        self._mode = None
        self._packed = np.zeros(packed_size(self._size), dtype='f8')
        self._sparse = None
        self._cache = None

    @property
    def size(self):
        """Matrix dimension."""
        return self._size

    @property
    def mode(self):
        """Active representation: ``None`` (nothing set yet), 'covariance' or 'inverse'."""
        return self._mode

    def is_compressed(self):
        """Whether storage is frozen to sparse (index, value) pairs."""
        return self._sparse is not None

    def _check_offset(self, *offsets):
        for offset in offsets:
            if not 0 <= offset < self._size:
                raise IndexError(f'Offset {offset} out of range [0, {self._size:d})')

    def _check_modifiable(self):
        if self.is_compressed():
            raise StateError('Covariance matrix is compressed; call thaw() before modifying it')

    def _primary(self):
        # Dense packed active representation (read-only use)
        if self._sparse is not None:
            indices, values = self._sparse
            packed = np.zeros(packed_size(self._size), dtype='f8')
            packed[indices] = values
            return packed
        return self._packed

    def _other(self):
        if self._cache is None:
            logger.debug('Inverting %s of size %d.', self._mode, self._size)
            self._cache = pack(invert_symmetric(unpack(self._primary(), self._size)))
        return self._cache

    def _get_packed(self, mode):
        if self._mode is None:
            return np.zeros(packed_size(self._size), dtype='f8')
        if mode == self._mode:
            return self._primary()
        return self._other()

    def _get(self, mode, row, col):
        self._check_offset(row, col)
        if self._mode is None:
            return 0.
        k = packed_index(row, col)
        if mode == self._mode and self._sparse is not None:
            indices, values = self._sparse
            ik = np.searchsorted(indices, k)
            if ik < indices.size and indices[ik] == k:
                return float(values[ik])
            return 0.
        return float(self._get_packed(mode)[k])

    def _switch(self, mode):
        # Make mode the active representation, inverting if needed
        if self._mode is None:
            self._mode = mode
        elif self._mode != mode:
            other = self._other()
            self._cache = self._packed
            self._packed = other
            self._mode = mode

    def _set(self, mode, row, col, value):
        self._check_offset(row, col)
        self._check_modifiable()
        if row == col and not np.isfinite(value):
            raise ValueError(f'Diagonal element ({row:d}, {col:d}) must be finite, got {value}')
        self._switch(mode)
        self._packed[packed_index(row, col)] = value
        self._cache = None

    def get_covariance(self, row, col):
        """Covariance element (row, col); inverts the inverse covariance if needed."""
        return self._get('covariance', row, col)

    def set_covariance(self, row, col, value):
        """Set covariance element (row, col), and (col, row)."""
        self._set('covariance', row, col, value)

    def get_inverse_covariance(self, row, col):
        """Inverse covariance element (row, col); inverts the covariance if needed."""
        return self._get('inverse', row, col)

    def set_inverse_covariance(self, row, col, value):
        """Set inverse covariance element (row, col), and (col, row)."""
        self._set('inverse', row, col, value)

    def get_covariance_matrix(self):
        """Full covariance matrix, as a numpy array."""
        return unpack(self._get_packed('covariance'), self._size)

    def get_inverse_covariance_matrix(self):
        """Full inverse covariance matrix, as a numpy array."""
        return unpack(self._get_packed('inverse'), self._size)

    def _set_matrix(self, mode, matrix):
        matrix = np.asarray(matrix, dtype='f8')
        if matrix.shape != (self._size,) * 2:
            raise ValueError(f'Expected matrix of shape {(self._size,) * 2}, got {matrix.shape}')
        self._check_modifiable()
        if not np.all(np.isfinite(np.diag(matrix))):
            raise ValueError('Diagonal elements must be finite')
        self._mode = mode
        self._packed = pack(0.5 * (matrix + matrix.T))
        self._cache = None

    def set_covariance_matrix(self, matrix):
        """Replace the whole matrix by the symmetric covariance ``matrix``."""
        self._set_matrix('covariance', matrix)

    def set_inverse_covariance_matrix(self, matrix):
        """Replace the whole matrix by the symmetric inverse covariance ``matrix``."""
        self._set_matrix('inverse', matrix)

    def get_variances(self):
        """Diagonal of the covariance matrix."""
        return self._get_packed('covariance')[_diagonal_indices(self._size)].copy()

    def regularize_diagonal(self):
        """
        Replace zero diagonal elements of the active representation with
        :data:`COVARIANCE_SENTINEL` (covariance) or :data:`INVERSE_COVARIANCE_SENTINEL` (inverse).

        Returns
        -------
        nreplaced : int
            Number of replaced diagonal elements.
        """
        if self._mode is None:
            return 0
        self._check_modifiable()
        sentinel = COVARIANCE_SENTINEL if self._mode == 'covariance' else INVERSE_COVARIANCE_SENTINEL
        diag = _diagonal_indices(self._size)
        mask = self._packed[diag] == 0.
        self._packed[diag[mask]] = sentinel
        if mask.any(): self._cache = None
        return int(mask.sum())

    def invert(self):
        """
        Replace the active representation by its inverse, switching :attr:`mode`.

        Raises
        ------
        NotPositiveDefiniteError
            If the matrix is not positive-definite.
        """
        if self._mode is None:
            raise StateError('Cannot invert an empty covariance matrix')
        self._check_modifiable()
        self._switch(_modes[1 - _modes.index(self._mode)])
        return self

    def is_positive_definite(self):
        """Whether the Cholesky decomposition of the active representation succeeds."""
        if self._mode is None:
            return False
        try:
            _cho_factor(unpack(self._primary(), self._size))
        except NotPositiveDefiniteError:
            return False
        return True

    def _check_vector(self, vec):
        if len(vec) != self._size:
            raise ValueError(f'Expected vector of size {self._size:d}, got {len(vec):d}')

    def multiply_by_covariance(self, vec):
        """Replace ``vec`` (a numpy array) in-place by ``C.vec``, and return it."""
        self._check_vector(vec)
        vec[...] = self.get_covariance_matrix().dot(vec)
        return vec

    def multiply_by_inverse_covariance(self, vec):
        """Replace ``vec`` (a numpy array) in-place by ``C^{-1}.vec``, and return it."""
        self._check_vector(vec)
        vec[...] = self.get_inverse_covariance_matrix().dot(vec)
        return vec

    def chi_square(self, residuals):
        r"""
        Return :math:`\chi^2 = r^{T} C^{-1} r`.

        Parameters
        ----------
        residuals : array-like
            Residual vector, of size :attr:`size`.

        Returns
        -------
        chi2 : float
        """
        residuals = np.asarray(residuals, dtype='f8')
        self._check_vector(residuals)
        return float(residuals.dot(self.get_inverse_covariance_matrix()).dot(residuals))

    def add_inverse(self, other, weight=1.):
        """
        Accumulate ``weight`` times the inverse covariance of ``other`` into our inverse covariance.

        ``other`` may be compressed; we may not.
        """
        if other.size != self._size:
            raise ValueError(f'Cannot add inverse covariance of size {other.size:d} to size {self._size:d}')
        self._check_modifiable()
        self._switch('inverse')
        if other.mode is None:
            return self
        if other.mode == 'inverse' and other.is_compressed():
            indices, values = other._sparse
            self._packed[indices] += weight * values
        else:
            self._packed += weight * other._get_packed('inverse')
        self._cache = None
        return self

    def replace_with_triple_product(self, tilde):
        r"""
        Replace our inverse covariance :math:`I` by :math:`\tilde{I} I^{-1} \tilde{I}`,
        where :math:`\tilde{I}` is the inverse covariance of ``tilde``.

        With :math:`I = \sum_k n_k^2 I_k` and :math:`\tilde{I} = \sum_k n_k I_k` for
        plates :math:`k` drawn :math:`n_k` times, the result is the inverse of the
        covariance of the :math:`\tilde{I}`-weighted average.
        """
        if tilde.size != self._size:
            raise ValueError(f'Cannot combine covariance of size {tilde.size:d} with size {self._size:d}')
        self._check_modifiable()
        self._switch('inverse')
        if self._size:
            factor = _cho_factor(unpack(self._packed, self._size))
            icov_tilde = tilde.get_inverse_covariance_matrix()
            product = icov_tilde.dot(linalg.cho_solve(factor, icov_tilde))
            self._packed = pack(0.5 * (product + product.T))
        self._cache = None
        return self

    def subset(self, offsets):
        """
        Return the covariance matrix of the bins at ``offsets`` (in the given order).

        This marginalizes over the dropped bins: the new matrix is the sub-block of
        the covariance (not of the inverse covariance).
        """
        offsets = np.asarray(offsets, dtype='i8')
        self._check_offset(*offsets)
        new = self.__class__(offsets.size)
        if self._mode is not None:
            cov = self.get_covariance_matrix()[np.ix_(offsets, offsets)]
            new._mode = 'covariance'
            new._packed = pack(cov)
        return new

    def compress(self):
        """Freeze storage to the non-zero elements of the active representation."""
        if self.is_compressed():
            return self
        indices = np.flatnonzero(self._packed)
        self._sparse = (indices, self._packed[indices].copy())
        nstored = packed_size(self._size)
        logger.debug('Compressed %d of %d elements.', indices.size, nstored)
        self._packed = None
        self._cache = None
        return self

    def thaw(self):
        """Restore dense storage after :meth:`compress`, allowing modifications."""
        if self.is_compressed():
            self._packed = self._primary()
            self._sparse = None
        return self

    def copy(self):
        """Return an independent (deep) copy."""
        new = self.__class__.__new__(self.__class__)
        new.__setstate__(self.__getstate__())
        return new

    clone = copy

    def __getstate__(self, to_file=False):
        state = {'name': self._name, 'size': self._size, 'mode': self._mode or 'none'}
        state['compressed'] = int(self.is_compressed())
        if self.is_compressed():
            state['indices'], state['values'] = self._sparse
        else:
            state['packed'] = self._packed
        return state

    def __setstate__(self, state):
        self._size = int(state['size'])
        self._mode = str(state['mode'])
        if self._mode not in _modes: self._mode = None
        self._cache = None
        if bool(state['compressed']):
            self._packed = None
            self._sparse = (np.array(state['indices'], dtype='i8').ravel(), np.array(state['values'], dtype='f8').ravel())
        else:
            self._packed = np.array(state['packed'], dtype='f8').ravel()
            self._sparse = None

    def __eq__(self, other):
        return isinstance(other, CovarianceMatrix) and deep_eq(self.__getstate__(), other.__getstate__())

    def write(self, filename):
        """
        Write covariance matrix to disk.

        Parameters
        ----------
        filename : str
            Output file name.
        """
        return write(filename, self)

    def __repr__(self):
        return f'{self.__class__.__name__}(size={self._size:d}, mode={self._mode}, compressed={self.is_compressed()})'

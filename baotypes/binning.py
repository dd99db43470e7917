"""Axis binnings and the flattened multi-axis bin index."""

import math

import numpy as np

from .base import register_type, from_state, deep_eq
from .utils import OutOfRangeError


@register_type
class Binning(object):
    """
    Binning of one axis, defined by strictly increasing bin edges.

    A coordinate ``x`` belongs to bin ``i`` if ``edges[i] <= x < edges[i + 1]``.
    """
    _name = 'binning'

    def __init__(self, edges):
        edges = np.array(edges, dtype='f8')
        if edges.ndim != 1 or edges.size < 2:
            raise ValueError('Provide at least 2 bin edges')
        if np.any(np.diff(edges) <= 0.):
            raise ValueError(f'Bin edges must be strictly increasing, got {edges}')
        self._edges = edges

    @property
    def nbins(self):
        """Number of bins."""
        return self._edges.size - 1

    def edges(self):
        """Bin edges, array of size ``nbins + 1``."""
        return self._edges

    def centers(self):
        """Bin centers."""
        return np.array([self.get_bin_center(i) for i in range(self.nbins)])

    def _check_bin(self, index):
        if not 0 <= index < self.nbins:
            raise IndexError(f'Bin index {index} out of range [0, {self.nbins:d})')

    def get_bin_index(self, x):
        """Return the index of the bin containing ``x``; raise :class:`OutOfRangeError` outside the axis."""
        if not (self._edges[0] <= x < self._edges[-1]):
            raise OutOfRangeError(f'Value {x} outside of [{self._edges[0]}, {self._edges[-1]})')
        return int(np.searchsorted(self._edges, x, side='right')) - 1

    def get_bin_low_edge(self, index):
        self._check_bin(index)
        return float(self._edges[index])

    def get_bin_high_edge(self, index):
        self._check_bin(index)
        return float(self._edges[index + 1])

    def get_bin_width(self, index):
        return self.get_bin_high_edge(index) - self.get_bin_low_edge(index)

    def get_bin_center(self, index):
        return 0.5 * (self.get_bin_low_edge(index) + self.get_bin_high_edge(index))

    def __getstate__(self, to_file=False):
        return {'name': self._name, 'edges': self._edges}

    def __setstate__(self, state):
        self._edges = np.asarray(state['edges'], dtype='f8')

    def __eq__(self, other):
        return type(self) is type(other) and deep_eq(self.__getstate__(), other.__getstate__())

    def __repr__(self):
        return f'{self.__class__.__name__}(nbins={self.nbins:d}, range=({self._edges[0]:.6g}, {self._edges[-1]:.6g}))'


NonUniformBinning = Binning


@register_type
class UniformBinning(Binning):
    """``nbins`` equal-width bins covering ``[lo, hi)``."""
    _name = 'uniform_binning'

    def __init__(self, lo, hi, nbins):
        if not hi > lo:
            raise ValueError(f'Expected hi > lo, got lo={lo}, hi={hi}')
        if nbins < 1:
            raise ValueError(f'Expected nbins >= 1, got {nbins}')
        super().__init__(np.linspace(lo, hi, nbins + 1))


@register_type
class NonUniformSampling(Binning):
    """
    Binning defined by its sample points, which are the bin centers.

    Bin edges lie halfway between adjacent samples; the outer edges extend by half
    the neighbouring spacing. A single sample makes a zero-width bin which only
    accepts its own value, to within ``tolerance``.
    """
    _name = 'non_uniform_sampling'
    tolerance = 1e-6

    def __init__(self, samples):
        self._samples = np.array(samples, dtype='f8')
        if self._samples.ndim != 1 or self._samples.size < 1:
            raise ValueError('Provide at least 1 sample')
        if np.any(np.diff(self._samples) <= 0.):
            raise ValueError(f'Samples must be strictly increasing, got {self._samples}')
        self._edges = self._edges_from_samples(self._samples)

    @staticmethod
    def _edges_from_samples(samples):
        if samples.size == 1:
            return np.array([samples[0], samples[0]])
        mid = 0.5 * (samples[:-1] + samples[1:])
        first = samples[0] - 0.5 * (samples[1] - samples[0])
        last = samples[-1] + 0.5 * (samples[-1] - samples[-2])
        return np.concatenate([[first], mid, [last]])

    def samples(self):
        """Sample points."""
        return self._samples

    def centers(self):
        return self._samples.copy()

    def get_bin_index(self, x):
        if self.nbins == 1:
            if abs(x - self._samples[0]) <= self.tolerance:
                return 0
            raise OutOfRangeError(f'Value {x} does not match the single sample {self._samples[0]}')
        # Accept values rounded onto the outer edges
        if self._edges[0] - self.tolerance <= x < self._edges[0]:
            return 0
        if self._edges[-1] <= x <= self._edges[-1] + self.tolerance:
            return self.nbins - 1
        return super().get_bin_index(x)

    def get_bin_center(self, index):
        self._check_bin(index)
        return float(self._samples[index])

    def __getstate__(self, to_file=False):
        return {'name': self._name, 'samples': self._samples}

    def __setstate__(self, state):
        self._samples = np.atleast_1d(np.asarray(state['samples'], dtype='f8'))
        self._edges = self._edges_from_samples(self._samples)


@register_type
class UniformSampling(NonUniformSampling):
    """``nsamples`` equally-spaced sample points from ``lo`` to ``hi`` (both included)."""
    _name = 'uniform_sampling'

    def __init__(self, lo, hi, nsamples):
        if nsamples < 1:
            raise ValueError(f'Expected nsamples >= 1, got {nsamples}')
        if nsamples == 1 and lo != hi:
            raise ValueError('A single sample requires lo == hi')
        super().__init__(np.linspace(lo, hi, nsamples))


def two_step_sampling(nbins, breakpoint, dlog, dlin):
    """
    Sample points of the hybrid linear-then-logarithmic log-wavelength-ratio axis.

    The first sample is at zero, followed by ``floor(breakpoint / dlin)`` samples
    of uniform spacing ``dlin`` centered in their bins, then logarithmically spaced
    samples above ``breakpoint`` with log-weighted bin centers, for a total of
    ``nbins`` samples.

    Parameters
    ----------
    nbins : int
        Total number of samples.
    breakpoint : float
        Boundary between the linear and logarithmic parts.
    dlog : float
        Width of the first logarithmic bin above ``breakpoint``.
    dlin : float
        Spacing of the linear part.

    Returns
    -------
    samples : np.ndarray
    """
    if not (breakpoint > 0 and dlog > 0 and dlin > 0):
        raise ValueError(f'Invalid two-step parameters: breakpoint={breakpoint}, dlog={dlog}, dlin={dlin}')
    samples = [0.]
    nuniform = int(math.floor(breakpoint / dlin))
    for k in range(1, nuniform + 1):
        samples.append((k - 0.5) * dlin)
    ratio = math.log((breakpoint + dlog) / breakpoint)
    for k in range(1, nbins - nuniform):
        samples.append(breakpoint * math.exp(ratio * (k - 0.5)))
    return np.array(samples)


@register_type
class MultiAxisIndex(object):
    """
    Flattened index over the product of several axis binnings.

    The global index is row-major with the last axis varying fastest,
    e.g. ``index = (i1 * n2 + i2) * n3 + i3`` for three axes.
    """
    _name = 'multi_axis_index'

    def __init__(self, axes):
        self._axes = tuple(axes)
        if not self._axes:
            raise ValueError('Provide at least one axis binning')

    @property
    def axes(self):
        """Tuple of axis binnings."""
        return self._axes

    @property
    def ndim(self):
        return len(self._axes)

    @property
    def shape(self):
        return tuple(axis.nbins for axis in self._axes)

    @property
    def nbins_total(self):
        return int(np.prod(self.shape))

    def encode(self, *indices):
        """Global index of the bin with per-axis ``indices``."""
        if len(indices) != self.ndim:
            raise IndexError(f'Expected {self.ndim:d} axis indices, got {len(indices):d}')
        index = 0
        for i, n in zip(indices, self.shape):
            if not 0 <= i < n:
                raise IndexError(f'Axis index {i} out of range [0, {n:d})')
            index = index * n + int(i)
        return index

    def decode(self, index):
        """Per-axis indices of global ``index``."""
        if not 0 <= index < self.nbins_total:
            raise IndexError(f'Global index {index} out of range [0, {self.nbins_total:d})')
        indices = []
        for n in reversed(self.shape):
            index, i = divmod(int(index), n)
            indices.append(i)
        return tuple(reversed(indices))

    def centers_of(self, index):
        """Bin centers along each axis of global ``index``."""
        return tuple(axis.get_bin_center(i) for axis, i in zip(self._axes, self.decode(index)))

    def widths_of(self, index):
        """Bin widths along each axis of global ``index``."""
        return tuple(axis.get_bin_width(i) for axis, i in zip(self._axes, self.decode(index)))

    def get_index(self, values):
        """Global index of the bin containing coordinates ``values``."""
        if len(values) != self.ndim:
            raise ValueError(f'Expected {self.ndim:d} coordinates, got {len(values):d}')
        return self.encode(*[axis.get_bin_index(value) for axis, value in zip(self._axes, values)])

    def __getstate__(self, to_file=False):
        state = {'name': self._name}
        for iaxis, axis in enumerate(self._axes):
            state[f'axis{iaxis:d}'] = axis.__getstate__(to_file=to_file)
        return state

    def __setstate__(self, state):
        naxes = len([name for name in state if name.startswith('axis')])
        self._axes = tuple(from_state(state[f'axis{iaxis:d}']) for iaxis in range(naxes))

    def __eq__(self, other):
        if self is other: return True
        return isinstance(other, MultiAxisIndex) and self.shape == other.shape and all(a1 == a2 for a1, a2 in zip(self._axes, other._axes))

    def __repr__(self):
        return f'{self.__class__.__name__}(shape={self.shape})'

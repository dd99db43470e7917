import logging

import numpy as np

from .base import register_type, from_state, deep_eq, write
from .binning import MultiAxisIndex
from .covariance import CovarianceMatrix
from .utils import StateError


logger = logging.getLogger(__name__)


@register_type
class BinnedData(object):
    """
    Sparse binned data: values and covariance for the subset of bins of a
    :class:`MultiAxisIndex` that have data.

    Bins are referred to by their *global* index in the multi-axis index space.
    Bins with data are enumerated by *offsets* 0, 1, ..., in the order in which
    they were first set; the covariance matrix is indexed by offsets.

    Parameters
    ----------
    axes : MultiAxisIndex, list of Binning
        Axis binnings.
    """
    _name = 'binned_data'

    def __init__(self, axes):
        if not isinstance(axes, MultiAxisIndex):
            axes = MultiAxisIndex(axes)
        self._axes = axes
        self.reset()

    def reset(self):
        """Discard all data and covariance, keeping the binning."""
        self._index = []
        self._offset = {}
        self._data = []
        self._covariance = None
        self._weighted_data = None
        self._finalized = False

    @property
    def axes(self):
        """Multi-axis index."""
        return self._axes

    def get_axis_binning(self):
        return self._axes.axes

    def get_n_bins_total(self):
        return self._axes.nbins_total

    def get_n_bins_with_data(self):
        return len(self._index)

    def __len__(self):
        return len(self._index)

    def __iter__(self):
        """Iterate over global indices of bins with data, in offset order."""
        return iter(list(self._index))

    def is_finalized(self):
        return self._finalized

    def has_data(self, index):
        return index in self._offset

    def has_covariance(self):
        return self._covariance is not None and self._covariance.mode is not None

    def get_index(self, values):
        """Global index of the bin containing coordinates ``values``."""
        return self._axes.get_index(values)

    def get_bin_indices(self, index):
        return self._axes.decode(index)

    def get_bin_centers(self, index):
        return self._axes.centers_of(index)

    def get_bin_widths(self, index):
        return self._axes.widths_of(index)

    def get_index_at_offset(self, offset):
        if not 0 <= offset < len(self._index):
            raise IndexError(f'Offset {offset} out of range [0, {len(self._index):d})')
        return self._index[offset]

    def get_offset_for_index(self, index):
        try:
            return self._offset[index]
        except KeyError as exc:
            raise StateError(f'Bin {index} has no data') from exc

    def _check_loading(self):
        if self._finalized:
            raise StateError('Dataset is finalized')

    def set_data(self, index, value):
        """
        Set the value of the bin with global ``index``, which must not have data yet.

        Raises
        ------
        StateError
            If the bin already has data, if a covariance has been set or if the dataset is finalized.
        """
        self._check_loading()
        if not 0 <= index < self.get_n_bins_total():
            raise IndexError(f'Global index {index} out of range [0, {self.get_n_bins_total():d})')
        if index in self._offset:
            raise StateError(f'Bin {index} already has data')
        if self.has_covariance():
            raise StateError('Cannot add data to a dataset with covariance')
        # An empty store is sized for the previous bins
        self._covariance = None
        self._offset[index] = len(self._index)
        self._index.append(index)
        self._data.append(float(value))
        self._weighted_data = None

    def get_data(self, index):
        return self._data[self.get_offset_for_index(index)]

    def get_data_vector(self):
        """Values of bins with data, in offset order."""
        return np.array(self._data, dtype='f8')

    @property
    def covariance(self):
        """Covariance matrix over bins with data, created on first use."""
        if self._covariance is None:
            self._covariance = CovarianceMatrix(len(self._index))
        return self._covariance

    def _offsets(self, index1, index2):
        return self.get_offset_for_index(index1), self.get_offset_for_index(index2)

    def get_covariance(self, index1, index2):
        return self.covariance.get_covariance(*self._offsets(index1, index2))

    def get_inverse_covariance(self, index1, index2):
        return self.covariance.get_inverse_covariance(*self._offsets(index1, index2))

    def set_covariance(self, index1, index2, value):
        """Set the covariance of bins with global indices ``index1``, ``index2``, which must have data."""
        offsets = self._offsets(index1, index2)
        self.covariance.set_covariance(*offsets, value)
        self._weighted_data = None

    def set_inverse_covariance(self, index1, index2, value):
        """Set the inverse covariance of bins with global indices ``index1``, ``index2``, which must have data."""
        offsets = self._offsets(index1, index2)
        self.covariance.set_inverse_covariance(*offsets, value)
        self._weighted_data = None

    def get_weighted_data(self):
        """Inverse-covariance weighted values ``C^{-1}.data`` (cached)."""
        if self._weighted_data is None:
            self._weighted_data = self.covariance.multiply_by_inverse_covariance(self.get_data_vector())
        return self._weighted_data

    def chi_square(self, prediction):
        """Chi-square of ``data - prediction``, with prediction in offset order."""
        prediction = np.asarray(prediction, dtype='f8')
        return self.covariance.chi_square(self.get_data_vector() - prediction)

    def compress(self):
        """Compress the covariance matrix storage; the dataset can then only be read or combined."""
        self.covariance.compress()
        return self

    def is_compressed(self):
        return self._covariance is not None and self._covariance.is_compressed()

    def prune(self, keep):
        """
        Only keep bins whose global index is in ``keep``, preserving their relative order.

        Offsets of the remaining bins are re-derived and the covariance matrix is
        restricted to them.
        """
        keep = set(keep)
        offsets = [offset for offset, index in enumerate(self._index) if index in keep]
        if len(offsets) == len(self._index):
            return self
        if self._covariance is not None:
            self._covariance = self._covariance.subset(offsets)
        self._index = [self._index[offset] for offset in offsets]
        self._data = [self._data[offset] for offset in offsets]
        self._offset = {index: offset for offset, index in enumerate(self._index)}
        self._weighted_data = None
        self._prune_cached(offsets)
        return self

    def _prune_cached(self, offsets):
        # Hook for subclasses holding per-offset caches
        pass

    def _apply_final_cuts(self):
        # Global indices to keep when finalizing
        return set(self._index)

    def finalize(self):
        """
        Apply final cuts and freeze the bin layout.

        Raises
        ------
        StateError
            If already finalized.
        """
        self._check_loading()
        keep = self._apply_final_cuts()
        nbefore = len(self._index)
        self.prune(keep)
        logger.info('Finalized %s with %d of %d bins.', self.__class__.__name__, len(self._index), nbefore)
        self._finalized = True
        return self

    def finalize_with(self, covariance, coordinates=None):
        """
        Finalize with a covariance matrix computed elsewhere (e.g. by combining datasets), without applying cuts.

        Parameters
        ----------
        covariance : CovarianceMatrix
            Covariance over bins with data, in offset order.
        coordinates : array, default=None
            (r, mu, z) of each bin with data, in offset order, if already known.
        """
        self._check_loading()
        if covariance.size != len(self._index):
            raise ValueError(f'Expected covariance of size {len(self._index):d}, got {covariance.size:d}')
        self._covariance = covariance
        self._weighted_data = None
        if coordinates is not None:
            self._set_coordinates(np.asarray(coordinates, dtype='f8').reshape(len(self._index), 3))
        self._finalized = True
        return self

    def _set_coordinates(self, coordinates):
        # Hook for subclasses caching coordinates
        pass

    def get_radius(self, index):
        raise NotImplementedError

    def get_cos_angle(self, index):
        raise NotImplementedError

    def get_redshift(self, index):
        raise NotImplementedError

    def apply_theory_offsets(self, model, pfit, pnew):
        """
        Shift each value by ``model(pnew) - model(pfit)`` evaluated at the bin coordinates.

        Used to simulate the null hypothesis: ``pnew`` typically switches off the BAO peak.
        """
        for offset, index in enumerate(self._index):
            r, mu, z = self.get_radius(index), self.get_cos_angle(index), self.get_redshift(index)
            self._data[offset] += model.evaluate(r, mu, z, pnew) - model.evaluate(r, mu, z, pfit)
        self._weighted_data = None
        return self

    def _copy_extra(self, new, binning_only=False):
        # Hook for subclasses
        pass

    def clone(self, binning_only=False):
        """
        Return a copy.

        Parameters
        ----------
        binning_only : bool, default=False
            If ``True``, return an empty dataset sharing our axis binnings (a prototype for loading).
            Else, return a deep copy including data and covariance.
        """
        new = self.__class__.__new__(self.__class__)
        new._axes = self._axes
        new.reset()
        if not binning_only:
            new._index = list(self._index)
            new._offset = dict(self._offset)
            new._data = list(self._data)
            new._covariance = self._covariance.copy() if self._covariance is not None else None
            new._finalized = self._finalized
        self._copy_extra(new, binning_only=binning_only)
        return new

    copy = clone

    def __getstate__(self, to_file=False):
        state = {'name': self._name, 'axes': self._axes.__getstate__(to_file=to_file)}
        state['index'] = np.array(self._index, dtype='i8')
        state['data'] = np.array(self._data, dtype='f8')
        state['finalized'] = int(self._finalized)
        if self._covariance is not None:
            state['covariance'] = self._covariance.__getstate__(to_file=to_file)
        return state

    def __setstate__(self, state):
        self._axes = from_state(state['axes'])
        self.reset()
        self._index = [int(index) for index in np.ravel(state['index'])]
        self._offset = {index: offset for offset, index in enumerate(self._index)}
        self._data = [float(value) for value in np.ravel(state['data'])]
        self._finalized = bool(state['finalized'])
        if 'covariance' in state:
            self._covariance = from_state(state['covariance'])

    def __eq__(self, other):
        return type(self) is type(other) and deep_eq(self.__getstate__(), other.__getstate__())

    def write(self, filename):
        """
        Write dataset to disk.

        Parameters
        ----------
        filename : str
            Output file name.
        """
        return write(filename, self)

    def __repr__(self):
        return f'{self.__class__.__name__}(shape={self._axes.shape}, nbins_with_data={len(self._index):d})'

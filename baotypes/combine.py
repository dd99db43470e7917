"""
Combination of per-plate datasets by inverse-covariance weighting, and bootstrap resampling of plates.

For plates :math:`k` with inverse covariance :math:`I_k` and values :math:`d_k`, drawn
:math:`n_k` times, :class:`CorrelationAggregator` accumulates

.. math::

    I = \\sum_k n_k^2 I_k, \\quad \\tilde{I} = \\sum_k n_k I_k, \\quad b = \\sum_k n_k I_k d_k

and returns the estimate :math:`d = \\tilde{I}^{-1} b`, with covariance either
:math:`\\tilde{I}^{-1}` or, correcting for repeated draws, :math:`(\\tilde{I} I^{-1} \\tilde{I})^{-1}`.
"""

import logging

import numpy as np

from .covariance import CovarianceMatrix
from .utils import StateError, LayoutError


logger = logging.getLogger(__name__)


class CorrelationAggregator(object):
    """
    Accumulate finalized datasets sharing the same populated bins, then finalize
    into a combined data vector and covariance.

    States are 'empty' (after construction or :meth:`reset`), 'accumulating'
    (after the first :meth:`add`) and 'finalized'.
    """
    def __init__(self):
        self.reset()

    def reset(self):
        """Discard all accumulated state and return to 'empty'."""
        self._state = 'empty'
        self._prototype = None
        self._index = None
        self._coordinates = None
        self._first_axis = None
        self._icov_data = None
        self._icov = None
        self._icov_tilde = None
        self._data = None
        self._covariance = None
        self._nadded = 0

    @property
    def state(self):
        return self._state

    def is_finalized(self):
        return self._state == 'finalized'

    def add(self, dataset, repeat=1):
        """
        Add finalized ``dataset`` with multiplicity ``repeat``.

        Raises
        ------
        StateError
            If we are finalized, or ``dataset`` is not.
        LayoutError
            If ``dataset`` does not have the same populated bins as previously added datasets.
        """
        if self._state == 'finalized':
            raise StateError('Cannot add to a finalized aggregate; call reset() first')
        if int(repeat) != repeat or repeat < 1:
            raise ValueError(f'repeat must be a positive integer, got {repeat}')
        if not dataset.is_finalized():
            raise StateError('Only finalized datasets can be combined')
        repeat = int(repeat)
        index = list(dataset)
        if self._state == 'empty':
            self._prototype = dataset
            self._index = index
            self._coordinates = np.array([(dataset.get_radius(i), dataset.get_cos_angle(i), dataset.get_redshift(i)) for i in index], dtype='f8').reshape(-1, 3)
            self._first_axis = np.array([dataset.get_bin_centers(i)[0] for i in index], dtype='f8')
            self._icov_data = np.zeros(len(index), dtype='f8')
            self._icov = CovarianceMatrix(len(index))
            self._icov_tilde = CovarianceMatrix(len(index))
            self._state = 'accumulating'
        elif index != self._index:
            raise LayoutError(f'Dataset with {len(index):d} bins does not match the aggregate layout of {len(self._index):d} bins')
        self._icov_data += repeat * dataset.get_weighted_data()
        self._icov.add_inverse(dataset.covariance, repeat**2)
        self._icov_tilde.add_inverse(dataset.covariance, repeat)
        self._nadded += repeat
        return self

    def finalize(self, fix_covariance=False):
        """
        Compute the combined data vector and covariance.

        Parameters
        ----------
        fix_covariance : bool, default=False
            If ``True``, use the triple product covariance, which accounts for datasets added with ``repeat > 1``.
            Else the covariance is the inverse of the sum of ``repeat`` times each inverse covariance,
            which is only correct if all ``repeat`` are 1.

        Raises
        ------
        StateError
            If nothing was added or we are already finalized.
        NotPositiveDefiniteError
            If the accumulated inverse covariance cannot be inverted.
        """
        if self._state != 'accumulating':
            raise StateError(f'Cannot finalize an aggregate in state {self._state}')
        self._data = self._icov_tilde.multiply_by_covariance(self._icov_data.copy())
        if fix_covariance:
            self._covariance = self._icov.replace_with_triple_product(self._icov_tilde)
        else:
            self._covariance = self._icov_tilde
        self._icov = self._icov_tilde = None
        self._state = 'finalized'
        return self

    def _check_finalized(self):
        if self._state != 'finalized':
            raise StateError('Aggregate is not finalized')

    def prune(self, rmin, rmax, llmin=0.):
        """
        Only keep bins with ``rmin <= r < rmax`` and first axis (log-wavelength ratio) center ``>= llmin``.
        """
        self._check_finalized()
        r = self._coordinates[:, 0]
        mask = (r >= rmin) & (r < rmax) & (self._first_axis >= llmin)
        offsets = np.flatnonzero(mask)
        logger.info('Pruning from %d to %d bins.', len(self._index), offsets.size)
        if offsets.size == len(self._index):
            return self
        self._covariance = self._covariance.subset(offsets)
        self._index = [self._index[offset] for offset in offsets]
        self._coordinates = self._coordinates[offsets]
        self._first_axis = self._first_axis[offsets]
        self._data = self._data[offsets]
        return self

    @property
    def covariance(self):
        """Combined :class:`CovarianceMatrix`."""
        self._check_finalized()
        return self._covariance

    @property
    def data(self):
        """Combined data vector."""
        self._check_finalized()
        return self._data

    @property
    def nadded(self):
        """Sum of multiplicities of added datasets."""
        return self._nadded

    def get_n_data(self):
        return 0 if self._index is None else len(self._index)

    def get_index(self, offset):
        return self._index[offset]

    def get_radius(self, offset):
        return float(self._coordinates[offset, 0])

    def get_cos_angle(self, offset):
        return float(self._coordinates[offset, 1])

    def get_redshift(self, offset):
        return float(self._coordinates[offset, 2])

    def get_coordinates(self):
        """Array of (r, mu, z) for each bin."""
        return self._coordinates

    def get_data(self, offset):
        self._check_finalized()
        return float(self._data[offset])

    def get_variance(self, offset):
        return self.covariance.get_covariance(offset, offset)

    def chi_square(self, prediction):
        """Chi-square of the combined data vector against ``prediction`` (in offset order)."""
        self._check_finalized()
        return self._covariance.chi_square(self._data - np.asarray(prediction, dtype='f8'))

    def compress(self):
        self.covariance.compress()
        return self

    def to_dataset(self):
        """
        Return the combined result as a finalized dataset of the same type as the added datasets.
        """
        self._check_finalized()
        dataset = self._prototype.clone(binning_only=True)
        for index, value in zip(self._index, self._data):
            dataset.set_data(index, value)
        return dataset.finalize_with(self._covariance.copy(), coordinates=self._coordinates)


class BinnedDataResampler(object):
    """
    Collection of finalized per-plate datasets, combined as a whole or resampled with replacement.

    Parameters
    ----------
    seed : int, default=1966
        Base random seed; each bootstrap trial derives its own generator from ``(seed, trial)``.
    """
    def __init__(self, seed=1966):
        self.seed = int(seed)
        self._observations = []

    def add_observation(self, dataset):
        """Add a finalized dataset."""
        if not dataset.is_finalized():
            raise StateError('Only finalized datasets can be resampled')
        if self._observations and list(dataset) != list(self._observations[0]):
            raise LayoutError('Observation does not have the same populated bins as the previous ones')
        self._observations.append(dataset)

    @property
    def nobservations(self):
        return len(self._observations)

    def get_observation(self, iobs):
        return self._observations[iobs]

    def _check_observations(self):
        if not self._observations:
            raise StateError('No observation added')

    def aggregate(self, counts, fix_covariance=False, aggregator=None):
        """
        Combine observations, each with multiplicity given by ``counts``; zero counts are skipped.

        Reuses ``aggregator`` (after :meth:`CorrelationAggregator.reset`) if provided.
        """
        self._check_observations()
        if len(counts) != self.nobservations:
            raise ValueError(f'Expected {self.nobservations:d} counts, got {len(counts):d}')
        if aggregator is None:
            aggregator = CorrelationAggregator()
        aggregator.reset()
        for observation, count in zip(self._observations, counts):
            if count > 0:
                aggregator.add(observation, repeat=int(count))
        return aggregator.finalize(fix_covariance=fix_covariance)

    def combined(self, fix_covariance=False, aggregator=None):
        """Combine all observations once."""
        return self.aggregate(np.ones(self.nobservations, dtype='i8'), fix_covariance=fix_covariance, aggregator=aggregator)

    def bootstrap_counts(self, trial, size=0):
        """
        Multiplicities of each observation for bootstrap ``trial``.

        Parameters
        ----------
        trial : int
            Trial number.
        size : int, default=0
            Number of draws with replacement; if 0, the number of observations.

        Returns
        -------
        counts : np.ndarray
        """
        self._check_observations()
        size = int(size) or self.nobservations
        rng = np.random.default_rng(np.random.SeedSequence(self.seed, spawn_key=(int(trial),)))
        draws = rng.integers(0, self.nobservations, size=size)
        return np.bincount(draws, minlength=self.nobservations)

    def bootstrap(self, trial, size=0, fix_covariance=True, aggregator=None):
        """Combine the observations drawn for bootstrap ``trial``."""
        counts = self.bootstrap_counts(trial, size=size)
        return self.aggregate(counts, fix_covariance=fix_covariance, aggregator=aggregator)

"""Chi-square objective for an external minimizer, and the bootstrap fitting loop."""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import numpy as np

from .combine import CorrelationAggregator
from .utils import NotPositiveDefiniteError, mkdir


logger = logging.getLogger(__name__)


class CorrelationModel(Protocol):
    """Correlation function model."""

    def evaluate(self, r, mu, z, params):
        """Correlation function at separation ``r``, cosine ``mu`` and redshift ``z``."""
        ...


class SupportsMultipoleEvaluation(Protocol):
    """Model that can also evaluate the correlation function multipoles."""

    def evaluate_multipoles(self, r, params):
        """Monopole, quadrupole and hexadecapole at separation ``r``."""
        ...


@dataclass
class FitResult:
    """Outcome of a minimization."""
    valid: bool
    params: np.ndarray
    fval: float


class CorrelationLikelihood(object):
    """
    Negative log-likelihood ``0.5 * chi2 / error_scale`` of model parameters.

    Parameters
    ----------
    data : CorrelationAggregator, CorrelationData
        Finalized data, providing ``get_coordinates()`` and ``chi_square(prediction)``.
    model : CorrelationModel
        Model evaluated at the (r, mu, z) coordinates of each bin.
    error_scale : float, default=1.
        Scale of the chi-square, e.g. 4 to get 2-sigma errors from a minimizer targeting 1-sigma.
    """
    def __init__(self, data, model, error_scale=1.):
        if error_scale <= 0:
            raise ValueError(f'error_scale must be positive, got {error_scale}')
        self.data = data
        self.model = model
        self.error_scale = float(error_scale)
        self._coordinates = np.asarray(data.get_coordinates())

    def predict(self, params):
        """Model prediction for each bin, in offset order."""
        return np.array([self.model.evaluate(r, mu, z, params) for r, mu, z in self._coordinates], dtype='f8')

    def chi_square(self, params):
        return self.data.chi_square(self.predict(params))

    def __call__(self, params):
        return 0.5 * self.chi_square(params) / self.error_scale


@dataclass
class BootstrapResult:
    """Fits of bootstrap trials."""
    ntrials: int
    ninvalid: int = 0
    trials: List[int] = field(default_factory=list)
    nunique: List[int] = field(default_factory=list)
    params: List[np.ndarray] = field(default_factory=list)
    fvals: List[float] = field(default_factory=list)
    radii: Optional[np.ndarray] = None
    curves: List[np.ndarray] = field(default_factory=list)

    @property
    def nvalid(self):
        return len(self.trials)

    def mean(self):
        """Mean of each parameter and of the minimum value, over valid trials."""
        return np.mean(self._table(), axis=0)

    def error(self):
        """Standard deviation of each parameter and of the minimum value, over valid trials."""
        return np.std(self._table(), axis=0)

    def _table(self):
        if not self.trials:
            raise ValueError('No valid bootstrap trial')
        return np.column_stack([np.array(self.params, dtype='f8').reshape(self.nvalid, -1), self.fvals])

    def save(self, filename, param_names=None):
        """
        Save one row per valid trial: trial, number of unique observations, parameters, minimum value.
        """
        table = self._table()
        if param_names is None:
            param_names = [f'p{i:d}' for i in range(table.shape[1] - 1)]
        header = ' '.join(['trial', 'nuniq'] + list(param_names) + ['chisq'])
        mkdir(os.path.dirname(str(filename)))
        np.savetxt(filename, np.column_stack([self.trials, self.nunique, table]), header=header, comments='',
                   fmt=['%d', '%d'] + ['%.18e'] * table.shape[1])

    def save_curves(self, filename):
        """Save multipole curves, one row per valid trial."""
        mkdir(os.path.dirname(str(filename)))
        np.savetxt(filename, np.array([np.ravel(curve) for curve in self.curves]), fmt='%.3e')


def run_bootstrap(resampler, model, minimize, ntrials, size=0, fix_covariance=True,
                  rmin=0., rmax=np.inf, llmin=0., error_scale=1., curves=None):
    """
    Fit bootstrap trials of the observations in ``resampler``.

    For each trial, observations are combined with their bootstrap multiplicities,
    pruned to ``rmin <= r < rmax`` and ``ll >= llmin``, then fitted. Trials whose fit is
    invalid, or whose covariance is not positive-definite, are counted and skipped.

    Parameters
    ----------
    resampler : BinnedDataResampler
        Observations.
    model : CorrelationModel
        Model.
    minimize : callable
        ``minimize(objective)`` returns a :class:`FitResult` minimizing ``objective(params)``.
    ntrials : int
        Number of trials.
    size : int, default=0
        Number of draws per trial; 0 for the number of observations.
    fix_covariance : bool, default=True
        Whether to correct the covariance for repeated observations.
    curves : SupportsMultipoleEvaluation, default=None
        If provided, multipoles of the best fit are evaluated every 1 Mpc/h from ``rmin`` to ``rmax``.

    Returns
    -------
    result : BootstrapResult
    """
    result = BootstrapResult(ntrials=ntrials)
    if curves is not None:
        if not np.isfinite(rmax):
            raise ValueError('Multipole curves require a finite rmax')
        result.radii = rmin + np.arange(1 + int(np.floor(rmax - rmin)), dtype='f8')
    aggregator = CorrelationAggregator()
    for trial in range(ntrials):
        counts = resampler.bootstrap_counts(trial, size=size)
        fit = None
        try:
            resampler.aggregate(counts, fix_covariance=fix_covariance, aggregator=aggregator)
            aggregator.prune(rmin, rmax, llmin)
            fit = minimize(CorrelationLikelihood(aggregator, model, error_scale=error_scale))
        except NotPositiveDefiniteError as exc:
            logger.warning('Bootstrap trial %d: %s', trial, exc)
        if fit is not None and fit.valid:
            result.trials.append(trial)
            result.nunique.append(int(np.count_nonzero(counts)))
            result.params.append(np.array(fit.params, dtype='f8'))
            result.fvals.append(float(fit.fval))
            if curves is not None:
                result.curves.append(np.array([curves.evaluate_multipoles(r, fit.params) for r in result.radii]))
        else:
            result.ninvalid += 1
        if (trial + 1) % 10 == 0:
            logger.info('Completed %d bootstrap trials (%d invalid).', trial + 1, result.ninvalid)
    return result

"""
Run a fit, and optionally bootstrap trials, as described by a :class:`Config`.
"""

import os
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from .combine import BinnedDataResampler
from .config import Config
from .external import load_cosmolib, load_platelist, create_cosmolib_prototype
from .fit import CorrelationLikelihood, FitResult, BootstrapResult, run_bootstrap


logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Best fit to the data, and bootstrap trials if plates were resampled."""
    data: object
    fit: FitResult
    plates: Optional[List] = None
    bootstrap: Optional[BootstrapResult] = None


def load_data(config: Config):
    """
    Load the data to fit.

    Returns
    -------
    data : QuasarCorrelationData, CorrelationAggregator
        Finalized dataset, or the combination of all plates pruned to the cuts.
    plates : list, None
        Plates, if a plate list was provided.
    """
    dconfig, cuts = config.data, config.cuts
    if not dconfig.data and not dconfig.platelist:
        raise ValueError('Missing data or platelist in data configuration')
    cosmology = config.cosmology.build()
    if dconfig.data:
        prototype = create_cosmolib_prototype(config.binning, cosmology, cuts=cuts, covariance_fix=config.covariance_fix)
        data = load_cosmolib(dconfig.data, prototype, fast=dconfig.fast_load, check_pos_def=dconfig.check_pos_def)
        return data.finalize(), None
    # Plates are kept uncut; cuts apply to each combination
    prototype = create_cosmolib_prototype(config.binning, cosmology, covariance_fix=config.covariance_fix)
    plates = load_platelist(dconfig.platelist, dconfig.plateroot, prototype, max_plates=dconfig.max_plates,
                            fast=dconfig.fast_load, check_pos_def=dconfig.check_pos_def)
    if not plates:
        raise ValueError(f'No plate listed in {dconfig.plateroot + dconfig.platelist}')
    resampler = BinnedDataResampler(seed=config.bootstrap.random_seed)
    for plate in plates:
        resampler.add_observation(plate)
    data = resampler.combined(fix_covariance=False).prune(cuts.rmin, cuts.rmax, cuts.llmin)
    return data, plates


def run_analysis(config: Config, model, minimize, output_dir: str = None, param_names=None, curves=None) -> AnalysisResult:
    """
    Fit ``model`` to the data of ``config``, then run ``config.bootstrap.trials`` bootstrap trials of the plates.

    Parameters
    ----------
    config : Config
        Configuration.
    model : CorrelationModel
        Model.
    minimize : callable
        ``minimize(objective)`` returns a :class:`FitResult`.
    output_dir : str, default=None
        If provided, save bootstrap trials to ``bootstrap.txt`` (and multipole curves to ``bootstrap_curves.txt``) there.
    param_names : list of str, default=None
        Parameter names, for the bootstrap file header.
    curves : SupportsMultipoleEvaluation, default=None
        Multipole evaluation, required if ``config.bootstrap.curves``.

    Returns
    -------
    result : AnalysisResult
    """
    bconfig, cuts = config.bootstrap, config.cuts
    if bconfig.curves and curves is None:
        raise ValueError('Bootstrap curves requested without a multipole evaluation')
    data, plates = load_data(config)

    fit = minimize(CorrelationLikelihood(data, model))
    if fit.valid:
        logger.info('Best fit %s with minimum %.6g.', np.array2string(np.asarray(fit.params, dtype='f8')), fit.fval)
    else:
        logger.warning('Fit of the data is not valid.')
    result = AnalysisResult(data=data, fit=fit, plates=plates)

    if bconfig.trials > 0:
        if plates is None:
            raise ValueError('Bootstrap trials require a platelist')
        resampler = BinnedDataResampler(seed=bconfig.random_seed)
        for plate in plates:
            resampler.add_observation(plate)
        result.bootstrap = run_bootstrap(resampler, model, minimize, bconfig.trials, size=bconfig.size,
                                         fix_covariance=not bconfig.naive_covariance, rmin=cuts.rmin, rmax=cuts.rmax,
                                         llmin=cuts.llmin, curves=curves if bconfig.curves else None)
        logger.info('Bootstrap: %d valid of %d trials.', result.bootstrap.nvalid, bconfig.trials)
        if output_dir is not None and result.bootstrap.nvalid:
            result.bootstrap.save(os.path.join(output_dir, 'bootstrap.txt'), param_names=param_names)
            if bconfig.curves:
                result.bootstrap.save_curves(os.path.join(output_dir, 'bootstrap_curves.txt'))
    return result

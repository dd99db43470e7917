import os
from pathlib import Path

import numpy as np
import pytest
from scipy import optimize

from baotypes import BinnedDataResampler, QuasarCorrelationData
from baotypes.config import Config, BinningConfig, CutsConfig
from baotypes.fit import FitResult, run_bootstrap
from baotypes.analysis import load_data, run_analysis


test_dir = Path('_tests') / 'analysis'
coords = [(0.025, 50., 2.), (0.075, 150., 2.), (0.1 * 1.2**0.5, 50., 2.)]


class ConstantModel(object):

    def evaluate(self, r, mu, z, params):
        return params[0]

    def evaluate_multipoles(self, r, params):
        return [params[0], 0., 0.]


def minimize(objective):
    result = optimize.minimize_scalar(lambda x: objective([x]), method='brent')
    return FitResult(valid=bool(result.success), params=np.array([result.x]), fval=float(result.fun))


def write_cosmolib(name, values, matrix, icov=False):
    os.makedirs(os.path.dirname(name), exist_ok=True)
    with open(name + '.params', 'w') as file:
        for value, (ll, sep, z) in zip(values, coords):
            file.write(f'{value:.6e} 0 | Lya covariance 3D ({ll:.6f},{sep:.1f},{z:.1f})\n')
    with open(name + ('.icov' if icov else '.cov'), 'w') as file:
        for i1 in range(len(values)):
            for i2 in range(i1 + 1):
                if matrix[i1, i2] != 0.:
                    file.write(f'{i1:d} {i2:d} {(-1 if icov else 1) * matrix[i1, i2]:.12e}\n')


def write_plates(root, nplates=6, seed=42):
    rng = np.random.RandomState(seed=seed)
    names = []
    for iplate in range(nplates):
        name = f'plate{iplate:d}'
        write_cosmolib(os.path.join(root, name), 1. + rng.normal(size=3), np.diag(1. + rng.uniform(size=3)), icov=True)
        names.append(name)
    with open(os.path.join(root, 'list.txt'), 'w') as file:
        file.write('\n'.join(names) + '\n')


def get_config():
    config = Config()
    config.binning = BinningConfig(nll=5, minll=0.1, dll=0.02, dll2=0.05, nsep=2, minsep=0., dsep=100., nz=1, minz=1.5, dz=1.)
    config.cuts = CutsConfig(rmin=0., rmax=500., llmin=0.)
    return config


def test_plates():

    root = str(test_dir / 'plates')
    write_plates(root)
    config = get_config()
    config.data.platelist = 'list.txt'
    config.data.plateroot = root + os.sep
    config.bootstrap.trials = 5
    config.bootstrap.curves = True

    result = run_analysis(config, ConstantModel(), minimize, output_dir=str(test_dir), param_names=['xi0'], curves=ConstantModel())
    assert len(result.plates) == 6
    assert result.data.get_n_data() == 3
    assert result.fit.valid
    weights = np.diag(result.data.covariance.get_inverse_covariance_matrix())
    assert np.allclose(result.fit.params, np.sum(weights * result.data.data) / np.sum(weights), atol=1e-5)

    assert result.bootstrap.ntrials == 5
    assert result.bootstrap.nvalid == 5
    resampler = BinnedDataResampler(seed=config.bootstrap.random_seed)
    for plate in result.plates:
        resampler.add_observation(plate)
    ref = run_bootstrap(resampler, ConstantModel(), minimize, 5, fix_covariance=True, rmax=500.)
    assert np.allclose(result.bootstrap.params, ref.params)
    table = np.loadtxt(test_dir / 'bootstrap.txt', skiprows=1)
    assert table.shape == (5, 4)
    assert np.loadtxt(test_dir / 'bootstrap_curves.txt').shape == (5, 3 * 501)

    # naive covariance of each trial
    config.bootstrap.naive_covariance = True
    config.bootstrap.curves = False
    naive = run_analysis(config, ConstantModel(), minimize)
    ref = run_bootstrap(resampler, ConstantModel(), minimize, 5, fix_covariance=False, rmax=500.)
    assert np.allclose(naive.bootstrap.params, ref.params)

    config.data.max_plates = 4
    config.bootstrap.trials = 0
    result = run_analysis(config, ConstantModel(), minimize)
    assert len(result.plates) == 4
    assert result.bootstrap is None


def test_single_dataset():

    name = str(test_dir / 'single' / 'data')
    cov = np.array([[2., 0.5, 0.], [0.5, 1., 0.], [0., 0., 4.]])
    write_cosmolib(name, [1., 2., 3.], cov)
    config = get_config()
    config.data.data = name
    data, plates = load_data(config)
    assert plates is None
    assert isinstance(data, QuasarCorrelationData)
    assert data.is_finalized()
    assert np.allclose(data.covariance.get_covariance_matrix(), cov)

    result = run_analysis(config, ConstantModel(), minimize)
    assert result.fit.valid
    assert result.bootstrap is None
    icov = np.linalg.inv(cov)
    assert np.allclose(result.fit.params, icov.sum(axis=0).dot([1., 2., 3.]) / icov.sum(), atol=1e-5)

    config.bootstrap.trials = 2
    with pytest.raises(ValueError):
        run_analysis(config, ConstantModel(), minimize)


def test_errors():

    with pytest.raises(ValueError):
        load_data(get_config())
    config = get_config()
    config.data.data = str(test_dir / 'single' / 'data')
    config.bootstrap.curves = True
    with pytest.raises(ValueError):
        run_analysis(config, ConstantModel(), minimize)


if __name__ == '__main__':

    test_plates()
    test_single_dataset()
    test_errors()

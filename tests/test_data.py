import math
from pathlib import Path

import numpy as np
import pytest

from baotypes import read
from baotypes import BinnedData, ComovingCorrelationData, QuasarCorrelationData, LambdaCdmUniverse
from baotypes import UniformBinning, UniformSampling, NonUniformSampling, two_step_sampling, StateError


def get_axes():
    return [NonUniformSampling(two_step_sampling(5, 0.1, 0.02, 0.05)), UniformBinning(0., 200., 2), UniformSampling(2., 2., 1)]


class LinearModel(object):

    def evaluate(self, r, mu, z, params):
        return params[0] * r + params[1] * mu


def fill(data, seed=42):
    # Data and a diagonally dominant covariance for every bin
    rng = np.random.RandomState(seed=seed)
    indices = list(range(data.get_n_bins_total()))
    for index in indices:
        data.set_data(index, rng.uniform())
    for i1 in indices:
        data.set_covariance(i1, i1, 2. + rng.uniform())
        for i2 in indices[:i1]:
            data.set_covariance(i1, i2, 0.1 * rng.uniform())
    return data


def test_binned_data():

    data = BinnedData(get_axes())
    assert data.get_n_bins_total() == 10
    assert data.get_n_bins_with_data() == 0
    i1, i2, i3 = data.get_index((0.025, 50., 2.)), data.get_index((0.075, 150., 2.)), data.get_index((0., 150., 2.))
    missing = data.get_index((0., 50., 2.))
    data.set_data(i2, 2.)
    data.set_data(i1, 1.)
    data.set_data(i3, 3.)
    assert list(data) == [i2, i1, i3]
    assert data.get_offset_for_index(i1) == 1
    assert data.get_index_at_offset(2) == i3
    assert data.has_data(i1) and not data.has_data(missing)
    assert np.allclose(data.get_data_vector(), [2., 1., 3.])
    assert np.allclose(data.get_bin_centers(i1), (0.025, 50., 2.))
    assert data.get_bin_indices(i2) == (2, 1, 0)
    with pytest.raises(StateError):
        data.set_data(i1, 5.)
    with pytest.raises(StateError):
        data.get_data(missing)
    with pytest.raises(IndexError):
        data.get_index_at_offset(3)

    data.set_covariance(i1, i1, 1.)
    data.set_covariance(i2, i2, 2.)
    data.set_covariance(i3, i3, 4.)
    data.set_covariance(i2, i1, 0.5)
    assert data.get_covariance(i1, i2) == 0.5
    with pytest.raises(StateError):
        data.set_data(missing, 1.)
    with pytest.raises(StateError):
        data.set_covariance(i1, missing, 1.)
    cov = np.array([[2., 0.5, 0.], [0.5, 1., 0.], [0., 0., 4.]])
    vec = np.array([2., 1., 3.])
    assert np.allclose(data.get_weighted_data(), np.linalg.solve(cov, vec))
    assert np.allclose(data.chi_square(np.zeros(3)), vec.dot(np.linalg.solve(cov, vec)))
    assert np.allclose(data.get_inverse_covariance(i3, i3), 0.25)

    clone = data.clone()
    empty = data.clone(binning_only=True)
    assert empty.get_n_bins_with_data() == 0
    assert empty.axes == data.axes

    data.prune([i3, i2])
    assert list(data) == [i2, i3]
    assert data.get_offset_for_index(i3) == 1
    assert np.allclose(data.get_data_vector(), [2., 3.])
    assert np.allclose(data.covariance.get_covariance_matrix(), cov[np.ix_([0, 2], [0, 2])])
    assert np.allclose(data.get_weighted_data(), [1., 0.75])

    assert clone.get_n_bins_with_data() == 3
    assert clone.get_covariance(i1, i2) == 0.5
    clone.set_covariance(i1, i2, 0.25)
    assert data.get_covariance(i2, i2) == 2.

    data.finalize()
    assert data.is_finalized()
    with pytest.raises(StateError):
        data.finalize()
    with pytest.raises(StateError):
        data.set_data(i1, 1.)
    data.reset()
    assert not data.is_finalized()
    assert data.get_n_bins_with_data() == 0


def test_data_after_covariance_read():

    data = BinnedData(get_axes())
    data.set_data(0, 1.)
    assert not data.has_covariance()
    data.compress()
    data.set_data(1, 2.)
    assert data.get_n_bins_with_data() == 2
    data.set_covariance(0, 0, 1.)
    data.set_covariance(1, 1, 2.)
    assert data.covariance.size == 2
    assert np.allclose(data.get_weighted_data(), [1., 1.])
    with pytest.raises(StateError):
        data.set_data(2, 3.)


def test_compress():

    data = fill(BinnedData(get_axes()))
    ref = data.covariance.get_covariance_matrix()
    data.compress()
    assert data.is_compressed()
    assert np.allclose(data.covariance.get_covariance_matrix(), ref)
    with pytest.raises(StateError):
        data.set_covariance(0, 1, 1.)


def test_comoving():

    axes = [NonUniformSampling([10., 20., 30.]), UniformSampling(0.5, 0.5, 1), UniformSampling(2., 2., 1)]
    data = ComovingCorrelationData(axes, rmin=10., rmax=30.)
    for r in [30., 10., 20.]:
        data.set_data(data.get_index((r, 0.5, 2.)), r / 10.)
    indices = list(data)
    for i1 in indices:
        data.set_covariance(i1, i1, data.get_data(i1))
    data.set_covariance(indices[0], indices[1], 0.3)
    cov = data.covariance.get_covariance_matrix()
    data.finalize()
    assert [data.get_radius(index) for index in data] == [10., 20.]
    assert data.get_cos_angle(indices[1]) == 0.5
    assert data.get_redshift(indices[1]) == 2.
    assert np.allclose(data.get_coordinates(), [[10., 0.5, 2.], [20., 0.5, 2.]])
    assert np.allclose(data.covariance.get_covariance_matrix(), cov[np.ix_([1, 2], [1, 2])])

    data.apply_theory_offsets(LinearModel(), [1., 0.], [2., 0.])
    assert np.allclose(data.get_data_vector(), [1. + 10., 2. + 20.])


def test_quasar():

    cosmology = LambdaCdmUniverse(0.27)
    axes = get_axes()
    data = QuasarCorrelationData(axes, 0., 0., np.inf, cosmology)

    r, mu = data.transform(0.075, 50., 100., 2.)
    z1, z2 = 3. / math.exp(0.0375) - 1., 3. * math.exp(0.0375) - 1.
    dlos = cosmology.line_of_sight_comoving_distance(z2) - cosmology.line_of_sight_comoving_distance(z1)
    dperp = cosmology.transverse_comoving_scale(2.) * (50. + 100. ** 2 / 600.) * math.pi / 10800.
    assert np.allclose(r, math.hypot(dlos, dperp))
    assert np.allclose(mu, dlos / r)
    r0, mu0 = data.transform(0., 50., 100., 2.)
    assert mu0 == 0.
    assert np.allclose(r0, dperp)

    fill(data)
    radii = {index: data.get_radius(index) for index in data}
    index = data.get_index((0.075, 50., 2.))
    assert np.allclose(radii[index], r)
    assert np.allclose(data.get_cos_angle(index), mu)
    assert data.get_redshift(index) == 2.

    llmin = axes[0].get_bin_center(1)
    rmin = radii[data.get_index((0.025, 150., 2.))]
    rmax = radii[data.get_index((0.075, 150., 2.))]
    data = QuasarCorrelationData(axes, llmin, rmin, rmax, cosmology)
    fill(data)
    data.finalize()
    kept = list(data)
    assert data.get_index((0.025, 150., 2.)) in kept
    assert data.get_index((0.075, 150., 2.)) not in kept
    assert data.get_index((0., 50., 2.)) not in kept
    assert all(data.get_bin_centers(index)[0] >= llmin for index in kept)
    assert all(rmin <= radii[index] < rmax for index in kept)
    for index in kept:
        assert data.get_radius(index) == radii[index]
    coordinates = data.get_coordinates()
    assert coordinates.shape == (len(kept), 3)

    clone = data.clone()
    assert clone == data
    assert np.allclose(clone.get_coordinates(), coordinates)

    test_dir = Path('_tests')
    for fn in [test_dir / 'quasar.h5', test_dir / 'quasar.txt']:
        data.write(fn)
        data2 = read(fn)
        assert isinstance(data2, QuasarCorrelationData)
        assert data2 == data
        assert np.allclose(data2.get_coordinates(), coordinates)
        assert data2.cosmology == cosmology


def test_fix_covariance():

    cosmology = LambdaCdmUniverse(0.27)
    data = QuasarCorrelationData(get_axes(), 0., 0., np.inf, cosmology, fix_cov=True, fix_c=2e-3)
    for index in range(data.get_n_bins_total()):
        data.set_data(index, 1.)
    for index in data:
        data.set_covariance(index, index, 1.)
    data.compress()
    ll = get_axes()[0].centers()

    def f(kmin, kmax, l):
        return 1. if l == 0 else (math.sin(kmax * l) - math.sin(kmin * l)) / l

    def extra(l1, l2):
        return 2e-3 * (1. + f(0., 150., l1) * f(0., 150., l2) + f(150., 300., l1) * f(150., 300., l2))

    i1, i2, i3 = data.get_index((ll[0], 50., 2.)), data.get_index((ll[3], 50., 2.)), data.get_index((ll[3], 150., 2.))
    data.finalize()
    assert data.is_compressed()
    assert np.allclose(data.get_covariance(i1, i2), extra(ll[0], ll[3]))
    assert np.allclose(data.get_covariance(i1, i1), 1. + extra(ll[0], ll[0]))
    assert np.allclose(data.get_covariance(i2, i2), 1. + extra(ll[3], ll[3]))
    assert data.get_covariance(i1, i3) == 0.


if __name__ == '__main__':

    test_binned_data()
    test_data_after_covariance_read()
    test_compress()
    test_comoving()
    test_quasar()
    test_fix_covariance()

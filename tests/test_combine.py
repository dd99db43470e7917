import numpy as np
import pytest

from baotypes import QuasarCorrelationData, ComovingCorrelationData, LambdaCdmUniverse
from baotypes import UniformBinning, UniformSampling, NonUniformSampling, two_step_sampling
from baotypes import CorrelationAggregator, BinnedDataResampler, StateError, LayoutError


def get_prototype():
    axes = [NonUniformSampling(two_step_sampling(5, 0.1, 0.02, 0.05)), UniformBinning(0., 200., 2), UniformSampling(2., 2., 1)]
    return QuasarCorrelationData(axes, 0., 0., np.inf, LambdaCdmUniverse(0.27))


def get_plate(prototype, values, icov, coords=((0., 50., 2.), (0.025, 50., 2.), (0.075, 150., 2.))):
    plate = prototype.clone(binning_only=True)
    indices = [plate.get_index(coord) for coord in coords]
    for index, value in zip(indices, values):
        plate.set_data(index, value)
    icov = np.asarray(icov)
    if icov.ndim == 1: icov = np.diag(icov)
    for i1, index1 in enumerate(indices):
        for i2, index2 in enumerate(indices[:i1 + 1]):
            plate.set_inverse_covariance(index1, index2, icov[i1, i2])
    return plate.finalize()


def test_combine():

    prototype = get_prototype()
    d1, d2 = np.array([1., 2., 3.]), np.array([3., 0., 1.])
    plate1 = get_plate(prototype, d1, [1., 1., 1.])
    plate2 = get_plate(prototype, d2, [1., 1., 1.])
    aggregator = CorrelationAggregator()
    assert aggregator.state == 'empty'
    aggregator.add(plate1, repeat=1)
    assert aggregator.state == 'accumulating'
    aggregator.add(plate2, repeat=1)
    aggregator.finalize(fix_covariance=False)
    assert aggregator.is_finalized()
    assert aggregator.get_n_data() == 3
    assert np.allclose(np.diag(aggregator.covariance.get_inverse_covariance_matrix()), [2., 2., 2.])
    assert np.allclose(aggregator.data, (d1 + d2) / 2.)
    assert np.allclose([aggregator.get_variance(offset) for offset in range(3)], 0.5)
    assert aggregator.get_radius(2) == plate1.get_radius(plate1.get_index_at_offset(2))
    assert aggregator.get_index(1) == plate1.get_index_at_offset(1)

    # Weighted by each plate's inverse variance
    w1, w2 = np.array([1., 2., 4.]), np.array([3., 2., 1.])
    aggregator.reset()
    aggregator.add(get_plate(prototype, d1, w1).compress())
    aggregator.add(get_plate(prototype, d2, w2))
    aggregator.finalize()
    assert np.allclose(aggregator.data, (w1 * d1 + w2 * d2) / (w1 + w2))
    assert np.allclose(aggregator.covariance.get_inverse_covariance_matrix(), np.diag(w1 + w2))
    assert np.allclose(aggregator.chi_square(np.zeros(3)), np.sum((w1 + w2) * aggregator.data**2))


def test_identity():

    prototype = get_prototype()
    icov = np.array([[2., 0.5, 0.1], [0.5, 1., 0.2], [0.1, 0.2, 3.]])
    values = np.array([1., -2., 0.5])
    plate = get_plate(prototype, values, icov)
    for fix_covariance in [False, True]:
        aggregator = CorrelationAggregator().add(plate, repeat=1).finalize(fix_covariance=fix_covariance)
        assert np.allclose(aggregator.data, values)
        assert np.allclose(aggregator.covariance.get_covariance_matrix(), plate.covariance.get_covariance_matrix())

    dataset = aggregator.to_dataset()
    assert isinstance(dataset, QuasarCorrelationData)
    assert dataset.is_finalized()
    assert list(dataset) == list(plate)
    assert np.allclose(dataset.get_data_vector(), values)
    assert np.allclose(dataset.get_coordinates(), plate.get_coordinates())
    # coordinates come from the aggregate, without calling the distance model
    dataset.cosmology = None
    assert np.allclose([dataset.get_radius(index) for index in dataset], aggregator.get_coordinates()[:, 0])
    assert np.allclose([dataset.get_cos_angle(index) for index in dataset], aggregator.get_coordinates()[:, 1])


def test_bootstrap_inflation():

    prototype = get_prototype()
    icov = np.array([[2., 0.5, 0.1], [0.5, 1., 0.2], [0.1, 0.2, 3.]])
    plate = get_plate(prototype, [1., 2., 3.], icov)
    naive = CorrelationAggregator().add(plate, repeat=2).finalize(fix_covariance=False)
    fixed = CorrelationAggregator().add(plate, repeat=2).finalize(fix_covariance=True)
    assert np.allclose(naive.data, fixed.data)
    variances = np.array([fixed.get_variance(offset) for offset in range(3)])
    assert np.allclose(variances, 2. * np.array([naive.get_variance(offset) for offset in range(3)]))
    assert np.allclose(fixed.covariance.get_covariance_matrix(), np.linalg.inv(icov))


def test_states():

    prototype = get_prototype()
    plate = get_plate(prototype, [1., 2., 3.], [1., 1., 1.])
    aggregator = CorrelationAggregator()
    with pytest.raises(StateError):
        aggregator.finalize()
    with pytest.raises(StateError):
        aggregator.data
    with pytest.raises(ValueError):
        aggregator.add(plate, repeat=0)
    with pytest.raises(ValueError):
        aggregator.add(plate, repeat=1.5)
    unfinalized = prototype.clone(binning_only=True)
    unfinalized.set_data(0, 1.)
    with pytest.raises(StateError):
        aggregator.add(unfinalized)
    aggregator.add(plate)
    other = get_plate(prototype, [1., 2.], [1., 1.], coords=((0., 50., 2.), (0.025, 50., 2.)))
    with pytest.raises(LayoutError):
        aggregator.add(other)
    with pytest.raises(StateError):
        aggregator.prune(0., 100.)
    aggregator.finalize()
    with pytest.raises(StateError):
        aggregator.finalize()
    with pytest.raises(StateError):
        aggregator.add(plate)
    aggregator.reset()
    assert aggregator.state == 'empty'
    aggregator.add(plate).finalize()


def test_prune():

    axes = [NonUniformSampling([10., 20., 30.]), UniformSampling(0.5, 0.5, 1), UniformSampling(2., 2., 1)]
    plate = ComovingCorrelationData(axes)
    for r in [10., 20., 30.]:
        plate.set_data(plate.get_index((r, 0.5, 2.)), r)
    for index in plate:
        plate.set_inverse_covariance(index, index, 1.)
    plate.set_inverse_covariance(0, 1, 0.3)
    plate.finalize()
    aggregator = CorrelationAggregator().add(plate).finalize()
    cov = aggregator.covariance.get_covariance_matrix()
    aggregator.prune(10., 30., 10.)
    assert aggregator.get_n_data() == 2
    assert [aggregator.get_radius(offset) for offset in range(2)] == [10., 20.]
    assert np.allclose(aggregator.data, [10., 20.])
    assert np.allclose(aggregator.covariance.get_covariance_matrix(), cov[:2, :2])
    aggregator.prune(10., 30., 15.)
    assert aggregator.get_n_data() == 1
    assert aggregator.get_data(0) == pytest.approx(20.)


def test_resampler():

    prototype = get_prototype()
    rng = np.random.RandomState(seed=42)
    resampler = BinnedDataResampler(seed=1966)
    with pytest.raises(StateError):
        resampler.bootstrap_counts(0)
    for iplate in range(6):
        resampler.add_observation(get_plate(prototype, rng.uniform(size=3), 1. + rng.uniform(size=3)))
    assert resampler.nobservations == 6
    with pytest.raises(LayoutError):
        resampler.add_observation(get_plate(prototype, [1., 2.], [1., 1.], coords=((0., 50., 2.), (0.025, 50., 2.))))

    counts = resampler.bootstrap_counts(3)
    assert counts.sum() == 6
    assert np.all(resampler.bootstrap_counts(3) == counts)
    assert resampler.bootstrap_counts(5, size=20).sum() == 20
    assert any(np.any(resampler.bootstrap_counts(trial) != counts) for trial in range(4, 10))
    other = BinnedDataResampler(seed=1966)
    for iobs in range(resampler.nobservations):
        other.add_observation(resampler.get_observation(iobs))
    assert np.all(other.bootstrap_counts(3) == counts)

    combined = resampler.combined()
    aggregator = CorrelationAggregator()
    for trial in range(3):
        resampler.bootstrap(trial, aggregator=aggregator)
        assert aggregator.is_finalized()
        assert aggregator.nadded == 6
    ref = resampler.aggregate(resampler.bootstrap_counts(2), fix_covariance=True)
    assert np.allclose(aggregator.data, ref.data)
    assert np.allclose(aggregator.covariance.get_covariance_matrix(), ref.covariance.get_covariance_matrix())
    assert np.all(resampler.aggregate(np.ones(6, dtype='i8')).data == combined.data)


if __name__ == '__main__':

    test_combine()
    test_identity()
    test_bootstrap_inflation()
    test_states()
    test_prune()
    test_resampler()

"""Correlation function datasets: binned data with physical (r, mu, z) coordinates and final cuts."""

import math

import numpy as np

from .base import register_type, from_state
from .data import BinnedData
from .cosmology import LambdaCdmUniverse


ARCMIN_TO_RAD = math.pi / (60. * 180.)


class CorrelationData(BinnedData):
    """
    Binned correlation function whose bins map to a pair separation ``r``,
    line-of-sight cosine ``mu`` and redshift ``z``.

    On :meth:`finalize`, only bins with ``rmin <= r < rmax`` are kept.
    """
    def __init__(self, axes, rmin=0., rmax=np.inf):
        super().__init__(axes)
        self.rmin = float(rmin)
        self.rmax = float(rmax)

    def _coordinates(self, index):
        raise NotImplementedError

    def get_radius(self, index):
        return self._coordinates(index)[0]

    def get_cos_angle(self, index):
        return self._coordinates(index)[1]

    def get_redshift(self, index):
        return self._coordinates(index)[2]

    def get_coordinates(self):
        """Array of (r, mu, z) for each bin with data, in offset order."""
        return np.array([self._coordinates(index) for index in self._index], dtype='f8').reshape(-1, 3)

    def _keep(self, index):
        return self.rmin <= self.get_radius(index) < self.rmax

    def _apply_final_cuts(self):
        return {index for index in self._index if self._keep(index)}

    def _copy_extra(self, new, binning_only=False):
        new.rmin, new.rmax = self.rmin, self.rmax

    def __getstate__(self, to_file=False):
        state = super().__getstate__(to_file=to_file)
        state['rmin'], state['rmax'] = self.rmin, self.rmax
        return state

    def __setstate__(self, state):
        super().__setstate__(state)
        self.rmin, self.rmax = float(state['rmin']), float(state['rmax'])


@register_type
class ComovingCorrelationData(CorrelationData):
    """
    Correlation function binned directly in comoving coordinates.

    Parameters
    ----------
    axes : MultiAxisIndex, list of Binning
        Binnings of (r, mu, z).
    rmin : float, default=0.
        Minimum radius (included).
    rmax : float, default=inf
        Maximum radius (excluded).
    """
    _name = 'comoving_correlation_data'

    def __init__(self, axes, rmin=0., rmax=np.inf):
        super().__init__(axes, rmin=rmin, rmax=rmax)
        if self._axes.ndim != 3:
            raise ValueError(f'Expected 3 axes (r, mu, z), got {self._axes.ndim:d}')

    def _coordinates(self, index):
        return self.get_bin_centers(index)


@register_type
class QuasarCorrelationData(CorrelationData):
    """
    Correlation function binned in observed coordinates: log-wavelength ratio ``ll``,
    angular separation ``sep`` (arcmin) and redshift ``z``.

    Physical coordinates of each bin center are computed with a cosmology before
    :meth:`finalize`, and looked up from a cache afterwards.

    Parameters
    ----------
    axes : MultiAxisIndex, list of Binning
        Binnings of (ll, sep, z).
    llmin : float
        Minimum log-wavelength ratio (included).
    rmin : float
        Minimum radius (included).
    rmax : float
        Maximum radius (excluded).
    cosmology : HomogeneousUniverse
        Distance model.
    fix_cov : bool, default=False
        If ``True``, add :meth:`fix_covariance` terms on :meth:`finalize`.
    fix_k1, fix_k2, fix_c : float
        Default coefficients of :meth:`fix_covariance`.
    """
    _name = 'quasar_correlation_data'

    def __init__(self, axes, llmin, rmin, rmax, cosmology, fix_cov=False, fix_k1=150., fix_k2=300., fix_c=1e-3):
        super().__init__(axes, rmin=rmin, rmax=rmax)
        if self._axes.ndim != 3:
            raise ValueError(f'Expected 3 axes (ll, sep, z), got {self._axes.ndim:d}')
        if cosmology is None:
            raise ValueError('Provide a cosmology')
        self.llmin = float(llmin)
        self.cosmology = cosmology
        self.fix_cov = bool(fix_cov)
        self.fix_k1, self.fix_k2, self.fix_c = float(fix_k1), float(fix_k2), float(fix_c)

    def reset(self):
        super().reset()
        self._lookup = None
        self._last = None

    def transform(self, ll, sep, dsep, z):
        """
        Return the comoving separation ``r`` (Mpc/h) and line-of-sight cosine ``mu``
        of a pair at log-wavelength ratio ``ll`` and angular separation ``sep`` (arcmin,
        in a bin of width ``dsep``) around redshift ``z``.
        """
        ratio = math.exp(0.5 * ll)
        zp1 = z + 1.
        z1, z2 = zp1 / ratio - 1., zp1 * ratio - 1.
        dlos = self.cosmology.line_of_sight_comoving_distance(z2) - self.cosmology.line_of_sight_comoving_distance(z1)
        # Area-weighted mean separation over the bin
        swgt = sep + dsep**2 / (12. * sep)
        dperp = self.cosmology.transverse_comoving_scale(z) * swgt * ARCMIN_TO_RAD
        r = math.sqrt(dlos**2 + dperp**2)
        return r, abs(dlos) / r

    def _coordinates(self, index):
        if self._lookup is not None:
            return tuple(self._lookup[self.get_offset_for_index(index)])
        if self._last is None or self._last[0] != index:
            ll, sep, z = self.get_bin_centers(index)
            dsep = self.get_bin_widths(index)[1]
            self._last = (index, self.transform(ll, sep, dsep, z) + (z,))
        return self._last[1]

    def _keep(self, index):
        return super()._keep(index) and self.get_bin_centers(index)[0] >= self.llmin

    def _set_coordinates(self, coordinates):
        self._lookup = coordinates.copy()
        self._last = None

    def _prune_cached(self, offsets):
        if self._lookup is not None:
            self._lookup = self._lookup[offsets]

    @staticmethod
    def _pkmarg(kmin, kmax, ll):
        with np.errstate(divide='ignore', invalid='ignore'):
            f = np.where(ll == 0., 1., (np.sin(kmax * ll) - np.sin(kmin * ll)) / ll)
        return np.outer(f, f)

    def fix_covariance(self, k1=None, k2=None, c=None):
        """
        Add ``c * (1 + pk(0, k1) + pk(k1, k2))`` to the covariance of each pair of bins
        with the same separation and redshift bins, where
        ``pk(kmin, kmax) = f(ll1) * f(ll2)`` and ``f(l) = (sin(kmax l) - sin(kmin l)) / l``.

        Coefficients default to ``fix_k1``, ``fix_k2``, ``fix_c``.
        """
        k1 = self.fix_k1 if k1 is None else k1
        k2 = self.fix_k2 if k2 is None else k2
        c = self.fix_c if c is None else c
        bins = np.array([self.get_bin_indices(index) for index in self._index], dtype='i8').reshape(-1, 3)
        ll = np.array([self.get_axis_binning()[0].get_bin_center(i) for i in bins[:, 0]])
        same = (bins[:, None, 1] == bins[None, :, 1]) & (bins[:, None, 2] == bins[None, :, 2])
        extra = c * (1. + self._pkmarg(0., k1, ll) + self._pkmarg(k1, k2, ll))
        covariance = self.covariance.get_covariance_matrix() + np.where(same, extra, 0.)
        self.covariance.set_covariance_matrix(covariance)
        self._weighted_data = None
        return self

    def finalize(self):
        self._check_loading()
        if self.fix_cov:
            compressed = self.is_compressed()
            self.covariance.thaw()
            self.fix_covariance()
            if compressed: self.covariance.compress()
        super().finalize()
        self._lookup = np.array([self._coordinates(index) for index in self._index], dtype='f8').reshape(-1, 3)
        self._last = None
        return self

    def _copy_extra(self, new, binning_only=False):
        super()._copy_extra(new, binning_only=binning_only)
        for name in ['llmin', 'cosmology', 'fix_cov', 'fix_k1', 'fix_k2', 'fix_c']:
            setattr(new, name, getattr(self, name))
        new._last = None
        new._lookup = None
        if not binning_only and self._lookup is not None:
            new._lookup = self._lookup.copy()

    def __getstate__(self, to_file=False):
        state = super().__getstate__(to_file=to_file)
        state['llmin'] = self.llmin
        state['fix_cov'] = int(self.fix_cov)
        state['fix'] = np.array([self.fix_k1, self.fix_k2, self.fix_c])
        if isinstance(self.cosmology, LambdaCdmUniverse):
            state['cosmology'] = self.cosmology.__getstate__(to_file=to_file)
        if self._lookup is not None:
            state['lookup'] = self._lookup
        return state

    def __setstate__(self, state):
        super().__setstate__(state)
        self.llmin = float(state['llmin'])
        self.fix_cov = bool(state['fix_cov'])
        self.fix_k1, self.fix_k2, self.fix_c = (float(value) for value in np.ravel(state['fix']))
        self.cosmology = from_state(state['cosmology']) if 'cosmology' in state else None
        self._last = None
        self._lookup = None
        if 'lookup' in state:
            self._lookup = np.array(state['lookup'], dtype='f8').reshape(-1, 3)

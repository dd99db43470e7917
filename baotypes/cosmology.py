"""Homogeneous cosmology distances used to map observed bins to comoving separations."""

import math
from typing import Protocol

from scipy import integrate

from .base import register_type


# Hubble distance c / H0, in Mpc/h
HUBBLE_DISTANCE = 2997.92458

# Radiation density (photons and three massless neutrinos) times h^2
_OMEGA_RADIATION_H2 = 4.184e-5


class HomogeneousUniverse(Protocol):
    """Distance model of a homogeneous universe; distances in Mpc/h."""

    def line_of_sight_comoving_distance(self, z):
        ...

    def transverse_comoving_scale(self, z):
        """Transverse comoving distance per radian of angular separation at redshift ``z``."""
        ...


@register_type
class LambdaCdmUniverse(object):
    """
    Lambda-CDM universe.

    Parameters
    ----------
    omega_matter : float
        Present matter density.
    omega_lambda : float, default=None
        Present dark energy density. If ``None``, the universe is flat.
    hubble_constant : float, default=0.7
        Dimensionless Hubble constant :math:`h`; only used to derive ``omega_radiation``.
    omega_radiation : float, default=0.
        Present radiation density. If ``None``, derived from ``hubble_constant``
        for photons and three massless neutrino species.
    """
    _name = 'lambda_cdm_universe'

    def __init__(self, omega_matter, omega_lambda=None, hubble_constant=0.7, omega_radiation=0.):
        if omega_radiation is None:
            omega_radiation = _OMEGA_RADIATION_H2 / hubble_constant**2
        if omega_lambda is None:
            omega_lambda = 1. - omega_matter - omega_radiation
        if omega_matter < 0 or hubble_constant <= 0 or omega_radiation < 0:
            raise ValueError(f'Invalid cosmology: omega_matter={omega_matter}, hubble_constant={hubble_constant}, omega_radiation={omega_radiation}')
        self.omega_matter = float(omega_matter)
        self.omega_lambda = float(omega_lambda)
        self.hubble_constant = float(hubble_constant)
        self.omega_radiation = float(omega_radiation)
        self._cache = {}

    @property
    def omega_curvature(self):
        return 1. - self.omega_matter - self.omega_lambda - self.omega_radiation

    def efunc(self, z):
        """Hubble rate at redshift ``z`` relative to today."""
        zp1 = 1. + z
        return math.sqrt(self.omega_matter * zp1**3 + self.omega_radiation * zp1**4
                         + self.omega_curvature * zp1**2 + self.omega_lambda)

    def line_of_sight_comoving_distance(self, z):
        """Line-of-sight comoving distance to redshift ``z``, in Mpc/h."""
        z = float(z)
        try:
            return self._cache[z]
        except KeyError:
            pass
        if z < 0:
            raise ValueError(f'Expected z >= 0, got {z}')
        value, _ = integrate.quad(lambda zz: 1. / self.efunc(zz), 0., z, epsabs=0., epsrel=1e-10)
        self._cache[z] = value = HUBBLE_DISTANCE * value
        return value

    def transverse_comoving_scale(self, z):
        """Transverse comoving distance per radian at redshift ``z``, in Mpc/h."""
        distance = self.line_of_sight_comoving_distance(z)
        omega_k = self.omega_curvature
        if abs(omega_k) < 1e-12:
            return distance
        sqrtk = math.sqrt(abs(omega_k))
        if omega_k > 0:
            return HUBBLE_DISTANCE / sqrtk * math.sinh(sqrtk * distance / HUBBLE_DISTANCE)
        return HUBBLE_DISTANCE / sqrtk * math.sin(sqrtk * distance / HUBBLE_DISTANCE)

    def __getstate__(self, to_file=False):
        return {'name': self._name, 'omega_matter': self.omega_matter, 'omega_lambda': self.omega_lambda,
                'hubble_constant': self.hubble_constant, 'omega_radiation': self.omega_radiation}

    def __setstate__(self, state):
        for name in ['omega_matter', 'omega_lambda', 'hubble_constant', 'omega_radiation']:
            setattr(self, name, float(state[name]))
        self._cache = {}

    def __eq__(self, other):
        return type(self) is type(other) and self.__getstate__() == other.__getstate__()

    def __repr__(self):
        return (f'{self.__class__.__name__}(omega_matter={self.omega_matter:.4f}, omega_lambda={self.omega_lambda:.4f}, '
                f'hubble_constant={self.hubble_constant:.3f})')

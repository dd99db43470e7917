"""
Configuration of data loading, binning, cuts and bootstrap resampling.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import yaml

from .cosmology import LambdaCdmUniverse


@dataclass
class CosmologyConfig:
    """Fiducial cosmology used to transform observed coordinates."""
    omega_matter: float = 0.27
    omega_lambda: Optional[float] = None  # None: flat
    hubble_constant: float = 0.7
    omega_radiation: float = 0.0

    def build(self) -> LambdaCdmUniverse:
        return LambdaCdmUniverse(self.omega_matter, omega_lambda=self.omega_lambda,
                                 hubble_constant=self.hubble_constant, omega_radiation=self.omega_radiation)


@dataclass
class BinningConfig:
    """Binning of the log-wavelength ratio, separation and redshift axes."""
    nll: int = 14
    minll: float = 0.0002
    dll: float = 0.004
    dll2: float = 0.0  # 0: uniform ll binning, else two-step sampling
    nsep: int = 14
    minsep: float = 0.0  # arcmin
    dsep: float = 10.0  # arcmin
    nz: int = 2
    minz: float = 1.7
    dz: float = 1.0


@dataclass
class CutsConfig:
    """Final cuts: rmin <= r < rmax and ll >= llmin."""
    rmin: float = 0.0  # Mpc/h
    rmax: float = 200.0  # Mpc/h
    llmin: float = 0.0


@dataclass
class CovarianceFixConfig:
    """Extra covariance terms added to each dataset on finalize."""
    enabled: bool = False
    k1: float = 150.0
    k2: float = 300.0
    c: float = 1e-3


@dataclass
class DataConfig:
    """Input datasets: either a single dataset or a list of plates."""
    data: str = ""
    platelist: str = ""
    plateroot: str = ""
    max_plates: int = 0  # 0: no limit
    fast_load: bool = False
    check_pos_def: bool = False


@dataclass
class BootstrapConfig:
    """Bootstrap resampling of plates."""
    trials: int = 0
    size: int = 0  # 0: number of plates
    naive_covariance: bool = False
    random_seed: int = 1966
    curves: bool = False


@dataclass
class Config:
    """Main configuration class."""
    cosmology: CosmologyConfig = field(default_factory=CosmologyConfig)
    binning: BinningConfig = field(default_factory=BinningConfig)
    cuts: CutsConfig = field(default_factory=CutsConfig)
    covariance_fix: CovarianceFixConfig = field(default_factory=CovarianceFixConfig)
    data: DataConfig = field(default_factory=DataConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)

    def to_dict(self) -> Dict:
        """Convert config to dictionary."""
        return {
            'cosmology': dict(self.cosmology.__dict__),
            'binning': dict(self.binning.__dict__),
            'cuts': dict(self.cuts.__dict__),
            'covariance_fix': dict(self.covariance_fix.__dict__),
            'data': dict(self.data.__dict__),
            'bootstrap': dict(self.bootstrap.__dict__)
        }

    @classmethod
    def from_dict(cls, d: Dict) -> 'Config':
        """Create config from dictionary."""
        config = cls()
        d = d or {}
        if 'cosmology' in d:
            config.cosmology = CosmologyConfig(**d['cosmology'])
        if 'binning' in d:
            config.binning = BinningConfig(**d['binning'])
        if 'cuts' in d:
            config.cuts = CutsConfig(**d['cuts'])
        if 'covariance_fix' in d:
            config.covariance_fix = CovarianceFixConfig(**d['covariance_fix'])
        if 'data' in d:
            config.data = DataConfig(**d['data'])
        if 'bootstrap' in d:
            config.bootstrap = BootstrapConfig(**d['bootstrap'])
        return config


def load_config(path: str) -> Config:
    """Load configuration from YAML file."""
    with open(path, 'r') as f:
        d = yaml.safe_load(f)
    return Config.from_dict(d)


def save_config(config: Config, path: str):
    """Save configuration to YAML file."""
    with open(path, 'w') as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

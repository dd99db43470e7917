from .binning import Binning, UniformBinning, NonUniformBinning, UniformSampling, NonUniformSampling, two_step_sampling, MultiAxisIndex
from .covariance import CovarianceMatrix
from .data import BinnedData
from .types import ComovingCorrelationData, QuasarCorrelationData
from .cosmology import LambdaCdmUniverse
from .combine import CorrelationAggregator, BinnedDataResampler
from .fit import CorrelationLikelihood, FitResult, BootstrapResult, run_bootstrap
from .analysis import AnalysisResult, load_data, run_analysis
from .base import read, write
from .utils import OutOfRangeError, FormatError, NotPositiveDefiniteError, StateError, LayoutError, setup_logging


__version__ = '0.1.0'

"""Loaders for correlation function measurements in cosmolib format."""

import os
import re
import logging

from .binning import UniformBinning, UniformSampling, NonUniformSampling, two_step_sampling
from .types import QuasarCorrelationData
from .utils import FormatError, OutOfRangeError, packed_size


logger = logging.getLogger(__name__)

_ipat = r'(0|(?:[1-9][0-9]*))'
_fpat = r'([-+]?[0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)'
_anypat = r'(\S+)'


def _line_patterns(fast=False):
    ipat, fpat = (_anypat, _anypat) if fast else (_ipat, _fpat)
    params = re.compile(r'\s*{f}\s+{f}\s*\| Lya covariance 3D \({f},{f},{f}\)\s*'.format(f=fpat))
    cov = re.compile(r'\s*{i}\s+{i}\s+{f}\s*'.format(i=ipat, f=fpat))
    return params, cov


def _open(filename):
    try:
        return open(filename, 'r')
    except OSError as exc:
        raise FormatError(f'Unable to open {filename}', filename=filename) from exc


def _parse(pattern, line, convert, filename, iline, kind):
    match = pattern.fullmatch(line.rstrip('\r\n'))
    if match is not None:
        try:
            return [conv(value) for conv, value in zip(convert, match.groups())]
        except ValueError:  # only possible with fast patterns
            pass
    raise FormatError(f"Badly formatted {kind} line {iline:d}: '{line.rstrip()}'", filename=filename, line=iline)


def load_cosmolib(name, prototype, icov=False, fast=False, check_pos_def=False):
    """
    Load a dataset from ``<name>.params`` and ``<name>.cov`` (or ``<name>.icov``).

    Each line of the parameters file reads ``value  ignored | Lya covariance 3D (ll,sep,z)``,
    with ``(ll, sep, z)`` the bin center. Each line of the covariance file reads ``offset1 offset2 value``,
    with offsets referring to the order of bins in the parameters file. Inverse covariance values
    are stored with the opposite sign.

    Parameters
    ----------
    name : str
        Path to the files, without extension.
    prototype : BinnedData
        Empty dataset whose binning (and cuts) the loaded dataset uses.
    icov : bool, default=False
        If ``True``, read the inverse covariance from ``<name>.icov``.
    fast : bool, default=False
        If ``True``, skip strict validation of numeric tokens.
    check_pos_def : bool, default=False
        If ``True``, log a warning if the covariance is not positive-definite.

    Returns
    -------
    dataset : BinnedData
        Compressed dataset.

    Raises
    ------
    FormatError
        If a file cannot be opened, or contains a malformed line.
    """
    params_pattern, cov_pattern = _line_patterns(fast=fast)
    dataset = prototype.clone(binning_only=True)

    params_name = f'{name}.params'
    with _open(params_name) as file:
        for iline, line in enumerate(file, start=1):
            value, _, ll, sep, z = _parse(params_pattern, line, [float] * 5, params_name, iline, 'params')
            try:
                index = dataset.get_index((ll, sep, z))
            except OutOfRangeError as exc:
                raise FormatError(f'Bin ({ll}, {sep}, {z}) outside of binning', filename=params_name, line=iline) from exc
            dataset.set_data(index, value)
    ndata = dataset.get_n_bins_with_data()
    logger.info('Read %d of %d data values from %s.', ndata, dataset.get_n_bins_total(), params_name)

    cov_name = f'{name}.icov' if icov else f'{name}.cov'
    nlines = 0
    with _open(cov_name) as file:
        for iline, line in enumerate(file, start=1):
            offset1, offset2, value = _parse(cov_pattern, line, [int, int, float], cov_name, iline, 'covariance')
            if max(offset1, offset2) >= ndata:
                raise FormatError(f'Offset out of range [0, {ndata:d})', filename=cov_name, line=iline)
            index1, index2 = dataset.get_index_at_offset(offset1), dataset.get_index_at_offset(offset2)
            if icov:
                dataset.set_inverse_covariance(index1, index2, -value)
            else:
                dataset.set_covariance(index1, index2, value)
            nlines = iline
    logger.info('Read %d of %d covariance values from %s.', nlines, packed_size(ndata), cov_name)

    nzeros = dataset.covariance.regularize_diagonal()
    if nzeros:
        logger.info('Replaced %d zero diagonal elements in %s.', nzeros, cov_name)
    if check_pos_def and not dataset.covariance.is_positive_definite():
        logger.warning('Inverse covariance not positive-definite: %s', cov_name)
    return dataset.compress()


def _read_platelist(filename):
    with _open(filename) as file:
        return file.read().split()


def load_platelist(platelist, plateroot, prototype, max_plates=0, fast=False, check_pos_def=False):
    """
    Load and finalize the plates listed in ``plateroot + platelist``.

    Each whitespace-separated name in the plate list is loaded with :func:`load_cosmolib`
    from ``plateroot + name`` with its inverse covariance.

    Parameters
    ----------
    platelist : str
        Plate list file name, relative to ``plateroot``.
    plateroot : str
        Prefix of the plate list and plate file names.
    prototype : BinnedData
        Empty dataset whose binning and cuts plates use.
    max_plates : int, default=0
        Maximum number of plates to load; 0 for all.

    Returns
    -------
    plates : list of BinnedData
        Finalized, compressed datasets.
    """
    names = _read_platelist(plateroot + platelist)
    if max_plates > 0:
        names = names[:max_plates]
    plates = []
    for name in names:
        plate = load_cosmolib(plateroot + name, prototype, icov=True, fast=fast, check_pos_def=check_pos_def)
        plate.finalize()
        if plate.covariance.mode == 'covariance':
            # Combination uses the inverse covariance
            plate.covariance.thaw().invert()
        plates.append(plate.compress())
    logger.info('Loaded %d plates from %s.', len(plates), os.path.basename(plateroot + platelist))
    return plates


def create_cosmolib_prototype(binning, cosmology, cuts=None, covariance_fix=None):
    """
    Return an empty :class:`QuasarCorrelationData` with (ll, sep, z) axes.

    Parameters
    ----------
    binning : BinningConfig
        Axis binning; the log-wavelength ratio axis is uniform if ``binning.dll2 == 0``,
        else it follows :func:`two_step_sampling`.
    cosmology : HomogeneousUniverse
        Distance model.
    cuts : CutsConfig, default=None
        Final cuts; if ``None``, no cut is applied.
    covariance_fix : CovarianceFixConfig, default=None
        Covariance fix settings; if ``None``, no fix is applied.
    """
    b = binning
    sep = UniformBinning(b.minsep, b.minsep + b.nsep * b.dsep, b.nsep)
    z = UniformSampling(b.minz + 0.5 * b.dz, b.minz + (b.nz - 0.5) * b.dz, b.nz)
    if b.dll2 == 0:
        ll = UniformBinning(b.minll, b.minll + b.nll * b.dll, b.nll)
    else:
        ll = NonUniformSampling(two_step_sampling(b.nll, b.minll, b.dll, b.dll2))
    if cuts is None:
        llmin, rmin, rmax = -float('inf'), 0., float('inf')
    else:
        llmin, rmin, rmax = cuts.llmin, cuts.rmin, cuts.rmax
    kwargs = {}
    if covariance_fix is not None:
        kwargs = dict(fix_cov=covariance_fix.enabled, fix_k1=covariance_fix.k1, fix_k2=covariance_fix.k2, fix_c=covariance_fix.c)
    return QuasarCorrelationData([ll, sep, z], llmin, rmin, rmax, cosmology, **kwargs)

"""
Persistence of registered types.

Objects expose ``__getstate__(to_file=True)`` returning a nested dictionary of arrays and scalars,
with their registered name under the ``'name'`` key; :func:`write` stores this dictionary
either in an HDF5 file (groups for nested dictionaries) or in a directory tree with one
text file per array.
"""

import os
import shutil
import logging

import numpy as np

from . import utils


logger = logging.getLogger(__name__)

_h5_extensions = ('.h5', '.hdf5')
_txt_extension = '.txt'


def _h5_write_group(group, state):
    import h5py
    for key, value in state.items():
        if isinstance(value, dict):
            _h5_write_group(group.create_group(key, track_order=True), value)
            continue
        value = np.asarray(value)
        if value.dtype.kind == 'U':
            group.create_dataset(key, shape=value.shape, dtype=h5py.string_dtype())[...] = value
        else:
            group.create_dataset(key, data=value)


def _h5_read_group(group):
    import h5py
    state = {}
    for key, value in group.items():
        if isinstance(value, h5py.Group):
            state[key] = _h5_read_group(value)
            continue
        array = value[...]
        if h5py.check_string_dtype(value.dtype):
            array = array.astype('U')
        state[key] = array.item() if array.ndim == 0 else array
    return state


def _txt_fmt(array):
    # Format preserving the full precision of each dtype
    kind = array.dtype.kind
    if kind in 'biu':
        return '%d'
    if kind == 'f':
        return '%.18e'
    if kind == 'U':
        return '%s'
    raise TypeError(f'Cannot write arrays of dtype {array.dtype} to text')


def _txt_write_tree(dirname, state):
    utils.mkdir(dirname)
    for key, value in state.items():
        path = os.path.join(dirname, key)
        if isinstance(value, dict):
            _txt_write_tree(path, value)
            continue
        value = np.asarray(value)
        shape = ','.join(str(s) for s in value.shape)
        np.savetxt(path + _txt_extension, np.ravel(value), fmt=_txt_fmt(value), header=f'dtype: {value.dtype.str}\nshape: {shape}')


def _txt_read_header(filename):
    with open(filename, 'r') as file:
        dtype = file.readline().split(':', 1)[1].strip()
        shape = file.readline().split(':', 1)[1].strip()
    return np.dtype(dtype), tuple(int(s) for s in shape.split(',') if s)


def _txt_read_tree(dirname):
    state = {}
    for key in sorted(os.listdir(dirname)):
        path = os.path.join(dirname, key)
        if os.path.isdir(path):
            state[key] = _txt_read_tree(path)
            continue
        if not key.endswith(_txt_extension):
            continue
        dtype, shape = _txt_read_header(path)
        if np.prod(shape, dtype='i8') == 0:
            array = np.empty(shape, dtype=dtype)
        else:
            array = np.loadtxt(path, dtype=dtype, ndmin=1, comments='#').reshape(shape)
        state[key[:-len(_txt_extension)]] = array.item() if not shape else array
    return state


def _write(filename, state):
    """
    Write a state dictionary to disk, overwriting any previous file.

    Parameters
    ----------
    filename : str, Path
        '.h5' or '.hdf5' for HDF5, '.txt' for a text directory tree (named without the extension).
    state : dict
        State dictionary.
    """
    filename = str(filename)
    utils.mkdir(os.path.dirname(filename))
    if filename.endswith(_h5_extensions):
        import h5py
        with h5py.File(filename, 'w') as file:
            _h5_write_group(file, state)
    elif filename.endswith(_txt_extension):
        dirname = filename[:-len(_txt_extension)]
        shutil.rmtree(dirname, ignore_errors=True)
        _txt_write_tree(dirname, state)
    else:
        raise ValueError(f'Unknown file format: {filename}')
    logger.debug('Wrote %s to %s.', state.get('name', 'state'), filename)


def _read(filename):
    """Read a state dictionary written by :func:`_write`."""
    filename = str(filename)
    if filename.endswith(_h5_extensions):
        import h5py
        with h5py.File(filename, 'r') as file:
            return _h5_read_group(file)
    if filename.endswith(_txt_extension):
        return _txt_read_tree(filename[:-len(_txt_extension)])
    raise ValueError(f'Unknown file format: {filename}')


_registry = {}


def register_type(cls):
    """Class decorator, registering ``cls`` under ``cls._name`` for :func:`from_state`."""
    _registry[cls._name] = cls
    return cls


def from_state(state):
    """Rebuild a registered object (binning, covariance matrix, dataset...) from its state dictionary."""
    state = dict(state)
    name = str(state.pop('name'))
    if name not in _registry:
        raise ValueError(f'Unknown type {name}; registered types are {list(_registry)}')
    cls = _registry[name]
    new = cls.__new__(cls)
    new.__setstate__(state)
    return new


def write(filename, obj):
    """
    Write a registered object to disk.

    Parameters
    ----------
    filename : str, Path
        Output file name, see :func:`_write`.
    obj : object
        e.g. :class:`CovarianceMatrix` or :class:`BinnedData`.
    """
    _write(filename, obj.__getstate__(to_file=True))


def read(filename):
    """Read an object written by :func:`write`."""
    return from_state(_read(filename))


def deep_eq(obj1, obj2):
    """Recursively compare two states; NaNs compare equal."""
    if isinstance(obj1, dict) or isinstance(obj2, dict):
        return isinstance(obj1, dict) and isinstance(obj2, dict) and obj1.keys() == obj2.keys() \
            and all(deep_eq(obj1[key], obj2[key]) for key in obj1)
    if isinstance(obj1, (tuple, list)) and isinstance(obj2, (tuple, list)):
        return len(obj1) == len(obj2) and all(deep_eq(o1, o2) for o1, o2 in zip(obj1, obj2))
    obj1, obj2 = np.asarray(obj1), np.asarray(obj2)
    if obj1.dtype.kind == 'f' and obj2.dtype.kind == 'f':
        return np.array_equal(obj1, obj2, equal_nan=True)
    return np.array_equal(obj1, obj2)

import os
import sys
import logging

import numpy as np


logger = logging.getLogger(__name__)


class OutOfRangeError(ValueError):
    """Raised when a coordinate falls outside the range of an axis binning."""


class FormatError(ValueError):
    """Raised when an input file cannot be opened or contains a malformed line."""

    def __init__(self, message, filename=None, line=None):
        self.filename = filename
        self.line = line
        if filename is not None:
            where = str(filename) if line is None else f'{filename}:{line:d}'
            message = f'{where}: {message}'
        super().__init__(message)


class NotPositiveDefiniteError(np.linalg.LinAlgError):
    """Raised when a Cholesky factorization fails."""


class StateError(RuntimeError):
    """Raised when an object is used in the wrong lifecycle state."""


class LayoutError(StateError):
    """Raised when combining datasets whose populated bins differ."""


def mkdir(dirname):
    """Try to create ``dirname`` and catch :class:`OSError`."""
    if not dirname: return
    try:
        os.makedirs(dirname)  # MPI...
    except OSError:
        return


def setup_logging(level=logging.INFO, stream=sys.stdout, filename=None, filemode='w', **kwargs):
    """
    Set up logging.

    Parameters
    ----------
    level : string, int, default=logging.INFO
        Logging level.
    stream : _io.TextIOWrapper, default=sys.stdout
        Where to stream.
    filename : string, default=None
        If not ``None`` stream to file name.
    filemode : string, default='w'
        Mode to open file, only used if filename is not ``None``.
    kwargs : dict
        Other arguments for :func:`logging.basicConfig`.
    """
    if isinstance(level, str):
        level = {'info': logging.INFO, 'debug': logging.DEBUG, 'warning': logging.WARNING}[level.lower()]
    for handler in logging.root.handlers:
        logging.root.removeHandler(handler)
    fmt = logging.Formatter(fmt='%(asctime)s %(name)-28s %(levelname)-8s %(message)s', datefmt='%m-%d %H:%M ')
    if filename is not None:
        mkdir(os.path.dirname(filename))
        handler = logging.FileHandler(filename, mode=filemode)
    else:
        handler = logging.StreamHandler(stream=stream)
    handler.setFormatter(fmt)
    logging.basicConfig(level=level, handlers=[handler], **kwargs)


def packed_index(row, col):
    """Index of element (row, col) in packed upper-triangular storage."""
    if row > col: row, col = col, row
    return row + (col * (col + 1)) // 2


def packed_size(n):
    """Number of stored elements of a packed symmetric n x n matrix."""
    return (n * (n + 1)) // 2

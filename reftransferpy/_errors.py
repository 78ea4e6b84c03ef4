# pylint: disable=C0114, C0115
from __future__ import annotations


class ReftransferError(Exception):
    """Base class for errors raised by reftransferpy."""


class DimensionMismatch(ReftransferError, ValueError):
    """Feature or embedding shapes disagree."""


class IndexNotBuilt(ReftransferError, RuntimeError):
    """The index was queried before :meth:`AnnIndex.build` was called."""


class IndexAlreadyBuilt(ReftransferError, RuntimeError):
    """The index was modified or rebuilt after :meth:`AnnIndex.build`."""


class EmptyIndex(ReftransferError, ValueError):
    """The index holds no points to search."""


class LabelLookupMissing(ReftransferError, KeyError):
    """A neighbor id has no corresponding reference label."""


class MissingReferenceStatistics(ReftransferError, ValueError):
    """Projection was requested without the reference centering statistics."""

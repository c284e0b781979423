"""
Exception taxonomy for mrgrad.

Subject-level problems (``MissingInput``, ``DegenerateRegion``) abort the
batch in strict mode and become all-NaN profiles with ``ignore_missing``;
structural problems (``DimensionMismatch``, ``PersistenceFailure``) always
propagate to the caller.
"""


class MrGradError(Exception):
    """Base class for all mrgrad errors."""


class MissingInput(MrGradError, FileNotFoundError):
    """A subject's map or segmentation file is absent or unreadable."""


class DimensionMismatch(MrGradError, ValueError):
    """Parameter map and mask shapes disagree after orientation normalization."""


class DegenerateRegion(MrGradError, ValueError):
    """Too few (or coplanar / colinear) voxels to fit an axis frame."""


class PersistenceFailure(MrGradError, OSError):
    """Aggregated results could not be written to disk."""


class AmbiguousDirectionality(UserWarning):
    """No reliable sign prior; cross-subject agreement is not guaranteed."""

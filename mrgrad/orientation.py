"""
Sign harmonization of ROI axis frames.

Eigenvectors are only defined up to sign, so the same anatomical axis can
come out as A>>P in one subject and P>>A in the next.  Each analysis axis is
therefore tied to an image axis (1=X L>R, 2=Y P>A, 3=Z I>S) and flipped so
that its loading on that image axis is positive.

Directionality is resolved per ROI, in this order:
  1. an explicit ``max_change`` row supplied by the caller
  2. the default convention, if axes come from an alternative ROI
  3. the region prior table (``REGION_PRIORS``)
  4. the default convention ``DEFAULT_DIRECTIONALITY``

Cases 2 and 4 are flagged as degraded: cross-subject agreement of axis
directions is then not guaranteed.
"""

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np

from mrgrad.axes import AxisFrame
from mrgrad.errors import AmbiguousDirectionality

logger = logging.getLogger(__name__)

# Image axis followed by analysis axes 1, 2, 3 when nothing better is known
DEFAULT_DIRECTIONALITY = (2, 3, 2)

# Loadings smaller than this do not determine a reliable sign
AMBIGUITY_THRESHOLD = 0.1

IMAGE_AXIS_NAMES = {1: "X", 2: "Y", 3: "Z"}

VALID_SOURCES = ("explicit", "region", "default")


@dataclass(frozen=True)
class DirectionalityPrior:
    """
    Target image axis (1=X, 2=Y, 3=Z) for each of the three analysis axes.

    ``source`` records where the rule came from: 'explicit' (caller),
    'region' (prior table) or 'default'.
    """

    image_axes: tuple[int, int, int]
    source: str = "default"
    note: str = field(default="", compare=False)

    def __post_init__(self):
        image_axes = tuple(int(a) for a in self.image_axes)
        if len(image_axes) != 3 or any(a not in (1, 2, 3) for a in image_axes):
            raise ValueError(
                f"Directionality must give an image axis in (1, 2, 3) for each of "
                f"the three analysis axes, got {self.image_axes!r}"
            )
        if self.source not in VALID_SOURCES:
            raise ValueError(
                f"Unknown directionality source '{self.source}'. "
                f"Choose from: {VALID_SOURCES}"
            )
        object.__setattr__(self, "image_axes", image_axes)

    @property
    def degraded(self) -> bool:
        return self.source == "default"

    def image_axis(self, number: int) -> int:
        return self.image_axes[number - 1]


# ---------------------------------------------------------------------------
# Region priors (FreeSurfer label codes)
# ---------------------------------------------------------------------------
# Striatal and thalamic long axes run A>>P (image Y), the second axis V>>D
# (image Z) and the third M>>L (image X).

_STRIATAL_PRIOR = (2, 3, 1)

REGION_PRIORS = {
    10: _STRIATAL_PRIOR,   # Left-Thalamus
    11: _STRIATAL_PRIOR,   # Left-Caudate
    12: _STRIATAL_PRIOR,   # Left-Putamen
    13: _STRIATAL_PRIOR,   # Left-Pallidum
    26: _STRIATAL_PRIOR,   # Left-Accumbens-area
    49: _STRIATAL_PRIOR,   # Right-Thalamus
    50: _STRIATAL_PRIOR,   # Right-Caudate
    51: _STRIATAL_PRIOR,   # Right-Putamen
    52: _STRIATAL_PRIOR,   # Right-Pallidum
    58: _STRIATAL_PRIOR,   # Right-Accumbens-area
}


def _expand_row(row, axes: tuple[int, ...]) -> tuple[int, int, int]:
    """
    Map a caller ``max_change`` row onto analysis axes 1..3.

    A row of length 3 is indexed by axis number; a shorter row lists the
    image axes of the requested ``axes`` in order.  Unspecified axes fall back
    to the default convention.
    """
    row = [int(v) for v in np.asarray(row).ravel()]
    if len(row) == 3:
        return tuple(row)
    if len(row) != len(axes):
        raise ValueError(
            f"max_change row {row} must have 3 entries or one per analysed "
            f"axis {tuple(axes)}"
        )
    expanded = list(DEFAULT_DIRECTIONALITY)
    for ax, image_axis in zip(axes, row):
        expanded[ax - 1] = image_axis
    return tuple(expanded)


def resolve_directionality(
    roi: int,
    max_change_row=None,
    axes: tuple[int, ...] = (1, 2, 3),
    alternative_roi: int | None = None,
) -> DirectionalityPrior:
    """
    Choose the directionality rule for one ROI.

    Emits an ``AmbiguousDirectionality`` warning when the default convention
    has to be used.
    """
    if max_change_row is not None:
        return DirectionalityPrior(_expand_row(max_change_row, axes), "explicit")

    if alternative_roi is not None:
        note = (
            f"No default directionality specs for alternative ROI {alternative_roi}. "
            "Agreement between subjects might be compromised."
        )
    elif roi in REGION_PRIORS:
        image_axes = REGION_PRIORS[roi]
        note = (
            "Using directionality prior for ROI %d: axes 1-3 follow image axes %s"
            % (roi, "".join(IMAGE_AXIS_NAMES[a] for a in image_axes))
        )
        logger.info(note)
        return DirectionalityPrior(image_axes, "region", note)
    else:
        note = (
            f"No default directionality specs for ROI {roi}. "
            "Agreement between subjects might be compromised."
        )

    logger.warning(note)
    warnings.warn(note, AmbiguousDirectionality, stacklevel=2)
    return DirectionalityPrior(DEFAULT_DIRECTIONALITY, "default", note)


# ---------------------------------------------------------------------------
# Harmonization
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class HarmonizedFrame:
    """Sign-harmonized axis frame plus its confidence flags."""

    frame: AxisFrame
    prior: DirectionalityPrior
    ambiguous_axes: tuple[int, ...] = ()

    @property
    def signs(self) -> np.ndarray:
        return self.frame.signs

    @property
    def degraded(self) -> bool:
        return self.prior.degraded or bool(self.ambiguous_axes)


def harmonize(frame: AxisFrame, prior: DirectionalityPrior) -> HarmonizedFrame:
    """
    Flip axis signs so each axis loads positively on its target image axis.

    When an axis barely loads on its target image axis (magnitude below
    ``AMBIGUITY_THRESHOLD``), its largest-magnitude component is made
    positive instead and the axis is reported in ``ambiguous_axes``.
    The result depends only on the frame's axes and the prior, so repeated
    calls give the same sign vector.
    """
    raw_axes = frame.axes * frame.signs[:, None]
    signs = np.ones(3)
    ambiguous = []

    for k in range(3):
        vec = raw_axes[k]
        loading = vec[prior.image_axis(k + 1) - 1]
        if abs(loading) < AMBIGUITY_THRESHOLD:
            ambiguous.append(k + 1)
            loading = vec[int(np.argmax(np.abs(vec)))]
        if loading < 0:
            signs[k] = -1.0

    if ambiguous:
        logger.debug(
            "Axes %s are nearly orthogonal to their target image axes; "
            "applying the default sign convention.",
            ambiguous,
        )

    return HarmonizedFrame(
        frame=frame.with_signs(signs),
        prior=prior,
        ambiguous_axes=tuple(ambiguous),
    )

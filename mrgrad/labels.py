"""
ROI label names.

Resolves integer segmentation codes to human-readable names.  A
``FreeSurferColorLUT.txt`` can be supplied; otherwise a built-in table of the
FreeSurfer ``aseg`` labels is used.  Unknown codes are named ``ROI_<code>``.
"""

import logging
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)

# FreeSurfer aseg labels (subset of FreeSurferColorLUT.txt)
FREESURFER_ASEG = {
    2: "Left-Cerebral-White-Matter",
    3: "Left-Cerebral-Cortex",
    4: "Left-Lateral-Ventricle",
    7: "Left-Cerebellum-White-Matter",
    8: "Left-Cerebellum-Cortex",
    10: "Left-Thalamus",
    11: "Left-Caudate",
    12: "Left-Putamen",
    13: "Left-Pallidum",
    14: "3rd-Ventricle",
    15: "4th-Ventricle",
    16: "Brain-Stem",
    17: "Left-Hippocampus",
    18: "Left-Amygdala",
    26: "Left-Accumbens-area",
    28: "Left-VentralDC",
    41: "Right-Cerebral-White-Matter",
    42: "Right-Cerebral-Cortex",
    43: "Right-Lateral-Ventricle",
    46: "Right-Cerebellum-White-Matter",
    47: "Right-Cerebellum-Cortex",
    49: "Right-Thalamus",
    50: "Right-Caudate",
    51: "Right-Putamen",
    52: "Right-Pallidum",
    53: "Right-Hippocampus",
    54: "Right-Amygdala",
    58: "Right-Accumbens-area",
    60: "Right-VentralDC",
    251: "CC_Posterior",
    252: "CC_Mid_Posterior",
    253: "CC_Central",
    254: "CC_Mid_Anterior",
    255: "CC_Anterior",
}


def load_lut(path: str | Path) -> dict[int, str]:
    """
    Parse a FreeSurfer colour look-up table.

    Each non-comment line is ``<index> <name> <R> <G> <B> <A>``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Look-up table not found: {path}")
    df = pd.read_csv(path, sep=r"\s+", comment="#", header=None, usecols=[0, 1])
    lut = dict(zip(df[0].astype(int), df[1].astype(str)))
    logger.info("Loaded %d labels from %s", len(lut), path)
    return lut


def roi_name(code: int, lut: dict[int, str] | None = None) -> str:
    """Human-readable name of an ROI code."""
    table = FREESURFER_ASEG if lut is None else lut
    return table.get(int(code), f"ROI_{int(code)}")


def roi_names(codes, names=None, lut: dict[int, str] | None = None) -> list[str]:
    """
    Names for a list of ROI codes.  Explicit ``names`` win over the table and
    must match ``codes`` in length.
    """
    codes = [int(c) for c in codes]
    if names is not None:
        names = [str(n) for n in names]
        if len(names) != len(codes):
            raise ValueError(
                f"Got {len(names)} ROI names for {len(codes)} ROI labels."
            )
        return names
    return [roi_name(c, lut) for c in codes]

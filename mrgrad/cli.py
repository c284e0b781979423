"""
Command-line interface for mrgrad.

The data description is a JSON file listing the research groups::

    {
      "groups": [
        {"group_name": "young",
         "map_list": ["sub-01_R1.nii.gz", ...],
         "seg_list": ["sub-01_aseg.nii.gz", ...],
         "subject_names": ["sub-01", ...]},
        ...
      ]
    }

(a bare list of groups is accepted as well).  Analysis parameters come from
``--config`` (JSON, keys as in ``mrgrad.utils.DEFAULT_CONFIG``) and are
overridden by explicit command-line options.

Usage:
    mrgrad data.json --rois 11 50 12 51 --param R1 --units "1/s"
    mrgrad data.json --config analysis.json --output-mode extended --figures
"""

import argparse
import logging
import sys

from mrgrad.errors import MrGradError
from mrgrad.labels import load_lut, roi_names
from mrgrad.pipeline import VALID_OUTPUT_MODES, MrGradConfig, run_mrgrad
from mrgrad.profiles import VALID_STATS
from mrgrad.segmentation import VALID_METHODS
from mrgrad.utils import load_metadata

logger = logging.getLogger(__name__)


def load_groups(path: str) -> list[dict]:
    """Read the group descriptions from a data JSON file."""
    data = load_metadata(path)
    if isinstance(data, dict):
        if "groups" in data:
            data = data["groups"]
        else:
            data = [data]
    if not isinstance(data, list) or not data:
        raise ValueError(f"No groups found in {path}")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compute qMRI gradients along the principal axes of brain ROIs"
    )
    parser.add_argument("data", type=str, help="JSON file describing the research groups")
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to JSON config file with parameter overrides",
    )
    parser.add_argument("--rois", type=int, nargs="+", default=None,
                        help="ROI labels in the segmentations")
    parser.add_argument("--roi-names", type=str, nargs="+", default=None,
                        help="Names of the ROIs (default: FreeSurfer aseg names)")
    parser.add_argument("--lut", type=str, default=None,
                        help="FreeSurferColorLUT.txt used to name the ROIs")
    parser.add_argument("--n-segments", type=int, nargs="+", default=None,
                        help="Segments per axis (one value, or one per axis)")
    parser.add_argument("--method", type=str, choices=VALID_METHODS, default=None,
                        help="Segmenting method")
    parser.add_argument("--stat", type=str, choices=VALID_STATS, default=None,
                        help="Segment summary statistic")
    parser.add_argument("--axes", type=int, nargs="+", choices=(1, 2, 3), default=None,
                        help="Principal axes to analyse")
    parser.add_argument("--max-change", type=int, nargs="+", default=None,
                        help="Directionality: 3 image axes (1=X, 2=Y, 3=Z) per ROI, flattened")
    parser.add_argument("--alternative-rois", type=int, nargs="+", default=None,
                        help="ROI labels whose axes replace those of --rois")
    parser.add_argument("--erode", action="store_true", default=None,
                        help="Erode each ROI by one voxel before analysis")
    parser.add_argument("--invert", action="store_true", default=None,
                        help="Analyse the reciprocal of the parameter map (e.g. T1 -> R1)")
    parser.add_argument("--normalize", action="store_true", default=None,
                        help="Subtract the ROI baseline (region-wide statistic) from each profile")
    parser.add_argument("--param", type=str, default=None, help="Parameter name")
    parser.add_argument("--units", type=str, default=None, help="Parameter units")
    parser.add_argument("--ignore-missing", action="store_true", default=None,
                        help="Skip subjects with missing files instead of stopping")
    parser.add_argument("--output-mode", type=str, choices=VALID_OUTPUT_MODES, default=None)
    parser.add_argument("--output-dir", type=str, default=None, help="Output directory")
    parser.add_argument("--output-name", type=str, default=None, help="Output file stem")
    parser.add_argument("--n-jobs", type=int, default=None,
                        help="Worker processes for the per-subject computations")
    parser.add_argument("--figures", action="store_true", default=None,
                        help="Save one gradient figure per group and ROI")
    return parser


def config_from_args(args: argparse.Namespace) -> MrGradConfig:
    """Merge the JSON config file and command-line options."""
    overrides = load_metadata(args.config) if args.config else {}

    options = {
        "rois": args.rois,
        "roi_names": args.roi_names,
        "n_segments": args.n_segments,
        "segmenting_method": args.method,
        "stat": args.stat,
        "axes": args.axes,
        "alternative_rois": args.alternative_rois,
        "erode": args.erode,
        "invert": args.invert,
        "normalize": args.normalize,
        "param": args.param,
        "units": args.units,
        "ignore_missing": args.ignore_missing,
        "output_mode": args.output_mode,
        "output_dir": args.output_dir,
        "output_name": args.output_name,
        "n_jobs": args.n_jobs,
        "figures": args.figures,
    }
    if args.max_change is not None:
        if len(args.max_change) % 3:
            raise ValueError("--max-change needs 3 values per ROI")
        options["max_change"] = [
            args.max_change[i:i + 3] for i in range(0, len(args.max_change), 3)
        ]
    overrides.update({k: v for k, v in options.items() if v is not None})

    if args.lut and overrides.get("roi_names") is None and overrides.get("rois") is not None:
        overrides["roi_names"] = roi_names(overrides["rois"], lut=load_lut(args.lut))

    return MrGradConfig.from_dict(overrides)


def main(argv=None) -> int:
    """Parse command-line arguments and run mrgrad."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        config = config_from_args(args)
        groups = load_groups(args.data)
        run_mrgrad(groups, config)
    except (MrGradError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

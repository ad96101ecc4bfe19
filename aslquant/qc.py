"""
Quick sanity checks of an ASL run before quantification.

Findings are only reported, they never stop a run.
"""

import json
import logging
from pathlib import Path

import numpy as np
from fsl.data.image import Image

from .roles import RoleAssignment, RoleKind

# plausible range for mean(deltaM) / mean(M0)
RATIO_LOW = 0.001
RATIO_HIGH = 0.05


def check_geometry(asl, calib):
    """
    Compare the geometry of the ASL series and the calibration image.

    Parameters
    ----------
    asl, calib : fsl.data.image.Image

    Returns
    -------
    list of str
        Human-readable problems, empty if none were found.
    """
    problems = []
    if tuple(asl.shape[:3]) != tuple(calib.shape[:3]):
        problems.append(
            "First 3 dims differ: ASL={} vs M0={}".format(
                "x".join(str(d) for d in asl.shape[:3]),
                "x".join(str(d) for d in calib.shape[:3]),
            )
        )
    if not np.allclose(asl.pixdim[:3], calib.pixdim[:3], atol=1e-3):
        problems.append(
            f"Voxel sizes differ: ASL={tuple(asl.pixdim[:3])} vs M0={tuple(calib.pixdim[:3])}"
        )
    asl_nvol = asl.shape[3] if asl.ndim > 3 else 1
    calib_nvol = calib.shape[3] if calib.ndim > 3 else 1
    if not (asl_nvol > 1 and calib_nvol == 1):
        problems.append(f"Unexpected 4th dimension: ASL={asl_nvol}, M0={calib_nvol}")
    return problems


def mean_difference_signal(data, roles: RoleAssignment):
    """Mean control-label signal of the series (or mean, if already subtracted)."""
    data = np.asarray(data, dtype=np.float64)
    if roles.kind is RoleKind.ALREADY_DIFFERENCED or data.ndim < 4:
        return float(np.nanmean(data))
    nvol = data.shape[3]
    controls = [i for i in roles.control_indices if i < nvol]
    labels = [i for i in range(nvol) if i not in set(controls)]
    if not controls or not labels:
        return float("nan")
    return float(np.nanmean(data[..., controls]) - np.nanmean(data[..., labels]))


def signal_ratio(dm_mean, m0_mean):
    if not np.isfinite(dm_mean) or not m0_mean > 0:
        return None
    return dm_mean / m0_mean


def ratio_verdict(ratio):
    if ratio is None:
        return "undefined"
    if ratio < RATIO_LOW:
        return "low"
    if ratio > RATIO_HIGH:
        return "high"
    return "ok"


def quick_qc(asl_name, calib_name, roles: RoleAssignment, out_name=None):
    """
    Run the quick QC checks for one run and optionally save them as json.
    """
    asl = Image(str(asl_name))
    calib = Image(str(calib_name))
    problems = check_geometry(asl, calib)

    dm_mean = mean_difference_signal(asl.data, roles)
    m0_mean = float(np.nanmean(np.asarray(calib.data, dtype=np.float64)))
    ratio = signal_ratio(dm_mean, m0_mean)
    verdict = ratio_verdict(ratio)
    if verdict == "undefined":
        problems.append("M0 mean intensity is zero or deltaM could not be computed")
    elif verdict != "ok":
        problems.append(
            f"deltaM/M0 ratio {verdict} ({ratio:.3f} = {100 * ratio:.1f}%)"
        )

    for problem in problems:
        logging.warning(f"QC: {problem}")

    results = {
        "asl": str(asl_name),
        "calibration": str(calib_name),
        "asl_shape": [int(d) for d in asl.shape],
        "calibration_shape": [int(d) for d in calib.shape],
        "mean_deltam": dm_mean,
        "mean_m0": m0_mean,
        "deltam_m0_ratio": ratio,
        "ratio_verdict": verdict,
        "problems": problems,
    }
    if out_name is not None:
        out_name = Path(out_name)
        out_name.parent.mkdir(exist_ok=True, parents=True)
        with open(out_name, "w") as fp:
            json.dump(results, fp, indent=4)
    return results

"""
Calibration (M0) image selection.

An explicitly acquired reference scan is always preferred. Otherwise an
M0 estimate is derived as the voxelwise mean of the control volumes of
the ASL series, which is only possible for label/control data.
"""

import logging
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple

import nibabel as nb
import numpy as np

from .errors import DerivationFailure
from .roles import RoleAssignment, RoleKind
from .utils import save_like, volume_count


@dataclass(frozen=True)
class CalibrationImage:
    path: Path
    derived: bool = False
    control_indices: Tuple[int, ...] = ()

    def __str__(self):
        return str(self.path)


def nanmean_volumes(data, indices: Sequence[int]):
    """
    Voxelwise mean over the selected volumes, ignoring NaNs.

    Voxels which are NaN in every selected volume stay NaN.
    """
    data = np.asarray(data)
    if data.ndim != 4:
        raise DerivationFailure(f"Expected a 4D series, got {data.ndim}D data")
    indices = list(indices)
    if len(indices) == 0:
        raise DerivationFailure("No control volumes identified")
    nvol = data.shape[3]
    bad = [i for i in indices if i < 0 or i >= nvol]
    if bad:
        raise DerivationFailure(
            f"Control indices {bad} out of range for a series of {nvol} volumes"
        )
    with warnings.catch_warnings():
        # all-NaN voxels are expected and produce NaN
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return np.nanmean(data[..., indices], axis=3)


def derive_calibration(
    asl_name, roles: RoleAssignment, out_name, reference=None
) -> CalibrationImage:
    """
    Return the calibration image for a run.

    Parameters
    ----------
    asl_name : pathlib.Path
        ASL series the M0 estimate is derived from.
    roles : RoleAssignment
        Volume roles of the series.
    out_name : pathlib.Path
        Where a derived M0 estimate is saved.
    reference : pathlib.Path, optional
        Explicitly acquired M0 scan. Returned unchanged when given.
    """
    if reference is not None:
        return CalibrationImage(path=Path(reference))

    if roles.kind is RoleKind.ALREADY_DIFFERENCED:
        raise DerivationFailure(
            "Cannot derive M0 from already-subtracted data and no M0 scan exists"
        )
    if roles.kind is RoleKind.UNRESOLVED:
        raise DerivationFailure("Volume roles unresolved; cannot pick control volumes")

    asl_img = nb.load(str(asl_name))
    if volume_count(asl_img) <= 1:
        raise DerivationFailure(f"{asl_name} is not a multi-volume series")
    m0 = nanmean_volumes(asl_img.get_fdata(), roles.control_indices)
    out_name = save_like(m0, asl_img, out_name)
    logging.info(
        f"Derived M0 from {len(roles.control_indices)} control volumes "
        f"({roles.tier}) saved to {out_name}"
    )
    return CalibrationImage(
        path=out_name, derived=True, control_indices=roles.control_indices
    )

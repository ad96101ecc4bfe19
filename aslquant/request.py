"""
Assembly of the engine-agnostic quantification request for one run,
and its rendering as an oxasl command line.
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .calibration import CalibrationImage
from .errors import DerivationFailure, IncompleteMetadataError, MissingInputError
from .metadata import (
    ABSENT,
    FIELD_ALIASES,
    MetadataBundle,
    MetadataSource,
    as_float,
    as_float_list,
    resolve_field,
    slice_interval,
)
from .roles import PairOrder, RoleAssignment, RoleKind

CALIB_METHOD = "per-voxel"

# keys for the TR of an explicitly acquired M0 scan, read from its own sidecar
M0_SIDECAR_TR_KEYS = (
    *FIELD_ALIASES["repetition_time"],
    *FIELD_ALIASES["m0_repetition_time"],
)

# oxasl output options shared by every run
OXASL_SAVE_ARGS = (
    "--save-input",
    "--save-preproc",
    "--save-quantification",
    "--save-calib",
    "--save-reg",
    "--save-asl-masks",
    "--save-struct-rois",
)


class AcquisitionFormat(enum.Enum):
    DIFFERENCE = "difference"
    CONTROL_FIRST = "control-first"
    LABEL_FIRST = "label-first"

    @classmethod
    def from_roles(cls, roles: RoleAssignment):
        if roles.kind is RoleKind.ALREADY_DIFFERENCED:
            return cls.DIFFERENCE
        if roles.kind is RoleKind.ALTERNATING_PAIR:
            if roles.order is PairOrder.CONTROL_FIRST:
                return cls.CONTROL_FIRST
            return cls.LABEL_FIRST
        raise ValueError("Cannot choose an acquisition format for unresolved roles")

    @property
    def iaf(self):
        """oxasl input format code"""
        return {"difference": "diff", "control-first": "ct", "label-first": "tc"}[
            self.value
        ]


@dataclass(frozen=True)
class QuantificationRequest:
    asl: Path
    acquisition_format: AcquisitionFormat
    plds: List[float] = field(default_factory=list)
    tis: List[float] = field(default_factory=list)
    labeling_duration: Optional[float] = None
    repetition_time: Optional[float] = None
    continuous: bool = False
    calibration: Path = None
    calibration_method: str = CALIB_METHOD
    structural: Path = None
    slicedt: Optional[float] = None

    def to_dict(self):
        return {
            "asl": str(self.asl),
            "acquisition_format": self.acquisition_format.value,
            "plds": list(self.plds),
            "tis": list(self.tis),
            "labeling_duration": self.labeling_duration,
            "repetition_time": self.repetition_time,
            "continuous": self.continuous,
            "calibration": str(self.calibration),
            "calibration_method": self.calibration_method,
            "structural": str(self.structural),
            "slicedt": self.slicedt,
        }

    def save(self, json_name):
        json_name = Path(json_name)
        json_name.parent.mkdir(exist_ok=True, parents=True)
        with open(json_name, "w") as fp:
            json.dump(self.to_dict(), fp, sort_keys=True, indent=4)
        return json_name

    def to_oxasl_args(
        self, outdir, engine="oxasl", motion_correction=True, extra_args=()
    ):
        """Render the request as an oxasl command line."""
        cmd = [
            engine,
            "-i",
            str(self.asl),
            "--ibf=tis",
            f"--iaf={self.acquisition_format.iaf}",
        ]
        if self.continuous:
            cmd.append("--casl")
        if self.plds:
            cmd += ["--plds", _csv(self.plds)]
        if self.tis:
            cmd += ["--tis", _csv(self.tis)]
        if self.labeling_duration is not None:
            cmd += ["--tau", _num(self.labeling_duration)]
        if self.repetition_time is not None:
            cmd += ["--tr", _num(self.repetition_time)]
        if self.slicedt is not None:
            cmd += ["--slicedt", _num(self.slicedt)]
        cmd += ["--calib", str(self.calibration), "--calib-method=voxelwise"]
        cmd += ["--struc", str(self.structural)]
        if motion_correction:
            cmd.append("--mc")
        cmd += ["-o", str(outdir)]
        cmd += list(OXASL_SAVE_ARGS)
        cmd.append("--overwrite")
        cmd += list(extra_args)
        return cmd


def _num(value):
    # full precision, without a trailing ".0" on whole numbers
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


def _csv(values):
    return ",".join(_num(v) for v in values)


def choose_repetition_time(calibration_tr, acquisition_tr):
    """The calibration scan TR wins over the ASL TR."""
    if calibration_tr is not None:
        return calibration_tr
    return acquisition_tr


def calibration_repetition_time(
    m0_source: Optional[MetadataSource], metadata: MetadataBundle
):
    """
    TR of the calibration scan.

    Taken from the M0 scan's own sidecar when it has one, otherwise from
    the M0 repetition time fields of the ASL metadata.
    """
    if m0_source is not None:
        tr = as_float(resolve_field([m0_source], "m0_tr", aliases=M0_SIDECAR_TR_KEYS))
        if tr is not None:
            return tr
    return as_float(metadata.get("m0_repetition_time"))


def assemble_request(
    asl,
    metadata: MetadataBundle,
    roles: RoleAssignment,
    continuous: bool,
    calibration: Optional[CalibrationImage],
    structural,
    calibration_tr: Optional[float] = None,
) -> QuantificationRequest:
    """
    Combine the resolved pieces of a run into a QuantificationRequest.

    Nothing is invented: fields are resolved, omitted, or cause an error.

    Raises
    ------
    IncompleteMetadataError
        If neither post-labeling delays nor inversion times are known.
    DerivationFailure
        If there is no calibration image.
    MissingInputError
        If there is no structural image.
    """
    plds = as_float_list(metadata.get("post_labeling_delay")) or []
    tis = as_float_list(metadata.get("inversion_times")) or []
    if not plds and not tis:
        raise IncompleteMetadataError(
            f"Neither PLDs nor TIs found in JSON ({metadata.source_path})"
        )
    if calibration is None:
        raise DerivationFailure("No M0 available")
    if structural is None:
        raise MissingInputError("No T1w found")

    acquisition_tr = as_float(metadata.get("repetition_time"))
    slicedt = None
    if metadata.get("slice_timing") is not ABSENT:
        slicedt = slice_interval(metadata.get("slice_timing"))

    request = QuantificationRequest(
        asl=Path(asl),
        acquisition_format=AcquisitionFormat.from_roles(roles),
        plds=plds,
        tis=tis,
        labeling_duration=as_float(metadata.get("labeling_duration")),
        repetition_time=choose_repetition_time(calibration_tr, acquisition_tr),
        continuous=bool(continuous),
        calibration=Path(calibration.path),
        structural=Path(structural),
        slicedt=slicedt,
    )
    logging.info(f"Quantification request: {request.to_dict()}")
    return request

import logging
import os
import shutil
import subprocess
from pathlib import Path

import nibabel as nb
import numpy as np

from .errors import ExternalToolFailure, MissingToolError

NIFTI_SUFFIXES = (".nii.gz", ".nii")


def nifti_stem(path):
    """Name of a NIfTI file without its (possibly double) extension."""
    name = Path(path).name
    for suffix in NIFTI_SUFFIXES:
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return name


def is_nifti(path):
    return Path(path).name.lower().endswith(NIFTI_SUFFIXES)


def volume_count(img):
    """
    Number of volumes along the dynamic (4th) axis.

    3D images, and 4D images with a singleton 4th dimension, count as
    a single volume.
    """
    shape = img.shape
    if len(shape) < 4:
        return 1
    return int(shape[3])


def save_like(data, template, path):
    """
    Save an array as a NIfTI image which inherits the geometry of
    `template` (a loaded nibabel image).
    """
    path = Path(path)
    path.parent.mkdir(exist_ok=True, parents=True)
    if data.dtype.kind == "f":
        data = data.astype(np.float32)
    else:
        data = data.astype(np.int32)
    header = template.header.copy()
    header.set_data_shape(data.shape)
    header.set_data_dtype(data.dtype)
    newimg = nb.nifti1.Nifti1Image(data, affine=template.affine, header=header)
    nb.save(newimg, path)
    return path


def remove_nans(asl_name, out_name, timeout=None):
    """Replace NaNs in the ASL series with zeros using fslmaths."""
    Path(out_name).parent.mkdir(exist_ok=True, parents=True)
    sp_run(["fslmaths", str(asl_name), "-nan", str(out_name)], timeout=timeout)
    out_name = Path(out_name)
    if not out_name.exists():
        # fslmaths appends .nii.gz when given a bare basename
        candidates = [out_name.with_name(out_name.name + s) for s in NIFTI_SUFFIXES]
        for candidate in candidates:
            if candidate.exists():
                return candidate
        raise ExternalToolFailure(
            ["fslmaths", str(asl_name), "-nan", str(out_name)],
            returncode=0,
            stderr=f"{out_name} was not created",
        )
    return out_name


def check_environment(tools):
    """
    Make sure FSL is configured and every required command is on the
    PATH. Raises MissingToolError otherwise.
    """
    if not bool(os.environ.get("FSLDIR")):
        raise MissingToolError(
            "Environment variable FSLDIR must be set (see installation instructions)"
        )
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise MissingToolError(f"Required command(s) not found: {', '.join(missing)}")


def setup_logger(file_path, verbose=True):
    """
    Configure the root logger to report to a logfile and, optionally,
    the terminal.

    Parameters
    ----------
    file_path : pathlib.Path
        Desired path for the logfile. An existing logfile of the same
        name is overwritten.
    verbose : bool, default=True
        If True, information will also be sent to the terminal via a
        StreamHandler as well as to the log file.
    """

    # set up logger's base reporting level and formatting
    logger = logging.getLogger()
    logger.setLevel("INFO")
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(module)s/%(funcName)s: %(message)s"
    )

    # set up FileHandler and StreamHandler
    handlers = [logging.FileHandler(file_path, mode="w")]
    if verbose:
        handlers.append(logging.StreamHandler())

    # add formatting to handlers and add to logger
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def sp_run(cmd, timeout=None, **kwargs):
    cmd = [str(c) for c in cmd]
    logging.info(" ".join(cmd))
    env = {**os.environ, **kwargs.pop("env", {})}
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, env=env, timeout=timeout, **kwargs
        )
    except subprocess.TimeoutExpired as e:
        logging.error(f"Subprocess {cmd[0]} timed out after {timeout}s.")
        raise ExternalToolFailure(cmd, timed_out=True) from e
    except OSError as e:
        logging.error(f"Subprocess {cmd[0]} could not be started: {e}")
        raise ExternalToolFailure(cmd, stderr=str(e)) from e
    if result.returncode == 0:
        if result.stdout:
            logging.info(result.stdout)
        return result
    logging.error(f"Subprocess {cmd} failed with exit code {result.returncode}.")
    logging.error(result.stderr)
    raise ExternalToolFailure(cmd, result.returncode, result.stderr)

"""
A collection of functions to get a dataset into shape before
quantification. These tasks include:

    - Converting any DICOMs to NIfTI with dcm2niix
    - Creating a minimal dataset_description.json if one is missing
    - Running the BIDS validator and suggesting fixes for its errors
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .errors import ExternalToolFailure
from .utils import sp_run

DICOM_SUFFIXES = (".dcm", ".ima")
MINIMAL_DESCRIPTION = {"Name": "UntitledDataset", "BIDSVersion": "1.8.0"}
VALIDATOR_CMD = ("deno", "run", "-ERWN", "jsr:@bids/validator")
VALIDATOR_LOG = "bids_validator.log"

# validator error code -> suggested fix
FIXES = {
    "MISSING_DATASET_DESCRIPTION": "Add a dataset_description.json at the root with fields: Name, BIDSVersion.",
    "EMPTY_FILE": "Remove empty files or replace with valid content.",
    "NOT_INCLUDED": "Rename files to follow BIDS spec or add them to .bidsignore.",
    "INVALID_LOCATION": "Move files into the correct BIDS folder (e.g., sub-<ID>/anat/, perf/, fmap/).",
    "JSON_INVALID": "Fix JSON formatting. Run: jq . file.json > /dev/null to validate.",
    "ALL_FILENAME_RULES_HAVE_ISSUES": "Check filenames, they match multiple rules. Likely missing modality label (_asl, _T1w, etc).",
    "INTENDED_FOR": "Ensure IntendedFor in JSON points to a valid relative path (e.g., sub-01/perf/sub-01_asl.nii.gz).",
}
GENERAL_FIX = "General BIDS issue: consult https://neurostars.org/tag/bids"


@dataclass
class ValidatorIssue:
    code: str
    message: str
    files: List[str] = field(default_factory=list)

    @property
    def suggestion(self):
        return FIXES.get(self.code, GENERAL_FIX)


def find_dicoms(dataset_dir):
    return sorted(
        p
        for p in Path(dataset_dir).rglob("*")
        if p.is_file() and p.suffix.lower() in DICOM_SUFFIXES
    )


def convert_dicoms(dataset_dir, delete=True, timeout=None):
    """
    Convert any DICOMs in the dataset to NIfTI with dcm2niix.

    The original DICOMs are deleted afterwards if `delete` is True and
    the conversion succeeded. Returns the number of DICOM files found.
    """
    dataset_dir = Path(dataset_dir)
    dicoms = find_dicoms(dataset_dir)
    if not dicoms:
        logging.info("No DICOM files found, assuming NIfTI already present.")
        return 0
    logging.info(f"Found {len(dicoms)} DICOM files, converting with dcm2niix...")
    try:
        sp_run(["dcm2niix", "-o", str(dataset_dir), str(dataset_dir)], timeout=timeout)
    except ExternalToolFailure as e:
        logging.warning(f"dcm2niix failed: {e}. Keeping original DICOMs.")
        return len(dicoms)
    if delete:
        logging.info("Deleting original DICOM files...")
        for dicom in dicoms:
            dicom.unlink()
    return len(dicoms)


def ensure_dataset_description(dataset_dir):
    """Create a minimal dataset_description.json if there isn't one."""
    json_name = Path(dataset_dir) / "dataset_description.json"
    if json_name.exists():
        return json_name
    logging.warning("dataset_description.json not found, creating a minimal one.")
    with open(json_name, "w") as fp:
        json.dump(MINIMAL_DESCRIPTION, fp, indent=2)
    logging.info(f"Created {json_name}")
    return json_name


def parse_validator_output(text) -> List[ValidatorIssue]:
    """
    Collect the [ERROR] entries of BIDS validator output, with the file
    paths listed beneath each one.
    """
    issues = []
    current = None
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("[ERROR]"):
            tokens = stripped.split()
            code = tokens[1].strip("[]") if len(tokens) > 1 else ""
            current = ValidatorIssue(code=code, message=stripped)
            issues.append(current)
        elif current is not None:
            if stripped == "":
                current = None
            elif stripped.startswith("/") and line[:1].isspace():
                current.files.append(stripped)
    return issues


def run_validator(dataset_dir, cmd=VALIDATOR_CMD, timeout=None):
    """
    Run the BIDS validator on the dataset, saving its output to
    bids_validator.log in the dataset, and return the issues found.
    """
    dataset_dir = Path(dataset_dir)
    full_cmd = [*cmd, str(dataset_dir), "--ignoreWarnings"]
    logging.info(" ".join(full_cmd))
    try:
        result = subprocess.run(
            full_cmd, capture_output=True, text=True, timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        raise ExternalToolFailure(full_cmd, timed_out=True) from e
    except OSError as e:
        raise ExternalToolFailure(full_cmd, stderr=str(e)) from e
    output = result.stdout + result.stderr
    (dataset_dir / VALIDATOR_LOG).write_text(output)
    if result.returncode != 0:
        logging.warning("BIDS validator finished with errors.")
    issues = parse_validator_output(output)
    if issues:
        logging.warning(
            f"Dataset has BIDS validation errors. See {dataset_dir / VALIDATOR_LOG}"
        )
        for issue in issues:
            logging.warning(issue.message)
            for f in issue.files:
                logging.warning(f"    {f}")
            logging.warning(f"   -> {issue.suggestion}")
    else:
        logging.info("Dataset is BIDS valid!")
    return issues


def prepare_dataset(dataset_dir, convert=True, delete_dicoms=True, validate=True):
    dataset_dir = Path(dataset_dir)
    if not dataset_dir.is_dir():
        raise ValueError(f"Dataset directory not found: {dataset_dir}")
    if convert:
        convert_dicoms(dataset_dir, delete=delete_dicoms)
    ensure_dataset_description(dataset_dir)
    if validate:
        return run_validator(dataset_dir)
    return []

"""
Get a dataset ready for aslquant: convert DICOMs to NIfTI, make sure a
dataset_description.json exists and run the BIDS validator.

Requires dcm2niix and deno (for the BIDS validator) on the PATH.
"""

import argparse
import logging
from pathlib import Path

from aslquant import __version__
from aslquant.dataset_prep import prepare_dataset
from aslquant.utils import setup_logger


def main():
    parser = argparse.ArgumentParser(
        description="Prepare a dataset for ASL quantification."
    )
    parser.add_argument("dataset", help="Path to the dataset directory")
    parser.add_argument(
        "--keep_dicoms",
        help="Keep the original DICOM files after conversion.",
        action="store_true",
    )
    parser.add_argument(
        "--noconvert",
        help="Don't look for DICOMs to convert.",
        action="store_true",
    )
    parser.add_argument(
        "--novalidate",
        help="Don't run the BIDS validator.",
        action="store_true",
    )
    args = parser.parse_args()

    dataset = Path(args.dataset).resolve(strict=True)
    setup_logger(dataset / "aslquant_prepare.log")
    logging.info(f"aslquant v{__version__}: preparing {dataset}")

    issues = prepare_dataset(
        dataset,
        convert=not args.noconvert,
        delete_dicoms=not args.keep_dicoms,
        validate=not args.novalidate,
    )
    if issues:
        logging.warning(f"{len(issues)} BIDS validation error(s) found.")


if __name__ == "__main__":
    main()

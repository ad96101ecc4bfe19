"""
This script runs perfusion quantification over every ASL run of a
BIDS dataset.

For each subject/session the acquisition metadata, volume roles and
calibration image are resolved, oxasl is run and the key perfusion
metrics are gathered into a summary CSV at the dataset root.
"""

import argparse
import logging
from pathlib import Path

from aslquant import __sha1__, __timestamp__, __version__
from aslquant.config import ENGINE, ENGINE_TIMEOUT, LOG_NAME, PROCDIR, load_config
from aslquant.errors import MissingToolError
from aslquant.pipeline import run_batch
from aslquant.utils import check_environment, setup_logger


def main():
    """
    Main entry point for the aslquant pipeline.
    """

    # argument handling
    parser = argparse.ArgumentParser(
        description="Perfusion quantification of the ASL runs of a BIDS dataset."
    )

    required = parser.add_argument_group("required arguments")
    required.add_argument(
        "bids_root",
        help="Root directory of the BIDS dataset",
    )
    optional = parser.add_argument_group("optional arguments")
    optional.add_argument(
        "--participant_label",
        help="Space-separated subjects to process (with or without 'sub-'). "
        + "Default is every subject in the dataset.",
        nargs="+",
        default=None,
        metavar="LABEL",
    )
    optional.add_argument(
        "--outdir",
        help=f"Name of the output directory created within each session. Default is '{PROCDIR}'.",
        default=None,
    )
    optional.add_argument(
        "--engine",
        help=f"Quantification command to run. Default is '{ENGINE}'.",
        default=None,
    )
    optional.add_argument(
        "--timeout",
        help="Timeout in seconds for each quantification run, 0 to disable. "
        + f"Default is {ENGINE_TIMEOUT}.",
        type=float,
        default=None,
    )
    optional.add_argument(
        "--engine_arg",
        help="Extra argument passed to every quantification run, may be repeated.",
        action="append",
        default=[],
        dest="engine_args",
    )
    optional.add_argument(
        "--participants",
        help="Name of the participants table at the dataset root. "
        + "Default is participants.tsv.",
        default=None,
    )
    optional.add_argument(
        "--subject_prefix",
        help="Prefix of subject directories and identifiers. Default is 'sub-'.",
        default=None,
    )
    optional.add_argument(
        "--nomc",
        help="Don't ask the engine for motion correction.",
        action="store_true",
    )
    optional.add_argument(
        "--noqc",
        help="Don't run the quick QC checks before quantification.",
        action="store_true",
    )
    optional.add_argument(
        "--log",
        help=f"Path of the logfile. Default is $bids_root/{LOG_NAME}.",
        default=None,
    )
    optional.add_argument(
        "--quiet",
        help="Only write to the logfile, not the terminal.",
        action="store_true",
    )

    # assign arguments to variables
    args = parser.parse_args()
    bids_root = Path(args.bids_root).resolve(strict=True)

    log_path = Path(args.log) if args.log else bids_root / LOG_NAME
    log_path.parent.mkdir(exist_ok=True, parents=True)
    setup_logger(log_path, verbose=not args.quiet)

    logging.info(
        f"aslquant pipeline v{__version__} (commit {__sha1__} on {__timestamp__})."
    )
    logging.info(f"Logging to {log_path}")

    config = load_config(
        bids_root,
        procdir_name=args.outdir,
        engine=args.engine,
        engine_timeout=args.timeout,
        engine_args=args.engine_args,
        subject_prefix=args.subject_prefix,
        participants_name=args.participants,
        no_mc=args.nomc,
        no_qc=args.noqc,
        subjects=args.participant_label,
    )

    # missing tools abort the whole batch
    try:
        check_environment(config.required_tools)
    except MissingToolError as e:
        logging.error(f"ERROR: {e}")
        raise

    logging.info("All pipeline arguments:")
    for k, v in vars(args).items():
        logging.info(f"{k}: {v}")
    logging.info(f"Resolved config: {config}")

    logging.info(f"Processing dataset {bids_root}.")
    try:
        run_batch(config)
    except Exception as e:
        logging.error(f"Error processing dataset {bids_root}:\n {e}")
        raise e


if __name__ == "__main__":
    main()

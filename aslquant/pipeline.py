"""
Per-run processing and the batch loop over a dataset.

Every stage takes the run's AcquisitionRecord and the batch config and
either returns None, meaning carry on, or the run's terminal RunOutcome.
Runs are processed one at a time; each run's state lives only on its
own record.
"""

import logging
from typing import List, Tuple

from nibabel.filebasedimages import ImageFileError

from .calibration import derive_calibration
from .config import PipelineConfig
from .discovery import AcquisitionRecord, discover_runs
from .errors import AslQuantError, ExternalToolFailure, MissingInputError
from .labeling import detect_labeling
from .metadata import as_float_list, load_sidecar, resolve_run_metadata
from .qc import quick_qc
from .request import assemble_request, calibration_repetition_time
from .results import (
    FAILED,
    OUTCOME_COLUMNS,
    OutcomeStatus,
    RunOutcome,
    SummaryTable,
    merge_participants,
    outcome_from_report,
    summary_row,
)
from .roles import classify_image
from .utils import remove_nans, sp_run

ASL_NONAN = "asl_nonan.nii.gz"
M0_DERIVED = "m0_from_controls.nii.gz"
REQUEST_JSON = "quantification_request.json"
QC_JSON = "qc.json"


def stage_inputs(record: AcquisitionRecord, config: PipelineConfig):
    if record.asl is None:
        return RunOutcome.skipped("No ASL nifti found")
    return None


def stage_metadata(record: AcquisitionRecord, config: PipelineConfig):
    record.metadata = resolve_run_metadata(record.asl_sidecar, config.bids_root)
    plds = as_float_list(record.metadata.get("post_labeling_delay"))
    tis = as_float_list(record.metadata.get("inversion_times"))
    if not plds and not tis:
        return RunOutcome.skipped(
            f"Neither PLDs nor TIs found in JSON ({record.metadata.source_path})"
        )
    return None


def stage_remove_nans(record: AcquisitionRecord, config: PipelineConfig):
    record.procdir.mkdir(exist_ok=True, parents=True)
    logging.info(f"Removing NaNs: {record.asl} -> {record.procdir / ASL_NONAN}")
    try:
        record.asl_nonan = remove_nans(record.asl, record.procdir / ASL_NONAN)
    except ExternalToolFailure as e:
        return RunOutcome.skipped(f"Failed to remove NaNs: {e}")
    return None


def stage_roles(record: AcquisitionRecord, config: PipelineConfig):
    try:
        record.roles = classify_image(record.asl_nonan, record.context)
    except (MissingInputError, ImageFileError, OSError) as e:
        return RunOutcome.skipped(f"Could not classify volumes: {e}")
    return None


def stage_calibration(record: AcquisitionRecord, config: PipelineConfig):
    if record.m0 is None:
        logging.info(f"No explicit M0 file found for {record.label}.")
    try:
        record.calibration = derive_calibration(
            record.asl_nonan,
            record.roles,
            record.procdir / M0_DERIVED,
            reference=record.m0,
        )
    except AslQuantError as e:
        return RunOutcome.skipped(f"No M0 available: {e}")
    m0_source = None
    if not record.calibration.derived:
        m0_source = load_sidecar(record.m0_sidecar)
    record.calibration_tr = calibration_repetition_time(m0_source, record.metadata)
    return None


def stage_labeling(record: AcquisitionRecord, config: PipelineConfig):
    sources = []
    run_source = load_sidecar(record.asl_sidecar)
    if run_source is not None:
        sources.append(run_source)
    if record.metadata.level == "dataset":
        sources.append(record.metadata.source)
    record.labeling = detect_labeling(record.metadata.get("labeling_type"), sources)
    return None


def stage_request(record: AcquisitionRecord, config: PipelineConfig):
    try:
        record.request = assemble_request(
            asl=record.asl_nonan,
            metadata=record.metadata,
            roles=record.roles,
            continuous=record.labeling.continuous,
            calibration=record.calibration,
            structural=record.structural,
            calibration_tr=record.calibration_tr,
        )
    except AslQuantError as e:
        return RunOutcome.skipped(str(e))
    record.request.save(record.procdir / REQUEST_JSON)
    return None


def stage_qc(record: AcquisitionRecord, config: PipelineConfig):
    if not config.run_qc:
        return None
    try:
        quick_qc(
            record.asl_nonan,
            record.calibration.path,
            record.roles,
            out_name=record.procdir / QC_JSON,
        )
    except Exception as e:
        logging.warning(f"Quick QC could not be run for {record.label}: {e}")
    return None


def stage_quantify(record: AcquisitionRecord, config: PipelineConfig):
    cmd = record.request.to_oxasl_args(
        record.procdir,
        engine=config.engine,
        motion_correction=config.motion_correction,
        extra_args=config.engine_args,
    )
    logging.info(f"Running {config.engine} for {record.label}")
    try:
        sp_run(cmd, timeout=config.engine_timeout)
    except ExternalToolFailure as e:
        logging.error(f"{config.engine} failed for {record.label}")
        return RunOutcome.failed(str(e), placeholder=FAILED)
    return outcome_from_report(record.procdir)


STAGES = (
    ("Locate inputs", stage_inputs),
    ("Resolve acquisition metadata", stage_metadata),
    ("Remove NaNs from ASL series", stage_remove_nans),
    ("Classify volume roles", stage_roles),
    ("Select calibration image", stage_calibration),
    ("Detect labeling type", stage_labeling),
    ("Assemble quantification request", stage_request),
    ("Quick QC", stage_qc),
    ("Quantification", stage_quantify),
)


def process_acquisition(
    record: AcquisitionRecord, config: PipelineConfig, stages=STAGES
):
    """Run every stage for one run and return its outcome."""
    logging.info(f"---- Processing {record.label} ----")
    outcome = None
    for n, (name, stage) in enumerate(stages):
        logging.info(f"Stage {n}: {name}.")
        outcome = stage(record, config)
        if outcome is not None:
            break
    if outcome is None:
        outcome = RunOutcome.failed(
            "pipeline ended without an outcome", submitted=False
        )
    record.outcome = outcome
    if outcome.status is OutcomeStatus.SKIPPED:
        logging.warning(f"Skipping {record.label}: {outcome.reason}")
    elif outcome.status is OutcomeStatus.FAILED:
        logging.warning(f"{record.label} failed: {outcome.reason}")
    else:
        logging.info(f"Finished {record.label}. Outputs in {record.procdir}")
    return outcome


def run_batch(config: PipelineConfig) -> List[Tuple[AcquisitionRecord, RunOutcome]]:
    """
    Process every run in the dataset, writing the summary table, the
    outcome log and, when a participants table exists, the merged table.
    """
    summary = SummaryTable(config.summary_csv)
    outcomes = SummaryTable(config.outcomes_csv, columns=OUTCOME_COLUMNS)

    results = []
    for record in discover_runs(
        config.bids_root,
        procdir_name=config.procdir_name,
        prefix=config.subject_prefix,
        subjects=config.subjects,
    ):
        outcome = process_acquisition(record, config)
        if outcome.submitted:
            summary.append(summary_row(record.subject, record.session, outcome))
        outcomes.append(
            [record.subject, record.session, outcome.status.value, outcome.reason]
        )
        results.append((record, outcome))

    if config.participants_tsv.exists():
        logging.info(f"Merging {config.participants_tsv.name} into summary CSV...")
        try:
            merge_participants(
                config.summary_csv,
                config.participants_tsv,
                config.merged_csv,
                prefix=config.subject_prefix,
            )
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to merge participants table: {e}")
    else:
        logging.info(
            f"No {config.participants_name} found at dataset root. Skipping merge."
        )

    counts = {status: 0 for status in OutcomeStatus}
    for _, outcome in results:
        counts[outcome.status] += 1
    logging.info(
        "All done. "
        + ", ".join(f"{n} {status.value}" for status, n in counts.items())
        + f". Summary CSV: {config.summary_csv}"
    )
    return results

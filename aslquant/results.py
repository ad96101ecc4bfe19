"""
Run outcomes, perfusion report parsing and the dataset summary tables.
"""

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import pandas as pd

from .errors import UnparsableReportError

# report label -> summary column, in summary column order
METRICS = (
    ("Mean within mask", "mean_within_mask"),
    ("GM mean", "gm_mean"),
    ("Pure GM mean", "pure_gm_mean"),
    ("Cortical GM mean", "cortical_gm_mean"),
    ("WM mean", "wm_mean"),
    ("Pure WM mean", "pure_wm_mean"),
    ("Cerebral WM mean", "cerebral_wm_mean"),
)
METRIC_COLUMNS = tuple(column for _, column in METRICS)
SUMMARY_COLUMNS = ("subject", "session", *METRIC_COLUMNS)
OUTCOME_COLUMNS = ("subject", "session", "status", "reason")

REPORT_NAMES = (
    "perfusion_voxelwise_standard.rst",
    "perfusion_voxelwise_standard.rst.txt",
)

NOT_AVAILABLE = "NA"
FAILED = "FAIL"
UNPARSABLE = "unparsable report"


class OutcomeStatus(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RunOutcome:
    status: OutcomeStatus
    reason: str = ""
    metrics: Optional[Dict[str, float]] = None
    # whether the run reached the engine, and so belongs in the summary
    submitted: bool = False
    # placeholder for the metric columns of a failed run
    placeholder: str = NOT_AVAILABLE

    @classmethod
    def completed(cls, metrics):
        return cls(OutcomeStatus.COMPLETED, metrics=dict(metrics), submitted=True)

    @classmethod
    def failed(cls, reason, submitted=True, placeholder=NOT_AVAILABLE):
        return cls(
            OutcomeStatus.FAILED,
            reason=reason,
            submitted=submitted,
            placeholder=placeholder,
        )

    @classmethod
    def skipped(cls, reason):
        return cls(OutcomeStatus.SKIPPED, reason=reason)

    def summary_values(self):
        if self.status is OutcomeStatus.COMPLETED:
            return [self.metrics[c] for c in METRIC_COLUMNS]
        return [self.placeholder] * len(METRIC_COLUMNS)


def _metric_column(label):
    label = label.strip().strip("|*\"' ").lower()
    for name, column in METRICS:
        if label == name.lower():
            return column
    return None


def _metric_value(field_text):
    # first comma-delimited value, minus the unit, e.g. "45.2 ml/100g/min"
    tokens = field_text.strip().split()
    if not tokens:
        raise ValueError("empty value")
    return float(tokens[0])


def parse_report(text) -> Dict[str, float]:
    """
    Extract the seven perfusion metrics from an oxasl report.

    Raises UnparsableReportError unless every metric is found exactly
    once with a numeric value.
    """
    found = []
    for line in text.splitlines():
        if "," not in line:
            continue
        label, rest = line.split(",", 1)
        column = _metric_column(label)
        if column is None:
            continue
        try:
            value = _metric_value(rest.split(",", 1)[0])
        except ValueError:
            raise UnparsableReportError(
                f"Non-numeric value in report line: {line!r}"
            ) from None
        found.append((column, value))

    metrics = dict(found)
    if len(found) != len(METRICS) or len(metrics) != len(METRICS):
        raise UnparsableReportError(
            f"Expected {len(METRICS)} metrics in report, found {len(found)}"
        )
    return {column: metrics[column] for column in METRIC_COLUMNS}


def find_report(outdir) -> Optional[Path]:
    outdir = Path(outdir)
    if not outdir.is_dir():
        return None
    matches = sorted(
        p for p in outdir.rglob("*") if p.is_file() and p.name in REPORT_NAMES
    )
    return matches[0] if matches else None


def outcome_from_report(outdir) -> RunOutcome:
    """Turn the report of a successful engine run into an outcome."""
    report = find_report(outdir)
    if report is None:
        logging.warning(f"Report file not found in {outdir}")
        return RunOutcome.failed(UNPARSABLE)
    try:
        metrics = parse_report(report.read_text(errors="replace"))
    except UnparsableReportError as e:
        logging.warning(f"Could not parse metrics from {report}: {e}")
        return RunOutcome.failed(UNPARSABLE)
    return RunOutcome.completed(metrics)


class SummaryTable:
    """
    Append-only CSV with one row per run submitted to the engine.

    The header is written on creation; rows are appended as runs finish
    so a partial summary survives an interrupted batch.
    """

    def __init__(self, csv_name, columns=SUMMARY_COLUMNS):
        self.path = Path(csv_name)
        self.columns = list(columns)
        self.path.parent.mkdir(exist_ok=True, parents=True)
        pd.DataFrame(columns=self.columns).to_csv(self.path, index=False)

    def append(self, row):
        frame = pd.DataFrame([row], columns=self.columns)
        frame.to_csv(self.path, mode="a", header=False, index=False)

    def read(self):
        return pd.read_csv(
            self.path, dtype=str, keep_default_na=False, na_filter=False
        )


def summary_row(subject, session, outcome: RunOutcome):
    return [subject, session, *outcome.summary_values()]


def _id_column(columns):
    for column in columns:
        if column.lower() in ("participant_id", "participant"):
            return column
    return columns[0]


def read_participants(tsv_name) -> Tuple[str, Dict[str, Dict[str, str]], list]:
    """
    Load a participants table keyed by its id column.

    Returns the id column name, the rows by id, and the attribute
    columns (every column except the id).
    """
    parts = pd.read_csv(
        tsv_name, sep="\t", dtype=str, keep_default_na=False, na_filter=False
    )
    columns = list(parts.columns)
    if not columns:
        return None, {}, []
    id_field = _id_column(columns)
    rows = {}
    for record in parts.to_dict(orient="records"):
        rows[record[id_field]] = record
    return id_field, rows, [c for c in columns if c != id_field]


def lookup_participant(rows, subject_id, prefix="sub-"):
    """Look a subject up as given, then with the prefix toggled."""
    row = rows.get(subject_id)
    if row is not None:
        return row
    if subject_id.startswith(prefix):
        return rows.get(subject_id[len(prefix):])
    return rows.get(prefix + subject_id)


def merge_participants(summary_csv, participants_tsv, out_csv, prefix="sub-"):
    """
    Left-join the summary table with the participants table.

    Subjects missing from the participants table get empty strings for
    every participant column.
    """
    summary = pd.read_csv(
        summary_csv, dtype=str, keep_default_na=False, na_filter=False
    )
    _, rows, extra_fields = read_participants(participants_tsv)
    extra_fields = [c for c in extra_fields if c not in summary.columns]

    merged = []
    for record in summary.to_dict(orient="records"):
        subject = record.get("subject") or record.get("participant_id") or ""
        participant = lookup_participant(rows, subject, prefix)
        if participant is None:
            logging.info(f"{subject} not found in {Path(participants_tsv).name}")
        for ef in extra_fields:
            record[ef] = "" if participant is None else participant.get(ef, "")
        merged.append(record)

    out = pd.DataFrame(merged, columns=[*summary.columns, *extra_fields])
    out.to_csv(out_csv, index=False)
    logging.info(f"Merged file written to {out_csv}")
    return Path(out_csv)

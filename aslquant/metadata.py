"""
Resolution of ASL acquisition metadata from JSON sidecars.

Each logical field is looked up through an ordered list of accepted keys.
Run-level sidecars are searched first; when a run has none (or it holds
none of the keys of interest) a single dataset-level sidecar, preferring
files nearer the dataset root, supplies every field.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .utils import nifti_stem

# logical field -> accepted sidecar keys, highest priority first
FIELD_ALIASES = {
    "post_labeling_delay": (
        "PostLabelingDelay",
        "PostLabelingDelay_s",
        "PLD",
        "InitialPostLabelDelay",
    ),
    "inversion_times": ("TIs", "TIs_s", "InversionTimes"),
    "labeling_duration": ("LabelingDuration", "LabelDuration"),
    "repetition_time": ("RepetitionTimePreparation", "RepetitionTime"),
    "labeling_type": (
        "ArterialSpinLabelingType",
        "ASLType",
        "ASLContext",
        "LabelingType",
    ),
    "m0_repetition_time": (
        "M0RepetitionTime",
        "M0RepetitionTimePreparation",
        "M0TR",
    ),
    "slice_timing": ("SliceTiming",),
}

# keys under which some converters nest the actual value
VALUE_KEYS = ("value", "Value", "val", "Val")


class _Absent:
    """Marker for a field which no source could resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "ABSENT"


ABSENT = _Absent()


@dataclass(frozen=True)
class MetadataSource:
    """A loaded sidecar and where it came from."""

    path: Optional[Path]
    data: Dict
    level: str = "run"

    def raw_text(self):
        if self.path is None:
            return json.dumps(self.data)
        try:
            return Path(self.path).read_text(errors="replace")
        except OSError as e:
            logging.warning(f"Could not re-read {self.path}: {e}")
            return json.dumps(self.data)


@dataclass(frozen=True)
class MetadataBundle:
    """Resolved fields for one run, all taken from `source`."""

    values: Dict = field(default_factory=dict)
    source: Optional[MetadataSource] = None

    def get(self, name):
        return self.values.get(name, ABSENT)

    def __getitem__(self, name):
        return self.get(name)

    def resolved(self):
        return {k: v for k, v in self.values.items() if v is not ABSENT}

    @property
    def source_path(self):
        return None if self.source is None else self.source.path

    @property
    def level(self):
        return None if self.source is None else self.source.level


def load_sidecar(path, level="run"):
    """
    Load a JSON sidecar. Returns None (with a warning) if the file is
    missing or cannot be parsed; a broken sidecar is treated as absent.
    """
    if path is None:
        return None
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logging.warning(f"Failed to read sidecar {path}: {e}")
        return None
    if not isinstance(data, dict):
        logging.warning(f"Sidecar {path} does not hold a JSON object; ignoring it")
        return None
    return MetadataSource(path=path, data=data, level=level)


def find_sidecar(image_path) -> Optional[Path]:
    """Find the JSON sidecar sitting next to a NIfTI image."""
    p = Path(image_path)
    candidates = [
        p.parent / (nifti_stem(p) + ".json"),
        p.parent / (p.name + ".json"),
    ]
    for c in candidates:
        if c.exists():
            return c
    return None


def _unwrap(value):
    if isinstance(value, dict):
        for key in VALUE_KEYS:
            if key in value:
                return value[key]
    if isinstance(value, tuple):
        return list(value)
    return value


def resolve_field(sources: Sequence[MetadataSource], name, aliases=None):
    """
    Return the value bound to the first alias present in the first
    source which contains one, or ABSENT.

    Keys holding null count as not present.
    """
    if aliases is None:
        aliases = FIELD_ALIASES[name]
    for source in sources:
        if source is None:
            continue
        for key in aliases:
            if key in source.data and source.data[key] is not None:
                return _unwrap(source.data[key])
    return ABSENT


def has_any_field(source: MetadataSource, fields=None):
    if source is None:
        return False
    fields = FIELD_ALIASES if fields is None else fields
    keys = {k for name in fields for k in FIELD_ALIASES[name]}
    return any(k in source.data for k in keys)


def resolve_metadata(source: Optional[MetadataSource], fields=None) -> MetadataBundle:
    """Resolve every logical field from a single source."""
    fields = list(FIELD_ALIASES) if fields is None else list(fields)
    sources = [] if source is None else [source]
    values = {name: resolve_field(sources, name) for name in fields}
    return MetadataBundle(values=values, source=source)


def find_dataset_sidecar(root, exclude=(), fields=None) -> Optional[MetadataSource]:
    """
    Search the dataset for a JSON file holding any field of interest.

    Candidates nearer the root win; ties are broken by path so the
    result does not depend on filesystem order.
    """
    root = Path(root)
    candidates = []
    for dirpath, _, filenames in os.walk(root):
        for f in filenames:
            if f.lower().endswith(".json"):
                candidates.append(Path(dirpath) / f)
    candidates.sort(key=lambda p: (len(p.relative_to(root).parts), str(p)))
    excluded = {Path(e).resolve() for e in exclude if e is not None}
    for path in candidates:
        if path.resolve() in excluded:
            continue
        source = load_sidecar(path, level="dataset")
        if has_any_field(source, fields):
            return source
    return None


def resolve_run_metadata(run_sidecar, dataset_root, fields=None) -> MetadataBundle:
    """
    Resolve the metadata for one run.

    The run-level sidecar is used if it exists and holds any field of
    interest. Otherwise the dataset is searched and the first matching
    file supplies all fields; values are never spliced across files.
    """
    source = load_sidecar(run_sidecar) if run_sidecar is not None else None
    if has_any_field(source, fields):
        return resolve_metadata(source, fields)
    if source is None:
        logging.info("No run-level sidecar; searching for dataset-level JSON...")
    else:
        logging.info(
            f"Sidecar {source.path} holds no ASL timing fields; searching for dataset-level JSON..."
        )
    dataset_source = find_dataset_sidecar(
        dataset_root, exclude=[run_sidecar], fields=fields
    )
    if dataset_source is None:
        logging.warning("No ASL JSON found at run or dataset level.")
        return MetadataBundle(
            values={
                name: ABSENT
                for name in (list(FIELD_ALIASES) if fields is None else fields)
            },
            source=source,
        )
    logging.info(f"Using dataset-level JSON: {dataset_source.path}")
    return resolve_metadata(dataset_source, fields)


def as_float_list(value) -> Optional[List[float]]:
    """
    Normalise a timing value to a list of floats.

    Scalars become single-element lists, comma separated strings are
    split. Returns None for absent, empty or non-numeric values.
    """
    if value is ABSENT or value is None:
        return None
    if isinstance(value, str):
        value = [v for v in value.replace(" ", "").split(",") if v != ""]
    elif not isinstance(value, list):
        value = [value]
    try:
        values = [float(v) for v in value]
    except (TypeError, ValueError):
        logging.warning(f"Ignoring non-numeric timing value {value!r}")
        return None
    return values or None


def as_float(value) -> Optional[float]:
    if value is ABSENT or value is None:
        return None
    if isinstance(value, list):
        if len(value) == 0:
            return None
        if value[1:] != value[:-1]:
            logging.warning(f"Multiple values {value}; using the first")
        value = value[0]
    try:
        return float(value)
    except (TypeError, ValueError):
        logging.warning(f"Ignoring non-numeric value {value!r}")
        return None


def slice_interval(slice_timing) -> Optional[float]:
    """Time between the first two acquired slices, in seconds."""
    times = as_float_list(slice_timing)
    if times is None or len(times) < 2:
        return None
    return abs(times[1] - times[0])

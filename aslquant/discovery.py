"""
Discovery of ASL runs in a BIDS-like dataset.

Each subject (sub-*) is split into its sessions (ses-*), or treated as a
single session labelled 'no-session' when it has none. Within a session
the ASL series, its sidecar, an optional M0 scan, a T1w structural and
an optional aslcontext table are located.
"""

import fnmatch
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from .metadata import find_sidecar
from .utils import is_nifti

NO_SESSION = "no-session"

ASL_PATTERNS = ("*asl*.nii*",)
M0_PATTERNS = ("*m0scan*.nii*", "*m0*.nii*")
T1_PATTERNS = ("*t1w*.nii*",)
CONTEXT_PATTERN = "*aslcontext.tsv"

# subject and session entities, whose labels may contain "m0" or "asl"
LABEL_ENTITIES = re.compile(r"(^|_)(sub|ses)-[a-z0-9]+")


@dataclass
class AcquisitionRecord:
    """
    One ASL run and everything the pipeline works out about it.

    The pipeline fields are filled in stage by stage and belong to this
    run only.
    """

    subject: str
    session: str
    topdir: Path
    procdir: Path
    asl: Optional[Path] = None
    asl_sidecar: Optional[Path] = None
    m0: Optional[Path] = None
    m0_sidecar: Optional[Path] = None
    structural: Optional[Path] = None
    context: Optional[Path] = None

    # pipeline state
    asl_nonan: Optional[Path] = None
    metadata: Any = None
    roles: Any = None
    calibration: Any = None
    labeling: Any = None
    calibration_tr: Optional[float] = None
    request: Any = None
    outcome: Any = None

    @property
    def label(self):
        return f"{self.subject}/{self.session}"


def entity_free_name(path):
    """Lowercased file name without its sub-<label> and ses-<label> entities."""
    return LABEL_ENTITIES.sub("", Path(path).name.lower())


def _matches(path, patterns):
    name = entity_free_name(path)
    return any(fnmatch.fnmatch(name, p) for p in patterns)


def find_files(topdir, patterns, exclude_dirs=(), subdir=None) -> List[Path]:
    """
    Case-insensitive search below `topdir`, in sorted path order.

    Files below any directory named in `exclude_dirs` are ignored, as
    are files outside a directory named `subdir` when one is given.
    """
    topdir = Path(topdir)
    found = []
    for path in sorted(topdir.rglob("*")):
        if not path.is_file():
            continue
        parts = path.relative_to(topdir).parts[:-1]
        if any(p in exclude_dirs for p in parts):
            continue
        if subdir is not None and subdir not in parts:
            continue
        if _matches(path, patterns):
            found.append(path)
    return found


def _first(paths):
    return paths[0] if paths else None


def find_asl(topdir, exclude_dirs=()):
    candidates = [
        p
        for p in find_files(topdir, ASL_PATTERNS, exclude_dirs)
        if is_nifti(p) and "m0" not in entity_free_name(p)
    ]
    # prefer BIDS perf/ directories
    perf = [p for p in candidates if p.parent.name == "perf"]
    return _first(perf) or _first(candidates)


def find_m0(topdir, exclude_dirs=()):
    for pattern in M0_PATTERNS:
        candidates = [
            p for p in find_files(topdir, (pattern,), exclude_dirs) if is_nifti(p)
        ]
        if candidates:
            return candidates[0]
    return None


def find_structural(topdir, exclude_dirs=()):
    in_anat = find_files(topdir, T1_PATTERNS, exclude_dirs, subdir="anat")
    if in_anat:
        return in_anat[0]
    return _first(find_files(topdir, T1_PATTERNS, exclude_dirs))


def find_context(asl_name):
    asl_name = Path(asl_name)
    matches = sorted(
        p
        for p in asl_name.parent.iterdir()
        if p.is_file() and fnmatch.fnmatch(p.name.lower(), CONTEXT_PATTERN)
    )
    return _first(matches)


def session_dirs(subject_dir):
    """(session label, directory) pairs for a subject."""
    sessions = sorted(
        d
        for d in Path(subject_dir).iterdir()
        if d.is_dir() and d.name.startswith("ses-")
    )
    if not sessions:
        return [(NO_SESSION, Path(subject_dir))]
    return [(d.name, d) for d in sessions]


def subject_dirs(bids_root, prefix="sub-", subjects=None):
    dirs = sorted(
        d
        for d in Path(bids_root).iterdir()
        if d.is_dir() and d.name.startswith(prefix)
    )
    if subjects is not None:
        wanted = set(subjects)
        dirs = [d for d in dirs if d.name in wanted]
    return dirs


def build_record(subject, session, topdir, procdir_name="processed"):
    """Locate the inputs of one subject/session."""
    topdir = Path(topdir)
    exclude = (procdir_name,)
    record = AcquisitionRecord(
        subject=subject,
        session=session,
        topdir=topdir,
        procdir=topdir / procdir_name,
    )
    record.asl = find_asl(topdir, exclude)
    if record.asl is not None:
        record.asl_sidecar = find_sidecar(record.asl)
        record.context = find_context(record.asl)
    record.m0 = find_m0(topdir, exclude)
    if record.m0 is not None:
        record.m0_sidecar = find_sidecar(record.m0)
    record.structural = find_structural(topdir, exclude)
    return record


def discover_runs(bids_root, procdir_name="processed", prefix="sub-", subjects=None):
    """Yield an AcquisitionRecord for every subject/session in the dataset."""
    for subject_dir in subject_dirs(bids_root, prefix, subjects):
        for session, topdir in session_dirs(subject_dir):
            record = build_record(subject_dir.name, session, topdir, procdir_name)
            logging.info(
                f"Found {record.label}: asl={record.asl}, m0={record.m0}, "
                f"t1w={record.structural}, context={record.context}"
            )
            yield record

"""
Functions to decide which volumes of an ASL series are control, label
or already-subtracted difference images.

Three tiers are tried in order:

    - an explicit per-run aslcontext table (or a single-volume image);
    - 2-means clustering of the per-volume mean intensity, control
        volumes being the brighter cluster;
    - the positional heuristic, every other volume from the first.
"""

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import nibabel as nb
import numpy as np

from .errors import MissingInputError
from .utils import volume_count

# aslcontext tokens -> roles
CONTROL = "control"
LABEL = "label"
DIFFERENCE = "difference"
ROLE_TOKENS = {"control": CONTROL, "label": LABEL, "deltam": DIFFERENCE}

# 2-means refinement settings
KMEANS_MAX_ITER = 20
KMEANS_TOL = 1e-6


class RoleKind(enum.Enum):
    ALREADY_DIFFERENCED = "already-differenced"
    ALTERNATING_PAIR = "alternating-pair"
    UNRESOLVED = "unresolved"


class PairOrder(enum.Enum):
    CONTROL_FIRST = "control-first"
    LABEL_FIRST = "label-first"


@dataclass(frozen=True)
class RoleAssignment:
    kind: RoleKind
    order: Optional[PairOrder] = None
    control_indices: Tuple[int, ...] = ()
    tier: str = ""

    @classmethod
    def already_differenced(cls, tier):
        return cls(RoleKind.ALREADY_DIFFERENCED, tier=tier)

    @classmethod
    def alternating(cls, order, control_indices, tier):
        return cls(
            RoleKind.ALTERNATING_PAIR,
            order=order,
            control_indices=tuple(int(i) for i in control_indices),
            tier=tier,
        )

    @classmethod
    def unresolved(cls):
        return cls(RoleKind.UNRESOLVED)

    @property
    def is_difference(self):
        return self.kind is RoleKind.ALREADY_DIFFERENCED

    def __str__(self):
        if self.kind is RoleKind.ALTERNATING_PAIR:
            return (
                f"{self.kind.value} ({self.order.value}, {len(self.control_indices)} "
                f"control volumes, from {self.tier})"
            )
        return f"{self.kind.value} (from {self.tier or 'nothing'})"


@dataclass(frozen=True)
class ContextTable:
    """Parsed aslcontext table: one role per volume, None if unrecognised."""

    path: Optional[Path]
    roles: Tuple[Optional[str], ...] = field(default_factory=tuple)

    @property
    def control_indices(self):
        return [i for i, role in enumerate(self.roles) if role == CONTROL]

    @property
    def all_difference(self):
        return len(self.roles) > 0 and set(self.roles) == {DIFFERENCE}

    @property
    def first_role(self):
        return self.roles[0] if self.roles else None


def _is_number(token):
    try:
        float(token)
    except ValueError:
        return False
    return True


def parse_context_lines(lines, path=None) -> ContextTable:
    rows = [line.split() for line in lines if line.strip()]
    if rows:
        first = rows[0][0]
        # a leading row whose first token is text but not a role is a header
        if not _is_number(first) and first.lower() not in ROLE_TOKENS:
            rows = rows[1:]
    roles = []
    for row in rows:
        token = row[0].lower()
        role = ROLE_TOKENS.get(token)
        if role is None:
            logging.warning(f"Unrecognised aslcontext entry {row[0]!r} in {path}")
        roles.append(role)
    return ContextTable(path=path, roles=tuple(roles))


def read_context_table(path) -> ContextTable:
    """Read an aslcontext.tsv file."""
    path = Path(path)
    try:
        with open(path, "r") as f:
            lines = f.readlines()
    except OSError as e:
        raise MissingInputError(f"Cannot read context table {path}: {e}") from e
    return parse_context_lines(lines, path=path)


def volume_means(data):
    """Spatial mean of every volume along the 4th axis, ignoring NaNs."""
    data = np.asarray(data, dtype=np.float64)
    if data.ndim < 4:
        return np.array([np.nanmean(data)])
    nvol = data.shape[3]
    with np.errstate(invalid="ignore"):
        flat = data.reshape(-1, nvol)
        # an all-NaN volume has no meaningful mean; count it as 0
        valid = np.isfinite(flat)
        sums = np.where(valid, flat, 0.0).sum(axis=0)
        counts = valid.sum(axis=0)
    return np.where(counts > 0, sums / np.maximum(counts, 1), 0.0)


def two_means_1d(values, max_iter=KMEANS_MAX_ITER, tol=KMEANS_TOL):
    """
    Cluster 1D values into two groups.

    Centres start at the minimum and maximum value; each value goes to
    the nearer centre, with ties going to the first (lower) one. Stops
    once both centres move by less than `tol` or after `max_iter`
    iterations.

    Returns
    -------
    (centres, labels)
        The two final centres and, for each value, 0 or 1 for the
        cluster it belongs to.
    """
    values = np.asarray(values, dtype=np.float64)
    c1, c2 = float(values.min()), float(values.max())
    for _ in range(max_iter):
        in_first = np.abs(values - c1) <= np.abs(values - c2)
        nc1 = float(values[in_first].mean()) if in_first.any() else c1
        nc2 = float(values[~in_first].mean()) if (~in_first).any() else c2
        converged = abs(nc1 - c1) < tol and abs(nc2 - c2) < tol
        c1, c2 = nc1, nc2
        if converged:
            break
    in_first = np.abs(values - c1) <= np.abs(values - c2)
    labels = np.where(in_first, 0, 1)
    return (c1, c2), labels


def classify_by_intensity(means) -> Optional[List[int]]:
    """
    Pick control volumes as the brighter of two intensity clusters.

    Returns None when clustering does not split the volumes, i.e. the
    control set would be empty or contain every volume.
    """
    means = np.asarray(means, dtype=np.float64)
    nvol = len(means)
    if nvol < 2 or not np.all(np.isfinite(means)):
        return None
    (c1, c2), labels = two_means_1d(means)
    control_label = 0 if c1 >= c2 else 1
    control_idx = [int(i) for i in np.flatnonzero(labels == control_label)]
    if len(control_idx) == 0 or len(control_idx) > nvol - 1:
        return None
    return control_idx


def alternating_controls(nvol):
    return list(range(0, nvol, 2))


def classify_volume_roles(
    nvol, context: Optional[ContextTable] = None, means: Optional[Sequence] = None
) -> RoleAssignment:
    """
    Decide the role of each volume of an ASL series.

    Parameters
    ----------
    nvol : int
        Number of volumes along the dynamic axis.
    context : ContextTable, optional
        Parsed aslcontext table for the run, if one exists.
    means : sequence of float, optional
        Per-volume mean intensities, used for clustering when there is
        no context table or it identifies no control volumes.
    """
    if nvol <= 1:
        return RoleAssignment.already_differenced("dimensions")

    if context is not None:
        if context.all_difference:
            return RoleAssignment.already_differenced("aslcontext")
        if len(context.roles) != nvol:
            logging.warning(
                f"Context table {context.path} lists {len(context.roles)} volumes, "
                f"image has {nvol}"
            )
        controls = [i for i in context.control_indices if i < nvol]
        if controls:
            order = (
                PairOrder.CONTROL_FIRST
                if context.first_role == CONTROL
                else PairOrder.LABEL_FIRST
            )
            return RoleAssignment.alternating(order, controls, "aslcontext")
        logging.warning(
            f"Context table {context.path} identifies no control volumes; ignoring it"
        )

    if means is not None:
        controls = classify_by_intensity(means)
        if controls is not None:
            order = (
                PairOrder.CONTROL_FIRST if 0 in controls else PairOrder.LABEL_FIRST
            )
            return RoleAssignment.alternating(order, controls, "clustering")
        logging.warning(
            "Automatic control detection failed; using alternating heuristic"
        )

    return RoleAssignment.alternating(
        PairOrder.CONTROL_FIRST, alternating_controls(nvol), "positional"
    )


def classify_image(asl_name, context_name=None) -> RoleAssignment:
    """Classify the volumes of an ASL image on disk."""
    img = nb.load(str(asl_name))
    nvol = volume_count(img)
    context = read_context_table(context_name) if context_name is not None else None
    means = None
    if nvol > 1 and (context is None or not context.control_indices):
        if context is None:
            logging.info("No aslcontext.tsv; clustering per-volume mean intensities...")
        means = volume_means(img.get_fdata())
    roles = classify_volume_roles(nvol, context=context, means=means)
    logging.info(f"Volume roles for {Path(asl_name).name}: {roles}")
    return roles

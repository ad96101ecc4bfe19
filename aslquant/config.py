import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# Default batch settings
PROCDIR = "processed"
SUMMARY_CSV = "cbf_quant_summary.csv"
MERGED_CSV = "cbf_quant_summary_with_participants.csv"
OUTCOMES_CSV = "cbf_quant_outcomes.csv"
PARTICIPANTS_TSV = "participants.tsv"
LOG_NAME = "aslquant.log"
SUBJECT_PREFIX = "sub-"
ENGINE = "oxasl"
ENGINE_TIMEOUT = 4 * 60 * 60  # s
REQUIRED_TOOLS = ("fslmaths", ENGINE)


@dataclass
class PipelineConfig:
    """
    Runtime configuration for one batch over a BIDS dataset.

    Values are resolved by priority: CLI overrides > defaults above.

    Notes:
    - engine_timeout is in seconds; None (or 0 on the command line) disables it.
    - required_tools are checked once at start-up, a missing one aborts the batch.
    - engine_args are appended verbatim to every engine call.
    """

    bids_root: Path = None
    procdir_name: str = PROCDIR
    summary_name: str = SUMMARY_CSV
    merged_name: str = MERGED_CSV
    outcomes_name: str = OUTCOMES_CSV
    participants_name: str = PARTICIPANTS_TSV
    subject_prefix: str = SUBJECT_PREFIX
    engine: str = ENGINE
    engine_timeout: Optional[float] = ENGINE_TIMEOUT
    engine_args: List[str] = field(default_factory=list)
    required_tools: List[str] = None
    motion_correction: bool = True
    run_qc: bool = True
    subjects: Optional[List[str]] = None

    def validate(self):
        if self.bids_root is None:
            raise ValueError("A BIDS dataset root is required")
        self.bids_root = Path(self.bids_root)
        if not self.bids_root.is_dir():
            raise ValueError(f"BIDS root is not a directory: {self.bids_root}")
        if self.required_tools is None:
            self.required_tools = ["fslmaths", self.engine]
        if self.engine_timeout is not None:
            if self.engine_timeout < 0:
                raise ValueError(
                    f"Engine timeout must be >= 0 (got {self.engine_timeout})"
                )
            if self.engine_timeout == 0:
                self.engine_timeout = None
        if not self.procdir_name or Path(self.procdir_name).name != self.procdir_name:
            raise ValueError(
                f"Output directory name must be a single path component: {self.procdir_name!r}"
            )
        if self.subjects is not None:
            self.subjects = [
                s if s.startswith(self.subject_prefix) else self.subject_prefix + s
                for s in self.subjects
            ]

    @property
    def summary_csv(self):
        return self.bids_root / self.summary_name

    @property
    def merged_csv(self):
        return self.bids_root / self.merged_name

    @property
    def outcomes_csv(self):
        return self.bids_root / self.outcomes_name

    @property
    def participants_tsv(self):
        return self.bids_root / self.participants_name


def load_config(
    bids_root,
    *,
    procdir_name: Optional[str] = None,
    engine: Optional[str] = None,
    engine_timeout: Optional[float] = None,
    engine_args: Optional[List[str]] = None,
    subject_prefix: Optional[str] = None,
    participants_name: Optional[str] = None,
    no_mc: bool = False,
    no_qc: bool = False,
    subjects: Optional[List[str]] = None,
) -> PipelineConfig:
    """Build the batch configuration from command-line overrides.

    Any override left as None keeps the module default.
    """
    config = PipelineConfig(bids_root=Path(bids_root).resolve())
    if procdir_name is not None:
        config.procdir_name = procdir_name
    if engine is not None:
        config.engine = engine
    if engine_timeout is not None:
        config.engine_timeout = float(engine_timeout)
    if engine_args:
        config.engine_args = list(engine_args)
    if subject_prefix is not None:
        config.subject_prefix = subject_prefix
    if participants_name is not None:
        config.participants_name = participants_name
    if subjects:
        config.subjects = list(subjects)
    config.motion_correction = not no_mc
    config.run_qc = not no_qc
    if config.engine_timeout is None or config.engine_timeout == 0:
        logging.warning(
            "Engine timeout disabled; a hung engine call will block the batch"
        )
    config.validate()
    return config

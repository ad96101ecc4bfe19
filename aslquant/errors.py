"""
Exceptions raised while turning an ASL run into a quantification request.

Everything except MissingToolError is recoverable at the batch level: the
run is recorded as skipped or failed and the next run is processed.
"""


class AslQuantError(Exception):
    """Base class for all aslquant errors."""


class MissingInputError(AslQuantError):
    """A required input image (ASL, structural, context) could not be found."""


class IncompleteMetadataError(AslQuantError):
    """Neither post-labeling delays nor inversion times could be resolved."""


class DerivationFailure(AslQuantError):
    """A calibration image could not be obtained for the run."""


class ExternalToolFailure(AslQuantError):
    """An external command exited with an error or timed out."""

    def __init__(self, cmd, returncode=None, stderr="", timed_out=False):
        self.cmd = [str(c) for c in cmd]
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        if timed_out:
            msg = f"{self.cmd[0]} timed out"
        else:
            msg = f"{self.cmd[0]} failed with exit code {returncode}"
        super().__init__(msg)


class UnparsableReportError(AslQuantError):
    """The engine finished but its report is missing or unreadable."""


class MissingToolError(AslQuantError):
    """A required external tool is not available. Aborts the whole batch."""

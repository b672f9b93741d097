"""
CardRescue error taxonomy.

Fatal errors abort the pipeline with a non-zero exit. Non-fatal errors
(InspectionWarning, EngineUnavailable, EngineFailure) are caught at the
component boundary and only show up in the run log and summary.
"""

from typing import Optional


class CardRescueError(Exception):
    """Base class for every error raised by CardRescue."""

    remediation = ""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        if remediation is not None:
            self.remediation = remediation


class ConfigurationError(CardRescueError):
    remediation = "Fix the configuration file or command-line options and re-run."


class OperatorAbort(CardRescueError):
    """Operator declined a confirmation gate."""
    remediation = "Nothing was changed. Re-run when ready."


class ResolutionError(CardRescueError):
    """A mount point could not be mapped to a block device."""

    remediation = "Pick the device from the listing and pass it with --device."

    def __init__(self, message: str, listing: str = "", remediation: Optional[str] = None):
        super().__init__(message, remediation)
        self.listing = listing


class InvalidDeviceError(CardRescueError):
    remediation = "Pass a block device such as /dev/sdb (see 'cardrescue devices')."


class UnmountError(CardRescueError):
    remediation = "Close programs using the mount and re-run."


class ImagingError(CardRescueError):
    remediation = ("Check the device connection and output directory, then re-run "
                   "the same command to resume from the mapfile.")


class InspectionWarning(CardRescueError):
    """Loopback attach or partition scan failed. Never fatal."""


class EngineUnavailable(CardRescueError):
    """A carving engine is not installed or not configured. Never fatal."""


class EngineFailure(CardRescueError):
    """A carving engine exited non-zero. Never fatal."""

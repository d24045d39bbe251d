"""
Domain errors raised by the intake workflow.

The HTTP layer maps each of these to a status code; nothing here is fatal to
the process and every path leaves the session in a retriable state.
"""


class IntakeError(Exception):
    """Base class for recoverable intake failures."""


class FileHandlingError(IntakeError):
    """Upload could not be read or encoded; raised before any service call."""


class ExtractionError(IntakeError):
    """Field extraction failed for a reason other than unavailability."""


class ServiceUnavailableError(ExtractionError):
    """Extraction or decision backend is overloaded or unreachable."""


class PolicyError(ExtractionError):
    """Override decision could not be produced or was malformed."""


class ScanInProgressError(IntakeError):
    """A scan is already running for this session."""


class BranchLockedError(IntakeError):
    """Branch cannot change while a record is in progress."""


class ArchiveCommitError(IntakeError):
    """Archive storage rejected the entry."""


class SpreadsheetError(FileHandlingError):
    """Type-approval workbook is empty, malformed or has no usable rows."""

REEXPORT_HINT = "Re-export this file as a text/CSV format from your bank's website and import it again."


class PennyError(ValueError):
    """Base class for errors surfaced to the user."""

    remediation: str | None = None

    def __init__(self, message: str, remediation: str | None = None):
        super().__init__(message)
        if remediation is not None:
            self.remediation = remediation


class FormatError(PennyError):
    """The file cannot be read at all. Aborts the session before any rows are processed."""

    def __init__(self, kind: str, message: str, remediation: str | None = None):
        super().__init__(message, remediation)
        self.kind = kind  # UnsupportedFormat, EmptyFile, NoTransactions


class MappingError(PennyError):
    """A required field is unmapped. Aborts the session before normalization."""

    remediation = "Map the date column and either an amount column or both debit and credit columns."

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class ValidationError(PennyError):
    """A single row failed type coercion."""

    def __init__(self, kind: str, message: str, column: str | None = None):
        super().__init__(message)
        self.kind = kind  # InvalidDate, InvalidAmount, MissingField
        self.column = column


class ExternalServiceError(PennyError):
    """The classifier timed out, rejected the request or returned malformed output."""


class PersistenceError(PennyError):
    """A write to the store failed. Aborts the session."""

    remediation = "Check that the database file is writable and not locked by another process."


class CheckMatchError(PennyError):
    """A check cannot be matched to the requested transaction."""


class ImportCancelled(PennyError):
    remediation = "The import was cancelled; run it again to finish."

"""Exception types shared across the ingestion core."""


class SmsLedgerError(Exception):
    """Base class for all smsledger errors."""


class StorageError(SmsLedgerError):
    """A local JSON store file could not be read or written."""


class ClassifierError(SmsLedgerError):
    """The classifier call failed (transport, timeout, or unparseable reply)."""


class LedgerApiError(SmsLedgerError):
    """The remote ledger API rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthUnavailableError(SmsLedgerError):
    """No bearer token could be resolved for the current invocation."""


class RecordingBusyError(SmsLedgerError):
    """A voice capture is already active."""

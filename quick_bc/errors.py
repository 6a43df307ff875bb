"""Fatal conditions raised while reading, correcting and counting.

Every error carries the exit status used by the command line and, when it
is tied to a record, the 0-based index of the first offending record.
"""


class QuickBcError(Exception):
    """Base class of all fatal run errors."""

    exit_code = 1
    kind = "error"

    def __init__(self, message: str, record_index: int | None = None):
        super().__init__(message)
        self.message = message
        self.record_index = record_index

    def __str__(self) -> str:
        if self.record_index is None:
            return self.message
        return f"{self.message} (record {self.record_index})"


class ConfigurationError(QuickBcError):
    """Invalid layout or whitelist options."""

    exit_code = 2
    kind = "configuration"


class StreamDecodeError(QuickBcError):
    """Malformed or truncated (compressed) input."""

    exit_code = 3
    kind = "stream_decode"


class PairingMismatchError(QuickBcError):
    """Read 1 and read 2 differ in length or identifiers."""

    exit_code = 4
    kind = "pairing_mismatch"


class MalformedReadError(QuickBcError):
    """Read shorter than the barcode layout requires."""

    exit_code = 5
    kind = "malformed_read"


class SortOrderViolation(QuickBcError):
    """Alignment stream is not coordinate sorted."""

    exit_code = 6
    kind = "sort_order"


class InvariantViolation(QuickBcError):
    """End of run count checks failed."""

    exit_code = 7
    kind = "invariant"

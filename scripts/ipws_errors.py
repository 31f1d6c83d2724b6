"""
Error taxonomy of the ipws conversion.

Recoverable (counted, run continues):
  - MalformedRecord       one input line could not be parsed
  - CorrelationGap        weight system without polytope info
  - DerivedQuantityError  record written without derived columns

Fatal (best-effort flush, then non-zero exit):
  - DuplicateKey / OutOfOrderKey
  - TooManyMalformedRecords
  - ResumeMismatch
  - OSError / pyarrow.ArrowException for I/O failures
"""


class IpwsError(Exception):
    """Base class for all conversion errors."""

    recoverable = False


class MalformedRecord(IpwsError):
    recoverable = True

    def __init__(self, source: str, line_number: int, reason: str, line: str = ""):
        self.source = source
        self.line_number = line_number
        self.reason = reason
        self.line = line
        super().__init__(f"{source}:{line_number}: {reason}: {line.strip()!r}")


class CorrelationGap(IpwsError):
    recoverable = True

    def __init__(self, key: int):
        self.key = key
        super().__init__(f"no polytope info for weight system key {key}")


class DuplicateKey(IpwsError):
    """The same key appears twice in one input stream."""

    def __init__(self, source: str, key: int, line_number: int = 0, message: str = None):
        self.source = source
        self.key = key
        self.line_number = line_number
        super().__init__(message or f"{source}:{line_number}: duplicate key {key}")


class OutOfOrderKey(DuplicateKey):
    """A key smaller than its predecessor; the merge-join cannot continue."""

    def __init__(self, source: str, key: int, previous: int, line_number: int = 0):
        self.previous = previous
        super().__init__(
            source, key, line_number,
            f"{source}:{line_number}: key {key} after {previous} (input not sorted)",
        )


class DerivedQuantityError(IpwsError):
    recoverable = True

    def __init__(self, key: int, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"derived quantities for key {key}: {reason}")


class TooManyMalformedRecords(IpwsError):
    def __init__(self, count: int, tolerance: int):
        self.count = count
        self.tolerance = tolerance
        super().__init__(f"{count} malformed records exceed tolerance of {tolerance}")


class ResumeMismatch(IpwsError):
    """A prior output file cannot be used to resume this run."""

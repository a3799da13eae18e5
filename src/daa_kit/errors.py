from typing import Optional


class DAAError(Exception):
    """Base class for all differential-abundance pipeline errors."""


class AlignmentError(DAAError):
    """Sample identifiers of the abundance table and metadata do not match 1:1."""


class PartialResultError(DAAError):
    """
    A single test could not be computed for a single taxon.

    The pipeline catches this, records a null for the taxon/test pair and
    continues with the remaining taxa.
    """

    def __init__(self, message: str, taxon: Optional[str] = None, test: Optional[str] = None):
        super().__init__(message)
        self.taxon = taxon
        self.test = test

    def __str__(self) -> str:
        msg = super().__str__()
        where = '/'.join(str(x) for x in (self.taxon, self.test) if x is not None)
        return f"{where}: {msg}" if where else msg


class EmptyInputError(DAAError):
    """No taxa left to test, or no p-values to correct."""


class IncompleteDataError(DAAError):
    """Null raw p-values found while correcting under the fail-fast policy."""

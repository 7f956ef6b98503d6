"""
Error taxonomy for schema traversal and wide-table assembly.

Fatal errors (NotFoundError, PrivacyViolationError, MissingDependencyError)
abort an in-flight assembly; no partial wide table is ever returned.
TranslationUnavailableError is recovered by the concept translator, which
passes coded values through unchanged.
"""


class OMOPError(Exception):
    """Base class for all errors raised by omop_wide."""

    pass


class NotFoundError(OMOPError, LookupError):
    """Raised when a requested table or column does not exist (case-insensitive lookup exhausted)."""

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(message or f"The table '{name}' does not exist in the database.")


class PrivacyViolationError(OMOPError):
    """
    Raised when a result holds fewer distinct entities than the disclosure threshold.

    The message states the threshold only, never the offending count.
    """

    def __init__(self, threshold: int, message: str | None = None):
        self.threshold = threshold
        super().__init__(message or f"Entity count below subset filter (nfilter.subset = {threshold}).")


class MissingDependencyError(OMOPError, KeyError):
    """Raised when a required key column is absent before a reshape or merge."""

    def __init__(self, column: str, message: str | None = None):
        self.column = column
        self.message = message or f"The column '{column}' is not present in the table."
        super().__init__(self.message)

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.message


class TranslationUnavailableError(OMOPError):
    """Raised when the vocabulary table is absent or the vocabulary lookup fails."""

    pass


class UnsupportedResourceError(OMOPError, ValueError):
    """Raised when no connection constructor is registered for a resource."""

    pass


class QueryExecutionError(OMOPError, RuntimeError):
    """Raised when the store rejects a query or statement."""

    pass

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for errors raised by the reconciliation core."""


class FetchError(ReconcileError):
    """Row retrieval failed; the message is shown to the user as-is."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RecordNotFoundError(ReconcileError):
    pass


class UnknownTableError(ReconcileError):
    pass


class InvalidTransitionError(ValueError):
    pass


def manual_match_not_found(table: str, column: str, value) -> str:
    return f"No record in {table} where {column} = '{value}'"

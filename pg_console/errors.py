from typing import Any


class ConsoleError(Exception):
    """Base class for errors reported back to the console as {"error": message}."""

    status_code = 500


class DatabaseConnectionError(ConsoleError):
    """The target server was unreachable, rejected the credentials or timed out."""

    status_code = 502


class ValidationError(ConsoleError):
    status_code = 400


class WriteDisabledError(ConsoleError):
    status_code = 403


def _describe(cause: Any) -> str:
    diag = getattr(cause, "diag", None)
    primary = getattr(diag, "message_primary", None) if diag is not None else None
    if primary:
        return primary
    return str(cause) or cause.__class__.__name__


class QueryError(ConsoleError):
    """A statement failed while performing `operation`."""

    def __init__(self, operation: str, cause: Any):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {_describe(cause)}")


class CatalogQueryError(QueryError):
    pass


class StatementError(QueryError):
    pass


class RowNotFoundError(StatementError):
    status_code = 404


class PlanningError(ConsoleError):
    """A maintenance run stopped at `step`.

    `progress` holds the counts completed before the failure. Statements that
    already ran are not rolled back.
    """

    def __init__(self, step: str, target: str | None, cause: Any, progress: Any = None):
        self.step = step
        self.target = target
        self.cause = cause
        self.progress = progress
        where = f"{step} ({target})" if target else step
        super().__init__(f"Maintenance aborted during {where}: {_describe(cause)}")

"""
otlist/services/exceptions.py
=============================
Exception hierarchy for the case lifecycle.

Exception Tree::

    CaseLifecycleError (base)
    ├── ValidationFailure
    ├── NotFound
    └── PersistenceFailure
"""

from __future__ import annotations


class CaseLifecycleError(Exception):
    """Base exception for case lifecycle errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dict with structured error context.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message: str = message
        self.details: dict = details or {}
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, details={self.details!r})"


class ValidationFailure(CaseLifecycleError):
    """Raised when a create or edit payload is rejected before any state changes.

    Attributes:
        problems: One line per rejected field.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems: list[str] = problems
        super().__init__(
            message="; ".join(problems),
            details={"problems": problems},
        )


class NotFound(CaseLifecycleError):
    """Raised when an update or delete references an unknown case id."""

    def __init__(self, case_id: str) -> None:
        self.case_id: str = case_id
        super().__init__(
            message=f"Case {case_id} not found",
            details={"case_id": case_id},
        )


class PersistenceFailure(CaseLifecycleError):
    """Raised when the underlying store rejects or fails a write.

    Local state is left untouched; the caller may retry.
    """

    def __init__(self, operation: str, table: str, cause: BaseException | None = None) -> None:
        self.operation: str = operation
        self.table: str = table
        message = f"Failed to {operation} {table}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(
            message=message,
            details={"operation": operation, "table": table},
        )

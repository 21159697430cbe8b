"""Exception hierarchy with stable error codes."""

from __future__ import annotations

from collections.abc import Iterable


class TaskqError(Exception):
    """Base class for errors surfaced to callers with a stable code."""

    code = "TASKQ_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict:
        return {}


class InvalidParameterError(TaskqError):
    code = "INVALID_PARAMETER"

    def __init__(self, parameter: str, message: str):
        super().__init__(message)
        self.parameter = parameter

    def details(self) -> dict:
        return {"parameter": self.parameter}


class ValidationError(TaskqError):
    """Raised before any write when input fails validation."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    def details(self) -> dict:
        return {"field": self.field}


class NotFoundError(TaskqError):
    code = "NOT_FOUND"

    def __init__(self, task_id: str):
        super().__init__(f"Task '{task_id}' not found")
        self.task_id = task_id


class NotFoundInExpectedStatus(TaskqError):
    """The task exists, but not in any of the statuses the operation accepts."""

    code = "NOT_FOUND_IN_EXPECTED_STATUS"

    def __init__(self, task_id: str, expected: Iterable, actual=None):
        self.task_id = task_id
        self.expected = [getattr(s, "value", s) for s in expected]
        self.actual = getattr(actual, "value", actual)
        msg = f"Task '{task_id}' not found in {', '.join(self.expected)}"
        if self.actual:
            msg += f" (currently {self.actual})"
        super().__init__(msg)

    def details(self) -> dict:
        return {"expected": self.expected, "status": self.actual}


class ProjectNotFoundError(TaskqError):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, path):
        super().__init__(f"Task directory '{path}' does not exist; run `taskq init`")
        self.path = str(path)

    def details(self) -> dict:
        return {"path": self.path}


class DependencyCycleError(TaskqError):
    code = "DEPENDENCY_CYCLE"

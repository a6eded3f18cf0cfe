from typing import List, Optional


class PlanStoreError(Exception):
    """Base class for plan store failures that callers are expected to handle."""

    def __init__(self, message: str, *, plan_id: Optional[str] = None, operation: Optional[str] = None):
        super().__init__(message)
        self.plan_id = plan_id
        self.operation = operation


class PlanNotFoundError(PlanStoreError):
    def __init__(self, plan_id: str, operation: str = "get"):
        super().__init__(f"plan {plan_id} not found", plan_id=plan_id, operation=operation)


class VersionConflictError(PlanStoreError):
    """Another writer committed between our read and our commit. Safe to re-read and retry."""

    retryable = True

    def __init__(self, plan_id: str, expected_version: int, actual_version: Optional[int], operation: str = "update"):
        actual = "missing" if actual_version is None else f"v{actual_version}"
        super().__init__(
            f"{operation} conflict on plan {plan_id}: expected v{expected_version} on disk, found {actual}",
            plan_id=plan_id,
            operation=operation,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class IllegalTransitionError(PlanStoreError):
    def __init__(self, plan_id: str, operation: str, current_status: str, required: Optional[str] = None):
        if required:
            message = f"cannot {operation}: plan {plan_id} is not in {required} status (current: {current_status})"
        else:
            message = f"cannot {operation}: plan {plan_id} is {current_status}"
        super().__init__(message, plan_id=plan_id, operation=operation)
        self.current_status = current_status
        self.required_status = required


class ImmutableFieldError(PlanStoreError):
    def __init__(self, plan_id: str, field: str, operation: str = "update"):
        super().__init__(f"{operation} on plan {plan_id} may not change {field}", plan_id=plan_id, operation=operation)
        self.field = field


class PreflightError(PlanStoreError):
    """Execution gate failed; nothing was mutated."""

    def __init__(
        self,
        plan_id: str,
        reason: str,
        message: str,
        *,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        missing_tools: Optional[List[str]] = None,
    ):
        super().__init__(f"preflight failed for plan {plan_id}: {message}", plan_id=plan_id, operation="execute")
        self.reason = reason
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.missing_tools = list(missing_tools or [])


class PlanParseError(PlanStoreError, ValueError):
    def __init__(self, message: str, *, plan_id: Optional[str] = None, path: Optional[str] = None):
        where = f" ({path})" if path else ""
        super().__init__(f"unreadable plan document{where}: {message}", plan_id=plan_id, operation="parse")
        self.path = path


class DispatchError(PlanStoreError):
    def __init__(self, plan_id: str, cause: BaseException):
        super().__init__(f"executor dispatch failed for plan {plan_id}: {cause}", plan_id=plan_id, operation="execute")
        self.cause = cause

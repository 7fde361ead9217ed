"""
Workflow error taxonomy.

Expected outcomes (no workflow configured, invalid transition, unauthorized)
are reported through TransitionResult, not raised.
"""

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for workflow engine errors"""
    retryable = False


class CatalogValidationError(WorkflowError):
    """Raised when workflow definitions violate catalog invariants"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors)
        super().__init__(f"Invalid workflow catalog ({len(self.errors)} problem(s)): {summary}")


class CaseNotFoundError(WorkflowError):
    """Raised when the case repository has no record of a case"""

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case {case_id} not found")


class InvalidStateError(WorkflowError):
    """Stored workflow state cannot be interpreted against its definition"""


class ConfigurationDriftError(InvalidStateError):
    """The instance's current step no longer exists in its category's definition"""

    def __init__(self, case_id: str, category: str, step: str):
        self.case_id = case_id
        self.category = category
        self.step = step
        super().__init__(
            f"Case {case_id} is in step '{step}' which is not defined for category '{category}'"
        )


class ConcurrentModificationError(WorkflowError):
    """The optimistic version check failed on every attempt"""
    retryable = True

    def __init__(self, case_id: str, attempts: int):
        self.case_id = case_id
        self.attempts = attempts
        super().__init__(
            f"Case {case_id} was modified concurrently ({attempts} attempts); retry the request"
        )


class TransitionTimeoutError(WorkflowError):
    """The caller's deadline passed or the call was cancelled before the write"""

    def __init__(self, case_id: str, reason: Optional[str] = None):
        self.case_id = case_id
        super().__init__(reason or f"Transition for case {case_id} exceeded its deadline")


class AuditAppendError(WorkflowError):
    """The audit sink could not persist an entry"""

"""Exceptions raised while driving stacks through their lifecycle."""
from typing import List, Optional, Tuple


class StackforgeError(Exception):
    """Base exception for stackforge operations."""

    def __init__(self, message: str, stack_name: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message)
        self.stack_name = stack_name
        self.status = status


class ConfigurationError(StackforgeError):
    """Environment, template or parameter configuration could not be resolved."""


class TransientNetworkError(StackforgeError):
    """A control-plane call failed in a way that is safe to retry."""


class OperationTimeout(StackforgeError):
    """A stack or change set did not reach a terminal state in time."""

    def __init__(self, stack_name: str, operation: str, timeout: float, status: Optional[str] = None):
        super().__init__(
            f"{operation} of {stack_name} did not finish within {timeout:g}s (last status: {status or 'unknown'})",
            stack_name=stack_name,
            status=status,
        )
        self.operation = operation
        self.timeout = timeout


class ChangeSetEmpty(StackforgeError):
    """The control plane found nothing to change."""


class OperationFailed(StackforgeError):
    """The control plane reported a terminal failure for a stack operation."""

    def __init__(self, stack_name: str, status: str, reason: Optional[str] = None, raw_status: Optional[str] = None):
        detail = f"{stack_name} ended in {status}"
        if raw_status:
            detail += f" ({raw_status})"
        if reason:
            detail += f": {reason}"
        super().__init__(detail, stack_name=stack_name, status=status)
        self.reason = reason
        self.raw_status = raw_status


class ChangeSetCreateFailed(OperationFailed):
    """The control plane rejected a change set for a reason other than having no changes."""


class TemplateValidationError(OperationFailed):
    """The template was rejected by the control plane's validator."""


class SweepIncomplete(StackforgeError):
    """One or more child resources could not be emptied, so the stack must not be deleted."""

    def __init__(self, stack_name: str, failures: List[Tuple[str, str]]):
        lines = ", ".join(f"{resource}: {reason}" for resource, reason in failures)
        super().__init__(f"sweep of {stack_name} incomplete ({lines})", stack_name=stack_name)
        self.failures = failures


class Cancelled(StackforgeError):
    """The operator declined a confirmation gate."""


class IllegalTransition(StackforgeError):
    """A lifecycle event was applied to a stack in a status that does not accept it."""


class ControlPlaneError(StackforgeError):
    """A control-plane call was rejected with an error that is not worth retrying."""

    def __init__(self, operation: str, code: str, message: str, stack_name: Optional[str] = None):
        super().__init__(f"{operation} failed: {code}: {message}", stack_name=stack_name)
        self.operation = operation
        self.code = code
        self.message = message

"""
Models for stacks, their lifecycle statuses and in-flight operations.
"""
from typing import Dict, Optional
from enum import Enum
from pydantic import BaseModel, Field


class StackStatus(str, Enum):
    """
    Lifecycle status of a stack as tracked by stackforge.
    """
    ABSENT = "absent"
    CREATING = "creating"
    CREATE_COMPLETE = "create_complete"
    CREATE_FAILED = "create_failed"
    UPDATING = "updating"
    UPDATE_COMPLETE = "update_complete"
    UPDATE_FAILED = "update_failed"
    NO_UPDATES = "no_updates"
    DELETING = "deleting"
    DELETE_COMPLETE = "delete_complete"
    DELETE_FAILED = "delete_failed"

    @property
    def in_progress(self) -> bool:
        return self in IN_PROGRESS

    @property
    def is_terminal(self) -> bool:
        return self not in IN_PROGRESS

    @property
    def succeeded(self) -> bool:
        return self in SUCCEEDED


IN_PROGRESS = frozenset({StackStatus.CREATING, StackStatus.UPDATING, StackStatus.DELETING})

SUCCEEDED = frozenset({
    StackStatus.CREATE_COMPLETE,
    StackStatus.UPDATE_COMPLETE,
    StackStatus.NO_UPDATES,
    StackStatus.DELETE_COMPLETE,
})

FAILED = frozenset({StackStatus.CREATE_FAILED, StackStatus.UPDATE_FAILED, StackStatus.DELETE_FAILED})

# Raw status of a stack created by a change set that was never executed.
REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"

# CloudFormation status -> tracked status. Rollbacks are reported as failures of
# the operation that triggered them.
CLOUDFORMATION_STATUS_MAP: Dict[str, StackStatus] = {
    REVIEW_IN_PROGRESS: StackStatus.ABSENT,
    "CREATE_IN_PROGRESS": StackStatus.CREATING,
    "ROLLBACK_IN_PROGRESS": StackStatus.CREATING,
    "CREATE_COMPLETE": StackStatus.CREATE_COMPLETE,
    "CREATE_FAILED": StackStatus.CREATE_FAILED,
    "ROLLBACK_COMPLETE": StackStatus.CREATE_FAILED,
    "ROLLBACK_FAILED": StackStatus.CREATE_FAILED,
    "UPDATE_IN_PROGRESS": StackStatus.UPDATING,
    "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS": StackStatus.UPDATING,
    "UPDATE_ROLLBACK_IN_PROGRESS": StackStatus.UPDATING,
    "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS": StackStatus.UPDATING,
    "UPDATE_COMPLETE": StackStatus.UPDATE_COMPLETE,
    "UPDATE_FAILED": StackStatus.UPDATE_FAILED,
    "UPDATE_ROLLBACK_COMPLETE": StackStatus.UPDATE_FAILED,
    "UPDATE_ROLLBACK_FAILED": StackStatus.UPDATE_FAILED,
    "DELETE_IN_PROGRESS": StackStatus.DELETING,
    "DELETE_COMPLETE": StackStatus.DELETE_COMPLETE,
    "DELETE_FAILED": StackStatus.DELETE_FAILED,
    # Imports behave like updates for sequencing purposes.
    "IMPORT_IN_PROGRESS": StackStatus.UPDATING,
    "IMPORT_ROLLBACK_IN_PROGRESS": StackStatus.UPDATING,
    "IMPORT_COMPLETE": StackStatus.UPDATE_COMPLETE,
    "IMPORT_ROLLBACK_COMPLETE": StackStatus.UPDATE_FAILED,
    "IMPORT_ROLLBACK_FAILED": StackStatus.UPDATE_FAILED,
}


def map_cloudformation_status(raw_status: Optional[str]) -> StackStatus:
    """
    Maps a raw CloudFormation stack status onto a tracked status.

    :param raw_status: Status string as returned by DescribeStacks, or None if the stack does not exist.
    :return: The tracked status.
    :raises ValueError: If the status is not a known CloudFormation status.
    """
    if raw_status is None:
        return StackStatus.ABSENT
    try:
        return CLOUDFORMATION_STATUS_MAP[raw_status]
    except KeyError:
        raise ValueError(f"Unknown CloudFormation stack status: {raw_status}")


class Stack(BaseModel):
    """
    A named deployable unit as last observed on the control plane.
    """
    name: str
    template_ref: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    status: StackStatus = StackStatus.ABSENT
    outputs: Dict[str, str] = Field(default_factory=dict)

    stack_id: Optional[str] = None
    raw_status: Optional[str] = None
    status_reason: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.status not in (StackStatus.ABSENT, StackStatus.DELETE_COMPLETE)

    def describe_status(self) -> str:
        """Status for operator messages, including the raw control-plane status when it adds information."""
        if self.raw_status and self.raw_status.lower() != self.status.value:
            return f"{self.status.value} ({self.raw_status})"
        return self.status.value


class Operation(str, Enum):
    """Kinds of stack operations that can be waited on."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    OBSERVE = "observe"


class OperationHandle(BaseModel):
    """
    Reference to a mutation issued against the control plane.
    """
    stack_name: str
    operation: Operation
    stack_id: Optional[str] = None
    request_token: Optional[str] = None

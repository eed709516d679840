"""
Models for change sets, the reviewable proposals computed before every update.
"""
from typing import List, Optional
from enum import Enum
from pydantic import BaseModel


class ChangeAction(str, Enum):
    """
    What a change set proposes to do to a single resource.
    """
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"
    IMPORT = "import"
    DYNAMIC = "dynamic"
    SYNC = "sync"


class ChangeSetStatus(str, Enum):
    """
    Readiness of a change set on the control plane.
    """
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ChangeSetStatus.PENDING


class Change(BaseModel):
    """
    A single proposed resource mutation.
    """
    action: ChangeAction
    resource_id: str
    resource_type: str
    replacement: Optional[str] = None


class ChangeSet(BaseModel):
    """
    A named proposal of mutations against a stack's live state.
    """
    id: str
    name: str
    stack_name: str
    status: ChangeSetStatus = ChangeSetStatus.PENDING
    status_reason: Optional[str] = None
    changes: List[Change] = []

    @property
    def is_empty(self) -> bool:
        return not self.changes

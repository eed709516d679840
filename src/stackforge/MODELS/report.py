"""
Models describing what a run did to each stack.
"""
from typing import Dict, List, Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict
from .stack import StackStatus


class StackOutcome(str, Enum):
    """
    Result of one lifecycle operation on one stack.
    """
    CREATED = "created"
    UPDATED = "updated"
    NO_UPDATES = "no_updates"
    CANCELLED = "cancelled"
    PREVIEWED = "previewed"
    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"


class Direction(str, Enum):
    APPLY = "apply"
    TEARDOWN = "teardown"


class StackResult(BaseModel):
    """
    What happened to a single stack.
    """
    name: str
    outcome: StackOutcome
    status: StackStatus
    outputs: Dict[str, str] = {}
    template_ref: Optional[str] = None


class RunReport(BaseModel):
    """
    Ordered results of walking an environment's chain in one direction.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    environment: str
    direction: Direction
    results: List[StackResult] = []
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def processed(self) -> List[str]:
        return [r.name for r in self.results]

    def outputs(self, stack: str) -> Dict[str, str]:
        for result in self.results:
            if result.name == stack:
                return result.outputs
        return {}

"""
Models for sweeping stateful child resources ahead of stack deletion.
"""
from typing import Dict, List, Optional
from enum import Enum
from pydantic import BaseModel


class SweepKind(str, Enum):
    """
    Kinds of child resources that must be emptied before their stack can be deleted.
    """
    OBJECT_STORE = "object-store"
    IMAGE_REPOSITORY = "image-repository"


RESOURCE_TYPES: Dict[SweepKind, str] = {
    SweepKind.OBJECT_STORE: "AWS::S3::Bucket",
    SweepKind.IMAGE_REPOSITORY: "AWS::ECR::Repository",
}


class SweepTarget(BaseModel):
    """
    A single child resource to purge.
    """
    kind: SweepKind
    resource_id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.resource_id}"


class SweepResult(BaseModel):
    """
    Outcome of purging one child resource.
    """
    target: SweepTarget
    removed: int = 0
    absent: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SweepTask(BaseModel):
    """
    Every child resource of one stack that has to be emptied before deletion.
    """
    stack_name: str
    targets: List[SweepTarget] = []
    results: List[SweepResult] = []

    @property
    def complete(self) -> bool:
        """True once every target has a successful result."""
        done = {str(r.target) for r in self.results if r.ok}
        return all(str(t) in done for t in self.targets)

    @property
    def failures(self) -> List[SweepResult]:
        return [r for r in self.results if not r.ok]

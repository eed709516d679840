"""
Models for environments and the ordered stack chains they deploy.
"""
from typing import Dict, List
from pydantic import BaseModel, Field, field_validator
from .sweep import SweepKind


class StackEntry(BaseModel):
    """
    One link of an environment's dependency chain.
    Parameter values may reference outputs of earlier stacks as ${stack.OutputKey}.
    """
    name: str
    template: str
    sweep: List[SweepKind] = []
    parameters: Dict[str, str] = {}

    @field_validator("parameters", mode="before")
    @classmethod
    def _stringify(cls, value):
        if value is None:
            return {}
        return {str(k): str(v) for k, v in dict(value).items()}


class EnvironmentConfig(BaseModel):
    """
    A named deployment target: a region plus a fixed, ordered list of stacks.
    """
    name: str
    region: str = "us-east-1"
    stacks: List[StackEntry] = []
    tags: Dict[str, str] = Field(default_factory=dict)

    def qualified_name(self, stack: str) -> str:
        """
        Control-plane name of a stack within this environment.

        :param stack: The short stack name as declared in the chain.
        :return: The environment-scoped stack name.
        """
        return f"{self.name}-{stack}"

    def entry(self, stack: str) -> StackEntry:
        for entry in self.stacks:
            if entry.name == stack:
                return entry
        raise KeyError(stack)

    def position(self, stack: str) -> int:
        for index, entry in enumerate(self.stacks):
            if entry.name == stack:
                return index
        raise KeyError(stack)

    @property
    def order(self) -> List[str]:
        return [entry.name for entry in self.stacks]


class DeploymentConfig(BaseModel):
    """
    Complete set of environments, equivalent to a parsed stacks.yml file.
    """
    environments: Dict[str, EnvironmentConfig] = {}


DEFAULT_CHAIN: List[StackEntry] = [
    StackEntry(name="vpc-network", template="01-vpc-network.yaml"),
    StackEntry(name="eks-cluster", template="02-eks-cluster.yaml", sweep=[SweepKind.IMAGE_REPOSITORY]),
    StackEntry(name="rds-database", template="03-rds-database.yaml"),
    StackEntry(name="storage-messaging", template="04-storage-messaging.yaml", sweep=[SweepKind.OBJECT_STORE]),
    StackEntry(name="cicd-pipeline", template="05-cicd-pipeline.yaml", sweep=[SweepKind.OBJECT_STORE]),
]


def default_environment(name: str, region: str) -> EnvironmentConfig:
    """
    Builds an environment running the default five-stack chain.

    :param name: Environment name, also used as stack name prefix.
    :param region: Region the stacks live in.
    """
    return EnvironmentConfig(
        name=name,
        region=region,
        stacks=[entry.model_copy(deep=True) for entry in DEFAULT_CHAIN],
    )

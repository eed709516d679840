"""
Per-run tracking of stack statuses and the transitions allowed between them.
"""
from typing import Dict, List, Optional, Tuple
from enum import Enum

import structlog

from ..exceptions import IllegalTransition
from ..MODELS.stack import FAILED, Stack, StackStatus

logger = structlog.get_logger(__name__)


class LifecycleEvent(str, Enum):
    """Events that move a stack between statuses."""
    CREATE = "create"
    UPDATE = "update"
    NO_CHANGES = "no_changes"
    DELETE = "delete"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    FORGET = "forget"


S = StackStatus
E = LifecycleEvent

SETTLED = (S.CREATE_COMPLETE, S.UPDATE_COMPLETE, S.NO_UPDATES)
UPDATABLE = SETTLED + tuple(FAILED)

TRANSITIONS: Dict[Tuple[StackStatus, LifecycleEvent], StackStatus] = {
    (S.ABSENT, E.CREATE): S.CREATING,
    (S.CREATING, E.SUCCEEDED): S.CREATE_COMPLETE,
    (S.CREATING, E.FAILED): S.CREATE_FAILED,
    (S.UPDATING, E.SUCCEEDED): S.UPDATE_COMPLETE,
    (S.UPDATING, E.FAILED): S.UPDATE_FAILED,
    (S.DELETING, E.SUCCEEDED): S.DELETE_COMPLETE,
    (S.DELETING, E.FAILED): S.DELETE_FAILED,
    (S.DELETE_COMPLETE, E.FORGET): S.ABSENT,
}
for _status in UPDATABLE:
    TRANSITIONS[(_status, E.UPDATE)] = S.UPDATING
    TRANSITIONS[(_status, E.NO_CHANGES)] = S.NO_UPDATES
    TRANSITIONS[(_status, E.DELETE)] = S.DELETING


class StackStateMachine:
    """
    Tracks the status of every stack referenced during one run.

    Statuses are seeded from the control plane on every decision (see observe)
    and never carried over between runs.
    """

    def __init__(self):
        self._stacks: Dict[str, Stack] = {}
        self.history: List[Tuple[str, StackStatus, LifecycleEvent, StackStatus]] = []

    def track(self, name: str) -> Stack:
        """Starts tracking a stack at absent if it has not been referenced yet."""
        if name not in self._stacks:
            self._stacks[name] = Stack(name=name)
        return self._stacks[name]

    def observe(self, stack: Stack) -> Stack:
        """Replaces the tracked view of a stack with what the control plane reported."""
        self._stacks[stack.name] = stack
        return stack

    def status(self, name: str) -> Optional[StackStatus]:
        stack = self._stacks.get(name)
        return stack.status if stack else None

    def is_tracked(self, name: str) -> bool:
        return name in self._stacks

    @staticmethod
    def next_status(current: StackStatus, event: LifecycleEvent) -> StackStatus:
        try:
            return TRANSITIONS[(current, event)]
        except KeyError:
            raise IllegalTransition(
                f"cannot {event.value} a stack in status {current.value}", status=current.value
            )

    def advance(self, name: str, event: LifecycleEvent) -> StackStatus:
        """
        Applies an event to a tracked stack.

        :param name: Qualified stack name.
        :param event: The lifecycle event.
        :return: The new status.
        :raises IllegalTransition: If the current status does not accept the event.
        """
        stack = self.track(name)
        try:
            new_status = self.next_status(stack.status, event)
        except IllegalTransition as e:
            e.stack_name = name
            raise
        self.history.append((name, stack.status, event, new_status))
        logger.debug(
            "Stack transition",
            stack=name,
            lifecycle_event=event.value,
            old=stack.status.value,
            new=new_status.value,
        )
        if new_status is S.ABSENT:
            del self._stacks[name]
        else:
            self._stacks[name] = stack.model_copy(update={"status": new_status})
        return new_status

    def settle(self, name: str, observed: Stack, expected_success: StackStatus) -> StackStatus:
        """
        Records the terminal status the control plane reported for an in-flight operation.

        Succeeds only if the observed status is the expected success status; any other
        terminal status is recorded as a failure of the operation.
        """
        event = E.SUCCEEDED if observed.status is expected_success else E.FAILED
        status = self.advance(name, event)
        self._stacks[name] = observed.model_copy(update={"status": status})
        if status is S.DELETE_COMPLETE:
            self.advance(name, E.FORGET)
        return status

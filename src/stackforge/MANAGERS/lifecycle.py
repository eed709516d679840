# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Lifecycle management for individual stacks: create vs. update vs. no-op
decisions, waiting out in-flight operations, and sweep-then-delete.
"""
from typing import Dict, List, Optional, Tuple

import structlog

from ..CLIENTS.control_plane import ControlPlaneClient
from ..exceptions import OperationFailed, SweepIncomplete
from ..MODELS.report import StackOutcome
from ..MODELS.stack import REVIEW_IN_PROGRESS, Operation, OperationHandle, Stack, StackStatus
from ..MODELS.sweep import SweepKind
from .change_preview import ChangePreviewEngine
from .resource_sweeper import ResourceSweeper
from .state_machine import LifecycleEvent, StackStateMachine

logger = structlog.get_logger(__name__)


class StackLifecycle:
    """
    Drives a single stack to its desired state.

    Every decision starts from a fresh describe call; nothing learned in an
    earlier run is trusted.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        preview: ChangePreviewEngine,
        sweeper: ResourceSweeper,
        state: Optional[StackStateMachine] = None,
        wait_timeout: float = 3600.0,
    ):
        """
        Initializes the lifecycle.

        :param client: Control plane adapter.
        :param preview: Engine that gates updates behind a reviewed change set.
        :param sweeper: Purges child resources ahead of deletion.
        :param state: Per-run status tracking.
        :param wait_timeout: Seconds to wait for any stack operation to finish.
        """
        self.client = client
        self.preview = preview
        self.sweeper = sweeper
        self.state = state or StackStateMachine()
        self.wait_timeout = wait_timeout

    def current(self, name: str) -> Stack:
        """
        Reads a stack's live status, blocking until any in-flight operation finishes.

        :param name: Qualified stack name.
        :return: The stack in a terminal status (or absent).
        """
        self.state.track(name)
        while True:
            stack = self.client.describe_stack(name)
            self.state.observe(stack)
            if not stack.status.in_progress:
                return stack
            logger.info("Waiting for in-flight operation", stack=name, status=stack.describe_status())
            self.client.wait_for_completion(
                OperationHandle(stack_name=name, operation=Operation.OBSERVE, stack_id=stack.stack_id),
                self.wait_timeout,
            )

    def apply(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        tags: Optional[Dict[str, str]] = None,
    ) -> Tuple[StackOutcome, Stack]:
        """
        Creates the stack if it is absent, otherwise updates it through a reviewed change set.

        :return: The outcome and the stack as it stands afterwards.
        :raises OperationFailed: If the control plane reports a failed create or update.
        :raises OperationTimeout: If the operation does not finish in time.
        """
        stack = self.current(name)
        self.client.validate_template(name, template_body)
        if stack.status is StackStatus.ABSENT:
            return self._create(stack, template_body, parameters, tags)
        return self._update(stack, template_body, parameters, tags)

    def update(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        tags: Optional[Dict[str, str]] = None,
        dry_run: bool = False,
    ) -> Tuple[StackOutcome, Stack]:
        """
        Updates an existing stack through a reviewed change set.

        :raises OperationFailed: If the stack does not exist or the update fails.
        """
        stack = self.current(name)
        if stack.status is StackStatus.ABSENT:
            raise OperationFailed(name, StackStatus.ABSENT.value, reason="stack does not exist, use apply to create it")
        self.client.validate_template(name, template_body)
        return self._update(stack, template_body, parameters, tags, dry_run=dry_run)

    def _create(
        self, stack: Stack, template_body: str, parameters: Dict[str, str], tags: Optional[Dict[str, str]]
    ) -> Tuple[StackOutcome, Stack]:
        name = stack.name
        logger.info("Creating stack", stack=name)
        self.state.advance(name, LifecycleEvent.CREATE)
        if stack.raw_status == REVIEW_IN_PROGRESS:
            handle = self._create_from_review(stack, template_body, parameters, tags)
        else:
            handle = self.client.create_stack(name, template_body, parameters, tags)
        final = self.client.wait_for_completion(handle, self.wait_timeout)
        status = self.state.settle(name, final, StackStatus.CREATE_COMPLETE)
        if status is not StackStatus.CREATE_COMPLETE:
            raise OperationFailed(name, status.value, reason=final.status_reason, raw_status=final.raw_status)
        return StackOutcome.CREATED, final

    def _create_from_review(
        self, stack: Stack, template_body: str, parameters: Dict[str, str], tags: Optional[Dict[str, str]]
    ) -> OperationHandle:
        """
        Completes the create of a stack held in review.

        The control plane refuses CreateStack for such a stack, so the create goes
        through a CREATE change set that is executed without a prompt, like any create.
        """
        logger.info("Stack is in review, creating through a change set", stack=stack.name)
        change_set = self.client.create_change_set(
            stack.name,
            template_body,
            parameters,
            ChangePreviewEngine.change_set_name(stack.name),
            tags,
            change_set_type="CREATE",
        )
        executed = False
        try:
            change_set = self.client.wait_for_change_set(change_set, self.preview.change_set_timeout)
            handle = self.client.execute_change_set(change_set, stack.stack_id, operation=Operation.CREATE)
            executed = True
            return handle
        finally:
            if not executed:
                self.client.delete_change_set(change_set)

    def _update(
        self,
        stack: Stack,
        template_body: str,
        parameters: Dict[str, str],
        tags: Optional[Dict[str, str]],
        dry_run: bool = False,
    ) -> Tuple[StackOutcome, Stack]:
        # Validates that the current status accepts an update before anything is created.
        StackStateMachine.next_status(stack.status, LifecycleEvent.UPDATE)
        logger.info("Reviewing update", stack=stack.name, status=stack.describe_status())
        result = self.preview.review(stack, template_body, parameters, tags, dry_run=dry_run)

        if result.outcome is StackOutcome.NO_UPDATES:
            status = self.state.advance(stack.name, LifecycleEvent.NO_CHANGES)
            return result.outcome, stack.model_copy(update={"status": status})
        if result.outcome in (StackOutcome.CANCELLED, StackOutcome.PREVIEWED):
            return result.outcome, stack

        self.state.advance(stack.name, LifecycleEvent.UPDATE)
        final = self.client.wait_for_completion(result.handle, self.wait_timeout)
        status = self.state.settle(stack.name, final, StackStatus.UPDATE_COMPLETE)
        if status is not StackStatus.UPDATE_COMPLETE:
            raise OperationFailed(stack.name, status.value, reason=final.status_reason, raw_status=final.raw_status)
        return StackOutcome.UPDATED, final

    def delete(self, name: str, sweep: List[SweepKind]) -> Tuple[StackOutcome, Stack]:
        """
        Sweeps the stack's declared child resources, then deletes it.

        :param name: Qualified stack name.
        :param sweep: Child resource kinds this stack owns.
        :raises SweepIncomplete: If a child resource could not be emptied; no delete is issued.
        :raises OperationFailed: If the control plane reports a failed delete.
        """
        stack = self.current(name)
        if stack.status is StackStatus.ABSENT:
            logger.info("Stack does not exist", stack=name)
            return StackOutcome.ALREADY_ABSENT, stack
        StackStateMachine.next_status(stack.status, LifecycleEvent.DELETE)

        task = self.sweeper.sweep(name, sweep)
        if not task.complete:
            raise SweepIncomplete(name, [(str(r.target), r.error or "not swept") for r in task.failures])

        logger.info("Deleting stack", stack=name)
        self.state.advance(name, LifecycleEvent.DELETE)
        handle = self.client.delete_stack(name, stack.stack_id)
        final = self.client.wait_for_completion(handle, self.wait_timeout)
        status = self.state.settle(name, final, StackStatus.DELETE_COMPLETE)
        if status is not StackStatus.DELETE_COMPLETE:
            raise OperationFailed(name, status.value, reason=final.status_reason, raw_status=final.raw_status)
        return StackOutcome.DELETED, final

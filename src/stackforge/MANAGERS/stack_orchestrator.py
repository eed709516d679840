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
Orchestration of an environment's stack chain in declared order.
"""
from typing import Dict, Optional

import structlog

from ..exceptions import Cancelled, StackforgeError
from ..MODELS.environment_config import EnvironmentConfig, StackEntry
from ..MODELS.report import Direction, RunReport, StackOutcome, StackResult
from ..MODELS.stack import Stack
from ..UTILS.confirmation import TEARDOWN_TOKEN, Confirmer
from .lifecycle import StackLifecycle
from .template_source import TemplateSource

logger = structlog.get_logger(__name__)


class StackOrchestrator:
    """
    Walks an environment's stacks forward to apply them and backward to tear them down.

    The declared order is trusted as the dependency order. Each stack is driven to
    a terminal status before the next one starts, and the first failure halts the walk.
    """
    def __init__(self,
                 environment: EnvironmentConfig,
                 lifecycle: StackLifecycle,
                 source: TemplateSource,
                 confirmer: Confirmer):
        """
        Initializes the orchestrator.

        :param environment: The environment and its ordered chain.
        :param lifecycle: Per-stack lifecycle driver.
        :param source: Template and parameter resolution.
        :param confirmer: Gate for teardown.
        """
        self.environment = environment
        self.lifecycle = lifecycle
        self.source = source
        self.confirmer = confirmer

    @property
    def tags(self) -> Dict[str, str]:
        tags = {"Environment": self.environment.name, "ManagedBy": "stackforge"}
        tags.update(self.environment.tags)
        return tags

    def up(self) -> RunReport:
        """
        Applies every stack in the declared order, feeding each stack's outputs to the ones after it.

        :return: Results per stack; report.error holds whatever halted the chain.
        """
        env = self.environment
        report = RunReport(environment=env.name, direction=Direction.APPLY)
        outputs: Dict[str, Dict[str, str]] = {}
        logger.info("Applying stacks", environment=env.name, order=env.order)

        for entry in env.stacks:
            result = self._apply_entry(entry, outputs, report)
            if result is None:
                break
            outputs[entry.name] = result.outputs
        return report

    def apply_stack(self,
                    name: str,
                    template: Optional[str] = None,
                    require_existing: bool = False,
                    dry_run: bool = False) -> RunReport:
        """
        Applies a single stack, reading the outputs it may reference from the live stacks before it.

        :param name: Short stack name.
        :param template: Template file overriding the one declared for the stack.
        :param require_existing: Only update; an absent stack is a failure.
        :param dry_run: Render the change set without executing it.
        """
        env = self.environment
        report = RunReport(environment=env.name, direction=Direction.APPLY)
        try:
            entry = env.entry(name)
            upstream = env.stacks[:env.position(name)]
        except KeyError:
            entry = StackEntry(name=name, template=template or f"{name}.yaml")
            upstream = list(env.stacks)
        if template:
            entry = entry.model_copy(update={"template": template})

        outputs = {}
        try:
            for earlier in upstream:
                stack = self.lifecycle.client.describe_stack(env.qualified_name(earlier.name))
                outputs[earlier.name] = stack.outputs
        except StackforgeError as e:
            self._halt(report, env.qualified_name(entry.name), e)
            return report

        self._apply_entry(entry, outputs, report, require_existing=require_existing, dry_run=dry_run)
        return report

    def _apply_entry(self,
                     entry: StackEntry,
                     outputs: Dict[str, Dict[str, str]],
                     report: RunReport,
                     require_existing: bool = False,
                     dry_run: bool = False) -> Optional[StackResult]:
        """
        Applies one chain entry and records it. Returns None if the chain must stop.
        """
        qualified = self.environment.qualified_name(entry.name)
        try:
            resolved = self.source.resolve(self.environment, entry, outputs)
            if require_existing or dry_run:
                outcome, stack = self.lifecycle.update(
                    qualified, resolved.template_body, resolved.parameters, self.tags, dry_run=dry_run
                )
            else:
                outcome, stack = self.lifecycle.apply(
                    qualified, resolved.template_body, resolved.parameters, self.tags
                )
        except StackforgeError as e:
            self._halt(report, qualified, e)
            return None

        if outcome in (StackOutcome.CREATED, StackOutcome.UPDATED, StackOutcome.NO_UPDATES):
            # The live stack now runs the resolved template.
            stack = stack.model_copy(update={"template_ref": resolved.template_ref})
        result = StackResult(
            name=entry.name,
            outcome=outcome,
            status=stack.status,
            outputs=stack.outputs,
            template_ref=stack.template_ref,
        )
        report.results.append(result)
        logger.info("Stack applied", stack=qualified, outcome=outcome.value, status=stack.status.value)

        if outcome is StackOutcome.CANCELLED:
            report.error = Cancelled(
                f"update of {qualified} cancelled at confirmation", stack_name=qualified, status=stack.status.value
            )
            return None
        return result

    def down(self) -> RunReport:
        """
        Sweeps and deletes every stack in exact reverse of the declared order.

        Nothing is touched unless the operator supplies the teardown token.
        """
        env = self.environment
        report = RunReport(environment=env.name, direction=Direction.TEARDOWN)
        prompt = f"This will delete all {len(env.stacks)} stacks of environment '{env.name}' ({env.region})."
        if not self.confirmer.confirm_token(prompt, TEARDOWN_TOKEN):
            report.error = Cancelled(f"teardown of {env.name} cancelled")
            return report

        order = list(reversed(env.stacks))
        logger.info("Tearing down stacks", environment=env.name, order=[e.name for e in order])
        for entry in order:
            qualified = env.qualified_name(entry.name)
            try:
                outcome, stack = self.lifecycle.delete(qualified, entry.sweep)
            except StackforgeError as e:
                self._halt(report, qualified, e)
                break
            report.results.append(StackResult(name=entry.name, outcome=outcome, status=stack.status))
            logger.info("Stack removed", stack=qualified, outcome=outcome.value)
        return report

    def ps(self) -> Dict[str, Stack]:
        """
        Returns the live status of every stack in the chain.
        """
        env = self.environment
        return {
            entry.name: self.lifecycle.client.describe_stack(env.qualified_name(entry.name))
            for entry in env.stacks
        }

    def _halt(self, report: RunReport, qualified: str, error: StackforgeError):
        if error.stack_name is None:
            error.stack_name = qualified
        if error.status is None:
            status = self.lifecycle.state.status(qualified)
            error.status = status.value if status else None
        report.error = error
        logger.error("Chain halted", stack=qualified, status=error.status, error=str(error))

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
Change previews: every update is computed as a change set, shown to the
operator and executed only after an explicit yes.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import click
import structlog
from jinja2 import Template

from ..CLIENTS.control_plane import ControlPlaneClient
from ..exceptions import ChangeSetEmpty
from ..MODELS.change_set import ChangeSet
from ..MODELS.report import StackOutcome
from ..MODELS.stack import OperationHandle, Stack
from ..UTILS.confirmation import Confirmer

logger = structlog.get_logger(__name__)

PREVIEW_TEMPLATE = """
=== Proposed Changes: {{ stack }} ===
Change set: {{ name }}

{{ "%-8s" | format("ACTION") }} {{ "%-36s" | format("RESOURCE") }} TYPE
{% for change in changes %}
{{ "%-8s" | format(change.action.value) }} {{ "%-36s" | format(change.resource_id) }} {{ change.resource_type }}{% if change.replacement == "True" %}  [replace]{% elif change.replacement == "Conditional" %}  [may replace]{% endif %}

{% endfor %}

{{ changes | length }} change(s)
"""


@dataclass
class ReviewResult:
    """What came out of reviewing one change set."""

    outcome: StackOutcome
    change_set: ChangeSet
    handle: Optional[OperationHandle] = None


class ChangePreviewEngine:
    """
    Creates, renders and gates change sets.

    A change set is deleted on every path that does not execute it; executed
    change sets are cleaned up by CloudFormation itself.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        confirmer: Confirmer,
        change_set_timeout: float = 300.0,
        echo: Callable[[str], None] = click.echo,
    ):
        """
        Initializes the engine.

        :param client: Control plane adapter.
        :param confirmer: Gate consulted before executing a change set.
        :param change_set_timeout: Seconds to wait for a change set to become ready.
        :param echo: Where rendered previews are written.
        """
        self.client = client
        self.confirmer = confirmer
        self.change_set_timeout = change_set_timeout
        self.echo = echo
        self.template = Template(PREVIEW_TEMPLATE, trim_blocks=True, lstrip_blocks=True)

    @staticmethod
    def change_set_name(stack_name: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        return f"{stack_name}-{now:%Y%m%d%H%M%S}"

    def render(self, change_set: ChangeSet) -> str:
        return self.template.render(
            stack=change_set.stack_name,
            name=change_set.name,
            changes=change_set.changes,
        ).strip("\n")

    def review(
        self,
        stack: Stack,
        template_body: str,
        parameters: Dict[str, str],
        tags: Optional[Dict[str, str]] = None,
        dry_run: bool = False,
    ) -> ReviewResult:
        """
        Computes the change set for a live stack, shows it and executes it if confirmed.

        :param stack: The live stack being updated.
        :param template_body: Proposed template.
        :param parameters: Proposed parameters.
        :param tags: Extra stack tags.
        :param dry_run: Render only; never ask and never execute.
        :return: no_updates, cancelled, previewed or updated (with the execution handle).
        """
        change_set = self.client.create_change_set(
            stack.name, template_body, parameters, self.change_set_name(stack.name), tags
        )
        executed = False
        try:
            try:
                change_set = self.client.wait_for_change_set(change_set, self.change_set_timeout)
            except ChangeSetEmpty as e:
                logger.info("No changes to apply", stack=stack.name, change_set=change_set.name, reason=str(e))
                return ReviewResult(StackOutcome.NO_UPDATES, change_set)

            if change_set.is_empty:
                logger.info("Change set has no resource changes", stack=stack.name, change_set=change_set.name)
                return ReviewResult(StackOutcome.NO_UPDATES, change_set)

            self.echo(self.render(change_set))

            if dry_run:
                return ReviewResult(StackOutcome.PREVIEWED, change_set)

            if not self.confirmer.confirm(f"Execute change set {change_set.name} on {stack.name}?"):
                logger.info("Change set declined", stack=stack.name, change_set=change_set.name)
                return ReviewResult(StackOutcome.CANCELLED, change_set)

            handle = self.client.execute_change_set(change_set, stack_id=stack.stack_id)
            executed = True
            return ReviewResult(StackOutcome.UPDATED, change_set, handle)
        finally:
            if not executed:
                self.client.delete_change_set(change_set)

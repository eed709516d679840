"""
Resolution of a stack's template and parameters for an environment.
"""
import hashlib
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..exceptions import ConfigurationError
from ..MODELS.environment_config import EnvironmentConfig, StackEntry
from ..PARSERS.parameter_parser import ParameterParser
from ..UTILS.string_interpolation import ReferenceInterpolator


@dataclass
class ResolvedStack:
    """Template and parameters ready to hand to the control plane."""

    template_path: str
    template_body: str
    template_ref: str
    parameters: Dict[str, str] = field(default_factory=dict)


class TemplateSource:
    """
    Resolves templates and parameters from the file system.
    Resolution depends only on the (stack, environment) pair and the outputs passed in.
    """
    def __init__(self, templates_dir: str, parameters_dir: str, context: Optional[Dict[str, str]] = None):
        """
        Initializes the source.

        :param templates_dir: Directory holding the templates.
        :param parameters_dir: Directory holding <env>.json and <env>/<stack>.json parameter files.
        :param context: Environment variables for ${VAR} references in parameter values.
        """
        self.templates_dir = templates_dir
        self.parameters_dir = parameters_dir
        self.parser = ParameterParser()
        self.context = context if context is not None else dict(os.environ)

    def load_template(self, template: str) -> ResolvedStack:
        path = os.path.join(self.templates_dir, template)
        if not os.path.isfile(path):
            raise ConfigurationError(f"Template file not found: {path}")
        with open(path, 'r') as f:
            body = f.read()
        return ResolvedStack(
            template_path=path,
            template_body=body,
            template_ref=hashlib.sha256(body.encode('utf-8')).hexdigest(),
        )

    def load_parameters(self, environment: str, stack: str) -> Dict[str, str]:
        """
        Loads file parameters: per-stack file, then per-environment file, else EnvironmentName only.

        :param environment: Environment name.
        :param stack: Short stack name.
        :return: Parameters in file order.
        """
        candidates = [
            os.path.join(self.parameters_dir, environment, f"{stack}.json"),
            os.path.join(self.parameters_dir, f"{environment}.json"),
        ]
        for path in candidates:
            if os.path.isfile(path):
                return self.parser.parse(path)
        return {"EnvironmentName": environment}

    def resolve(self,
                environment: EnvironmentConfig,
                entry: StackEntry,
                outputs: Dict[str, Dict[str, str]]) -> ResolvedStack:
        """
        Resolves everything needed to apply one stack.

        :param environment: The environment being applied.
        :param entry: The chain entry.
        :param outputs: Outputs of earlier stacks, keyed by short stack name.
        :return: Template body, content hash and final parameters.
        :raises ConfigurationError: If the template is missing or a reference cannot be resolved.
        """
        resolved = self.load_template(entry.template)
        params = self.load_parameters(environment.name, entry.name)
        for key, value in entry.parameters.items():
            try:
                params[key] = ReferenceInterpolator.interpolate(value, self.context, outputs)
            except KeyError as e:
                raise ConfigurationError(
                    f"cannot resolve parameter {key} of {entry.name}: {e.args[0]}",
                    stack_name=environment.qualified_name(entry.name),
                )
        resolved.parameters = params
        return resolved

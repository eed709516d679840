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
Parsers for stacks.yml environment files.
"""
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..exceptions import ConfigurationError
from ..MODELS.environment_config import DeploymentConfig, EnvironmentConfig, StackEntry, default_environment
from ..UTILS.string_interpolation import ReferenceInterpolator


class EnvironmentParser:
    """
    Parser for stacks.yml files.

    Example::

        environments:
          dev:
            region: us-east-1
            tags: {Owner: platform}
            stacks:
              - name: network
                template: network.yaml
              - name: cluster
                template: cluster.yaml
                sweep: [image-repository]
                parameters:
                  VpcId: ${network.VpcId}
    """
    def __init__(self, context: Optional[Dict[str, str]] = None, default_region: str = "us-east-1"):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        :param default_region: Region for environments that do not declare one.
        """
        self.context = context if context is not None else dict(os.environ)
        self.default_region = default_region

    def parse(self, config_path: str) -> DeploymentConfig:
        """
        Parses an environments file from a path.

        :param config_path: Path to the file.
        :return: Parsed configuration.
        """
        with open(config_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> DeploymentConfig:
        """
        Parses an environments file from a string.

        :param content: YAML content.
        :return: Parsed configuration.
        """
        # Interpolate variables before parsing YAML; output references survive for later.
        # Unresolved variables stay as written; stack parameters are interpolated again, strictly, at apply time.
        content = ReferenceInterpolator.interpolate(content, self.context, strict=False)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid environments file: {e}")
        if not data:
            data = {}

        environments = {}
        for name, spec in (data.get('environments') or {}).items():
            environments[name] = self._parse_environment(str(name), spec or {})
        return DeploymentConfig(environments=environments)

    def _parse_environment(self, name: str, spec: Dict[str, Any]) -> EnvironmentConfig:
        """
        Parses a single environment definition.

        :param name: The environment name.
        :param spec: The environment specification dictionary.
        :return: An EnvironmentConfig instance.
        """
        stacks = [self._parse_stack(s) for s in spec.get('stacks') or []]
        seen = set()
        for entry in stacks:
            if entry.name in seen:
                raise ConfigurationError(f"stack {entry.name} declared twice in environment {name}")
            seen.add(entry.name)

        # References may only point backwards along the chain.
        for index, entry in enumerate(stacks):
            earlier = {s.name for s in stacks[:index]}
            for value in entry.parameters.values():
                for ref, stack in ReferenceInterpolator.references(value).items():
                    if stack not in earlier:
                        raise ConfigurationError(
                            f"{entry.name} references {ref} but {stack} is not applied before it in {name}"
                        )

        return EnvironmentConfig(
            name=name,
            region=spec.get('region') or self.default_region,
            stacks=stacks,
            tags={str(k): str(v) for k, v in (spec.get('tags') or {}).items()},
        )

    def _parse_stack(self, spec: Any) -> StackEntry:
        """
        Parses a chain entry. A bare string is shorthand for a stack whose template is <name>.yaml.
        """
        if isinstance(spec, str):
            return StackEntry(name=spec, template=f"{spec}.yaml")
        if not isinstance(spec, dict) or 'name' not in spec:
            raise ConfigurationError(f"stack entry must be a name or a mapping with a name: {spec!r}")
        try:
            return StackEntry(
                name=spec['name'],
                template=spec.get('template') or f"{spec['name']}.yaml",
                sweep=self._to_list(spec.get('sweep')),
                parameters=spec.get('parameters') or {},
            )
        except ValidationError as e:
            raise ConfigurationError(f"invalid stack entry {spec['name']}: {e}")

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return list(val)

    def resolve(self, config: DeploymentConfig, name: str, region: Optional[str] = None) -> EnvironmentConfig:
        """
        Selects an environment, falling back to the default chain when it is not declared.

        :param config: Parsed configuration (possibly empty).
        :param name: Environment name.
        :param region: Region override.
        """
        if name in config.environments:
            env = config.environments[name]
            if region:
                env = env.model_copy(update={'region': region})
            return env
        return default_environment(name, region or self.default_region)

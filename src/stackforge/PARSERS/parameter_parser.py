"""
Parsers for stack parameter files.
"""
import json
from typing import Any, Dict

from ..exceptions import ConfigurationError

class ParameterParser:
    """
    Parser for CloudFormation parameter files.

    Accepts the CLI list form::

        [{"ParameterKey": "EnvironmentName", "ParameterValue": "dev"}]

    as well as a flat JSON object. Key order is preserved.
    """
    @staticmethod
    def parse(path: str) -> Dict[str, str]:
        """
        Parses a parameter file from a path.

        Args:
            path (str): Path to the JSON file.

        Returns:
            Dict[str, str]: Parameters in file order.
        """
        with open(path, 'r') as f:
            content = f.read()
        try:
            return ParameterParser.parse_from_string(content)
        except ConfigurationError as e:
            raise ConfigurationError(f"{path}: {e}")

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses parameters from a JSON string.
        """
        try:
            data: Any = json.loads(content) if content.strip() else {}
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"invalid parameter JSON: {e}")

        params = {}
        if isinstance(data, dict):
            for key, value in data.items():
                params[str(key)] = ParameterParser._to_value(value)
        elif isinstance(data, list):
            for item in data:
                if not isinstance(item, dict) or 'ParameterKey' not in item:
                    raise ConfigurationError(f"parameter entry without ParameterKey: {item!r}")
                params[str(item['ParameterKey'])] = ParameterParser._to_value(item.get('ParameterValue', ''))
        else:
            raise ConfigurationError("parameters must be a JSON object or a list of ParameterKey entries")
        return params

    @staticmethod
    def _to_value(value: Any) -> str:
        # CloudFormation takes list parameters as comma-delimited strings.
        if isinstance(value, list):
            return ','.join(str(v) for v in value)
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

"""
Utilities for interpolating environment variables and stack output references in strings.
"""
import re
from typing import Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class ReferenceInterpolator:
    """
    Utility for interpolating references in strings.
    Supports ${VAR}, ${VAR:-default}, ${VAR:+value} and ${stack.OutputKey}.
    """
    PATTERN = re.compile(r'\$\{([^}:]+)(?::(-|\+)([^}]*))?\}')

    @classmethod
    def interpolate(cls,
                    template: str,
                    context: Dict[str, str],
                    outputs: Optional[Dict[str, Dict[str, str]]] = None,
                    strict: bool = True) -> str:
        """
        Interpolates references in the template string.

        :param template: The string containing ${...} placeholders.
        :param context: The environment variables context.
        :param outputs: Outputs of already applied stacks, keyed by stack name.
            When None, ${stack.OutputKey} references are left untouched.
        :param strict: When False, unresolved references are left in place and
            logged instead of raising.
        :return: The interpolated string.
        :raises KeyError: If a reference cannot be resolved, no default is provided
            and strict is set.
        """
        def replace(match):
            """
            Internal replacement function for re.sub.
            """
            try:
                return cls._resolve(match, context, outputs)
            except KeyError as e:
                if strict:
                    raise
                logger.warning("Unresolved reference left in place", reference=match.group(0), error=str(e))
                return match.group(0)

        return cls.PATTERN.sub(replace, template)

    @staticmethod
    def _resolve(match, context: Dict[str, str], outputs: Optional[Dict[str, Dict[str, str]]]) -> str:
        name = match.group(1)
        modifier = match.group(2)  # None, '-', or '+'
        alt_value = match.group(3)

        if '.' in name and modifier is None:
            if outputs is None:
                return match.group(0)
            stack, _, key = name.partition('.')
            if key not in outputs.get(stack, {}):
                raise KeyError(f"Output {key} of stack {stack} not available")
            return outputs[stack][key]

        value = context.get(name)

        if modifier == '-':
            # ${VAR:-default} -> use default if VAR is unset or empty
            return value if value else alt_value
        elif modifier == '+':
            # ${VAR:+value} -> use alt_value if VAR is set and not empty, else empty
            return alt_value if value else ''
        if value is not None:
            return value
        raise KeyError(f"Variable {name} not found in context")

    @classmethod
    def references(cls, template: str) -> Dict[str, str]:
        """
        Lists the ${stack.OutputKey} references in a string.

        :return: Mapping of reference text to the stack it points at.
        """
        found = {}
        for match in cls.PATTERN.finditer(template):
            name = match.group(1)
            if '.' in name and match.group(2) is None:
                found[match.group(0)] = name.partition('.')[0]
        return found

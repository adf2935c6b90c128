"""
Compose-style variable interpolation for registry files.
"""
import re
from typing import Dict, Mapping

from ..errors import ConfigurationError

# $$ | ${VAR} | ${VAR:-default} | ${VAR-default} | ${VAR:+alt} | ${VAR:?message}
_PATTERN = re.compile(
    r"\$(?:(?P<escaped>\$)|\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"(?:(?P<colon>:)?(?P<op>[-+?])(?P<arg>[^}]*))?\})"
)


class EnvironmentInterpolator:
    """
    Replaces ``${VAR}`` placeholders with values from a context mapping.

    ``:-`` / ``-`` fall back to a default when the variable is empty / unset,
    ``:+`` substitutes an alternative when it is set, ``:?`` fails with the
    given message when it is empty or unset. ``$$`` yields a literal ``$``.
    A bare ``${VAR}`` that is not defined raises, so a missing credential is
    reported at load time rather than when a service first uses it.
    """

    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        def replace(match: "re.Match[str]") -> str:
            if match.group("escaped"):
                return "$"

            name = match.group("name")
            op = match.group("op")
            arg = match.group("arg") or ""
            value = context.get(name)
            # with a colon, empty counts as unset
            is_set = bool(value) if match.group("colon") else value is not None

            if op == "-":
                return value if is_set else arg
            if op == "+":
                return arg if is_set else ""
            if op == "?":
                if not is_set:
                    raise ConfigurationError(f"Variable {name} is required: {arg or 'not set'}")
                return value
            if value is None:
                raise ConfigurationError(f"Variable {name} not found in context")
            return value

        return _PATTERN.sub(replace, template)

    @classmethod
    def interpolate_mapping(cls, values: Mapping[str, str], context: Mapping[str, str]) -> Dict[str, str]:
        """Interpolates every value of a flat mapping."""
        return {key: cls.interpolate(str(val), context) for key, val in values.items()}

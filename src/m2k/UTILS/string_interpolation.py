"""
${VAR} substitution for manifest values, following docker compose rules.
"""
import re
from typing import Dict

_PLACEHOLDER = re.compile(
    r'\$\{(?P<name>[^}:?+-]+)(?:(?P<op>:?[-+?])(?P<word>[^}]*))?\}'
)
_ENV_NAME_INVALID = re.compile(r'[^A-Z0-9_]')


class EnvironmentInterpolator:
    """
    Expands ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+alt} and
    ${VAR:?message}. The colon forms treat an empty value like an unset one.
    """

    @staticmethod
    def interpolate(template: str, context: Dict[str, str], strict: bool = True) -> str:
        """
        :param template: text containing placeholders
        :param context: variable values
        :param strict: raise KeyError for unknown plain ${VAR} instead of
            leaving the placeholder for the shell
        :raises KeyError: for a ${VAR:?message} whose variable is missing
        """
        def substitute(match):
            name, op, word = match.group('name', 'op', 'word')
            value = context.get(name)
            present = bool(value) if op and op.startswith(':') else value is not None

            if op in (':-', '-'):
                return value if present else word
            if op in (':+', '+'):
                return word if present else ''
            if op in (':?', '?'):
                if not present:
                    raise KeyError(word or f"Variable {name} is required")
                return value
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {name} not found in context")
            return match.group(0)

        return _PLACEHOLDER.sub(substitute, template)


def env_var_name(name: str) -> str:
    """'api-gateway' -> 'API_GATEWAY'"""
    return _ENV_NAME_INVALID.sub('_', name.upper())

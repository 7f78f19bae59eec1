"""Environment variable expansion for templates and teardown id lists."""

import os
import re
from collections.abc import Mapping

_VAR_PATTERN = re.compile(
    r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_.]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))"
)


class Environment:
    """Named variables substituted into ``$NAME`` and ``${NAME}`` placeholders.

    Unknown names are left in place, so a string that references nothing
    known expands to itself.
    """

    def __init__(self, variables: Mapping[str, str] | None = None):
        self._vars = dict(os.environ if variables is None else variables)

    def __getitem__(self, name: str) -> str:
        return self._vars[name]

    def __contains__(self, name: object) -> bool:
        return name in self._vars

    def get(self, name: str, default: str | None = None) -> str | None:
        return self._vars.get(name, default)

    def derive(self, **variables: str) -> "Environment":
        """Return a copy with extra variables layered on top."""
        merged = dict(self._vars)
        merged.update({k: str(v) for k, v in variables.items()})
        return Environment(merged)

    def expand(self, text: str | None) -> str | None:
        if text is None:
            return None

        def replace(match: re.Match) -> str:
            name = match.group("braced") or match.group("bare")
            return self._vars.get(name, match.group(0))

        return _VAR_PATTERN.sub(replace, text)

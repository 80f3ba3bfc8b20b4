"""Positional argument substitution for stage scripts."""

import re

from .exceptions import ArgumentError

_ARG_PATTERN = re.compile(r"\$(\d+)")


def substitute_args(script: str, args: list[str]) -> str:
    """Replace every ``$N`` with ``args[N-1]``.

    Substitution is textual and not shell-aware; quoting is left to the
    command builder.

    Raises:
        ArgumentError: ``$0`` or a reference past the end of ``args``.
    """

    def _replace(match: re.Match[str]) -> str:
        index = int(match.group(1))
        if index < 1 or index > len(args):
            raise ArgumentError(index, len(args))
        return args[index - 1]

    return _ARG_PATTERN.sub(_replace, script)

"""Variable directives for stage scripts.

A stage script may define variables with ``#DEFINE NAME=value`` and reference
them as ``#{NAME}`` or ``#NAME``. Static values are substituted before the
script runs. Values containing shell expansion (``$`` or backticks) are
emitted as shell assignments and captured at runtime: the script gets a
trailer printing ``VAROUT:NAME:value`` sentinel lines, which are stripped from
the visible output and folded into the variables handed to the next stage.
"""

import re

from pydantic import BaseModel, Field

from .models import VariableMap

SENTINEL_PREFIX = "VAROUT:"
EXIT_STATUS_VAR = "__sc_rc"

_DEFINE_PATTERN = re.compile(
    r"^\s*#define\s+([A-Za-z_]\w*)\s*=\s*(.*?)\s*$", re.IGNORECASE
)
_SENTINEL_PATTERN = re.compile(r"VAROUT:([A-Za-z_]\w*):(.*)$")
_DYNAMIC_MARKERS = ("$", "`")


class ProcessedScript(BaseModel):
    """A script with directives applied."""

    script: str
    variables: VariableMap = Field(default_factory=dict)
    captures: list[str] = Field(default_factory=list)


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _is_dynamic(value: str) -> bool:
    return any(marker in value for marker in _DYNAMIC_MARKERS)


def expand_variables(text: str, variables: VariableMap) -> str:
    """Substitute ``#{NAME}`` and bare ``#NAME`` references in one pass."""
    if not variables:
        return text

    # Longest names first so #FOOBAR is never read as #FOO + "BAR"
    names = sorted(variables, key=len, reverse=True)
    alternation = "|".join(re.escape(name) for name in names)
    pattern = re.compile(rf"#\{{({alternation})\}}|#({alternation})(?!\w)")

    def _replace(match: re.Match[str]) -> str:
        return variables[match.group(1) or match.group(2)]

    return pattern.sub(_replace, text)


def process_directives(
    script: str, variables: VariableMap | None = None
) -> ProcessedScript:
    """Apply ``#DEFINE`` directives and variable references to a script.

    The incoming map is not modified; the returned one carries the
    definitions of this script on top of it.
    """
    current: VariableMap = dict(variables or {})
    captures: list[str] = []
    output: list[str] = []

    for line in script.splitlines():
        match = _DEFINE_PATTERN.match(line)
        if match is None:
            output.append(expand_variables(line, current))
            continue

        name, raw_value = match.groups()
        value = expand_variables(_strip_quotes(raw_value), current)

        if _is_dynamic(value):
            output.append(f"{name}={value}")
            current[name] = f"${name}"
            if name not in captures:
                captures.append(name)
        else:
            current[name] = value
            if name in captures:
                captures.remove(name)

    if captures:
        # The stage keeps the exit status of the user's last command
        output.append(f"{EXIT_STATUS_VAR}=$?")
        for name in captures:
            output.append(f'echo "{SENTINEL_PREFIX}{name}:${name}"')
        output.append(f"exit ${EXIT_STATUS_VAR}")

    processed = "\n".join(output)
    if script.endswith("\n"):
        processed += "\n"

    return ProcessedScript(script=processed, variables=current, captures=captures)


def _visible_part(line: str, captures: list[str], found: VariableMap) -> str | None:
    """Return what remains of a stdout line once its sentinel is removed.

    None means the whole line was a sentinel.
    """
    match = _SENTINEL_PATTERN.search(line)
    if match is None:
        return line

    name = match.group(1)
    if match.start() > 0 and name not in captures:
        return line

    found[name] = match.group(2).rstrip("\r")
    if match.start() == 0:
        return None
    # Sentinel printed after an unterminated last line of user output
    return line[: match.start()]


def extract_captured(
    stdout: str, captures: list[str], variables: VariableMap
) -> tuple[str, VariableMap]:
    """Strip sentinel lines from stdout and fold their values into the map.

    All other lines are kept verbatim and in order; the result ends with a
    newline only if the raw output did. Captured names with no sentinel (the
    script exited before its trailer) are dropped from the map.
    """
    found: VariableMap = {}
    ends_with_newline = stdout.endswith("\n")
    body = stdout[:-1] if ends_with_newline else stdout

    kept: list[str] = []
    for line in body.split("\n"):
        visible = _visible_part(line, captures, found)
        if visible is not None:
            kept.append(visible)

    updated = dict(variables)
    updated.update(found)
    for name in captures:
        if name not in found:
            updated.pop(name, None)

    if not found:
        return stdout, updated

    cleaned = "\n".join(kept)
    if kept and ends_with_newline:
        cleaned += "\n"
    return cleaned, updated


class SentinelFilter:
    """Line-buffers a live stdout stream and drops sentinel lines from it."""

    def __init__(self, captures: list[str]):
        self.captures = captures
        self.found: VariableMap = {}
        self._pending = ""

    def feed(self, chunk: str) -> str:
        """Return the visible text that can be emitted for this chunk."""
        self._pending += chunk
        if "\n" not in self._pending:
            return ""

        complete, self._pending = self._pending.rsplit("\n", 1)
        visible: list[str] = []
        for line in complete.split("\n"):
            part = _visible_part(line, self.captures, self.found)
            if part is not None:
                visible.append(part + "\n")
        return "".join(visible)

    def flush(self) -> str:
        """Return whatever is still buffered once the stream has ended."""
        pending, self._pending = self._pending, ""
        if not pending:
            return ""
        part = _visible_part(pending, self.captures, self.found)
        return part or ""

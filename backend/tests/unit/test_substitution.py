"""
Unit Tests: Positional argument substitution

Test cases:
- $N replaced by the Nth argument
- Repeated and adjacent references
- $0 and out-of-range references rejected
"""

import pytest

from stagecoach.engine import ArgumentError, substitute_args


def test_replaces_each_reference() -> None:
    assert substitute_args("echo $1 $2", ["a", "b"]) == "echo a b"


def test_repeated_reference_uses_same_argument() -> None:
    assert substitute_args("cp $1 $1.bak", ["app.conf"]) == "cp app.conf app.conf.bak"


def test_multi_digit_index() -> None:
    args = [str(i) for i in range(1, 12)]
    assert substitute_args("echo $11", args) == "echo 11"


def test_script_without_references_is_unchanged() -> None:
    script = "echo $HOME && ls -la"
    assert substitute_args(script, []) == script


def test_argument_values_are_inserted_verbatim() -> None:
    assert substitute_args("echo '$1'", ["a b; c"]) == "echo 'a b; c'"


def test_missing_argument_raises() -> None:
    with pytest.raises(ArgumentError) as exc_info:
        substitute_args("git checkout $1 && echo $2", ["main"])

    assert str(exc_info.value) == "Argument $2 is not defined"
    assert exc_info.value.index == 2
    assert exc_info.value.available == 1


def test_dollar_zero_is_rejected() -> None:
    with pytest.raises(ArgumentError):
        substitute_args("echo $0", ["a"])

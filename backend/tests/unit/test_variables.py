"""
Unit Tests: #DEFINE variable directives

Test cases:
- Static definitions substituted, directive lines removed
- Dynamic definitions emitted as shell assignments with sentinel trailer
- Sentinel extraction from buffered stdout
- Captured names with no sentinel are dropped
- Line-buffered sentinel filtering of live output
"""

from stagecoach.engine import (
    SentinelFilter,
    expand_variables,
    extract_captured,
    process_directives,
)


class TestExpandVariables:
    def test_braced_and_bare_references(self) -> None:
        text = expand_variables("#{NAME}-x #NAME", {"NAME": "app"})
        assert text == "app-x app"

    def test_longest_name_wins(self) -> None:
        variables = {"FOO": "short", "FOOBAR": "long"}
        assert expand_variables("#FOOBAR #FOO", variables) == "long short"

    def test_unknown_reference_left_alone(self) -> None:
        assert expand_variables("#OTHER #{OTHER}", {"NAME": "x"}) == "#OTHER #{OTHER}"

    def test_reference_followed_by_word_character_is_not_expanded(self) -> None:
        assert expand_variables("#NAMES", {"NAME": "x"}) == "#NAMES"


class TestProcessDirectives:
    def test_static_definition(self) -> None:
        processed = process_directives("#DEFINE X=hello\necho #X")

        assert processed.script == "echo hello"
        assert processed.variables == {"X": "hello"}
        assert processed.captures == []

    def test_directive_is_case_insensitive_and_strips_quotes(self) -> None:
        processed = process_directives('#define GREETING="hi there"\necho #{GREETING}')

        assert processed.script == "echo hi there"

    def test_dynamic_definition_is_captured(self) -> None:
        processed = process_directives("#DEFINE Y=$(date +%s)\necho #Y\n")

        lines = processed.script.splitlines()
        assert lines[0] == "Y=$(date +%s)"
        assert lines[1] == "echo $Y"
        assert lines[2:] == [
            "__sc_rc=$?",
            'echo "VAROUT:Y:$Y"',
            "exit $__sc_rc",
        ]
        assert processed.script.endswith("\n")
        assert processed.captures == ["Y"]
        assert processed.variables["Y"] == "$Y"

    def test_backtick_value_is_dynamic(self) -> None:
        processed = process_directives("#DEFINE REV=`git rev-parse HEAD`")
        assert processed.captures == ["REV"]

    def test_incoming_variables_are_available_and_not_mutated(self) -> None:
        incoming = {"TAG": "v1"}
        processed = process_directives("#DEFINE NAME=app-#TAG\necho #NAME", incoming)

        assert processed.script == "echo app-v1"
        assert processed.variables == {"TAG": "v1", "NAME": "app-v1"}
        assert incoming == {"TAG": "v1"}

    def test_static_redefinition_drops_capture(self) -> None:
        processed = process_directives("#DEFINE A=$(pwd)\n#DEFINE A=fixed\necho #A")

        assert processed.captures == []
        assert "VAROUT" not in processed.script
        assert processed.script.endswith("echo fixed")

    def test_script_without_directives_is_unchanged(self) -> None:
        script = "set -e\necho '# not a directive'\n"
        assert process_directives(script).script == script


class TestExtractCaptured:
    def test_sentinel_lines_removed_and_values_folded(self) -> None:
        stdout, variables = extract_captured(
            "building\ndone\nVAROUT:Y:1700000000\n", ["Y"], {"Y": "$Y", "X": "1"}
        )

        assert stdout == "building\ndone\n"
        assert variables == {"Y": "1700000000", "X": "1"}

    def test_output_without_sentinel_is_verbatim(self) -> None:
        raw = "line one\r\nline two"
        stdout, variables = extract_captured(raw, [], {"X": "1"})

        assert stdout == raw
        assert variables == {"X": "1"}

    def test_sentinel_after_unterminated_line(self) -> None:
        stdout, variables = extract_captured(
            "no newline hereVAROUT:Y:42\n", ["Y"], {}
        )

        assert stdout == "no newline here\n"
        assert variables == {"Y": "42"}

    def test_value_may_contain_colons(self) -> None:
        _, variables = extract_captured("VAROUT:URL:http://host:8080\n", ["URL"], {})
        assert variables == {"URL": "http://host:8080"}

    def test_sentinel_only_output_becomes_empty(self) -> None:
        stdout, _ = extract_captured("VAROUT:Y:1\n", ["Y"], {})
        assert stdout == ""

    def test_missing_sentinel_drops_shell_placeholder(self) -> None:
        stdout, variables = extract_captured(
            "exited early\n", ["Y"], {"Y": "$Y", "X": "1"}
        )

        assert stdout == "exited early\n"
        assert variables == {"X": "1"}


class TestSentinelFilter:
    def test_partial_lines_are_held_until_complete(self) -> None:
        sentinel = SentinelFilter(["Y"])

        assert sentinel.feed("hel") == ""
        assert sentinel.feed("lo\nVAROUT:Y:") == "hello\n"
        assert sentinel.feed("5\nbye") == ""
        assert sentinel.flush() == "bye"
        assert sentinel.found == {"Y": "5"}

    def test_flush_of_empty_buffer(self) -> None:
        sentinel = SentinelFilter(["Y"])
        assert sentinel.feed("a\n") == "a\n"
        assert sentinel.flush() == ""

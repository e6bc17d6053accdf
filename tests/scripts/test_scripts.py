from __future__ import annotations

import sys

import pytest

from promptgrade import scripts
from promptgrade.scripts import ScriptError, parse_python_output, run_javascript, run_python


def test_run_javascript_passes_output_and_context():
    assert run_javascript("output + ':' + context.vars.x", "out", {"vars": {"x": 1}}) == "out:1"


def test_run_javascript_undefined_becomes_none():
    assert run_javascript("undefined", "x", {}) is None


def test_run_javascript_errors_are_wrapped():
    with pytest.raises(ScriptError, match="JavaScript error"):
        run_javascript("nope.nothing", "x", {})


def test_run_javascript_closes_its_context_even_on_error(monkeypatch):
    exits = []

    class TrackedRacer(scripts.MiniRacer):
        def __exit__(self, *exc_info):
            exits.append(exc_info[0])
            return super().__exit__(*exc_info)

    monkeypatch.setattr(scripts, "MiniRacer", TrackedRacer)
    assert run_javascript("output.length", "abc", {}) == 3
    with pytest.raises(ScriptError):
        run_javascript("nope.nothing", "x", {})
    assert exits == [None, ScriptError]


@pytest.mark.parametrize(
    "stdout, expected",
    [
        ("True\n", True),
        ("false", False),
        ("0.25\n", 0.25),
        ('{"pass": true, "score": 1}', {"pass": True, "score": 1}),
    ],
)
def test_parse_python_output(stdout, expected):
    assert parse_python_output(stdout) == expected


def test_parse_python_output_rejects_garbage():
    with pytest.raises(ScriptError):
        parse_python_output("not a result")


def test_interpreter_is_configurable(monkeypatch):
    monkeypatch.setenv("PROMPTGRADE_PYTHON", "/opt/python")
    assert scripts.python_interpreter() == "/opt/python"


def test_inline_code_is_passed_as_argv_not_through_a_shell(monkeypatch):
    monkeypatch.setenv("PROMPTGRADE_PYTHON", "py")
    command = scripts._python_command("output == 'x'", "it's; rm -rf /", '{"vars": {}}')
    assert command[0] == "py" and command[1] == "-c"
    assert command[3:] == ["it's; rm -rf /", '{"vars": {}}']
    assert "return output == 'x'" in command[2]


@pytest.mark.asyncio
async def test_run_python_reports_nonzero_exit(monkeypatch):
    monkeypatch.setenv("PROMPTGRADE_PYTHON", sys.executable)
    with pytest.raises(ScriptError, match="exited with code"):
        await run_python("raise SystemExit(3)\nreturn True", "x", {})


@pytest.mark.asyncio
async def test_run_python_with_special_characters(monkeypatch):
    monkeypatch.setenv("PROMPTGRADE_PYTHON", sys.executable)
    output = 'quotes "double" and \'single\' and $HOME'
    assert await run_python("output", output, {}) == output

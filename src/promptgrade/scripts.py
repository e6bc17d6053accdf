# src/promptgrade/scripts.py
from __future__ import annotations

import asyncio
import json
import os
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, List

from loguru import logger
from py_mini_racer import JSEvalException, MiniRacer

FILE_PREFIX = "file://"


class ScriptError(RuntimeError):
    """User-supplied JavaScript or Python code failed to run."""

    pass


def strip_file_prefix(value: str) -> str:
    return value[len(FILE_PREFIX) :] if value.startswith(FILE_PREFIX) else value


# --- JavaScript ---


def _js_function_source(code: str) -> str:
    if code.startswith(FILE_PREFIX):
        path = Path(strip_file_prefix(code))
        module_source = path.read_text(encoding="utf-8")
        return (
            "(function () {\n"
            "  var module = { exports: {} };\n"
            "  var exports = module.exports;\n"
            f"{module_source}\n"
            "  var fn = module.exports;\n"
            "  if (typeof fn !== 'function' && fn && typeof fn.default === 'function') {\n"
            "    fn = fn.default;\n"
            "  }\n"
            "  return fn;\n"
            "})()"
        )
    # A multi-line snippet is a function body; a one-liner is an expression.
    body = code if "\n" in code else f"return {code}"
    return f"(function (output, context) {{\n{body}\n}})"


def run_javascript(code: str, output: Any, context: Dict[str, Any]) -> Any:
    """Evaluate a JavaScript expression, function body or `file://` module.

    `output` and `context` are passed in as JSON and the return value comes
    back through `JSON.stringify`, so only JSON-compatible values cross the
    boundary. `undefined` comes back as None.
    """
    program = (
        "(function () {\n"
        f"  var fn = {_js_function_source(code)};\n"
        f"  var result = fn({json.dumps(output)}, {json.dumps(context)});\n"
        "  return JSON.stringify({ value: result });\n"
        "})()"
    )
    with MiniRacer() as ctx:
        try:
            raw = ctx.eval(program)
        except JSEvalException as e:
            raise ScriptError(f"JavaScript error: {e}") from e
    return json.loads(str(raw)).get("value")


# --- Python ---

_PYTHON_WRAPPER = """\
import json
import sys


def main(output, context):
{body}


if __name__ == "__main__":
    print(json.dumps(main(sys.argv[1], json.loads(sys.argv[2]))))
"""


def python_interpreter() -> str:
    return os.getenv("PROMPTGRADE_PYTHON") or sys.executable or "python"


def _python_command(code: str, output: str, context_json: str) -> List[str]:
    interpreter = python_interpreter()
    if code.startswith(FILE_PREFIX):
        return [interpreter, strip_file_prefix(code), output, context_json]
    snippet = textwrap.dedent(code).strip("\n")
    if "\n" not in snippet:
        snippet = f"return {snippet}"
    script = _PYTHON_WRAPPER.format(body=textwrap.indent(snippet, "    "))
    return [interpreter, "-c", script, output, context_json]


def parse_python_output(stdout: str) -> Any:
    """Interpret script stdout as a bool, a number or a JSON object."""
    text = stdout.strip()
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return float(text)
    except ValueError:
        pass
    try:
        return json.loads(text)
    except ValueError as e:
        raise ScriptError(f"Could not parse Python output: {text!r}") from e


async def run_python(code: str, output: str, context: Dict[str, Any]) -> Any:
    """Run inline Python code or a `file://` script in a separate interpreter.

    The script receives the output and the JSON-encoded context as its two
    arguments. Arguments are passed as an argv list, never through a shell.
    """
    command = _python_command(code, output, json.dumps(context))
    logger.debug(f"Running python assertion with {command[0]}")
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise ScriptError(
            f"Python script exited with code {process.returncode}: "
            f"{stderr.decode('utf-8', errors='replace').strip()}"
        )
    return parse_python_output(stdout.decode("utf-8", errors="replace"))

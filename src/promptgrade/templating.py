# src/promptgrade/templating.py
from __future__ import annotations

import inspect
import json
import os
from typing import Any, Callable, Dict, Optional

from jinja2 import Environment

from .models import Prompt

FilterMap = Dict[str, Callable[..., Any]]


class PromptFunctionError(TypeError):
    """A prompt function returned something other than a string or object."""

    pass


def get_environment(filters: Optional[FilterMap] = None) -> Environment:
    env = Environment(autoescape=False, keep_trailing_newline=True)
    if filters:
        env.filters.update(filters)
    return env


def render_string(
    template: str, vars: Dict[str, Any], filters: Optional[FilterMap] = None
) -> str:
    return get_environment(filters).from_string(template).render(**vars)


async def _resolve_base_prompt(prompt: Prompt, vars: Dict[str, Any]) -> str:
    if prompt.function is None:
        return prompt.raw

    result = prompt.function({"vars": vars})
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list)):
        return json.dumps(result, separators=(",", ":"))
    raise PromptFunctionError(
        f"Prompt function must return a string or object, got {type(result).__name__}"
    )


def _walk(obj: Any, render: Callable[[str], str]) -> Any:
    if isinstance(obj, str):
        return render(obj)
    if isinstance(obj, dict):
        return {key: _walk(value, render) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_walk(item, render) for item in obj]
    return obj


async def render_prompt(
    prompt: Prompt, vars: Dict[str, Any], filters: Optional[FilterMap] = None
) -> str:
    """Render a prompt template against `vars`.

    When the template text is valid JSON (e.g. a list of chat messages), each
    string inside it is rendered separately and the structure re-serialized, so
    substituted values are escaped correctly. Any other template is rendered as
    plain text. `PROMPTGRADE_DISABLE_JSON_AUTOESCAPE` forces plain rendering.
    """
    env = get_environment(filters)
    base_prompt = await _resolve_base_prompt(prompt, vars)

    if os.getenv("PROMPTGRADE_DISABLE_JSON_AUTOESCAPE"):
        return env.from_string(base_prompt).render(**vars)

    try:
        parsed = json.loads(base_prompt)
    except ValueError:
        return env.from_string(base_prompt).render(**vars)

    for key, value in vars.items():
        if isinstance(value, str) and value.endswith("\n"):
            vars[key] = value[:-1]

    rendered = _walk(parsed, lambda s: env.from_string(s).render(**vars))
    return json.dumps(rendered, separators=(",", ":"), ensure_ascii=False)

# src/promptgrade/assertions.py
from __future__ import annotations

import inspect
import json
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import yaml
from jsonschema import FormatChecker
from jsonschema.validators import validator_for
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from . import matchers, scripts
from .models import (
    BASE_ASSERTION_TYPES,
    Assertion,
    AssertionBase,
    GradingResult,
    TestCase,
    TokenUsage,
    make_assertion,
)
from .templating import render_string

PASS_REASON = "Assertion passed"
WEBHOOK_TIMEOUT = 30.0

# Kinds that are complete without a value in the compact string form.
_VALUELESS_TYPES = ("is-json", "contains-json", "is-valid-openai-function-call")
_LIST_TYPES = ("contains-any", "contains-all", "icontains-any", "icontains-all")

_COMPACT_ASSERTION = re.compile(
    r"^(?P<negate>not-)?(?P<type>[a-z][a-z-]*?)"
    r"(?:\((?P<threshold>\d+(?:\.\d+)?)\))?"
    r"(?::(?P<value>.*))?$",
    re.DOTALL,
)


class AssertionContext:
    """Everything a single assertion kind may need to grade an output."""

    def __init__(
        self,
        assertion: Assertion,
        output: Any,
        value: Any,
        test: TestCase,
        prompt: Optional[str],
        provider: Any,
    ):
        self.assertion = assertion
        self.output = output
        self.value = value
        self.test = test
        self.prompt = prompt
        self.provider = provider
        self.inverse = assertion.inverse
        self.output_text = (
            output
            if isinstance(output, str)
            else json.dumps(output, separators=(",", ":"))
        )

    @property
    def negation(self) -> str:
        return "not " if self.inverse else ""

    def script_context(self) -> Dict[str, Any]:
        return {"prompt": self.prompt, "vars": self.test.vars}

    def result(
        self, condition: bool, failure_reason: str, score: Optional[float] = None
    ) -> GradingResult:
        """Grade a boolean check, honouring `not-` negation."""
        passed = condition != self.inverse
        return GradingResult(
            passed=passed,
            score=score if score is not None else (1.0 if passed else 0.0),
            reason=PASS_REASON if passed else failure_reason,
        )


Handler = Callable[[AssertionContext], Awaitable[GradingResult]]
_HANDLERS: Dict[str, Handler] = {}


def _handles(*types: str) -> Callable[[Handler], Handler]:
    def register(fn: Handler) -> Handler:
        for kind in types:
            _HANDLERS[kind] = fn
        return fn

    return register


def _as_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",")]
    if isinstance(value, list):
        return [str(item) for item in value]
    raise ValueError(f"Expected a list of strings, got {type(value).__name__}")


# --- String matching ---


@_handles("equals")
async def _equals(ctx: AssertionContext) -> GradingResult:
    expected = (
        ctx.value
        if isinstance(ctx.value, str)
        else json.dumps(ctx.value, separators=(",", ":"))
    )
    if ctx.inverse:
        reason = f'Expected output to not equal "{expected}"'
    else:
        reason = f'Expected output "{expected}" but got "{ctx.output_text}"'
    return ctx.result(ctx.output_text == expected, reason)


@_handles("contains", "icontains")
async def _contains(ctx: AssertionContext) -> GradingResult:
    needle = str(ctx.value)
    haystack = ctx.output_text
    if ctx.assertion.base_type == "icontains":
        needle, haystack = needle.lower(), haystack.lower()
    return ctx.result(
        needle in haystack,
        f'Expected output to {ctx.negation}contain "{ctx.value}"',
    )


@_handles("contains-any", "icontains-any", "contains-all", "icontains-all")
async def _contains_many(ctx: AssertionContext) -> GradingResult:
    needles = _as_list(ctx.value)
    haystack = ctx.output_text
    kind = ctx.assertion.base_type
    if kind.startswith("i"):
        haystack = haystack.lower()
        found = [needle.lower() in haystack for needle in needles]
    else:
        found = [needle in haystack for needle in needles]
    if kind.endswith("-any"):
        condition, quantifier = any(found), "one of"
    else:
        condition, quantifier = all(found), "all of"
    return ctx.result(
        condition,
        f'Expected output to {ctx.negation}contain {quantifier} "{", ".join(needles)}"',
    )


@_handles("starts-with")
async def _starts_with(ctx: AssertionContext) -> GradingResult:
    return ctx.result(
        ctx.output_text.startswith(str(ctx.value)),
        f'Expected output to {ctx.negation}start with "{ctx.value}"',
    )


@_handles("regex")
async def _regex(ctx: AssertionContext) -> GradingResult:
    pattern = re.compile(str(ctx.value))
    return ctx.result(
        pattern.search(ctx.output_text) is not None,
        f'Expected output to {ctx.negation}match regex "{ctx.value}"',
    )


# --- JSON ---


def load_schema(value: Any) -> Dict[str, Any]:
    """Inline schema mapping, or a `file://` path to a JSON or YAML schema."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        path = Path(scripts.strip_file_prefix(value))
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() in (".yml", ".yaml"):
            return yaml.safe_load(text)
        return json.loads(text)
    raise ValueError(f"Invalid JSON schema: {value!r}")


def schema_errors(instance: Any, schema: Dict[str, Any]) -> List[str]:
    validator_cls = validator_for(schema)
    validator = validator_cls(schema, format_checker=FormatChecker())
    messages = []
    errors = sorted(validator.iter_errors(instance), key=lambda e: e.json_path)
    for error in errors:
        path = "/".join(["data", *(str(part) for part in error.absolute_path)])
        messages.append(f"{path}: {error.message}")
    return messages


def _grade_json(ctx: AssertionContext, parsed: Any) -> GradingResult:
    if ctx.value is None:
        return ctx.result(True, "")
    errors = schema_errors(parsed, load_schema(ctx.value))
    return ctx.result(
        not errors,
        "JSON does not conform to the provided schema. Errors: " + ", ".join(errors),
    )


@_handles("is-json")
async def _is_json(ctx: AssertionContext) -> GradingResult:
    try:
        parsed = json.loads(ctx.output_text)
    except ValueError:
        return ctx.result(False, "Expected output to be valid JSON")
    return _grade_json(ctx, parsed)


@_handles("contains-json")
async def _contains_json(ctx: AssertionContext) -> GradingResult:
    parsed = matchers.first_json_value(ctx.output_text)
    if parsed is None:
        return ctx.result(False, "Expected output to contain valid JSON")
    return _grade_json(ctx, parsed)


@_handles("is-valid-openai-function-call")
async def _is_valid_function_call(ctx: AssertionContext) -> GradingResult:
    call = ctx.output
    if isinstance(call, str):
        call = json.loads(call)
    if not isinstance(call, dict) or "name" not in call:
        return ctx.result(
            False, f"Expected a function call object, got {ctx.output_text}"
        )

    functions = (getattr(ctx.provider, "config", None) or {}).get("functions") or []
    function = next((f for f in functions if f.get("name") == call["name"]), None)
    if function is None:
        return ctx.result(
            False, f'Called "{call["name"]}", but there is no function with that name'
        )

    arguments = call.get("arguments") or {}
    if isinstance(arguments, str):
        arguments = json.loads(arguments)
    errors = schema_errors(arguments, function.get("parameters") or {})
    return ctx.result(
        not errors,
        f'Call to "{call["name"]}" does not match schema: {", ".join(errors)}',
    )


# --- Custom code ---


def _grade_object(
    ctx: AssertionContext, result: Dict[str, Any], label: str
) -> GradingResult:
    passed = bool(result.get("pass", False)) != ctx.inverse
    score = result.get("score")
    if score is None:
        score = 1.0 if passed else 0.0
    elif ctx.inverse:
        score = 1 - float(score)
    fallback = (
        PASS_REASON
        if passed
        else f"{label} returned {'true' if ctx.inverse else 'false'}"
    )
    return GradingResult(
        passed=passed,
        score=float(score),
        reason=result.get("reason") or fallback,
        named_scores=result.get("namedScores") or {},
        tokens_used=result.get("tokensUsed"),
    )


def _grade_custom(ctx: AssertionContext, result: Any, label: str) -> GradingResult:
    """Turn a bool, number or {pass, score, reason} result into a grade."""
    if isinstance(result, GradingResult):
        result = result.model_dump(by_alias=True)
    if isinstance(result, dict):
        return _grade_object(ctx, result, label)
    if isinstance(result, bool):
        passed = result != ctx.inverse
        score = 1.0 if passed else 0.0
    elif isinstance(result, (int, float)):
        threshold = ctx.assertion.threshold
        above = result >= threshold if threshold is not None else result > 0
        passed = above != ctx.inverse
        score = float(result)
    else:
        raise TypeError(
            f"{label} must return a boolean, number or object, got {type(result).__name__}"
        )
    code = ctx.assertion.value if isinstance(ctx.assertion.value, str) else ""
    return GradingResult(
        passed=passed,
        score=score,
        reason=PASS_REASON
        if passed
        else f"{label} returned {'true' if ctx.inverse else 'false'}\n{code}",
    )


@_handles("javascript")
async def _javascript(ctx: AssertionContext) -> GradingResult:
    if callable(ctx.value):
        result = ctx.value(ctx.output, ctx.script_context())
        if inspect.isawaitable(result):
            result = await result
    else:
        result = scripts.run_javascript(
            str(ctx.value), ctx.output, ctx.script_context()
        )
    return _grade_custom(ctx, result, "Custom function")


@_handles("python")
async def _python(ctx: AssertionContext) -> GradingResult:
    result = await scripts.run_python(
        str(ctx.value), ctx.output_text, ctx.script_context()
    )
    return _grade_custom(ctx, result, "Python code")


@retry(
    wait=wait_exponential(multiplier=1, min=1, max=10),
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
    reraise=True,
)
async def post_webhook(url: str, payload: Dict[str, Any]) -> httpx.Response:
    async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
        return await client.post(url, json=payload)


@_handles("webhook")
async def _webhook(ctx: AssertionContext) -> GradingResult:
    payload = {"prompt": ctx.prompt, "vars": ctx.test.vars, "output": ctx.output}
    try:
        response = await post_webhook(str(ctx.value), payload)
        if not response.is_success:
            raise RuntimeError(f"Webhook response status: {response.status_code}")
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"Expected a JSON object, got {type(body).__name__}")
    except Exception as e:
        return GradingResult(passed=False, score=0.0, reason=f"Webhook error: {e}")

    passed = bool(body.get("pass")) != ctx.inverse
    score = body.get("score")
    if score is None:
        score = 1.0 if passed else 0.0
    elif ctx.inverse:
        score = 1 - float(score)
    reason = body.get("reason") or (
        PASS_REASON
        if passed
        else f"Webhook returned {'true' if ctx.inverse else 'false'}"
    )
    return GradingResult(passed=passed, score=float(score), reason=reason)


# --- Metrics and model-graded kinds ---


@_handles("rouge-n")
async def _rouge_n(ctx: AssertionContext) -> GradingResult:
    return matchers.matches_rouge(
        str(ctx.value), ctx.output_text, ctx.assertion.threshold, ctx.inverse
    )


@_handles("levenshtein")
async def _levenshtein(ctx: AssertionContext) -> GradingResult:
    return matchers.matches_levenshtein(
        str(ctx.value), ctx.output_text, ctx.assertion.threshold, ctx.inverse
    )


def _grading_provider(ctx: AssertionContext) -> Any:
    return matchers.resolve_provider(
        ctx.assertion.provider, ctx.test.options.provider, ctx.provider
    )


@_handles("similar")
async def _similar(ctx: AssertionContext) -> GradingResult:
    return await matchers.matches_similarity(
        str(ctx.value),
        ctx.output_text,
        ctx.assertion.threshold,
        ctx.inverse,
        _grading_provider(ctx),
    )


@_handles("classifier")
async def _classifier(ctx: AssertionContext) -> GradingResult:
    return await matchers.matches_classification(
        str(ctx.value),
        ctx.output_text,
        ctx.assertion.threshold,
        _grading_provider(ctx),
        ctx.inverse,
    )


@_handles("llm-rubric")
async def _llm_rubric(ctx: AssertionContext) -> GradingResult:
    provider = _grading_provider(ctx)
    if provider is None:
        raise ValueError("llm-rubric assertions require a grading provider")
    return await matchers.matches_llm_rubric(
        str(ctx.value), ctx.output_text, provider, ctx.inverse
    )


# --- Public API ---


async def run_assertion(
    assertion: Assertion,
    test: TestCase,
    output: Any,
    prompt: Optional[str] = None,
    provider: Any = None,
) -> GradingResult:
    """Grade `output` against one assertion."""
    handler = _HANDLERS.get(assertion.base_type)
    if handler is None:
        raise ValueError(f"Unknown assertion type: {assertion.type}")

    value = getattr(assertion, "value", None)
    if isinstance(value, str):
        value = render_string(value, test.vars)

    ctx = AssertionContext(assertion, output, value, test, prompt, provider)
    result = await handler(ctx)
    return result.model_copy(update={"assertion": assertion})


async def run_assertions(
    test: TestCase,
    output: Any,
    prompt: Optional[str] = None,
    provider: Any = None,
) -> GradingResult:
    """Grade `output` against every assertion of `test`.

    Without a threshold the first failing assertion decides the result and its
    reason is reported. With a threshold every assertion runs and the weighted
    mean of their scores is compared against it.
    """
    tokens_used = TokenUsage()
    named_scores: Dict[str, float] = {}
    components: List[GradingResult] = []
    total_score = 0.0
    total_weight = 0.0

    for assertion in test.assertions:
        result = await run_assertion(assertion, test, output, prompt, provider)
        components.append(result)
        if result.tokens_used:
            tokens_used.total += result.tokens_used.total
            tokens_used.prompt += result.tokens_used.prompt
            tokens_used.completion += result.tokens_used.completion
        if assertion.metric:
            named_scores[assertion.metric] = (
                named_scores.get(assertion.metric, 0.0) + result.score
            )
        total_score += result.score * assertion.weight
        total_weight += assertion.weight

        if test.threshold is None and not result.passed:
            return GradingResult(
                passed=False,
                score=0.0,
                reason=result.reason,
                named_scores=named_scores,
                tokens_used=tokens_used,
                component_results=components,
            )

    if test.threshold is None:
        score = total_score / total_weight if total_weight else 1.0
        return GradingResult(
            passed=True,
            score=score,
            reason="All assertions passed",
            named_scores=named_scores,
            tokens_used=tokens_used,
            component_results=components,
        )

    score = total_score / total_weight if total_weight else 0.0
    passed = score >= test.threshold
    comparison = "≥" if passed else "<"
    return GradingResult(
        passed=passed,
        score=score,
        reason=f"Aggregate score {score:.2f} {comparison} {test.threshold:g} threshold",
        named_scores=named_scores,
        tokens_used=tokens_used,
        component_results=components,
    )


def assertion_from_string(expected: str) -> AssertionBase:
    """Parse the compact assertion syntax.

    `fn:<js>` is a javascript assertion, `<type>[(<threshold>)]:<value>` a
    typed one (optionally prefixed with `not-`), the bare keywords `is-json`,
    `contains-json` and `is-valid-openai-function-call` need no value, and
    anything else is an exact-match `equals`.
    """
    if expected.startswith("fn:"):
        return make_assertion(type="javascript", value=expected[len("fn:") :])

    match = _COMPACT_ASSERTION.match(expected)
    if match:
        kind = match.group("type")
        value = match.group("value")
        threshold = match.group("threshold")
        full_type = (match.group("negate") or "") + kind
        if kind in _VALUELESS_TYPES and value is None and threshold is None:
            return make_assertion(type=full_type)
        if kind in BASE_ASSERTION_TYPES and value is not None:
            parsed: Any = _as_list(value) if kind in _LIST_TYPES else value
            return make_assertion(
                type=full_type,
                value=parsed,
                threshold=float(threshold) if threshold is not None else None,
            )

    return make_assertion(type="equals", value=expected)

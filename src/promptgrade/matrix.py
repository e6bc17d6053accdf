# src/promptgrade/matrix.py
from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Tuple

from .models import (
    Prompt,
    PromptMetrics,
    TestCase,
    TestCaseOptions,
    TestSuite,
    WorkItem,
    sha256,
)


def _is_alternatives(value: Any) -> bool:
    # Only lists of strings expand; lists of objects are one structured value.
    return isinstance(value, list) and len(value) > 0 and isinstance(value[0], str)


def generate_var_combinations(vars: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Expand list-valued vars into the cross-product of concrete assignments.

    Combinations follow declaration order, with the last variable varying
    fastest.
    """
    combinations: List[Dict[str, Any]] = [{}]
    for key, raw in vars.items():
        values = raw if _is_alternatives(raw) else [raw]
        combinations = [
            {**combination, key: value}
            for combination in combinations
            for value in values
        ]
    return combinations


def _first_set(*values: Optional[Any]) -> Optional[Any]:
    for value in values:
        if value is not None:
            return value
    return None


def merge_scenario_test(
    default_test: Optional[TestCase], data: TestCase, test: TestCase
) -> TestCase:
    """Layer defaults < scenario data < scenario test into one test case."""
    default_test = default_test or TestCase()
    return TestCase(
        description=_first_set(
            test.description, data.description, default_test.description
        ),
        vars={**default_test.vars, **data.vars, **test.vars},
        assertions=[*data.assertions, *test.assertions],
        threshold=_first_set(test.threshold, data.threshold, default_test.threshold),
        options=default_test.options.merged_with(data.options).merged_with(
            test.options
        ),
    )


def collect_tests(suite: TestSuite) -> List[TestCase]:
    """Explicit tests followed by the tests synthesized from every scenario."""
    if suite.tests:
        tests = list(suite.tests)
    elif suite.scenarios:
        tests = []
    else:
        # Placeholder so a raw prompt comparison still produces one row.
        tests = [TestCase()]

    for scenario in suite.scenarios or []:
        scenario_tests = scenario.tests or [TestCase()]
        for data in scenario.config:
            tests.extend(
                merge_scenario_test(suite.default_test, data, test)
                for test in scenario_tests
            )
    return tests


def apply_defaults(test: TestCase, default_test: Optional[TestCase]) -> TestCase:
    if default_test is None:
        return test.model_copy(deep=False)
    return test.model_copy(
        update={
            "vars": {**default_test.vars, **test.vars},
            "assertions": [*default_test.assertions, *test.assertions],
            "threshold": _first_set(test.threshold, default_test.threshold),
            "options": default_test.options.merged_with(test.options),
        }
    )


def provider_allows(suite: TestSuite, provider: Any, prompt: Prompt) -> bool:
    if not suite.provider_prompt_map:
        return True
    allowed = suite.provider_prompt_map.get(provider.id())
    return not allowed or prompt.display in allowed


def iter_pairs(suite: TestSuite) -> Iterator[Tuple[Prompt, Any]]:
    """(prompt, provider) pairs in column order."""
    for prompt in suite.prompts:
        for provider in suite.providers:
            if provider_allows(suite, provider, prompt):
                yield prompt, provider


def build_table_prompts(suite: TestSuite) -> List[Prompt]:
    """One header prompt per column, carrying fresh metrics."""
    multiple_providers = len(suite.providers) > 1
    prompts = []
    for prompt, provider in iter_pairs(suite):
        display = (
            f"[{provider.id()}] {prompt.display}"
            if multiple_providers
            else prompt.display
        )
        prompts.append(
            prompt.model_copy(
                update={
                    "id": sha256(prompt.raw),
                    "display": display,
                    "metrics": PromptMetrics(),
                }
            )
        )
    return prompts


def build_work_items(
    suite: TestSuite, tests: List[TestCase], repeat: int = 1, delay: int = 0
) -> List[WorkItem]:
    """Build the ordered work-item matrix.

    Row index advances once per (test, repeat, vars combination); column
    index counts allowed (prompt, provider) pairs and is identical in every
    row.
    """
    items: List[WorkItem] = []
    pairs = list(iter_pairs(suite))
    default_options = (
        suite.default_test.options if suite.default_test else TestCaseOptions()
    )
    row_index = 0
    for test in tests:
        prefix = test.options.prefix or default_options.prefix or ""
        suffix = test.options.suffix or default_options.suffix or ""
        var_combinations = generate_var_combinations(test.vars)
        for repeat_index in range(max(repeat, 1)):
            for vars in var_combinations:
                for col_index, (prompt, provider) in enumerate(pairs):
                    items.append(
                        WorkItem(
                            provider=provider,
                            prompt=prompt.model_copy(
                                update={"raw": prefix + prompt.raw + suffix}
                            ),
                            test=test.model_copy(update={"vars": dict(vars)}),
                            nunjucks_filters=suite.nunjucks_filters,
                            include_provider_id=len(suite.providers) > 1,
                            row_index=row_index,
                            col_index=col_index,
                            repeat_index=repeat_index,
                            delay=delay,
                        )
                    )
                row_index += 1
    return items

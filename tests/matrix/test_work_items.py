from __future__ import annotations

from promptgrade.matrix import (
    apply_defaults,
    build_table_prompts,
    build_work_items,
    collect_tests,
    merge_scenario_test,
)
from promptgrade.models import (
    Prompt,
    Scenario,
    TestCase as Case,
    TestCaseOptions as CaseOptions,
    TestSuite as Suite,
    make_assertion,
    sha256,
)


def _suite(make_provider, **kwargs) -> Suite:
    kwargs.setdefault("prompts", [Prompt(raw="A {{ q }}"), Prompt(raw="B {{ q }}")])
    kwargs.setdefault("providers", [make_provider("p1")])
    return Suite(**kwargs)


def test_work_item_count_matches_matrix_formula(make_provider):
    suite = _suite(
        make_provider,
        providers=[make_provider("p1"), make_provider("p2")],
        tests=[
            Case(vars={"q": ["1", "2", "3"], "r": ["x", "y"]}),
            Case(vars={"q": "only"}),
        ],
    )
    items = build_work_items(suite, collect_tests(suite), repeat=2)
    # (3*2 + 1) combinations * 2 repeats * 2 prompts * 2 providers
    assert len(items) == (6 + 1) * 2 * 2 * 2


def test_row_and_column_indices_are_stable(make_provider):
    suite = _suite(
        make_provider,
        providers=[make_provider("p1"), make_provider("p2")],
        tests=[Case(vars={"q": ["1", "2"]})],
    )
    items = build_work_items(suite, collect_tests(suite))
    rows = {}
    for item in items:
        rows.setdefault(item.row_index, []).append(
            (item.col_index, item.prompt.raw, item.provider.id())
        )
    assert sorted(rows) == [0, 1]
    assert [c[1:] for c in rows[0]] == [c[1:] for c in rows[1]]
    assert [c[0] for c in rows[0]] == [0, 1, 2, 3]


def test_repeat_advances_row_index(make_provider):
    suite = _suite(make_provider, tests=[Case(vars={"q": "x"})])
    items = build_work_items(suite, collect_tests(suite), repeat=3)
    assert [i.row_index for i in items if i.col_index == 0] == [0, 1, 2]
    assert [i.repeat_index for i in items if i.col_index == 0] == [0, 1, 2]


def test_provider_prompt_map_skips_disallowed_pairs(make_provider):
    suite = _suite(
        make_provider,
        providers=[make_provider("p1"), make_provider("p2")],
        provider_prompt_map={"p2": ["B {{ q }}"]},
        tests=[Case(vars={"q": "x"})],
    )
    items = build_work_items(suite, collect_tests(suite))
    pairs = [(i.prompt.raw, i.provider.id()) for i in items]
    assert pairs == [("A {{ q }}", "p1"), ("B {{ q }}", "p1"), ("B {{ q }}", "p2")]
    assert [i.col_index for i in items] == [0, 1, 2]


def test_no_tests_and_no_scenarios_yields_placeholder_row(make_provider):
    suite = _suite(make_provider)
    tests = collect_tests(suite)
    assert len(tests) == 1 and tests[0].vars == {}
    assert len(build_work_items(suite, tests)) == 2


def test_prefix_and_suffix_wrap_raw_prompt(make_provider):
    suite = _suite(
        make_provider,
        prompts=[Prompt(raw="body")],
        default_test=Case(options=CaseOptions(suffix=" [end]")),
        tests=[Case(options=CaseOptions(prefix="[start] "))],
    )
    items = build_work_items(suite, collect_tests(suite))
    assert items[0].prompt.raw == "[start] body [end]"


def test_table_prompts_are_prefixed_with_provider_when_several(make_provider):
    suite = _suite(
        make_provider,
        prompts=[Prompt(raw="hello")],
        providers=[make_provider("p1"), make_provider("p2")],
    )
    prompts = build_table_prompts(suite)
    assert [p.display for p in prompts] == ["[p1] hello", "[p2] hello"]
    assert all(p.id == sha256("hello") for p in prompts)
    assert all(p.metrics is not None and p.metrics.score == 0 for p in prompts)


def test_single_provider_keeps_display(make_provider):
    suite = _suite(make_provider, prompts=[Prompt(raw="hello", display="greet")])
    assert [p.display for p in build_table_prompts(suite)] == ["greet"]


def test_structured_prompt_identity_hashes_serialized_json():
    prompt = Prompt(raw=[{"role": "user", "content": "hi"}])
    assert prompt.raw == '[{"role":"user","content":"hi"}]'
    assert prompt.identity == sha256(prompt.raw)


def test_apply_defaults_layers_vars_assertions_threshold_and_options():
    default = Case(
        vars={"a": "default", "b": "default"},
        assertions=[make_assertion(type="contains", value="x")],
        threshold=0.5,
        options=CaseOptions(prefix="P", postprocess="output"),
    )
    test = Case(
        vars={"b": "test"},
        assertions=[make_assertion(type="equals", value="y")],
        options=CaseOptions(prefix="Q"),
    )
    merged = apply_defaults(test, default)
    assert merged.vars == {"a": "default", "b": "test"}
    assert [a.type for a in merged.assertions] == ["contains", "equals"]
    assert merged.threshold == 0.5
    assert merged.options.prefix == "Q"
    assert merged.options.postprocess == "output"


def test_scenarios_merge_default_data_and_test_in_order(make_provider):
    default = Case(vars={"a": "default", "b": "default", "c": "default"})
    scenario = Scenario(
        config=[
            Case(vars={"b": "data1"}, assertions=[make_assertion(type="contains", value="1")]),
            Case(vars={"b": "data2"}),
        ],
        tests=[Case(vars={"c": "test"}, assertions=[make_assertion(type="regex", value=".")])],
    )
    suite = _suite(make_provider, default_test=default, scenarios=[scenario])
    tests = collect_tests(suite)
    assert [t.vars for t in tests] == [
        {"a": "default", "b": "data1", "c": "test"},
        {"a": "default", "b": "data2", "c": "test"},
    ]
    assert [a.type for a in tests[0].assertions] == ["contains", "regex"]
    assert [a.type for a in tests[1].assertions] == ["regex"]


def test_scenario_without_tests_uses_placeholder():
    merged = merge_scenario_test(None, Case(vars={"x": "1"}), Case())
    assert merged.vars == {"x": "1"}


def test_explicit_tests_are_followed_by_scenario_tests(make_provider):
    suite = _suite(
        make_provider,
        tests=[Case(description="explicit")],
        scenarios=[Scenario(config=[Case(description="from scenario")])],
    )
    assert [t.description for t in collect_tests(suite)] == [
        "explicit",
        "from scenario",
    ]

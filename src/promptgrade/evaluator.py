# src/promptgrade/evaluator.py
from __future__ import annotations

import asyncio
import json
import os
import time
import traceback
from contextlib import nullcontext
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from rich.console import Console
from rich.live import Live
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .assertions import run_assertions
from .matrix import apply_defaults, build_table_prompts, build_work_items, collect_tests
from .models import (
    EvaluateOptions,
    EvaluateResult,
    EvaluateStats,
    EvaluateSummary,
    EvaluateTable,
    EvaluateTableHead,
    EvaluateTableOutput,
    EvaluateTableRow,
    PromptSetup,
    ProviderSetup,
    TestCase,
    TestSuite,
    TokenUsage,
    WorkItem,
)
from .providers import load_provider
from .scripts import run_javascript
from .templating import render_prompt

# --- Constants ---

DEFAULT_MAX_CONCURRENCY = 4
CONVERSATION_VAR = "_conversation"


def _add_usage(target: TokenUsage, usage: Optional[TokenUsage], cached: bool = True):
    if usage is None:
        return
    target.total += usage.total
    target.prompt += usage.prompt
    target.completion += usage.completion
    if cached:
        target.cached += usage.cached


def _display_output(output: Any) -> Optional[str]:
    if isinstance(output, (dict, list)):
        return json.dumps(output, separators=(",", ":"), ensure_ascii=False)
    if output is None or output == "":
        return None
    return str(output)


def _display_var(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, list) and value and isinstance(value[0], str):
        return value
    return json.dumps(value, separators=(",", ":"))


def _delay_ms(delay: int) -> int:
    if delay:
        return delay
    try:
        return int(os.getenv("PROMPTGRADE_DELAY_MS") or 0)
    except ValueError:
        return 0


class Evaluator:
    """Runs one test suite: builds the work items, executes them, folds results."""

    def __init__(self, test_suite: TestSuite, options: EvaluateOptions):
        self.test_suite = test_suite
        self.options = options
        self.stats = EvaluateStats()
        # (provider id, prompt id) -> [{prompt, input, output}, ...]
        self.conversations: Dict[str, List[Dict[str, Any]]] = {}

    # --- Single work item ---

    async def run_eval(self, item: WorkItem) -> EvaluateResult:
        provider = item.provider
        prompt = item.prompt
        display = prompt.display
        if item.include_provider_id:
            display = f"[{provider.id()}] {display}"

        vars = dict(item.test.vars)
        conversation_key = f"{provider.id()}:{prompt.identity}"
        if CONVERSATION_VAR in prompt.raw and not os.getenv(
            "PROMPTGRADE_DISABLE_CONVERSATION_VAR"
        ):
            vars[CONVERSATION_VAR] = list(self.conversations.get(conversation_key, []))

        # Rendering failures are structural and abort the whole run.
        rendered = await render_prompt(prompt, vars, item.nunjucks_filters)
        try:
            rendered_json = json.loads(rendered)
        except ValueError:
            rendered_json = None

        setup = {
            "provider": ProviderSetup(id=provider.id()),
            "prompt": PromptSetup(raw=rendered, display=display),
            "vars": vars,
        }

        latency_ms = 0
        response = None
        try:
            start_time = time.perf_counter()
            response = await provider.call_api(rendered, {"vars": vars})
            latency_ms = int((time.perf_counter() - start_time) * 1000)
            _add_usage(self.stats.token_usage, response.token_usage)

            last_input = None
            if isinstance(rendered_json, list) and rendered_json:
                last = rendered_json[-1]
                last_input = last.get("content") if isinstance(last, dict) else last
            self.conversations.setdefault(conversation_key, []).append(
                {
                    "prompt": rendered_json or rendered,
                    "input": last_input or rendered_json or rendered,
                    "output": response.output or "",
                }
            )

            if not response.cached:
                sleep_ms = _delay_ms(item.delay)
                if sleep_ms:
                    logger.debug(f"Sleeping for {sleep_ms}ms")
                    await asyncio.sleep(sleep_ms / 1000)

            result = EvaluateResult(
                **setup, response=response, latency_ms=latency_ms
            )
            if response.error:
                result.error = response.error
            elif response.output is not None and response.output != "":
                processed = response.model_copy()
                postprocess = item.test.options.postprocess
                if postprocess:
                    processed.output = run_javascript(
                        postprocess, processed.output, {"vars": vars}
                    )
                    if processed.output is None:
                        raise ValueError("Postprocess function did not return a value")

                grading = await run_assertions(
                    item.test.model_copy(update={"vars": vars}),
                    processed.output,
                    prompt=rendered,
                    provider=provider,
                )
                if not grading.passed:
                    result.error = grading.reason
                result.success = grading.passed
                result.score = grading.score
                result.named_scores = dict(grading.named_scores)
                _add_usage(self.stats.token_usage, grading.tokens_used, cached=False)
                result.response = processed
                result.grading_result = grading
            else:
                result.error = "No output"

            if result.success:
                self.stats.successes += 1
            else:
                self.stats.failures += 1
            return result
        except Exception as e:
            logger.debug(f"Work item ({item.row_index}, {item.col_index}) failed: {e}")
            self.stats.failures += 1
            return EvaluateResult(
                **setup,
                error=f"{e}\n\n{traceback.format_exc()}",
                response=response,
                success=False,
                score=0.0,
                latency_ms=latency_ms,
            )

    # --- Aggregation ---

    def _record(
        self,
        table: EvaluateTable,
        item: WorkItem,
        result: EvaluateResult,
        is_test: bool,
    ) -> None:
        output = result.response.output if result.response else None
        output_text = _display_output(output)
        if is_test:
            if result.success:
                text = output_text or result.error or ""
            else:
                text = f"{result.error}\n---\n{output_text or ''}"
        elif result.error:
            text = result.error
        else:
            text = output_text or ""

        row = table.body[item.row_index]
        if row is None:
            row_vars: List[str] = []
            for name in table.head.vars:
                value = _display_var(item.test.vars.get(name) or "")
                if isinstance(value, list):
                    row_vars.extend(value)
                else:
                    row_vars.append(value)
            row = EvaluateTableRow(
                description=item.test.description,
                vars=row_vars,
                outputs=[None] * len(table.head.prompts),
            )
            table.body[item.row_index] = row

        token_usage = result.response.token_usage if result.response else None
        row.outputs[item.col_index] = EvaluateTableOutput(
            passed=result.success,
            score=result.score,
            named_scores=result.named_scores,
            text=text,
            prompt=result.prompt.raw,
            provider=result.provider.id,
            latency_ms=result.latency_ms,
            token_usage=token_usage,
            grading_result=result.grading_result,
        )

        metrics = table.head.prompts[item.col_index].metrics
        metrics.score += result.score
        for name, value in result.named_scores.items():
            metrics.named_scores[name] = metrics.named_scores.get(name, 0.0) + value
        if result.success:
            metrics.test_pass_count += 1
        else:
            metrics.test_fail_count += 1
        components = (
            result.grading_result.component_results if result.grading_result else None
        ) or []
        metrics.assert_pass_count += sum(1 for c in components if c.passed)
        metrics.assert_fail_count += sum(1 for c in components if not c.passed)
        metrics.total_latency_ms += result.latency_ms
        _add_usage(metrics.token_usage, token_usage)

    # --- Orchestration ---

    def _prepare(self) -> Tuple[List[TestCase], List[WorkItem], EvaluateTable]:
        suite = self.test_suite
        tests = [apply_defaults(t, suite.default_test) for t in collect_tests(suite)]
        var_names = sorted({name for test in tests for name in test.vars})
        table = EvaluateTable(
            head=EvaluateTableHead(prompts=build_table_prompts(suite), vars=var_names)
        )
        items = build_work_items(
            suite, tests, repeat=self.options.repeat, delay=self.options.delay
        )
        row_count = max((item.row_index for item in items), default=-1) + 1
        table.body = [None] * row_count
        return tests, items, table

    def _concurrency(self, items: List[WorkItem]) -> int:
        concurrency = self.options.max_concurrency or DEFAULT_MAX_CONCURRENCY
        # Prefixes and suffixes are already part of each item's raw prompt.
        uses_conversation = any(CONVERSATION_VAR in item.prompt.raw for item in items)
        if uses_conversation and concurrency > 1:
            logger.info(
                f"Setting concurrency to 1 because the {CONVERSATION_VAR} "
                "variable is used."
            )
            concurrency = 1
        return concurrency

    async def evaluate(self) -> EvaluateSummary:
        if self.options.generate_suggestions:
            raise NotImplementedError("Prompt suggestion generation is not supported.")

        self.test_suite = self.test_suite.model_copy(
            update={"providers": [load_provider(p) for p in self.test_suite.providers]}
        )
        tests, items, table = self._prepare()
        is_test = any(test.assertions for test in tests)
        concurrency = self._concurrency(items)
        total = len(items)

        progress: Optional[Progress] = None
        task_id: Optional[TaskID] = None
        if self.options.show_progress_bar:
            progress = Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
            )
            task_id = progress.add_task("[bold]Running evals", total=total)

        callback = self.options.progress_callback
        if callback:
            callback(0, total)

        results: List[Optional[EvaluateResult]] = [None] * total
        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))
        done = 0

        async def worker() -> None:
            nonlocal done
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                result = await self.run_eval(item)
                # Fold without awaiting so accumulation is serialized.
                results[index] = result
                self._record(table, item, result, is_test)
                done += 1
                if progress is not None and task_id is not None:
                    progress.update(task_id, advance=1)
                if callback:
                    callback(done, total)

        live = (
            Live(
                progress,
                console=Console(),
                vertical_overflow="visible",
                transient=True,
            )
            if progress is not None
            else nullcontext()
        )
        with live:
            workers = [
                asyncio.create_task(worker()) for _ in range(min(concurrency, total))
            ]
            try:
                await asyncio.gather(*workers)
            finally:
                for task in workers:
                    task.cancel()

        if callback:
            callback(total, total)

        return EvaluateSummary(
            results=[r for r in results if r is not None],
            stats=self.stats,
            table=table,
        )


async def evaluate(
    test_suite: TestSuite, options: Optional[EvaluateOptions] = None
) -> EvaluateSummary:
    """Run every work item of `test_suite` and return results, stats and table."""
    return await Evaluator(test_suite, options or EvaluateOptions()).evaluate()

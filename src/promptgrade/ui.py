# src/promptgrade/ui.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple

from rich import print
from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import EvaluateSummary, PromptMetrics

MAX_CELL_LINES = 3
MAX_FAILURE_LINES = 3


def _truncate_text(text: str, max_lines: int) -> str:
    """Truncates text to a maximum number of lines, adding '[...]' if truncated."""
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        return "\n".join(lines[:max_lines]) + "\n[...]"
    return text


def _pass_rate(metrics: PromptMetrics) -> str:
    total = metrics.test_pass_count + metrics.test_fail_count
    if not total:
        return "n/a"
    return f"{metrics.test_pass_count / total:.0%} ({metrics.test_pass_count}/{total})"


def render_results_table(console: Console, summary: EvaluateSummary) -> None:
    """Renders the results table: one row per test, one column per prompt."""
    head = summary.table.head
    table = Table(show_lines=True, title="Results")
    for name in head.vars:
        table.add_column(escape(name), style="cyan", overflow="fold")
    for prompt in head.prompts:
        header = escape(_truncate_text(prompt.display, 2))
        if prompt.metrics:
            header += f"\n[dim]{_pass_rate(prompt.metrics)}[/dim]"
        table.add_column(header, overflow="fold")

    for row in summary.table.body:
        if row is None:
            continue
        cells: List[Any] = [Text(v) for v in row.vars[: len(head.vars)]]
        cells += [""] * (len(head.vars) - len(cells))
        for output in row.outputs:
            if output is None:
                cells.append("")
                continue
            status = (
                Text("[PASS]", style="green")
                if output.passed
                else Text("[FAIL]", style="red")
            )
            body = Text(_truncate_text(output.text, MAX_CELL_LINES))
            cells.append(Group(status, body))
        table.add_row(*cells)

    console.print(table)
    console.print()


def render_failures(console: Console, summary: EvaluateSummary) -> None:
    """Renders a detailed panel for each failed result."""
    failures = [r for r in summary.results if not r.success]
    for result in failures:
        failure_title = f"[bold red]❌ {escape(result.prompt.display[:40])}[/bold red]"
        details_table = Table.grid(padding=(1, 2))
        details_table.add_column(style="bold blue", no_wrap=True)
        details_table.add_column()
        details_table.add_row("Provider:", result.provider.id)
        if result.vars:
            details_table.add_row(
                "Vars:",
                Text(
                    ", ".join(
                        f"{k}={v}"
                        for k, v in result.vars.items()
                        if not k.startswith("_")
                    )
                ),
            )
        output = result.response.output if result.response else None
        if output is not None:
            details_table.add_row(
                "Output:", Text(_truncate_text(str(output), MAX_FAILURE_LINES))
            )
        details_table.add_row(
            "Reason:", Text(_truncate_text(result.error or "", MAX_FAILURE_LINES))
        )
        console.print(
            Panel(
                details_table,
                title=failure_title,
                border_style="red",
                expand=False,
                padding=(1, 2),
            )
        )


def render_summary(
    console: Console, summary: EvaluateSummary, elapsed_time: float
) -> None:
    """Renders the final summary panel."""
    stats = summary.stats
    usage = stats.token_usage
    summary_text = Text.from_markup(
        f"[bold red]{stats.failures} failed[/bold red], "
        f"[bold green]{stats.successes} passed[/bold green] "
        f"in {elapsed_time:.2f}s\n"
        f"[dim]Tokens: {usage.total} total, {usage.prompt} prompt, "
        f"{usage.completion} completion, {usage.cached} cached[/dim]"
    )
    console.print()
    console.print(
        Panel(
            summary_text,
            style="default",
            title="Eval Summary",
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()


def render_report_location(console: Console, run_dir: Path) -> None:
    console.print(f"Full results written to [cyan]{run_dir}[/cyan]")


def render_init_header() -> None:
    print()
    print("[bold]Initializing promptgrade project[green]...[/green][/bold]")


def render_init_report(report: List[Tuple[Dict[str, Any], str]]) -> None:
    print()
    print("[bold green]Successfully initialized promptgrade![/bold green]")
    print()
    print("Project files:")
    for file_spec, status in report:
        description = file_spec.get("description", "")
        print(f"  - [bold]{file_spec['path'].name:<30}[/bold] {description:<35} {status}")


def render_init_next_steps() -> None:
    panel_group = Group(
        Text.from_markup(
            "Copy [bold cyan].env.example[/bold cyan] to [bold cyan].env[/bold cyan]"
            " and set:"
        ),
        Text.from_markup(
            "\n  [grey50]OPENAI_API_KEY=[/grey50][yellow]your_key_here[/yellow]"
        ),
    )
    print()
    print("[bold]Next steps:[/bold]")
    print()
    print("[bold]1. Add your API key:[/bold]")
    print()
    print(
        Panel(
            panel_group,
            title="[bold]API Key Setup[/bold]",
            border_style="blue",
            expand=False,
            padding=(1, 2),
        )
    )
    print()
    print("[bold]2. Edit [cyan]promptgradeconfig.yaml[/cyan] with your prompts and tests.[/bold]")
    print()
    print("[bold]3. Run `promptgrade eval` to grade them.[/bold]")
    print()


def render_error(message: str) -> None:
    print(f"[bold red]Error:[/bold red] {message}")


def render_template_error(error: FileNotFoundError) -> None:
    error_message = Text.from_markup(
        f"[bold red]Error:[/bold red] Template file not found: {error.filename}"
    )
    error_message.no_wrap = True
    error_message.overflow = "ignore"
    print(error_message, file=sys.stderr)
    print(
        "Please ensure you are running a valid installation of promptgrade.",
        file=sys.stderr,
    )

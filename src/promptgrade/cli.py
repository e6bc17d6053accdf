# src/promptgrade/cli.py
import asyncio
import sys
import time
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console

from . import discovery, evaluator, reporting, ui

app = typer.Typer(help="Grade LLM prompts against test cases and assertions.")


def configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _execute_eval(
    *,
    config_path: Optional[Path] = None,
    max_concurrency: Optional[int] = None,
    repeat: Optional[int] = None,
    delay: Optional[int] = None,
    output: Optional[Path] = None,
    progress_bar: bool = True,
) -> int:
    """
    Shared path for the 'eval' command and the default callback.
    Returns the process exit code: 1 on configuration errors or failed tests.
    """
    console = Console()
    load_dotenv()
    config_path = config_path or discovery.DEFAULT_CONFIG_PATH
    start_time = time.perf_counter()
    try:
        config = discovery.read_config(config_path)
        suite = discovery.build_test_suite(config, config_path.parent)
        options = discovery.load_evaluate_options(
            config,
            {
                "max_concurrency": max_concurrency,
                "repeat": repeat,
                "delay": delay,
                "show_progress_bar": progress_bar,
            },
        )
        summary = asyncio.run(evaluator.evaluate(suite, options))
    except (FileNotFoundError, ValueError, EnvironmentError) as e:
        ui.render_error(str(e))
        return 1
    except Exception:
        console.print_exception(show_locals=False)
        return 1

    elapsed_time = time.perf_counter() - start_time
    ui.render_results_table(console, summary)
    ui.render_failures(console, summary)
    ui.render_summary(console, summary, elapsed_time)

    run_dir = reporting.save_run(summary, console)
    ui.render_report_location(console, run_dir)

    output_path = output or (
        Path(config["outputPath"]) if config.get("outputPath") else None
    )
    if output_path:
        try:
            reporting.write_output(summary, output_path)
        except ValueError as e:
            ui.render_error(str(e))
            return 1
        ui.render_report_location(console, output_path)

    return 1 if summary.stats.failures > 0 else 0


@app.command(name="eval")
def eval_command(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the config file (default: promptgradeconfig.yaml).",
    ),
    max_concurrency: Optional[int] = typer.Option(
        None,
        "--max-concurrency",
        min=1,
        help="Maximum number of concurrent provider calls.",
    ),
    repeat: Optional[int] = typer.Option(
        None, "--repeat", min=1, help="Number of times to run each test."
    ),
    delay: Optional[int] = typer.Option(
        None, "--delay", min=0, help="Delay between uncached provider calls, in ms."
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write results to a .json or .csv file."
    ),
    no_progress_bar: bool = typer.Option(
        False, "--no-progress-bar", help="Hide the progress bar."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """
    Runs every prompt x provider x test combination and grades the outputs.
    """
    configure_logging(verbose)
    exit_code = _execute_eval(
        config_path=config,
        max_concurrency=max_concurrency,
        repeat=repeat,
        delay=delay,
        output=output,
        progress_bar=not no_progress_bar,
    )
    if exit_code > 0:
        raise typer.Exit(code=exit_code)


@app.command()
def init():
    """
    Writes an example config and .env.example in the current directory.
    This command is idempotent and non-destructive.
    """
    ui.render_init_header()

    try:
        templates_dir = Path(__file__).parent / "templates"
        config_template = (templates_dir / "_config.yml").read_text(encoding="utf-8")
        env_template = (templates_dir / "_env.txt").read_text(encoding="utf-8")
    except FileNotFoundError as e:
        ui.render_template_error(e)
        raise typer.Exit(code=1)

    files_to_scaffold = [
        {
            "path": discovery.DEFAULT_CONFIG_PATH,
            "content": config_template,
            "description": "Example prompts, providers and tests",
        },
        {
            "path": Path(".env.example"),
            "content": env_template,
            "description": "Environment variable template",
        },
    ]

    scaffold_report = []
    for file_spec in files_to_scaffold:
        path = file_spec["path"]
        if not path.exists():
            path.write_text(file_spec["content"], encoding="utf-8")
            status = "[dim green](created)[/dim green]"
        else:
            status = "[dim](exists, skipped)[/dim]"
        scaffold_report.append((file_spec, status))

    ui.render_init_report(scaffold_report)
    ui.render_init_next_steps()


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """
    If no subcommand is provided, run the `eval` command with defaults.
    """
    if ctx.invoked_subcommand is None:
        configure_logging(False)
        exit_code = _execute_eval()
        if exit_code > 0:
            raise typer.Exit(code=exit_code)

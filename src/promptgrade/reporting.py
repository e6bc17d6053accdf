from __future__ import annotations

import csv
import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import List

from loguru import logger
from rich.console import Console

from .models import EvaluateSummary

REPORTS_DIR = Path(".promptgrade_reports")
LATEST_NAME = "latest"
RUN_DIR_FORMAT = "%Y-%m-%d_%H-%M-%S-%f"
SUMMARY_FILENAME = "results.json"
TABLE_FILENAME = "results.csv"
REPORT_FILENAMES = (SUMMARY_FILENAME, TABLE_FILENAME)


# --- Run directories ---


def new_run_directory(reports_dir: Path = REPORTS_DIR) -> Path:
    """Make an empty directory for one eval run, named after its start time.

    Runs started within the same tick get a `-1`, `-2`, ... suffix. `mkdir`
    itself decides the winner, so two processes never share a directory.
    """
    reports_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime(RUN_DIR_FORMAT)
    attempt = 0
    while True:
        run_dir = reports_dir / (f"{stamp}-{attempt}" if attempt else stamp)
        try:
            run_dir.mkdir()
            return run_dir
        except FileExistsError:
            attempt += 1


def _clear_latest(latest: Path) -> None:
    if latest.is_symlink() or latest.is_file():
        latest.unlink()
    elif latest.is_dir():
        shutil.rmtree(latest)


def update_latest(run_dir: Path, console: Console) -> Path:
    """Point `latest` beside `run_dir` at it.

    Where symlinks are unavailable the run's report files are copied into a
    plain `latest` directory instead. Problems are warnings: the run's own
    reports are already on disk.
    """
    latest = run_dir.parent / LATEST_NAME
    try:
        _clear_latest(latest)
    except OSError as e:
        console.print(
            f"[yellow]Warning:[/yellow] Could not replace '{LATEST_NAME}' at {latest}: {e}"
        )
        return latest

    try:
        os.symlink(run_dir.name, latest, target_is_directory=True)
        return latest
    except OSError as e:
        logger.debug(f"Symlink to {run_dir} failed: {e}")

    console.print(
        f"[yellow]Warning:[/yellow] Symlinks are unavailable; copying the reports "
        f"of {run_dir.name} into '{LATEST_NAME}'."
    )
    try:
        latest.mkdir()
        for name in REPORT_FILENAMES:
            if (run_dir / name).is_file():
                shutil.copy2(run_dir / name, latest / name)
    except OSError as e:
        console.print(f"[yellow]Warning:[/yellow] Could not copy reports: {e}")
    return latest


# --- Output files ---


def summary_to_json(summary: EvaluateSummary) -> str:
    # Callables and provider objects in assertions are written by their repr.
    data = summary.model_dump(by_alias=True, exclude_none=True)
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def table_rows(summary: EvaluateSummary) -> List[List[str]]:
    """Header row plus one row per table body row, for CSV export."""
    head = summary.table.head
    rows = [[*head.vars, *(prompt.display for prompt in head.prompts)]]
    for row in summary.table.body:
        if row is None:
            continue
        cells: List[str] = []
        for output in row.outputs:
            if output is None:
                cells.append("")
            else:
                status = "[PASS]" if output.passed else "[FAIL]"
                cells.append(f"{status} {output.text}")
        rows.append([*row.vars, *cells])
    return rows


def write_output(summary: EvaluateSummary, path: Path) -> None:
    """Writes the summary as JSON or the results table as CSV, by file extension."""
    suffix = path.suffix.lower()
    if suffix not in (".json", ".csv"):
        raise ValueError(f"Unsupported output format '{suffix}'. Use .json or .csv.")
    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix == ".json":
        path.write_text(summary_to_json(summary), encoding="utf-8")
        return
    with path.open("w", encoding="utf-8", newline="") as f:
        csv.writer(f).writerows(table_rows(summary))


def save_run(
    summary: EvaluateSummary, console: Console, reports_dir: Path = REPORTS_DIR
) -> Path:
    """Write the JSON summary and CSV table of a run and make it the latest."""
    run_dir = new_run_directory(reports_dir)
    for name in REPORT_FILENAMES:
        write_output(summary, run_dir / name)
    update_latest(run_dir, console)
    return run_dir

"""flotilla command line.

Commands:
    flotilla run --suite MODULE:ATTR [--filter GLOB]... [--parallelism N] [--timeout-per-test D]
    flotilla metadata --suite MODULE:ATTR [--output FILE]
    flotilla version

Exit codes for `run`:
    0 = every selected test passed
    1 = one or more tests failed, errored or timed out
    2 = invalid arguments (suite path, duration, filter, suite declaration)
    3 = cancelled by SIGINT/SIGTERM
"""

from __future__ import annotations

import asyncio
import importlib
import json
import os
import sys
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from flotilla import __version__
from flotilla.config import Settings, load_settings
from flotilla.drivers import create_driver
from flotilla.errors import FlotillaError, InvalidFilterError, InvalidSuiteError
from flotilla.execution.cancellation import CancelToken
from flotilla.execution.logs import JsonLinesLogSink, LogSink, MemoryLogSink
from flotilla.execution.runner import SuiteRunner, select_tests
from flotilla.logging import configure_logging
from flotilla.testsuite.result import Outcome, SuiteReport, TestResult
from flotilla.testsuite.test import TestSuite
from flotilla.utils.duration import parse_duration

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 3

app = typer.Typer(
    name="flotilla",
    help="Run container-network integration test suites",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

_OUTCOME_STYLES = {
    Outcome.PASSED: "green",
    Outcome.FAILED: "red",
    Outcome.ERRORED: "red",
    Outcome.TIMED_OUT: "yellow",
    Outcome.SKIPPED: "dim",
}


def _error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def load_suite(path: str) -> TestSuite:
    """Resolve `module:attr` to a TestSuite (or a zero-argument factory returning one)."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise InvalidSuiteError(f"Suite must be given as MODULE:ATTR, got {path!r}")

    # Suites usually live in the project being tested
    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    try:
        module = importlib.import_module(module_name)
    except Exception as e:
        raise InvalidSuiteError(f"Cannot import suite module {module_name!r}: {e}") from e
    try:
        target = getattr(module, attr)
    except AttributeError:
        raise InvalidSuiteError(f"Module {module_name!r} has no attribute {attr!r}") from None

    if callable(target) and not isinstance(target, TestSuite):
        try:
            target = target()
        except Exception as e:
            raise InvalidSuiteError(f"Suite factory {path!r} failed: {e}") from e
    if not isinstance(target, TestSuite):
        raise InvalidSuiteError(f"{path!r} is not a TestSuite (got {type(target).__name__})")
    return target


def _load_settings(config: Path | None) -> Settings:
    try:
        return load_settings(config)
    except (ValidationError, OSError, ValueError) as e:
        _error(f"Invalid configuration: {e}")
        raise typer.Exit(code=EXIT_USAGE) from None


def _render_report(report: SuiteReport) -> None:
    table = Table(title=f"Suite {report.suite}")
    table.add_column("Test")
    table.add_column("Outcome")
    table.add_column("Stage")
    table.add_column("Duration", justify="right")
    table.add_column("Reason")
    for result in report.results:
        style = _OUTCOME_STYLES[result.outcome]
        table.add_row(
            result.name,
            f"[{style}]{result.outcome.value}[/{style}]",
            result.stage.value if result.stage else "",
            f"{result.duration:.2f}s",
            result.reason or "",
        )
    console.print(table)
    summary = ", ".join(f"{count} {name}" for name, count in report.counts.items() if count)
    console.print(f"{len(report)} test(s) in {report.duration:.2f}s: {summary or 'nothing run'}")
    if report.cancelled:
        console.print("[yellow]Run cancelled[/yellow]")


async def _run_suite(
    runner: SuiteRunner,
    suite: TestSuite,
    filters: list[str] | None,
    parallelism: int | None,
    test_timeout: float | None,
    show_progress: bool,
) -> SuiteReport:
    cancel = CancelToken()
    restore = cancel.install_signal_handlers()

    def progress(result: TestResult) -> None:
        if show_progress:
            style = _OUTCOME_STYLES[result.outcome]
            err_console.print(f"[{style}]{result}[/{style}]")

    try:
        return await runner.run(
            suite,
            filters=filters,
            parallelism=parallelism,
            test_timeout=test_timeout,
            cancel=cancel,
            on_result=progress,
        )
    finally:
        restore()
        await runner.driver.close()


@app.command("run")
def run(
    suite: str = typer.Option(
        ...,
        "--suite",
        "-s",
        help="Test suite as MODULE:ATTR",
    ),
    filters: list[str] | None = typer.Option(
        None,
        "--filter",
        "-f",
        help="Test name or glob; repeat for several",
    ),
    parallelism: int | None = typer.Option(
        None,
        "--parallelism",
        "-p",
        min=1,
        help="Maximum tests running at once",
    ),
    timeout_per_test: str | None = typer.Option(
        None,
        "--timeout-per-test",
        "-t",
        help="Per-test deadline, e.g. 90s, 5m, 250ms",
    ),
    output: str = typer.Option(
        "text",
        "--output",
        "-o",
        help="Output format: text or json",
    ),
    log_dir: Path | None = typer.Option(
        None,
        "--log-dir",
        help="Write each test's captured log to DIR/<test>.jsonl",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a flotilla YAML config file",
    ),
) -> None:
    """Run a test suite.

    Examples:
        flotilla run --suite tests.integration:suite
        flotilla run -s tests.integration:suite --filter 'kv_*' --parallelism 2
        flotilla run -s tests.integration:suite -f replication -t 2m --output json
    """
    if output not in ("text", "json"):
        _error(f"Invalid output format: '{output}'. Use 'text' or 'json'.")
        raise typer.Exit(code=EXIT_USAGE)

    test_timeout = None
    if timeout_per_test is not None:
        try:
            test_timeout = parse_duration(timeout_per_test)
        except ValueError as e:
            _error(f"Invalid --timeout-per-test: {e}")
            raise typer.Exit(code=EXIT_USAGE) from None

    settings = _load_settings(config)
    configure_logging(settings.logging.level, settings.logging.format)

    try:
        test_suite = load_suite(suite)
        test_suite.validate()
        selected = select_tests(test_suite, filters)
    except (InvalidSuiteError, InvalidFilterError) as e:
        _error(e.message)
        raise typer.Exit(code=EXIT_USAGE) from None

    if not selected and output != "json":
        err_console.print("[yellow]No test matches the given filters[/yellow]")

    capture_dir = log_dir or settings.logging.capture_dir
    sink: LogSink = JsonLinesLogSink(capture_dir) if capture_dir else MemoryLogSink()

    runner = SuiteRunner.from_settings(settings, create_driver(settings.driver), log_sink=sink)
    try:
        report = asyncio.run(
            _run_suite(
                runner,
                test_suite,
                filters,
                parallelism,
                test_timeout,
                show_progress=output != "json",
            )
        )
    except FlotillaError as e:
        _error(e.message)
        raise typer.Exit(code=EXIT_FAILED) from None

    if output == "json":
        # Plain print keeps Rich from wrapping the JSON
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _render_report(report)

    if report.cancelled:
        raise typer.Exit(code=EXIT_CANCELLED)
    raise typer.Exit(code=EXIT_SUCCESS if report.succeeded else EXIT_FAILED)


@app.command("metadata")
def metadata(
    suite: str = typer.Option(
        ...,
        "--suite",
        "-s",
        help="Test suite as MODULE:ATTR",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the JSON to FILE instead of stdout",
    ),
) -> None:
    """Print the suite's metadata (network widths, timeouts, descriptions) as JSON."""
    try:
        test_suite = load_suite(suite)
        test_suite.validate()
    except InvalidSuiteError as e:
        _error(e.message)
        raise typer.Exit(code=EXIT_USAGE) from None

    text = json.dumps(test_suite.metadata(), indent=2)
    if output is None:
        print(text)
    else:
        output.write_text(text + "\n")
        err_console.print(f"Wrote suite metadata to {output}")


@app.command("version")
def version() -> None:
    """Print the flotilla version."""
    print(__version__)


def main() -> None:
    app()


if __name__ == "__main__":
    main()

"""
Command-line interface for pagerunner.

Provides commands for running test files inside browsers and listing the
configured browsers.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from xml.sax.saxutils import quoteattr

import structlog

from pagerunner import __version__
from pagerunner.config import RunnerConfig, load_runner_config, load_runner_config_file
from pagerunner.execution import browser_marker
from pagerunner.runner.adapter import BrowserTestRunner, RunSummary

logger = structlog.get_logger(__name__)

TEST_FILE_PATTERNS: tuple[str, ...] = ("*.test.*", "*.spec.*")
NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "playwright")


@dataclass
class CollectedFile:
    """A test file discovered on disk."""

    filepath: str


@dataclass
class FileTask:
    """One task per file: passes when the file imports cleanly in its browser."""

    id: str
    name: str
    file: CollectedFile
    result: dict[str, Any] = field(default_factory=dict)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(getattr(args, "verbose", False), getattr(args, "command", None))

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except Exception as e:
        logger.error("Command failed", error=str(e))
        if hasattr(args, "verbose") and args.verbose:
            raise
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="pagerunner",
        description="Run test modules inside real browser engines",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"pagerunner {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--config",
        help="Path to a YAML configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run test files in browsers")
    run_parser.add_argument(
        "paths",
        nargs="+",
        help="Test files or directories to search for *.test.* / *.spec.* files",
    )
    run_parser.add_argument(
        "--browser", "-b",
        help="Run only this browser identifier",
    )
    run_parser.add_argument(
        "--browsers",
        help="Comma-separated browsers to configure (e.g. chrome,firefox)",
    )
    run_parser.add_argument(
        "--dev-server-url",
        help="Dev-server origin pages are navigated to",
    )
    run_parser.add_argument(
        "--timeout",
        type=float,
        help="Bridge timeout in seconds",
    )
    run_parser.add_argument(
        "--headed",
        action="store_true",
        help="Show browser windows",
    )
    run_parser.add_argument(
        "--output-format",
        choices=["json", "junit"],
        default="json",
        help="Output format for results",
    )
    run_parser.add_argument(
        "--output-file",
        help="Output file path",
    )
    run_parser.set_defaults(func=cmd_run)

    browsers_parser = subparsers.add_parser("browsers", help="List configured browsers")
    browsers_parser.set_defaults(func=cmd_browsers)

    return parser


def configure_logging(verbose: bool, command: str | None = None) -> None:
    """
    Configure structlog over stdlib logging, writing to stderr.

    Driver and event-loop chatter only shows up with ``--verbose``. The
    command name is bound as context so every event carries it.
    """
    level = logging.DEBUG if verbose else logging.INFO
    renderer: Any = (
        structlog.dev.ConsoleRenderer() if verbose else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if verbose else logging.WARNING)

    structlog.contextvars.clear_contextvars()
    if command:
        structlog.contextvars.bind_contextvars(command=command)


def build_config(args: argparse.Namespace) -> RunnerConfig:
    """Build configuration from file, environment and command-line flags."""
    config_file = getattr(args, "config", None)
    config = load_runner_config_file(config_file) if config_file else load_runner_config()

    browsers = getattr(args, "browsers", None)
    return config.with_overrides(
        browsers=tuple(b.strip() for b in browsers.split(",")) if browsers else None,
        selected_browser=getattr(args, "browser", None),
        dev_server_url=getattr(args, "dev_server_url", None),
        bridge_timeout_seconds=getattr(args, "timeout", None),
        headless=False if getattr(args, "headed", False) else None,
    )


def discover_test_files(paths: list[str]) -> list[str]:
    """Expand directories into test files; keep explicit files as given."""
    found: list[str] = []
    for path_str in paths:
        path = Path(path_str)
        if path.is_dir():
            matches = {p for pattern in TEST_FILE_PATTERNS for p in path.rglob(pattern)}
            found.extend(
                str(p) for p in sorted(matches) if p.is_file() and "node_modules" not in p.parts
            )
        elif path.is_file():
            found.append(str(path))
        else:
            print(f"Warning: Path not found: {path}", file=sys.stderr)
    return list(dict.fromkeys(found))


def select_test_files(filepaths: list[str], config: RunnerConfig) -> list[str]:
    """
    Drop files whose filename marker names a configured browser outside the
    selection. Without a selection every file is kept.
    """
    active = {spec.name for spec in config.active_browsers()}
    selected: list[str] = []
    for filepath in filepaths:
        marker = browser_marker(filepath, config.browser_names)
        if marker is not None and marker not in active:
            logger.info("Skipping file for unselected browser", filepath=filepath, browser=marker)
            continue
        selected.append(filepath)
    return selected


async def run_files(runner: BrowserTestRunner, filepaths: list[str]) -> list[FileTask]:
    """Drive the runner through the full hook sequence, one task per file."""
    files = [CollectedFile(filepath=fp) for fp in filepaths]
    tasks = [FileTask(id=str(i), name=f.filepath, file=f) for i, f in enumerate(files)]
    try:
        await runner.on_before_collect(filepaths)
        await runner.on_collected(files)

        for task in tasks:
            await runner.on_before_run_task(task)
            try:
                await runner.import_file(task.file.filepath)
                task.result = {"state": "pass"}
            except Exception as e:
                task.result = {"state": "fail", "error": str(e)}
            await runner.on_after_run_task(task)
    finally:
        await runner.on_after_run_files(files)

    return tasks


def cmd_run(args: argparse.Namespace) -> int:
    """Run test files in browsers."""
    from dotenv import load_dotenv

    # Load environment variables from .env file
    load_dotenv()

    filepaths = discover_test_files(args.paths)
    if not filepaths:
        print("No test files found", file=sys.stderr)
        return 1

    config = build_config(args)
    filepaths = select_test_files(filepaths, config)
    if not filepaths:
        print(f"No test files for browser {config.selected_browser}", file=sys.stderr)
        return 1

    runner = BrowserTestRunner(config)
    tasks = asyncio.run(run_files(runner, filepaths))

    output = format_results(tasks, runner, args.output_format)
    if args.output_file:
        Path(args.output_file).write_text(output)
        print(f"Results written to {args.output_file}")
    else:
        print(output)

    summary = runner.summary or RunSummary()
    print(f"\nSummary: {summary.passed} passed, {summary.failed} failed, {summary.total} total")

    return 0 if summary.is_success else 1


def format_results(tasks: list[FileTask], runner: BrowserTestRunner, format_type: str) -> str:
    """Format per-file results."""
    records = runner.records
    rows = [
        {
            "file": task.file.filepath,
            "browser": records[task.id].browser if task.id in records else None,
            "state": task.result.get("state"),
            "error": task.result.get("error"),
        }
        for task in tasks
    ]

    if format_type == "junit":
        failures = sum(1 for r in rows if r["state"] == "fail")
        lines = ['<?xml version="1.0" encoding="UTF-8"?>']
        lines.append(f'<testsuite name="pagerunner" tests="{len(rows)}" failures="{failures}">')
        for row in rows:
            name = quoteattr(row["file"])
            classname = quoteattr(row["browser"] or "unknown")
            lines.append(f"  <testcase name={name} classname={classname}>")
            if row["state"] == "fail":
                lines.append(f"    <failure message={quoteattr(str(row['error']))}/>")
            lines.append("  </testcase>")
        lines.append("</testsuite>")
        return "\n".join(lines)

    return json.dumps(rows, indent=2)


def cmd_browsers(args: argparse.Namespace) -> int:
    """List configured browsers."""
    config = build_config(args)
    active = {spec.name for spec in config.active_browsers()}
    for spec in config.specs:
        marker = "*" if spec.name in active else " "
        channel = f" ({spec.channel})" if spec.channel else ""
        print(f"{marker} {spec.name}: {spec.engine}{channel}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

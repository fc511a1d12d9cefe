"""
Logging and console helpers for enclaveplan.

Run reports go to stdout through `console`; logs go to stderr (and an
optional file) through the `enclaveplan` logger.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape


# Run reports; logs never go through this console
console = Console()

# LogRecord attributes copied into structured log lines when present
STRUCTURED_EXTRAS = ("package_id", "instruction_index", "event")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the `enclaveplan` logger.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "structured" (one JSON object per line) or "pretty" (rich)
        log_file: Also append to this file, creating its directory
        console_output: Log to stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger("enclaveplan")
    logger.setLevel(log_level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            StructuredFormatter() if log_format == "structured"
            else logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
        logger.addHandler(file_handler)

    if console_output:
        stream_handler: logging.Handler
        if log_format == "pretty":
            stream_handler = RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_time=False, show_path=False
            )
        else:
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(StructuredFormatter())
        logger.addHandler(stream_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, carrying the run's extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_EXTRAS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def print_output_line(line: str) -> None:
    """Print one instruction's output verbatim."""
    console.print(line, markup=False, highlight=False)


def print_success(message: str) -> None:
    console.print(f"[bold green]✓[/bold green] {escape(message)}", highlight=False)


def print_failure(label: str, message: str) -> None:
    """Print an error of one kind, e.g. print_failure("Validation error", str(e))."""
    console.print(f"[bold red]✗ {label}:[/bold red] {escape(message)}", highlight=False)


def print_dry_run_banner() -> None:
    console.print("[yellow]=== DRY RUN === (no backend calls)[/yellow]")

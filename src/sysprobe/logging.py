"""Console messages for the CLI and the JSON log file behind structlog.

Human-facing lines go to stderr through Rich, tagged with a time and level.
Engine modules never print; they emit structlog events, which `configure`
sends to a rotating file of one JSON object per line.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from sysprobe.config import Config

_console = Console(highlight=False, stderr=True)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Markers shown between the level tag and the message."""

    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    REFRESH = "[cyan]↻[/]"
    SAVE = "💾"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}

_STDLIB_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print `msg` (Rich markup allowed) after a timestamp, level tag and `icon`."""
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def refresh_summary(examined: int, created: int, removed: int, elapsed_ms: int) -> None:
    """Log the outcome of a refresh cycle."""
    info(
        f"[cyan]{examined}[/] processes "
        f"[dim]({created} new, {removed} gone, {elapsed_ms}ms)[/]",
        Icon.REFRESH,
    )


def sampling(interval: float) -> None:
    """Log that the CLI is waiting for a second sample."""
    info(f"[dim]Sampling for {interval}s...[/]", Icon.WAIT)


def process_not_found(pid: int) -> None:
    """Log a requested pid that does not exist."""
    error(f"No process with PID [bold]{pid}[/]", Icon.FAIL)


def enumeration_failed(error_msg: str) -> None:
    """Log that the process list could not be read."""
    error(f"Cannot list processes: {escape(error_msg)}", Icon.FAIL)


def signal_sent(pid: int, name: str, sig: str) -> None:
    info(f"Sent [bold]{sig}[/] to [cyan]{escape(name)}[/] [dim](PID {pid})[/]")


def signal_failed(pid: int, sig: str) -> None:
    """Log a signal the OS refused to deliver."""
    error(f"Could not send [bold]{sig}[/] to PID [bold]{pid}[/]", Icon.FAIL)


def backend_selected(name: str) -> None:
    """Log which snapshot source is in use."""
    info(f"Backend: [cyan]{name}[/]")


def config_created(path: str) -> None:
    """Log a freshly written config file."""
    info(f"Created config at [cyan]{path}[/]", Icon.SAVE)


def config_exists(path: str) -> None:
    """Log config file already present."""
    warn(f"Config already exists at [cyan]{path}[/] [dim](use --force to overwrite)[/]")


def config_invalid(error_msg: str) -> None:
    """Log an invalid config file."""
    error(f"Invalid config: {escape(error_msg)}", Icon.FAIL)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Processor stamping every event with `source`."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog to write JSON Lines to a rotating file.

    Library modules log through `structlog.get_logger()`; after this call
    their events land in `config.log_path` at `config.logging.level` and
    above. Console output is left to the Rich helpers above.

    Args:
        config: Application config with paths and logging settings
    """
    level = _STDLIB_LEVELS.get(config.logging.level, logging.INFO)

    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.logging.log_max_bytes,
        backupCount=config.logging.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)

    # Events from plain stdlib loggers get the same fields via foreign_pre_chain.
    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(level)

    # Clear any existing handlers, closing log files from a previous configure()
    for handler in stdlib_root.handlers[:]:
        stdlib_root.removeHandler(handler)
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            handler.close()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("sysprobe"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source("sysprobe"),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

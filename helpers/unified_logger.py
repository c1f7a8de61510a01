"""
Unified logging for the virtual grid engine.

Every component (grid owners, cost model, exchange collaborators, the bot
coordinator) logs through the same loguru sinks:
- Colored console output with source location (module:function:line)
- A shared history file plus one file per session under ``logs/``
- Component context (``STRATEGY:VIRTUAL_GRID:symbol=BTC``) bound to each record

Backward compatible ``.log(message, level)`` calls are supported so that
components can pass log levels around as strings.
"""

import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger as _logger


_SOURCE_WIDTH = 48


def _logs_dir() -> Path:
    """Resolve (and create) the directory used for file sinks."""
    override = os.getenv("LOG_DIR")
    logs_dir = Path(override) if override else Path(__file__).parent.parent / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir


def _shorten_module(module: str, max_width: int) -> str:
    if len(module) <= max_width:
        return module
    parts = module.split(".")
    for idx in range(len(parts) - 1):
        candidate = ".".join(parts[idx:])
        if len(candidate) + 3 <= max_width:
            return f"...{candidate}"
    return f"...{parts[-1][-(max_width - 3):]}"


def _format_source(record) -> bool:
    """Console filter that also prepares the right-aligned source column."""
    if not record["extra"].get("component_id"):
        return False
    suffix = f":{record['function']}:{record['line']}"
    available = _SOURCE_WIDTH - len(suffix)
    module_display = "..." if available <= 3 else _shorten_module(record["name"] or "", available)
    record["extra"]["short_name"] = f"{module_display}{suffix}".rjust(_SOURCE_WIDTH)
    return True


def _ensure_component(record) -> bool:
    record["extra"].setdefault("component_id", "UNKNOWN")
    return True


class UnifiedLogger:
    """
    Component-scoped logger sharing one set of loguru sinks.

    Sinks are configured once per process; each instance only binds its own
    component identifier.
    """

    def __init__(
        self,
        component_type: str,
        component_name: str,
        context: Optional[Dict[str, Any]] = None,
        log_to_console: bool = True,
        log_level: str = "INFO",
    ):
        """
        Args:
            component_type: Type of component (strategy, exchange, core, bot)
            component_name: Name of the specific component
            context: Extra context such as symbol or venue
            log_to_console: Whether console output is enabled
            log_level: Minimum console log level
        """
        self.component_type = component_type.upper()
        self.component_name = component_name.upper()
        self.context = context or {}
        self.log_level = log_level.upper()

        self.component_id = f"{self.component_type}:{self.component_name}"
        if self.context:
            context_str = ":".join(f"{k}={v}" for k, v in self.context.items())
            self.component_id = f"{self.component_id}:{context_str}"

        self._setup_sinks(log_to_console)
        self._logger = _logger.bind(component_id=self.component_id)

    def _setup_sinks(self, log_to_console: bool) -> None:
        """Install the shared console and file sinks on first use."""
        if not hasattr(_logger, "_vgrid_console_setup"):
            _logger.remove()
            if log_to_console:
                console_format = (
                    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                    "<level>{level: <8}</level> | "
                    "<cyan>{extra[short_name]}</cyan> | "
                    "<level>{message}</level>"
                )
                _logger.add(
                    sys.stdout,
                    format=console_format,
                    level=self.log_level,
                    colorize=True,
                    filter=_format_source,
                    backtrace=True,
                    diagnose=True,
                )
            _logger._vgrid_console_setup = True

        file_format = (
            "{time:YYYY-MM-DD HH:mm:ss} | "
            "{level:<8} | "
            "{extra[component_id]:<35} | "
            "{message}"
        )

        if not hasattr(_logger, "_vgrid_history_setup"):
            _logger.add(
                str(_logs_dir() / "unified_history.log"),
                format=file_format,
                level="DEBUG",
                filter=_ensure_component,
                rotation="50 MB",
                retention=5,
                compression="zip",
                enqueue=True,
                catch=True,
            )
            _logger._vgrid_history_setup = True

        if not hasattr(_logger, "_vgrid_session_setup"):
            session_ts = datetime.now().strftime("%Y%m%d_%H%M%S")
            _logger.add(
                str(_logs_dir() / f"session_{session_ts}.log"),
                format=file_format,
                level="DEBUG",
                filter=_ensure_component,
                enqueue=True,
                catch=True,
            )
            _logger._vgrid_session_setup = True

    def debug(self, message: str, **kwargs):
        self._logger.opt(depth=1).debug(message, **kwargs)

    def info(self, message: str, **kwargs):
        self._logger.opt(depth=1).info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._logger.opt(depth=1).warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self._logger.opt(depth=1).error(message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._logger.opt(depth=1).critical(message, **kwargs)

    def log(self, message: str, level: str = "INFO", **kwargs):
        """
        Log with a string level.

        Args:
            message: Log message
            level: DEBUG, INFO, WARNING, ERROR or CRITICAL (unknown levels log as INFO)
            **kwargs: Structured context bound to the record
        """
        level = level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            level = "INFO"
        bound = self._logger.bind(**kwargs) if kwargs else self._logger
        bound.opt(depth=1).log(level, message)

    def flush(self):
        """Give enqueued file writes a moment to land before shutdown."""
        self._logger.opt(depth=1).debug("LOG_FLUSH_MARKER")
        time.sleep(0.05)
        sys.stdout.flush()
        sys.stderr.flush()


def get_logger(
    component_type: str,
    component_name: str,
    context: Optional[Dict[str, Any]] = None,
    log_to_console: bool = True,
    log_level: Optional[str] = None,
) -> UnifiedLogger:
    """
    Factory for unified loggers.

    Examples:
        logger = get_logger("strategy", "virtual_grid", {"symbol": "BTC"})
        logger = get_logger("exchange", "paper")
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    return UnifiedLogger(
        component_type=component_type,
        component_name=component_name,
        context=context,
        log_to_console=log_to_console,
        log_level=log_level,
    )


def get_exchange_logger(exchange_name: str, symbol: str = None, **context) -> UnifiedLogger:
    """Get logger for exchange collaborators."""
    ctx = {"symbol": symbol} if symbol else {}
    ctx.update(context)
    return get_logger("exchange", exchange_name, ctx)


def get_strategy_logger(strategy_name: str, **context) -> UnifiedLogger:
    """Get logger for per-symbol strategy owners."""
    return get_logger("strategy", strategy_name, context)


def get_core_logger(module_name: str, **context) -> UnifiedLogger:
    """Get logger for core components."""
    return get_logger("core", module_name, context)


def log_stage(
    logger_obj: Any,
    title: str,
    *,
    icon: Optional[str] = None,
    stage_id: Optional[str] = None,
    border: str = "=",
    width: int = 55,
    level: str = "INFO",
) -> None:
    """
    Log a separator block to highlight a lifecycle phase.

    Args:
        logger_obj: UnifiedLogger to emit on
        title: Stage title
        icon: Optional prefix
        stage_id: Optional hierarchical identifier (e.g. "1", "2.1")
        border: Separator character
        width: Separator width
        level: Log level
    """
    label_parts = []
    if stage_id:
        label_parts.append(f"{stage_id}.")
    if icon:
        label_parts.append(icon)
    label_parts.append(title)

    border_line = border * width
    for message in (border_line, " ".join(label_parts), border_line):
        logger_obj.log(message, level=level.upper())

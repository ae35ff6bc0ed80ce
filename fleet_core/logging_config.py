"""
LOGGING
=======

Logging for the fleet supervisor.

Everything logs under the ``fleet_core`` parent logger. Each record is
stamped with the agent whose executor or task emitted it (looked up through
the current AgentContext), so interleaved output from many agents stays
readable::

    2024-05-06 12:00:01 | WARNING  | alpha | fleet_core.executor | Watchdog ending session ...

Level and log directory default to the global config (``log_level`` and
``paths.logs_dir``).
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from .context import get_current_context

_logging_configured = False

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(agent)s | %(name)s | %(message)s"
LOG_FILE_NAME = "fleet.log"
NO_AGENT = "-"


class AgentContextFilter(logging.Filter):
    """Adds ``record.agent``; records from outside any agent get ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "agent"):
            ctx = get_current_context()
            record.agent = ctx.name if ctx is not None else NO_AGENT
        return True


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure fleet logging with console and optional file output.

    Args:
        level: Logging level name. ``None`` uses the global config's ``log_level``.
        log_file: Path to log file.
            - ``None``  → ``<logs_dir>/fleet.log``
            - ``"none"`` → disable file logging
            - any other string → use as explicit file path
    """
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    if level is None or log_file is None:
        from .config.loader import get_config_manager
        manager = get_config_manager()
        level = level or manager.global_config.log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    parent_logger = logging.getLogger("fleet_core")
    parent_logger.setLevel(numeric_level)
    parent_logger.propagate = False

    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    agent_filter = AgentContextFilter()

    console = logging.StreamHandler()
    console.setLevel(numeric_level)
    console.setFormatter(fmt)
    console.addFilter(agent_filter)
    parent_logger.addHandler(console)

    if isinstance(log_file, str) and log_file.lower() == "none":
        return

    if log_file is None:
        log_dir = manager.logs_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        resolved_path = str(log_dir / LOG_FILE_NAME)
    else:
        resolved_path = log_file
        Path(resolved_path).parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        resolved_path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(fmt)
    file_handler.addFilter(agent_filter)
    parent_logger.addHandler(file_handler)

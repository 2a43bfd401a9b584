"""Loguru-based logging configuration.

Provides:
- Separate log files for llama-server output and the supervisor itself
- Configurable log levels via environment variables
- Automatic rotation and retention
- Intercept handler for standard logging compatibility

Environment Variables:
- LLM_SUPERVISOR_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR). Default: INFO
- LLM_SUPERVISOR_LOG_DIR: Log directory path. Default: logs/
"""

import logging
import os
import sys
from pathlib import Path

from loguru import logger

# Environment variables
LOG_LEVEL = os.environ.get("LLM_SUPERVISOR_LOG_LEVEL", "INFO").upper()
LOG_DIR = Path(os.environ.get("LLM_SUPERVISOR_LOG_DIR", "logs"))

# Track if logging has been configured to avoid duplicate setup
_logging_configured = False


def _is_subprocess_record(record: dict) -> bool:
    return bool(record["extra"].get("subprocess"))


def setup_logging() -> None:
    """Configure Loguru logging with separate files.

    Sets up:
    - Console output (stderr) with colorized format
    - llama-server log file for captured subprocess output
    - Supervisor log file for everything else

    Log files are rotated at 10 MB and retained for 7 days.
    """
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    logger.remove()

    logger.add(
        sys.stderr,
        level=LOG_LEVEL,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    # Raw subprocess output (bound with subprocess=True by the process handle)
    logger.add(
        LOG_DIR / "llama-server.log",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {extra[stream]: <6} | {message}",
        rotation="10 MB",
        retention="7 days",
        filter=_is_subprocess_record,
    )

    logger.add(
        LOG_DIR / "llm-supervisor.log",
        level=LOG_LEVEL,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        rotation="10 MB",
        retention="7 days",
        filter=lambda record: not _is_subprocess_record(record),
    )


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to Loguru.

    httpx and httpcore log through the standard library; this handler routes
    their records through our Loguru configuration.
    """

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record by forwarding to Loguru."""
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = str(record.levelno)

        # Find caller from where the logged message originated
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def intercept_standard_logging() -> None:
    """Redirect all standard logging to Loguru."""
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Suppress noisy third-party loggers
    for name in ["httpx", "httpcore"]:
        logging.getLogger(name).setLevel(logging.WARNING)

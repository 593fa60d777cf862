from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "RPI_CHROOT_LOG_DIR",
        Path.home() / ".local" / "state" / "rpi-chroot" / "logs",
    )
)


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <10}</cyan> | "
    "{message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <18} | {message}"
)
DEBUG_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <18} | {extra[tags]} | {message}"
)


def _should_log_command(record) -> bool:
    """Keep raw command output out of the console unless tracing."""
    if record["level"].no >= logger.level("WARNING").no:
        return True
    if "output" in record["extra"].get("tags", []):
        return record["level"].no <= logger.level("TRACE").no
    return True


def _console_level(debug: bool, trace: bool) -> str:
    if trace:
        return "TRACE"
    return "DEBUG" if debug else "INFO"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup console and file logging.

    Logging Tiers:
    - CRITICAL/ERROR: Failed provisioning steps, mount or loop errors
    - SUCCESS/INFO: Lifecycle steps (download, bind, mount, enter)
    - DEBUG: Every external command and its return code
    - TRACE: Raw command output

    Log Files (under ``log_dir``):
    - operations.log: INFO and above, kept for a week
    - debug.log: everything at DEBUG/TRACE, only with --debug or --trace
    - structured.jsonl: INFO and above as JSON records

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (includes command output)
        log_dir: Custom log directory (defaults to ~/.local/state/rpi-chroot/logs)
        file_logging: Disable to log to stderr only (e.g. unwritable home)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "rpi-chroot"})

    logger.add(
        sys.stderr,
        level=_console_level(debug, trace),
        filter=_should_log_command,
        colorize=True,
        backtrace=False,
        diagnose=False,
        format=CONSOLE_FORMAT,
    )
    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    rotated = {"compression": "zip", "backtrace": False, "diagnose": False}

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        format=FILE_FORMAT,
        **rotated,
    )
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            format=DEBUG_FILE_FORMAT,
            **dict(rotated, backtrace=True, diagnose=True),
        )
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        serialize=True,
        format="{message}",
        **rotated,
    )
    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["mount", "storage"])
        source: Source component (e.g., "loop", "mount", "shell")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking lifecycle operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "install", "mount", "addsize")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("mount", root="/srv/pi") as log:
            log.debug("Binding loop device")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed: {e}",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the component.
    """

    @staticmethod
    def for_image() -> Logger:
        """Logger for image download, extraction and padding."""
        return logger.bind(source="image", tags=["image", "storage"])

    @staticmethod
    def for_download() -> Logger:
        """Logger for archive transfers."""
        return logger.bind(source="download", tags=["download", "network"])

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device binding."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_resize() -> Logger:
        """Logger for partition and filesystem growth."""
        return logger.bind(source="resize", tags=["resize", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount tree setup and teardown."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_emulation() -> Logger:
        """Logger for qemu and binfmt setup."""
        return logger.bind(source="emulation", tags=["emulation", "qemu"])

    @staticmethod
    def for_shell() -> Logger:
        """Logger for entering the chroot."""
        return logger.bind(source="shell", tags=["shell", "chroot"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config, packages)."""
        return logger.bind(source="system", tags=["system"])

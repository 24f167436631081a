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
        "VM_IMAGE_BUILDER_LOG_DIR",
        Path.home() / ".local" / "state" / "vm-image-builder" / "logs",
    )
)

# Note: TRACE level already exists in loguru at level 5 (below DEBUG which is 10)


def _should_log_tool_output(record) -> bool:
    """Hide raw tool output on the console unless DEBUG is enabled."""
    tags = record["extra"].get("tags", [])

    if "tool-output" in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _console_filter(record) -> bool:
    """Combined filter for console suppression rules."""
    return _should_log_tool_output(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Stage failures, unwind failures
    - SUCCESS/INFO: Stage start/completion, acquired and released resources
    - DEBUG: Command execution and streamed tool output
    - TRACE: Ultra-verbose (every mount table lookup)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/vm-image-builder/logs)
        file_logging: Disable to only log to stderr
    """
    logger.remove()
    logger.configure(extra={"build_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_console_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[build_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics, including tool output
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[build_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    build_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        build_id: Build identifier for tracking a pipeline run
        tags: Tags for filtering (e.g., ["mount", "storage"])
        source: Source component (e.g., "device", "mount", "rootfs")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if build_id is not None:
        extras["build_id"] = build_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_build_id() -> str:
    return f"build-{uuid.uuid4().hex[:8]}"


@contextmanager
def build_context(build_id: str, **extra):
    """
    Context manager binding ``build_id`` to every log emitted inside it.

    Args:
        build_id: Build identifier
        **extra: Additional context to bind
    """
    with logger.contextualize(build_id=build_id, **extra):
        yield get_logger(build_id=build_id, source="pipeline", tags=["pipeline"])


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a pipeline stage with automatic timing.

    Automatically logs stage start, completion, and failure with duration tracking.

    Args:
        operation: Stage name (e.g., "bind", "bootstrap", "export")
        **details: Stage-specific details to log

    Yields:
        Logger bound with the stage context

    Example:
        with operation_context("bind", image="image.img") as log:
            log.debug("Writing partition table")
    """
    with logger.contextualize(operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, tags=["stage", operation])

        log.info(f"Stage {operation} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"Stage {operation} completed"
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.bind(
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"Stage {operation} failed: {e}")
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the component.
    """

    @staticmethod
    def for_device() -> Logger:
        """Logger for backing file, partition table and loop device handling."""
        return logger.bind(source="device", tags=["device", "storage"])

    @staticmethod
    def for_filesystem() -> Logger:
        """Logger for mkfs, sub-volume and trim operations."""
        return logger.bind(source="filesystem", tags=["filesystem", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount stack operations."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_rootfs() -> Logger:
        """Logger for bootstrap and package installation."""
        return logger.bind(source="rootfs", tags=["rootfs"])

    @staticmethod
    def for_config() -> Logger:
        """Logger for first-boot configuration injection."""
        return logger.bind(source="config", tags=["rootfs", "config"])

    @staticmethod
    def for_cleanup() -> Logger:
        """Logger for resource unwinding."""
        return logger.bind(source="cleanup", tags=["cleanup"])

    @staticmethod
    def for_export() -> Logger:
        """Logger for image conversion."""
        return logger.bind(source="export", tags=["export"])

    @staticmethod
    def for_pipeline() -> Logger:
        """Logger for stage sequencing."""
        return logger.bind(source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config, host checks)."""
        return logger.bind(source="system", tags=["system"])

    @staticmethod
    def for_tool_output(tool: str) -> Logger:
        """Logger for lines streamed from an external tool."""
        return logger.bind(source=tool, tags=["tool-output", tool])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging resource lifecycle events with
    consistent structure and fields.
    """

    @staticmethod
    def log_resource_acquired(log: Logger, kind: str, resource: str, **extra) -> None:
        """Log a resource registered for unwinding."""
        log.bind(
            event_type="resource_acquired",
            resource_kind=kind,
            resource=resource,
            **extra,
        ).info(f"Acquired {kind} {resource}")

    @staticmethod
    def log_resource_released(log: Logger, kind: str, resource: str, **extra) -> None:
        """Log a resource released during unwinding."""
        log.bind(
            event_type="resource_released",
            resource_kind=kind,
            resource=resource,
            **extra,
        ).info(f"Released {kind} {resource}")

    @staticmethod
    def log_release_failed(
        log: Logger, kind: str, resource: str, error: BaseException, **extra
    ) -> None:
        """Log a resource that could not be released."""
        log.bind(
            event_type="resource_release_failed",
            resource_kind=kind,
            resource=resource,
            error_type=type(error).__name__,
            **extra,
        ).error(f"Failed to release {kind} {resource}: {error}")

"""Logging utilities for agentrelay."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = "agentrelay"


def setup_logging(
    level: int = logging.INFO,
    log_dir: str | Path = "logs",
    console_level: int = logging.WARNING,
) -> logging.Logger:
    """Setup logging configuration for agentrelay.

    Args:
        level: Level for the detailed file log (default: INFO)
        log_dir: Directory that receives the timestamped log file
        console_level: Level for the console handler (default: WARNING)

    Returns:
        Configured package logger
    """
    logs_dir = Path(log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / f"agentrelay_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # Handlers filter
    logger.propagate = False

    logger.handlers = []

    # File handler (detailed logs)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))

    # Console handler (user-friendly)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    logger.info("=" * 80)
    logger.info("agentrelay session started")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 80)

    return logger


def log_task_transition(
    logger: logging.Logger,
    task_id: str,
    from_state: Optional[str],
    to_state: str,
    detail: str = "",
) -> None:
    """Log a task state-machine transition.

    Args:
        logger: Logger instance
        task_id: Task identifier
        from_state: Previous state (None for the initial transition)
        to_state: New state
        detail: Optional free-form detail
    """
    suffix = f" ({detail})" if detail else ""
    logger.info(f"Task {task_id}: {from_state or 'start'} → {to_state}{suffix}")


def log_provider_switch(
    logger: logging.Logger,
    task_id: str,
    from_label: str,
    to_label: str,
    reason: str,
) -> None:
    """Log a fallback from one candidate to the next."""
    logger.warning(f"Task {task_id}: provider switch {from_label} → {to_label} ({reason})")


def log_provider_result(
    logger: logging.Logger,
    provider_id: str,
    model: str,
    text: str,
    duration: float,
    success: bool = True,
) -> None:
    """Log a provider execution result.

    Args:
        logger: Logger instance
        provider_id: Provider that ran
        model: Model used
        text: Result text (logged truncated)
        duration: Wall-clock seconds
        success: Whether the call succeeded
    """
    status = "✓ Success" if success else "✗ Failed"
    logger.info(f"Provider result: {provider_id}/{model} - {status} in {duration:.2f}s")

    preview = text
    if len(preview) > 500:
        preview = preview[:500] + "... (truncated)"
    logger.debug(f"  Result: {preview}")


def log_error(logger: logging.Logger, context: str, error: BaseException) -> None:
    """Log an error with traceback.

    Args:
        logger: Logger instance
        context: Context where the error occurred
        error: Exception object
    """
    logger.error(f"Error in {context}: {type(error).__name__}: {error}", exc_info=error)

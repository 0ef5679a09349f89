"""
Logging for microslurm commands.

Console messages carry a ``[LEVEL]`` label, coloured when stderr is a
terminal. A full pipeline run also keeps a timestamped copy of its messages
in ``microslurm.log`` at the top of the pipeline result directory, next to
the stage directories whose banners it records.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER = "microslurm"
RUN_LOG_NAME = "microslurm.log"

RESET = "\033[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\033[0;90m",
    logging.INFO: "\033[0;32m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[0;31m",
    logging.CRITICAL: "\033[0;31m",
}


class ColoredFormatter(logging.Formatter):
    """Formatter labelling each line with its level, coloured on a terminal."""

    def __init__(self, fmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt or "%(levelname)s %(message)s")
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        # copy: the run log file handler formats the same record
        record = logging.makeLogRecord(record.__dict__)
        label = f"[{record.levelname}]"
        if self.use_colors:
            label = f"{LEVEL_COLORS.get(record.levelno, RESET)}{label}{RESET}"
        record.levelname = label
        return super().format(record)


def setup_logging(
    name: str = ROOT_LOGGER,
    verbose: bool = False,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure console logging for a microslurm command.

    Args:
        name: Logger name; module loggers under ``microslurm.`` inherit it
        verbose: Show debug messages (scheduler replies, file moves)
        use_colors: Colour level labels when stderr is a terminal

    Returns:
        The configured logger
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(ColoredFormatter(use_colors=use_colors))
    logger.addHandler(console)
    return logger


def add_run_log(logger: logging.Logger, pipeline_root: Union[str, Path]) -> logging.FileHandler:
    """Append the logger's messages to ``microslurm.log`` in the pipeline root."""
    path = Path(pipeline_root) / RUN_LOG_NAME
    handler = logging.FileHandler(path)
    handler.setLevel(logger.level or logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(handler)
    return handler


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Logger for ``name``, configuring console output on first use of the root."""
    logger = logging.getLogger(name)
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        setup_logging(ROOT_LOGGER)
    return logger


def format_elapsed(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600} hr : {(seconds % 3600) // 60} min : {seconds % 60} sec"


class StageTimer:
    """Log a stage banner on entry; on success the completion line and elapsed time."""

    def __init__(self, logger: logging.Logger, title: str, done: str):
        self.logger = logger
        self.title = title
        self.done = done
        self._start = 0.0

    def __enter__(self) -> "StageTimer":
        self._start = time.monotonic()
        self.logger.info(f"*** {self.title} ***")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.logger.info(self.done)
            self.logger.info(f"Elapsed time: {format_elapsed(time.monotonic() - self._start)}")

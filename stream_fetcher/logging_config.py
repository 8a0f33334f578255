"""Loguru sinks for applications embedding the fetcher"""

import sys
from pathlib import Path
from typing import Dict, Optional, Union

from loguru import logger

# Modules that log once per body chunk or Markdown flush
STREAM_MODULES = ("stream_fetcher.fetch_stream", "stream_fetcher.markdown_stream")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | <level>{message}</level>"
)


def module_levels(verbose: bool, trace_streams: bool) -> Dict[str, Union[str, bool]]:
    """
    Per-module minimum levels for a loguru ``filter``.

    Verbose output shows scheduler, breaker and retry decisions at DEBUG;
    per-chunk stream messages are added only with ``trace_streams``.
    """
    levels: Dict[str, Union[str, bool]] = {"": "INFO"}
    if verbose:
        levels["stream_fetcher"] = "DEBUG"
        if not trace_streams:
            for module in STREAM_MODULES:
                levels[module] = "INFO"
    return levels


def setup_logging(
    verbose: bool = False,
    log_file: Optional[Path] = None,
    trace_streams: bool = False,
    json_file: bool = False,
) -> None:
    """
    Replace loguru's default sink with the fetcher's console and file sinks.

    Args:
        verbose: Show pipeline decisions at DEBUG level
        log_file: Optional file receiving every fetcher message at DEBUG
        trace_streams: Also show per-chunk stream messages on the console
        json_file: Write the file sink as one JSON record per line
    """
    logger.remove()

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        filter=module_levels(verbose, trace_streams),
        level="DEBUG",
        colorize=True,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
            level="DEBUG",
            serialize=json_file,
            rotation="50 MB",
            retention=5,
            enqueue=True,
        )
        logger.info(f"Logging to file: {log_file}")

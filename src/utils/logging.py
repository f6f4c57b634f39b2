"""
Logging utilities for extrapolation experiments.

Drivers call setup_logging() once; library modules only create
module-level loggers.
"""

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from omegaconf import DictConfig, OmegaConf

QUIET_LOGGERS = ("sklearn", "joblib", "numexpr")


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: int = logging.INFO,
    format_string: Optional[str] = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> logging.Logger:
    """
    Configure the root logger for an experiment run.

    Args:
        log_file: Optional path to log file (parents are created)
        log_level: Logging level (default: INFO)
        format_string: Custom format string for logs
        quiet: Third-party loggers raised to WARNING

    Returns:
        The root logger
    """
    formatter = logging.Formatter(
        format_string or "[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s"
    )

    root = logging.getLogger()
    root.setLevel(log_level)

    # Drivers may be invoked repeatedly in one process
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def log_config(logger: logging.Logger, cfg: DictConfig) -> None:
    """Log the resolved experiment config, one line per YAML line."""
    for line in OmegaConf.to_yaml(cfg, resolve=True).splitlines():
        logger.info(f"  {line}")

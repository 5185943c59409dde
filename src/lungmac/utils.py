"""
Logging and small filesystem helpers shared by the stage scripts.
"""

import logging
import os
import random
import sys
from pathlib import Path
from typing import Optional, Union

import numpy as np

LOGGER_NAME = "lungmac"


class _TagFormatter(logging.Formatter):
    """与各阶段脚本的 "[INFO] / [WARN]" 输出保持一致，只改本 handler 的输出"""

    def format(self, record):
        if record.levelno == logging.WARNING:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = "WARN"
        return super().format(record)


def setup_logging(
    log_file: Optional[Union[str, Path]] = None,
    log_level: str = "INFO",
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Parameters
    ----------
    log_file : str or Path, optional
        Also append log lines to this file.
    log_level : str, default "INFO"
    console_output : bool, default True
        Emit to stdout.

    Returns
    -------
    logging.Logger
        The ``lungmac`` logger; module loggers propagate to it.
    """
    logger = logging.getLogger(LOGGER_NAME)
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)
    logger.handlers = []

    formatter = _TagFormatter("[%(levelname)s] %(message)s")

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setLevel(level)
        file_handler.setFormatter(_TagFormatter(
            "[%(asctime)s] [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(file_handler)

    return logger


def ensure_dir(path: Union[str, Path]) -> Path:
    """创建目录（若不存在）"""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def set_random_seed(seed: int = 0) -> None:
    """Seed Python and NumPy; scanpy calls take the same seed as random_state."""
    random.seed(seed)
    np.random.seed(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)

import datetime
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import termcolor

__appname__ = "localcaption"


def resolve_path(path: Path | str) -> Path:
    return Path(path).expanduser().resolve()


def default_log_dir() -> Path:
    return resolve_path(Path.home() / f".{__appname__}" / "logs")


if os.name == "nt":  # Windows
    import colorama
    colorama.init()


COLORS = {
    "WARNING": "yellow",
    "INFO": "white",
    "DEBUG": "blue",
    "CRITICAL": "red",
    "ERROR": "red",
}


class ColoredFormatter(logging.Formatter):
    def __init__(self, fmt, use_color=True):
        logging.Formatter.__init__(self, fmt)
        self.use_color = use_color

    def format(self, record):
        levelname = record.levelname
        if self.use_color and levelname in COLORS:

            def colored(text):
                return termcolor.colored(
                    text,
                    color=COLORS[levelname],
                    attrs={"bold": True},
                )

            record.levelname2 = colored("{:<7}".format(record.levelname))
            record.message2 = colored(record.getMessage())
            record.module2 = termcolor.colored(record.module, color="cyan")
            record.lineno2 = termcolor.colored(record.lineno, color="cyan")
        else:
            record.levelname2 = "{:<7}".format(record.levelname)
            record.message2 = record.getMessage()
            record.module2 = record.module
            record.lineno2 = record.lineno
        return logging.Formatter.format(self, record)


logger = logging.getLogger(__appname__)
logger.setLevel(logging.INFO)

stream_handler = logging.StreamHandler(sys.stderr)
stream_handler.setFormatter(
    ColoredFormatter(
        "%(asctime)s [%(levelname2)s] %(module2)s:%(lineno2)s - %(message2)s",
        use_color=sys.stderr.isatty(),
    )
)
logger.addHandler(stream_handler)

_file_handler: Optional[logging.FileHandler] = None


def configure_logging(
    level: int | str = logging.INFO,
    log_dir: Optional[Path | str] = None,
) -> Optional[Path]:
    """Set the log level and attach a dated file handler.

    Returns the log file path, or ``None`` when ``log_dir`` is an empty string
    (stream logging only).
    """
    global _file_handler
    logger.setLevel(level)
    if log_dir == "":
        return None

    resolved_dir = resolve_path(log_dir) if log_dir else default_log_dir()
    resolved_dir.mkdir(parents=True, exist_ok=True)
    current_date = datetime.datetime.now().strftime("%Y-%m-%d")
    log_file_path = resolved_dir / f"{__appname__}_{current_date}.log"

    if _file_handler is not None:
        logger.removeHandler(_file_handler)
        _file_handler.close()
    _file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    _file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(module)s:%(funcName)s:%(lineno)d - %(message)s"
        )
    )
    logger.addHandler(_file_handler)
    return log_file_path

"""Logging for gitlab-automerge runs.

Lines go to stderr, colored with ``click.style`` by level unless the call
passes ``extra={"color": ...}``, and optionally to a rotating log file
without colors.  Each line names the merge request being processed, read
from the ``log_mr`` context var that ``automerge.merge.triage`` sets around
every item (``-`` outside of one)::

    2024-01-01 09:00:00 [!12 feature/login] INFO: Merge feature/login
"""

import contextvars
import logging
import logging.handlers
from pathlib import Path

import click

log_mr: contextvars.ContextVar[str] = contextvars.ContextVar("log_mr", default="-")

LOG_FORMAT = "%(asctime)s [%(mr)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_STYLES = {
    logging.DEBUG: {"dim": True},
    logging.WARNING: {"fg": "yellow"},
    logging.ERROR: {"fg": "red"},
    logging.CRITICAL: {"fg": "red", "bold": True},
}


class _MergeRequestFilter(logging.Filter):
    """Copy the current merge request from ``log_mr`` onto the record as ``mr``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.mr = log_mr.get()  # type: ignore[attr-defined]
        return True


class ColorFormatter(logging.Formatter):
    """Style the whole line with ``click.style`` based on level or ``record.color``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        color = getattr(record, "color", None)
        if color:
            return click.style(line, fg=color)
        style = _LEVEL_STYLES.get(record.levelno)
        if style:
            return click.style(line, **style)
        return line


def _add_handler(root: logging.Logger, handler: logging.Handler, formatter, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(_MergeRequestFilter())
    handler.automerge = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def configure_logging(
    log_file: Path | None = None,
    *,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    console: bool = True,
) -> None:
    """Attach the run's handlers to the root logger.

    *log_file* adds a rotating, uncolored file next to the console output.
    Does nothing if the root logger already carries handlers from an
    earlier call.
    """
    root = logging.getLogger()
    if any(getattr(h, "automerge", False) for h in root.handlers):
        return
    root.setLevel(level)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        _add_handler(
            root,
            logging.handlers.RotatingFileHandler(
                str(log_file), maxBytes=max_bytes, backupCount=backup_count,
            ),
            logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT),
            level,
        )
    if console:
        _add_handler(
            root, logging.StreamHandler(), ColorFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT), level,
        )

    if level <= logging.DEBUG:
        # request/response dumps from python-gitlab's transport
        logging.getLogger("urllib3").setLevel(logging.INFO)

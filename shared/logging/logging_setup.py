
from datetime import datetime
from pytz import timezone
import logging.config
import logging
import os
from logging import Logger


debug_mode = os.getenv("LOG_LEVEL", "info").lower() == "debug"
loglevel = logging.INFO if not debug_mode else logging.DEBUG

# Supported ANSI color names for the color= parameter
_ANSI_RESET = "\033[0m"
_COLOR_MAP: dict[str, str] = {
    "cyan":    "\033[36m",
    "green":   "\033[32m",
    "yellow":  "\033[33m",
    "red":     "\033[31m",
    "magenta": "\033[35m",
    "blue":    "\033[34m",
    "white":   "\033[37m",
}


class TimezoneFormatter(logging.Formatter):
    """Timestamps in TIMEZONE and an emoji prefix for warnings and errors."""

    def __init__(self, tz_name, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tz = timezone(tz_name)

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, self.tz)
        return dt.strftime(datefmt) if datefmt else dt.isoformat()

    def format(self, record):
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # malformed %-args from third-party loggers
            message = str(record.msg)

        if record.levelno >= logging.ERROR:
            message = "⛔ " + message
        elif record.levelno == logging.WARNING:
            message = "⚠️ " + message

        # every handler formats its own copy
        record = logging.makeLogRecord(record.__dict__)
        record.msg = message
        record.args = ()
        return super().format(record)


class ColoredFormatter(TimezoneFormatter):
    """Console formatter; wraps a line in ANSI codes when the record carries a ``color``."""

    def format(self, record) -> str:
        line = super().format(record)
        ansi = _COLOR_MAP.get(getattr(record, "color", None) or "", "")
        return f"{ansi}{line}{_ANSI_RESET}" if ansi and line else line


class ColorLogger:
    """Wraps a :class:`logging.Logger` so every log call accepts ``color=<name>``.

    Only the console handler renders the color; the file log stays plain.
    Anything that is not a log call (setLevel, handlers, ...) goes straight
    to the wrapped logger.
    """

    def __init__(self, logger: Logger):
        self._logger = logger

    def _log(self, method: str, msg, args: tuple, color: str | None, kwargs: dict) -> None:
        if color is not None:
            kwargs["extra"] = {**(kwargs.get("extra") or {}), "color": color}
        getattr(self._logger, method)(msg, *args, **kwargs)

    def debug(self, msg, *args, color: str | None = None, **kwargs):
        self._log("debug", msg, args, color, kwargs)

    def info(self, msg, *args, color: str | None = None, **kwargs):
        self._log("info", msg, args, color, kwargs)

    def warning(self, msg, *args, color: str | None = None, **kwargs):
        self._log("warning", msg, args, color, kwargs)

    def error(self, msg, *args, color: str | None = None, **kwargs):
        self._log("error", msg, args, color, kwargs)

    def exception(self, msg, *args, color: str | None = None, **kwargs):
        self._log("exception", msg, args, color, kwargs)

    def __getattr__(self, name):
        return getattr(self._logger, name)


def setup_logging(log_file: str = "app.log", logger_name: str = "email_style_retrieval") -> ColorLogger:
    """Configure console and file logging once per process and return the application logger.

    Args:
        log_file (str): File name below $ROOT_DIR/logs, e.g. "migration.log" for the runner.
        logger_name (str): Name of the returned logger.
    """
    log_dir = os.path.join(os.environ.get("ROOT_DIR", os.getcwd()), "logs")
    tz_name = os.getenv("TIMEZONE", "Europe/Berlin")
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "()": TimezoneFormatter,
                "format": "%(asctime)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "tz_name": tz_name,
            },
            "colored": {
                "()": ColoredFormatter,
                "format": "%(asctime)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "tz_name": tz_name,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "colored",
                "level": loglevel,
                "stream": "ext://sys.stdout",
            },
            "file": {
                "class": "logging.FileHandler",
                "formatter": "standard",
                "level": loglevel,
                "filename": os.path.join(log_dir, log_file),
                "encoding": "utf-8",
            },
        },
        "root": {
            "handlers": ["console", "file"],
            "level": loglevel,
        },
    }

    logging.config.dictConfig(logging_config)

    # Suppress httpx request logs unless in debug mode
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug_mode else logging.WARNING)

    return ColorLogger(logging.getLogger(logger_name))

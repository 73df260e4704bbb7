import logging
import logging.config
import os

LOG_FILE_NAME = "coe_autocall.log"

# Third-party loggers that log every request or fit at INFO
QUIET_LOGGERS = ("httpx", "httpcore")


def build_logging_config(
    log_dir: str | None = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
) -> dict:
    """dictConfig for the CLI: console at ``console_level``, rotating file in ``log_dir``.

    ``log_dir=None`` disables the file handler.
    """
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": console_level.upper(),
        },
    }
    if log_dir is not None:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": os.path.join(log_dir, LOG_FILE_NAME),
            "maxBytes": 10_485_760,
            "backupCount": 5,
            "formatter": "standard",
            "level": file_level.upper(),
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        "root": {
            "level": "DEBUG",
            "handlers": list(handlers),
        },
    }


def setup_logging(log_dir: str | None = "logs", console_level: str = "INFO"):
    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
    logging.config.dictConfig(build_logging_config(log_dir, console_level))

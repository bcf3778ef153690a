import logging
import logging.config
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# File logging is opt-in; the directory must exist
LOG_FILE = os.getenv("LOG_FILE")


def build_logging_config(log_level=LOG_LEVEL, log_file=LOG_FILE):
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "level": log_level,
        },
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": log_file,
            "formatter": "default",
            "level": log_level,
        }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": LOG_FORMAT,
            },
        },
        "handlers": handlers,
        "loggers": {
            # aiormq logs every channel open/close at DEBUG
            "aiormq": {"level": "WARNING"},
        },
        "root": {
            "handlers": list(handlers),
            "level": log_level,
        },
    }


LOGGING_CONFIG = build_logging_config()


def setup_logging():
    logging.config.dictConfig(LOGGING_CONFIG)

"""
Loggning för craftcfg.

LOG_FORMAT styr utdata:
  json  – en JSON-post per rad via python-json-logger (default, för drift)
  plain – läsbar text för lokal utveckling

JSON-posterna har fälten timestamp, level, logger, message, service och
environment. Avvisade uppladdningar loggas med extra={"reason", "identity",
"status_code"} och de fälten hamnar då direkt i posten, så att man kan
filtrera på t.ex. reason=infected eller en enskild identitet.
"""

import logging
import logging.config
import os

from pythonjsonlogger.jsonlogger import JsonFormatter  # type: ignore[import-untyped]

LOG_FORMATS = ("json", "plain")
PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Loggers som ska skriva via vår handler i stället för sin egen
_ROUTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "craftcfg")


class _CraftcfgJsonFormatter(JsonFormatter):
    service = "craftcfg"

    def __init__(self, *args, environment: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.environment = environment or os.getenv("ENVIRONMENT", "production")

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["service"] = self.service
        log_record["environment"] = self.environment
        log_record["level"] = log_record.pop("levelname", record.levelname)
        log_record["logger"] = log_record.pop("name", record.name)


def _formatter(log_format: str) -> dict:
    if log_format == "plain":
        return {"format": PLAIN_FORMAT, "datefmt": "%H:%M:%S"}
    return {
        "()": _CraftcfgJsonFormatter,
        "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
        "datefmt": "%Y-%m-%dT%H:%M:%S",
        "rename_fields": {"asctime": "timestamp"},
    }


def build_logging_config(log_format: str | None = None, level: str | None = None) -> dict:
    """dictConfig-underlag; okänt LOG_FORMAT ger json."""
    log_format = (log_format or os.getenv("LOG_FORMAT", "json")).strip().lower()
    if log_format not in LOG_FORMATS:
        log_format = "json"
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": _formatter(log_format)},
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {
            name: {"handlers": ["stdout"], "level": log_level, "propagate": False}
            for name in _ROUTED_LOGGERS
        },
    }


def setup_logging(log_format: str | None = None, level: str | None = None) -> None:
    """Anropas en gång vid applikationsstart."""
    logging.config.dictConfig(build_logging_config(log_format, level))

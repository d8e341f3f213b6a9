"""Logging setup for the camera transmitter."""

import sys
from contextlib import suppress
from typing import Any

from loguru import logger

_FALLBACK_LINE = "LOG | <critical_formatting_error>\n"


class LoggingConfig:
    """Process-wide loguru configuration, applied once at startup."""

    _configured = False
    _log_level = "INFO"
    _log_file: str | None = None

    @classmethod
    def configure(cls, log_level: str, log_file: str | None = None) -> None:
        """Install the console sink and, optionally, a rotating file sink.

        Args:
            log_level: The logging level (DEBUG, INFO, WARNING, ERROR)
            log_file: Optional log file path for file logging

        """
        if cls._configured:
            return

        cls._log_level = log_level.upper()
        cls._log_file = log_file

        logger.remove()
        logger.add(
            sys.stdout,
            level=cls._log_level,
            format=cls._console_formatter,
            serialize=False,
        )

        if log_file:
            logger.add(
                log_file,
                level=cls._log_level,
                rotation="10 MB",
                retention="7 days",
                format=cls._file_formatter,
            )
            logger.info("File logging enabled", log_file=log_file)

        cls._configured = True
        logger.info("Logging configuration applied", level=cls._log_level)

    @classmethod
    def level(cls) -> str:
        """Return the active level name, used to align the uvicorn log level."""
        return cls._log_level

    @classmethod
    def is_configured(cls) -> bool:
        return cls._configured

    @classmethod
    def reset(cls) -> None:
        """Reset logging configuration state. Used by tests."""
        cls._configured = False
        cls._log_level = "INFO"
        cls._log_file = None
        with suppress(ValueError):
            logger.remove()

    @classmethod
    def _escape_loguru_braces(cls, value: Any) -> str:
        """Double curly braces so loguru does not treat them as format fields."""
        try:
            return str(value).replace("{", "{{").replace("}", "}}")
        except (TypeError, ValueError, AttributeError):
            return "<unprintable>"

    @classmethod
    def _extra_pairs(cls, extra: dict[str, Any]) -> list[tuple[str, str]]:
        return [
            (cls._escape_loguru_braces(key), cls._escape_loguru_braces(value))
            for key, value in extra.items()
        ]

    @classmethod
    def _format_record(cls, record: Any, *, colored: bool, time_format: str) -> str:
        try:
            time_part = record["time"].strftime(time_format)
            level_part = f"{record['level'].name: <8}"
            location_part = f"{record['name']}:{record['function']}:{record['line']}"
            message_part = cls._escape_loguru_braces(record["message"])
            pairs = cls._extra_pairs(record.get("extra", {}))

            if colored:
                line = (
                    f"<green>{time_part}</green> | "
                    f"<level>{level_part}</level> | "
                    f"<cyan>{location_part}</cyan> | "
                    f"<level>{message_part}</level>"
                )
                extras = [f"<cyan>{k}</cyan>=<magenta>{v}</magenta>" for k, v in pairs]
            else:
                line = f"{time_part} | {level_part} | {location_part} | {message_part}"
                extras = [f"{k}={v}" for k, v in pairs]

            if extras:
                line += " | " + " | ".join(extras)
            return line + "\n"

        except (TypeError, ValueError, KeyError, AttributeError):
            try:
                message = cls._escape_loguru_braces(record.get("message", "MESSAGE"))
                return f"{record.get('name', 'NAME')} | {message} | <formatting_error>\n"
            except (TypeError, ValueError, KeyError, AttributeError, LookupError):
                return _FALLBACK_LINE

    @classmethod
    def _console_formatter(cls, record: Any) -> str:
        return cls._format_record(record, colored=True, time_format="%m-%d %H:%M:%S")

    @classmethod
    def _file_formatter(cls, record: Any) -> str:
        return cls._format_record(record, colored=False, time_format="%Y-%m-%d %H:%M:%S")

"""Parsing of the JSON line protocol written by the test command.

The child process may print anything to stdout. Only lines starting with
``{`` are protocol records:

- ``{"file": "...", "status": 200, "successful": true}`` describes the result
  of the run. Fields of later result records overwrite earlier ones.
- ``{"message": "...", "level": "debug"}`` is a log record. Log records are
  collected in order and forwarded to our own logger.

Records that match neither shape are dropped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from testexecutor.core.results import LogEntry, is_run_unsuccessful

# Child log levels (winston/npm style and others) -> loguru levels
LOG_LEVELS: dict[str, str] = {
    "silly": "TRACE",
    "trace": "TRACE",
    "debug": "DEBUG",
    "verbose": "DEBUG",
    "http": "INFO",
    "info": "INFO",
    "success": "SUCCESS",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
    "fatal": "CRITICAL",
    "critical": "CRITICAL",
}

DEFAULT_LOG_LEVEL = "info"


class ProtocolError(Exception):
    """The child process did not produce a usable protocol response."""

    def __init__(self, message: str, stdout: str = ""):
        super().__init__(message)
        self.stdout = stdout


@dataclass
class ResultRecord:
    """A record carrying a ``file`` field."""

    fields: dict[str, Any]


@dataclass
class LogRecord:
    """A record carrying a ``message`` field."""

    message: str
    level: str = DEFAULT_LOG_LEVEL

    def to_entry(self) -> LogEntry:
        return LogEntry(message=self.message, level=self.level)


@dataclass
class ProtocolResponse:
    """The merged result records plus the collected log."""

    fields: dict[str, Any] = field(default_factory=dict)
    log: list[LogEntry] = field(default_factory=list)

    @property
    def file(self) -> str | None:
        return self.fields.get("file") or None

    @property
    def is_unsuccessful(self) -> bool:
        return is_run_unsuccessful(self.fields)

    def to_dict(self) -> dict:
        data = dict(self.fields)
        if self.log:
            data["log"] = [entry.to_dict() for entry in self.log]
        return data


def to_loguru_level(level: str | None) -> str:
    """Map a child log level onto a loguru level name."""
    if not level:
        return LOG_LEVELS[DEFAULT_LOG_LEVEL]
    return LOG_LEVELS.get(str(level).lower(), LOG_LEVELS[DEFAULT_LOG_LEVEL])


class ResultProtocolParser:
    """Extracts the protocol response from the stdout of a child process."""

    def __init__(self, forward_logs: bool = True):
        """Initialize the parser.

        Args:
            forward_logs: Re-emit log records through our logger
        """
        self._forward_logs = forward_logs

    @staticmethod
    def decode(stdout: str | bytes | None) -> str:
        if stdout is None:
            return ""
        if isinstance(stdout, bytes):
            return stdout.decode("utf-8", errors="replace")
        return stdout

    def candidate_lines(self, stdout: str) -> list[str]:
        """Get the lines that may hold a protocol record."""
        return [line for line in stdout.split("\n") if line.startswith("{")]

    def parse_record(self, line: str) -> ResultRecord | LogRecord | None:
        """Parse a single candidate line.

        Raises:
            ProtocolError: If the line is not a JSON object
        """
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Invalid JSON in response line {line!r}: {e}") from e

        if not isinstance(data, dict):
            return None
        if data.get("file"):
            return ResultRecord(fields=data)
        if data.get("message"):
            return LogRecord(
                message=str(data["message"]),
                level=str(data.get("level") or DEFAULT_LOG_LEVEL),
            )
        return None

    def parse(self, stdout: str | bytes | None) -> ProtocolResponse:
        """Parse the full stdout of a child process.

        Raises:
            ProtocolError: If stdout holds no protocol line or a line is not valid JSON
        """
        text = self.decode(stdout)
        lines = self.candidate_lines(text)
        if not lines:
            raise ProtocolError(
                f"Could not parse response from child process, got stdout:[{json.dumps(text)}].",
                stdout=text,
            )

        logger.info(
            "Testrun complete, now printing all lines of the stdout of the testrun in loglevel debug"
        )

        response = ProtocolResponse()
        for line in lines:
            logger.debug(line)
            record = self.parse_record(line)
            if isinstance(record, ResultRecord):
                response.fields.update(record.fields)
            elif isinstance(record, LogRecord):
                response.log.append(record.to_entry())
                if self._forward_logs:
                    logger.log(to_loguru_level(record.level), record.message)

        return response

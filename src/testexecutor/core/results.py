"""Result types shared by the executor and the async runner."""

from __future__ import annotations

import json
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

JSON_CONTENT_TYPE = "application/json"

NO_RESULT_YET_MESSAGE = "There is no completed test run yet, the first test is still running"
UNEXPECTED_ERROR_MESSAGE = "Unexpected error, please check the logs"


@dataclass
class LogEntry:
    """A log line emitted by the child process."""

    message: str
    level: str = "info"

    def to_dict(self) -> dict:
        return {"level": self.level, "message": self.message}


@dataclass
class Result:
    """Outcome of one execution of the test command."""

    successful: bool
    body: Any = None
    content_type: str | None = None  # None -> caller's default
    start_time: datetime | None = None
    end_time: datetime | None = None
    log: list[LogEntry] | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "successful": self.successful,
            "body": self.body,
            "content_type": self.content_type,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "log": [entry.to_dict() for entry in self.log] if self.log is not None else None,
        }


def no_result_yet() -> Result:
    """The placeholder result served before the first run completed."""
    return Result(
        successful=True,
        body={"message": NO_RESULT_YET_MESSAGE},
        content_type=JSON_CONTENT_TYPE,
    )


def unexpected_error_result() -> Result:
    return Result(
        successful=False,
        body={"message": UNEXPECTED_ERROR_MESSAGE},
        content_type=JSON_CONTENT_TYPE,
    )


def error_result(error: BaseException) -> Result:
    """Build a failed result carrying the error message and its traceback."""
    return Result(
        successful=False,
        body={
            "error": str(error),
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
        },
        content_type=JSON_CONTENT_TYPE,
    )


def is_run_unsuccessful(response: dict) -> bool:
    """Check whether a protocol response describes a failed test run.

    A response without ``status`` and without ``successful`` counts as failed.
    A key that is present with a null value counts as present.
    """
    has_status = "status" in response
    has_successful = "successful" in response
    return (
        (has_status and response["status"] != 200)
        or (has_successful and not response["successful"])
        or (not has_status and not has_successful)
    )


def build_result_string(success: bool, file: str) -> str:
    """Build a protocol result line that can be passed to ``echo "..."``.

    Args:
        success: If the test run was successful
        file: Path of the result file

    Returns:
        Compact JSON with every double quote escaped
    """
    line = json.dumps({"file": file, "successful": success}, separators=(",", ":"), ensure_ascii=False)
    return line.replace('"', '\\"')

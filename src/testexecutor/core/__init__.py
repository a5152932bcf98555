"""testexecutor core components."""

from testexecutor.core.async_runner import AsyncRunner, RunnerState
from testexecutor.core.executor import ProcessExecutor, ProcessError
from testexecutor.core.protocol import ProtocolError, ResultProtocolParser
from testexecutor.core.registry import ExecutionHandle, ExecutionRegistry
from testexecutor.core.result_file import ResultFileReader, ResultResolutionError
from testexecutor.core.results import LogEntry, Result, build_result_string
from testexecutor.core.service import ExecutorService

__all__ = [
    "AsyncRunner",
    "ExecutionHandle",
    "ExecutionRegistry",
    "ExecutorService",
    "LogEntry",
    "ProcessError",
    "ProcessExecutor",
    "ProtocolError",
    "Result",
    "ResultFileReader",
    "ResultProtocolParser",
    "ResultResolutionError",
    "RunnerState",
    "build_result_string",
]

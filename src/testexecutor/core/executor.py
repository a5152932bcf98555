"""Execution of the test command in a child process.

The command is run through the shell. When it finishes, its stdout is parsed
for the protocol response, the referenced result file is read and a
``Result`` is returned. ``execute`` never raises; every failure ends up in a
failed ``Result``.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from testexecutor.core.protocol import ResultProtocolParser
from testexecutor.core.registry import CONTROLLED_SIGNALS, ExecutionHandle, ExecutionRegistry
from testexecutor.core.result_file import ResultFileReader
from testexecutor.core.results import (
    JSON_CONTENT_TYPE,
    Result,
    build_result_string,
    error_result,
)

EXECUTION_ID_ENV = "TESTEXECUTOR_EXECUTION_ID"


class ProcessError(Exception):
    """The command failed for a reason other than a controlled kill."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


@dataclass
class ProcessOutcome:
    """How a child process ended, with whatever it wrote to stdout."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None


@dataclass
class CompletedProcess(ProcessOutcome):
    """The process exited on its own."""


@dataclass
class KilledProcess(ProcessOutcome):
    """The process was terminated by a controlled signal (timeout or abort)."""

    signal: int | None = None
    timed_out: bool = False


@dataclass
class FailedProcess(ProcessOutcome):
    """The process could not be run or failed without producing output."""

    error: Exception = field(default_factory=lambda: ProcessError("Command failed"))


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


class ProcessExecutor:
    """Runs commands in child processes and collects their results.

    Several executions may be in flight at once; all of them are tracked in
    the registry so they can be aborted together.
    """

    def __init__(
        self,
        registry: ExecutionRegistry | None = None,
        parser: ResultProtocolParser | None = None,
        reader: ResultFileReader | None = None,
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
    ):
        """Initialize the executor.

        Args:
            registry: Registry of in-flight executions (one is created if omitted)
            parser: Parser for the stdout protocol
            reader: Reader for the result file named in the protocol response
            cwd: Working directory for the command
            env: Extra environment variables for the command
        """
        self._registry = registry if registry is not None else ExecutionRegistry()
        self._parser = parser if parser is not None else ResultProtocolParser()
        self._reader = reader if reader is not None else ResultFileReader()
        self._cwd = Path(cwd).expanduser() if cwd else None
        self._env = env or {}

    @property
    def registry(self) -> ExecutionRegistry:
        return self._registry

    @property
    def running_count(self) -> int:
        return len(self._registry)

    async def execute(self, command: str, timeout: float | None = None) -> Result:
        """Run a command and build its result.

        Args:
            command: Shell command to run
            timeout: Seconds until the process is killed; None or 0 means no limit

        Returns:
            The result of the run, failed if anything went wrong
        """
        try:
            outcome = await self._run_process(command, timeout)
        except Exception as e:
            logger.error(f"Could not run command [{command}]: {e}")
            return error_result(e)

        if isinstance(outcome, FailedProcess):
            logger.error(f"{type(outcome.error).__name__}: {outcome.error}")
            logger.error(f"stdout of child process is: {outcome.stdout}")
            return error_result(outcome.error)

        if isinstance(outcome, KilledProcess):
            reason = "timed out" if outcome.timed_out else "was aborted"
            logger.info(f"Command [{command}] {reason}, using the output collected so far")

        try:
            return await self._build_result(outcome.stdout)
        except Exception as e:
            logger.error(
                "Error during execution of the child process, it is possible that the process timed out. "
                f"If you expect a long duration, increase the execution timeout. stdout: {outcome.stdout!r}, "
                f"error: {e}"
            )
            return error_result(e)

    async def _run_process(self, command: str, timeout: float | None) -> ProcessOutcome:
        """Spawn the command and wait for it to end."""
        abort_epoch = self._registry.abort_epoch
        execution_id = self._registry.new_id()

        env = os.environ.copy()
        env.update(self._env)
        env[EXECUTION_ID_ENV] = execution_id

        logger.debug(f"starting process with generated id [{execution_id}]")
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env=env,
            start_new_session=True,  # Own process group, so kills reach grandchildren
        )
        handle = self._registry.register(process, command, execution_id=execution_id)

        # An abort that happened while we were spawning still applies to us
        if self._registry.abort_epoch != abort_epoch:
            logger.debug(f"process with id [{execution_id}] was aborted while starting")
            self._registry.unregister(execution_id)
            handle.kill()

        try:
            return await self._wait(handle, command, timeout)
        finally:
            self._registry.unregister(execution_id)

    async def _wait(self, handle: ExecutionHandle, command: str, timeout: float | None) -> ProcessOutcome:
        process = handle.process
        communicate = asyncio.ensure_future(process.communicate())
        timed_out = False

        try:
            stdout, stderr = await asyncio.wait_for(asyncio.shield(communicate), timeout=timeout or None)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"process with id [{handle.execution_id}] exceeded the timeout of {timeout}s, killing it")
            handle.kill()
            stdout, stderr = await communicate
        except asyncio.CancelledError:
            handle.kill()
            communicate.cancel()
            raise

        exit_code = process.returncode
        exit_signal = -exit_code if exit_code is not None and exit_code < 0 else None
        logger.debug(
            f"process with id [{handle.execution_id}] exited with code [{exit_code}] or signal [{exit_signal}]"
        )

        stdout_text = _decode(stdout)
        stderr_text = _decode(stderr)

        if timed_out or handle.was_killed or exit_signal in CONTROLLED_SIGNALS:
            return KilledProcess(
                stdout=stdout_text,
                stderr=stderr_text,
                exit_code=exit_code,
                signal=handle.kill_signal or exit_signal,
                timed_out=timed_out,
            )

        if exit_code != 0 and not stdout_text:
            logger.debug(f"process with id [{handle.execution_id}] returned with an error")
            message = f"Command failed: {command}\nExit code: {exit_code}"
            if stderr_text:
                message += f"\n{stderr_text.rstrip()}"
            return FailedProcess(
                stdout=stdout_text,
                stderr=stderr_text,
                exit_code=exit_code,
                error=ProcessError(message, exit_code=exit_code, stderr=stderr_text),
            )

        logger.debug(f"process with id [{handle.execution_id}] returned without an error")
        return CompletedProcess(stdout=stdout_text, stderr=stderr_text, exit_code=exit_code)

    async def _build_result(self, stdout: str) -> Result:
        """Turn the stdout of a finished process into a result."""
        response = self._parser.parse(stdout)
        result = Result(successful=True)

        if not response.file:
            result.successful = False
            result.content_type = JSON_CONTENT_TYPE
            result.body = {
                "message": "The response from the child process is missing the file field, "
                f"the response was: {json.dumps(response.to_dict())}"
            }
        else:
            result.body = await asyncio.to_thread(self._reader.read, self._resolve_file(response.file))
            if response.log:
                result.log = response.log

        if response.is_unsuccessful:
            result.successful = False
            logger.warning(json.dumps(response.to_dict()))
            logger.warning(f"{result.body}")

        return result

    def _resolve_file(self, file_name: str) -> Path:
        # Relative paths are relative to the directory the command ran in
        path = Path(file_name)
        if self._cwd is not None and not path.is_absolute():
            return self._cwd / path
        return path

    def abort_all_running_executions(self) -> int:
        """Kill all running child processes. Does nothing if none is running.

        Returns:
            Number of processes that were killed
        """
        killed = self._registry.kill_all()
        if killed:
            logger.info(f"Aborted {killed} running execution(s)")
        return killed

    @staticmethod
    def build_result_string(success: bool, file: str) -> str:
        """Build a protocol result line for use with ``echo "..."``."""
        return build_result_string(success, file)

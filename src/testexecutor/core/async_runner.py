"""Background execution of the test command.

The runner executes the command, keeps the result and arms a timer for the
next run: the ``success`` delay after a successful run, the ``error`` delay
after a failed one. It never stops on its own.

It can be paused for a while. Pausing aborts the running execution and
discards its result; when the pause ends (or on resume) the next run starts
right away.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from loguru import logger

from testexecutor.core.results import Result, no_result_yet, unexpected_error_result
from testexecutor.models import TimeOptions


class CommandExecutor(Protocol):
    """What the runner needs from a process executor."""

    async def execute(self, command: str, timeout: float | None = None) -> Result: ...

    def abort_all_running_executions(self) -> int: ...


class RunnerState(str, Enum):
    """State of the async runner."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class AsyncRunner:
    """Runs a command periodically and caches the last result.

    Must be created inside a running event loop; the first run starts
    immediately. At most one timer is armed at any time.
    """

    def __init__(
        self,
        command: str,
        time_options: TimeOptions,
        executor: CommandExecutor,
    ):
        """Initialize the runner and start the first run.

        Args:
            command: Command passed to the executor
            time_options: Timeout and delays (timeout must already be resolved)
            executor: Executor used to run the command
        """
        self._command = command
        self._time_options = time_options
        self._executor = executor
        self._loop = asyncio.get_running_loop()

        self._last_result = no_result_yet()
        self._state = RunnerState.RUNNING
        self._timer: asyncio.TimerHandle | None = None
        self._next_run: datetime | None = None
        self._run_task: asyncio.Task | None = None
        # Bumped on every pause; results of runs started earlier are stale
        self._generation = 0
        self._runs_started = 0

        self._start_run()

    # Public API

    def get_last_result(self) -> Result:
        """Get the result of the last completed run."""
        return self._last_result

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._state == RunnerState.PAUSED

    @property
    def next_run(self) -> datetime | None:
        """When the armed timer fires, if one is armed."""
        return self._next_run if self._timer is not None else None

    @property
    def runs_started(self) -> int:
        return self._runs_started

    def pause_async_execution(self, duration: float) -> None:
        """Pause the periodic execution for ``duration`` seconds.

        Running executions are aborted and their results are discarded.
        Calling this again while paused restarts the pause window.
        """
        if self._state == RunnerState.STOPPED:
            logger.warning("Request to pause the async execution ignored, the runner is stopped")
            return

        logger.info(
            "Request to pause the async execution received. "
            "Execution is now paused, running processes are canceled."
        )
        self._state = RunnerState.PAUSED
        self._generation += 1
        self._executor.abort_all_running_executions()
        self._arm_timer(duration, self._end_pause)

    def resume_async_execution(self) -> None:
        """Resume a paused runner immediately. Does nothing when not paused."""
        if self._state == RunnerState.PAUSED:
            logger.info("Request to resume the async execution received. Execution will start immediately.")
            self._arm_timer(0, self._end_pause)
        else:
            logger.info(
                "Request to resume the async execution received, but the execution is currently not paused. "
                "This request will be ignored."
            )

    def stop(self) -> None:
        """Stop this runner. After calling this, the runner can no longer be used."""
        self._state = RunnerState.STOPPED
        self._cancel_timer()
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
        logger.debug("Async runner stopped")

    # Internals

    def _start_run(self) -> None:
        self._timer = None
        self._next_run = None
        self._runs_started += 1
        self._run_task = self._loop.create_task(self._run(self._generation))

    def _end_pause(self) -> None:
        self._timer = None
        if self._state != RunnerState.PAUSED:
            return
        self._state = RunnerState.RUNNING
        self._start_run()

    async def _run(self, generation: int) -> None:
        try:
            logger.info("Starting new async run")
            start_time = datetime.now()
            result = await self._executor.execute(self._command, self._time_options.timeout)
            result.start_time = start_time
            result.end_time = datetime.now()
            self._handle_result(result, self._time_options.delay_for(result.successful), generation)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unexpected error while executing the runner, this should not happen")
            # The next round is always scheduled, even if something goes terribly wrong
            self._handle_result(unexpected_error_result(), self._time_options.error, generation)

    def _handle_result(self, result: Result, delay: float, generation: int) -> None:
        if self._state == RunnerState.STOPPED:
            logger.debug("Discarding result of last run, because the runner is stopped")
            return
        if self._state == RunnerState.PAUSED or generation != self._generation:
            logger.info("Discarding result of last run, because the runner was paused while it ran")
            return

        self._last_result = result
        self._arm_timer(delay, self._start_run)
        logger.info(
            f"Finished async run with result:[{'successful' if result.successful else 'failed'}]. "
            f"Next run will start at {self._next_run}"
        )

    def _arm_timer(self, delay: float, callback) -> None:
        self._cancel_timer()
        delay = max(0.0, delay)
        self._next_run = datetime.now() + timedelta(seconds=delay)
        self._timer = self._loop.call_later(delay, callback)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._next_run = None

"""Facade tying the executor and the async runner together.

This is what the HTTP layer and the CLI talk to. It owns one
``ProcessExecutor`` and at most one ``AsyncRunner``.
"""

from __future__ import annotations

from loguru import logger

from testexecutor.core.async_runner import AsyncRunner
from testexecutor.core.executor import ProcessExecutor
from testexecutor.core.results import Result, build_result_string
from testexecutor.models import DEFAULT_PAUSE_DURATION, AppConfig, TimeOptions


class RunnerNotStartedError(RuntimeError):
    """The async runner was used before it was started."""

    def __init__(self) -> None:
        super().__init__("The async runner needs to be started once, by calling start_async_runner.")


class RunnerAlreadyStartedError(RuntimeError):
    """start_async_runner was called twice."""

    def __init__(self) -> None:
        super().__init__(
            "There is already an instance of the async runner running. This service only allows to start "
            "the runner once, create another instance of the service to have multiple different runners."
        )


class ExecutorService:
    """Runs the configured command on demand or periodically in the background."""

    def __init__(
        self,
        command: str,
        execution_timeout: float | None,
        content_type: str,
        executor: ProcessExecutor | None = None,
        runner_factory=AsyncRunner,
        default_pause_duration: float = DEFAULT_PAUSE_DURATION,
    ):
        """Initialize the service.

        Args:
            command: The command that runs the tests
            execution_timeout: Seconds until a run is killed
            content_type: Content type of result bodies that don't set their own
            executor: Process executor (created if omitted)
            runner_factory: Callable building the async runner
            default_pause_duration: Pause duration used when none is given
        """
        self.command = command
        self.execution_timeout = execution_timeout
        self.content_type = content_type
        self.default_pause_duration = default_pause_duration
        self._executor = executor if executor is not None else ProcessExecutor()
        self._runner_factory = runner_factory
        self._async_runner: AsyncRunner | None = None

    @classmethod
    def from_config(cls, config: AppConfig) -> "ExecutorService":
        """Create a service from the application configuration."""
        return cls(
            command=config.executor.command,
            execution_timeout=config.executor.execution_timeout,
            content_type=config.executor.content_type,
            executor=ProcessExecutor(cwd=config.executor.cwd),
            default_pause_duration=config.schedule.pause_duration,
        )

    @property
    def executor(self) -> ProcessExecutor:
        return self._executor

    @property
    def async_runner(self) -> AsyncRunner | None:
        return self._async_runner

    @property
    def is_async_runner_started(self) -> bool:
        return self._async_runner is not None

    def content_type_for(self, result: Result) -> str:
        """Get the content type of a result, falling back to the default."""
        return result.content_type or self.content_type

    async def execute(self) -> Result:
        """Run the command once and wait for its result."""
        logger.debug(f"Start to execute command [{self.command}]")
        return await self._executor.execute(self.command, self.execution_timeout)

    def start_async_runner(self, time_options: TimeOptions) -> AsyncRunner:
        """Start running the command periodically in the background.

        Must be called from inside a running event loop.

        Raises:
            RunnerAlreadyStartedError: If the runner was already started
        """
        if self._async_runner is not None:
            raise RunnerAlreadyStartedError()

        if not time_options.timeout:
            time_options = time_options.model_copy(update={"timeout": self.execution_timeout})

        self._async_runner = self._runner_factory(self.command, time_options, self._executor)
        logger.info(
            f"Started async runner for [{self.command}] "
            f"(timeout {time_options.timeout}s, success delay {time_options.success}s, "
            f"error delay {time_options.error}s)"
        )
        return self._async_runner

    def _require_runner(self) -> AsyncRunner:
        if self._async_runner is None:
            raise RunnerNotStartedError()
        return self._async_runner

    def get_last_result(self) -> Result:
        return self._require_runner().get_last_result()

    def pause_async_runner(self, duration: float | None = None) -> None:
        """Pause the runner for ``duration`` seconds (default: two hours)."""
        if duration is None:
            duration = self.default_pause_duration
        self._require_runner().pause_async_execution(duration)

    def resume_async_runner(self) -> None:
        """Resume a paused runner immediately."""
        self._require_runner().resume_async_execution()

    def stop(self) -> None:
        """Stop the runner (if started) and abort any running execution."""
        if self._async_runner is not None:
            self._async_runner.stop()
        self._executor.abort_all_running_executions()

    @staticmethod
    def build_result_string(success: bool, file: str) -> str:
        return build_result_string(success, file)

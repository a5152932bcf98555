"""Tests for the process executor.

These run real shell commands, so they need a POSIX shell with echo, printf
and sleep.
"""

import asyncio
import json
import sys
import time
from pathlib import Path

import pytest

from testexecutor.core.executor import (
    EXECUTION_ID_ENV,
    CompletedProcess,
    FailedProcess,
    KilledProcess,
    ProcessExecutor,
)
from testexecutor.core.registry import ExecutionRegistry
from testexecutor.core.results import build_result_string

EXECUTION_TIMEOUT = 0.2  # seconds
MOCK_JOBS_DIR = Path(__file__).parent / "mock_jobs"


@pytest.fixture
def executor():
    """Create an executor with its own registry."""
    return ProcessExecutor(registry=ExecutionRegistry())


@pytest.fixture
def result_file(tmp_path):
    """Create an empty, readable result file."""
    path = tmp_path / "result.xml"
    path.write_text("")
    return path


def echo_result(success: bool, path: Path) -> str:
    return f'echo "{build_result_string(success, str(path))}"'


def printf_lines(*records: dict) -> str:
    lines = " ".join(f"'{json.dumps(record)}'" for record in records)
    return f"printf '%s\\n' {lines}"


async def wait_for_running(executor: ProcessExecutor, count: int, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while executor.running_count < count:
        if time.monotonic() > deadline:
            raise AssertionError(f"expected {count} running executions, got {executor.running_count}")
        await asyncio.sleep(0.01)


class TestExecute:
    """Tests for ProcessExecutor.execute."""

    @pytest.mark.asyncio
    async def test_simple_command(self, executor, result_file):
        """An encoded success line with a readable empty file is successful."""
        result = await executor.execute(echo_result(True, result_file), timeout=5)

        assert result.successful is True
        assert result.body == ""
        assert result.content_type is None
        assert not result_file.exists()  # consumed

    @pytest.mark.asyncio
    async def test_result_file_content_is_body(self, executor, tmp_path):
        """The result file content becomes the body."""
        path = tmp_path / "junit.xml"
        path.write_text('<?xml version="1.0"?><testsuite tests="3"/>')

        result = await executor.execute(echo_result(True, path), timeout=5)

        assert result.successful is True
        assert result.body == '<?xml version="1.0"?><testsuite tests="3"/>'

    @pytest.mark.asyncio
    async def test_missing_file_field(self, executor):
        """A response without file field fails with a diagnostic message."""
        result = await executor.execute('echo "{}"', timeout=5)

        assert result.successful is False
        assert result.content_type == "application/json"
        assert "missing the file field" in result.body["message"]

    @pytest.mark.asyncio
    async def test_missing_file_field_with_status_200(self, executor):
        """Even a successful status does not help without a file."""
        result = await executor.execute(printf_lines({"status": 200, "successful": True}), timeout=5)

        assert result.successful is False
        assert "missing the file field" in result.body["message"]

    @pytest.mark.asyncio
    async def test_complex_stdout(self, executor, result_file):
        """Log lines are collected, other output is ignored."""
        command = printf_lines(
            {"message": "This is a log message", "level": "debug"},
            {"file": str(result_file), "status": 200, "successful": True},
            {"text": "some text"},
        )
        command = f"echo 'plain output first' && {command}"

        result = await executor.execute(command, timeout=5)

        assert result.successful is True
        assert len(result.log) == 1
        assert result.log[0].message == "This is a log message"
        assert result.log[0].level == "debug"

    @pytest.mark.asyncio
    async def test_no_status_and_no_successful_is_failure(self, executor, result_file):
        """Absence of both status and successful counts as failure."""
        result = await executor.execute(printf_lines({"file": str(result_file)}), timeout=5)

        assert result.successful is False

    @pytest.mark.asyncio
    async def test_unsuccessful_flag(self, executor, result_file):
        result_file.write_text("<testsuite failures='1'/>")

        result = await executor.execute(echo_result(False, result_file), timeout=5)

        assert result.successful is False
        assert result.body == "<testsuite failures='1'/>"

    @pytest.mark.asyncio
    async def test_status_other_than_200(self, executor, result_file):
        command = printf_lines({"file": str(result_file), "status": 500, "successful": True})

        result = await executor.execute(command, timeout=5)

        assert result.successful is False

    @pytest.mark.asyncio
    async def test_null_status_is_failure(self, executor, result_file):
        """A status that is present but null fails the run."""
        command = printf_lines({"file": str(result_file), "status": None, "successful": True})

        result = await executor.execute(command, timeout=5)

        assert result.successful is False
        assert not result_file.exists()

    @pytest.mark.asyncio
    async def test_missing_result_file(self, executor, tmp_path):
        """A result file that does not exist fails the run."""
        result = await executor.execute(echo_result(True, tmp_path / "nope.xml"), timeout=5)

        assert result.successful is False
        assert result.content_type == "application/json"
        assert "Error accessing results file" in result.body["error"]
        assert "ResultResolutionError" in result.body["stack"]

    @pytest.mark.asyncio
    async def test_invalid_json_line(self, executor):
        result = await executor.execute("echo '{not json'", timeout=5)

        assert result.successful is False
        assert "Invalid JSON" in result.body["error"]

    @pytest.mark.asyncio
    async def test_no_protocol_output(self, executor):
        result = await executor.execute("echo hello", timeout=5)

        assert result.successful is False
        assert "Could not parse response from child process" in result.body["error"]

    @pytest.mark.asyncio
    async def test_command_failure(self, executor):
        """A failing command reports the command in the error."""
        result = await executor.execute('echo2 "test"', timeout=5)

        assert result.successful is False
        assert result.content_type == "application/json"
        assert result.body["error"].startswith('Command failed: echo2 "test"')
        assert "stack" in result.body

    @pytest.mark.asyncio
    async def test_non_zero_exit_with_output_is_parsed(self, executor, result_file):
        """Test runners exit non-zero on failures but still print the result."""
        command = f"{echo_result(False, result_file)}; exit 3"

        result = await executor.execute(command, timeout=5)

        assert result.successful is False
        assert result.body == ""  # the file was read, not an error body

    @pytest.mark.asyncio
    async def test_working_directory(self, tmp_path):
        (tmp_path / "result.xml").write_text("<ok/>")
        executor = ProcessExecutor(cwd=tmp_path)

        result = await executor.execute(echo_result(True, Path("result.xml")), timeout=5)

        assert result.successful is True
        assert result.body == "<ok/>"


class TestTimeout:
    """Tests for the execution timeout."""

    @pytest.mark.asyncio
    async def test_timeout_exceeded(self, executor, result_file):
        """A command that takes too long is killed and fails."""
        start = time.monotonic()
        result = await executor.execute(f"sleep 3 && {echo_result(True, result_file)}", EXECUTION_TIMEOUT)
        elapsed = time.monotonic() - start

        assert result.successful is False
        assert elapsed < 2
        assert executor.running_count == 0
        assert result_file.exists()  # never referenced

    @pytest.mark.asyncio
    async def test_within_timeout(self, executor, result_file):
        result = await executor.execute(f"sleep 0.05 && {echo_result(True, result_file)}", timeout=5)

        assert result.successful is True

    @pytest.mark.asyncio
    async def test_partial_output_is_used_after_timeout(self, executor, result_file):
        """Output printed before the kill is still parsed."""
        start = time.monotonic()
        result = await executor.execute(f"{echo_result(True, result_file)}; sleep 3", EXECUTION_TIMEOUT)

        assert time.monotonic() - start < 2
        assert result.successful is True
        assert not result_file.exists()

    @pytest.mark.asyncio
    async def test_zero_timeout_means_unbounded(self, executor, result_file):
        result = await executor.execute(f"sleep 0.1 && {echo_result(True, result_file)}", timeout=0)

        assert result.successful is True


class TestAbort:
    """Tests for abort_all_running_executions."""

    @pytest.mark.asyncio
    async def test_abort_running_process(self, executor, result_file):
        task = asyncio.create_task(executor.execute(f"sleep 5 && {echo_result(True, result_file)}"))
        await wait_for_running(executor, 1)

        start = time.monotonic()
        assert executor.abort_all_running_executions() == 1
        result = await task

        assert result.successful is False
        assert time.monotonic() - start < 3
        assert executor.running_count == 0

    @pytest.mark.asyncio
    async def test_abort_four_running_processes(self, executor, result_file):
        tasks = [
            asyncio.create_task(executor.execute(f"sleep 5 && {echo_result(True, result_file)}"))
            for _ in range(4)
        ]
        await wait_for_running(executor, 4)

        executor.abort_all_running_executions()
        results = await asyncio.gather(*tasks)

        assert [r.successful for r in results] == [False] * 4
        assert executor.running_count == 0

    def test_abort_without_running_processes(self, executor):
        assert executor.abort_all_running_executions() == 0
        assert executor.abort_all_running_executions() == 0

    @pytest.mark.asyncio
    async def test_abort_while_starting(self, executor, result_file):
        """An abort issued before the process was registered still kills it."""
        task = asyncio.create_task(executor.execute(f"sleep 5 && {echo_result(True, result_file)}"))
        await asyncio.sleep(0)  # task starts spawning
        executor.abort_all_running_executions()

        result = await asyncio.wait_for(task, timeout=3)

        assert result.successful is False
        assert executor.running_count == 0


class TestConcurrency:
    """Executions don't block the caller or each other."""

    def test_empty_registry_is_kept(self):
        """An injected registry is used even while it holds no executions."""
        registry = ExecutionRegistry(id_factory=lambda: "fixed")

        executor = ProcessExecutor(registry=registry)

        assert len(registry) == 0
        assert executor.registry is registry
        assert executor.registry.new_id() == "fixed"

    @pytest.mark.asyncio
    async def test_shared_registry(self, result_file):
        """Two executors sharing a registry are aborted together."""
        registry = ExecutionRegistry()
        first = ProcessExecutor(registry=registry)
        second = ProcessExecutor(registry=registry)

        tasks = [
            asyncio.create_task(first.execute(f"sleep 5 && {echo_result(True, result_file)}")),
            asyncio.create_task(second.execute(f"sleep 5 && {echo_result(True, result_file)}")),
        ]
        await wait_for_running(first, 2)

        assert first.abort_all_running_executions() == 2
        results = await asyncio.gather(*tasks)

        assert [r.successful for r in results] == [False, False]
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_executions_run_concurrently(self, executor, tmp_path):
        files = []
        for i in range(3):
            path = tmp_path / f"result-{i}.xml"
            path.write_text(f"<run id='{i}'/>")
            files.append(path)

        start = time.monotonic()
        results = await asyncio.gather(
            *(executor.execute(f"sleep 0.5 && {echo_result(True, path)}", timeout=5) for path in files)
        )
        elapsed = time.monotonic() - start

        assert all(r.successful for r in results)
        assert sorted(r.body for r in results) == ["<run id='0'/>", "<run id='1'/>", "<run id='2'/>"]
        assert elapsed < 1.2

    @pytest.mark.asyncio
    async def test_registry_tracks_running_executions(self, result_file):
        registry = ExecutionRegistry(id_factory=iter(["exec-1"]).__next__)
        executor = ProcessExecutor(registry=registry)

        task = asyncio.create_task(executor.execute(f"sleep 0.3 && {echo_result(True, result_file)}", 5))
        await wait_for_running(executor, 1)

        assert registry.execution_ids == ["exec-1"]
        result = await task
        assert result.successful is True
        assert len(registry) == 0


class TestRunProcess:
    """Tests for the process outcome variants."""

    @pytest.mark.asyncio
    async def test_completed(self, executor):
        outcome = await executor._run_process("echo hi", timeout=5)

        assert isinstance(outcome, CompletedProcess)
        assert outcome.stdout == "hi\n"
        assert outcome.exit_code == 0

    @pytest.mark.asyncio
    async def test_killed_on_timeout(self, executor):
        outcome = await executor._run_process("echo before; sleep 3", timeout=EXECUTION_TIMEOUT)

        assert isinstance(outcome, KilledProcess)
        assert outcome.timed_out is True
        assert outcome.stdout == "before\n"

    @pytest.mark.asyncio
    async def test_failed(self, executor):
        outcome = await executor._run_process("exit 2", timeout=5)

        assert isinstance(outcome, FailedProcess)
        assert outcome.exit_code == 2
        assert "Command failed: exit 2" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_execution_id_in_environment(self):
        registry = ExecutionRegistry(id_factory=lambda: "fixed-id")
        executor = ProcessExecutor(registry=registry)

        outcome = await executor._run_process(f'echo "${EXECUTION_ID_ENV}"', timeout=5)

        assert outcome.stdout == "fixed-id\n"


class TestMockJob:
    """Runs the protocol job script end to end."""

    def _command(self, path: Path, *args: str) -> str:
        script = MOCK_JOBS_DIR / "protocol_job.py"
        extra = " ".join(args)
        return f'"{sys.executable}" "{script}" "{path}" {extra}'

    @pytest.mark.asyncio
    async def test_successful_job(self, executor, tmp_path):
        path = tmp_path / "junit.xml"

        result = await executor.execute(self._command(path), timeout=30)

        assert result.successful is True
        assert 'name="café"' in result.body
        assert len(result.log) == 1
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_failing_job(self, executor, tmp_path):
        path = tmp_path / "junit.xml"

        result = await executor.execute(self._command(path, "--fail"), timeout=30)

        assert result.successful is False
        assert 'failures="1"' in result.body

    @pytest.mark.asyncio
    async def test_latin1_result_file(self, executor, tmp_path):
        path = tmp_path / "junit.xml"

        result = await executor.execute(self._command(path, "--encoding", "iso-8859-1"), timeout=30)

        assert result.successful is True
        assert 'name="café"' in result.body


class TestBuildResultString:
    def test_exposed_on_executor(self, executor):
        assert executor.build_result_string(True, "f") == '{\\"file\\":\\"f\\",\\"successful\\":true}'

"""Registry of the child processes that are currently running."""

from __future__ import annotations

import contextlib
import os
import signal
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable

from loguru import logger

# SIGKILL, because some test runners (mocha for one) ignore SIGTERM
KILL_SIGNAL = signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM

# Terminations issued by us rather than failures of the command
CONTROLLED_SIGNALS = frozenset(
    sig for sig in (getattr(signal, "SIGKILL", None), signal.SIGTERM) if sig is not None
)


def default_id_factory() -> str:
    return str(uuid.uuid4())


@dataclass
class ExecutionHandle:
    """Handle to one running child process."""

    execution_id: str
    process: Any  # asyncio.subprocess.Process
    command: str = ""
    started_at: datetime = field(default_factory=datetime.now)
    kill_signal: int | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def was_killed(self) -> bool:
        """Check if we killed this process."""
        return self.kill_signal is not None

    def is_running(self) -> bool:
        return self.process.returncode is None

    def kill(self, sig: int = KILL_SIGNAL) -> None:
        """Kill the process and everything it spawned.

        The child runs in its own session, so its process group id is its pid.
        The group is signalled even when the shell itself already exited:
        a handle stays registered only until ``communicate()`` returns, so a
        reaped shell means a grandchild still holds the output pipe and keeps
        the group (and with it the pid) alive.
        """
        self.kill_signal = sig
        try:
            if sys.platform == "win32":
                self.process.kill()
            else:
                os.killpg(self.pid, sig)
        except ProcessLookupError:
            # Already gone
            pass
        except PermissionError as e:
            logger.warning(f"Could not kill process group of [{self.execution_id}]: {e}")
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()


class ExecutionRegistry:
    """Tracks in-flight executions by id.

    Register and unregister may be called from any coroutine; ``kill_all``
    takes a snapshot under the lock, clears the registry and kills the
    snapshot afterwards. A registration racing with the snapshot may or may
    not be included, but every handle is removed again by its own execution.
    """

    def __init__(self, id_factory: Callable[[], str] | None = None):
        self._id_factory = id_factory or default_id_factory
        self._executions: dict[str, ExecutionHandle] = {}
        self._lock = Lock()
        self._abort_epoch = 0

    def new_id(self) -> str:
        return self._id_factory()

    @property
    def abort_epoch(self) -> int:
        """Incremented by every ``kill_all`` call."""
        with self._lock:
            return self._abort_epoch

    def register(self, process: Any, command: str = "", execution_id: str | None = None) -> ExecutionHandle:
        """Register a freshly spawned process."""
        execution_id = execution_id or self.new_id()
        handle = ExecutionHandle(execution_id=execution_id, process=process, command=command)
        with self._lock:
            if execution_id in self._executions:
                raise ValueError(f"Execution id [{execution_id}] is already registered")
            self._executions[execution_id] = handle
        return handle

    def unregister(self, execution_id: str) -> ExecutionHandle | None:
        with self._lock:
            return self._executions.pop(execution_id, None)

    def get(self, execution_id: str) -> ExecutionHandle | None:
        with self._lock:
            return self._executions.get(execution_id)

    def kill_all(self, sig: int = KILL_SIGNAL) -> int:
        """Kill every registered process and clear the registry.

        Returns:
            Number of processes that were killed
        """
        with self._lock:
            handles = list(self._executions.values())
            self._executions.clear()
            self._abort_epoch += 1

        for handle in handles:
            logger.debug(f"Killing process with id [{handle.execution_id}] (pid {handle.pid})")
            handle.kill(sig)

        return len(handles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)

    def __contains__(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._executions

    @property
    def execution_ids(self) -> list[str]:
        with self._lock:
            return list(self._executions.keys())

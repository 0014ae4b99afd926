"""
Background task runner

Long operations (setup, lockdown, deploy, rollback) run as asyncio tasks
so the caller gets a handle back immediately. Every task ends succeeded,
failed or cancelled, and failures stay on the handle.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from pbdeploy.logger import DeployLogger
from pbdeploy.services.notifier import ProgressReporter
from pbdeploy.utils import new_id, utcnow


class TaskStatus(Enum):
    """Lifecycle of a background task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_done(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class TaskHandle:
    """Caller-side view of a submitted task."""

    id: str
    kind: str
    subject_id: str
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[BaseException] = None
    result: Any = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    finished: Optional[asyncio.Event] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status.is_done

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "subject_id": self.subject_id,
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


FinishCallback = Callable[[TaskHandle], None]


class BackgroundTaskRunner:
    """Submits coroutines as tasks and tracks them by handle."""

    def __init__(self, logger: Optional[DeployLogger] = None):
        self.logger = logger
        self._handles: Dict[str, TaskHandle] = {}

    def submit(
        self,
        kind: str,
        subject_id: str,
        coro: Coroutine,
        on_finish: Optional[FinishCallback] = None,
    ) -> TaskHandle:
        """
        Schedule coro on the running loop.

        Args:
            kind: Operation kind (setup, lockdown, deployment, ...)
            subject_id: Id of the server or deployment the task works on
            coro: Coroutine to run
            on_finish: Called with the handle once the task ended in any state

        Returns:
            TaskHandle
        """
        handle = TaskHandle(id=new_id(), kind=kind, subject_id=subject_id)
        handle.finished = asyncio.Event()

        async def run():
            handle.status = TaskStatus.RUNNING
            return await coro

        task = asyncio.get_running_loop().create_task(run(), name=f"{kind}:{subject_id}")
        task.add_done_callback(lambda t: self._finalize(handle, coro, t, on_finish))
        handle.task = task
        self._handles[handle.id] = handle

        if self.logger:
            self.logger.log(f"Submitted {kind} task {handle.id} for {subject_id}", "DEBUG")
        return handle

    def submit_reported(
        self,
        kind: str,
        subject_id: str,
        coro: Coroutine,
        reporter: ProgressReporter,
        label: str,
    ) -> TaskHandle:
        """
        Submit coro, which reports through reporter, so that its
        subscription always ends with a 'complete' or 'failed' event.

        A task cancelled before it started, or one that died without
        reporting, gets the missing 'failed' event when it finishes.
        """

        def finish(handle: TaskHandle) -> None:
            if reporter.finished:
                return
            if handle.status == TaskStatus.CANCELLED:
                reporter.fail(f"{label} cancelled")
            elif handle.status == TaskStatus.FAILED:
                reporter.fail(f"{label} failed", detail=str(handle.error))

        return self.submit(kind, subject_id, coro, on_finish=finish)

    def _finalize(
        self,
        handle: TaskHandle,
        coro: Coroutine,
        task: asyncio.Task,
        on_finish: Optional[FinishCallback],
    ) -> None:
        if task.cancelled():
            if handle.status == TaskStatus.PENDING:
                # Cancelled before the wrapper ever awaited it
                coro.close()
            handle.status = TaskStatus.CANCELLED
        elif task.exception() is not None:
            handle.status = TaskStatus.FAILED
            handle.error = task.exception()
            if self.logger:
                self.logger.log(f"Task {handle.kind} {handle.id} failed: {handle.error}", "ERROR")
        else:
            handle.status = TaskStatus.SUCCEEDED
            handle.result = task.result()

        handle.finished_at = utcnow()

        if on_finish:
            try:
                on_finish(handle)
            except Exception as e:
                if self.logger:
                    self.logger.log_error(f"Completion callback of task {handle.id} failed", context=str(e))
                if handle.error is None:
                    handle.error = e

        handle.finished.set()

    def get(self, task_id: str) -> Optional[TaskHandle]:
        return self._handles.get(task_id)

    def find(self, kind: str, subject_id: str) -> Optional[TaskHandle]:
        """Most recent task of kind for subject_id."""
        matches = [
            h for h in self._handles.values() if h.kind == kind and h.subject_id == subject_id
        ]
        return matches[-1] if matches else None

    def list(self, kind: Optional[str] = None) -> List[TaskHandle]:
        return [h for h in self._handles.values() if kind is None or h.kind == kind]

    async def wait(self, handle: TaskHandle, timeout: Optional[float] = None) -> TaskHandle:
        """Wait until the task ended; never raises the task's error."""
        try:
            await asyncio.wait_for(handle.finished.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return handle

    def cancel(self, handle: TaskHandle) -> bool:
        """Request cancellation. Returns False when the task already ended."""
        if handle.done or handle.task is None:
            return False
        return handle.task.cancel()

    async def shutdown(self) -> None:
        """Cancel every unfinished task and wait for all of them."""
        pending = [h for h in self._handles.values() if not h.done]
        for handle in pending:
            handle.task.cancel()
        for handle in pending:
            await handle.finished.wait()

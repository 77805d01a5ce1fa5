"""TaskManager: lifecycle-tracked asyncio tasks for per-generation work."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class TaskState(enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    REVOKED = "revoked"


@dataclass
class TrackedTask:
    task: asyncio.Task
    name: str
    kind: str
    task_id: int
    generation: int = 0
    state: TaskState = TaskState.RUNNING


class TaskManager:
    """Owns every task a session spawns so stop() can revoke them together.

    Superseded generations are not revoked here: their tasks run to
    completion and the generation check drops what they produce.
    """

    def __init__(self) -> None:
        self._tasks: dict[int, TrackedTask] = {}
        self._next_id = 1

    def submit(self, coro, *, name: str, kind: str, generation: int = 0) -> TrackedTask:
        task = asyncio.create_task(coro, name=name)
        tt = TrackedTask(
            task=task, name=name, kind=kind, task_id=self._next_id, generation=generation
        )
        self._tasks[self._next_id] = tt
        self._next_id += 1
        task.add_done_callback(lambda t, _tt=tt: self._on_done(_tt, t))
        return tt

    def revoke(self, task_id: int) -> None:
        tt = self._tasks.get(task_id)
        if tt is None or tt.state != TaskState.RUNNING:
            return
        tt.task.cancel()
        tt.state = TaskState.REVOKED

    def revoke_kind(self, kind: str) -> None:
        for tt in self.active():
            if tt.kind == kind:
                self.revoke(tt.task_id)

    def revoke_all(self) -> None:
        for task_id in list(self._tasks):
            self.revoke(task_id)

    def active(self, kind: str | None = None) -> list[TrackedTask]:
        return sorted(
            [
                tt for tt in self._tasks.values()
                if tt.state == TaskState.RUNNING and (kind is None or tt.kind == kind)
            ],
            key=lambda tt: tt.task_id,
        )

    async def shutdown(self) -> None:
        self.revoke_all()
        tasks = [tt.task for tt in self._tasks.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _on_done(self, tt: TrackedTask, task: asyncio.Task) -> None:
        # Finished tasks are forgotten; only running ones need revoking later.
        self._tasks.pop(tt.task_id, None)
        if tt.state != TaskState.RUNNING:
            return
        if task.cancelled():
            tt.state = TaskState.REVOKED
        elif task.exception() is not None:
            tt.state = TaskState.FAILURE
            logger.error(f"task {tt.name} failed", exc_info=task.exception())
        else:
            tt.state = TaskState.SUCCESS

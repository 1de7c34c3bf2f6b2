from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from ..core.errors import InvalidTask, PersistenceFailure, TaskNotFound
from ..core.logging import get_logger
from ..schemas.agents import CreativeResult
from ..schemas.decisions import DecisionLogEntry, PipelineState
from ..schemas.tasks import (
    ChannelSnapshot,
    Objective,
    OrchestratorTask,
    TaskConstraints,
    TaskHandle,
    TaskPending,
    TaskResult,
)
from ..schemas.tenant import TenantContext
from .pipeline import Orchestrator

logger = get_logger(name=__name__)


@dataclass(slots=True)
class _Submission:
    handle: TaskHandle
    task: asyncio.Task[TaskResult]
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    state: PipelineState | None = None
    finished_at: float | None = None


class TaskManager:
    """Runs each submitted task as its own ``asyncio.Task`` and hands results back by handle.

    Finished tasks stay readable for ``retention_seconds``; older ones are dropped on the next submission.
    """

    def __init__(self, *, orchestrator: Orchestrator, retention_seconds: float = 900.0) -> None:
        self._orchestrator = orchestrator
        self._retention_seconds = retention_seconds
        self._submissions: dict[str, _Submission] = {}

    @property
    def orchestrator(self) -> Orchestrator:
        return self._orchestrator

    async def submit_task(
        self,
        tenant: TenantContext,
        objective: Objective | str,
        constraints: TaskConstraints | Mapping[str, Any] | None,
        snapshot: Mapping[str, ChannelSnapshot | Mapping[str, Any]] | None,
        *,
        creative: CreativeResult | None = None,
    ) -> TaskHandle:
        self._prune_finished()
        try:
            task = OrchestratorTask(
                task_id=uuid4().hex,
                tenant=tenant,
                objective=objective,
                constraints=constraints if constraints is not None else TaskConstraints(),
                snapshot=dict(snapshot or {}),
                creative=creative,
            )
        except ValidationError as exc:
            logger.warning("task_rejected", tenant=tenant.tenant_key, error=str(exc))
            raise InvalidTask(str(exc)) from exc

        handle = TaskHandle(task_id=task.task_id, tenant_key=tenant.tenant_key, submitted_at=task.created_at)
        cancel_event = asyncio.Event()
        initial = PipelineState.AUDIT if task.objective is Objective.AUDIT_ONLY else PipelineState.RESEARCH

        def _track(entry: DecisionLogEntry) -> None:
            self._submissions[task.task_id].state = entry.next_state

        runner = asyncio.create_task(
            self._orchestrator.run(task, cancel_event=cancel_event, listener=_track),
            name=f"marketing-task-{task.task_id}",
        )
        self._submissions[task.task_id] = _Submission(
            handle=handle, task=runner, cancel_event=cancel_event, state=initial
        )
        runner.add_done_callback(lambda finished: self._on_done(task.task_id, finished))
        logger.info("task_submitted", task_id=task.task_id, tenant=handle.tenant_key, objective=task.objective.value)
        return handle

    def get_task_result(self, handle: TaskHandle) -> TaskResult | TaskPending:
        submission = self._require(handle)
        if not submission.task.done():
            return TaskPending(
                task_id=handle.task_id,
                tenant_key=handle.tenant_key,
                submitted_at=handle.submitted_at,
                state=submission.state,
            )
        return self._unwrap(submission)

    async def wait_for_result(self, handle: TaskHandle, timeout: float | None = None) -> TaskResult | TaskPending:
        submission = self._require(handle)
        await asyncio.wait({submission.task}, timeout=timeout)
        return self.get_task_result(handle)

    async def cancel(self, handle: TaskHandle) -> bool:
        """Request cooperative cancellation; returns False if the task already finished."""
        submission = self._require(handle)
        if submission.task.done():
            return False
        submission.cancel_event.set()
        logger.info("task_cancel_requested", task_id=handle.task_id, state=_state_value(submission.state))
        return True

    def active_tasks(self, tenant_key: str | None = None) -> list[TaskHandle]:
        return [
            submission.handle
            for submission in self._submissions.values()
            if not submission.task.done() and (tenant_key is None or submission.handle.tenant_key == tenant_key)
        ]

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskManager"]:
        try:
            yield self
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Cancel whatever is still running and wait for the cancelled entries to be written."""
        pending = [submission for submission in self._submissions.values() if not submission.task.done()]
        for submission in pending:
            submission.cancel_event.set()
        for submission in pending:
            with contextlib.suppress(PersistenceFailure):
                await submission.task
        if pending:
            logger.info("task_manager_stopped", cancelled=len(pending))

    def _require(self, handle: TaskHandle) -> _Submission:
        submission = self._submissions.get(handle.task_id)
        if submission is None or submission.handle.tenant_key != handle.tenant_key:
            raise TaskNotFound(f"unknown task {handle.task_id}")
        return submission

    @staticmethod
    def _unwrap(submission: _Submission) -> TaskResult:
        if submission.task.cancelled():
            raise PersistenceFailure(
                "task was interrupted before reaching a terminal state", task_id=submission.handle.task_id
            )
        exc = submission.task.exception()
        if exc is not None:
            raise exc
        return submission.task.result()

    def _prune_finished(self) -> None:
        cutoff = time.monotonic() - self._retention_seconds
        expired = [
            task_id
            for task_id, submission in self._submissions.items()
            if submission.finished_at is not None and submission.finished_at <= cutoff
        ]
        for task_id in expired:
            del self._submissions[task_id]
        if expired:
            logger.debug("task_results_pruned", count=len(expired))

    def _on_done(self, task_id: str, finished: asyncio.Task[TaskResult]) -> None:
        self._submissions[task_id].finished_at = time.monotonic()
        if finished.cancelled():
            logger.warning("task_interrupted", task_id=task_id)
            return
        exc = finished.exception()
        if exc is not None:
            logger.error("task_failed", task_id=task_id, error=str(exc))
            return
        result = finished.result()
        self._submissions[task_id].state = result.state


def _state_value(state: PipelineState | None) -> str | None:
    return state.value if state is not None else None

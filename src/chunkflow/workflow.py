"""Workflow and progress tracking.

A workflow is an ordered list of weighted steps. Each step moves one way,
pending -> running -> succeeded/failed, and the workflow's aggregate
progress is the weight-averaged progress of its steps. Every change is
pushed to the workflow's subscribers as an immutable ``WorkflowSnapshot``
and to the registry's ``EventChannel`` as a ``ProgressEvent``.

Example:
    >>> registry = ProgressRegistry()
    >>> wf = registry.start_workflow("Upload", steps=[{"label": "Upload", "weight": 1}])
    >>> wf.update_step(0, 50, "halfway")
    >>> wf.snapshot().progress
    50.0
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from chunkflow.models.schema import (
    Operation,
    OperationStatus,
    ProgressEvent,
    WorkflowSnapshot,
    WorkflowStatus,
)
from chunkflow.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MAX_WORKFLOW_HISTORY = 30

# Aggregate stays below this until every step has succeeded
_UNFINISHED_CEILING = 99.99


class WorkflowError(Exception):
    """Illegal workflow operation (unknown step or a move out of a terminal state)."""

    pass


class EventChannel(Generic[T]):
    """Synchronous publish/subscribe channel for one event type.

    Subscribers are called in subscription order. A subscriber that raises
    is logged and skipped; it never breaks the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes the callback again.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Progress subscriber {callback!r} failed")

    def __len__(self) -> int:
        return len(self._subscribers)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_step(workflow_id: str, index: int, step: str | Mapping[str, Any] | Operation) -> Operation:
    op_id = f"{workflow_id}_op_{index}"
    if isinstance(step, Operation):
        return step.model_copy(update={"id": op_id})
    if isinstance(step, str):
        return Operation(id=op_id, label=step)
    return Operation(
        id=op_id,
        label=step["label"],
        weight=step.get("weight", 1.0),
        hard_fail=step.get("hard_fail", True),
    )


class Workflow:
    """A running multi-step job.

    Created through ``ProgressRegistry.start_workflow``; not meant to be
    constructed directly.
    """

    def __init__(
        self,
        workflow_id: str,
        label: str,
        steps: list[Operation],
        events: EventChannel[ProgressEvent] | None = None,
    ) -> None:
        if not steps:
            raise WorkflowError("A workflow needs at least one step")

        self.workflow_id = workflow_id
        self.label = label
        self.created_at = _now()
        self.summary = ""
        self._steps = list(steps)
        self._events = events
        self._observers: EventChannel[WorkflowSnapshot] = EventChannel()
        self._progress = 0.0

    @property
    def steps(self) -> tuple[Operation, ...]:
        return tuple(self._steps)

    @property
    def progress(self) -> float:
        """Weighted aggregate progress in [0, 100]."""
        return self._progress

    @property
    def status(self) -> WorkflowStatus:
        statuses = [step.status for step in self._steps]

        if any(s.status == OperationStatus.FAILED and s.hard_fail for s in self._steps):
            return WorkflowStatus.FAILED
        if all(s == OperationStatus.PENDING for s in statuses):
            return WorkflowStatus.PENDING
        if not all(step.is_terminal for step in self._steps):
            return WorkflowStatus.RUNNING
        if any(s.status == OperationStatus.FAILED or s.partial for s in self._steps):
            return WorkflowStatus.PARTIALLY_SUCCEEDED
        return WorkflowStatus.SUCCEEDED

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            WorkflowStatus.SUCCEEDED,
            WorkflowStatus.PARTIALLY_SUCCEEDED,
            WorkflowStatus.FAILED,
        )

    @property
    def current_index(self) -> int | None:
        """Index of the first running step, or None."""
        for index, step in enumerate(self._steps):
            if step.status == OperationStatus.RUNNING:
                return index
        return None

    def subscribe(self, callback: Callable[[WorkflowSnapshot], None]) -> Callable[[], None]:
        """Receive a snapshot on every change. Returns an unsubscribe function."""
        return self._observers.subscribe(callback)

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            workflow_id=self.workflow_id,
            label=self.label,
            steps=tuple(self._steps),
            progress=self._progress,
            status=self.status,
            summary=self.summary,
            created_at=self.created_at,
        )

    def update_step(self, index: int, progress: float, message: str = "") -> None:
        """Report progress for a step.

        A pending step becomes running. Progress is clamped to [0, 100] and
        never moves backwards.

        Args:
            index: Step position.
            progress: Step progress percentage.
            message: Status text shown to observers.

        Raises:
            WorkflowError: If the index is unknown or the step is already terminal.
        """
        step = self._get_step(index)
        if step.is_terminal:
            raise WorkflowError(
                f"Step {index} ({step.label}) is already {step.status.value}"
            )

        clamped = min(100.0, max(0.0, float(progress)))
        update: dict[str, Any] = {
            "status": OperationStatus.RUNNING,
            "progress": max(step.progress, clamped),
            "message": message or step.message,
        }
        if step.started_at is None:
            update["started_at"] = _now()

        self._steps[index] = step.model_copy(update=update)
        self._changed(index)

    def complete_step(self, index: int, success: bool, message: str = "", partial: bool = False) -> None:
        """Mark a step as finished.

        Success forces the step's progress to 100; a failure keeps the
        progress it had. A pending step may be completed directly.

        Args:
            index: Step position.
            success: Whether the step succeeded.
            message: Final status text.
            partial: The step succeeded for only part of its input.

        Raises:
            WorkflowError: If the index is unknown or the step is already terminal.
        """
        step = self._get_step(index)
        if step.is_terminal:
            raise WorkflowError(
                f"Step {index} ({step.label}) is already {step.status.value}"
            )

        now = _now()
        update: dict[str, Any] = {
            "status": OperationStatus.SUCCEEDED if success else OperationStatus.FAILED,
            "message": message or step.message,
            "partial": bool(success and partial),
            "finished_at": now,
        }
        if success:
            update["progress"] = 100.0
        if step.started_at is None:
            update["started_at"] = now

        self._steps[index] = step.model_copy(update=update)
        if not success:
            log = logger.error if step.hard_fail else logger.warning
            log(f"{self.label}: step '{step.label}' failed: {message}")
        self._changed(index)

    def set_summary(self, summary: str) -> None:
        """Attach the user-visible outcome text and notify observers."""
        self.summary = summary
        self._observers.publish(self.snapshot())

    def _get_step(self, index: int) -> Operation:
        if not 0 <= index < len(self._steps):
            raise WorkflowError(
                f"Unknown step {index} in workflow {self.workflow_id} "
                f"({len(self._steps)} steps)"
            )
        return self._steps[index]

    def _recompute(self) -> None:
        total_weight = sum(step.weight for step in self._steps)
        aggregate = sum(step.weight * step.progress for step in self._steps) / total_weight

        if not all(step.status == OperationStatus.SUCCEEDED for step in self._steps):
            aggregate = min(aggregate, _UNFINISHED_CEILING)
        else:
            aggregate = 100.0

        self._progress = max(self._progress, round(aggregate, 2))

    def _changed(self, index: int) -> None:
        self._recompute()
        step = self._steps[index]

        if self._events is not None:
            self._events.publish(
                ProgressEvent(
                    workflow_id=self.workflow_id,
                    operation_id=step.id,
                    progress=step.progress,
                    message=step.message,
                    status=step.status,
                )
            )
        self._observers.publish(self.snapshot())


class ProgressRegistry:
    """Keeps track of recent workflows.

    Pass one registry to the pipeline and to any observer that wants to list
    or follow workflows. At most ``max_workflows`` are retained; the oldest
    finished ones are dropped first.
    """

    def __init__(self, max_workflows: int = MAX_WORKFLOW_HISTORY) -> None:
        if max_workflows < 1:
            raise ValueError("max_workflows must be at least 1")
        self.max_workflows = max_workflows
        self.events: EventChannel[ProgressEvent] = EventChannel()
        self._workflows: OrderedDict[str, Workflow] = OrderedDict()

    def start_workflow(
        self,
        label: str,
        steps: Iterable[str | Mapping[str, Any] | Operation],
    ) -> Workflow:
        """Register a new workflow.

        Args:
            label: Name of the job.
            steps: Step specs, each a label or a mapping with ``label`` and
                optional ``weight`` and ``hard_fail``.

        Returns:
            The new, pending workflow.
        """
        workflow_id = f"wf_{uuid.uuid4().hex[:12]}"
        operations = [_coerce_step(workflow_id, i, step) for i, step in enumerate(steps)]
        workflow = Workflow(workflow_id, label, operations, events=self.events)

        self._workflows[workflow_id] = workflow
        self._evict()

        logger.debug(f"Started workflow {workflow_id} '{label}' with {len(operations)} steps")
        return workflow

    def get(self, workflow_id: str) -> Workflow | None:
        return self._workflows.get(workflow_id)

    def active(self) -> list[Workflow]:
        """Workflows that have not reached a terminal status, oldest first."""
        return [wf for wf in self._workflows.values() if not wf.is_terminal]

    def recent(self, limit: int = 10) -> list[WorkflowSnapshot]:
        """Snapshots of the newest workflows, newest first."""
        workflows = list(self._workflows.values())[-limit:]
        return [wf.snapshot() for wf in reversed(workflows)]

    def clear_completed(self) -> int:
        """Drop every terminal workflow. Returns how many were dropped."""
        finished = [wid for wid, wf in self._workflows.items() if wf.is_terminal]
        for workflow_id in finished:
            del self._workflows[workflow_id]
        return len(finished)

    def discard(self, workflow_id: str) -> bool:
        """Forget a workflow. Returns False if it was not registered."""
        return self._workflows.pop(workflow_id, None) is not None

    @property
    def is_active(self) -> bool:
        return any(not wf.is_terminal for wf in self._workflows.values())

    def __len__(self) -> int:
        return len(self._workflows)

    def _evict(self) -> None:
        while len(self._workflows) > self.max_workflows:
            victim = next(
                (wid for wid, wf in self._workflows.items() if wf.is_terminal),
                next(iter(self._workflows)),
            )
            del self._workflows[victim]

"""Terminal progress display for workflows."""

from __future__ import annotations

from tqdm import tqdm

from chunkflow.models.schema import WorkflowSnapshot

BAR_FORMAT = "{desc}: {percentage:3.0f}%|{bar}| {n:.0f}/{total_fmt} [{elapsed}<{remaining}]"


def _create_workflow_progress(desc: str = "Processing") -> tqdm:
    """Create a progress bar for a workflow's aggregate percentage."""
    return tqdm(
        total=100,
        desc=desc,
        unit="%",
        bar_format=BAR_FORMAT,
        leave=True,
    )


class TqdmWorkflowObserver:
    """Renders workflow snapshots as a tqdm bar.

    Subscribe it to a workflow; the bar shows the aggregate progress and the
    running step's message, and closes once the workflow is terminal.

    Example:
        >>> observer = TqdmWorkflowObserver()
        >>> unsubscribe = workflow.subscribe(observer)
    """

    def __init__(self, bar: tqdm | None = None) -> None:
        self._bar = bar
        self._closed = False

    def __call__(self, snapshot: WorkflowSnapshot) -> None:
        if self._closed:
            return
        if self._bar is None:
            self._bar = _create_workflow_progress(snapshot.label)

        step = snapshot.current_step
        if step is not None:
            detail = step.message or step.label
            self._bar.set_description(f"{step.label}: {detail}" if detail != step.label else step.label)

        delta = snapshot.progress - self._bar.n
        if delta > 0:
            self._bar.update(delta)

        if snapshot.is_terminal:
            self._bar.set_description(snapshot.summary or snapshot.status.value)
            self.close()

    def close(self) -> None:
        if self._bar is not None and not self._closed:
            self._bar.close()
        self._closed = True

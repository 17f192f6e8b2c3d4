"""Rich-based status line for a running stage."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from mdpipe.catalog import ArtifactKind, Stage
from mdpipe.mdout import md_progress, minimization_progress

if TYPE_CHECKING:
    from mdpipe.ledger import RunLayout, Workspace

WAITING_FOR_FILES = "Waiting for the output files to appear ..."
WAITING_FOR_UPDATE = "Waiting for the information update ..."


def read_stage_progress(
    workspace: "Workspace", layout: "RunLayout", stage: Stage
) -> str:
    """One-line progress summary from the files a running stage writes.

    Minimization reports the newest energy row of the ``out`` log, MD
    stages the step counters of ``mdinfo``.
    """
    kind = ArtifactKind.OUTPUT if stage.is_minimization else ArtifactKind.INFO
    name = layout.artifact(stage.name, kind)
    if not workspace.exists(name):
        return WAITING_FOR_FILES
    text = workspace.read_text(name)
    if stage.is_minimization:
        info = minimization_progress(text)
    else:
        info = md_progress(text)
    if info is None:
        return WAITING_FOR_UPDATE
    return f"Current progress: {info}"


class StageProgress:
    """Context manager wrapping ``rich.progress.Progress``.

    Shows a spinner, the stage name, a free-form status and the elapsed
    time.  All public methods are safe to call unconditionally; when
    ``enabled=False`` (or non-TTY stderr) every method is a no-op.
    """

    def __init__(self, enabled: bool = True):
        self._enabled = enabled and sys.stderr.isatty()
        self._progress = None
        self._task = None

    # -- context manager --------------------------------------------------

    def __enter__(self) -> "StageProgress":
        if not self._enabled:
            return self

        from rich.progress import (
            Progress,
            SpinnerColumn,
            TextColumn,
            TimeElapsedColumn,
        )

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            TextColumn("{task.fields[status]}"),
            TimeElapsedColumn(),
            transient=True,
            console=self._make_console(),
        )
        self._progress.start()
        return self

    def __exit__(self, *args) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._task = None

    @staticmethod
    def _make_console():
        from rich.console import Console

        return Console(stderr=True)

    # -- stage level ------------------------------------------------------

    def start_stage(self, name: str) -> None:
        if self._progress is None:
            return
        self._task = self._progress.add_task(
            name,
            total=None,
            status=WAITING_FOR_FILES,
        )

    def update(self, status: str) -> None:
        if self._progress is None or self._task is None:
            return
        self._progress.update(self._task, status=status)

    def finish_stage(self) -> None:
        if self._progress is None or self._task is None:
            return
        self._progress.remove_task(self._task)
        self._task = None

"""Write a structure snapshot of a stage's final checkpoint with ambpdb."""

from __future__ import annotations

import logging
import subprocess
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from mdpipe.catalog import ArtifactKind, Stage
from mdpipe.errors import PreconditionError
from mdpipe.ledger import RunLedger

logger = logging.getLogger(__name__)

# Runs argv in the run directory and returns the captured stdout.
Runner = Callable[[Sequence[str], Path], str]


def _run_subprocess(argv: Sequence[str], cwd: Path) -> str:
    completed = subprocess.run(
        list(argv),
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        text=True,
        check=False,
    )
    return completed.stdout or ""


class SnapshotState(str, Enum):
    CREATED = "created"
    EXISTS = "exists"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


class SnapshotWriter:
    """Create ``{prefix}.{stage}.last.pdb`` from the stage checkpoint."""

    def __init__(
        self,
        ledger: RunLedger,
        ambpdb: Path,
        workdir: Path,
        runner: Optional[Runner] = None,
    ):
        self.ledger = ledger
        self.ambpdb = ambpdb
        self.workdir = Path(workdir)
        self.runner = runner or _run_subprocess

    def ensure(self, stage: Stage, strict: bool = False) -> SnapshotState:
        """Create the snapshot if the checkpoint exists and it does not.

        Failing to create the file is only logged.  With ``strict`` an
        existing snapshot is an error, since after a fresh launch it can
        only be left over from an earlier attempt.
        """
        ledger = self.ledger
        layout = ledger.layout
        checkpoint = layout.artifact(stage.name, ArtifactKind.RESTART)
        if not (
            ledger.is_present(layout.topology)
            and ledger.is_present(checkpoint)
        ):
            return SnapshotState.UNAVAILABLE

        target = layout.artifact(stage.name, ArtifactKind.SNAPSHOT)
        if ledger.is_present(target):
            if strict:
                raise PreconditionError(
                    f"File {target} can be from a previous unfinished run. "
                    "Remove it manually and restart to update"
                )
            logger.debug("Snapshot %s exists", target)
            return SnapshotState.EXISTS

        argv = [str(self.ambpdb), "-p", layout.topology, "-c", checkpoint]
        try:
            text = self.runner(argv, self.workdir)
        except OSError as exc:
            logger.warning("Failed to run %s: %s", self.ambpdb, exc)
            text = ""
        if text:
            ledger.workspace.write_text(target, text)
        ledger.refresh()
        if not ledger.is_present(target):
            logger.warning("Failed creating snapshot %s", target)
            return SnapshotState.FAILED
        logger.info(
            "Created %s from %s and %s", target, layout.topology, checkpoint
        )
        return SnapshotState.CREATED

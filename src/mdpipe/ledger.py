"""File-system view of a run: naming, presence and stage completeness.

The ledger never keeps state of its own between invocations.  Everything
it knows comes from scanning the run directory, so a rerun after a crash
sees exactly what the previous attempt left behind.
"""

from __future__ import annotations

import abc
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from mdpipe.catalog import ArtifactKind, Stage
from mdpipe.mdout import has_completion_marker

logger = logging.getLogger(__name__)

LOGFILE = "logfile"

_BACKUP_SUFFIX = "_bkp"


# ------------------------------------------------------------------
# Workspace
# ------------------------------------------------------------------


class Workspace(abc.ABC):
    """Minimal file store interface the pipeline works against."""

    @abc.abstractmethod
    def names(self) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def exists(self, name: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def size(self, name: str) -> int:
        """Size in bytes, 0 when the file does not exist."""
        raise NotImplementedError

    @abc.abstractmethod
    def read_text(self, name: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def write_text(self, name: str, text: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def move(self, source: str, target: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def remove(self, name: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def path(self, name: str) -> Path:
        raise NotImplementedError


class LocalWorkspace(Workspace):
    """Workspace backed by a directory on disk."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"LocalWorkspace({str(self.root)!r})"

    def names(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if p.is_file())

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def size(self, name: str) -> int:
        try:
            return self.path(name).stat().st_size
        except FileNotFoundError:
            return 0

    def read_text(self, name: str) -> str:
        return self.path(name).read_text(errors="replace")

    def write_text(self, name: str, text: str) -> None:
        self.path(name).write_text(text)

    def move(self, source: str, target: str) -> None:
        if self.path(target).exists():
            raise FileExistsError(f"Refusing to overwrite {target}")
        os.rename(self.path(source), self.path(target))

    def remove(self, name: str) -> None:
        self.path(name).unlink()

    def path(self, name: str) -> Path:
        return self.root / name


# ------------------------------------------------------------------
# Naming
# ------------------------------------------------------------------


@dataclass(frozen=True)
class RunLayout:
    """Filenames of a run identified by *prefix*."""

    prefix: str

    @property
    def topology(self) -> str:
        return f"{self.prefix}.prmtop"

    @property
    def coordinates(self) -> str:
        return f"{self.prefix}.inpcrd"

    @property
    def structure(self) -> str:
        return f"{self.prefix}.pdb"

    @property
    def inputs(self) -> List[str]:
        return [self.topology, self.coordinates, self.structure]

    @property
    def lock(self) -> str:
        return f"{self.prefix}.lock"

    def artifact(self, stage: str, kind: ArtifactKind) -> str:
        return f"{self.prefix}.{stage}.{kind.value}"

    def config(self, stage: str) -> str:
        return self.artifact(stage, ArtifactKind.CONFIG)

    def backup(self, stage: str, kind: ArtifactKind, index: int) -> str:
        return f"{self.artifact(stage, kind)}{_BACKUP_SUFFIX}{index}"

    def stage_files(self, stage: Stage) -> List[str]:
        """Output files owned by *stage*, including unprefixed ones."""
        names = [self.artifact(stage.name, k) for k in stage.artifact_kinds]
        names.extend(stage.extra_artifacts)
        return names


def backup_name(name: str, index: int) -> str:
    return f"{name}{_BACKUP_SUFFIX}{index}"


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------


class ArtifactState(str, Enum):
    OK = "ok"
    MISSING = "missing"
    INCOMPLETE = "incomplete"


@dataclass
class StageStatus:
    """Per-artifact state of one stage."""

    stage: Stage
    artifacts: Dict[str, ArtifactState] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return all(s == ArtifactState.OK for s in self.artifacts.values())

    @property
    def problems(self) -> List[str]:
        return [
            f"{name} ... {state.value}"
            for name, state in self.artifacts.items()
            if state != ArtifactState.OK
        ]


class RunLedger:
    """Snapshot of the run directory with artifact queries.

    Call :meth:`refresh` after anything touches the workspace; queries
    answer from the last scan.
    """

    def __init__(self, workspace: Workspace, layout: RunLayout):
        self.workspace = workspace
        self.layout = layout
        self._sizes: Dict[str, int] = {}
        self.refresh()

    def refresh(self) -> None:
        self._sizes = {
            name: self.workspace.size(name)
            for name in self.workspace.names()
        }

    def exists(self, name: str) -> bool:
        return name in self._sizes

    def is_present(self, name: str) -> bool:
        """Exists and is non-empty."""
        return self._sizes.get(name, 0) > 0

    def backup_indices(self, name: str) -> List[int]:
        pattern = re.compile(
            re.escape(name + _BACKUP_SUFFIX) + r"(\d+)$"
        )
        indices = []
        for candidate in self._sizes:
            match = pattern.match(candidate)
            if match:
                indices.append(int(match.group(1)))
        return sorted(indices)

    def latest_backup(self, stage: str, kind: ArtifactKind) -> Optional[int]:
        indices = self.backup_indices(self.layout.artifact(stage, kind))
        return indices[-1] if indices else None

    def next_backup_index(self, stage: Stage) -> int:
        """One past the highest backup index of any file of *stage*."""
        highest = 0
        for name in self.layout.stage_files(stage):
            indices = self.backup_indices(name)
            if indices:
                highest = max(highest, indices[-1])
        return highest + 1

    def stage_status(self, stage: Stage) -> StageStatus:
        status = StageStatus(stage)
        for kind in stage.artifact_kinds:
            name = self.layout.artifact(stage.name, kind)
            if not self.exists(name):
                state = ArtifactState.MISSING
            elif not self.is_present(name):
                state = ArtifactState.INCOMPLETE
            elif kind == ArtifactKind.OUTPUT and not has_completion_marker(
                self.workspace.read_text(name)
            ):
                state = ArtifactState.INCOMPLETE
            else:
                state = ArtifactState.OK
            status.artifacts[name] = state
        for name in stage.extra_artifacts:
            status.artifacts[name] = (
                ArtifactState.OK
                if self.exists(name)
                else ArtifactState.MISSING
            )
        return status

    def is_complete(self, stage: Stage) -> bool:
        return self.stage_status(stage).complete

"""Locate and verify the AMBER binaries a run needs."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from mdpipe.config import Engine, LaunchConfig
from mdpipe.errors import PreconditionError

logger = logging.getLogger(__name__)

PMEMD_CUDA = "pmemd.cuda"
PMEMD_CUDA_MPI = "pmemd.cuda.MPI"
PMEMD_MPI = "pmemd.MPI"
SANDER_MPI = "sander.MPI"
AMBPDB = "ambpdb"


def engine_binary_name(launch: LaunchConfig) -> str:
    """Pick the engine build for the requested execution mode."""
    if launch.engine == Engine.PMEMD_MPI:
        return PMEMD_MPI
    if launch.engine == Engine.SANDER_MPI:
        return SANDER_MPI

    cluster = launch.cluster
    if cluster is None:
        return PMEMD_CUDA
    if not cluster.uses_gpus:
        return PMEMD_MPI
    if cluster.node_count == 1 and not cluster.gpus_per_node:
        # One GPU in total: the serial GPU build is enough.
        return PMEMD_CUDA
    return PMEMD_CUDA_MPI


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


@dataclass(frozen=True)
class Toolchain:
    """Paths of the installed AMBER tools."""

    amber_home: Optional[Path] = None
    mpirun: Optional[Path] = None

    @classmethod
    def from_environment(
        cls, environ: Optional[Mapping[str, str]] = None
    ) -> "Toolchain":
        environ = os.environ if environ is None else environ
        home = environ.get("AMBERHOME") or None
        mpirun = shutil.which("mpirun", path=environ.get("PATH"))
        return cls(
            amber_home=Path(home) if home else None,
            mpirun=Path(mpirun) if mpirun else None,
        )

    def binary(self, name: str) -> Path:
        if self.amber_home is None:
            raise PreconditionError("AMBERHOME is not set")
        return self.amber_home / "bin" / name

    @property
    def ambpdb(self) -> Path:
        return self.binary(AMBPDB)

    def engine(self, launch: LaunchConfig) -> Path:
        return self.binary(engine_binary_name(launch))

    def required(self, launch: LaunchConfig) -> List[Path]:
        return [self.engine(launch), self.ambpdb]

    def verify(self, launch: LaunchConfig) -> None:
        """Check that every binary the run will call is executable.

        Raises
        ------
        PreconditionError
            Naming the first missing or non-executable path.
        """
        if self.amber_home is None or not self.amber_home.is_dir():
            raise PreconditionError(
                f"AMBER home folder not set or does not exist at "
                f"'{self.amber_home or ''}'"
            )
        logger.info("AMBER home folder %s ... OK", self.amber_home)

        if launch.local_mpi:
            if self.mpirun is None or not _is_executable(self.mpirun):
                raise PreconditionError(
                    f"The mpirun binary does not exist at "
                    f"'{self.mpirun or ''}' or is not executable"
                )
            logger.info("The mpirun binary %s ... OK", self.mpirun)

        for path in self.required(launch):
            if not _is_executable(path):
                raise PreconditionError(
                    f"The {path.name} binary does not exist at '{path}' "
                    "or is not executable"
                )
            logger.info("The %s binary %s ... OK", path.name, path)

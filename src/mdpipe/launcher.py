"""Build engine command lines and run them as child processes."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from mdpipe.catalog import ArtifactKind, Stage
from mdpipe.config import LaunchConfig
from mdpipe.errors import PreconditionError
from mdpipe.ledger import RunLayout
from mdpipe.toolchain import Toolchain

logger = logging.getLogger(__name__)

# Seconds to wait for a terminated child before killing it.
_TERMINATE_GRACE = 10.0


@dataclass(frozen=True)
class Command:
    """An argument vector plus extra environment variables."""

    argv: Tuple[str, ...]
    env: Tuple[Tuple[str, str], ...] = ()

    def render(self) -> str:
        """Shell-equivalent one-liner, used for dry runs and logs."""
        exports = "".join(f"export {k}={v}; " for k, v in self.env)
        return exports + " ".join(shlex.quote(a) for a in self.argv)

    @property
    def submits(self) -> bool:
        """Whether this hands the job to a batch scheduler."""
        return bool(self.argv) and self.argv[0] == "sbatch"


class CommandBuilder:
    """Assemble the engine invocation for one stage."""

    def __init__(
        self,
        launch: LaunchConfig,
        toolchain: Toolchain,
        layout: RunLayout,
    ):
        self.launch = launch
        self.toolchain = toolchain
        self.layout = layout

    def _prefix(self) -> List[str]:
        if self.launch.local_mpi:
            mpirun = str(self.toolchain.mpirun or "mpirun")
            return [
                mpirun,
                "-np",
                str(self.launch.effective_cpus),
                "-hosts",
                "localhost",
            ]
        cluster = self.launch.cluster
        if cluster is None:
            return []
        nodes = cluster.node_count
        argv = ["sbatch", "-N", str(nodes)]
        if not cluster.uses_gpus:
            argv.append(f"--ntasks-per-node={cluster.cpus_per_node}")
        elif cluster.gpus_per_node:
            argv += ["-n", str(nodes * cluster.gpus_per_node)]
        argv += [
            "-p",
            cluster.queue,
            "-t",
            str(cluster.maxtime),
            cluster.script,
        ]
        return argv

    def _env(self) -> Tuple[Tuple[str, str], ...]:
        cluster = self.launch.cluster
        if cluster is None or not cluster.gpus_per_node:
            return ()
        devices = ",".join(str(i) for i in range(cluster.gpus_per_node))
        return (("CUDA_VISIBLE_DEVICES", devices),)

    def build(
        self,
        stage: Stage,
        coordinates: str,
        reference: Optional[str] = None,
    ) -> Command:
        """Command for *stage* starting from *coordinates*.

        Parameters
        ----------
        stage : Stage
            Stage to run.
        coordinates : str
            Input coordinates: the run's initial coordinates, the previous
            stage's checkpoint, or a checkpoint backup when resuming.
        reference : str, optional
            Reference coordinates for positional restraints.
        """
        name = stage.name
        artifact = self.layout.artifact
        argv = self._prefix()
        argv += [
            str(self.toolchain.engine(self.launch)),
            "-i",
            self.layout.config(name),
            "-p",
            self.layout.topology,
            "-c",
            coordinates,
            "-o",
            artifact(name, ArtifactKind.OUTPUT),
            "-r",
            artifact(name, ArtifactKind.RESTART),
            "-inf",
            artifact(name, ArtifactKind.INFO),
        ]
        if reference is not None:
            argv += ["-ref", reference]
        if stage.writes_trajectory:
            argv += ["-x", artifact(name, ArtifactKind.TRAJECTORY)]
        return Command(argv=tuple(argv), env=self._env())


# ------------------------------------------------------------------
# Execution
# ------------------------------------------------------------------


class LaunchStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LaunchResult:
    status: LaunchStatus
    returncode: Optional[int]
    elapsed: float

    @property
    def ok(self) -> bool:
        return self.status == LaunchStatus.SUCCESS


class ProcessLauncher:
    """Run a command in the run directory, polling until it exits.

    Parameters
    ----------
    workdir : Path
        Working directory of the child process.
    poll_interval : float
        Seconds between progress callbacks.
    timeout : float, optional
        Wall-clock limit in seconds; the child is terminated when exceeded.
    """

    def __init__(
        self,
        workdir: Path,
        poll_interval: float = 1.0,
        timeout: Optional[float] = None,
    ):
        self.workdir = Path(workdir)
        self.poll_interval = poll_interval
        self.timeout = timeout

    def run(
        self,
        command: Command,
        monitor: Optional[Callable[[], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LaunchResult:
        env = dict(os.environ)
        env.update(command.env)
        logger.debug("Executing: %s", command.render())
        start = time.monotonic()
        try:
            process = subprocess.Popen(
                list(command.argv), cwd=self.workdir, env=env
            )
        except OSError as exc:
            raise PreconditionError(
                f"Failed to start {command.argv[0]}: {exc}"
            ) from exc

        try:
            while True:
                try:
                    returncode = process.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if monitor is not None:
                    monitor()
                elapsed = time.monotonic() - start
                if cancel is not None and cancel.is_set():
                    logger.warning("Cancelling %s", command.argv[0])
                    self._terminate(process)
                    return LaunchResult(
                        LaunchStatus.CANCELLED, process.returncode, elapsed
                    )
                if self.timeout is not None and elapsed > self.timeout:
                    logger.warning(
                        "%s exceeded %.0f s, terminating",
                        command.argv[0],
                        self.timeout,
                    )
                    self._terminate(process)
                    return LaunchResult(
                        LaunchStatus.TIMEOUT, process.returncode, elapsed
                    )
        except KeyboardInterrupt:
            self._terminate(process)
            raise

        if monitor is not None:
            monitor()
        elapsed = time.monotonic() - start
        if returncode == 0:
            status = LaunchStatus.SUCCESS
        else:
            status = LaunchStatus.FAILED
        logger.info(
            "%s exited with code %d after %.1f s",
            command.argv[0],
            returncode,
            elapsed,
        )
        return LaunchResult(status, returncode, elapsed)

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=_TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

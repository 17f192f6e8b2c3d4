"""Stage sequencer: walk the catalog and bring every stage to completion.

A run is driven entirely by what is on disk.  The first invocation in a
fresh directory writes the stage configurations and stops so they can be
reviewed; later invocations skip completed stages, back up partial ones,
resume long stages from their newest checkpoint and launch the engine for
everything else.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from mdpipe._progress import StageProgress, read_stage_progress
from mdpipe.acceleration import (
    AccelerationParameters,
    prepare_accelerated_stage,
)
from mdpipe.backup import backup_stage
from mdpipe.catalog import (
    AMD,
    FREE,
    ArtifactKind,
    Stage,
    build_catalog,
    find_stage,
)
from mdpipe.config import (
    Engine,
    LaunchConfig,
    RunOptions,
    RunParameters,
    RunSpec,
)
from mdpipe.errors import (
    STACK_SIZE_GUIDANCE,
    PreconditionError,
    StageFailedError,
    UsageError,
)
from mdpipe.launcher import (
    Command,
    CommandBuilder,
    LaunchResult,
    LaunchStatus,
    ProcessLauncher,
)
from mdpipe.ledger import (
    LOGFILE,
    LocalWorkspace,
    RunLayout,
    RunLedger,
    Workspace,
)
from mdpipe.lock import RunLock
from mdpipe.materialize import (
    ensure_no_pending,
    materialize,
    unfilled_fields,
    read_title,
    requests_restraints,
    write_stage_config,
)
from mdpipe.recovery import recover_stage
from mdpipe.snapshot import Runner, SnapshotWriter
from mdpipe.structure import count_water_residues
from mdpipe.toolchain import Toolchain

logger = logging.getLogger(__name__)


class PipelineOutcome(str, Enum):
    """Why :meth:`Pipeline.run` returned."""

    COMPLETED = "completed"
    CONFIGURED = "configured"
    STOPPED = "stopped"
    DRY_RUN = "dry_run"
    SUBMITTED = "submitted"
    AMD_PREPARED = "amd_prepared"


@dataclass
class PipelineResult:
    outcome: PipelineOutcome
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    configured: List[str] = field(default_factory=list)
    command: Optional[Command] = None
    acceleration: Optional[AccelerationParameters] = None


def count_solvent(ledger: RunLedger) -> int:
    """Water residues in the structure file of the run."""
    name = ledger.layout.structure
    if not ledger.is_present(name):
        raise PreconditionError(
            f"The required input file {name} is not available "
            "or has zero size"
        )
    return count_water_residues(
        ledger.workspace.read_text(name), source=name
    )


class Pipeline:
    """Run the staged protocol for one prefix in one directory.

    Parameters
    ----------
    spec : RunSpec
        Prefix and working directory of the run.
    params : RunParameters
        Physical parameters used when writing configurations.  The
        high-temperature timestep rule is applied on construction.
    launch : LaunchConfig, optional
        Engine and execution mode.
    options : RunOptions, optional
        Stage selection and protocol switches.
    workspace : Workspace, optional
        File store; defaults to the working directory on disk.
    toolchain : Toolchain, optional
        AMBER installation; defaults to ``$AMBERHOME``.
    launcher : optional
        Object with ``run(command, monitor, cancel) -> LaunchResult``;
        defaults to :class:`ProcessLauncher`.
    snapshot_runner : callable, optional
        Replaces the subprocess call used to write structure snapshots.
    use_lock : bool
        Hold ``{prefix}.lock`` in the working directory while running.
    """

    def __init__(
        self,
        spec: RunSpec,
        params: RunParameters,
        launch: Optional[LaunchConfig] = None,
        options: Optional[RunOptions] = None,
        workspace: Optional[Workspace] = None,
        toolchain: Optional[Toolchain] = None,
        launcher=None,
        snapshot_runner: Optional[Runner] = None,
        use_lock: bool = True,
    ):
        self.spec = spec
        self.params = params.resolved()
        self.launch = launch or LaunchConfig()
        self.options = options or RunOptions()
        self.workspace = workspace or LocalWorkspace(spec.workdir)
        self.toolchain = toolchain or Toolchain.from_environment()
        self.launcher = launcher or ProcessLauncher(
            spec.workdir,
            poll_interval=self.options.poll_interval,
            timeout=self.options.timeout,
        )
        self.snapshot_runner = snapshot_runner
        self.use_lock = use_lock
        self.layout = RunLayout(spec.prefix)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, cancel: Optional[threading.Event] = None) -> PipelineResult:
        if not self.use_lock:
            return self._run(cancel)
        with RunLock(self.spec.workdir / self.layout.lock):
            return self._run(cancel)

    def stages(
        self,
        ledger: Optional[RunLedger] = None,
        options: Optional[RunOptions] = None,
    ) -> List[Stage]:
        """The ordered catalog for this run's options."""
        ledger = ledger or RunLedger(self.workspace, self.layout)
        options = options or self.options
        water_present = None
        if options.em_only:
            water_present = self._count_water(ledger) > 0
        return build_catalog(self.params, options, water_present)

    def configure(
        self, stage_name: Optional[str] = None, force: bool = False
    ) -> List[str]:
        """Write configuration files for the catalog or a single stage.

        Returns the filenames written.  Existing files are only replaced
        with ``force``.
        """
        ledger = RunLedger(self.workspace, self.layout)
        options = self.options
        if stage_name == AMD and not options.em_only:
            options = dataclasses.replace(options, accelerated=True)
        stages = self.stages(ledger, options)
        if stage_name is not None:
            stages = [find_stage(stages, stage_name)]
        if not force:
            existing = [
                self.layout.config(s.name)
                for s in stages
                if ledger.exists(self.layout.config(s.name))
            ]
            if existing:
                raise PreconditionError(
                    "Configuration files already exist: "
                    f"{', '.join(existing)}"
                )
        return self._write_configs(stages)

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    def _run(self, cancel: Optional[threading.Event]) -> PipelineResult:
        options = self.options
        layout = self.layout
        ledger = RunLedger(self.workspace, layout)

        self._check_inputs(ledger)
        stages = self.stages(ledger)
        if options.only is not None:
            find_stage(stages, options.only)
        if options.stop_before is not None:
            find_stage(stages, options.stop_before)

        selected = [
            s for s in stages
            if options.only is None or s.name == options.only
        ]
        present = [
            s for s in selected if ledger.is_present(layout.config(s.name))
        ]
        if not present:
            if options.only is not None:
                raise UsageError(
                    f"Only {options.only} was requested but its "
                    f"configuration file {layout.config(options.only)} "
                    "is not available"
                )
            for line in self.params.describe():
                logger.info(line)
            written = self._write_configs(stages)
            logger.info(
                "All configuration files have been written. You may edit "
                "them but must not rename them; run again to start"
            )
            return PipelineResult(
                PipelineOutcome.CONFIGURED, configured=written
            )
        if len(present) != len(selected):
            missing = [
                layout.config(s.name) for s in selected if s not in present
            ]
            raise PreconditionError(
                "Some configuration files are present and some are not "
                f"(all or nothing); missing: {', '.join(missing)}"
            )

        self.toolchain.verify(self.launch)
        snapshots = SnapshotWriter(
            ledger,
            self.toolchain.ambpdb,
            self.spec.workdir,
            runner=self.snapshot_runner,
        )
        builder = CommandBuilder(self.launch, self.toolchain, layout)
        result = PipelineResult(PipelineOutcome.COMPLETED)

        for index, stage in enumerate(stages):
            if options.only is not None and stage.name != options.only:
                continue
            if stage.name == options.stop_before:
                logger.info("Reached %s and will now stop", stage.name)
                result.outcome = PipelineOutcome.STOPPED
                return result

            config = layout.config(stage.name)
            logger.info(read_title(self.workspace.read_text(config)))
            snapshots.ensure(stage)

            if ledger.is_complete(stage):
                logger.info(
                    "All outputs of %s are present, skipping", stage.name
                )
                result.skipped.append(stage.name)
            else:
                command = self._prepare_launch(
                    index, stage, stages, ledger, builder
                )
                if options.dry_run:
                    logger.info(
                        "Dry run: files are updated, run the command "
                        "manually to continue"
                    )
                    result.outcome = PipelineOutcome.DRY_RUN
                    result.command = command
                    return result

                launched = self._launch(stage, command, cancel)
                if command.submits:
                    self._check_submitted(stage, launched)
                    logger.info("%s has been submitted", stage.name)
                    result.outcome = PipelineOutcome.SUBMITTED
                    result.command = command
                    return result
                self._validate(stage, launched, ledger, snapshots)
                result.executed.append(stage.name)

            if stage.name == FREE and (
                options.accelerated or options.accelerated_prep
            ):
                result.acceleration = self._prepare_accelerated(
                    stage, stages, ledger
                )
                if options.accelerated_prep:
                    logger.info("AMD configuration has been prepared")
                    result.outcome = PipelineOutcome.AMD_PREPARED
                    return result

        logger.info("Done")
        return result

    def _prepare_launch(
        self,
        index: int,
        stage: Stage,
        stages: List[Stage],
        ledger: RunLedger,
        builder: CommandBuilder,
    ) -> Command:
        """Back up, pick input coordinates and build the command."""
        layout = self.layout
        backup_stage(ledger, stage)

        if index == 0:
            coordinates = layout.coordinates
            reference = layout.coordinates
        else:
            previous = layout.artifact(
                stages[index - 1].name, ArtifactKind.RESTART
            )
            reference = previous
            resume = recover_stage(ledger, stage)
            if resume is not None:
                coordinates = resume.checkpoint
            else:
                coordinates = previous
        if not ledger.is_present(coordinates):
            raise PreconditionError(
                f"File {coordinates} does not exist or has zero size"
            )

        config = layout.config(stage.name)
        text = self.workspace.read_text(config)
        ensure_no_pending(text, config, materialize(stage, self.params))
        if not requests_restraints(text):
            reference = None

        command = builder.build(stage, coordinates, reference)
        if self.workspace.exists(LOGFILE):
            logger.info("Removing %s from the previous iteration", LOGFILE)
            self.workspace.remove(LOGFILE)
            ledger.refresh()
        logger.info("Command: %s", command.render())
        return command

    def _launch(
        self,
        stage: Stage,
        command: Command,
        cancel: Optional[threading.Event],
    ) -> LaunchResult:
        with StageProgress(enabled=self.options.show_progress) as progress:
            progress.start_stage(stage.name)

            def monitor() -> None:
                progress.update(
                    read_stage_progress(self.workspace, self.layout, stage)
                )

            launched = self.launcher.run(
                command, monitor=monitor, cancel=cancel
            )
            progress.finish_stage()
        return launched

    def _check_submitted(self, stage: Stage, launched: LaunchResult) -> None:
        if not launched.ok:
            raise StageFailedError(
                f"Submission of {stage.name} failed "
                f"({launched.status.value}, code {launched.returncode})"
            )

    def _validate(
        self,
        stage: Stage,
        launched: LaunchResult,
        ledger: RunLedger,
        snapshots: SnapshotWriter,
    ) -> None:
        if launched.status in (LaunchStatus.TIMEOUT, LaunchStatus.CANCELLED):
            raise StageFailedError(
                f"{stage.name} was {launched.status.value} after "
                f"{launched.elapsed:.0f} s"
            )
        ledger.refresh()
        snapshots.ensure(stage, strict=self.options.strict_snapshots)
        status = ledger.stage_status(stage)
        if launched.ok and status.complete:
            return
        details = status.problems
        if not launched.ok:
            details.insert(0, f"engine exited with code {launched.returncode}")
        raise StageFailedError(
            f"The required output files of {stage.name} were not created "
            f"({'; '.join(details)}). Check the log files for errors",
            guidance=STACK_SIZE_GUIDANCE,
        )

    def _prepare_accelerated(
        self, free: Stage, stages: List[Stage], ledger: RunLedger
    ) -> Optional[AccelerationParameters]:
        target = find_stage(stages, AMD)
        expected = materialize(target, self.params)
        config = self.layout.config(target.name)
        if ledger.is_present(config) and not unfilled_fields(
            self.workspace.read_text(config), expected
        ):
            logger.info("%s is already prepared", config)
            return None
        return prepare_accelerated_stage(ledger, free, target, expected)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_inputs(self, ledger: RunLedger) -> None:
        for name in self.layout.inputs:
            if not ledger.is_present(name):
                raise PreconditionError(
                    f"The required input file {name} is not available "
                    "or has zero size"
                )
            logger.debug("Input file %s ... OK", name)

    def _count_water(self, ledger: RunLedger) -> int:
        name = self.layout.structure
        water = count_solvent(ledger)
        if water == 0:
            logger.info(
                "No solvent found in %s; minimization runs in vacuum", name
            )
            if self.launch.engine != Engine.SANDER_MPI:
                raise PreconditionError(
                    "Energy minimization in vacuum must be performed by "
                    "sander.MPI"
                )
        else:
            logger.info(
                "%s contains %d solvent molecules; minimization runs in "
                "water",
                name,
                water,
            )
        return water

    def _write_configs(self, stages: List[Stage]) -> List[str]:
        written = []
        for stage in stages:
            name = self.layout.config(stage.name)
            write_stage_config(
                self.workspace, name, materialize(stage, self.params)
            )
            written.append(name)
        return written

#!/usr/bin/env python
"""mdpipe CLI - staged AMBER molecular dynamics from a single prefix."""

import logging
from pathlib import Path
from typing import List, Optional

import typer

from mdpipe.config import Engine

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="mdpipe",
    help=(
        "Run the staged AMBER MD protocol for PREFIX.prmtop, "
        "PREFIX.inpcrd and PREFIX.pdb.\n\n"
        "The first run in a fresh directory writes one configuration file "
        "per stage and stops so they can be reviewed. Later runs execute "
        "the stages in order, skip completed ones, back up partial output "
        "and resume long stages after a crash.\n\n"
        "Parameters are given as key=value arguments: temperature (temp), "
        "timestep (dt), cutoff, restraint_weight (rest), "
        "restraint_decrement (eqdec), equilibration_time (eqtime) and "
        "production_time (runtime); times are in ps."
    ),
    add_completion=False,
)

EXAMPLES = """\
Examples:

# Write configuration files for all stages with the default settings
mdpipe run my_file

# Same, with a 310 K target and 10 ns / 100 ns of equilibration / production
mdpipe run my_file temp=310 eqtime=10000 runtime=100000

# Run all stages locally with pmemd.cuda using the files written above
mdpipe run my_file

# Stop before free MD (to launch it separately on a cluster)
mdpipe run my_file --no-free

# Run only free MD, without checking the files of other stages
mdpipe run my_file --free-only

# Run all stages with pmemd.MPI on all local cores
mdpipe run my_file --engine pmemd-mpi --local-mpi

# Run all stages with sander.MPI on 4 local cores
mdpipe run my_file --engine sander-mpi --local-mpi --cpus 4

# Submit free MD on 28 CPU cores of the compute queue
mdpipe run my_file --free-only --slurm --cluster-cpus 28 --queue compute \\
    --maxtime 3000 --script ompi

# Submit free MD on one node (2 GPUs) of the pascal queue
mdpipe run my_file --free-only --slurm --nodes 1 --queue pascal \\
    --maxtime 3000 --script ompi

# Prepare the same submission without executing it
mdpipe run my_file --dry-run --free-only --slurm --nodes 1 --queue pascal \\
    --maxtime 3000

# Write the accelerated MD configuration, derive its parameters from the
# free MD output, then submit it
mdpipe configure my_file --stage step7_amd
mdpipe run my_file --amd-prep
mdpipe run my_file --amd-only --slurm --nodes 4 --queue compute --maxtime 3000
"""


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------


def _setup_logging(verbose: bool, quiet: bool = False) -> None:
    """Configure logging for the CLI.

    Progress of the run is reported through INFO messages, so INFO is the
    default level. --verbose adds debug details and --quiet keeps only
    warnings and errors.
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,  # Override any existing handlers
    )


def _fail(exc: Exception) -> None:
    typer.echo(f"Error: {exc}", err=True)
    for line in getattr(exc, "guidance", ()):
        typer.echo(f"Important: {line}", err=True)
    raise typer.Exit(code=1)


def _pick_only(
    only: Optional[str], free_only: bool, amd_only: bool
) -> Optional[str]:
    from mdpipe.catalog import AMD, FREE
    from mdpipe.errors import UsageError

    chosen = {only} if only else set()
    if free_only:
        chosen.add(FREE)
    if amd_only:
        chosen.add(AMD)
    if len(chosen) > 1:
        raise UsageError(
            "Conflicting options: only one stage can be run on its own, "
            f"got {', '.join(sorted(chosen))}"
        )
    return chosen.pop() if chosen else None


def _load_parameters(config: Optional[Path], overrides: List[str]):
    from mdpipe.config import load_run_parameters

    return load_run_parameters(config_file=config, overrides=overrides)


def _make_spec(prefix: str, workdir: Optional[Path]):
    from mdpipe.config import RunSpec
    from mdpipe.errors import UsageError

    workdir = (workdir or Path.cwd()).resolve()
    if not workdir.is_dir():
        raise UsageError(f"Working directory not found: {workdir}")
    return RunSpec(prefix=prefix, workdir=workdir)


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------


@app.callback(invoke_without_command=True)
def _main(ctx: typer.Context):
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("help")
def help_(ctx: typer.Context):
    """Show usage and exit."""
    typer.echo(ctx.parent.get_help())


@app.command("ex")
def examples():
    """Show usage examples and exit."""
    typer.echo(EXAMPLES)


@app.command(context_settings={"allow_extra_args": True})
def run(
    ctx: typer.Context,
    prefix: str = typer.Argument(
        ...,
        help="Filename prefix of PREFIX.prmtop, PREFIX.inpcrd, PREFIX.pdb",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML file with run parameters (key=value arguments win)",
    ),
    only: Optional[str] = typer.Option(
        None, "--only", help="Run only the named stage"
    ),
    stop_before: Optional[str] = typer.Option(
        None, "--stop-before", help="Stop when the named stage is reached"
    ),
    no_free: bool = typer.Option(
        False, "--no-free", help="Stop before free MD"
    ),
    free_only: bool = typer.Option(
        False, "--free-only", help="Run only free MD"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Back up old files and update configurations, then print "
        "the command instead of running it",
    ),
    engine: Engine = typer.Option(
        Engine.PMEMD_CUDA, "--engine", help="MD engine"
    ),
    local_mpi: bool = typer.Option(
        False, "--local-mpi", help="Launch the engine locally with mpirun"
    ),
    cpus: int = typer.Option(
        0, "--cpus", help="Local MPI processes (default: all cores)"
    ),
    em_only: bool = typer.Option(
        False,
        "--em-only",
        help="Run only the first minimization (water or vacuum is "
        "detected from PREFIX.pdb)",
    ),
    skip_water_step: bool = typer.Option(
        False,
        "--skip-water-step",
        help="Do not relax water before the second minimization",
    ),
    amd: bool = typer.Option(
        False, "--amd", help="Run accelerated MD after free MD"
    ),
    amd_prep: bool = typer.Option(
        False,
        "--amd-prep",
        help="Derive accelerated MD parameters after free MD and exit",
    ),
    amd_only: bool = typer.Option(
        False, "--amd-only", help="Run only accelerated MD"
    ),
    slurm: bool = typer.Option(
        False, "--slurm", help="Submit stages with the Slurm scheduler"
    ),
    queue: Optional[str] = typer.Option(
        None, "--queue", help="Scheduler queue"
    ),
    nodes: int = typer.Option(0, "--nodes", help="Nodes to request"),
    cluster_cpus: int = typer.Option(
        0, "--cluster-cpus", help="CPUs to request instead of GPU nodes"
    ),
    maxtime: int = typer.Option(
        0, "--maxtime", help="Time limit in minutes"
    ),
    script: str = typer.Option(
        "ompi",
        "--script",
        help="Startup script: impi or ompi for multiple nodes, run for one",
    ),
    workdir: Optional[Path] = typer.Option(
        None, "--workdir", "-w", help="Run directory (default: current)"
    ),
    no_progress: bool = typer.Option(
        False, "--no-progress", help="Disable the live status line"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging"
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Only show warnings and errors"
    ),
):
    """Configure or execute the staged protocol for PREFIX.

    Extra arguments are parameter overrides (key=value syntax).
    Example: mdpipe run my_file temp=310 eqtime=10000
    """
    _setup_logging(verbose, quiet)

    from mdpipe.catalog import FREE
    from mdpipe.config import ClusterConfig, LaunchConfig, RunOptions
    from mdpipe.errors import PipelineError, UsageError
    from mdpipe.pipeline import Pipeline, PipelineOutcome

    try:
        if no_free and stop_before and stop_before != FREE:
            raise UsageError(
                "Conflicting options: --no-free and --stop-before"
            )
        params = _load_parameters(config, ctx.args)
        cluster = None
        if slurm:
            if queue is None:
                raise UsageError("Slurm submission requires --queue")
            cluster = ClusterConfig(
                queue=queue,
                script=script,
                nodes=nodes,
                cpus=cluster_cpus,
                maxtime=maxtime,
            )
        launch = LaunchConfig(
            engine=engine, local_mpi=local_mpi, cpus=cpus, cluster=cluster
        )
        options = RunOptions(
            only=_pick_only(only, free_only, amd_only),
            stop_before=FREE if no_free else stop_before,
            dry_run=dry_run,
            em_only=em_only,
            skip_water_step=skip_water_step,
            accelerated=amd,
            accelerated_prep=amd_prep,
            show_progress=not no_progress,
        )
        pipeline = Pipeline(
            _make_spec(prefix, workdir), params, launch, options
        )
        result = pipeline.run()
    except PipelineError as exc:
        _fail(exc)

    if result.outcome == PipelineOutcome.DRY_RUN:
        typer.echo(f"COMMAND {result.command.render()}")
    elif result.outcome == PipelineOutcome.CONFIGURED:
        typer.echo(
            f"Wrote {len(result.configured)} configuration files; "
            "run again to start the simulation"
        )


@app.command(context_settings={"allow_extra_args": True})
def configure(
    ctx: typer.Context,
    prefix: str = typer.Argument(..., help="Run filename prefix"),
    stage: Optional[str] = typer.Option(
        None, "--stage", "-s", help="Write only this stage's configuration"
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML file with run parameters"
    ),
    em_only: bool = typer.Option(
        False, "--em-only", help="Minimization-only catalog"
    ),
    skip_water_step: bool = typer.Option(
        False, "--skip-water-step", help="Omit the water relaxation stage"
    ),
    amd: bool = typer.Option(
        False, "--amd", help="Include accelerated MD"
    ),
    engine: Engine = typer.Option(
        Engine.PMEMD_CUDA, "--engine", help="MD engine"
    ),
    force: bool = typer.Option(
        False, "--force", help="Overwrite existing configuration files"
    ),
    workdir: Optional[Path] = typer.Option(
        None, "--workdir", "-w", help="Run directory (default: current)"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging"
    ),
):
    """Write stage configuration files without running anything.

    Extra arguments are parameter overrides (key=value syntax).
    """
    _setup_logging(verbose)

    from mdpipe.config import LaunchConfig, RunOptions
    from mdpipe.errors import PipelineError
    from mdpipe.pipeline import Pipeline

    try:
        params = _load_parameters(config, ctx.args)
        options = RunOptions(
            em_only=em_only,
            skip_water_step=skip_water_step,
            accelerated=amd,
        )
        pipeline = Pipeline(
            _make_spec(prefix, workdir),
            params,
            LaunchConfig(engine=engine),
            options,
        )
        for line in params.describe():
            logger.info(line)
        written = pipeline.configure(stage_name=stage, force=force)
    except PipelineError as exc:
        _fail(exc)

    for name in written:
        typer.echo(name)


@app.command(context_settings={"allow_extra_args": True})
def status(
    ctx: typer.Context,
    prefix: str = typer.Argument(..., help="Run filename prefix"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML file with run parameters"
    ),
    skip_water_step: bool = typer.Option(
        False, "--skip-water-step", help="Omit the water relaxation stage"
    ),
    em_only: bool = typer.Option(
        False, "--em-only", help="Minimization-only catalog"
    ),
    amd: bool = typer.Option(
        False, "--amd", help="Include accelerated MD"
    ),
    as_yaml: bool = typer.Option(
        False, "--yaml", help="Print the report as YAML"
    ),
    workdir: Optional[Path] = typer.Option(
        None, "--workdir", "-w", help="Run directory (default: current)"
    ),
):
    """Report the completion state of every stage.

    Extra arguments are parameter overrides (key=value syntax); they
    matter only for the number of equilibration substeps.
    """
    _setup_logging(False, quiet=True)

    from mdpipe.catalog import ArtifactKind, build_catalog
    from mdpipe.config import RunOptions
    from mdpipe.errors import PipelineError
    from mdpipe.ledger import LocalWorkspace, RunLayout, RunLedger
    from mdpipe.pipeline import count_solvent

    try:
        params = _load_parameters(config, ctx.args)
        spec = _make_spec(prefix, workdir)
        options = RunOptions(
            skip_water_step=skip_water_step,
            accelerated=amd,
            em_only=em_only,
        )
        layout = RunLayout(spec.prefix)
        ledger = RunLedger(LocalWorkspace(spec.workdir), layout)
        water_present = None
        if em_only:
            water_present = count_solvent(ledger) > 0
        stages = build_catalog(params, options, water_present)
    except PipelineError as exc:
        _fail(exc)

    report = []
    for stage in stages:
        stage_status = ledger.stage_status(stage)
        report.append(
            {
                "stage": stage.name,
                "configured": ledger.is_present(layout.config(stage.name)),
                "complete": stage_status.complete,
                "latest_backup": ledger.latest_backup(
                    stage.name, ArtifactKind.OUTPUT
                ),
                "problems": stage_status.problems,
            }
        )

    if as_yaml:
        import yaml

        typer.echo(yaml.safe_dump(report, sort_keys=False).rstrip())
        return

    for row in report:
        state = "complete" if row["complete"] else "incomplete"
        if not row["configured"]:
            state = "not configured"
        backup = row["latest_backup"]
        suffix = f" (latest backup {backup})" if backup is not None else ""
        typer.echo(f"{row['stage']:<22} {state}{suffix}")


# -------------------------------------------------------------------
# Entry point
# -------------------------------------------------------------------


def main():
    """CLI entry point (called by ``mdpipe`` console script)."""
    app()


if __name__ == "__main__":
    main()

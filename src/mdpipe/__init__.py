"""
mdpipe: Drive a staged AMBER molecular-dynamics protocol.

The pipeline writes per-stage engine configurations, launches the AMBER
binaries stage by stage (minimization, water relaxation, heating,
restrained equilibration, free and accelerated MD), and resumes safely
after crashes using nothing but the files in the run directory.
"""

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("mdpipe")
except PackageNotFoundError:
    # Package not installed (running from source without build)
    __version__ = "0.0.0.dev0"


def __getattr__(name):
    """Lazy import modules only when accessed."""
    if name == "Pipeline":
        from mdpipe.pipeline import Pipeline

        return Pipeline
    elif name == "PipelineOutcome":
        from mdpipe.pipeline import PipelineOutcome

        return PipelineOutcome
    elif name == "RunParameters":
        from mdpipe.config import RunParameters

        return RunParameters
    elif name == "RunOptions":
        from mdpipe.config import RunOptions

        return RunOptions
    elif name == "RunSpec":
        from mdpipe.config import RunSpec

        return RunSpec
    elif name == "LaunchConfig":
        from mdpipe.config import LaunchConfig

        return LaunchConfig
    elif name == "load_run_parameters":
        from mdpipe.config import load_run_parameters

        return load_run_parameters
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Pipeline",
    "PipelineOutcome",
    "RunParameters",
    "RunOptions",
    "RunSpec",
    "LaunchConfig",
    "load_run_parameters",
]

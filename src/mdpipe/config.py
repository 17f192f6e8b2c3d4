"""Typed run settings and OmegaConf-based parameter loading."""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from mdpipe.errors import UsageError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Above this temperature the integration step is reduced.
HIGH_TEMPERATURE = 300.0
HIGH_TEMPERATURE_TIMESTEP = 0.001

# Short names accepted on the command line, as used by the legacy driver.
PARAMETER_ALIASES: Dict[str, str] = {
    "temp": "temperature",
    "dt": "timestep",
    "rest": "restraint_weight",
    "eqdec": "restraint_decrement",
    "eqtime": "equilibration_time",
    "runtime": "production_time",
}

# Queues available to the batch scheduler and their CPUs per node.
CPUS_PER_NODE: Dict[str, int] = {
    "pascal": 12,
    "compute": 14,
    "regular4": 8,
    "regular6": 12,
    "hdd4": 8,
    "hdd6": 12,
    "gpu": 8,
    "smp": 128,
    "test": 8,
    "gputest": 8,
}

# Queues whose nodes carry more than one GPU.
GPUS_PER_NODE: Dict[str, int] = {
    "pascal": 2,
}

CLUSTER_SCRIPTS = ("impi", "ompi", "run")


# ------------------------------------------------------------------
# Run parameters
# ------------------------------------------------------------------


@dataclass(frozen=True)
class RunParameters:
    """Physical and protocol parameters shared by every stage.

    Times are in picoseconds, the timestep in picoseconds, the cutoff in
    Angstroms and restraint weights in kcal/(mol A^2).
    """

    temperature: float = 300.0
    timestep: float = 0.002
    cutoff: float = 10.0
    restraint_weight: float = 3.0
    restraint_decrement: float = 0.25
    equilibration_time: float = 2600.0
    production_time: float = 500000.0

    def __post_init__(self):
        positive = (
            "temperature",
            "timestep",
            "cutoff",
            "restraint_decrement",
            "equilibration_time",
            "production_time",
        )
        for name in positive:
            value = getattr(self, name)
            if value <= 0:
                raise UsageError(
                    f"Parameter '{name}' must be positive, got {value}"
                )
        if self.restraint_weight < 0:
            raise UsageError(
                "Parameter 'restraint_weight' must be positive or zero, "
                f"got {self.restraint_weight}"
            )

    def resolved(self) -> "RunParameters":
        """Apply the high-temperature timestep rule."""
        if (
            self.temperature > HIGH_TEMPERATURE
            and self.timestep > HIGH_TEMPERATURE_TIMESTEP
        ):
            logger.warning(
                "Integration step lowered to %s ps for temperature %s K",
                HIGH_TEMPERATURE_TIMESTEP,
                self.temperature,
            )
            return dataclasses.replace(
                self, timestep=HIGH_TEMPERATURE_TIMESTEP
            )
        return self

    def describe(self) -> List[str]:
        """Human-readable summary lines for logging."""
        return [
            f"Electrostatic cutoff {self.cutoff} A",
            f"Target temperature {self.temperature} K",
            f"Integration step {self.timestep} ps",
            f"Restraints constant {self.restraint_weight} kcal/mol-A^2",
            f"Restraints decrement {self.restraint_decrement} kcal/mol-A^2",
            f"Equilibration length {self.equilibration_time / 1000:.1f} ns",
            f"Production length {self.production_time / 1000:.1f} ns",
        ]


_PARAMETER_FIELDS = frozenset(
    f.name for f in dataclasses.fields(RunParameters)
)


def _normalize_parameters(data: Dict[str, Any]) -> Dict[str, float]:
    """Resolve aliases and check keys and value types."""
    values: Dict[str, float] = {}
    for key, value in data.items():
        name = PARAMETER_ALIASES.get(key, key)
        if name not in _PARAMETER_FIELDS:
            valid = sorted(_PARAMETER_FIELDS | set(PARAMETER_ALIASES))
            raise UsageError(
                f"Unknown parameter '{key}'. Valid: {', '.join(valid)}"
            )
        if name in values:
            raise UsageError(f"Parameter '{name}' given more than once")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise UsageError(
                f"Parameter '{key}' must be numeric, got {value!r}"
            )
        values[name] = float(value)
    return values


def load_run_parameters(
    config_file: Optional[PathLike] = None,
    overrides: Optional[List[str]] = None,
) -> RunParameters:
    """Build :class:`RunParameters` from defaults, YAML and overrides.

    Parameters
    ----------
    config_file : str or Path, optional
        Flat YAML mapping of parameter names (or aliases) to values.
    overrides : list of str, optional
        Dotlist-style overrides such as ``["temp=310", "eqtime=10000"]``.
        Applied after the YAML file.

    Returns
    -------
    RunParameters
        Validated parameters with the high-temperature rule applied.
    """
    from omegaconf import DictConfig, OmegaConf
    from omegaconf.errors import OmegaConfBaseException

    cfg = OmegaConf.create({})
    if config_file is not None:
        path = Path(config_file)
        if not path.is_file():
            raise UsageError(f"Parameter file not found: {path}")
        try:
            loaded = OmegaConf.load(path)
        except (OmegaConfBaseException, OSError) as exc:
            raise UsageError(
                f"Failed to read parameter file {path}: {exc}"
            ) from exc
        if not isinstance(loaded, DictConfig):
            raise UsageError(
                "Parameter file must be a mapping, "
                f"got {type(loaded).__name__}"
            )
        cfg = OmegaConf.merge(cfg, loaded)

    if overrides:
        for item in overrides:
            if "=" not in item:
                raise UsageError(
                    f"Option '{item}' was not recognized "
                    "(expected key=value)"
                )
        try:
            cfg = OmegaConf.merge(cfg, OmegaConf.from_dotlist(overrides))
        except (OmegaConfBaseException, ValueError) as exc:
            raise UsageError(f"Invalid override: {exc}") from exc

    try:
        data = OmegaConf.to_container(cfg, resolve=True)
    except OmegaConfBaseException as exc:
        raise UsageError(
            f"Parameter resolution failed: {exc}"
        ) from exc

    return RunParameters(**_normalize_parameters(data)).resolved()


# ------------------------------------------------------------------
# Execution settings
# ------------------------------------------------------------------


class Engine(str, Enum):
    """MD engine family selected by capability flag."""

    PMEMD_CUDA = "pmemd-cuda"
    PMEMD_MPI = "pmemd-mpi"
    SANDER_MPI = "sander-mpi"


@dataclass(frozen=True)
class ClusterConfig:
    """Batch-scheduler submission settings."""

    queue: str
    script: str = "ompi"
    nodes: int = 0
    cpus: int = 0
    maxtime: int = 0

    def __post_init__(self):
        if self.queue not in CPUS_PER_NODE:
            raise UsageError(
                f"Invalid queue name '{self.queue}'. "
                f"Valid: {', '.join(sorted(CPUS_PER_NODE))}"
            )
        if self.script not in CLUSTER_SCRIPTS:
            raise UsageError(
                f"Invalid startup script '{self.script}'. "
                f"Valid: {', '.join(CLUSTER_SCRIPTS)}"
            )
        if self.nodes < 0 or self.cpus < 0 or self.maxtime < 0:
            raise UsageError(
                "Cluster nodes, CPUs and maxtime must not be negative"
            )
        if self.node_count < 1:
            raise UsageError(
                "Cluster submission needs a node count or a CPU count"
            )

    @property
    def cpus_per_node(self) -> int:
        return CPUS_PER_NODE[self.queue]

    @property
    def gpus_per_node(self) -> int:
        return GPUS_PER_NODE.get(self.queue, 0)

    @property
    def node_count(self) -> int:
        """Nodes to request; derived from the CPU count when given."""
        if self.cpus:
            return _ceil_div(self.cpus, self.cpus_per_node)
        return self.nodes

    @property
    def uses_gpus(self) -> bool:
        return not self.cpus


@dataclass(frozen=True)
class LaunchConfig:
    """How the MD engine is started."""

    engine: Engine = Engine.PMEMD_CUDA
    local_mpi: bool = False
    cpus: int = 0
    cluster: Optional[ClusterConfig] = None

    def __post_init__(self):
        if self.local_mpi and self.cluster is not None:
            raise UsageError(
                "Local MPI and cluster submission cannot be combined"
            )
        if self.cpus < 0:
            raise UsageError("CPU count must not be negative")

    @property
    def effective_cpus(self) -> int:
        return self.cpus or os.cpu_count() or 1


# ------------------------------------------------------------------
# Run modes
# ------------------------------------------------------------------


@dataclass(frozen=True)
class RunOptions:
    """Stage-selection and protocol switches for one invocation."""

    only: Optional[str] = None
    stop_before: Optional[str] = None
    dry_run: bool = False
    em_only: bool = False
    skip_water_step: bool = False
    accelerated: bool = False
    accelerated_prep: bool = False
    strict_snapshots: bool = True
    poll_interval: float = 1.0
    timeout: Optional[float] = None
    show_progress: bool = False

    def __post_init__(self):
        if self.only is not None and self.stop_before is not None:
            raise UsageError(
                "Conflicting options: a single-stage run cannot also "
                "stop before a boundary stage"
            )
        if self.em_only and (self.accelerated or self.accelerated_prep):
            raise UsageError(
                "Conflicting options: minimization-only runs cannot "
                "include accelerated MD"
            )
        if self.poll_interval <= 0:
            raise UsageError("Poll interval must be positive")

    @property
    def includes_accelerated(self) -> bool:
        from mdpipe.catalog import AMD

        return (
            self.accelerated
            or self.accelerated_prep
            or self.only == AMD
        )


@dataclass(frozen=True)
class RunSpec:
    """A run is identified by its filename prefix inside a directory."""

    prefix: str
    workdir: Path = field(default_factory=Path.cwd)

    def __post_init__(self):
        if not self.prefix or "/" in self.prefix:
            raise UsageError(
                f"Invalid run prefix '{self.prefix}'; give the bare "
                "filename prefix and use the working directory option "
                "for the location"
            )


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


"""Ordered catalog of pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from mdpipe.config import RunOptions, RunParameters
from mdpipe.errors import UsageError

EM1 = "step1_em1"
EM1_VACUUM = "step1_em1_vacuum"
WATER = "step2_water"
EM2 = "step3_em2"
HEAT = "step4_heat"
EQUIL = "step5_equil"
FREE = "step6_free"
AMD = "step7_amd"

# Restraint values are rounded to this many decimals while decaying.
_RESTRAINT_DIGITS = 10


class StageKind(str, Enum):
    """What the external engine is asked to do in a stage."""

    MINIMIZATION = "minimization"
    WATER_RELAXATION = "water_relaxation"
    HEATING = "heating"
    EQUILIBRATION = "equilibration"
    PRODUCTION = "production"
    ACCELERATED = "accelerated"


class ArtifactKind(str, Enum):
    """Per-stage files; the value is the filename extension."""

    CONFIG = "conf"
    OUTPUT = "out"
    INFO = "mdinfo"
    RESTART = "rst"
    TRAJECTORY = "nc"
    SNAPSHOT = "last.pdb"


# Output artifacts in backup order; CONFIG is an input, never rotated.
OUTPUT_KINDS: Tuple[ArtifactKind, ...] = (
    ArtifactKind.OUTPUT,
    ArtifactKind.INFO,
    ArtifactKind.RESTART,
    ArtifactKind.TRAJECTORY,
    ArtifactKind.SNAPSHOT,
)


@dataclass(frozen=True)
class Stage:
    """One named step of the pipeline."""

    name: str
    kind: StageKind
    restraint: Optional[float] = None
    vacuum: bool = False

    @property
    def is_minimization(self) -> bool:
        return self.kind == StageKind.MINIMIZATION

    @property
    def writes_trajectory(self) -> bool:
        return not self.is_minimization

    @property
    def resumable(self) -> bool:
        """Whether a crashed attempt may be continued from a checkpoint."""
        if self.kind == StageKind.EQUILIBRATION:
            return not self.restraint
        return self.kind in (StageKind.PRODUCTION, StageKind.ACCELERATED)

    @property
    def artifact_kinds(self) -> Tuple[ArtifactKind, ...]:
        if self.writes_trajectory:
            return OUTPUT_KINDS
        return tuple(
            k for k in OUTPUT_KINDS if k != ArtifactKind.TRAJECTORY
        )

    @property
    def extra_artifacts(self) -> Tuple[str, ...]:
        """Files the engine writes without the run prefix."""
        if self.kind == StageKind.ACCELERATED:
            return ("amd.log",)
        return ()


def format_restraint(value: float) -> str:
    """Render a restraint weight the way it appears in stage names."""
    return f"{value:g}"


def equilibration_restraints(params: RunParameters) -> List[float]:
    """Restraint weights of the equilibration substeps, ending at zero."""
    if params.restraint_weight == 0:
        return [0.0]
    weights: List[float] = []
    current = params.restraint_weight
    while current > 0:
        weights.append(current)
        current = round(
            current - params.restraint_decrement, _RESTRAINT_DIGITS
        )
    weights.append(0.0)
    return weights


def equilibration_stages(params: RunParameters) -> List[Stage]:
    """Expand the equilibration step into its restraint-decay substeps."""
    if params.restraint_weight == 0:
        return [Stage(EQUIL, StageKind.EQUILIBRATION, restraint=0.0)]
    return [
        Stage(
            f"{EQUIL}__{format_restraint(weight)}",
            StageKind.EQUILIBRATION,
            restraint=weight,
        )
        for weight in equilibration_restraints(params)
    ]


def build_catalog(
    params: RunParameters,
    options: RunOptions = RunOptions(),
    water_present: Optional[bool] = None,
) -> List[Stage]:
    """Return the ordered stage list for a run.

    ``water_present`` only matters in minimization-only mode, where it
    selects between the solvated and the vacuum variant of the first
    minimization.
    """
    if options.em_only:
        if water_present is None:
            raise UsageError(
                "Minimization-only runs need to know whether the "
                "system is solvated"
            )
        if water_present:
            return [Stage(EM1, StageKind.MINIMIZATION)]
        return [Stage(EM1_VACUUM, StageKind.MINIMIZATION, vacuum=True)]

    stages = [Stage(EM1, StageKind.MINIMIZATION)]
    if not options.skip_water_step:
        stages.append(Stage(WATER, StageKind.WATER_RELAXATION))
    stages.append(Stage(EM2, StageKind.MINIMIZATION))
    stages.append(Stage(HEAT, StageKind.HEATING))
    stages.extend(equilibration_stages(params))
    stages.append(Stage(FREE, StageKind.PRODUCTION))
    if options.includes_accelerated:
        stages.append(Stage(AMD, StageKind.ACCELERATED))
    return stages


def find_stage(stages: List[Stage], name: str) -> Stage:
    """Look up a stage by name or raise a usage error."""
    for stage in stages:
        if stage.name == name:
            return stage
    raise UsageError(
        f"Unknown stage '{name}'. "
        f"Valid: {', '.join(s.name for s in stages)}"
    )

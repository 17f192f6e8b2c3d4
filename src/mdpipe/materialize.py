"""Render stage configurations and edit them in place.

A :class:`StageConfig` is a typed description of one engine input file:
a title line, optional bookkeeping lines (``total_steps=``), the ``&cntrl``
namelist and trailing ``&wt`` blocks.  Fields whose values are produced by
a later step are listed in ``pending`` and rendered as the literal
placeholder ``XXXX`` until filled.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional, Tuple

from mdpipe.catalog import (
    Stage,
    StageKind,
    equilibration_restraints,
)
from mdpipe.config import RunParameters
from mdpipe.errors import PreconditionError, UsageError

if TYPE_CHECKING:
    from mdpipe.ledger import Workspace

logger = logging.getLogger(__name__)

PLACEHOLDER = "XXXX"

# The engine accepts at most nine digits for the step count.
MAX_STEPS = 999_999_999

SOLUTE_HEAVY_ATOMS = "'!(:WAT,Na+,Cl-) & !@H='"
SOLUTE_ATOMS = "'!(:WAT,Na+,Cl-)'"

ACCELERATION_FIELDS = ("ethreshd", "alphad", "ethreshp", "alphap")

_WATER_TIME = 20.0
_HEATING_TIME = 100.0
_WATER_RESTRAINT = 10.0
_PRODUCTION_WRITE = 100000

_COMMENT_COLUMN = 24

_TOTAL_STEPS_RE = re.compile(r"total_steps=(\d+)")
_NSTLIM_RE = re.compile(r"nstlim=(\d+)")
_PENDING_RE = re.compile(r"(\w+)=" + PLACEHOLDER)
_VALUE_RE = re.compile(r"(\w+)=([^,\s]+)")


@dataclass(frozen=True)
class Field:
    """One ``key=value`` entry of the ``&cntrl`` namelist."""

    key: str
    value: str
    comment: str = ""

    def render(self) -> str:
        entry = f"  {self.key}={self.value},"
        if not self.comment:
            return entry
        return f"{entry.ljust(_COMMENT_COLUMN)} ! {self.comment}"


@dataclass(frozen=True)
class StageConfig:
    """Typed engine configuration for a single stage."""

    title: str
    fields: Tuple[Field, ...]
    preamble: Tuple[Tuple[str, str], ...] = ()
    trailer: Tuple[str, ...] = ()
    pending: FrozenSet[str] = field(default_factory=frozenset)

    def get(self, key: str) -> Optional[str]:
        for item in self.fields:
            if item.key == key:
                return item.value
        return None

    def fill(self, values: Dict[str, str]) -> "StageConfig":
        """Return a copy with pending fields replaced by *values*."""
        unknown = set(values) - self.pending
        if unknown:
            raise KeyError(
                f"Fields are not pending: {', '.join(sorted(unknown))}"
            )
        fields = tuple(
            replace(item, value=values[item.key])
            if item.key in values
            else item
            for item in self.fields
        )
        return replace(
            self,
            fields=fields,
            pending=frozenset(self.pending - set(values)),
        )

    def render(self) -> str:
        lines = [self.title]
        lines.extend(f"{key}={value}" for key, value in self.preamble)
        lines.append("&cntrl")
        lines.extend(item.render() for item in self.fields)
        lines.append("/")
        lines.extend(self.trailer)
        return "\n".join(lines) + "\n"


def format_number(value) -> str:
    """Render a numeric field value deterministically."""
    if isinstance(value, bool):
        raise TypeError("Boolean is not a numeric field value")
    if isinstance(value, int):
        return str(value)
    return repr(float(value))


def steps_for(time_ps: float, timestep: float) -> int:
    """Number of integration steps covering *time_ps*."""
    return int(round(time_ps / timestep))


# ------------------------------------------------------------------
# Field groups
# ------------------------------------------------------------------


def _f(key: str, value, comment: str = "") -> Field:
    if not isinstance(value, str):
        value = format_number(value)
    return Field(key, value, comment)


def _output_fields(ntpr: int, ntwr: int, ntwx: int) -> List[Field]:
    return [
        _f("iwrap", 1, "wrap coordinates into the primary box"),
        _f("ntxo", 2, "NetCDF restart file"),
        _f("ioutfm", 1, "NetCDF trajectory"),
        _f("ntpr", ntpr, "energy print frequency"),
        _f("ntwr", ntwr, "restart write frequency"),
        _f("ntwx", ntwx, "trajectory write frequency"),
    ]


def _restraint_fields(mask: str, weight: float) -> List[Field]:
    return [
        _f("ntr", 1, "harmonic positional restraints"),
        _f("restraintmask", mask, "restrained atoms"),
        _f("restraint_wt", weight, "kcal/(mol A^2)"),
    ]


def _langevin_fields(params: RunParameters) -> List[Field]:
    return [
        _f("ntt", 3, "Langevin thermostat"),
        _f("gamma_ln", 2.0, "collision frequency, 1/ps"),
        _f("ig", -1, "random seed from the clock"),
        _f("temp0", params.temperature, "target temperature, K"),
    ]


def _dynamics_fields(
    params: RunParameters, nsteps: int, restart: bool
) -> List[Field]:
    if restart:
        start = [
            _f("imin", 0, "molecular dynamics"),
            _f("irest", 1, "continue from a restart file"),
            _f("ntx", 5, "read coordinates and velocities"),
        ]
    else:
        start = [
            _f("imin", 0, "molecular dynamics"),
            _f("irest", 0, "new simulation"),
            _f("ntx", 1, "read coordinates only"),
        ]
    return start + [
        _f("nstlim", nsteps, "MD steps in this run"),
        _f("dt", params.timestep, "time step, ps"),
        _f("ntc", 2, "SHAKE on bonds to hydrogen"),
        _f("ntf", 2, "omit forces of bonds to hydrogen"),
        _f("cut", params.cutoff, "nonbonded cutoff, A"),
    ]


# ------------------------------------------------------------------
# Stage builders
# ------------------------------------------------------------------


def _minimization(stage: Stage, params: RunParameters) -> StageConfig:
    first = stage.restraint is None and stage.name.startswith("step1")
    if first:
        maxcyc, ncyc = 5000, 2500
    else:
        maxcyc, ncyc = 10000, 5000

    fields = [
        _f("imin", 1, "energy minimization"),
        _f("irest", 0, "new simulation"),
        _f("ntx", 1, "read coordinates only"),
        _f("ntmin", 1, "steepest descent, then conjugate gradient"),
        _f("maxcyc", maxcyc, "maximum minimization cycles"),
        _f("ncyc", ncyc, "switch to conjugate gradient after"),
        _f("cut", params.cutoff, "nonbonded cutoff, A"),
        _f("nsnb", 20, "nonbonded list update frequency"),
    ]
    if stage.vacuum:
        fields += [
            _f("ntb", 0, "no periodic boundaries"),
            _f("ntp", 0, "no pressure scaling"),
            _f("ntc", 1, "no SHAKE"),
            _f("ntf", 1, "complete interaction"),
            _f("igb", 6, "vacuum"),
        ]
    else:
        fields += [
            _f("ntb", 1, "periodic boundaries, constant volume"),
            _f("ntp", 0, "no pressure scaling"),
            _f("ntc", 1, "no SHAKE"),
            _f("ntf", 1, "complete interaction"),
            _f("igb", 0, "explicit solvent"),
            _f("iwrap", 1, "wrap coordinates into the primary box"),
        ]
    fields += [
        _f("ntxo", 2, "NetCDF restart file"),
        _f("ioutfm", 1, "NetCDF trajectory"),
        _f("ntpr", 10, "energy print frequency"),
        _f("nmropt", 0, "no NMR-type restraints"),
    ]

    weight = params.restraint_weight
    if first and weight > 0:
        fields += _restraint_fields(SOLUTE_HEAVY_ATOMS, weight)
        what = "in vacuum" if stage.vacuum else "water and ions"
        title = (
            f"Step-1: Minimize {what}, restraining solute "
            f"heavy atoms at {format_number(weight)} kcal/mol-A^2"
        )
    elif first:
        where = " in vacuum" if stage.vacuum else ""
        title = f"Step-1: Minimize the whole system{where}"
    else:
        title = "Step-3: Minimize water and solute"
    return StageConfig(title=title, fields=tuple(fields))


def _water_relaxation(stage: Stage, params: RunParameters) -> StageConfig:
    nsteps = steps_for(_WATER_TIME, params.timestep)
    fields = _dynamics_fields(params, nsteps, restart=False)
    fields += [
        _f("nsnb", 20, "nonbonded list update frequency"),
        _f("ntb", 2, "periodic boundaries, constant pressure"),
        _f("ntt", 1, "weak-coupling thermostat"),
        _f("temp0", params.temperature, "target temperature, K"),
        _f("tempi", 200.0, "initial temperature, K"),
        _f("tautp", 0.5, "heat bath coupling, ps"),
        _f("ntp", 1, "isotropic position scaling"),
        _f("taup", 1.0, "pressure relaxation time, ps"),
        _f("nscm", 2500, "center-of-mass motion removal"),
    ]
    fields += _output_fields(ntpr=1000, ntwr=10000, ntwx=10000)
    fields.append(_f("nmropt", 0, "no NMR-type restraints"))
    fields += _restraint_fields(SOLUTE_ATOMS, _WATER_RESTRAINT)
    title = (
        f"Step-2: Relax water and ions (NTP, "
        f"{format_number(params.temperature)} K), restraining the solute "
        f"at {format_number(_WATER_RESTRAINT)} kcal/mol-A^2"
    )
    return StageConfig(title=title, fields=tuple(fields))


def _heating(stage: Stage, params: RunParameters) -> StageConfig:
    nsteps = steps_for(_HEATING_TIME, params.timestep)
    temperature = format_number(params.temperature)
    fields = _dynamics_fields(params, nsteps, restart=False)
    fields += [
        _f("nsnb", 20, "nonbonded list update frequency"),
        _f("ntb", 1, "periodic boundaries, constant volume"),
        _f("ntp", 0, "no pressure scaling"),
    ]
    fields += _langevin_fields(params)
    fields += [
        _f("tempi", 0.0, "initial temperature, K"),
        _f("igb", 0, "explicit solvent"),
        _f("nscm", 500, "center-of-mass motion removal"),
    ]
    fields += _output_fields(ntpr=10000, ntwr=50000, ntwx=50000)
    weight = params.restraint_weight
    if weight > 0:
        fields += _restraint_fields(SOLUTE_HEAVY_ATOMS, weight)
        title = (
            f"Step-4: Heat from 0 to {temperature} K (NVT), restraining "
            f"solute heavy atoms at {format_number(weight)} kcal/mol-A^2"
        )
    else:
        title = f"Step-4: Heat from 0 to {temperature} K (NVT)"
    fields.append(_f("nmropt", 1, "read the TEMP0 ramp below"))
    trailer = (
        f"&wt TYPE='TEMP0', istep1=0, istep2={nsteps}, "
        f"value1=0.0, value2={temperature}, /",
        "&wt TYPE='END', /",
    )
    return StageConfig(title=title, fields=tuple(fields), trailer=trailer)


def _equilibration(stage: Stage, params: RunParameters) -> StageConfig:
    substeps = len(equilibration_restraints(params))
    nsteps = steps_for(
        params.equilibration_time / substeps, params.timestep
    )
    temperature = format_number(params.temperature)
    restrained = bool(stage.restraint)
    fields = _dynamics_fields(params, nsteps, restart=True)
    fields += [
        _f("ntb", 2, "periodic boundaries, constant pressure"),
        _f("ntp", 1, "isotropic position scaling"),
        _f(
            "taup",
            1.0 if restrained else 2.0,
            "pressure relaxation time, ps",
        ),
    ]
    fields += _langevin_fields(params)
    if restrained:
        fields += _output_fields(ntpr=10000, ntwr=100000, ntwx=100000)
        fields += _restraint_fields(SOLUTE_HEAVY_ATOMS, stage.restraint)
        title = (
            f"Step-5: Equilibrate at {temperature} K (NPT) with restraints "
            f"at {format_number(stage.restraint)} kcal/mol-A^2"
        )
        return StageConfig(title=title, fields=tuple(fields))

    fields += _output_fields(ntpr=100000, ntwr=100000, ntwx=100000)
    title = f"Step-5: Equilibrate at {temperature} K (NPT) with no restraints"
    return StageConfig(
        title=title,
        fields=tuple(fields),
        preamble=(("total_steps", str(nsteps)),),
    )


def _production_steps(stage: Stage, params: RunParameters) -> int:
    nsteps = steps_for(params.production_time, params.timestep)
    if nsteps > MAX_STEPS:
        logger.warning(
            "Length of %s capped at %d steps (~%.2f ns)",
            stage.name,
            MAX_STEPS,
            MAX_STEPS * params.timestep / 1000,
        )
        nsteps = MAX_STEPS
    return nsteps


def _production(stage: Stage, params: RunParameters) -> StageConfig:
    nsteps = _production_steps(stage, params)
    fields = _dynamics_fields(params, nsteps, restart=True)
    fields += [
        _f("ntb", 1, "periodic boundaries, constant volume"),
        _f("ntp", 0, "no pressure scaling"),
    ]
    fields += _langevin_fields(params)
    fields += _output_fields(
        ntpr=_PRODUCTION_WRITE,
        ntwr=_PRODUCTION_WRITE,
        ntwx=_PRODUCTION_WRITE,
    )
    pending: FrozenSet[str] = frozenset()
    if stage.kind == StageKind.ACCELERATED:
        fields.append(
            _f("iamd", 3, "boost total potential and torsions")
        )
        fields += [Field(key, PLACEHOLDER) for key in ACCELERATION_FIELDS]
        pending = frozenset(ACCELERATION_FIELDS)
        title = (
            "Step-7: Accelerated MD in the NVT ensemble at "
            f"{format_number(params.temperature)} K"
        )
    else:
        title = (
            "Step-6: Free MD in the NVT ensemble at "
            f"{format_number(params.temperature)} K"
        )
    return StageConfig(
        title=title,
        fields=tuple(fields),
        preamble=(("total_steps", str(nsteps)),),
        pending=pending,
    )


_BUILDERS = {
    StageKind.MINIMIZATION: _minimization,
    StageKind.WATER_RELAXATION: _water_relaxation,
    StageKind.HEATING: _heating,
    StageKind.EQUILIBRATION: _equilibration,
    StageKind.PRODUCTION: _production,
    StageKind.ACCELERATED: _production,
}


def materialize(stage: Stage, params: RunParameters) -> StageConfig:
    """Build the configuration of *stage* from *params*."""
    if stage.restraint is not None and stage.restraint < 0:
        raise UsageError(
            f"Restraint weight of {stage.name} must be positive or zero"
        )
    return _BUILDERS[stage.kind](stage, params)


def write_stage_config(
    workspace: "Workspace",
    filename: str,
    config: StageConfig,
) -> None:
    """Write a rendered configuration and check it landed."""
    workspace.write_text(filename, config.render())
    if workspace.size(filename) <= 0:
        raise PreconditionError(
            f"Failed to write configuration file {filename}"
        )
    logger.info("Wrote configuration file %s", filename)


# ------------------------------------------------------------------
# Helpers for configuration files on disk
# ------------------------------------------------------------------


def read_title(text: str) -> str:
    """First line of a configuration file, used as the stage title."""
    return text.split("\n", 1)[0].rstrip("\r")


def requests_restraints(text: str) -> bool:
    return "restraintmask" in text


def read_total_steps(text: str) -> Optional[int]:
    match = _TOTAL_STEPS_RE.search(text)
    return int(match.group(1)) if match else None


def replace_step_count(text: str, nsteps: int) -> Tuple[str, int]:
    """Set every ``nstlim=`` to *nsteps*; returns the new text and count."""
    return _NSTLIM_RE.subn(f"nstlim={nsteps}", text)


def pending_fields(text: str) -> List[str]:
    """Keys that *text* still carries as placeholders."""
    return sorted(set(_PENDING_RE.findall(text)))


def unfilled_fields(text: str, config: StageConfig) -> List[str]:
    """Fields of *text* without a value, checked against *config*.

    Every field pending in the typed configuration must carry a concrete
    value in the file; a placeholder left on any other key counts too.
    """
    values = dict(_VALUE_RE.findall(text))
    unfilled = {
        key
        for key in config.pending
        if values.get(key, PLACEHOLDER) == PLACEHOLDER
    }
    unfilled.update(pending_fields(text))
    return sorted(unfilled)


def fill_pending(
    text: str, config: StageConfig, values: Dict[str, str]
) -> Tuple[str, StageConfig]:
    """Write the pending fields of *config* into the rendered *text*.

    Returns the edited text and the filled configuration.  Only the
    placeholders of fields pending in *config* are replaced; the rest of
    the file is left as written.
    """
    filled = config.fill(values)
    for key in sorted(config.pending - filled.pending):
        text = text.replace(
            f"{key}={PLACEHOLDER}", f"{key}={filled.get(key)}"
        )
    return text, filled


def ensure_no_pending(text: str, filename: str, config: StageConfig) -> None:
    """Refuse to launch a stage whose configuration is incomplete."""
    remaining = unfilled_fields(text, config)
    if remaining:
        raise PreconditionError(
            f"Configuration file {filename} still has unfilled fields: "
            f"{', '.join(remaining)}"
        )

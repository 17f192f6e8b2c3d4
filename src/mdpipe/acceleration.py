"""Derive accelerated-MD boost parameters from a finished free-MD run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

from mdpipe.catalog import ArtifactKind, Stage
from mdpipe.errors import AccelerationError
from mdpipe.ledger import RunLedger
from mdpipe.materialize import (
    StageConfig,
    fill_pending,
    pending_fields,
    unfilled_fields,
)
from mdpipe.mdout import AverageEnergies, read_averages
from mdpipe.structure import count_atoms, count_solute_residues

logger = logging.getLogger(__name__)

# Boost energy per atom and per solute residue, kcal/mol.
ENERGY_PER_ATOM = 0.16
ENERGY_PER_RESIDUE = 4.0


def format_value(value: float) -> str:
    return format(value, ".15g")


@dataclass(frozen=True)
class AccelerationParameters:
    """Dual-boost thresholds and acceleration factors."""

    ethresh_p: float
    alpha_p: float
    ethresh_d: float
    alpha_d: float

    @classmethod
    def derive(
        cls, averages: AverageEnergies, atoms: int, residues: int
    ) -> "AccelerationParameters":
        """Compute the parameters and check they are on a sane scale.

        Parameters
        ----------
        averages : AverageEnergies
            Run averages of the total potential and dihedral energy.
        atoms : int
            Atom count of the whole system.
        residues : int
            Residue count excluding water and counter-ions.
        """
        if not (averages.total and averages.dihedral and atoms and residues):
            raise AccelerationError(
                "Failed to collect one or more of the required values "
                f"(Etot={averages.total}, DIHED={averages.dihedral}, "
                f"atoms={atoms}, residues={residues})"
            )
        params = cls(
            ethresh_p=averages.total + ENERGY_PER_ATOM * atoms,
            alpha_p=ENERGY_PER_ATOM * atoms,
            ethresh_d=averages.dihedral + ENERGY_PER_RESIDUE * residues,
            alpha_d=ENERGY_PER_RESIDUE * residues / 5,
        )
        values = (
            params.ethresh_p,
            params.alpha_p,
            params.ethresh_d,
            params.alpha_d,
        )
        if not all(values):
            raise AccelerationError(
                "Failed to estimate one or more of the required parameters"
            )
        if params.ethresh_p > 0 or params.alpha_p < 0 or params.alpha_d < 0:
            raise AccelerationError(
                "One or more of the estimated parameters are on the wrong "
                f"scale: {params.describe()}"
            )
        return params

    def as_fields(self) -> Dict[str, str]:
        return {
            "ethreshd": format_value(self.ethresh_d),
            "alphad": format_value(self.alpha_d),
            "ethreshp": format_value(self.ethresh_p),
            "alphap": format_value(self.alpha_p),
        }

    def describe(self) -> str:
        return (
            f"EthreshP={format_value(self.ethresh_p)}, "
            f"alphaP={format_value(self.alpha_p)}, "
            f"EthreshD={format_value(self.ethresh_d)}, "
            f"alphaD={format_value(self.alpha_d)}"
        )


def derive_parameters(
    ledger: RunLedger, source: Stage
) -> AccelerationParameters:
    """Read the statistics of *source* and the system size."""
    layout = ledger.layout
    out = layout.artifact(source.name, ArtifactKind.OUTPUT)
    if not ledger.is_present(out):
        raise AccelerationError(f"Output file {out} is missing or empty")
    if not ledger.is_present(layout.structure):
        raise AccelerationError(
            f"Structure file {layout.structure} is missing or empty"
        )

    logger.info("Reading average energies from %s", out)
    averages = read_averages(ledger.workspace.read_text(out), source=out)
    pdb = ledger.workspace.read_text(layout.structure)
    atoms = count_atoms(pdb, source=layout.structure)
    residues = count_solute_residues(pdb, source=layout.structure)
    logger.info(
        "Collected Etot=%s, DIHED=%s, residues (non water and ions)=%d, "
        "atoms=%d",
        averages.total,
        averages.dihedral,
        residues,
        atoms,
    )
    params = AccelerationParameters.derive(averages, atoms, residues)
    logger.info("Estimated AMD parameters: %s", params.describe())
    return params


def apply_parameters(
    ledger: RunLedger,
    target: Stage,
    expected: StageConfig,
    params: AccelerationParameters,
) -> None:
    """Fill the pending fields of the accelerated stage configuration.

    *expected* is the typed configuration of *target*; its ``pending``
    set names the fields this step is responsible for.  The file on disk
    must still carry a placeholder for each of them.
    """
    name = ledger.layout.config(target.name)
    if not ledger.is_present(name):
        raise AccelerationError(f"Configuration file {name} is missing")
    if not expected.pending:
        raise AccelerationError(f"{target.name} has no fields to fill")
    text = ledger.workspace.read_text(name)
    absent = sorted(expected.pending - set(pending_fields(text)))
    if absent:
        raise AccelerationError(
            f"Failed to set {', '.join(absent)} in {name}. Remove all "
            "configuration files and run the configuration step again "
            "to regenerate it"
        )
    values = params.as_fields()
    text, _ = fill_pending(
        text, expected, {key: values[key] for key in expected.pending}
    )
    remaining = unfilled_fields(text, expected)
    if remaining:
        raise AccelerationError(
            f"Fields {', '.join(remaining)} of {name} are still unfilled"
        )
    ledger.workspace.write_text(name, text)
    ledger.refresh()
    logger.info("Updated configuration file %s", name)


def prepare_accelerated_stage(
    ledger: RunLedger, source: Stage, target: Stage, expected: StageConfig
) -> AccelerationParameters:
    logger.info("Updating the configuration of %s", target.name)
    params = derive_parameters(ledger, source)
    apply_parameters(ledger, target, expected, params)
    return params

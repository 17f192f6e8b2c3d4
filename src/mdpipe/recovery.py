"""Continue a crashed long-running stage from its newest checkpoint.

Only stages that restart from velocities (unrestrained equilibration,
production and accelerated MD) can be resumed.  Steps already computed
are summed over the backed-up logs of earlier attempts and the stage
configuration is rewritten to run only the remainder.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mdpipe.catalog import ArtifactKind, Stage
from mdpipe.errors import RecoveryError
from mdpipe.ledger import RunLedger
from mdpipe.materialize import read_total_steps, replace_step_count
from mdpipe.mdout import last_step

logger = logging.getLogger(__name__)

_CURATION = "Further execution requires curation."


@dataclass(frozen=True)
class ResumePoint:
    """Where and how far a resumed stage continues."""

    checkpoint: str
    recovered_steps: int
    total_steps: int
    remaining_steps: int


def count_completed_steps(
    ledger: RunLedger, stage: Stage, latest: int
) -> int:
    """Sum the last reported step of each usable backed-up attempt.

    An attempt counts only when both its log and its trajectory backup
    are non-empty.
    """
    layout = ledger.layout
    total = 0
    for index in range(latest, 0, -1):
        out = layout.backup(stage.name, ArtifactKind.OUTPUT, index)
        trajectory = layout.backup(stage.name, ArtifactKind.TRAJECTORY, index)
        if not (ledger.is_present(out) and ledger.is_present(trajectory)):
            logger.info(
                "Files %s and/or %s are not available or empty",
                out,
                trajectory,
            )
            continue
        steps = last_step(ledger.workspace.read_text(out)) or 0
        logger.info("The last step described in %s is %d", out, steps)
        total += steps
    return total


def recover_stage(ledger: RunLedger, stage: Stage) -> Optional[ResumePoint]:
    """Prepare *stage* to continue from its newest checkpoint backup.

    Returns None when the stage is not resumable or has no checkpoint
    backup, in which case it starts from the previous stage's output.
    Expects the stage's current outputs to have been backed up already.

    Raises
    ------
    RecoveryError
        If the newest checkpoint or its log is empty, no completed steps
        can be found, or the configuration lacks the step markers.
    """
    if not stage.resumable:
        return None
    latest = ledger.latest_backup(stage.name, ArtifactKind.RESTART)
    if latest is None:
        return None

    layout = ledger.layout
    checkpoint = layout.backup(stage.name, ArtifactKind.RESTART, latest)
    logger.info(
        "The most recent restart file for %s is %s", stage.name, checkpoint
    )
    if not ledger.is_present(checkpoint):
        raise RecoveryError(
            f"Restart file {checkpoint} is empty. {_CURATION}"
        )
    paired_out = layout.backup(stage.name, ArtifactKind.OUTPUT, latest)
    if not ledger.is_present(paired_out):
        raise RecoveryError(
            f"Output file {paired_out} paired with {checkpoint} is missing "
            f"or empty. {_CURATION}"
        )

    recovered = count_completed_steps(ledger, stage, latest)
    if recovered <= 0:
        raise RecoveryError(
            "Failed to determine the last step of the crashed "
            f"{stage.name} run"
        )
    logger.info(
        "The total number of steps in backed-up output files is %d",
        recovered,
    )

    config_name = layout.config(stage.name)
    text = ledger.workspace.read_text(config_name)
    total = read_total_steps(text)
    if total is None:
        raise RecoveryError(
            f"Configuration file {config_name} has no total_steps marker"
        )
    remaining = total - recovered
    if remaining <= 0:
        raise RecoveryError(
            f"The remaining number of steps for {stage.name} is not "
            f"positive ({remaining})"
        )
    text, replaced = replace_step_count(text, remaining)
    if not replaced:
        raise RecoveryError(
            f"Failed to set nstlim in configuration file {config_name}"
        )
    ledger.workspace.write_text(config_name, text)
    ledger.refresh()
    logger.info(
        "Continuing %s from %s: %d of %d steps remain",
        stage.name,
        checkpoint,
        remaining,
        total,
    )
    return ResumePoint(
        checkpoint=checkpoint,
        recovered_steps=recovered,
        total_steps=total,
        remaining_steps=remaining,
    )

"""Rotate a stage's previous outputs out of the way before a launch."""

from __future__ import annotations

import logging
from typing import List, Optional

from mdpipe.catalog import Stage
from mdpipe.ledger import RunLedger, backup_name

logger = logging.getLogger(__name__)


def backup_stage(ledger: RunLedger, stage: Stage) -> Optional[int]:
    """Move every existing output of *stage* to the next backup index.

    All files of one attempt share the same index so that a checkpoint can
    later be paired with the log that produced it.  Returns the index used,
    or None when there was nothing to back up.
    """
    present: List[str] = [
        name for name in ledger.layout.stage_files(stage)
        if ledger.exists(name)
    ]
    if not present:
        return None

    index = ledger.next_backup_index(stage)
    for name in present:
        target = backup_name(name, index)
        logger.info("Creating a backup copy of %s as %s", name, target)
        ledger.workspace.move(name, target)
    ledger.refresh()
    return index

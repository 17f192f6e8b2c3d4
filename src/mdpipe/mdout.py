"""Narrow readers for the engine's text outputs.

Only the handful of fields the pipeline acts on are extracted: completion
markers and step counters of the ``out`` log, the live progress lines of
``mdinfo`` and the energy averages printed at the end of a run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from mdpipe.errors import AccelerationError

COMPLETION_MARKERS = (
    "Total wall time",
    "FINAL RESULTS",
    "Final Performance Info",
)

_NSTEP_RE = re.compile(r"NSTEP\s+=(\s*?\d+)\s+")
_MIN_HEADER_RE = re.compile(r"NSTEP\s+ENERGY\s+RMS\s+GMAX\s+NAME\s+NUMBER")
_MD_STEPS_RE = re.compile(
    r"Total steps :\s+(.*)\s+\| Completed :\s+(.*)\s+\| Remaining"
)
_MD_ETA_RE = re.compile(r"Estimated time remaining:\s+(.*)")
_AVERAGES_RE = re.compile(r"A V E R A G E S\s+O V E R\s+\d+\s+S T E P S")
_ETOT_RE = re.compile(r"Etot\s+=\s+(.*)\s+EKtot")
_DIHED_RE = re.compile(r"DIHED\s+=\s+(.*)$")
_SEPARATOR = "-" * 78


def has_completion_marker(text: str) -> bool:
    """Whether an ``out`` log reports a finished run."""
    return any(marker in text for marker in COMPLETION_MARKERS)


def last_step(text: str) -> Optional[int]:
    """The last ``NSTEP =`` value of an ``out`` log, or None."""
    value = None
    for match in _NSTEP_RE.finditer(text):
        value = int(match.group(1))
    return value


def minimization_progress(text: str) -> Optional[str]:
    """Describe the newest row under the minimization energy header."""
    row = None
    take_next = False
    for line in text.splitlines():
        if _MIN_HEADER_RE.search(line):
            take_next = True
            continue
        if take_next:
            take_next = False
            row = line.split()
    if not row or len(row) < 3:
        return None
    return f"Nstep={row[0]} | Energy={row[1]} | RMS={row[2]}"


def md_progress(text: str) -> Optional[str]:
    """Describe the step counters and ETA of an ``mdinfo`` file."""
    info = ""
    for line in text.splitlines():
        match = _MD_STEPS_RE.search(line)
        if match:
            total = match.group(1).strip()
            done = match.group(2).strip()
            info = f"Total steps={total} | Completed={done}"
        match = _MD_ETA_RE.search(line)
        if match:
            info += f" | Estimated time remaining={match.group(1).strip()}"
    return info or None


@dataclass(frozen=True)
class AverageEnergies:
    """Run-averaged energies from the end of an ``out`` log."""

    total: Optional[float] = None
    dihedral: Optional[float] = None


def read_averages(text: str, source: str = "output") -> AverageEnergies:
    """Read ``Etot`` and ``DIHED`` from the averages block.

    Raises
    ------
    AccelerationError
        If a value appears more than once or is not a number.
    """
    total = dihedral = None
    reading = False
    for line in text.splitlines():
        if _AVERAGES_RE.search(line):
            reading = True
            continue
        if not reading:
            continue
        match = _ETOT_RE.search(line)
        if match:
            if total is not None:
                raise AccelerationError(
                    f"Duplicate average value for Etot in {source}"
                )
            total = _number(match.group(1), "Etot", source)
        match = _DIHED_RE.search(line)
        if match:
            if dihedral is not None:
                raise AccelerationError(
                    f"Duplicate average value for DIHED in {source}"
                )
            dihedral = _number(match.group(1), "DIHED", source)
        if _SEPARATOR in line:
            reading = False
    return AverageEnergies(total=total, dihedral=dihedral)


def _number(raw: str, name: str, source: str) -> float:
    value = re.sub(r"\s+", "", raw)
    try:
        return float(value)
    except ValueError:
        raise AccelerationError(
            f"Average value for {name} in {source} is not a number: {value!r}"
        ) from None

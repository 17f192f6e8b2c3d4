"""Counts taken from the fixed-column records of a PDB file."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from mdpipe.errors import PreconditionError

WATER_NAMES = ("WAT", "HOH")
SOLVENT_AND_IONS = frozenset({"WAT", "Na+", "Cl-"})

_MIN_RECORD_LENGTH = 54


@dataclass(frozen=True)
class AtomRecord:
    chain: str
    resname: str
    resseq: str


def iter_atoms(text: str, source: str = "structure") -> Iterator[AtomRecord]:
    """Yield the residue fields of each ATOM/HETATM record."""
    for line in text.splitlines():
        line = line.replace("\r", "")
        if line[:6] not in ("ATOM  ", "HETATM"):
            continue
        if len(line) < _MIN_RECORD_LENGTH:
            raise PreconditionError(
                f"ATOM and HETATM records in {source} must be at least "
                f"{_MIN_RECORD_LENGTH} characters long (found {len(line)})"
            )
        yield AtomRecord(
            chain=line[21].strip(),
            resname=line[16:20].strip(),
            resseq=line[22:26].strip(),
        )


def is_water(resname: str) -> bool:
    return resname in WATER_NAMES or resname.startswith("TIP")


def count_atoms(text: str, source: str = "structure") -> int:
    return sum(1 for _ in iter_atoms(text, source))


def count_solute_residues(text: str, source: str = "structure") -> int:
    """Residues other than water and counter-ions."""
    residues = {
        (atom.chain, atom.resname, atom.resseq)
        for atom in iter_atoms(text, source)
        if atom.resname not in SOLVENT_AND_IONS
    }
    return len(residues)


def count_water_residues(text: str, source: str = "structure") -> int:
    count = 0
    previous = None
    for atom in iter_atoms(text, source):
        if atom.resseq != previous and is_water(atom.resname):
            count += 1
        previous = atom.resseq
    return count

"""Shared fixtures: an in-memory run directory and a fake MD engine."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from mdpipe.config import RunParameters
from mdpipe.launcher import LaunchResult, LaunchStatus
from mdpipe.ledger import Workspace
from mdpipe.toolchain import (
    AMBPDB,
    PMEMD_CUDA,
    PMEMD_CUDA_MPI,
    PMEMD_MPI,
    SANDER_MPI,
    Toolchain,
)

PREFIX = "prot"


class MemoryWorkspace(Workspace):
    """Workspace keeping files in a dict."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})

    def names(self) -> List[str]:
        return sorted(self.files)

    def exists(self, name: str) -> bool:
        return name in self.files

    def size(self, name: str) -> int:
        return len(self.files.get(name, "").encode())

    def read_text(self, name: str) -> str:
        return self.files[name]

    def write_text(self, name: str, text: str) -> None:
        self.files[name] = text

    def move(self, source: str, target: str) -> None:
        if target in self.files:
            raise FileExistsError(target)
        self.files[target] = self.files.pop(source)

    def remove(self, name: str) -> None:
        del self.files[name]

    def path(self, name: str) -> Path:
        return Path("/memory") / name


# ------------------------------------------------------------------
# File content helpers
# ------------------------------------------------------------------


def pdb_line(serial, name, resname, chain, resseq):
    return (
        f"ATOM  {serial:5d} {name:<4}{resname:<4} {chain}{resseq:4d}    "
        f"{1.0:8.3f}{2.0:8.3f}{3.0:8.3f}  1.00  0.00"
    )


def make_pdb(water: bool = True) -> str:
    """Two solute residues, one ion and optionally two waters."""
    records = [
        ("N", "ALA", 1),
        ("CA", "ALA", 1),
        ("N", "GLY", 2),
        ("CA", "GLY", 2),
        ("NA", "Na+", 3),
    ]
    if water:
        records += [
            ("O", "WAT", 4),
            ("H1", "WAT", 4),
            ("H2", "WAT", 4),
            ("O", "WAT", 5),
            ("H1", "WAT", 5),
            ("H2", "WAT", 5),
        ]
    lines = [
        pdb_line(i + 1, name, resname, "A", resseq)
        for i, (name, resname, resseq) in enumerate(records)
    ]
    return "\n".join(lines + ["END"]) + "\n"


AVERAGES_BLOCK = """\
      A V E R A G E S   O V E R     500 S T E P S


 NSTEP =     5000   TIME(PS) =    1010.000  TEMP(K) =   300.00  PRESS =     0.0
 Etot   =   -250000.0000  EKtot   =     60000.0000  EPtot      =   -310000.0000
 BOND   =       500.0000  ANGLE   =      1300.0000  DIHED      =      1800.0000
 1-4 NB =       600.0000  1-4 EEL =      7000.0000  VDWAALS    =     40000.0000
 ------------------------------------------------------------------------------
"""


def engine_output(nstep: int = 5000, complete: bool = True) -> str:
    """Minimal ``out`` log of an MD run."""
    lines = [
        "          -------------------------------------------------------",
        "          Amber 22 PMEMD                              2022",
        "",
        f" NSTEP = {nstep:8d}   TIME(PS) =    1010.000  TEMP(K) =   300.00",
        " Etot   =   -249990.0000  EKtot   =     60000.0000",
    ]
    text = "\n".join(lines) + "\n"
    if complete:
        text += AVERAGES_BLOCK
        text += "|  Final Performance Info:\n"
        text += "|  Total wall time:          42    seconds\n"
    return text


def minimization_output(complete: bool = True) -> str:
    text = (
        "   NSTEP       ENERGY          RMS            GMAX         NAME"
        "    NUMBER\n"
        "    500      -1.2345E+05     1.2034E+00     5.4321E+01     O"
        "       123\n"
    )
    if complete:
        text += "                    FINAL RESULTS\n"
    return text


MDINFO = """\
 NSTEP =     2000   TIME(PS) =     504.000  TEMP(K) =   300.11  PRESS =     0.0
| Total steps :     10000 | Completed :      2000 | Remaining :      8000
| Average timings for last     500 steps:
|     Elapsed(s) =       1.21 Per Step(ms) =       2.42
| Estimated time remaining:       0.3 minutes.
"""


# ------------------------------------------------------------------
# Fake engine
# ------------------------------------------------------------------


def _option(argv, flag):
    if flag not in argv:
        return None
    return argv[list(argv).index(flag) + 1]


class FakeLauncher:
    """Stands in for the engine: writes a stage's outputs and returns.

    Stages named in ``fail`` leave an incomplete log and exit with 1.
    """

    def __init__(self, workspace: MemoryWorkspace, fail=(), returncode=0):
        self.workspace = workspace
        self.fail = set(fail)
        self.returncode = returncode
        self.commands = []

    def stage_of(self, command) -> str:
        out = _option(command.argv, "-o")
        return out[len(PREFIX) + 1 : -len(".out")]

    def run(self, command, monitor=None, cancel=None):
        self.commands.append(command)
        stage = self.stage_of(command)
        argv = command.argv
        failed = stage in self.fail
        files = self.workspace.files

        if stage.startswith(("step1", "step3")):
            files[_option(argv, "-o")] = minimization_output(not failed)
        else:
            files[_option(argv, "-o")] = engine_output(complete=not failed)
        files[_option(argv, "-inf")] = MDINFO
        if not failed:
            files[_option(argv, "-r")] = f"restart of {stage}\n"
        trajectory = _option(argv, "-x")
        if trajectory is not None:
            files[trajectory] = f"trajectory of {stage}\n"
        if stage == "step7_amd":
            files["amd.log"] = "# amd log\n"
        if monitor is not None:
            monitor()

        returncode = 1 if failed else self.returncode
        if returncode == 0:
            status = LaunchStatus.SUCCESS
        else:
            status = LaunchStatus.FAILED
        return LaunchResult(status, returncode, 0.1)

    @property
    def stages(self):
        return [self.stage_of(c) for c in self.commands]


def fake_ambpdb(argv, cwd):
    return "ATOM      1  N   ALA A   1       1.000   2.000   3.000\nEND\n"


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture()
def workspace():
    return MemoryWorkspace(
        {
            f"{PREFIX}.prmtop": "%VERSION  VERSION_STAMP = V0001.000\n",
            f"{PREFIX}.inpcrd": "default_name\n    11\n",
            f"{PREFIX}.pdb": make_pdb(water=True),
        }
    )


@pytest.fixture()
def launcher(workspace):
    return FakeLauncher(workspace)


@pytest.fixture()
def small_params():
    """Three equilibration substeps and short runs."""
    return RunParameters(
        restraint_weight=1.0,
        restraint_decrement=0.5,
        equilibration_time=30.0,
        production_time=20.0,
    )


@pytest.fixture()
def amber_home(tmp_path):
    home = tmp_path / "amber"
    (home / "bin").mkdir(parents=True)
    for name in (PMEMD_CUDA, PMEMD_CUDA_MPI, PMEMD_MPI, SANDER_MPI, AMBPDB):
        binary = home / "bin" / name
        binary.write_text("#!/bin/sh\nexit 0\n")
        os.chmod(binary, 0o755)
    return home


@pytest.fixture()
def toolchain(amber_home, tmp_path):
    mpirun = tmp_path / "mpirun"
    mpirun.write_text("#!/bin/sh\nexit 0\n")
    os.chmod(mpirun, 0o755)
    return Toolchain(amber_home=amber_home, mpirun=mpirun)

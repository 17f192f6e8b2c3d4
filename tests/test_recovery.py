"""Tests for mdpipe.recovery module."""

import pytest

from mdpipe.catalog import EQUIL, FREE, HEAT, Stage, StageKind
from mdpipe.errors import RecoveryError
from mdpipe.ledger import RunLayout, RunLedger
from mdpipe.recovery import count_completed_steps, recover_stage

from conftest import PREFIX, MemoryWorkspace

LAYOUT = RunLayout(PREFIX)
FREE_STAGE = Stage(FREE, StageKind.PRODUCTION)

FREE_CONFIG = """\
Step-6: Free MD in the NVT ensemble at 300.0 K
total_steps=10000
&cntrl
  imin=0,
  nstlim=10000,
/
"""


def out_log(*steps):
    return "".join(
        f" NSTEP = {n:8d}   TIME(PS) =     100.000  TEMP(K) =   300.00\n"
        for n in steps
    )


def crashed_run(**extra):
    files = {
        "prot.step6_free.conf": FREE_CONFIG,
        "prot.step6_free.out_bkp1": out_log(500, 1000),
        "prot.step6_free.nc_bkp1": "nc\n",
        "prot.step6_free.rst_bkp1": "rst\n",
        "prot.step6_free.out_bkp2": out_log(2000, 2500),
        "prot.step6_free.nc_bkp2": "nc\n",
        "prot.step6_free.rst_bkp2": "rst\n",
    }
    files.update(extra)
    return MemoryWorkspace(files)


class TestRecoverStage:
    def test_resume_from_newest_checkpoint(self):
        ws = crashed_run()
        point = recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)
        assert point.checkpoint == "prot.step6_free.rst_bkp2"
        assert point.recovered_steps == 3500
        assert point.total_steps == 10000
        assert point.remaining_steps == 6500
        conf = ws.files["prot.step6_free.conf"]
        assert "nstlim=6500," in conf
        assert "total_steps=10000" in conf

    def test_second_recovery_counts_all_attempts(self):
        ws = crashed_run(
            **{
                "prot.step6_free.out_bkp3": out_log(1500),
                "prot.step6_free.nc_bkp3": "nc\n",
                "prot.step6_free.rst_bkp3": "rst\n",
            }
        )
        point = recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)
        assert point.remaining_steps == 5000
        assert "nstlim=5000," in ws.files["prot.step6_free.conf"]

    def test_attempt_without_trajectory_is_ignored(self):
        ws = crashed_run(**{"prot.step6_free.nc_bkp1": ""})
        point = recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)
        assert point.recovered_steps == 2500

    def test_not_resumable(self):
        ws = MemoryWorkspace({"prot.step4_heat.rst_bkp1": "rst\n"})
        stage = Stage(HEAT, StageKind.HEATING)
        assert recover_stage(RunLedger(ws, LAYOUT), stage) is None

    def test_restrained_equilibration_not_resumable(self):
        stage = Stage(f"{EQUIL}__1", StageKind.EQUILIBRATION, restraint=1.0)
        ws = MemoryWorkspace({"prot.step5_equil__1.rst_bkp1": "rst\n"})
        assert recover_stage(RunLedger(ws, LAYOUT), stage) is None

    def test_no_checkpoint_backup(self):
        ws = MemoryWorkspace({"prot.step6_free.conf": FREE_CONFIG})
        assert recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE) is None

    def test_empty_checkpoint_needs_curation(self):
        ws = crashed_run(**{"prot.step6_free.rst_bkp2": ""})
        with pytest.raises(RecoveryError, match="curation"):
            recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)

    def test_empty_paired_log_needs_curation(self):
        ws = crashed_run(**{"prot.step6_free.out_bkp2": ""})
        with pytest.raises(RecoveryError, match="curation"):
            recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)

    def test_no_steps_found(self):
        ws = crashed_run(
            **{
                "prot.step6_free.out_bkp1": "crashed early\n",
                "prot.step6_free.out_bkp2": "crashed early\n",
            }
        )
        with pytest.raises(RecoveryError, match="last step"):
            recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)

    def test_missing_total_steps_marker(self):
        ws = crashed_run(
            **{"prot.step6_free.conf": "title\n&cntrl\n  nstlim=10000,\n/\n"}
        )
        with pytest.raises(RecoveryError, match="total_steps"):
            recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)

    def test_missing_nstlim(self):
        ws = crashed_run(
            **{"prot.step6_free.conf": "title\ntotal_steps=10000\n"}
        )
        with pytest.raises(RecoveryError, match="nstlim"):
            recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)

    def test_nothing_left_to_run(self):
        ws = crashed_run(
            **{"prot.step6_free.out_bkp2": out_log(9000)}
        )
        with pytest.raises(RecoveryError, match="not positive"):
            recover_stage(RunLedger(ws, LAYOUT), FREE_STAGE)


class TestCountCompletedSteps:
    def test_sums_last_step_per_attempt(self):
        ledger = RunLedger(crashed_run(), LAYOUT)
        assert count_completed_steps(ledger, FREE_STAGE, 2) == 3500

    def test_limited_to_latest(self):
        ledger = RunLedger(crashed_run(), LAYOUT)
        assert count_completed_steps(ledger, FREE_STAGE, 1) == 1000

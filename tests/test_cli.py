"""Tests for mdpipe.cli module (Typer-based CLI)."""

import pytest
import yaml
from typer.testing import CliRunner

from mdpipe.cli import EXAMPLES, app

from conftest import make_pdb

runner = CliRunner()


@pytest.fixture()
def rundir(tmp_path):
    (tmp_path / "prot.prmtop").write_text("%VERSION\n")
    (tmp_path / "prot.inpcrd").write_text("default_name\n    11\n")
    (tmp_path / "prot.pdb").write_text(make_pdb(water=True))
    return tmp_path


class TestAppStructure:
    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_help_flag(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "configure", "status", "ex"):
            assert command in result.output

    def test_help_command(self):
        result = runner.invoke(app, ["help"])
        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_examples(self):
        result = runner.invoke(app, ["ex"])
        assert result.exit_code == 0
        assert "mdpipe run my_file --free-only" in result.output
        assert result.output.strip() == EXAMPLES.strip()


class TestRun:
    def test_help(self):
        result = runner.invoke(app, ["run", "--help"])
        assert result.exit_code == 0
        assert "--dry-run" in result.output

    def test_missing_prefix(self):
        result = runner.invoke(app, ["run"])
        assert result.exit_code != 0

    def test_first_run_writes_configs(self, rundir):
        result = runner.invoke(
            app, ["run", "prot", "-w", str(rundir), "temp=310"]
        )
        assert result.exit_code == 0, result.output
        assert "Wrote 18 configuration files" in result.output
        conf = (rundir / "prot.step4_heat.conf").read_text()
        assert "temp0=310.0," in conf
        assert not (rundir / "prot.lock").exists()

    def test_missing_inputs(self, tmp_path):
        result = runner.invoke(app, ["run", "prot", "-w", str(tmp_path)])
        assert result.exit_code == 1
        assert "Error: The required input file prot.prmtop" in result.output

    def test_unknown_parameter(self, rundir):
        result = runner.invoke(
            app, ["run", "prot", "-w", str(rundir), "bogus=1"]
        )
        assert result.exit_code == 1
        assert "Unknown parameter 'bogus'" in result.output

    def test_unknown_option(self, rundir):
        result = runner.invoke(
            app, ["run", "prot", "-w", str(rundir), "--bogus"]
        )
        assert result.exit_code != 0

    def test_conflicting_stage_flags(self, rundir):
        result = runner.invoke(
            app,
            ["run", "prot", "-w", str(rundir), "--free-only", "--amd-only"],
        )
        assert result.exit_code == 1
        assert "Conflicting options" in result.output

    def test_no_free_conflicts_with_stop_before(self, rundir):
        result = runner.invoke(
            app,
            [
                "run", "prot", "-w", str(rundir),
                "--no-free", "--stop-before", "step4_heat",
            ],
        )
        assert result.exit_code == 1

    def test_slurm_requires_queue(self, rundir):
        result = runner.invoke(
            app, ["run", "prot", "-w", str(rundir), "--slurm", "--nodes", "1"]
        )
        assert result.exit_code == 1
        assert "--queue" in result.output

    def test_invalid_queue(self, rundir):
        result = runner.invoke(
            app,
            [
                "run", "prot", "-w", str(rundir),
                "--slurm", "--queue", "nowhere", "--nodes", "1",
            ],
        )
        assert result.exit_code == 1
        assert "Invalid queue" in result.output

    def test_missing_workdir(self, tmp_path):
        result = runner.invoke(
            app, ["run", "prot", "-w", str(tmp_path / "absent")]
        )
        assert result.exit_code == 1
        assert "Working directory not found" in result.output

    def test_dry_run_prints_command(self, rundir, amber_home, monkeypatch):
        monkeypatch.setenv("AMBERHOME", str(amber_home))
        runner.invoke(app, ["run", "prot", "-w", str(rundir)])
        result = runner.invoke(
            app, ["run", "prot", "-w", str(rundir), "--dry-run"]
        )
        assert result.exit_code == 0, result.output
        command = [
            line for line in result.output.splitlines()
            if line.startswith("COMMAND ")
        ]
        assert len(command) == 1
        assert "pmemd.cuda -i prot.step1_em1.conf" in command[0]
        assert "-c prot.inpcrd" in command[0]

    def test_missing_amber(self, rundir, tmp_path, monkeypatch):
        monkeypatch.setenv("AMBERHOME", str(tmp_path / "no_amber"))
        runner.invoke(app, ["run", "prot", "-w", str(rundir)])
        result = runner.invoke(app, ["run", "prot", "-w", str(rundir)])
        assert result.exit_code == 1
        assert "AMBER home folder" in result.output


class TestConfigure:
    def test_writes_stage(self, tmp_path):
        result = runner.invoke(
            app,
            [
                "configure", "prot", "-w", str(tmp_path),
                "--stage", "step6_free",
            ],
        )
        assert result.exit_code == 0, result.output
        assert result.output.strip().splitlines()[-1] == "prot.step6_free.conf"
        assert (tmp_path / "prot.step6_free.conf").exists()

    def test_amd_stage(self, tmp_path):
        result = runner.invoke(
            app,
            ["configure", "prot", "-w", str(tmp_path), "-s", "step7_amd"],
        )
        assert result.exit_code == 0, result.output
        text = (tmp_path / "prot.step7_amd.conf").read_text()
        assert "ethreshp=XXXX," in text

    def test_refuses_overwrite(self, tmp_path):
        args = ["configure", "prot", "-w", str(tmp_path), "-s", "step4_heat"]
        runner.invoke(app, args)
        result = runner.invoke(app, args)
        assert result.exit_code == 1
        assert "already exist" in result.output
        result = runner.invoke(app, args + ["--force"])
        assert result.exit_code == 0

    def test_unknown_stage(self, tmp_path):
        result = runner.invoke(
            app, ["configure", "prot", "-w", str(tmp_path), "-s", "step9"]
        )
        assert result.exit_code == 1
        assert "Unknown stage" in result.output

    def test_yaml_parameters(self, tmp_path):
        params = tmp_path / "params.yaml"
        params.write_text(yaml.dump({"runtime": 100}))
        result = runner.invoke(
            app,
            [
                "configure", "prot", "-w", str(tmp_path),
                "-s", "step6_free", "-c", str(params),
            ],
        )
        assert result.exit_code == 0, result.output
        text = (tmp_path / "prot.step6_free.conf").read_text()
        assert "total_steps=50000" in text


class TestStatus:
    def test_plain_report(self, rundir):
        runner.invoke(app, ["configure", "prot", "-w", str(rundir)])
        (rundir / "prot.step6_free.out_bkp2").write_text("x\n")
        result = runner.invoke(app, ["status", "prot", "-w", str(rundir)])
        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert lines[0].split() == ["step1_em1", "incomplete"]
        assert lines[-1].startswith("step6_free")
        assert lines[-1].endswith("incomplete (latest backup 2)")

    def test_not_configured(self, rundir):
        result = runner.invoke(app, ["status", "prot", "-w", str(rundir)])
        assert result.exit_code == 0
        assert "not configured" in result.output

    def test_yaml_report(self, rundir):
        result = runner.invoke(
            app, ["status", "prot", "-w", str(rundir), "--yaml", "--amd"]
        )
        assert result.exit_code == 0, result.output
        report = yaml.safe_load(result.output)
        assert report[-1]["stage"] == "step7_amd"
        assert report[-1]["configured"] is False
        assert "amd.log ... missing" in report[-1]["problems"]

    def test_minimization_only(self, rundir):
        result = runner.invoke(
            app, ["status", "prot", "-w", str(rundir), "--em-only"]
        )
        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert len(lines) == 1
        assert lines[0].startswith("step1_em1")

    def test_minimization_only_in_vacuum(self, rundir):
        (rundir / "prot.pdb").write_text(make_pdb(water=False))
        result = runner.invoke(
            app, ["status", "prot", "-w", str(rundir), "--em-only", "--yaml"]
        )
        assert result.exit_code == 0, result.output
        report = yaml.safe_load(result.output)
        assert [row["stage"] for row in report] == ["step1_em1_vacuum"]

    def test_minimization_only_needs_structure(self, rundir):
        (rundir / "prot.pdb").unlink()
        result = runner.invoke(
            app, ["status", "prot", "-w", str(rundir), "--em-only"]
        )
        assert result.exit_code == 1
        assert "prot.pdb" in result.output

"""Tests for sequential stage execution."""

import json
import os

import pytest

from helpers import pipeline, stage
from pipeline_runner.constants import LAUNCH_FAILURE_STATUS, ExitCode, Outcome
from pipeline_runner.framework import read_json
from pipeline_runner.runner import StageExecutionError, StageRunner, decide_outcome, write_run_report
from pipeline_runner.spec import StageSpec


def _write_marker(name):
    return f"import pathlib; pathlib.Path({name!r}).write_text('x')"


class TestStageRunner:
    """Test run() ordering and abort semantics."""

    def test_all_stages_pass(self, make_config):
        """Test N passing stages give N results in order and SUCCESS."""
        spec = pipeline(stage("one"), stage("two"), stage("three"))
        report = StageRunner(make_config(spec)).run(spec)
        assert [result.name for result in report.results] == ["one", "two", "three"]
        assert [result.index for result in report.results] == [1, 2, 3]
        assert report.outcome == Outcome.SUCCESS
        assert report.exit_code == ExitCode.SUCCESS

    @pytest.mark.parametrize("k", [1, 2, 3])
    def test_fatal_failure_aborts(self, make_config, workspace, k):
        """Test a fatal failure at stage k leaves exactly k results."""
        stages = [stage(f"s{i}", _write_marker(f"s{i}.done")) for i in range(1, 5)]
        stages[k - 1] = stage(f"s{k}", "import sys; sys.exit(2)")
        spec = pipeline(*stages)
        report = StageRunner(make_config(spec)).run(spec)
        assert len(report.results) == k
        assert report.outcome == Outcome.ABORTED
        assert report.results[-1].exit_status == 2
        assert not (workspace / f"s{k + 1}.done").exists()

    def test_continue_on_failure(self, make_config, workspace):
        """Test a non-fatal failure is recorded and the next stage runs."""
        spec = pipeline(
            stage("gate", "import sys; sys.exit(1)", continue_on_failure=True),
            stage("after", _write_marker("after.done")),
        )
        report = StageRunner(make_config(spec)).run(spec)
        assert [result.status for result in report.results] == ["failed_continued", "success"]
        assert (workspace / "after.done").exists()
        assert report.outcome == Outcome.FAILED
        assert report.exit_code == ExitCode.FAILED

    def test_fatal_after_soft_failure_aborts(self, make_config):
        """Test a fatal failure still aborts after an earlier soft failure."""
        spec = pipeline(
            stage("soft", "raise SystemExit(1)", continue_on_failure=True),
            stage("hard", "raise SystemExit(3)"),
            stage("never"),
        )
        report = StageRunner(make_config(spec)).run(spec)
        assert [result.name for result in report.results] == ["soft", "hard"]
        assert report.outcome == Outcome.ABORTED

    def test_output_captured_and_logged(self, make_config, run_paths):
        """Test stdout and stderr are captured together and written to the stage log."""
        spec = pipeline(stage("talk", "import sys; print('out'); print('err', file=sys.stderr)"))
        result = StageRunner(make_config(spec)).run(spec).results[0]
        assert "out" in result.output
        assert "err" in result.output
        log_path = run_paths.stage_log(1, "talk")
        assert result.log_path == str(log_path)
        assert log_path.read_text(encoding="utf-8") == result.output

    def test_stage_sees_run_environment(self, make_config, workspace):
        """Test commands run in the workspace with the resolved environment."""
        code = (
            "import os, pathlib; "
            "pathlib.Path('env.txt').write_text(os.environ['PIPELINE_RUN_ID'] + ':' + os.environ['GREETING'])"
        )
        spec = pipeline(stage("env", code, environment=(("GREETING", "hi"),)))
        report = StageRunner(make_config(spec)).run(spec)
        assert report.outcome == Outcome.SUCCESS
        assert (workspace / "env.txt").read_text() == "run-1:hi"

    @pytest.mark.skipif(os.name != "posix", reason="shell commands use /bin/sh")
    def test_shell_command(self, make_config):
        """Test string commands run through the shell."""
        spec = pipeline(StageSpec(name="shell", command="echo hello && exit 4"))
        result = StageRunner(make_config(spec)).run(spec).results[0]
        assert result.output.strip() == "hello"
        assert result.exit_status == 4

    def test_unlaunchable_command(self, make_config):
        """Test a missing executable is recorded as a failed stage."""
        spec = pipeline(StageSpec(name="missing", command=("definitely-not-a-real-tool-xyz",)), stage("next"))
        report = StageRunner(make_config(spec)).run(spec)
        assert len(report.results) == 1
        assert report.results[0].exit_status == LAUNCH_FAILURE_STATUS
        assert "failed to launch" in report.results[0].output
        assert report.outcome == Outcome.ABORTED

    def test_dry_run_skips_commands(self, make_config, workspace):
        """Test dry runs record every stage without executing it."""
        spec = pipeline(stage("a", _write_marker("a.done")), stage("b", "raise SystemExit(1)"))
        report = StageRunner(make_config(spec, dry_run=True)).run(spec)
        assert [result.status for result in report.results] == ["skipped", "skipped"]
        assert report.outcome == Outcome.SUCCESS
        assert not (workspace / "a.done").exists()

    def test_run_stage_check(self, make_config):
        """Test run_stage(check=True) raises after recording the result."""
        spec = pipeline(stage("bad", "raise SystemExit(9)"))
        runner = StageRunner(make_config(spec))
        with pytest.raises(StageExecutionError) as excinfo:
            runner.run_stage(1, spec.stages[0], check=True)
        assert excinfo.value.result.exit_status == 9
        assert runner.results == (excinfo.value.result,)

    def test_report_finalized_once(self, make_config):
        """Test a finalized run cannot be extended or finalized again."""
        spec = pipeline(stage("a"))
        runner = StageRunner(make_config(spec))
        runner.run(spec)
        with pytest.raises(RuntimeError, match="already finalized"):
            runner.finalize(spec.name, Outcome.SUCCESS)
        with pytest.raises(RuntimeError, match="already finalized"):
            runner.run_stage(2, spec.stages[0])

    def test_rerun_is_idempotent(self, make_config):
        """Test identical runs against an unchanged environment agree."""
        spec = pipeline(stage("a"), stage("b", "raise SystemExit(1)", continue_on_failure=True), stage("c"))
        first = StageRunner(make_config(spec)).run(spec)
        second = StageRunner(make_config(spec)).run(spec)
        assert first.outcome == second.outcome == Outcome.FAILED
        assert [r.exit_status for r in first.results] == [r.exit_status for r in second.results]

    def test_run_log_events(self, make_config, run_paths):
        """Test stage lifecycle events are appended to the run log."""
        spec = pipeline(stage("a"))
        StageRunner(make_config(spec)).run(spec)
        text = run_paths.run_log.read_text(encoding="utf-8")
        assert "stage_started index=1 stage=a" in text
        assert "stage_finished index=1 stage=a status=success exit_status=0" in text
        assert "run_finalized outcome=SUCCESS stages=1" in text


class TestReport:
    """Test outcome decisions and report serialisation."""

    def test_decide_outcome(self):
        """Test the outcome table."""
        assert decide_outcome([], halted=False) == Outcome.SUCCESS
        assert decide_outcome([], halted=True) == Outcome.ABORTED

    def test_write_run_report(self, make_config, tmp_path):
        """Test the report file carries stages without output and a checksum."""
        spec = pipeline(stage("a", "print('noise')"))
        report = StageRunner(make_config(spec)).run(spec)
        path = write_run_report(report, tmp_path / "report.json")
        payload = read_json(path)
        assert payload["outcome"] == Outcome.SUCCESS
        assert payload["build_number"] == 7
        assert payload["stages"][0]["name"] == "a"
        assert payload["stages"][0]["status"] == "success"
        assert "output" not in payload["stages"][0]
        assert len(payload["canonical_checksum"]) == 64
        assert "noise" not in json.dumps(payload)

    def test_started_at_passed_in(self, make_config):
        """Test a start time given at construction is kept on the report."""
        spec = pipeline(stage("a"))
        report = StageRunner(make_config(spec), started_at="2026-01-01T00:00:00Z").run(spec)
        assert report.started_at == "2026-01-01T00:00:00Z"

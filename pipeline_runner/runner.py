"""Sequential stage execution and the guaranteed-notification scope."""

from __future__ import annotations

import subprocess
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

from .constants import LAUNCH_FAILURE_STATUS, OUTCOME_EXIT_CODES, Outcome
from .framework import RunPaths, append_log, canonical_json_checksum, utc_now, write_json
from .notify import NotificationError, Notifier
from .spec import PipelineSpec, StageSpec
from .tooling import RunConfig


class StageExecutionError(RuntimeError):
    """Raised when a stage command exits non-zero."""

    def __init__(self, result: "StageResult") -> None:
        super().__init__(f"stage {result.name!r} failed with exit status {result.exit_status}")
        self.result = result


@dataclass(frozen=True)
class StageResult:
    index: int
    name: str
    exit_status: int
    started_at: str
    ended_at: str
    duration_ms: float
    output: str
    continue_on_failure: bool = False
    log_path: str = ""
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.succeeded:
            return "success"
        return "failed_continued" if self.continue_on_failure else "failed"


@dataclass(frozen=True)
class RunReport:
    run_id: str
    build_number: int
    pipeline_name: str
    results: tuple[StageResult, ...]
    outcome: str
    started_at: str
    ended_at: str
    error: str = ""
    log_url: str = ""

    @property
    def failed_stages(self) -> list[StageResult]:
        return [result for result in self.results if not result.succeeded]

    @property
    def exit_code(self) -> int:
        return OUTCOME_EXIT_CODES[self.outcome]

    def to_dict(self) -> dict[str, Any]:
        stages = []
        for result in self.results:
            row = asdict(result)
            row.pop("output")
            row["status"] = result.status
            stages.append(row)
        return {
            "run_id": self.run_id,
            "build_number": self.build_number,
            "pipeline": self.pipeline_name,
            "outcome": self.outcome,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "log_url": self.log_url,
            "stages": stages,
        }


def write_run_report(report: RunReport, path: Path) -> Path:
    payload = report.to_dict()
    write_json(path, {**payload, "canonical_checksum": canonical_json_checksum(payload)})
    return path


def decide_outcome(results: list[StageResult] | tuple[StageResult, ...], *, halted: bool) -> str:
    if halted:
        return Outcome.ABORTED
    if any(not result.succeeded for result in results):
        return Outcome.FAILED
    return Outcome.SUCCESS


class StageRunner:
    """Runs a pipeline's stages one at a time, in declared order.

    A failing stage stops the run unless it is marked continue_on_failure.
    Results accumulate on the runner so a partial report can still be built
    if the run ends abnormally.
    """

    def __init__(self, config: RunConfig, *, log_url: str = "", started_at: str = "") -> None:
        self.config = config
        self.log_url = log_url
        self._results: list[StageResult] = []
        self._started_at = started_at
        self._report: RunReport | None = None

    @property
    def results(self) -> tuple[StageResult, ...]:
        return tuple(self._results)

    @property
    def started_at(self) -> str:
        return self._started_at

    @property
    def report(self) -> RunReport | None:
        return self._report

    def _log(self, line: str) -> None:
        append_log(self.config.paths.run_log, f"{line} run_id={self.config.run_id}")

    def _execute(self, stage: StageSpec) -> tuple[int, str]:
        if self.config.dry_run:
            return 0, f"dry-run: {stage.display_command()}\n"

        try:
            completed = subprocess.run(
                stage.command if stage.uses_shell else list(stage.command),
                shell=stage.uses_shell,
                cwd=str(self.config.workspace),
                env=self.config.stage_environment(stage),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                check=False,
            )
        except OSError as exc:
            return LAUNCH_FAILURE_STATUS, f"failed to launch {stage.display_command()!r}: {exc}\n"
        return completed.returncode, completed.stdout or ""

    def run_stage(self, index: int, stage: StageSpec, *, check: bool = False) -> StageResult:
        """Run one stage and record its result.

        With check=True a non-zero exit raises StageExecutionError after the
        result has been recorded.
        """
        if self._report is not None:
            raise RuntimeError(f"run {self.config.run_id} is already finalized")

        self._log(f"stage_started index={index} stage={stage.name}")
        started_at = utc_now()
        t0 = time.monotonic()
        exit_status, output = self._execute(stage)
        duration_ms = (time.monotonic() - t0) * 1000.0

        log_path = self.config.paths.stage_log(index, stage.name)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(output, encoding="utf-8")

        result = StageResult(
            index=index,
            name=stage.name,
            exit_status=exit_status,
            started_at=started_at,
            ended_at=utc_now(),
            duration_ms=round(duration_ms, 3),
            output=output,
            continue_on_failure=stage.continue_on_failure,
            log_path=str(log_path),
            skipped=self.config.dry_run,
        )
        self._results.append(result)
        self._log(f"stage_finished index={index} stage={stage.name} status={result.status} exit_status={exit_status}")

        if check and not result.succeeded:
            raise StageExecutionError(result)
        return result

    def run(self, spec: PipelineSpec) -> RunReport:
        self._started_at = self._started_at or utc_now()
        halted = False
        for index, stage in enumerate(spec.stages, start=1):
            try:
                self.run_stage(index, stage, check=not stage.continue_on_failure)
            except StageExecutionError as exc:
                self._log(f"run_halted stage={stage.name} reason={exc}")
                halted = True
                break
        outcome = decide_outcome(self._results, halted=halted)
        return self.finalize(spec.name, outcome)

    def finalize(self, pipeline_name: str, outcome: str, *, error: str = "") -> RunReport:
        if self._report is not None:
            raise RuntimeError(f"run {self.config.run_id} is already finalized")
        self._report = RunReport(
            run_id=self.config.run_id,
            build_number=self.config.build_number,
            pipeline_name=pipeline_name,
            results=tuple(self._results),
            outcome=outcome,
            started_at=self._started_at or utc_now(),
            ended_at=utc_now(),
            error=error,
            log_url=self.log_url,
        )
        self._log(f"run_finalized outcome={outcome} stages={len(self._results)}")
        return self._report


class NotificationScope:
    """Context manager that delivers exactly one notification per run.

    Whatever happens inside the ``with`` block (normal completion, a fatal
    stage failure, a pre-run ToolNotFound or an unexpected error), the
    notifier is called once on exit with the final report. When the block
    ends without a report, an ABORTED report is built from whatever results
    the attached runner collected. Exceptions from the block propagate after
    the notification; delivery failures and report-write failures never do.
    """

    def __init__(
        self,
        notifier: Notifier,
        *,
        pipeline_name: str,
        run_id: str,
        build_number: int,
        paths: RunPaths,
        log_url: str = "",
    ) -> None:
        self.notifier = notifier
        self.pipeline_name = pipeline_name
        self.run_id = run_id
        self.build_number = build_number
        self.paths = paths
        self.log_url = log_url
        self.report: RunReport | None = None
        self.notification_error: Exception | None = None
        self.report_error: OSError | None = None
        self._runner: StageRunner | None = None
        self._started_at = ""

    @property
    def started_at(self) -> str:
        return self._started_at

    def attach(self, runner: StageRunner) -> StageRunner:
        self._runner = runner
        return runner

    def finish(self, report: RunReport) -> RunReport:
        self.report = report
        return report

    def run(self, spec: PipelineSpec, make_runner: Callable[[], StageRunner]) -> RunReport:
        """Build the runner inside the scope and run every stage.

        ``make_runner`` is called after the scope is entered, so errors it
        raises (tool resolution, for one) still produce a notification.
        """
        with self:
            runner = self.attach(make_runner())
            self.finish(runner.run(spec))
        return self.report

    def __enter__(self) -> "NotificationScope":
        self._started_at = utc_now()
        return self

    def _abandoned_report(self, exc: BaseException | None) -> RunReport:
        error = f"{type(exc).__name__}: {exc}" if exc is not None else "run ended without a report"
        if self._runner is not None and self._runner.report is not None:
            return self._runner.report
        if self._runner is not None:
            return self._runner.finalize(self.pipeline_name, Outcome.ABORTED, error=error)
        append_log(self.paths.run_log, f"run_finalized outcome={Outcome.ABORTED} stages=0 run_id={self.run_id}")
        return RunReport(
            run_id=self.run_id,
            build_number=self.build_number,
            pipeline_name=self.pipeline_name,
            results=(),
            outcome=Outcome.ABORTED,
            started_at=self._started_at,
            ended_at=utc_now(),
            error=error,
            log_url=self.log_url,
        )

    def _write_report(self) -> None:
        try:
            write_run_report(self.report, self.paths.report_file)
        except OSError as error:
            self.report_error = error
            append_log(self.paths.run_log, f"report_write_failed run_id={self.run_id} reason={error}")

    def _notify(self) -> None:
        try:
            self.notifier.notify(self.report)
        except NotificationError as error:
            self.notification_error = error
            append_log(self.paths.run_log, f"notification_failed run_id={self.run_id} reason={error}")

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.report is None:
            self.report = self._abandoned_report(exc)
        try:
            self._write_report()
        finally:
            self._notify()
        return False


def run_with_notification(runner: StageRunner, spec: PipelineSpec, notifier: Notifier) -> RunReport:
    config = runner.config
    scope = NotificationScope(
        notifier,
        pipeline_name=spec.name,
        run_id=config.run_id,
        build_number=config.build_number,
        paths=config.paths,
        log_url=runner.log_url,
    )
    return scope.run(spec, lambda: runner)

"""Command-line entrypoint for sequential pipeline runs."""

from __future__ import annotations

import argparse
import os
from pathlib import Path

from .constants import ExitCode
from .envfiles import next_build_number, record_run
from .framework import RunPaths, default_run_id
from .locking import LockContentionError, acquire_lock, release_lock
from .notify import MailSender, Notifier, OutboxMailSender, SmtpMailSender, render_log_url
from .runner import NotificationScope, RunReport, StageRunner
from .spec import PipelineSpec, PipelineSpecError, load_pipeline, load_tools_file
from .tooling import ToolNotFound, build_run_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipeline-runner",
        description="Run a declarative CI/CD pipeline one stage at a time",
    )
    parser.add_argument("--pipeline", default="pipelines/devsecops.yaml", help="Pipeline definition (YAML)")
    parser.add_argument("--workspace", default=".", help="Directory the stage commands run in")
    parser.add_argument(
        "--control-root",
        default="",
        help="Run bookkeeping root (default: <workspace>/.pipeline)",
    )
    parser.add_argument("--run-id", default="", help="Run identifier (default: UTC timestamp and PID)")
    parser.add_argument(
        "--build-number",
        type=int,
        default=0,
        help="Build number (default: next value of the control-root counter)",
    )
    parser.add_argument("--tools-file", default="", help="Machine-local tool registry (YAML)")
    parser.add_argument("--mail-transport", choices=("smtp", "outbox"), default="smtp")
    parser.add_argument("--dry-run", action="store_true", help="Record stages without running commands")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run every stage, then send the notification")
    sub.add_parser("validate", help="Validate the pipeline and resolve its tools")
    sub.add_parser("stages", help="List stages in execution order")
    return parser


def _load_spec(args: argparse.Namespace) -> PipelineSpec:
    spec = load_pipeline(Path(args.pipeline).resolve())
    if args.tools_file:
        spec = spec.with_tools(load_tools_file(Path(args.tools_file).resolve()))
    return spec


def _mail_sender(args: argparse.Namespace, paths: RunPaths) -> MailSender:
    if args.dry_run or args.mail_transport == "outbox":
        return OutboxMailSender(paths.outbox_dir)
    return SmtpMailSender.from_environment(os.environ)


def _print_report(report: RunReport, paths: RunPaths) -> None:
    for result in report.results:
        print(f"stage={result.name} status={result.status} exit_status={result.exit_status}")
    if report.error:
        print(f"error={report.error}")
    print(f"run_id={report.run_id}")
    print(f"build_number={report.build_number}")
    print(f"outcome={report.outcome}")
    print(f"report={paths.report_file}")


def cmd_stages(spec: PipelineSpec) -> int:
    for index, stage in enumerate(spec.stages, start=1):
        marker = " (continue_on_failure)" if stage.continue_on_failure else ""
        print(f"{index:02d} {stage.name}{marker}")
    return ExitCode.SUCCESS


def cmd_validate(spec: PipelineSpec, workspace: Path, paths: RunPaths) -> int:
    try:
        build_run_config(spec, run_id=paths.run_id, build_number=0, workspace=workspace, paths=paths)
    except ToolNotFound as exc:
        print(str(exc))
        return ExitCode.TOOL_NOT_FOUND
    print(f"pipeline={spec.name}")
    print(f"stages={len(spec.stages)}")
    print(f"tools={','.join(spec.referenced_tools())}")
    return ExitCode.SUCCESS


def cmd_run(args: argparse.Namespace, spec: PipelineSpec, workspace: Path, paths: RunPaths) -> int:
    paths.control_root.mkdir(parents=True, exist_ok=True)
    try:
        acquire_lock(paths.lock_file, paths.run_log, paths.run_id)
    except LockContentionError as exc:
        print(str(exc))
        return ExitCode.LOCK_ACTIVE

    try:
        if paths.run_dir.exists():
            print(f"run directory already exists: {paths.run_dir}")
            return ExitCode.RUN_EXISTS

        build_number = args.build_number or next_build_number(paths.state_file)
        log_url = render_log_url(
            spec.notify.log_url,
            run_id=paths.run_id,
            build_number=build_number,
            fallback=str(paths.run_log),
        )
        notifier = Notifier(spec.notify, _mail_sender(args, paths), workspace=workspace, run_log=paths.run_log)
        scope = NotificationScope(
            notifier,
            pipeline_name=spec.name,
            run_id=paths.run_id,
            build_number=build_number,
            paths=paths,
            log_url=log_url,
        )

        def make_runner() -> StageRunner:
            config = build_run_config(
                spec,
                run_id=paths.run_id,
                build_number=build_number,
                workspace=workspace,
                paths=paths,
                dry_run=args.dry_run,
            )
            return StageRunner(config, log_url=log_url, started_at=scope.started_at)

        exit_code: int | None = None
        try:
            scope.run(spec, make_runner)
        except ToolNotFound as exc:
            print(str(exc))
            exit_code = ExitCode.TOOL_NOT_FOUND
        finally:
            if scope.report is not None:
                record_run(
                    paths.state_file,
                    run_id=paths.run_id,
                    build_number=build_number,
                    outcome=scope.report.outcome,
                    finished_at=scope.report.ended_at,
                )

        report = scope.report
        _print_report(report, paths)
        if scope.report_error is not None:
            print(f"report_error={scope.report_error}")
        if scope.notification_error is not None:
            print(f"notification_error={scope.notification_error}")
        return report.exit_code if exit_code is None else exit_code
    finally:
        release_lock(paths.lock_file, paths.run_log, paths.run_id)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        spec = _load_spec(args)
    except PipelineSpecError as exc:
        print(str(exc))
        return ExitCode.SPEC_INVALID

    if args.command == "stages":
        return cmd_stages(spec)

    workspace = Path(args.workspace).resolve()
    control_root = Path(args.control_root).resolve() if args.control_root else workspace / ".pipeline"
    paths = RunPaths(control_root=control_root, run_id=args.run_id or default_run_id())

    if args.command == "validate":
        return cmd_validate(spec, workspace, paths)
    return cmd_run(args, spec, workspace, paths)


if __name__ == "__main__":
    raise SystemExit(main())

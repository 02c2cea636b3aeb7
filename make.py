#!/usr/bin/env -S uv run
from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
PIPELINES_DIR = ROOT / "pipelines"
TESTS_DIR = ROOT / "tests"


def _load_pipeline():
    try:
        from pipeline_runner.spec import PipelineSpecError, load_pipeline
    except ModuleNotFoundError as exc:
        raise SystemExit(
            "missing Python dependencies for validation; run via ./make.py "
            "(uv launcher) or `uv sync` first"
        ) from exc
    return PipelineSpecError, load_pipeline


def _pipeline_files() -> list[Path]:
    return sorted([*PIPELINES_DIR.glob("*.yaml"), *PIPELINES_DIR.glob("*.yml")])


def cmd_validate(_: argparse.Namespace) -> None:
    spec_error, load_pipeline = _load_pipeline()
    files = _pipeline_files()
    if not files:
        raise SystemExit(f"no pipeline definitions found in {PIPELINES_DIR}")

    failures: list[str] = []
    for path in files:
        try:
            spec = load_pipeline(path)
        except spec_error as exc:
            failures.append(str(exc))
            continue
        print(f"{path.relative_to(ROOT)}: {len(spec.stages)} stages OK")
    if failures:
        raise SystemExit("pipeline validation failed:\n" + "\n".join(failures))


def cmd_test(args: argparse.Namespace) -> None:
    command = [sys.executable, "-m", "pytest", str(TESTS_DIR), *args.pytest_args]
    completed = subprocess.run(command, cwd=str(ROOT), check=False)
    if completed.returncode != 0:
        raise SystemExit(completed.returncode)


def cmd_check(args: argparse.Namespace) -> None:
    cmd_validate(args)
    cmd_test(args)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Developer entrypoint (defaults to check when no command is provided)",
    )
    sub = parser.add_subparsers(dest="cmd")
    parser.set_defaults(func=cmd_check, cmd="check", pytest_args=[])

    p_validate = sub.add_parser("validate", help="Validate every pipeline definition.")
    p_validate.set_defaults(func=cmd_validate)

    p_test = sub.add_parser("test", help="Run the test suite.")
    p_test.add_argument("pytest_args", nargs=argparse.REMAINDER)
    p_test.set_defaults(func=cmd_test)

    p_check = sub.add_parser("check", help="Run validate + test.")
    p_check.set_defaults(func=cmd_check, pytest_args=[])

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()

from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml

from helpers import RecordingSender
from pipeline_runner.framework import RunPaths
from pipeline_runner.notify import Notifier
from pipeline_runner.spec import NotifySpec, PipelineSpec
from pipeline_runner.tooling import build_run_config


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def run_paths(tmp_path: Path) -> RunPaths:
    return RunPaths(control_root=tmp_path / "control", run_id="run-1")


@pytest.fixture
def make_config(workspace: Path, run_paths: RunPaths):
    def _make(spec: PipelineSpec, **kwargs):
        kwargs.setdefault("base_environment", dict(os.environ))
        return build_run_config(
            spec,
            run_id=run_paths.run_id,
            build_number=kwargs.pop("build_number", 7),
            workspace=workspace,
            paths=run_paths,
            **kwargs,
        )

    return _make


@pytest.fixture
def recording_sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def make_notifier(workspace: Path, run_paths: RunPaths, recording_sender: RecordingSender):
    def _make(settings: NotifySpec | None = None, sender=None) -> Notifier:
        return Notifier(
            settings or NotifySpec(recipients=("team@example.com",)),
            sender or recording_sender,
            workspace=workspace,
            run_log=run_paths.run_log,
        )

    return _make


@pytest.fixture
def write_pipeline(tmp_path: Path):
    def _write(document: dict, name: str = "pipeline.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return path

    return _write

"""Shared builders for pipeline runner tests."""

from __future__ import annotations

import sys

from pipeline_runner.notify import OutgoingMail
from pipeline_runner.spec import PipelineSpec, StageSpec


def py(code: str) -> tuple[str, ...]:
    """Stage command that runs a snippet with the current interpreter."""
    return (sys.executable, "-c", code)


def stage(name: str, code: str = "pass", *, continue_on_failure: bool = False, **extra) -> StageSpec:
    return StageSpec(name=name, command=py(code), continue_on_failure=continue_on_failure, **extra)


def pipeline(*stages: StageSpec, name: str = "demo", **extra) -> PipelineSpec:
    return PipelineSpec(name=name, stages=tuple(stages), **extra)


class RecordingSender:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[OutgoingMail] = []
        self.error = error

    def send(self, mail: OutgoingMail) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(mail)

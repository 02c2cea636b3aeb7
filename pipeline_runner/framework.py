"""Run bookkeeping primitives shared by the runner and the CLI."""

from __future__ import annotations

import datetime as dt
import hashlib
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any


def utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def default_run_id() -> str:
    now = dt.datetime.now(dt.timezone.utc)
    return f"{now:%Y%m%dT%H%M%S}.{now:%f}Z-{os.getpid()}"


def canonical_json_checksum(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "stage"


def append_log(run_log: Path, line: str) -> None:
    run_log.parent.mkdir(parents=True, exist_ok=True)
    with run_log.open("a", encoding="utf-8") as handle:
        handle.write(f"[{utc_now()}] {line}\n")


@dataclass(frozen=True)
class RunPaths:
    """Control-root layout for one run."""

    control_root: Path
    run_id: str

    @property
    def state_file(self) -> Path:
        return self.control_root / "state.env"

    @property
    def run_log(self) -> Path:
        return self.control_root / "run.log"

    @property
    def lock_file(self) -> Path:
        return self.control_root / "lock" / "active.lock"

    @property
    def run_dir(self) -> Path:
        return self.control_root / "runs" / self.run_id

    @property
    def stage_log_dir(self) -> Path:
        return self.run_dir / "stages"

    @property
    def report_file(self) -> Path:
        return self.run_dir / "run-report.json"

    @property
    def outbox_dir(self) -> Path:
        return self.run_dir / "outbox"

    def stage_log(self, index: int, stage: str) -> Path:
        return self.stage_log_dir / f"{index:02d}-{slugify(stage)}.log"

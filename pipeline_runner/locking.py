"""Single-run lock for a control root."""

from __future__ import annotations

import getpass
import json
import os
import socket
from dataclasses import dataclass
from pathlib import Path

from .framework import append_log, utc_now


class LockContentionError(RuntimeError):
    """Raised when another live run holds the control-root lock."""


@dataclass(frozen=True)
class LockPayload:
    pid: int
    host: str
    user: str
    run_id: str
    acquired_at_utc: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "pid": self.pid,
                "host": self.host,
                "user": self.user,
                "run_id": self.run_id,
                "acquired_at_utc": self.acquired_at_utc,
            },
            sort_keys=True,
        )


def _pid_active(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def _read_payload(lock_file: Path) -> tuple[str, dict[str, object]]:
    try:
        raw = lock_file.read_text(encoding="utf-8").strip()
    except OSError:
        return "", {}
    if not raw:
        return "", {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return raw, {}
    return raw, payload if isinstance(payload, dict) else {}


def acquire_lock(lock_file: Path, run_log: Path, run_id: str) -> LockPayload:
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    if lock_file.exists():
        prior_raw, prior = _read_payload(lock_file)
        pid_raw = str(prior.get("pid", ""))
        prior_pid = int(pid_raw) if pid_raw.isdigit() else 0
        if _pid_active(prior_pid):
            raise LockContentionError(
                f"active lock at {lock_file}: pid={prior_pid} run_id={prior.get('run_id', '?')} "
                f"host={prior.get('host', '?')} user={prior.get('user', '?')}"
            )
        if prior_raw:
            append_log(run_log, f"stale_lock_replaced payload={prior_raw}")

    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    payload = LockPayload(
        pid=os.getpid(),
        host=socket.gethostname(),
        user=user,
        run_id=run_id,
        acquired_at_utc=utc_now(),
    )
    lock_file.write_text(payload.to_json() + "\n", encoding="utf-8")
    append_log(run_log, f"lock_acquired pid={payload.pid} run_id={run_id}")
    return payload


def release_lock(lock_file: Path, run_log: Path, run_id: str) -> None:
    if not lock_file.exists():
        return
    _, payload = _read_payload(lock_file)
    owner = str(payload.get("run_id", ""))
    if owner and owner != run_id:
        return

    lock_file.unlink(missing_ok=True)
    append_log(run_log, f"lock_released run_id={run_id}")

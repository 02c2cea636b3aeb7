"""Shell-style state.env handling for durable run counters."""

from __future__ import annotations

import os
from pathlib import Path

BUILD_NUMBER_KEY = "BUILD_NUMBER"


def parse_env(path: Path) -> dict[str, str]:
    data: dict[str, str] = {}
    if not path.exists():
        return data

    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
            value = value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        data[key.strip()] = value

    return data


def write_env(path: Path, data: dict[str, str]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.parent.mkdir(parents=True, exist_ok=True)

    lines: list[str] = []
    for key in sorted(data):
        value = "" if data[key] is None else str(data[key])
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        lines.append(f'{key}="{escaped}"')

    tmp.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    os.replace(tmp, path)


def next_build_number(state_file: Path) -> int:
    """Increment and persist the build counter, returning the new value."""
    state = parse_env(state_file)
    raw = state.get(BUILD_NUMBER_KEY, "0")
    current = int(raw) if raw.isdigit() else 0
    state[BUILD_NUMBER_KEY] = str(current + 1)
    write_env(state_file, state)
    return current + 1


def record_run(state_file: Path, *, run_id: str, build_number: int, outcome: str, finished_at: str) -> None:
    state = parse_env(state_file)
    raw = state.get(BUILD_NUMBER_KEY, "0")
    if not raw.isdigit() or int(raw) < build_number:
        state[BUILD_NUMBER_KEY] = str(build_number)
    state["LAST_RUN_ID"] = run_id
    state["LAST_BUILD_NUMBER"] = str(build_number)
    state["LAST_OUTCOME"] = outcome
    state["LAST_FINISHED_AT"] = finished_at
    write_env(state_file, state)

"""Pipeline definition loading and validation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from .constants import DEFAULT_SENDER, DEFAULT_SUBJECT, SCHEMA_PATH, TOOLS_SCHEMA_PATH


class PipelineSpecError(RuntimeError):
    """Raised when a pipeline definition or tools file is invalid."""


@dataclass(frozen=True)
class ToolBinding:
    name: str
    home: str
    bin: str = ""


@dataclass(frozen=True)
class NotifySpec:
    recipients: tuple[str, ...] = ()
    sender: str = DEFAULT_SENDER
    subject: str = DEFAULT_SUBJECT
    attachments: tuple[str, ...] = ()
    log_url: str = ""


@dataclass(frozen=True)
class StageSpec:
    name: str
    command: str | tuple[str, ...]
    continue_on_failure: bool = False
    environment: tuple[tuple[str, str], ...] = ()
    tools: tuple[str, ...] = ()

    @property
    def uses_shell(self) -> bool:
        return isinstance(self.command, str)

    def display_command(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)


@dataclass(frozen=True)
class PipelineSpec:
    name: str
    stages: tuple[StageSpec, ...]
    tools: dict[str, ToolBinding] = field(default_factory=dict)
    use_tools: tuple[str, ...] = ()
    environment: tuple[tuple[str, str], ...] = ()
    notify: NotifySpec = field(default_factory=NotifySpec)

    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def referenced_tools(self) -> list[str]:
        names: list[str] = list(self.use_tools)
        for stage in self.stages:
            for tool in stage.tools:
                if tool not in names:
                    names.append(tool)
        return names

    def with_tools(self, overrides: dict[str, ToolBinding]) -> "PipelineSpec":
        merged = {**self.tools, **overrides}
        return PipelineSpec(
            name=self.name,
            stages=self.stages,
            tools=merged,
            use_tools=self.use_tools,
            environment=self.environment,
            notify=self.notify,
        )


def _draft202012_validator(schema_path: Path = SCHEMA_PATH) -> Draft202012Validator:
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    return Draft202012Validator(schema)


def _schema_errors(document: Any, schema_path: Path) -> str:
    validator = _draft202012_validator(schema_path)
    errors = sorted(validator.iter_errors(document), key=lambda err: list(err.absolute_path))
    return "\n".join(
        f"- {'/'.join(str(part) for part in err.absolute_path) or '<root>'}: {err.message}"
        for err in errors
    )


def _env_pairs(mapping: dict[str, Any] | None) -> tuple[tuple[str, str], ...]:
    out: list[tuple[str, str]] = []
    for key, value in (mapping or {}).items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        out.append((str(key), str(value)))
    return tuple(out)


def _tool_bindings(mapping: dict[str, Any] | None) -> dict[str, ToolBinding]:
    return {
        str(name): ToolBinding(name=str(name), home=str(row["home"]), bin=str(row.get("bin", "")))
        for name, row in (mapping or {}).items()
    }


def validate_document(document: Any, *, source: str = "<pipeline>") -> None:
    """Check a raw pipeline document against the bundled schema and invariants."""
    details = _schema_errors(document, SCHEMA_PATH)
    if details:
        raise PipelineSpecError(f"pipeline schema validation failed for {source}:\n{details}")

    seen: set[str] = set()
    duplicates: list[str] = []
    for stage in document["stages"]:
        name = stage["name"]
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        raise PipelineSpecError(f"duplicate stage names in {source}: {', '.join(duplicates)}")


def parse_pipeline(document: Any, *, source: str = "<pipeline>") -> PipelineSpec:
    validate_document(document, source=source)

    stages = tuple(
        StageSpec(
            name=row["name"],
            command=row["command"] if isinstance(row["command"], str) else tuple(row["command"]),
            continue_on_failure=bool(row.get("continue_on_failure", False)),
            environment=_env_pairs(row.get("environment")),
            tools=tuple(row.get("tools", [])),
        )
        for row in document["stages"]
    )

    notify_row = document.get("notify") or {}
    notify = NotifySpec(
        recipients=tuple(notify_row.get("recipients", [])),
        sender=notify_row.get("sender", DEFAULT_SENDER),
        subject=notify_row.get("subject", DEFAULT_SUBJECT),
        attachments=tuple(notify_row.get("attachments", [])),
        log_url=notify_row.get("log_url", ""),
    )

    return PipelineSpec(
        name=document["name"],
        stages=stages,
        tools=_tool_bindings(document.get("tools")),
        use_tools=tuple(document.get("use_tools", [])),
        environment=_env_pairs(document.get("environment")),
        notify=notify,
    )


def _read_yaml(path: Path, kind: str) -> Any:
    if not path.exists():
        raise PipelineSpecError(f"missing {kind}: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise PipelineSpecError(f"invalid YAML in {path}: {exc}") from exc


def load_pipeline(path: Path) -> PipelineSpec:
    return parse_pipeline(_read_yaml(path, "pipeline definition"), source=str(path))


def load_tools_file(path: Path) -> dict[str, ToolBinding]:
    """Read a machine-local tool registry.

    The file is YAML (plain JSON also parses) with a top-level ``tools``
    mapping shaped like the pipeline's own ``tools`` section, checked
    against ``schema/tools.schema.json``. Entries override the pipeline's.
    """
    document = _read_yaml(path, "tools file")
    details = _schema_errors(document, TOOLS_SCHEMA_PATH)
    if details:
        raise PipelineSpecError(f"tools file validation failed for {path}:\n{details}")
    return _tool_bindings(document["tools"])

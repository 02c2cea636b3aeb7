"""Tool resolution and the immutable run configuration."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from .constants import BUILD_NUMBER_ENV, RUN_ID_ENV, WORKSPACE_ENV
from .framework import RunPaths
from .spec import PipelineSpec, StageSpec, ToolBinding

_REFERENCE_RE = re.compile(r"\$\{(tool|env):([^}]+)\}")


class ToolNotFound(RuntimeError):
    """Raised when a tool is not configured or not installed."""

    def __init__(self, tool_name: str, reason: str) -> None:
        super().__init__(f"tool not found: {tool_name} ({reason})")
        self.tool_name = tool_name


@dataclass(frozen=True)
class ResolvedTool:
    name: str
    home: Path
    bin_dir: Path | None

    @property
    def env_var(self) -> str:
        return re.sub(r"[^A-Z0-9]+", "_", self.name.upper()).strip("_") + "_HOME"


class ToolResolver:
    """Looks tools up in a registry of installed tool locations."""

    def __init__(self, registry: Mapping[str, ToolBinding]) -> None:
        self._registry = dict(registry)

    def resolve(self, tool_name: str) -> ResolvedTool:
        binding = self._registry.get(tool_name)
        if binding is None:
            raise ToolNotFound(tool_name, "not configured")

        home = Path(os.path.expanduser(binding.home))
        if not home.is_dir():
            raise ToolNotFound(tool_name, f"home directory does not exist: {home}")

        bin_dir: Path | None = None
        if binding.bin:
            bin_dir = home / binding.bin
            if not bin_dir.is_dir():
                raise ToolNotFound(tool_name, f"bin directory does not exist: {bin_dir}")
        return ResolvedTool(name=tool_name, home=home, bin_dir=bin_dir)

    def resolve_all(self, tool_names: list[str]) -> dict[str, ResolvedTool]:
        return {name: self.resolve(name) for name in tool_names}


@dataclass(frozen=True)
class RunConfig:
    """Everything a run needs, fixed before the first stage starts."""

    run_id: str
    build_number: int
    workspace: Path
    paths: RunPaths
    environment: Mapping[str, str]
    tools: Mapping[str, ResolvedTool] = field(default_factory=lambda: MappingProxyType({}))
    dry_run: bool = False

    def stage_environment(self, stage: StageSpec) -> dict[str, str]:
        env = dict(self.environment)
        stage_tools = [self.tools[name] for name in stage.tools]
        _export_tools(env, stage_tools)
        for key, value in stage.environment:
            env[key] = expand_references(value, env=env, tools=self.tools)
        return env


def _export_tools(env: dict[str, str], tools: list[ResolvedTool]) -> None:
    path_entries = [str(tool.bin_dir) for tool in tools if tool.bin_dir is not None]
    if path_entries:
        env["PATH"] = os.pathsep.join([*path_entries, env.get("PATH", "")]).rstrip(os.pathsep)
    for tool in tools:
        env[tool.env_var] = str(tool.home)


def expand_references(value: str, *, env: Mapping[str, str], tools: Mapping[str, ResolvedTool]) -> str:
    """Expand ``${tool:NAME}`` and ``${env:NAME}`` references in a value."""

    def _substitute(match: re.Match[str]) -> str:
        kind, name = match.group(1), match.group(2).strip()
        if kind == "tool":
            if name not in tools:
                raise ToolNotFound(name, "referenced in environment but not resolved")
            return str(tools[name].home)
        return env.get(name, "")

    return _REFERENCE_RE.sub(_substitute, value)


def _environment_tool_names(spec: PipelineSpec) -> list[str]:
    names: list[str] = []
    pairs = list(spec.environment)
    for stage in spec.stages:
        pairs.extend(stage.environment)
    for _, value in pairs:
        for kind, name in _REFERENCE_RE.findall(value):
            if kind == "tool" and name.strip() not in names:
                names.append(name.strip())
    return names


def build_run_config(
    spec: PipelineSpec,
    *,
    run_id: str,
    build_number: int,
    workspace: Path,
    paths: RunPaths,
    base_environment: Mapping[str, str] | None = None,
    dry_run: bool = False,
) -> RunConfig:
    """Resolve every tool the pipeline uses and freeze the run environment.

    Pipeline-wide tools (``use_tools``) are exported to every stage; a
    stage's own ``tools`` are exported only to that stage. Raises
    ToolNotFound before any stage has a chance to run.
    """
    resolver = ToolResolver(spec.tools)
    wanted = spec.referenced_tools()
    for name in _environment_tool_names(spec):
        if name not in wanted:
            wanted.append(name)
    resolved = resolver.resolve_all(wanted)

    env = dict(os.environ if base_environment is None else base_environment)
    _export_tools(env, [resolved[name] for name in spec.use_tools])

    for key, value in spec.environment:
        env[key] = expand_references(value, env=env, tools=resolved)

    env[RUN_ID_ENV] = run_id
    env[BUILD_NUMBER_ENV] = str(build_number)
    env[WORKSPACE_ENV] = str(workspace)

    return RunConfig(
        run_id=run_id,
        build_number=build_number,
        workspace=workspace,
        paths=paths,
        environment=MappingProxyType(env),
        tools=MappingProxyType(resolved),
        dry_run=dry_run,
    )

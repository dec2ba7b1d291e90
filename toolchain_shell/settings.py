from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from .errors import ConfigurationError

DEFAULT_PROMPT = "PS> "
DEFAULT_SETTINGS_PATH = Path("config") / "ToolchainSettings.json"

COMPILER_TEMPLATE = '${tool} "${source}" -v -i -o "${output}"'
ASSEMBLER_TEMPLATE = '${tool} "${source}" -o "${output}" -f coe${link} --no-report'


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    val = str(raw).strip().lower()
    return val in {"1", "true", "yes", "y", "on"}


def _truthy(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


@dataclass(frozen=True)
class ReadinessPolicy:
    mode: str = "delay"  # "delay" | "marker"
    settle_delay: float = 0.5
    # marker
    timeout: float = 5.0


@dataclass(frozen=True)
class ShellProfile:
    """How to launch and talk to the interactive shell on this host."""

    command: List[str]
    line_terminator: str = "\n"
    encoding: str = "utf-8"
    # Used for hidden readiness/completion markers; "" disables them.
    echo_template: str = 'echo "{text}"'
    exit_status_expr: str = "$?"
    separator: str = "; "
    # POSIX: signals go to the whole process group.
    process_group: bool = True

    @property
    def name(self) -> str:
        return Path(self.command[0]).name if self.command else "shell"

    def echo_line(self, text: str) -> str:
        return self.echo_template.format(text=text)


def default_shell_profile() -> ShellProfile:
    if os.name == "nt":
        return ShellProfile(
            command=["powershell.exe", "-NoExit", "-Command", "-"],
            line_terminator="\r\n",
            exit_status_expr="$LASTEXITCODE",
            process_group=False,
        )
    return ShellProfile(command=["/bin/bash"])


@dataclass(frozen=True)
class ToolchainSettings:
    compiler_path: str = ""
    assembler_path: str = ""
    programmer_path: str = ""
    # Interpreter prefix for compiler/assembler (node for the stock .js tools).
    runner: str = "node"
    link: bool = False
    verify_paths: bool = True
    prompt: str = DEFAULT_PROMPT
    readiness: ReadinessPolicy = field(default_factory=ReadinessPolicy)
    shell: ShellProfile = field(default_factory=default_shell_profile)
    templates: Dict[str, str] = field(
        default_factory=lambda: {"compiler": COMPILER_TEMPLATE, "assembler": ASSEMBLER_TEMPLATE}
    )

    def tool_path(self, tool: str) -> str:
        return {
            "compiler": self.compiler_path,
            "assembler": self.assembler_path,
            "programmer": self.programmer_path,
        }.get(tool, "")

    def template(self, tool: str) -> str:
        defaults = {"compiler": COMPILER_TEMPLATE, "assembler": ASSEMBLER_TEMPLATE}
        return self.templates.get(tool) or defaults[tool]


_TEMPLATE_RE = re.compile(r"\$\{([^}]+)\}")


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Render ``${name}`` placeholders. Unknown names render as empty strings."""

    def _replace(match: re.Match) -> str:
        key = match.group(1).strip()
        if not key:
            return ""
        if key.startswith("env:"):
            return str(os.environ.get(key.split(":", 1)[1], ""))
        value = values.get(key)
        return "" if value is None else str(value)

    return _TEMPLATE_RE.sub(_replace, template)


def _parse_readiness(raw: Any) -> ReadinessPolicy:
    if not isinstance(raw, dict):
        return ReadinessPolicy()
    mode = str(raw.get("mode") or "delay").strip().lower()
    if mode not in ("delay", "marker"):
        raise ConfigurationError(f"unknown readiness mode {mode!r}")
    return ReadinessPolicy(
        mode=mode,
        settle_delay=float(raw.get("settle_delay", 0.5)),
        timeout=float(raw.get("timeout", 5.0)),
    )


def _parse_shell(raw: Any) -> ShellProfile:
    base = default_shell_profile()
    if not isinstance(raw, dict):
        return base
    command = raw.get("command")
    if isinstance(command, str):
        command = command.split()
    if command is not None and (not isinstance(command, list) or not command):
        raise ConfigurationError("shell.command must be a non-empty list")
    return ShellProfile(
        command=[str(x) for x in command] if command else list(base.command),
        line_terminator=str(raw.get("line_terminator", base.line_terminator)),
        encoding=str(raw.get("encoding", base.encoding)),
        echo_template=str(raw.get("echo_template", base.echo_template)),
        exit_status_expr=str(raw.get("exit_status_expr", base.exit_status_expr)),
        separator=str(raw.get("separator", base.separator)),
        process_group=_truthy(raw.get("process_group"), base.process_group),
    )


def parse_settings_data(raw: Any) -> ToolchainSettings:
    """Parse an in-memory settings document (the ToolchainSettings.json shape)."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("toolchain settings must be a mapping")

    templates = raw.get("templates") or {}
    if not isinstance(templates, dict):
        raise ConfigurationError("templates must be a mapping")
    defaults = ToolchainSettings()

    return ToolchainSettings(
        compiler_path=str(raw.get("compiler_path") or ""),
        assembler_path=str(raw.get("assembler_path") or ""),
        programmer_path=str(raw.get("programmer_path") or raw.get("serialport_path") or ""),
        runner=str(raw["runner"]) if raw.get("runner") is not None else defaults.runner,
        link=_truthy(raw.get("link"), False),
        verify_paths=_truthy(raw.get("verify_paths"), True),
        prompt=str(raw.get("prompt") or DEFAULT_PROMPT),
        readiness=_parse_readiness(raw.get("readiness")),
        shell=_parse_shell(raw.get("shell")),
        templates={**defaults.templates, **{str(k): str(v) for k, v in templates.items()}},
    )


def apply_env_overrides(settings: ToolchainSettings, env: Optional[Mapping[str, str]] = None) -> ToolchainSettings:
    env = os.environ if env is None else env
    updates: Dict[str, Any] = {}
    for key, attr in (
        ("TOOLCHAIN_SHELL_COMPILER_PATH", "compiler_path"),
        ("TOOLCHAIN_SHELL_ASSEMBLER_PATH", "assembler_path"),
        ("TOOLCHAIN_SHELL_PROGRAMMER_PATH", "programmer_path"),
        ("TOOLCHAIN_SHELL_RUNNER", "runner"),
    ):
        if env.get(key) is not None:
            updates[attr] = env[key]

    readiness = settings.readiness
    if env.get("TOOLCHAIN_SHELL_SETTLE_DELAY"):
        try:
            readiness = replace(readiness, settle_delay=float(env["TOOLCHAIN_SHELL_SETTLE_DELAY"]))
        except ValueError as exc:
            raise ConfigurationError(f"invalid TOOLCHAIN_SHELL_SETTLE_DELAY: {exc}") from exc
    if env.get("TOOLCHAIN_SHELL_READINESS"):
        mode = env["TOOLCHAIN_SHELL_READINESS"].strip().lower()
        if mode not in ("delay", "marker"):
            raise ConfigurationError(f"unknown readiness mode {mode!r}")
        readiness = replace(readiness, mode=mode)
    if readiness is not settings.readiness:
        updates["readiness"] = readiness

    return replace(settings, **updates) if updates else settings


def resolve_settings_path(path: Optional[Union[str, Path]] = None) -> Path:
    if path:
        return Path(os.path.expanduser(str(path)))
    env_path = os.environ.get("TOOLCHAIN_SHELL_SETTINGS")
    if env_path:
        return Path(os.path.expanduser(env_path))
    return DEFAULT_SETTINGS_PATH


def load_settings(path: Optional[Union[str, Path]] = None, *, required: bool = True) -> ToolchainSettings:
    """Load toolchain settings from a YAML or JSON file, then apply env overrides.

    A missing file raises ConfigurationError unless ``required`` is False, in
    which case defaults are used.
    """
    p = resolve_settings_path(path)
    if not p.exists():
        if required:
            raise ConfigurationError(f"failed to read toolchain settings: {p} not found")
        return apply_env_overrides(ToolchainSettings())

    try:
        with p.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"failed to read toolchain settings {p}: {exc}") from exc
    return apply_env_overrides(parse_settings_data(raw))

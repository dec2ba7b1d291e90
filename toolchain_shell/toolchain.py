from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Awaitable, Callable, List, Optional, Union

from loguru import logger

from .errors import (
    ConfigurationError,
    DispatchOnStoppedSessionError,
    ExtensionMismatchError,
    ToolchainShellError,
)
from .events import EventType, SessionEvent
from .session import Dispatch, ShellSession
from .settings import ToolchainSettings, load_settings, render_template

PathLike = Union[str, Path]


class ToolKind(Enum):
    COMPILER = "compiler"
    ASSEMBLER = "assembler"
    PROGRAMMER = "programmer"


EXPECTED_EXTENSIONS = {
    ToolKind.COMPILER: ".c",
    ToolKind.ASSEMBLER: ".asm",
    ToolKind.PROGRAMMER: ".txt",
}


def normalize_path(path: PathLike) -> str:
    return str(path).replace("\\", "/")


def absolute_path(path: PathLike, base: PathLike) -> str:
    """``path`` made absolute against ``base``; a trailing slash is kept.

    Windows drive paths count as absolute on every platform.
    """
    text = normalize_path(path)
    if PurePosixPath(text).is_absolute() or PureWindowsPath(text).is_absolute():
        return text
    joined = normalize_path(os.path.normpath(os.path.join(normalize_path(base), text)))
    if text.endswith("/") and not joined.endswith("/"):
        joined += "/"
    return joined


def _quote_if_needed(value: str) -> str:
    if any(ch.isspace() for ch in value) and not value.startswith('"'):
        return f'"{value}"'
    return value


@dataclass
class Invocation:
    """A tool command handed to the shell (or a programmer process launched).

    Resolving an invocation means "command delivered", never "build succeeded".
    """

    tool: ToolKind
    source: str
    output: Optional[str]
    command: str
    dispatch: Optional[Dispatch] = None
    pid: Optional[int] = None


Launcher = Callable[[List[str]], Awaitable[Any]]


async def launch_detached(argv: List[str]) -> Any:
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        start_new_session=True,
    )


class ToolInvocationAdapter:
    """Builds compiler/assembler command lines and dispatches them through the session.

    The programmer is started as its own process; it never goes through the
    shell. When ``settings_path`` is given the settings file is re-read on
    every invocation so edits made elsewhere apply to the next build.
    """

    def __init__(
        self,
        session: ShellSession,
        *,
        settings: Optional[ToolchainSettings] = None,
        settings_path: Optional[PathLike] = None,
        launcher: Optional[Launcher] = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self.settings_path = Path(settings_path) if settings_path else None
        self._launcher = launcher or launch_detached

    def current_settings(self) -> ToolchainSettings:
        if self.settings_path is not None:
            return load_settings(self.settings_path)
        return self.settings or ToolchainSettings()

    # ------------------------------------------------------------------
    # Validation

    def check_extension(self, tool: ToolKind, source: PathLike) -> None:
        expected = EXPECTED_EXTENSIONS[tool]
        if Path(str(source)).suffix.lower() != expected:
            raise ExtensionMismatchError(tool.value, normalize_path(source), expected)

    def tool_path(self, tool: ToolKind, settings: ToolchainSettings) -> str:
        path = settings.tool_path(tool.value).strip()
        if not path:
            raise ConfigurationError(f"{tool.value} path is not configured")
        if settings.verify_paths:
            p = Path(os.path.expanduser(path))
            if not p.is_file() or not os.access(p, os.R_OK):
                raise ConfigurationError(f"{tool.value} path {path!r} is missing or unreadable")
        return path

    # ------------------------------------------------------------------
    # Command lines

    def build_command(
        self,
        tool: ToolKind,
        source: PathLike,
        output: Optional[PathLike],
        *,
        link: bool = False,
        settings: Optional[ToolchainSettings] = None,
    ) -> str:
        if tool is ToolKind.PROGRAMMER:
            raise ValueError("the programmer is launched directly, not through the shell")
        settings = settings or self.current_settings()
        tool_cmd = _quote_if_needed(normalize_path(self.tool_path(tool, settings)))
        if settings.runner:
            tool_cmd = f"{settings.runner} {tool_cmd}"
        return render_template(
            settings.template(tool.value),
            {
                "tool": tool_cmd,
                "source": normalize_path(source),
                "output": normalize_path(output) if output is not None else "",
                "link": " -l" if link else "",
            },
        )

    # ------------------------------------------------------------------
    # Invocation

    async def _report(self, tool: ToolKind, source: PathLike, exc: ToolchainShellError) -> None:
        logger.warning("toolchain.error tool={} source={} error={}", tool.value, normalize_path(source), exc)
        await self.session.bus.publish(
            SessionEvent(
                type=EventType.TOOL_ERROR,
                session_id=self.session.record.id,
                data={"tool": tool.value, "source": normalize_path(source), "error": str(exc), "kind": type(exc).__name__},
            )
        )

    async def _dispatch(self, command: str, *, track_completion: bool) -> Dispatch:
        await self.session.ensure_running()
        try:
            return await self.session.dispatch(command, track_completion=track_completion)
        except DispatchOnStoppedSessionError:
            # The shell went away between the readiness check and the write.
            logger.info("toolchain.dispatch.retry command={}", command)
            await self.session.start()
            await self.session.wait_ready()
            return await self.session.dispatch(command, track_completion=track_completion)

    async def invoke(
        self,
        tool: ToolKind,
        source: PathLike,
        output: Optional[PathLike] = None,
        *,
        link: Optional[bool] = None,
        track_completion: bool = False,
    ) -> Invocation:
        base = self.session.record.cwd
        source = absolute_path(source, base)
        if output is not None:
            output = absolute_path(output, base)
        try:
            self.check_extension(tool, source)
            settings = self.current_settings()
            if tool is ToolKind.PROGRAMMER:
                return await self._launch_programmer(source, settings)
            use_link = settings.link if link is None else link
            command = self.build_command(tool, source, output, link=use_link, settings=settings)
            dispatch = await self._dispatch(command, track_completion=track_completion)
        except ToolchainShellError as exc:
            await self._report(tool, source, exc)
            raise

        invocation = Invocation(
            tool=tool,
            source=normalize_path(source),
            output=normalize_path(output) if output is not None else None,
            command=command,
            dispatch=dispatch,
        )
        logger.info("toolchain.dispatched tool={} command={}", tool.value, command)
        await self.session.bus.publish(
            SessionEvent(
                type=EventType.TOOL_DISPATCHED,
                session_id=self.session.record.id,
                data={"tool": tool.value, "command": command, "seq": dispatch.seq},
            )
        )
        return invocation

    async def _launch_programmer(self, source: PathLike, settings: ToolchainSettings) -> Invocation:
        argv = [self.tool_path(ToolKind.PROGRAMMER, settings), normalize_path(source)]
        try:
            proc = await self._launcher(argv)
        except OSError as exc:
            raise ConfigurationError(f"failed to launch programmer {argv[0]!r}: {exc}") from exc
        pid = getattr(proc, "pid", None)
        logger.info("toolchain.launched tool=programmer argv={} pid={}", argv, pid)
        await self.session.bus.publish(
            SessionEvent(
                type=EventType.TOOL_LAUNCHED,
                session_id=self.session.record.id,
                data={"tool": ToolKind.PROGRAMMER.value, "argv": argv, "pid": pid},
            )
        )
        return Invocation(
            tool=ToolKind.PROGRAMMER,
            source=normalize_path(source),
            output=None,
            command=" ".join(_quote_if_needed(part) for part in argv),
            pid=pid,
        )

    async def invoke_compiler(self, source: PathLike, output: PathLike, **kwargs: Any) -> Invocation:
        return await self.invoke(ToolKind.COMPILER, source, output, **kwargs)

    async def invoke_assembler(self, source: PathLike, output: PathLike, link: bool = False, **kwargs: Any) -> Invocation:
        return await self.invoke(ToolKind.ASSEMBLER, source, output, link=link, **kwargs)

    async def invoke_programmer(self, source: PathLike) -> Invocation:
        return await self.invoke(ToolKind.PROGRAMMER, source)

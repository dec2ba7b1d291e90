from __future__ import annotations

from asyncio import Queue as AsyncQueue
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from loguru import logger

from .buffer import LineBuffer
from .console import ShellConsole
from .events import EventBus
from .history import CommandHistory
from .hooks import SessionLifecycleHooks
from .pipeline import BuildAction, PipelineOrchestrator, PipelineRun
from .record import SessionRecord
from .session import Dispatch, ShellSession, Spawner
from .settings import ToolchainSettings, load_settings, resolve_settings_path
from .store import RuntimeStore
from .toolchain import Launcher, ToolInvocationAdapter

PathLike = Union[str, Path]


class WindowContext:
    """Everything one editor window owns: its shell session and build tooling.

    There is no process-wide session. Hosts create one context per window and
    close it when the window goes away.
    """

    def __init__(
        self,
        *,
        settings: Optional[ToolchainSettings] = None,
        settings_path: Optional[PathLike] = None,
        cwd: Optional[str] = None,
        store: Optional[RuntimeStore] = None,
        hooks: Optional[SessionLifecycleHooks] = None,
        spawner: Optional[Spawner] = None,
        launcher: Optional[Launcher] = None,
        await_completion: bool = False,
        history_size: Optional[int] = None,
        current_file: Optional[PathLike] = None,
        workspace: Optional[PathLike] = None,
    ) -> None:
        bound_path = None
        if settings is None:
            bound_path = resolve_settings_path(settings_path)
            settings = load_settings(bound_path, required=False)
            if not bound_path.exists():
                bound_path = None

        self.settings = settings
        self.bus = EventBus()
        self.store = store
        self.buffer = LineBuffer(prompt=settings.prompt)
        self.history = CommandHistory(max_entries=history_size)
        self.session = ShellSession(
            profile=settings.shell,
            sink=self.buffer,
            bus=self.bus,
            readiness=settings.readiness,
            cwd=cwd,
            hooks=hooks,
            store=store,
            spawner=spawner,
        )
        self.console = ShellConsole(self.buffer, self.history, self.session)
        self.adapter = ToolInvocationAdapter(
            self.session,
            settings=settings,
            settings_path=bound_path,
            launcher=launcher,
        )
        self.orchestrator = PipelineOrchestrator(self.adapter, bus=self.bus, await_completion=await_completion)
        self.current_file: Optional[str] = str(current_file) if current_file else None
        self.workspace: Optional[str] = str(workspace) if workspace else None

    def open_file(self, path: Optional[PathLike]) -> None:
        self.current_file = str(path) if path else None

    def open_workspace(self, path: Optional[PathLike]) -> None:
        self.workspace = str(path) if path else None

    async def start_session(self) -> SessionRecord:
        record = await self.session.start()
        await self.session.wait_ready()
        return record

    async def stop_session(self) -> None:
        await self.session.stop()

    def is_running(self) -> bool:
        return self.session.is_running()

    async def dispatch(self, command: str, *, track_completion: bool = False) -> Dispatch:
        return await self.session.dispatch(command, track_completion=track_completion)

    def subscribe_output(self) -> AsyncQueue[Tuple[str, str]]:
        return self.session.subscribe_output()

    def unsubscribe_output(self, q: AsyncQueue[Tuple[str, str]]) -> None:
        self.session.unsubscribe_output(q)

    async def run_action(
        self,
        action: Union[str, BuildAction],
        *,
        source: Optional[PathLike] = None,
        workspace: Optional[PathLike] = None,
    ) -> PipelineRun:
        """Run a build action against the open file and workspace (or the overrides)."""
        return await self.orchestrator.run(
            action,
            source if source is not None else self.current_file,
            workspace if workspace is not None else self.workspace,
        )

    async def describe(self) -> Dict[str, Any]:
        payload = await self.session.describe()
        payload["current_file"] = self.current_file
        payload["workspace"] = self.workspace
        return payload

    async def close(self, timeout: float = 2.0) -> None:
        logger.debug("window.close session={}", self.session.record.id)
        await self.session.close(timeout)

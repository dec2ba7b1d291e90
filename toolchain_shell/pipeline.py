"""Build actions: plan the tool steps for an action and run them in order.

An action never waits for a tool to finish unless the orchestrator was built
with ``await_completion=True``; by default the guarantee is issue order only,
the same as typing the commands into the shell one after another.
"""

from __future__ import annotations

import asyncio
import os
import posixpath
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .errors import PreconditionError, StepFailedError, ToolchainShellError
from .events import EventBus, EventType, SessionEvent
from .toolchain import Invocation, ToolInvocationAdapter, ToolKind, absolute_path

PathLike = Union[str, Path]


class BuildAction(Enum):
    COMPILE = "compile"
    ASSEMBLE = "assemble"
    ASSEMBLE_AND_LINK = "assemble-and-link"
    FLASH = "flash"
    RUN = "run"

    @classmethod
    def parse(cls, value: Union[str, "BuildAction"]) -> "BuildAction":
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "-")
        aliases = {"assembly-and-link": "assemble-and-link", "serial": "flash", "magic-click": "run"}
        key = aliases.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"unknown build action {value!r}") from None


class RunStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PipelineStep:
    tool: ToolKind
    source: str
    output: Optional[str] = None
    link: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"tool": self.tool.value, "source": self.source, "output": self.output, "link": self.link}


@dataclass
class PipelineRun:
    action: BuildAction
    steps: List[PipelineStep]
    id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex[:8]}")
    status: RunStatus = RunStatus.PENDING
    created_at: float = field(default_factory=time.time)
    invocations: List[Invocation] = field(default_factory=list)
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "commands": [inv.command for inv in self.invocations],
            "error": self.error,
        }


def _join_dir(*parts: str) -> str:
    return posixpath.join(*parts) + "/"


def _out_dir(workspace: str, name: str) -> str:
    return _join_dir(workspace, "out", name)


def plan_run(
    action: Union[str, BuildAction],
    source: Optional[PathLike],
    workspace: Optional[PathLike],
    *,
    cwd: Optional[PathLike] = None,
) -> PipelineRun:
    """Check preconditions and lay out the steps for ``action``.

    Relative paths are taken from ``cwd`` (default: the process cwd).
    Output directories are ``<workspace>/out/<basename>/``. The one-shot
    ``run`` action feeds the compiler's ``.asm`` into a linked assemble and
    flashes the resulting ``serial.txt``.
    """
    action = BuildAction.parse(action)
    if not source:
        raise PreconditionError("no file is open; open a source file and try again")
    if action is not BuildAction.FLASH and not workspace:
        raise PreconditionError("no workspace is open; open a workspace and try again")

    root = cwd if cwd is not None else os.getcwd()
    src = absolute_path(source, root)
    base = posixpath.basename(src)
    ws = absolute_path(workspace, root).rstrip("/") if workspace else ""

    if action is BuildAction.COMPILE:
        steps = [PipelineStep(ToolKind.COMPILER, src, _out_dir(ws, base))]
    elif action is BuildAction.ASSEMBLE:
        steps = [PipelineStep(ToolKind.ASSEMBLER, src, _out_dir(ws, base))]
    elif action is BuildAction.ASSEMBLE_AND_LINK:
        steps = [PipelineStep(ToolKind.ASSEMBLER, src, _out_dir(ws, base), link=True)]
    elif action is BuildAction.FLASH:
        steps = [PipelineStep(ToolKind.PROGRAMMER, src)]
    else:
        stem = posixpath.splitext(base)[0]
        compiler_out = _out_dir(ws, base)
        assembler_out = _out_dir(ws, f"{stem}.asm")
        steps = [
            PipelineStep(ToolKind.COMPILER, src, compiler_out),
            PipelineStep(ToolKind.ASSEMBLER, f"{compiler_out}{stem}.asm", assembler_out, link=True),
            PipelineStep(ToolKind.PROGRAMMER, f"{assembler_out}serial.txt"),
        ]
    return PipelineRun(action=action, steps=steps)


class PipelineOrchestrator:
    def __init__(
        self,
        adapter: ToolInvocationAdapter,
        *,
        bus: Optional[EventBus] = None,
        await_completion: bool = False,
        completion_timeout: Optional[float] = None,
    ) -> None:
        self.adapter = adapter
        self.bus = bus or adapter.session.bus
        self.await_completion = await_completion
        self.completion_timeout = completion_timeout

    async def _emit(self, event_type: EventType, run: PipelineRun, **extra: Any) -> None:
        await self.bus.publish(
            SessionEvent(
                type=event_type,
                session_id=self.adapter.session.record.id,
                data={**run.to_payload(), **extra},
            )
        )

    async def _prepare_step(self, step: PipelineStep) -> None:
        self.adapter.check_extension(step.tool, step.source)
        if step.output:
            await asyncio.to_thread(Path(step.output).mkdir, parents=True, exist_ok=True)

    async def run(
        self,
        action: Union[str, BuildAction],
        source: Optional[PathLike],
        workspace: Optional[PathLike] = None,
    ) -> PipelineRun:
        try:
            run = plan_run(action, source, workspace, cwd=self.adapter.session.record.cwd)
        except PreconditionError as exc:
            logger.warning("pipeline.precondition action={} error={}", action, exc)
            await self.bus.publish(
                SessionEvent(
                    type=EventType.PIPELINE_ABORTED,
                    session_id=self.adapter.session.record.id,
                    data={"action": str(getattr(action, "value", action)), "error": str(exc)},
                )
            )
            raise
        return await self.execute(run)

    async def execute(self, run: PipelineRun) -> PipelineRun:
        run.status = RunStatus.RUNNING
        logger.info("pipeline.start id={} action={} steps={}", run.id, run.action.value, len(run.steps))
        await self._emit(EventType.PIPELINE_STARTED, run)

        try:
            for step in run.steps:
                self.adapter.check_extension(step.tool, step.source)
            if any(step.tool is not ToolKind.PROGRAMMER for step in run.steps):
                await self.adapter.session.ensure_running()

            for index, step in enumerate(run.steps):
                await self._prepare_step(step)
                tracked = self.await_completion and step.tool is not ToolKind.PROGRAMMER
                if step.tool is ToolKind.PROGRAMMER:
                    invocation = await self.adapter.invoke(step.tool, step.source)
                else:
                    invocation = await self.adapter.invoke(
                        step.tool, step.source, step.output, link=step.link, track_completion=tracked
                    )
                run.invocations.append(invocation)
                await self._emit(EventType.PIPELINE_STEP, run, index=index, step=step.to_dict())

                if tracked and invocation.dispatch is not None and invocation.dispatch.tracked:
                    code = await invocation.dispatch.wait_completed(self.completion_timeout)
                    if code:
                        raise StepFailedError(step.tool.value, code)
        except (ToolchainShellError, asyncio.TimeoutError) as exc:
            run.status = RunStatus.FAILED if isinstance(exc, StepFailedError) else RunStatus.ABORTED
            run.error = str(exc) or type(exc).__name__
            logger.warning("pipeline.aborted id={} status={} error={}", run.id, run.status.value, run.error)
            await self._emit(EventType.PIPELINE_ABORTED, run)
            raise

        run.status = RunStatus.COMPLETED if self.await_completion else RunStatus.DISPATCHED
        logger.info("pipeline.finish id={} status={}", run.id, run.status.value)
        await self._emit(EventType.PIPELINE_FINISHED, run)
        return run

from __future__ import annotations

from pathlib import Path

import pytest

from toolchain_shell.buffer import LineBuffer
from toolchain_shell.errors import ExtensionMismatchError, PreconditionError, StepFailedError
from toolchain_shell.events import EventBus, EventType
from toolchain_shell.pipeline import BuildAction, PipelineOrchestrator, RunStatus, plan_run
from toolchain_shell.session import ShellSession
from toolchain_shell.toolchain import ToolInvocationAdapter, ToolKind


def _orchestrator(spawner, settings, launcher, *, await_completion: bool = False, cwd=None) -> PipelineOrchestrator:
    session = ShellSession(
        profile=settings.shell,
        sink=LineBuffer(),
        bus=EventBus(),
        readiness=settings.readiness,
        spawner=spawner,
        cwd=cwd,
    )
    adapter = ToolInvocationAdapter(session, settings=settings, launcher=launcher)
    return PipelineOrchestrator(adapter, await_completion=await_completion)


def _drain(q) -> list:
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


def test_plan_run_lays_out_one_shot_build() -> None:
    run = plan_run("run", "/ws/src/foo.c", "/ws")

    assert [(s.tool, s.source, s.output, s.link) for s in run.steps] == [
        (ToolKind.COMPILER, "/ws/src/foo.c", "/ws/out/foo.c/", False),
        (ToolKind.ASSEMBLER, "/ws/out/foo.c/foo.asm", "/ws/out/foo.asm/", True),
        (ToolKind.PROGRAMMER, "/ws/out/foo.asm/serial.txt", None, False),
    ]


def test_plan_run_single_actions() -> None:
    assert plan_run("compile", "C:\\ws\\main.c", "C:\\ws\\").steps[0].output == "C:/ws/out/main.c/"
    assert plan_run("assemble", "/ws/a.asm", "/ws").steps[0].link is False
    assert plan_run("assemble-and-link", "/ws/a.asm", "/ws").steps[0].link is True
    flash = plan_run(BuildAction.FLASH, "/elsewhere/serial.txt", None)
    assert flash.steps[0].tool is ToolKind.PROGRAMMER


def test_plan_run_resolves_relative_paths() -> None:
    run = plan_run("compile", "src/foo.c", "ws", cwd="/base")
    assert (run.steps[0].source, run.steps[0].output) == ("/base/src/foo.c", "/base/ws/out/foo.c/")

    flash = plan_run("flash", "out\\foo.asm\\serial.txt", None, cwd="/base")
    assert flash.steps[0].source == "/base/out/foo.asm/serial.txt"


def test_plan_run_preconditions() -> None:
    with pytest.raises(PreconditionError):
        plan_run("compile", None, "/ws")
    with pytest.raises(PreconditionError):
        plan_run("run", "/ws/foo.c", None)
    with pytest.raises(PreconditionError):
        plan_run("flash", "", None)
    with pytest.raises(ValueError):
        plan_run("deploy", "/ws/foo.c", "/ws")


def test_build_action_aliases() -> None:
    assert BuildAction.parse("assembly-and-link") is BuildAction.ASSEMBLE_AND_LINK
    assert BuildAction.parse("serial") is BuildAction.FLASH
    assert BuildAction.parse("magic_click") is BuildAction.RUN


@pytest.mark.asyncio
async def test_run_issues_steps_in_order(spawner, settings, tools, launcher, tmp_path: Path) -> None:
    orch = _orchestrator(spawner, settings, launcher)
    ws = tmp_path / "ws"
    source = ws / "src" / "foo.c"
    events = orch.bus.subscribe()

    run = await orch.run("run", source, ws)

    assert (ws / "out" / "foo.c").is_dir()
    assert (ws / "out" / "foo.asm").is_dir()
    assert len(spawner.processes) == 1
    assert spawner.last.stdin.lines == [
        f'node {tools["compiler"]} "{source}" -v -i -o "{ws}/out/foo.c/"',
        f'node {tools["assembler"]} "{ws}/out/foo.c/foo.asm" -o "{ws}/out/foo.asm/" -f coe -l --no-report',
    ]
    assert launcher.launched == [[str(tools["serialport"]), f"{ws}/out/foo.asm/serial.txt"]]
    assert run.status is RunStatus.DISPATCHED
    assert len(run.invocations) == 3

    types = [e.type for e in _drain(events)]
    assert types[0] is EventType.PIPELINE_STARTED
    assert types.count(EventType.PIPELINE_STEP) == 3
    assert types[-1] is EventType.PIPELINE_FINISHED
    await orch.adapter.session.close()


@pytest.mark.asyncio
async def test_relative_inputs_use_session_cwd(spawner, settings, tools, launcher, tmp_path: Path) -> None:
    orch = _orchestrator(spawner, settings, launcher, cwd=str(tmp_path))
    root = tmp_path.resolve()

    run = await orch.run("compile", "main.c", ".")

    assert (root / "out" / "main.c").is_dir()
    assert run.invocations[0].source == f"{root.as_posix()}/main.c"
    assert run.invocations[0].output == f"{root.as_posix()}/out/main.c/"
    await orch.adapter.session.close()


@pytest.mark.asyncio
async def test_output_directory_creation_is_idempotent(spawner, settings, launcher, tmp_path: Path) -> None:
    orch = _orchestrator(spawner, settings, launcher)
    (tmp_path / "out" / "foo.c").mkdir(parents=True)

    await orch.run("compile", tmp_path / "foo.c", tmp_path)
    await orch.run("compile", tmp_path / "foo.c", tmp_path)

    assert len(spawner.last.stdin.lines) == 2
    await orch.adapter.session.close()


@pytest.mark.asyncio
async def test_precondition_failure_dispatches_nothing(spawner, settings, launcher) -> None:
    orch = _orchestrator(spawner, settings, launcher)
    events = orch.bus.subscribe()

    with pytest.raises(PreconditionError):
        await orch.run("compile", "/ws/foo.c", None)

    assert spawner.processes == []
    assert [e.type for e in _drain(events)] == [EventType.PIPELINE_ABORTED]


@pytest.mark.asyncio
async def test_wrong_extension_aborts_before_starting_shell(spawner, settings, launcher, tmp_path: Path) -> None:
    orch = _orchestrator(spawner, settings, launcher)

    with pytest.raises(ExtensionMismatchError):
        await orch.run("compile", tmp_path / "foo.asm", tmp_path)

    assert spawner.processes == []
    assert not (tmp_path / "out").exists()


@pytest.mark.asyncio
async def test_flash_needs_no_workspace_or_shell(spawner, settings, tools, launcher) -> None:
    orch = _orchestrator(spawner, settings, launcher)

    run = await orch.run("flash", "/ws/out/foo.asm/serial.txt")

    assert spawner.processes == []
    assert launcher.launched == [[str(tools["serialport"]), "/ws/out/foo.asm/serial.txt"]]
    assert run.status is RunStatus.DISPATCHED


@pytest.mark.asyncio
async def test_await_completion_stops_after_failing_step(spawner, settings, launcher, tmp_path: Path) -> None:
    orch = _orchestrator(spawner, settings, launcher, await_completion=True)
    await orch.adapter.session.start()
    spawner.last.statuses["-v -i"] = 1

    with pytest.raises(StepFailedError) as excinfo:
        await orch.run("run", tmp_path / "foo.c", tmp_path)

    assert excinfo.value.tool == "compiler"
    assert excinfo.value.exit_code == 1
    assert len(spawner.last.stdin.lines) == 1
    assert launcher.launched == []
    await orch.adapter.session.close()


@pytest.mark.asyncio
async def test_await_completion_success(spawner, settings, launcher, tmp_path: Path) -> None:
    orch = _orchestrator(spawner, settings, launcher, await_completion=True)

    run = await orch.run("run", tmp_path / "foo.c", tmp_path)

    assert run.status is RunStatus.COMPLETED
    assert all("__TCS_DONE__" in line for line in spawner.last.stdin.lines)
    assert len(launcher.launched) == 1
    await orch.adapter.session.close()

import argparse
import asyncio
import dataclasses
import functools
import signal
import sys
from typing import Optional, Set

import yaml
from loguru import logger

from ..context import WindowContext
from ..errors import ToolchainShellError
from ..logging_utils import configure_logging
from ..pipeline import BuildAction
from ..settings import load_settings, resolve_settings_path
from ..store import RuntimeStore


def _build_context(args, *, await_completion: bool = False) -> WindowContext:
    settings = load_settings(args.settings, required=False)
    return WindowContext(
        settings=settings,
        cwd=args.cwd,
        store=RuntimeStore() if getattr(args, "transcripts", False) else None,
        await_completion=await_completion,
    )


async def _pump_output(window: WindowContext) -> None:
    q = window.subscribe_output()
    try:
        while True:
            text, source = await q.get()
            stream = sys.stderr if source == "stderr" else sys.stdout
            stream.write(text)
            stream.flush()
    finally:
        window.unsubscribe_output(q)


def _interrupt_done(tasks: Set[asyncio.Task], task: asyncio.Task) -> None:
    tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.opt(exception=task.exception()).warning("cli.interrupt_failed")


def _schedule_interrupt(window: WindowContext, tasks: Set[asyncio.Task]) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(window.session.interrupt())
    tasks.add(task)
    task.add_done_callback(functools.partial(_interrupt_done, tasks))
    return task


def _install_interrupt(window: WindowContext, tasks: Set[asyncio.Task]) -> bool:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _schedule_interrupt, window, tasks)
    except (NotImplementedError, RuntimeError):
        return False
    return True


async def run_shell(args) -> int:
    window = _build_context(args)
    pump = asyncio.create_task(_pump_output(window))
    interrupts: Set[asyncio.Task] = set()
    handled = _install_interrupt(window, interrupts)
    try:
        await window.start_session()
        print(window.buffer.text, end="", flush=True)
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            command = line.rstrip("\r\n")
            if not window.is_running():
                # Enter on a stopped session restarts it
                await window.start_session()
                continue
            await window.dispatch(command)
            if command.strip():
                window.history.push(command.strip())
    finally:
        if handled:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        await window.close()
        pump.cancel()
    return 0


async def run_build(args) -> int:
    window = _build_context(args, await_completion=not args.no_wait)
    pump = asyncio.create_task(_pump_output(window))
    try:
        run = await window.run_action(args.action, source=args.source, workspace=args.workspace)
        for inv in run.invocations:
            print(f"[{inv.tool.value}] {inv.command}", file=sys.stderr)
        if args.no_wait:
            await asyncio.sleep(args.linger)
        print(f"{run.action.value}: {run.status.value}", file=sys.stderr)
        return 0
    except (ToolchainShellError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await window.close()
        pump.cancel()


def show_config(args) -> int:
    path = resolve_settings_path(args.settings)
    try:
        settings = load_settings(args.settings, required=False)
    except ToolchainShellError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"# settings file: {path}{'' if path.exists() else ' (not found, defaults)'}")
    print(yaml.safe_dump(dataclasses.asdict(settings), sort_keys=False), end="")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolchain-shell", description="Interactive shell and build pipeline runner")
    parser.add_argument("--settings", default=None, help="Settings file (YAML or JSON)")
    parser.add_argument("--log-level", default=None, help="Log level (default: TOOLCHAIN_SHELL_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    shell_parser = subparsers.add_parser("shell", help="Run an interactive shell session")
    shell_parser.add_argument("--cwd", default=None, help="Working directory")
    shell_parser.add_argument("--transcripts", action="store_true", help="Record stdout/stderr transcripts")

    build_parser_ = subparsers.add_parser("build", help="Run a build action on a source file")
    build_parser_.add_argument("action", choices=[a.value for a in BuildAction], help="Build action")
    build_parser_.add_argument("source", help="Source file (.c, .asm or .txt)")
    build_parser_.add_argument("--workspace", default=".", help="Workspace directory (default: .)")
    build_parser_.add_argument("--cwd", default=None, help="Working directory of the shell")
    build_parser_.add_argument("--no-wait", action="store_true", help="Do not wait for each tool to finish")
    build_parser_.add_argument("--linger", type=float, default=2.0, help="Seconds to keep the shell alive with --no-wait")
    build_parser_.add_argument("--transcripts", action="store_true", help="Record stdout/stderr transcripts")

    subparsers.add_parser("config", help="Show the resolved toolchain settings")
    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(args.log_level)

    if args.command == "config":
        return show_config(args)

    try:
        if args.command == "shell":
            return asyncio.run(run_shell(args))
        return asyncio.run(run_build(args))
    except KeyboardInterrupt:
        return 130
    except ToolchainShellError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Toolchain Shell - interactive shell sessions and build pipelines for a source editor."""

from .buffer import BufferChange, LineBuffer
from .console import ShellConsole
from .context import WindowContext
from .errors import (
    ConfigurationError,
    DispatchOnStoppedSessionError,
    ExtensionMismatchError,
    PreconditionError,
    ProcessExitedError,
    ProcessSpawnError,
    StepFailedError,
    ToolchainShellError,
)
from .events import EventBus, EventType, SessionEvent
from .history import CommandHistory
from .hooks import SessionLifecycleHooks
from .pipeline import BuildAction, PipelineOrchestrator, PipelineRun, PipelineStep, plan_run
from .record import SessionRecord, SessionState
from .session import Dispatch, DispatchStatus, ShellSession
from .settings import ReadinessPolicy, ShellProfile, ToolchainSettings, load_settings
from .store import RuntimeStore
from .toolchain import Invocation, ToolInvocationAdapter, ToolKind

__all__ = [
    "BufferChange",
    "LineBuffer",
    "ShellConsole",
    "WindowContext",
    "ToolchainShellError",
    "ConfigurationError",
    "ProcessSpawnError",
    "ExtensionMismatchError",
    "DispatchOnStoppedSessionError",
    "ProcessExitedError",
    "PreconditionError",
    "StepFailedError",
    "EventBus",
    "EventType",
    "SessionEvent",
    "CommandHistory",
    "SessionLifecycleHooks",
    "BuildAction",
    "PipelineOrchestrator",
    "PipelineRun",
    "PipelineStep",
    "plan_run",
    "SessionRecord",
    "SessionState",
    "Dispatch",
    "DispatchStatus",
    "ShellSession",
    "ReadinessPolicy",
    "ShellProfile",
    "ToolchainSettings",
    "load_settings",
    "RuntimeStore",
    "Invocation",
    "ToolInvocationAdapter",
    "ToolKind",
]

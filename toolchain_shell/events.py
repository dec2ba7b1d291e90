from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set
from asyncio import Queue as AsyncQueue
import time

class EventType(Enum):
    SESSION_STARTING = "session.starting"
    SESSION_RUNNING = "session.running"
    SESSION_READY = "session.ready"
    SESSION_INTERRUPTED = "session.interrupted"
    SESSION_EXITED = "session.exited"
    SESSION_ERROR = "session.error"
    OUTPUT_CHUNK = "session.output"
    COMMAND_DISPATCHED = "session.dispatched"
    TOOL_DISPATCHED = "toolchain.dispatched"
    TOOL_LAUNCHED = "toolchain.launched"
    TOOL_ERROR = "toolchain.error"
    PIPELINE_STARTED = "pipeline.started"
    PIPELINE_STEP = "pipeline.step"
    PIPELINE_FINISHED = "pipeline.finished"
    PIPELINE_ABORTED = "pipeline.aborted"

@dataclass
class SessionEvent:
    type: EventType
    session_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

class EventBus:
    """In-process event bus with subscription support.
    
    One bus belongs to one window context; nothing here is process-global.
    Subscribers get an unbounded queue and must drain it.
    """
    
    def __init__(self):
        self._subscribers: Set[AsyncQueue[SessionEvent]] = set()
    
    def subscribe(self) -> AsyncQueue[SessionEvent]:
        q: AsyncQueue[SessionEvent] = AsyncQueue()
        self._subscribers.add(q)
        return q
    
    def unsubscribe(self, q: AsyncQueue[SessionEvent]) -> None:
        self._subscribers.discard(q)
    
    async def publish(self, event: SessionEvent) -> None:
        for q in list(self._subscribers):
            try:
                await q.put(event)
            except Exception:
                self._subscribers.discard(q)

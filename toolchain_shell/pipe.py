from dataclasses import dataclass, field
import asyncio
from typing import Any, Dict, List, Optional

from .markers import MarkerFilter


@dataclass
class PipeState:
    """State for the shell process behind a session (live stdin/stdout/stderr pipes)."""
    process: Any
    generation: int
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    readers: List[asyncio.Task] = field(default_factory=list)
    watcher: Optional[asyncio.Task] = None
    filters: Dict[str, MarkerFilter] = field(default_factory=dict)
    # token -> future resolved by a READY/DONE marker
    pending: Dict[str, asyncio.Future] = field(default_factory=dict)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def filter_for(self, source: str) -> MarkerFilter:
        flt = self.filters.get(source)
        if flt is None:
            flt = self.filters[source] = MarkerFilter()
        return flt

from __future__ import annotations

from typing import List, Optional


class CommandHistory:
    """Submitted commands plus an up/down recall cursor.

    ``cursor == len(entries)`` means "not recalling"; that slot shows the
    draft the user was typing when recall started.
    """

    def __init__(self, max_entries: Optional[int] = None) -> None:
        self._entries: List[str] = []
        self.cursor = 0
        self.draft = ""
        self.max_entries = max_entries

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, command: str) -> None:
        self._entries.append(command)
        if self.max_entries is not None and len(self._entries) > self.max_entries:
            del self._entries[: len(self._entries) - self.max_entries]
        self.cursor = len(self._entries)
        self.draft = ""

    def recall_up(self, current: str = "") -> Optional[str]:
        if not self._entries:
            return None
        if self.cursor >= len(self._entries):
            self.draft = current
        self.cursor = max(0, min(self.cursor, len(self._entries)) - 1)
        return self._entries[self.cursor]

    def recall_down(self) -> Optional[str]:
        if not self._entries:
            return None
        if self.cursor < len(self._entries) - 1:
            self.cursor += 1
            return self._entries[self.cursor]
        self.cursor = len(self._entries)
        return self.draft

    def clear(self) -> None:
        self._entries.clear()
        self.cursor = 0
        self.draft = ""

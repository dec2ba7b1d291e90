from __future__ import annotations

from typing import Optional

from loguru import logger

from .buffer import LineBuffer
from .history import CommandHistory
from .session import Dispatch, ShellSession


class ShellConsole:
    """Maps rendering-surface input actions onto the buffer, history and session."""

    def __init__(self, buffer: LineBuffer, history: CommandHistory, session: ShellSession) -> None:
        self.buffer = buffer
        self.history = history
        self.session = session

    async def handle_key(self, key: str, *, ctrl: bool = False) -> bool:
        """Apply one key action. Returns False when the action was rejected."""
        if ctrl and key.lower() == "c":
            return await self.session.interrupt()
        if key == "Enter":
            if not self.session.is_running():
                await self.session.start()
                return True
            await self.submit()
            return True
        if key == "ArrowUp":
            return self.recall_up()
        if key == "ArrowDown":
            return self.recall_down()

        actions = {
            "ArrowLeft": self.buffer.move_left,
            "ArrowRight": self.buffer.move_right,
            "Home": self.buffer.move_home,
            "End": self.buffer.move_end,
            "Backspace": self.buffer.backspace,
            "Delete": self.buffer.delete_forward,
        }
        action = actions.get(key)
        if action is None:
            logger.debug("console.key.unhandled key={}", key)
            return False
        return action()

    def type_text(self, text: str) -> bool:
        return self.buffer.insert(text)

    def paste(self, text: str) -> bool:
        return self.buffer.insert_plain_text(text)

    def drop(self, text: str) -> bool:
        return self.buffer.insert_plain_text(text)

    def recall_up(self) -> bool:
        if not self.buffer.at_prompt:
            return False
        entry = self.history.recall_up(self.buffer.current_input)
        if entry is None:
            return False
        return self.buffer.replace_input(entry)

    def recall_down(self) -> bool:
        if not self.buffer.at_prompt:
            return False
        entry = self.history.recall_down()
        if entry is None:
            return False
        return self.buffer.replace_input(entry)

    async def submit(self) -> Optional[Dispatch]:
        """Send the current input line to the shell.

        Non-empty commands are recorded in history once written; an empty
        line is still sent so the shell sees a bare newline.
        """
        command = self.buffer.submission()
        dispatch = await self.session.dispatch(command)
        if command:
            self.history.push(command)
        return dispatch

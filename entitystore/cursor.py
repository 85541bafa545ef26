"""
A scan cursor which keeps "not started yet" and "finished" apart. Redis uses the cursor value ``0`` both to start a
``SCAN`` and to signal that it has finished, so the bare integer can't tell the two states apart.
"""
import typing as t
from enum import Enum


class CursorState(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class ScanCursor(t.NamedTuple):
    state: CursorState
    token: int = 0

    @classmethod
    def start(cls) -> "ScanCursor":
        return cls(CursorState.NOT_STARTED)

    @property
    def done(self) -> bool:
        return self.state is CursorState.DONE

    @property
    def request_token(self) -> int:
        """The cursor value to send with the next ``SCAN`` call."""
        if self.state is CursorState.DONE:
            raise ValueError("scan is already done")
        return self.token

    def advance(self, reply_token: t.Union[int, str, bytes]) -> "ScanCursor":
        """Returns the cursor that follows a ``SCAN`` reply carrying ``reply_token``."""
        if self.state is CursorState.DONE:
            raise ValueError("scan is already done")
        reply_token = int(reply_token)
        if reply_token == 0:
            return ScanCursor(CursorState.DONE)
        return ScanCursor(CursorState.IN_PROGRESS, reply_token)

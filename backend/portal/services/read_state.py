"""
Per-recipient read state: either ``Unread`` or ``Read(at)``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Unread:
    is_read = False
    read_at = None


@dataclass(frozen=True)
class Read:
    at: datetime

    is_read = True

    @property
    def read_at(self) -> datetime:
        return self.at


ReadState = Unread | Read

UNREAD = Unread()


def read_state_from(read_at: datetime | None) -> ReadState:
    """Maps an optional receipt timestamp to the tagged read state."""
    return UNREAD if read_at is None else Read(at=read_at)

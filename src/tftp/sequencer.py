from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .constants import MAX_BLOCK


def next_block(block: int) -> int:
    """65535 wraps to 0, which is a regular data block; 1 follows it."""
    return (block + 1) & MAX_BLOCK


@dataclass(slots=True)
class BlockSequencer:
    """Block number a session is currently sending or expecting.

    ``previous`` is the last block that completed (acknowledged by us as a
    receiver, or acknowledged to us as a sender). It is what a duplicate
    looks like, so it is never mistaken for an out-of-order block.
    """

    current: int = 1
    previous: Optional[int] = None

    def advance(self) -> int:
        self.previous = self.current
        self.current = next_block(self.current)
        return self.current

    def is_current(self, block: int) -> bool:
        return block == self.current

    def is_duplicate(self, block: int) -> bool:
        return self.previous is not None and block == self.previous

"""
Position tracking port used by the config-driven exit path.
"""

from __future__ import annotations

from typing import Protocol


class PositionRemovalPort(Protocol):
    async def remove(self, symbol: str) -> bool:
        """Stop tracking the position of `symbol`. Returns False when nothing was tracked."""
        ...

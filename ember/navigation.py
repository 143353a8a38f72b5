"""
Navigation history for drilling into series, seasons and folders.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from logging_config import get_logger

logger = get_logger('navigation')


@dataclass(frozen=True)
class ViewSource:
    """Which catalog query produced a view, so it can be reloaded or paged."""
    kind: str
    parent_id: str = ""
    series_id: str = ""
    query: str = ""

    @property
    def paginated(self) -> bool:
        return self.kind == "children"


@dataclass
class NavState:
    """Snapshot of one browsing context. Items are held by id."""
    section: object
    item_ids: Tuple[str, ...] = field(default_factory=tuple)
    cursor: int = 0
    title: str = ""
    source: Optional[ViewSource] = None
    page: int = 0
    total: int = 0


class NavigationStack:
    """Plain LIFO of NavState snapshots with no depth limit."""

    def __init__(self):
        self._stack: List[NavState] = []

    def __len__(self) -> int:
        return len(self._stack)

    def __bool__(self) -> bool:
        return bool(self._stack)

    def __iter__(self):
        return iter(self._stack)

    def push(self, snapshot: NavState) -> None:
        self._stack.append(snapshot)
        logger.debug(f"Pushed {snapshot.title!r}, depth {len(self._stack)}")

    def pop(self) -> Optional[NavState]:
        if not self._stack:
            return None
        return self._stack.pop()

    def peek(self) -> Optional[NavState]:
        return self._stack[-1] if self._stack else None

    def clear(self) -> None:
        self._stack.clear()

"""
Caches that keep browsing fast.

All of them are owned by the session and only touched from the UI loop,
so none of them lock.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from logging_config import get_logger, StorageError
from .models import MediaDetail, MediaItem

logger = get_logger('cache')


class ItemArena:
    """Every item the session knows about, stored once by id.

    Views, section lists and navigation snapshots refer to items by id, so
    a mutation applied here is seen everywhere the item is listed.
    """

    def __init__(self):
        self._items: Dict[str, MediaItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items

    def put(self, item: MediaItem) -> str:
        self._items[item.id] = item
        return item.id

    def put_all(self, items: Iterable[MediaItem]) -> Tuple[str, ...]:
        return tuple(self.put(item) for item in items)

    def get(self, item_id: str) -> Optional[MediaItem]:
        return self._items.get(item_id)

    def resolve(self, ids: Iterable[str]) -> List[MediaItem]:
        return [self._items[i] for i in ids if i in self._items]

    def apply(self, item_id: str, mutate: Callable[[MediaItem], None]) -> bool:
        """Run ``mutate`` on the stored item. Returns False if it is unknown."""
        item = self._items.get(item_id)
        if item is None:
            return False
        mutate(item)
        return True

    def retain(self, keep: Iterable[str]) -> None:
        keep = set(keep)
        for item_id in [i for i in self._items if i not in keep]:
            del self._items[item_id]

    def clear(self) -> None:
        self._items.clear()


@dataclass
class SectionEntry:
    ids: Tuple[str, ...]
    cursor: int = 0


class SectionCache:
    """Root list of each top-level section plus the cursor left there."""

    def __init__(self):
        self._entries: Dict[Hashable, SectionEntry] = {}

    def __contains__(self, section) -> bool:
        return section in self._entries

    def get(self, section) -> Optional[SectionEntry]:
        return self._entries.get(section)

    def store(self, section, ids: Iterable[str]) -> None:
        self._entries[section] = SectionEntry(tuple(ids), 0)

    def save_cursor(self, section, cursor: int) -> None:
        entry = self._entries.get(section)
        if entry is not None:
            entry.cursor = max(0, min(cursor, len(entry.ids) - 1)) if entry.ids else 0

    def evict(self, section) -> None:
        self._entries.pop(section, None)

    def clear(self) -> None:
        self._entries.clear()

    def sections(self) -> List:
        return list(self._entries)


class DetailCache:
    """Stream and subtitle details, in memory and backed by the store."""

    def __init__(self, store=None):
        self.store = store
        self._details: Dict[str, MediaDetail] = {}

    def __contains__(self, item_id: str) -> bool:
        return self.get(item_id) is not None

    def get(self, item_id: str) -> Optional[MediaDetail]:
        detail = self._details.get(item_id)
        if detail is None and self.store is not None:
            detail = self.store.get_media_detail(item_id)
            if detail is not None:
                self._details[item_id] = detail
        return detail

    def put(self, detail: MediaDetail) -> None:
        self._details[detail.item_id] = detail
        if self.store is not None:
            try:
                self.store.set_media_detail(detail)
            except StorageError as e:
                logger.warning(f"Detail for {detail.item_id} kept in memory only: {e}")

    def clear(self) -> None:
        self._details.clear()


class CoverCache:
    """Rendered cover art keyed by image path, valid for one geometry.

    An empty string marks a cover that failed to render.
    """

    def __init__(self, width: int = 0, height: int = 0):
        self.width = width
        self.height = height
        self._covers: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._covers)

    def __contains__(self, key: str) -> bool:
        return key in self._covers

    @property
    def geometry(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def get(self, key: str) -> Optional[str]:
        return self._covers.get(key)

    def put(self, key: str, rendered: str, geometry: Tuple[int, int]) -> bool:
        """Store a render made for ``geometry``; stale geometries are dropped."""
        if geometry != self.geometry:
            logger.debug(f"Discarding cover for {key} rendered at {geometry}")
            return False
        self._covers[key] = rendered
        return True

    def resize(self, width: int, height: int) -> None:
        self.width = width
        self.height = height
        self._covers.clear()

    def clear(self) -> None:
        self._covers.clear()

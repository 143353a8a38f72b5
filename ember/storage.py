"""
Durable storage for server profiles and per-server cached data.

``servers.json`` holds the profile list and the active index. Cached
media details and playback positions live in ``data_<prefix>.json``,
shared by every profile whose name starts with the same word.
"""
import json
import os
import re
from pathlib import Path
from typing import Optional, List, Dict, Any

from logging_config import get_logger, StorageError
from .models import MediaDetail, PlaybackRecord, ServerProfile, now_iso

logger = get_logger('storage')


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: top level is not an object")
        return {}
    return data


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, 'w') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    except OSError as e:
        logger.error(f"Failed to write {path}: {e}")
        raise StorageError(f"Cannot write {path.name}: {e}") from e


class Store:
    """Servers file plus the data file of the active server's prefix."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.servers_path = self.directory / "servers.json"
        self._servers: List[ServerProfile] = []
        self._active = 0
        self.data_path: Optional[Path] = None
        self._details: Dict[str, Dict[str, Any]] = {}
        self._items: Dict[str, Any] = {}
        self._load_servers()
        self._load_data()

    # -- server profiles ---------------------------------------------------

    def _load_servers(self) -> None:
        data = _read_json(self.servers_path)
        self._servers = [ServerProfile.from_dict(s) for s in data.get("servers") or []
                         if isinstance(s, dict)]
        self._active = int(data.get("active_server") or 0)
        logger.debug(f"Loaded {len(self._servers)} server profiles")

    def _save_servers(self) -> None:
        _write_json(self.servers_path, {
            "servers": [s.to_dict() for s in self._servers],
            "active_server": self._active,
        })

    def _valid_index(self, idx: int) -> bool:
        return 0 <= idx < len(self._servers)

    def servers(self) -> List[ServerProfile]:
        return list(self._servers)

    def server(self, idx: int) -> Optional[ServerProfile]:
        return self._servers[idx] if self._valid_index(idx) else None

    @property
    def active_index(self) -> int:
        if not self._valid_index(self._active):
            self._active = 0
        return self._active

    def active_server(self) -> Optional[ServerProfile]:
        if not self._servers:
            return None
        return self._servers[self.active_index]

    def add_server(self, profile: ServerProfile) -> int:
        self._servers.append(profile)
        self._save_servers()
        logger.info(f"Added server profile {profile.name!r}")
        return len(self._servers) - 1

    def update_server(self, idx: int, profile: ServerProfile) -> None:
        if not self._valid_index(idx):
            return
        reload = idx == self.active_index and profile.prefix != self._servers[idx].prefix
        self._servers[idx] = profile
        self._save_servers()
        if reload:
            self._load_data()

    def delete_server(self, idx: int) -> None:
        if not self._valid_index(idx):
            return
        removed = self._servers.pop(idx)
        if idx < self._active:
            self._active -= 1
        self._active = max(0, min(self._active, len(self._servers) - 1))
        self._save_servers()
        self._load_data()
        logger.info(f"Deleted server profile {removed.name!r}")

    def set_active(self, idx: int) -> None:
        if not self._valid_index(idx):
            return
        self._active = idx
        self._save_servers()
        self._load_data()

    def save_server_token(self, idx: int, user_id: str, token: str) -> None:
        """Store credentials on every profile sharing the prefix of ``idx``."""
        if not self._valid_index(idx):
            return
        prefix = self._servers[idx].prefix
        for profile in self._servers:
            if profile.prefix == prefix:
                profile.user_id = user_id
                profile.token = token
        self._save_servers()

    # -- per-prefix cached data --------------------------------------------

    def data_path_for(self, prefix: str) -> Path:
        safe = re.sub(r"[^\w.-]", "_", prefix) or "default"
        return self.directory / f"data_{safe}.json"

    def _load_data(self) -> None:
        active = self.active_server()
        if active is None:
            self.data_path = None
            self._details = {}
            self._items = {}
            return
        self.data_path = self.data_path_for(active.prefix)
        data = _read_json(self.data_path)
        self._details = dict(data.get("media_details") or {})
        self._items = dict(data.get("items") or {})
        logger.debug(f"Loaded {len(self._details)} cached details from {self.data_path}")

    def _save_data(self) -> None:
        if self.data_path is None:
            return
        _write_json(self.data_path, {"items": self._items, "media_details": self._details})

    def get_media_detail(self, item_id: str) -> Optional[MediaDetail]:
        entry = self._details.get(item_id)
        if not entry or not entry.get("source_id"):
            return None
        return MediaDetail.from_dict(entry)

    def set_media_detail(self, detail: MediaDetail) -> None:
        entry = self._details.get(detail.item_id, {})
        entry.update(detail.to_dict())
        entry["cached_at"] = now_iso()
        self._details[detail.item_id] = entry
        self._save_data()

    def get_playback(self, item_id: str) -> Optional[PlaybackRecord]:
        entry = self._details.get(item_id)
        if not entry or "position_sec" not in entry:
            return None
        return PlaybackRecord(
            position_sec=int(entry.get("position_sec") or 0),
            duration_sec=int(entry.get("duration_sec") or 0),
            updated_at=entry.get("updated_at", ""),
        )

    def get_playback_position(self, item_id: str) -> int:
        record = self.get_playback(item_id)
        return record.position_sec if record else 0

    def update_playback_position(self, item_id: str, position_sec: int, duration_sec: int) -> None:
        entry = self._details.setdefault(item_id, {"item_id": item_id})
        entry["position_sec"] = int(position_sec)
        entry["duration_sec"] = int(duration_sec)
        entry["updated_at"] = now_iso()
        self._save_data()

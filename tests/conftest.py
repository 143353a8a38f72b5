import copy
import sys
from pathlib import Path
from typing import Dict, List

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from logging_config import CatalogError, PlayerError, PlayerNotFoundError
from ember.config import AppConfig
from ember.models import ItemType, MediaItem, MediaSource, MediaStream, ServerProfile, UserData
from ember.player import PlayResult
from ember.session import Session
from ember.storage import Store


def make_item(item_id: str, item_type: ItemType = ItemType.MOVIE, name: str = "", **kwargs) -> MediaItem:
    """Build a catalog item; playable types get one media source."""
    sources = kwargs.pop("media_sources", None)
    if sources is None and item_type in (ItemType.MOVIE, ItemType.EPISODE, ItemType.VIDEO):
        sources = [MediaSource(f"src-{item_id}", "mkv", [
            MediaStream(type="Subtitle", index=3, language="eng", is_external=True, codec="srt"),
        ])]
    favorite = kwargs.pop("favorite", False)
    position = kwargs.pop("position_ticks", 0)
    return MediaItem(
        id=item_id,
        name=name or item_id,
        type=item_type,
        media_sources=sources or [],
        user_data=UserData(is_favorite=favorite, playback_position_ticks=position),
        primary_image_tag="tag",
        **kwargs,
    )


class FakeCatalog:
    """In-memory server shared by every FakeClient a test creates."""

    def __init__(self):
        self.items: Dict[str, MediaItem] = {}
        self.resume: List[str] = []
        self.libraries: List[str] = []
        self.children: Dict[str, List[str]] = {}
        self.seasons: Dict[str, List[str]] = {}
        self.episodes: Dict[str, List[str]] = {}
        self.fail = set()
        self.calls: List[tuple] = []
        self.valid_token = "tok"
        self.reports: List[tuple] = []

    def add(self, *items: MediaItem) -> None:
        for item in items:
            self.items[item.id] = item

    def copies(self, ids) -> List[MediaItem]:
        return [copy.deepcopy(self.items[i]) for i in ids]


class FakeClient:
    def __init__(self, catalog: FakeCatalog, server: str, user_id: str = "", token: str = "",
                 timeout: float = 15.0):
        self.catalog = catalog
        self.server = server
        self.user_id = user_id
        self.token = token
        self.timeout = timeout

    def _call(self, name, *args):
        self.catalog.calls.append((name,) + args)
        if name in self.catalog.fail:
            raise CatalogError(f"{name} failed")

    def verify_token(self):
        self.catalog.calls.append(("verify_token",))
        return self.token == self.catalog.valid_token

    def login(self, username, password):
        self._call("login", username)
        self.user_id, self.token = "user-1", self.catalog.valid_token
        return self.user_id, self.token

    def ping(self):
        self._call("ping")
        return 0.02

    def get_resume(self, limit):
        self._call("get_resume", limit)
        return self.catalog.copies(self.catalog.resume)

    def get_favorites(self, limit):
        self._call("get_favorites", limit)
        ids = [i for i, item in self.catalog.items.items() if item.user_data.is_favorite]
        return self.catalog.copies(ids)

    def get_libraries(self):
        self._call("get_libraries")
        return self.catalog.copies(self.catalog.libraries)

    def search(self, query, limit):
        self._call("search", query)
        ids = [i for i, item in self.catalog.items.items() if query.lower() in item.name.lower()]
        return self.catalog.copies(ids)

    def get_items(self, parent_id, start, limit):
        self._call("get_items", parent_id, start)
        ids = self.catalog.children.get(parent_id, [])
        return self.catalog.copies(ids[start:start + limit]), len(ids)

    def get_seasons(self, series_id):
        self._call("get_seasons", series_id)
        return self.catalog.copies(self.catalog.seasons.get(series_id, []))

    def get_episodes(self, series_id, season_id):
        self._call("get_episodes", series_id, season_id)
        return self.catalog.copies(self.catalog.episodes.get(season_id, []))

    def get_item(self, item_id):
        self._call("get_item", item_id)
        if item_id not in self.catalog.items:
            raise CatalogError("not found", status=404)
        return copy.deepcopy(self.catalog.items[item_id])

    def set_favorite(self, item_id, favorite):
        self._call("set_favorite", item_id, favorite)
        self.catalog.items[item_id].user_data.is_favorite = favorite

    def report_playback_start(self, item_id, source_id, session_id, ticks):
        self._call("report_start", item_id)
        self.catalog.reports.append(("start", item_id, ticks))

    def report_playback_stopped(self, item_id, source_id, session_id, ticks):
        self._call("report_stopped", item_id)
        self.catalog.reports.append(("stopped", item_id, ticks))

    def stream_url(self, item_id, source_id, container):
        return f"{self.server}/stream/{item_id}.{container}"

    def subtitle_url(self, item_id, source_id, index):
        return f"{self.server}/subs/{item_id}/{index}.srt"

    def image_url(self, item, max_width):
        return f"{self.server}/img/{item.id}"

    def fetch_bytes(self, url, timeout):
        self._call("fetch_bytes", url)
        raise CatalogError("no image")


class FakePlayer:
    def __init__(self, available: bool = True, result: PlayResult = None):
        self.executable = "/usr/bin/mpv" if available else None
        self.result = result
        self.calls = []

    @property
    def available(self):
        return bool(self.executable)

    def play_multiple(self, urls, title, subtitle_urls=(), start_position=0, start_index=0):
        self.calls.append((list(urls), title, list(subtitle_urls), start_position, start_index))
        if not self.executable:
            raise PlayerNotFoundError("mpv not found")
        if not urls:
            raise PlayerError("Nothing to play")
        if self.result is not None:
            return self.result
        return PlayResult(position_sec=start_position, playlist_index=start_index)


def run_tasks(session, tasks, skip=()):
    """Run tasks and their follow-ups synchronously, in order.

    Tasks whose name starts with a prefix in ``skip`` are dropped.
    """
    queue = list(tasks)
    while queue:
        task = queue.pop(0)
        if any(task.name.startswith(prefix) for prefix in skip):
            continue
        queue.extend(session.handle_event(task.run()))


@pytest.fixture
def catalog():
    cat = FakeCatalog()
    cat.add(
        make_item("m1", ItemType.MOVIE, "Alien", year=1979),
        make_item("m2", ItemType.MOVIE, "Brazil", favorite=True),
        make_item("ser1", ItemType.SERIES, "Dark"),
        make_item("sea1", ItemType.SEASON, "Season 1", series_id="ser1", parent_id="ser1",
                  series_name="Dark"),
        make_item("ep1", ItemType.EPISODE, "Secrets", series_id="ser1", season_id="sea1",
                  series_name="Dark", season_name="Season 1", index_number=1, run_time_ticks=3000 * 10_000_000),
        make_item("ep2", ItemType.EPISODE, "Lies", series_id="ser1", season_id="sea1",
                  series_name="Dark", season_name="Season 1", index_number=2),
        make_item("ep3", ItemType.EPISODE, "Past and Present", series_id="ser1", season_id="sea1",
                  series_name="Dark", season_name="Season 1", index_number=3),
        make_item("lib1", ItemType.COLLECTION_FOLDER, "Movies"),
    )
    cat.resume = ["m1", "ep1", "ser1"]
    cat.libraries = ["lib1"]
    cat.children = {"lib1": ["m1", "m2"]}
    cat.seasons = {"ser1": ["sea1"]}
    cat.episodes = {"sea1": ["ep1", "ep2", "ep3"]}
    return cat


@pytest.fixture
def store(tmp_path):
    s = Store(tmp_path)
    s.add_server(ServerProfile("HomeNAS Main", "http://nas-a:8096", "alice", "pw"))
    s.add_server(ServerProfile("HomeNAS Backup", "http://nas-b:8096", "alice", "pw"))
    s.add_server(ServerProfile("Remote", "http://remote:8096", "bob", "pw"))
    return s


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def session(store, catalog, player):
    """A session connected to the first profile, showing the Resume list."""
    config = AppConfig(page_size=2)
    factory = lambda url, user_id="", token="", timeout=15.0: FakeClient(catalog, url, user_id, token, timeout)
    s = Session(store, config, player, client_factory=factory, ping=lambda profile: 0.01)
    run_tasks(s, s.resize(100, 30))
    run_tasks(s, s.start())
    return s

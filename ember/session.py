"""
The ember session: a state machine driven by keys and task completions.

Every handler runs on the UI loop and returns the Tasks it wants started.
Tasks capture what they need when created and never touch session state;
their results come back as events through ``handle_event``.
"""
import contextlib
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

import logging_config
from logging_config import get_logger, CatalogError, ConfigurationError, PlayerError, StorageError
from . import images
from .cache import CoverCache, DetailCache, ItemArena, SectionCache
from .client import CatalogClient, new_play_session_id
from .config import AppConfig
from .events import (
    CoverRendered, DetailLoaded, Event, FavoriteToggled, ItemsLoaded, LatencyMeasured,
    PlaybackFinished, PlaybackPlan, PlaybackReady, PlaybackReported, ProbeFinished,
    QueueEntry, ServerConnected, Task, TaskFailed,
)
from .models import ItemType, MediaDetail, MediaItem, seconds_to_ticks
from .navigation import NavigationStack, ViewSource
from .probe import UNREACHABLE, make_pinger, probe_group
from .state import SECTION_KEYS, PlaybackSummary, Section, ServerForm, State, TextInput, View

logger = get_logger('session')

ROOT_KINDS = {
    Section.RESUME: "resume",
    Section.FAVORITES: "favorites",
    Section.SEARCH: "search",
    Section.LIBRARIES: "libraries",
}

PLAY = "play"
OPEN_SEASONS = "seasons"
OPEN_EPISODES = "episodes"
OPEN_CHILDREN = "children"
UNSUPPORTED = "unsupported"

# What enter does for each item type
ITEM_ACTIONS: Dict[ItemType, str] = {
    ItemType.MOVIE: PLAY,
    ItemType.EPISODE: PLAY,
    ItemType.VIDEO: PLAY,
    ItemType.SERIES: OPEN_SEASONS,
    ItemType.SEASON: OPEN_EPISODES,
    ItemType.COLLECTION_FOLDER: OPEN_CHILDREN,
    ItemType.FOLDER: OPEN_CHILDREN,
    ItemType.BOX_SET: OPEN_CHILDREN,
    ItemType.UNKNOWN: UNSUPPORTED,
}

# Load modes: what a failed load does to the view
REPLACE = "replace"
DRILL = "drill"
RELOAD = "reload"


class Session:
    """Interactive session state for one terminal."""

    def __init__(self, store, config: Optional[AppConfig] = None, player=None,
                 client_factory: Callable[..., CatalogClient] = CatalogClient,
                 foreground: Optional[Callable] = None,
                 ping=None, default_url: str = ""):
        self.store = store
        self.config = config or AppConfig()
        self.player = player
        self.client_factory = client_factory
        self.foreground = foreground or contextlib.nullcontext
        self.ping = ping or make_pinger(self.config.http_timeout)
        self.default_url = default_url

        self.client: Optional[CatalogClient] = None
        self.state = State.LOADING
        self.view = View()
        self.arena = ItemArena()
        self.sections = SectionCache()
        self.details = DetailCache(store)
        self.covers = CoverCache()
        self.nav = NavigationStack()

        self.status = ""
        self.search = TextInput("Search")
        self.last_query = ""
        self.form: Optional[ServerForm] = None
        self.manage_cursor = 0
        self.data_prefix: Optional[str] = None

        self.latency: Optional[float] = None
        self.server_latencies: Dict[int, float] = {}
        self.probing = False
        self.playback = PlaybackSummary()
        self.player_active = False
        self.quit_requested = False
        self.debug_logging = self.config.debug_logging

        self.width = 80
        self.height = 24
        self.revision = 0

        self._token = 0
        self._epoch = 0
        self._view_token = 0
        self._load_mode = REPLACE
        self._pending_covers: Set[Tuple[str, Tuple[int, int]]] = set()
        self._pending_details: Set[str] = set()
        self._mutations: Dict[str, List[Tuple[int, Callable[[MediaItem], None]]]] = {}
        self._favorites_changed = -1
        self._pinging = False
        self._next_ping = 0.0

    # -- queries -----------------------------------------------------------

    @property
    def items(self) -> List[MediaItem]:
        return self.arena.resolve(self.view.item_ids)

    @property
    def current_item(self) -> Optional[MediaItem]:
        item_id = self.view.current_id
        return self.arena.get(item_id) if item_id else None

    @property
    def cover_size(self) -> Tuple[int, int]:
        content_width = self.width - self.config.sidebar_width
        return (max(0, content_width - 2), max(0, self.height - 4))

    @property
    def at_section_root(self) -> bool:
        return not self.nav and self.view.source is not None \
            and self.view.source.kind == ROOT_KINDS.get(self.view.section)

    def _touch(self) -> None:
        self.revision += 1

    # -- entry points ------------------------------------------------------

    def start(self) -> List[Task]:
        """Initial transition: connect to the active profile if there is one."""
        self._touch()
        if self.store.active_server() is None:
            self.state = State.SERVER_MANAGE
            self.status = "Add a server to begin"
            return []
        self.manage_cursor = self.store.active_index
        return self._connect(self.store.active_index)

    def resize(self, width: int, height: int) -> List[Task]:
        self._touch()
        self.width = width
        self.height = height
        self.covers.resize(*self.cover_size)
        return self._visible_tasks()

    def tick(self, now: Optional[float] = None) -> List[Task]:
        """Periodic work; currently the active server's latency ping."""
        now = time.monotonic() if now is None else now
        if self.client is None or self._pinging or now < self._next_ping:
            return []
        self._pinging = True
        self._next_ping = now + self.config.ping_interval
        client = self.client
        epoch = self._epoch

        def measure():
            try:
                return LatencyMeasured(client.ping(), epoch)
            except CatalogError as e:
                logger.debug(f"Ping failed: {e}")
                return LatencyMeasured(UNREACHABLE, epoch)
        return [Task("ping", measure)]

    def handle_key(self, key: str) -> List[Task]:
        self._touch()
        if key == "ctrl+c":
            self.quit_requested = True
            return []
        handler = {
            State.LOADING: self._key_loading,
            State.BROWSING: self._key_browsing,
            State.SEARCHING: self._key_searching,
            State.SERVER_MANAGE: self._key_server_manage,
            State.SERVER_EDIT: self._key_server_edit,
        }[self.state]
        return handler(key)

    def handle_event(self, event: Event) -> List[Task]:
        self._touch()
        handler = getattr(self, f"_on_{type(event).__name__}", None)
        if handler is None:
            logger.warning(f"Unhandled event {event!r}")
            return []
        return handler(event)

    # -- connection --------------------------------------------------------

    def _connect(self, index: int) -> List[Task]:
        profile = self.store.server(index)
        if profile is None:
            return []
        self.state = State.LOADING
        self.status = f"Connecting to {profile.name}..."
        factory = self.client_factory
        timeout = self.config.http_timeout

        def connect():
            client = factory(profile.url, profile.user_id, profile.token, timeout=timeout)
            try:
                if not client.verify_token():
                    client.login(profile.username, profile.password)
            except CatalogError as e:
                return ServerConnected(index, error=str(e))
            return ServerConnected(index, client.user_id, client.token)
        return [Task("connect", connect)]

    def _on_ServerConnected(self, event: ServerConnected) -> List[Task]:
        if event.error:
            self.status = f"Connect failed: {event.error}"
            self.state = State.SERVER_MANAGE
            return []
        try:
            self.store.set_active(event.index)
            self.store.save_server_token(event.index, event.user_id, event.token)
        except StorageError as e:
            self.status = f"Could not save server: {e}"
        profile = self.store.server(event.index)
        if profile is None:
            self.state = State.SERVER_MANAGE
            return []
        self.client = self.client_factory(profile.url, event.user_id, event.token,
                                          timeout=self.config.http_timeout)
        same_prefix = self.data_prefix == profile.prefix
        self._reset_for_server(same_prefix)
        self.data_prefix = profile.prefix
        logger.info(f"Connected to {profile.name} ({profile.url}), same prefix: {same_prefix}")
        tasks = self._switch_section(Section.RESUME)
        self.status = "Connected"
        return tasks

    def _reset_for_server(self, same_prefix: bool) -> None:
        self._token += 1
        self._epoch = self._token
        self._view_token = self._token
        self.view = View(section=Section.RESUME)
        self.nav.clear()
        self.sections.clear()
        self.arena.clear()
        self._mutations.clear()
        self._favorites_changed = -1
        self.latency = None
        self._next_ping = 0.0
        if not same_prefix:
            self._forget_prefix_data()

    def _forget_prefix_data(self) -> None:
        self.details.clear()
        self.covers.clear()
        self._pending_covers.clear()
        self._pending_details.clear()
        self.server_latencies = {}

    def _stale(self, event) -> bool:
        """True for a completion started against a previous server connection."""
        if event.epoch < self._epoch:
            logger.debug(f"Dropping {type(event).__name__} from an earlier connection")
            return True
        return False

    # -- list loading ------------------------------------------------------

    def root_source(self, section: Section) -> ViewSource:
        if section == Section.SEARCH:
            return ViewSource("search", query=self.last_query)
        return ViewSource(ROOT_KINDS[section])

    def _fetch(self, client: CatalogClient, source: ViewSource, page: int) -> Tuple[List[MediaItem], int]:
        c = self.config
        if source.kind == "resume":
            items = client.get_resume(c.resume_limit)
        elif source.kind == "favorites":
            items = client.get_favorites(c.favorites_limit)
        elif source.kind == "search":
            items = client.search(source.query, c.search_limit)
        elif source.kind == "libraries":
            items = client.get_libraries()
        elif source.kind == "children":
            return client.get_items(source.parent_id, page * c.page_size, c.page_size)
        elif source.kind == "seasons":
            items = client.get_seasons(source.series_id)
        elif source.kind == "episodes":
            items = client.get_episodes(source.series_id, source.parent_id)
        else:
            raise ValueError(f"Unknown view source {source.kind}")
        return items, len(items)

    def _begin_load(self, mode: str) -> int:
        self._token += 1
        self._view_token = self._token
        self._load_mode = mode
        self.state = State.LOADING
        return self._token

    def _load(self, section: Section, source: ViewSource, title: str,
              page: int = 0, mode: str = REPLACE) -> List[Task]:
        client = self.client
        if client is None:
            self.status = "Not connected"
            return []
        token = self._begin_load(mode)

        def load():
            try:
                items, total = self._fetch(client, source, page)
            except CatalogError as e:
                return ItemsLoaded(token, section, source, page=page, title=title, error=str(e))
            return ItemsLoaded(token, section, source, items, total, page, title)
        return [Task(f"load:{source.kind}", load)]

    def _drill(self, source: ViewSource, title: str) -> List[Task]:
        self.nav.push(self.view.snapshot())
        return self._load(self.view.section, source, title, mode=DRILL)

    def _on_ItemsLoaded(self, event: ItemsLoaded) -> List[Task]:
        if event.token < self._epoch:
            return []
        current = event.token == self._view_token

        if event.error:
            if not current:
                return []
            self.status = f"Error: {event.error}"
            if self._load_mode == DRILL:
                snapshot = self.nav.pop()
                if snapshot is not None:
                    self.view = View.from_snapshot(snapshot)
            self.state = State.BROWSING
            return []

        section_root = event.source.kind == ROOT_KINDS.get(event.section)
        if section_root and event.section == Section.FAVORITES \
                and event.token <= self._favorites_changed:
            logger.debug("Favorites list predates a favorite change")
            return self.refresh() if current else []

        ids = self._store_items(event.token, event.items)
        if section_root:
            self.sections.store(event.section, ids)
        if not current:
            logger.debug(f"Stale {event.source.kind} list cached without display")
            self._prune_arena()
            return []

        self.view = View(
            section=event.section,
            item_ids=ids,
            cursor=0,
            title=event.title,
            source=event.source,
            page=event.page,
            total=event.total,
        )
        self._prune_arena()
        self.state = State.BROWSING
        self.status = f"{event.total} items"
        return self._visible_tasks()

    def _store_items(self, token: int, items: List[MediaItem]) -> Tuple[str, ...]:
        """Put fetched items in the arena, replaying local changes made after the fetch began."""
        for item in items:
            for stamp, mutate in self._mutations.get(item.id, ()):
                if token <= stamp:
                    mutate(item)
        return self.arena.put_all(items)

    def _prune_arena(self) -> None:
        keep = set(self.view.item_ids)
        for section in self.sections.sections():
            keep.update(self.sections.get(section).ids)
        for snapshot in self.nav:
            keep.update(snapshot.item_ids)
        self.arena.retain(keep)

    def _switch_section(self, target: Section) -> List[Task]:
        if self.at_section_root:
            self.sections.save_cursor(self.view.section, self.view.cursor)
        self.nav.clear()
        source = self.root_source(target)
        entry = self.sections.get(target)
        if entry is not None and entry.ids:
            self._token += 1
            self._view_token = self._token
            self.view = View(section=target, item_ids=entry.ids, cursor=entry.cursor,
                             title=target.value, source=source, total=len(entry.ids))
            self.view.clamp_cursor()
            self.state = State.BROWSING
            self.status = f"{len(entry.ids)} items"
            return self._visible_tasks()
        self.view = View(section=target, title=target.value, source=source)
        return self._load(target, source, target.value)

    def refresh(self) -> List[Task]:
        """Reload the current view, bypassing the section cache."""
        self.sections.evict(self.view.section)
        source = self.view.source or self.root_source(self.view.section)
        return self._load(self.view.section, source, self.view.title or self.view.section.value,
                          page=self.view.page, mode=RELOAD)

    # -- covers and details ------------------------------------------------

    def _visible_tasks(self) -> List[Task]:
        client = self.client
        if client is None or not self.view.item_ids:
            return []
        tasks = []
        geometry = self.cover_size
        width, height = geometry
        for item in self.arena.resolve(self.view.window(self.config.cover_window)):
            key = CatalogClient.image_path(item)
            if key in self.covers or (key, geometry) in self._pending_covers or width <= 0 or height <= 0:
                continue
            self._pending_covers.add((key, geometry))
            tasks.append(Task(f"cover:{item.id}", self._cover_job(client, item, key, geometry)))

        item = self.current_item
        if item is not None and ITEM_ACTIONS[item.type] == PLAY \
                and item.id not in self._pending_details and self.details.get(item.id) is None:
            self._pending_details.add(item.id)
            tasks.append(Task(f"detail:{item.id}", self._detail_job(client, item.id)))
        return tasks

    def _cover_job(self, client, item: MediaItem, key: str, geometry: Tuple[int, int]):
        max_width = self.config.image_max_width
        timeout = self.config.image_timeout
        epoch = self._epoch

        def render():
            try:
                rendered = images.fetch_cover(client, item, geometry[0], geometry[1], max_width, timeout)
            except (CatalogError, OSError) as e:
                logger.debug(f"No cover for {item.id}: {e}")
                rendered = ""
            return CoverRendered(key, rendered, geometry, epoch)
        return render

    def _detail_job(self, client, item_id: str):
        epoch = self._epoch

        def fetch():
            try:
                full = client.get_item(item_id)
            except CatalogError as e:
                return DetailLoaded(item_id, error=str(e), epoch=epoch)
            return DetailLoaded(item_id, MediaDetail.from_item(full), epoch=epoch)
        return fetch

    def _on_CoverRendered(self, event: CoverRendered) -> List[Task]:
        self._pending_covers.discard((event.key, event.geometry))
        if self._stale(event):
            return []
        self.covers.put(event.key, event.rendered, event.geometry)
        return []

    def _on_DetailLoaded(self, event: DetailLoaded) -> List[Task]:
        self._pending_details.discard(event.item_id)
        if self._stale(event):
            return []
        if event.detail is not None:
            self.details.put(event.detail)
        elif event.error:
            logger.debug(f"Detail for {event.item_id} unavailable: {event.error}")
        return []

    def cover_for(self, item: MediaItem) -> Optional[str]:
        return self.covers.get(CatalogClient.image_path(item))

    # -- item state fan-out ------------------------------------------------

    def sync_item_state(self, item_id: str, mutate: Callable[[MediaItem], None]) -> bool:
        """Apply ``mutate`` to the item wherever it is listed.

        The current view, cached sections and navigation snapshots all
        refer to the single stored copy.
        """
        self._mutations.setdefault(item_id, []).append((self._token, mutate))
        return self.arena.apply(item_id, mutate)

    # -- keys: browsing ----------------------------------------------------

    def _key_loading(self, key: str) -> List[Task]:
        if key in ("esc", "backspace") and self._load_mode == DRILL and self.nav:
            return self.go_back()
        if key in ("q", "m", "d"):
            return self._key_browsing(key)
        if self.client is not None and (key == "/" or key in SECTION_KEYS):
            return self._key_browsing(key)
        return []

    def _key_browsing(self, key: str) -> List[Task]:
        if key == "q":
            self.quit_requested = True
            return []
        if key in ("left", "h"):
            return self.move_cursor(-1)
        if key in ("right", "l"):
            return self.move_cursor(1)
        if key == "enter":
            return self.select_item()
        if key in ("esc", "backspace"):
            return self.go_back()
        if key in ("3", "/"):
            self.state = State.SEARCHING
            return []
        if key in SECTION_KEYS:
            return self._switch_section(SECTION_KEYS[key])
        if key == "f":
            return self.toggle_favorite()
        if key == "c":
            return self.play_continuous()
        if key == "s":
            return self.go_to_season()
        if key == "S":
            return self.go_to_series()
        if key == "r":
            return self.refresh()
        if key == "m":
            self.state = State.SERVER_MANAGE
            self.manage_cursor = self.store.active_index
            return []
        if key == "d":
            self.debug_logging = not self.debug_logging
            logging_config.set_debug(self.debug_logging)
            self.status = f"Debug log {'ON' if self.debug_logging else 'OFF'}"
            return []
        return []

    def move_cursor(self, delta: int) -> List[Task]:
        view = self.view
        target = view.cursor + delta
        source = view.source
        if 0 <= target < len(view.item_ids):
            view.cursor = target
            return self._visible_tasks()
        if source is None or not source.paginated:
            return []
        page_size = self.config.page_size
        if delta > 0 and (view.page + 1) * page_size < view.total:
            return self._load(view.section, source, view.title, page=view.page + 1, mode=RELOAD)
        if delta < 0 and view.page > 0:
            return self._load(view.section, source, view.title, page=view.page - 1, mode=RELOAD)
        return []

    def select_item(self) -> List[Task]:
        item = self.current_item
        if item is None:
            return []
        action = ITEM_ACTIONS[item.type]
        if action == PLAY:
            return self.play_item(item)
        if action == OPEN_SEASONS:
            return self._drill(ViewSource("seasons", series_id=item.id), item.name)
        if action == OPEN_EPISODES:
            series_id = item.owning_series_id
            title = f"{item.series_name} - {item.name}" if item.series_name else item.name
            return self._drill(ViewSource("episodes", parent_id=item.id, series_id=series_id), title)
        if action == OPEN_CHILDREN:
            return self._drill(ViewSource("children", parent_id=item.id), item.name)
        self.status = f"Cannot open {item.type.value} items"
        return []

    def go_back(self) -> List[Task]:
        snapshot = self.nav.pop()
        if snapshot is None:
            return []
        self._token += 1
        self._view_token = self._token
        self.view = View.from_snapshot(snapshot)
        self.view.clamp_cursor()
        self.state = State.BROWSING
        self.status = snapshot.title
        return self._visible_tasks()

    def go_to_season(self) -> List[Task]:
        item = self.current_item
        if item is None or item.type != ItemType.EPISODE:
            self.status = "Season jump needs an episode"
            return []
        self.nav.push(self.view.snapshot())
        section = self.view.section
        token = self._begin_load(DRILL)
        client = self.client

        def load():
            try:
                series_id, season_id, season_name = item.series_id, item.owning_season_id, item.season_name
                if not series_id or not season_id:
                    full = client.get_item(item.id)
                    series_id = full.series_id
                    season_id = full.owning_season_id
                    season_name = full.season_name
                if not series_id or not season_id:
                    raise CatalogError("no season info")
                source = ViewSource("episodes", parent_id=season_id, series_id=series_id)
                items = client.get_episodes(series_id, season_id)
            except CatalogError as e:
                return ItemsLoaded(token, section, ViewSource("episodes"), error=str(e))
            return ItemsLoaded(token, section, source, items, len(items), 0, season_name or item.series_name)
        return [Task("load:season", load)]

    def go_to_series(self) -> List[Task]:
        item = self.current_item
        if item is None or item.type not in (ItemType.EPISODE, ItemType.SEASON):
            self.status = "Series jump needs an episode or season"
            return []
        self.nav.push(self.view.snapshot())
        section = self.view.section
        token = self._begin_load(DRILL)
        client = self.client

        def load():
            try:
                series_id, series_name = item.owning_series_id, item.series_name
                if not series_id:
                    full = client.get_item(item.id)
                    series_id = full.owning_series_id or full.parent_id
                    series_name = full.series_name
                if not series_id:
                    raise CatalogError("no series info")
                source = ViewSource("seasons", series_id=series_id)
                items = client.get_seasons(series_id)
            except CatalogError as e:
                return ItemsLoaded(token, section, ViewSource("seasons"), error=str(e))
            return ItemsLoaded(token, section, source, items, len(items), 0, series_name or item.name)
        return [Task("load:series", load)]

    # -- favorites ---------------------------------------------------------

    def toggle_favorite(self) -> List[Task]:
        item = self.current_item
        if item is None or self.client is None:
            return []
        client = self.client
        item_id = item.id
        favorite = not item.is_favorite
        self.status = "Updating favorite..."
        epoch = self._epoch

        def toggle():
            try:
                client.set_favorite(item_id, favorite)
            except CatalogError as e:
                return FavoriteToggled(item_id, favorite, error=str(e), epoch=epoch)
            return FavoriteToggled(item_id, favorite, epoch=epoch)
        return [Task("favorite", toggle)]

    def _on_FavoriteToggled(self, event: FavoriteToggled) -> List[Task]:
        if self._stale(event):
            return []
        if event.error:
            self.status = f"Favorite error: {event.error}"
            return []

        def mark(item: MediaItem) -> None:
            item.user_data.is_favorite = event.favorite
        self.sync_item_state(event.item_id, mark)
        self._favorites_changed = self._token
        self.status = "Added to favorites" if event.favorite else "Removed from favorites"

        if self.view.section == Section.FAVORITES and self.at_section_root:
            if not event.favorite:
                return self.refresh()
            return []
        self.sections.evict(Section.FAVORITES)
        return []

    # -- playback ----------------------------------------------------------

    def _can_play(self) -> bool:
        if self.player is None or not self.player.available:
            self.status = "mpv not found"
            return False
        if self.player_active:
            self.status = "Player already running"
            return False
        return self.client is not None

    def play_item(self, item: MediaItem) -> List[Task]:
        if not self._can_play():
            return []
        client = self.client
        local_position = self.store.get_playback_position(item.id)
        epoch = self._epoch
        self.status = f"Preparing {item.name}..."

        def prepare():
            try:
                full = client.get_item(item.id)
            except CatalogError as e:
                return PlaybackReady(error=str(e), epoch=epoch)
            detail = MediaDetail.from_item(full)
            if detail is None:
                return PlaybackReady(error="no media source", epoch=epoch)
            position = full.position_seconds or local_position
            plan = PlaybackPlan(
                title=full.name or item.name,
                entries=[QueueEntry(item.id, detail.source_id,
                                    client.stream_url(item.id, detail.source_id, detail.container),
                                    full.duration_seconds or item.duration_seconds)],
                subtitle_urls=[client.subtitle_url(item.id, detail.source_id, s.index)
                               for s in detail.external_subtitles],
                start_position=position,
                play_session_id=new_play_session_id(),
            )
            _report_start(client, plan)
            return PlaybackReady(plan, detail, epoch=epoch)
        return [Task("prepare", prepare)]

    def play_continuous(self) -> List[Task]:
        item = self.current_item
        if item is None or item.type != ItemType.EPISODE:
            self.status = "Continuous play needs an episode"
            return []
        if not self._can_play():
            return []
        client = self.client
        local_position = self.store.get_playback_position(item.id)
        epoch = self._epoch
        self.status = f"Preparing {item.series_name or item.name}..."

        def prepare():
            try:
                series_id, season_id = item.series_id, item.owning_season_id
                if not series_id or not season_id:
                    full = client.get_item(item.id)
                    series_id, season_id = full.series_id, full.owning_season_id
                if not series_id or not season_id:
                    return PlaybackReady(error="missing season info", epoch=epoch)
                episodes = client.get_episodes(series_id, season_id)
                entries = []
                start_index = 0
                for episode in episodes:
                    if not episode.media_sources:
                        episode = client.get_item(episode.id)
                    detail = MediaDetail.from_item(episode)
                    if detail is None:
                        continue
                    if episode.id == item.id:
                        start_index = len(entries)
                    entries.append(QueueEntry(
                        episode.id, detail.source_id,
                        client.stream_url(episode.id, detail.source_id, detail.container),
                        episode.duration_seconds))
                if not entries:
                    return PlaybackReady(error="no playable episodes", epoch=epoch)
                current = client.get_item(entries[start_index].item_id)
            except CatalogError as e:
                return PlaybackReady(error=str(e), epoch=epoch)
            plan = PlaybackPlan(
                title=item.series_name or item.name,
                entries=entries,
                start_position=current.position_seconds or
                (local_position if entries[start_index].item_id == item.id else 0),
                start_index=start_index,
                play_session_id=new_play_session_id(),
            )
            _report_start(client, plan)
            return PlaybackReady(plan, epoch=epoch)
        return [Task("prepare", prepare)]

    def _on_PlaybackReady(self, event: PlaybackReady) -> List[Task]:
        if self._stale(event):
            return []
        if event.detail is not None:
            self.details.put(event.detail)
        if event.error or event.plan is None:
            self.status = f"Cannot play: {event.error}"
            return []
        if not self._can_play():
            return []
        plan = event.plan
        player = self.player
        foreground = self.foreground
        self.player_active = True
        self.status = f"Playing: {plan.title}"

        def run():
            urls = [entry.url for entry in plan.entries]
            try:
                with foreground():
                    result = player.play_multiple(urls, plan.title, plan.subtitle_urls,
                                                  plan.start_position, plan.start_index)
            except PlayerError as e:
                return PlaybackFinished(plan, plan.start_position, plan.start_index, error=str(e))
            return PlaybackFinished(plan, result.position_sec, result.playlist_index)
        return [Task("play", run)]

    def _on_PlaybackFinished(self, event: PlaybackFinished) -> List[Task]:
        self.player_active = False
        if event.error:
            self.status = f"Playback failed: {event.error}"
            return []
        plan = event.plan
        index = max(0, min(event.playlist_index, len(plan.entries) - 1))
        entry = plan.entries[index]
        position = event.position_sec

        try:
            self.store.update_playback_position(entry.item_id, position, entry.duration_sec)
        except StorageError as e:
            logger.warning(f"Position for {entry.item_id} not saved: {e}")

        def mark(item: MediaItem) -> None:
            item.user_data.playback_position_ticks = seconds_to_ticks(position)
        self.sync_item_state(entry.item_id, mark)

        played = self.arena.get(entry.item_id)
        self.playback = PlaybackSummary(played.name if played else plan.title, position, None)
        self.status = "Playback finished"

        client = self.client
        if client is None:
            return []

        def report():
            try:
                client.report_playback_stopped(entry.item_id, entry.source_id, plan.play_session_id,
                                               seconds_to_ticks(position))
            except CatalogError as e:
                logger.info(f"Stop report for {entry.item_id} failed: {e}")
                return PlaybackReported(entry.item_id, False)
            return PlaybackReported(entry.item_id, True)
        return [Task("report", report)]

    def _on_PlaybackReported(self, event: PlaybackReported) -> List[Task]:
        self.playback.report_ok = event.ok
        return []

    # -- latency -----------------------------------------------------------

    def _on_LatencyMeasured(self, event: LatencyMeasured) -> List[Task]:
        self._pinging = False
        if self._stale(event):
            return []
        self.latency = event.latency
        return []

    def probe_servers(self) -> List[Task]:
        if self.probing:
            return []
        active = self.store.active_server()
        if active is None:
            self.status = "No active server"
            return []
        self.probing = True
        self.server_latencies = {}
        self.status = "Pinging servers..."
        profiles = self.store.servers()
        prefix = active.prefix
        ping = self.ping

        def probe():
            return ProbeFinished(prefix, probe_group(profiles, prefix, ping))
        return [Task("probe", probe)]

    def _on_ProbeFinished(self, event: ProbeFinished) -> List[Task]:
        self.probing = False
        active = self.store.active_server()
        if active is None or active.prefix != event.prefix:
            logger.debug(f"Dropping probe results for {event.prefix}")
            return []
        self.server_latencies = event.latencies
        self.status = "Ping complete"
        return []

    def _on_TaskFailed(self, event: TaskFailed) -> List[Task]:
        self.status = f"Error in {event.name}: {event.error}"
        if event.name == "play":
            self.player_active = False
        elif event.name == "probe":
            self.probing = False
        elif event.name == "ping":
            self._pinging = False
        elif event.name.startswith("load:") and self._load_mode == DRILL \
                and self.state == State.LOADING and self.nav:
            return self.go_back()
        if self.state == State.LOADING:
            self.state = State.BROWSING if self.client else State.SERVER_MANAGE
        return []

    # -- keys: search ------------------------------------------------------

    def _leave_overlay(self) -> None:
        self.state = State.BROWSING if self.client is not None else State.SERVER_MANAGE

    def _key_searching(self, key: str) -> List[Task]:
        if key == "esc":
            self._leave_overlay()
            return []
        if key == "enter":
            query = self.search.value.strip()
            if not query:
                self.status = "Enter a search term"
                return []
            if self.client is None:
                self._leave_overlay()
                return []
            self.last_query = query
            self.sections.evict(Section.SEARCH)
            return self._switch_section(Section.SEARCH)
        if key == "backspace":
            self.search.backspace()
        elif len(key) == 1 and key.isprintable():
            self.search.insert(key)
        return []

    # -- keys: server management -------------------------------------------

    def _key_server_manage(self, key: str) -> List[Task]:
        servers = self.store.servers()
        if key in ("q", "esc"):
            if self.client is not None:
                self.state = State.BROWSING
            elif key == "q":
                self.quit_requested = True
            return []
        if key in ("up", "k"):
            self.manage_cursor = max(0, self.manage_cursor - 1)
        elif key in ("down", "j"):
            self.manage_cursor = max(0, min(len(servers) - 1, self.manage_cursor + 1))
        elif key == "enter":
            if 0 <= self.manage_cursor < len(servers):
                return self._connect(self.manage_cursor)
        elif key == "a":
            self.form = ServerForm()
            if self.default_url and not servers:
                self.form.inputs[1].value = self.default_url
            self.state = State.SERVER_EDIT
        elif key == "e":
            if 0 <= self.manage_cursor < len(servers):
                self.form = ServerForm.for_profile(self.manage_cursor, servers[self.manage_cursor])
                self.state = State.SERVER_EDIT
        elif key in ("d", "delete"):
            return self._delete_server(servers)
        elif key == "p":
            return self.probe_servers()
        return []

    def _delete_server(self, servers) -> List[Task]:
        idx = self.manage_cursor
        if not 0 <= idx < len(servers):
            return []
        was_active = idx == self.store.active_index
        try:
            self.store.delete_server(idx)
        except StorageError as e:
            self.status = f"Delete failed: {e}"
            return []
        remaining = len(self.store.servers())
        self.manage_cursor = max(0, min(idx, remaining - 1))
        self.server_latencies = {}
        self.status = f"Deleted {servers[idx].name}"
        if was_active:
            self.client = None
            self.data_prefix = None
            self._reset_for_server(False)
        return []

    def _key_server_edit(self, key: str) -> List[Task]:
        form = self.form
        if form is None:
            self.state = State.SERVER_MANAGE
            return []
        if key == "esc":
            self.form = None
            self.state = State.SERVER_MANAGE
            return []
        if key in ("tab", "down"):
            form.next_field()
        elif key in ("shift+tab", "up"):
            form.prev_field()
        elif key == "enter":
            return self._save_form(form)
        elif key == "backspace":
            form.focused.backspace()
        elif len(key) == 1 and key.isprintable():
            form.focused.insert(key)
        return []

    def _save_form(self, form: ServerForm) -> List[Task]:
        existing = self.store.server(form.index) if form.index is not None else None
        try:
            profile = form.build_profile(existing)
        except ConfigurationError as e:
            form.error = str(e)
            self.status = str(e)
            return []
        renamed_active = existing is not None and form.index == self.store.active_index \
            and self.data_prefix is not None and profile.prefix != self.data_prefix
        try:
            if form.index is None:
                self.manage_cursor = self.store.add_server(profile)
            else:
                self.store.update_server(form.index, profile)
                self.manage_cursor = form.index
        except StorageError as e:
            form.error = str(e)
            self.status = str(e)
            return []
        self.form = None
        self.state = State.SERVER_MANAGE
        self.status = f"Saved {profile.name}"
        if self.client is None and len(self.store.servers()) == 1:
            return self._connect(self.manage_cursor)
        if renamed_active:
            # The store now reads the new prefix's data file
            logger.info(f"Active server moved from prefix {self.data_prefix} to {profile.prefix}")
            self._forget_prefix_data()
            self.data_prefix = profile.prefix
            return self._visible_tasks()
        return []


def _report_start(client: CatalogClient, plan: PlaybackPlan) -> None:
    entry = plan.entries[plan.start_index]
    try:
        client.report_playback_start(entry.item_id, entry.source_id, plan.play_session_id,
                                     seconds_to_ticks(plan.start_position))
    except CatalogError as e:
        logger.info(f"Start report for {entry.item_id} failed: {e}")

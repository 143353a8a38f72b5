import pytest

from conftest import FakeClient, FakePlayer, make_item, run_tasks
from ember.events import FavoriteToggled, ItemsLoaded, TaskFailed
from ember.models import ItemType
from ember.navigation import ViewSource
from ember.player import PlayResult
from ember.session import ITEM_ACTIONS, PLAY, Session
from ember.state import Section, State


def press(session, *keys, skip=()):
    for key in keys:
        run_tasks(session, session.handle_key(key), skip=skip)


def names(tasks):
    return [t.name for t in tasks]


class TestStartup:
    """Tests for connecting and the first list."""

    def test_connects_and_shows_resume(self, session, catalog, store):
        """Test that start logs in and lands on the Resume list."""
        assert session.state == State.BROWSING
        assert session.view.section == Section.RESUME
        assert session.view.item_ids == ("m1", "ep1", "ser1")
        assert ("login", "alice") in catalog.calls
        assert store.server(0).token == "tok"

    def test_token_shared_with_same_prefix(self, session, store):
        """Test that the login token is stored on every HomeNAS profile."""
        assert store.server(1).token == "tok"
        assert store.server(1).user_id == "user-1"
        assert store.server(2).token == ""

    def test_no_servers_opens_management(self, tmp_path, catalog):
        """Test that an empty profile list starts in server management."""
        from ember.storage import Store
        s = Session(Store(tmp_path), player=FakePlayer())
        assert s.start() == []
        assert s.state == State.SERVER_MANAGE

    def test_connect_failure_returns_to_management(self, store, catalog, player):
        """Test that a failed login leaves the session in server management."""
        catalog.fail.add("login")
        factory = lambda url, user_id="", token="", timeout=15.0: FakeClient(catalog, url, user_id, token, timeout)
        s = Session(store, player=player, client_factory=factory)
        run_tasks(s, s.start())
        assert s.state == State.SERVER_MANAGE
        assert s.client is None
        assert s.status.startswith("Connect failed")

    def test_first_item_detail_cached(self, session, store):
        """Test that the detail of the current playable item is fetched."""
        detail = session.details.get("m1")
        assert detail is not None
        assert detail.source_id == "src-m1"
        assert store.get_media_detail("m1") is not None


class TestItemActions:
    """Tests for the item type dispatch table."""

    def test_every_type_has_an_action(self):
        """Test that no item type is missing from the dispatch table."""
        assert set(ITEM_ACTIONS) == set(ItemType)

    def test_playable_types(self):
        """Test which types start playback."""
        playable = {t for t, action in ITEM_ACTIONS.items() if action == PLAY}
        assert playable == {ItemType.MOVIE, ItemType.EPISODE, ItemType.VIDEO}

    def test_unknown_type_is_refused(self, session, catalog):
        """Test that enter on an unknown item only sets a status message."""
        catalog.add(make_item("x1", ItemType.UNKNOWN, "Mystery"))
        catalog.resume = ["x1"]
        press(session, "r")
        tasks = session.handle_key("enter")
        assert tasks == []
        assert session.status.startswith("Cannot open")


class TestNavigation:
    """Tests for drilling into series and seasons and going back."""

    def test_drill_into_series_and_back(self, session):
        """Test series -> seasons -> episodes and back restores the cursor."""
        press(session, "l", "l", "enter")
        assert session.view.source == ViewSource("seasons", series_id="ser1")
        assert session.view.item_ids == ("sea1",)

        press(session, "enter")
        assert session.view.source.kind == "episodes"
        assert session.view.item_ids == ("ep1", "ep2", "ep3")
        assert session.view.title == "Dark - Season 1"
        assert len(session.nav) == 2

        press(session, "esc", "esc")
        assert session.view.section == Section.RESUME
        assert session.view.cursor == 2
        assert not session.nav

    def test_drill_failure_pops_back(self, session, catalog):
        """Test that a failed drill restores the view it left."""
        catalog.fail.add("get_seasons")
        press(session, "l", "l", "enter")

        assert session.state == State.BROWSING
        assert session.view.source.kind == "resume"
        assert session.view.cursor == 2
        assert not session.nav
        assert session.status.startswith("Error")

    def test_crashed_drill_task_pops_back(self, session):
        """Test that a crashed drill load goes back like a failed one."""
        press(session, "l", "l")
        session.handle_key("enter")
        assert session.state == State.LOADING

        session.handle_event(TaskFailed("load:seasons", "boom"))

        assert session.state == State.BROWSING
        assert session.view.source.kind == "resume"
        assert not session.nav

    def test_cancel_drill_ignores_late_result(self, session):
        """Test that esc while loading returns and drops the late list."""
        press(session, "l", "l")
        tasks = session.handle_key("enter")
        press(session, "esc")
        assert session.view.source.kind == "resume"

        run_tasks(session, tasks)

        assert session.view.source.kind == "resume"
        assert session.view.item_ids == ("m1", "ep1", "ser1")

    def test_go_to_season_from_resume(self, session):
        """Test that s on an episode opens its season."""
        press(session, "l", "s")
        assert session.view.source == ViewSource("episodes", parent_id="sea1", series_id="ser1")
        assert session.view.item_ids == ("ep1", "ep2", "ep3")
        press(session, "esc")
        assert session.view.current_id == "ep1"

    def test_go_to_series_from_resume(self, session):
        """Test that S on an episode opens the series seasons."""
        press(session, "l", "S")
        assert session.view.source == ViewSource("seasons", series_id="ser1")
        assert session.view.title == "Dark"

    def test_go_to_season_needs_episode(self, session):
        """Test that s on a movie does nothing."""
        assert session.handle_key("s") == []
        assert not session.nav

    def test_paging_children(self, session, catalog):
        """Test that moving past the end of a page loads the next one."""
        catalog.children["lib1"] = ["m1", "m2", "ep1"]
        press(session, "4", "enter")
        assert session.view.item_ids == ("m1", "m2")
        assert session.view.total == 3

        press(session, "l", "l")
        assert session.view.page == 1
        assert session.view.item_ids == ("ep1",)

        press(session, "l")
        assert session.view.page == 1

        press(session, "h")
        assert session.view.page == 0
        assert ("get_items", "lib1", 0) in catalog.calls


class TestSections:
    """Tests for section switching and the section cache."""

    def test_section_cache_hit_restores_cursor(self, session, catalog):
        """Test that returning to a section uses the cache and its cursor."""
        press(session, "l", "2")
        assert session.view.section == Section.FAVORITES
        resume_calls = [c for c in catalog.calls if c[0] == "get_resume"]

        tasks = session.handle_key("1")

        assert not any(n.startswith("load:") for n in names(tasks))
        assert session.view.cursor == 1
        assert [c for c in catalog.calls if c[0] == "get_resume"] == resume_calls

    def test_stale_completion_only_updates_cache(self, session):
        """Test that a superseded list is cached but not shown."""
        favorites = session.handle_key("2")
        run_tasks(session, session.handle_key("4"))
        assert session.view.section == Section.LIBRARIES

        run_tasks(session, favorites)

        assert session.view.section == Section.LIBRARIES
        assert session.view.item_ids == ("lib1",)
        assert session.sections.get(Section.FAVORITES).ids == ("m2",)

        tasks = session.handle_key("2")
        assert not any(n.startswith("load:") for n in names(tasks))
        assert session.view.item_ids == ("m2",)

    def test_old_server_completion_ignored(self, session):
        """Test that a list from before a server switch is dropped entirely."""
        stale = ItemsLoaded(0, Section.FAVORITES, ViewSource("favorites"),
                            [make_item("old")], 1, 0, "Favorites")
        session.handle_event(stale)
        assert "old" not in session.arena
        assert session.sections.get(Section.FAVORITES) is None

    def test_repeated_completions_change_nothing(self, session):
        """Test that the same list, detail and cover results delivered twice are harmless."""
        loaded = session.handle_key("2")[0].run()
        follow = [task.run() for task in session.handle_event(loaded)]
        assert sorted(type(e).__name__ for e in follow) == ["CoverRendered", "DetailLoaded"]
        for event in follow:
            session.handle_event(event)
        view = session.view
        entry = session.sections.get(Section.FAVORITES)
        known = len(session.arena)
        covers = len(session.covers)
        detail = session.details.get("m2")

        session.handle_event(loaded)
        for event in follow:
            session.handle_event(event)

        assert session.view == view
        assert session.sections.get(Section.FAVORITES) == entry
        assert len(session.arena) == known
        assert len(session.covers) == covers
        assert session.details.get("m2") == detail
        assert detail.source_id == "src-m2"

    def test_arena_drops_unlisted_items(self, session, catalog):
        """Test that items no list refers to any more are forgotten."""
        catalog.resume = ["m1"]
        press(session, "r")
        assert session.view.item_ids == ("m1",)
        assert "m1" in session.arena
        assert "ep1" not in session.arena
        assert "ser1" not in session.arena

    def test_arena_keeps_items_in_history(self, session):
        """Test that items in navigation snapshots stay known."""
        press(session, "l", "l", "enter", "enter")
        for item_id in ("m1", "ser1", "sea1", "ep1", "ep2", "ep3"):
            assert item_id in session.arena

    def test_failed_section_load_shows_empty(self, session, catalog):
        """Test that a failed root load leaves an empty list in browsing."""
        catalog.fail.add("get_libraries")
        press(session, "4")
        assert session.state == State.BROWSING
        assert session.view.section == Section.LIBRARIES
        assert session.view.item_ids == ()

    def test_refresh_keeps_view_on_failure(self, session, catalog):
        """Test that a failed refresh keeps the list that was shown."""
        catalog.fail.add("get_resume")
        press(session, "r")
        assert session.state == State.BROWSING
        assert session.view.item_ids == ("m1", "ep1", "ser1")

    def test_search(self, session):
        """Test entering a query and showing its results."""
        press(session, "/")
        assert session.state == State.SEARCHING
        press(session, "a", "l", "i", "enter")
        assert session.view.section == Section.SEARCH
        assert session.view.item_ids == ("m1",)
        assert session.last_query == "ali"

    def test_empty_search_stays_open(self, session):
        """Test that enter with no text keeps the search prompt."""
        press(session, "3", "enter")
        assert session.state == State.SEARCHING
        assert session.status == "Enter a search term"


class TestFavoriteFanOut:
    """Tests for favorite toggles and the shared item state."""

    def test_favorite_visible_after_navigating_back(self, session):
        """Test that a toggle inside a drill shows in the section list."""
        press(session, "l", "l", "enter", "enter")
        assert session.current_item.id == "ep1"
        press(session, "f")
        press(session, "esc", "esc")

        listed = {item.id: item for item in session.items}
        assert listed["ep1"].is_favorite is True

    def test_favorite_evicts_favorites_section(self, session, catalog):
        """Test that toggling outside Favorites forces a reload there."""
        press(session, "2", "1")
        assert session.sections.get(Section.FAVORITES) is not None
        press(session, "f")
        assert session.sections.get(Section.FAVORITES) is None

        press(session, "2")
        assert set(session.view.item_ids) == {"m1", "m2"}

    def test_unfavorite_in_favorites_refreshes(self, session):
        """Test that removing the last favorite empties the list."""
        press(session, "2")
        assert session.view.item_ids == ("m2",)
        press(session, "f")
        assert session.state == State.BROWSING
        assert session.view.item_ids == ()

    def test_failed_toggle_changes_nothing(self, session, catalog):
        """Test that a rejected toggle leaves the item untouched."""
        catalog.fail.add("set_favorite")
        press(session, "f")
        assert session.current_item.is_favorite is False
        assert session.status.startswith("Favorite error")

    def test_event_for_unknown_item(self, session):
        """Test that a toggle for an item no longer loaded is harmless."""
        assert session.handle_event(FavoriteToggled("gone", True, epoch=session._epoch)) == []

    def test_late_favorites_list_does_not_undo_toggle(self, session, catalog):
        """Test that a Favorites list fetched before an unfavorite is not cached."""
        catalog.items["m1"].user_data.is_favorite = True
        press(session, "r")
        assert session.current_item.is_favorite is True
        held = [task.run() for task in session.handle_key("2")]
        press(session, "1", "f")
        assert session.current_item.is_favorite is False

        for event in held:
            run_tasks(session, session.handle_event(event))

        assert session.view.section == Section.RESUME
        assert session.current_item.is_favorite is False
        assert session.sections.get(Section.FAVORITES) is None
        press(session, "2")
        assert session.view.item_ids == ("m2",)

    def test_late_list_keeps_newer_favorite_flag(self, session):
        """Test that a list fetched before a toggle does not revert the flag."""
        held = [task.run() for task in session.handle_key("r")]
        press(session, "4", "enter")
        assert session.current_item.id == "m1"
        press(session, "f")
        assert session.current_item.is_favorite is True

        for event in held:
            run_tasks(session, session.handle_event(event))

        assert session.current_item.is_favorite is True
        press(session, "esc", "1")
        assert session.view.item_ids == ("m1", "ep1", "ser1")
        assert session.current_item.is_favorite is True

    def test_favorites_list_started_before_toggle_is_reloaded(self, session):
        """Test that the Favorites list being waited on is fetched again after a toggle."""
        toggle = session.handle_key("f")
        held = [task.run() for task in session.handle_key("2")]
        run_tasks(session, toggle)

        for event in held:
            run_tasks(session, session.handle_event(event))

        assert session.state == State.BROWSING
        assert session.view.section == Section.FAVORITES
        assert set(session.view.item_ids) == {"m1", "m2"}


class TestCovers:
    """Tests for cover requests and terminal resizes."""

    def _long_resume(self, session, catalog):
        ids = [f"mv{i}" for i in range(10)]
        catalog.add(*(make_item(i, ItemType.MOVIE) for i in ids))
        catalog.resume = ids
        run_tasks(session, session.handle_key("r"))
        return ids

    def test_resize_empties_covers_and_requests_window(self, session, catalog):
        """Test that a resize clears covers and only asks for nearby ones."""
        ids = self._long_resume(session, catalog)

        tasks = session.resize(120, 40)

        assert len(session.covers) == 0
        assert session.covers.geometry == (94, 36)
        covers = [n for n in names(tasks) if n.startswith("cover:")]
        assert covers == [f"cover:{i}" for i in ids[:3]]

    def test_moving_requests_new_window(self, session, catalog):
        """Test that moving the cursor requests only uncached covers."""
        ids = self._long_resume(session, catalog)
        tasks = session.handle_key("l")
        covers = [n for n in names(tasks) if n.startswith("cover:")]
        assert covers == [f"cover:{ids[3]}"]

    def test_old_geometry_render_discarded(self, session, catalog):
        """Test that a render finishing after a resize is not stored."""
        ids = [f"mv{i}" for i in range(4)]
        catalog.add(*(make_item(i, ItemType.MOVIE) for i in ids))
        catalog.resume = ids
        pending = []
        for task in session.handle_key("r"):
            pending.extend(session.handle_event(task.run()))
        session.resize(90, 30)
        for task in pending:
            if task.name.startswith("cover:"):
                session.handle_event(task.run())
        assert len(session.covers) == 0


class TestServerSwitch:
    """Tests for switching between server profiles."""

    def test_same_prefix_keeps_details_and_covers(self, session, catalog, store):
        """Test that HomeNAS Main -> HomeNAS Backup keeps cached data."""
        covers = len(session.covers)
        press(session, "m", "j", "enter", skip=("detail:", "cover:"))

        assert store.active_index == 1
        assert session.details.get("m1") is not None
        assert len(session.covers) == covers
        assert [c for c in catalog.calls if c[0] == "login"] == [("login", "alice")]

    def test_other_prefix_clears_details_and_covers(self, session, store):
        """Test that switching to Remote drops the HomeNAS caches."""
        press(session, "m", "j", "j", "enter", skip=("detail:", "cover:"))

        assert store.active_index == 2
        assert session.details.get("m1") is None
        assert len(session.covers) == 0
        assert store.data_path.name == "data_Remote.json"

    def test_detail_from_previous_server_dropped(self, session, store):
        """Test that a detail fetched before a prefix switch is not cached."""
        held = [task for task in session.handle_key("l") if task.name == "detail:ep1"]
        assert held
        press(session, "m", "j", "j", "enter", skip=("detail:", "cover:"))
        assert store.data_path.name == "data_Remote.json"

        for task in held:
            session.handle_event(task.run())

        assert session.details.get("ep1") is None
        assert store.get_media_detail("ep1") is None

    def test_ping_from_previous_server_dropped(self, session):
        """Test that a latency measured against the old server is not shown."""
        held = session.tick(now=100.0)
        press(session, "m", "j", "j", "enter", skip=("detail:", "cover:"))

        for task in held:
            session.handle_event(task.run())

        assert session.latency is None
        assert names(session.tick(now=100.0)) == ["ping"]

    def test_switch_resets_navigation(self, session):
        """Test that a server switch clears the drill history."""
        press(session, "l", "l", "enter")
        assert session.nav
        press(session, "m", "j", "enter")
        assert not session.nav
        assert session.view.section == Section.RESUME

    def test_delete_active_server(self, session, store):
        """Test that deleting the connected profile disconnects."""
        press(session, "m", "d")
        assert session.client is None
        assert len(store.servers()) == 2
        assert session.state == State.SERVER_MANAGE
        press(session, "esc")
        assert session.state == State.SERVER_MANAGE

    def test_probe_same_prefix(self, session):
        """Test that p pings every profile sharing the active prefix."""
        press(session, "m", "p")
        assert session.server_latencies == {0: 0.01, 1: 0.01}
        assert session.probing is False


class TestServerForm:
    """Tests for the add/edit server form."""

    def test_url_required(self, session, store):
        """Test that saving without a URL keeps the form open."""
        press(session, "m", "a", "X", "enter")
        assert session.state == State.SERVER_EDIT
        assert session.form.error == "URL is required"
        assert len(store.servers()) == 3

    def test_add_server(self, session, store):
        """Test filling in and saving a new profile."""
        press(session, "m", "a", *"Lab", "tab", *"http://lab:8096", "enter")
        assert session.state == State.SERVER_MANAGE
        assert store.server(3).name == "Lab"
        assert store.server(3).url == "http://lab:8096"
        assert session.manage_cursor == 3

    def test_edit_keeps_token(self, session, store):
        """Test that editing a profile keeps its cached credentials."""
        press(session, "m", "e", "backspace", "backspace", "backspace", "backspace", *"Home", "enter")
        assert store.server(0).name == "HomeNAS Home"
        assert store.server(0).token == "tok"

    def test_renaming_active_prefix_drops_cached_data(self, session, store):
        """Test that moving the active profile to a new prefix starts its caches fresh."""
        assert session.details.get("m1") is not None
        press(session, "m", "e", *["backspace"] * len("HomeNAS Main"), *"Attic")
        tasks = session.handle_key("enter")

        assert store.data_path.name == "data_Attic.json"
        assert session.data_prefix == "Attic"
        assert session.details.get("m1") is None
        assert len(session.covers) == 0
        assert "detail:m1" in names(tasks)

        run_tasks(session, tasks)
        assert store.get_media_detail("m1") is not None

    def test_first_server_connects(self, tmp_path, catalog, player):
        """Test that saving the first profile connects to it."""
        from ember.storage import Store
        factory = lambda url, user_id="", token="", timeout=15.0: FakeClient(catalog, url, user_id, token, timeout)
        s = Session(Store(tmp_path), player=player, client_factory=factory,
                    default_url="http://nas-a:8096")
        s.start()
        press(s, "a")
        assert s.form.inputs[1].value == "http://nas-a:8096"
        press(s, *"Home", "enter")
        assert s.client is not None
        assert s.state == State.BROWSING


class TestPlayback:
    """Tests for single and continuous playback."""

    def test_play_movie_saves_position(self, session, catalog, player, store):
        """Test the prepare, play and report sequence for one movie."""
        player.result = PlayResult(position_sec=95, playlist_index=0)
        press(session, "enter")

        urls, title, subs, start, index = player.calls[0]
        assert urls == ["http://nas-a:8096/stream/m1.mkv"]
        assert subs == ["http://nas-a:8096/subs/m1/3.srt"]
        assert start == 0
        assert store.get_playback_position("m1") == 95
        assert session.current_item.position_seconds == 95
        assert session.playback.item_name == "Alien"
        assert session.playback.report_ok is True
        assert session.player_active is False
        assert [r[0] for r in catalog.reports] == ["start", "stopped"]

    def test_resume_from_local_position(self, session, player, store):
        """Test that a locally saved position is used when the server has none."""
        store.update_playback_position("m1", 300, 6000)
        press(session, "enter")
        assert player.calls[0][3] == 300

    def test_failed_stop_report(self, session, catalog):
        """Test that a rejected stop report is shown as failed."""
        catalog.fail.add("report_stopped")
        press(session, "enter")
        assert session.playback.report_ok is False

    def test_continuous_play_queues_season(self, session, player, store):
        """Test that c queues the whole season and saves the last episode."""
        press(session, "l", "l", "enter", "enter", "l")
        assert session.current_item.id == "ep2"
        player.result = PlayResult(position_sec=40, playlist_index=2)

        press(session, "c")

        urls, title, subs, start, index = player.calls[0]
        assert len(urls) == 3
        assert index == 1
        assert title == "Dark"
        assert store.get_playback_position("ep3") == 40
        assert store.get_playback_position("ep2") == 0

    def test_continuous_play_needs_episode(self, session, player):
        """Test that c on a movie refuses."""
        assert session.handle_key("c") == []
        assert player.calls == []

    def test_player_missing(self, session):
        """Test that enter without mpv only sets the status."""
        session.player = FakePlayer(available=False)
        assert session.handle_key("enter") == []
        assert session.status == "mpv not found"

    def test_player_already_running(self, session, player):
        """Test that a second play request is refused."""
        session.player_active = True
        assert session.handle_key("enter") == []
        assert session.status == "Player already running"

    def test_prepare_failure(self, session, catalog, player):
        """Test that a failed item lookup never starts the player."""
        catalog.fail.add("get_item")
        press(session, "enter")
        assert player.calls == []
        assert session.status.startswith("Cannot play")


class TestKeys:
    """Tests for keys that work in every browsing state."""

    def test_ctrl_c_quits(self, session):
        """Test that ctrl+c always requests quit."""
        session.state = State.SERVER_EDIT
        session.handle_key("ctrl+c")
        assert session.quit_requested is True

    def test_debug_toggle(self, session):
        """Test that d flips debug logging."""
        press(session, "d")
        assert session.debug_logging is True
        assert session.status == "Debug log ON"
        press(session, "d")
        assert session.debug_logging is False

    def test_ping_tick(self, session):
        """Test that the ping runs once per interval."""
        run_tasks(session, session.tick(now=100.0))
        assert session.latency == pytest.approx(0.02)
        assert session.tick(now=101.0) == []
        assert names(session.tick(now=111.0)) == ["ping"]

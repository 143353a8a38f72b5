"""
State records for the ember session.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from logging_config import get_logger, ConfigurationError
from .models import ServerProfile
from .navigation import NavState, ViewSource

logger = get_logger('state')


class State(Enum):
    """Top level mode of the session."""
    LOADING = "loading"
    BROWSING = "browsing"
    SEARCHING = "searching"
    SERVER_MANAGE = "server_manage"
    SERVER_EDIT = "server_edit"


class Section(Enum):
    RESUME = "Resume"
    FAVORITES = "Favorites"
    SEARCH = "Search"
    LIBRARIES = "Libraries"


SECTION_KEYS = {
    "1": Section.RESUME,
    "2": Section.FAVORITES,
    "3": Section.SEARCH,
    "4": Section.LIBRARIES,
}


@dataclass
class TextInput:
    """Single line text field."""
    label: str = ""
    value: str = ""
    masked: bool = False
    limit: int = 256

    def insert(self, text: str) -> None:
        if len(self.value) + len(text) <= self.limit:
            self.value += text

    def backspace(self) -> None:
        self.value = self.value[:-1]

    def clear(self) -> None:
        self.value = ""

    @property
    def display(self) -> str:
        return "*" * len(self.value) if self.masked else self.value


FORM_FIELDS = ("Name", "URL", "Username", "Password")


@dataclass
class ServerForm:
    """Add/edit form for a server profile.

    ``index`` is the profile being edited, or None when adding.
    """
    inputs: List[TextInput] = field(default_factory=lambda: [
        TextInput(label, masked=(label == "Password")) for label in FORM_FIELDS
    ])
    focus: int = 0
    index: Optional[int] = None
    error: str = ""

    @classmethod
    def for_profile(cls, index: int, profile: ServerProfile) -> "ServerForm":
        form = cls(index=index)
        for field_input, value in zip(form.inputs,
                                      (profile.name, profile.url, profile.username, profile.password)):
            field_input.value = value
        return form

    @property
    def focused(self) -> TextInput:
        return self.inputs[self.focus]

    def next_field(self) -> None:
        self.focus = (self.focus + 1) % len(self.inputs)

    def prev_field(self) -> None:
        self.focus = (self.focus - 1) % len(self.inputs)

    def values(self) -> Tuple[str, str, str, str]:
        name, url, username, password = (i.value.strip() for i in self.inputs)
        return name, url, username, password

    def build_profile(self, existing: Optional[ServerProfile] = None) -> ServerProfile:
        """Validate the inputs and return the profile they describe.

        Raises ConfigurationError without touching anything when the URL
        is missing. Editing keeps the stored user id and token.
        """
        name, url, username, password = self.values()
        if not url:
            raise ConfigurationError("URL is required")
        profile = ServerProfile(
            name=name or url,
            url=url.rstrip("/"),
            username=username,
            password=password,
        )
        if existing is not None:
            profile.user_id = existing.user_id
            profile.token = existing.token
        return profile


@dataclass
class View:
    """What the carousel currently shows."""
    section: Section = Section.RESUME
    item_ids: Tuple[str, ...] = field(default_factory=tuple)
    cursor: int = 0
    title: str = ""
    source: Optional[ViewSource] = None
    page: int = 0
    total: int = 0

    def snapshot(self) -> NavState:
        return NavState(
            section=self.section,
            item_ids=self.item_ids,
            cursor=self.cursor,
            title=self.title,
            source=self.source,
            page=self.page,
            total=self.total,
        )

    @classmethod
    def from_snapshot(cls, snapshot: NavState) -> "View":
        return cls(
            section=snapshot.section,
            item_ids=snapshot.item_ids,
            cursor=snapshot.cursor,
            title=snapshot.title,
            source=snapshot.source,
            page=snapshot.page,
            total=snapshot.total,
        )

    @property
    def current_id(self) -> Optional[str]:
        if 0 <= self.cursor < len(self.item_ids):
            return self.item_ids[self.cursor]
        return None

    def clamp_cursor(self) -> None:
        if not self.item_ids:
            self.cursor = 0
        else:
            self.cursor = max(0, min(self.cursor, len(self.item_ids) - 1))

    def window(self, radius: int) -> Tuple[str, ...]:
        """Ids within ``radius`` of the cursor."""
        start = max(0, self.cursor - radius)
        return self.item_ids[start:self.cursor + radius + 1]


@dataclass
class PlaybackSummary:
    """Outcome of the last playback, for the sidebar."""
    item_name: str = ""
    position_sec: int = 0
    report_ok: Optional[bool] = None

"""
Catalog data model for ember.

Items are parsed from the server's JSON once, at the client boundary, and
travel through the rest of the program as these dataclasses.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

TICKS_PER_SECOND = 10_000_000


class ItemType(str, Enum):
    """Closed set of catalog item types ember knows how to handle."""
    MOVIE = "Movie"
    SERIES = "Series"
    SEASON = "Season"
    EPISODE = "Episode"
    COLLECTION_FOLDER = "CollectionFolder"
    FOLDER = "Folder"
    BOX_SET = "BoxSet"
    VIDEO = "Video"
    UNKNOWN = "Unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN

    @property
    def label(self) -> str:
        return TYPE_LABELS[self]


TYPE_LABELS: Dict[ItemType, str] = {
    ItemType.MOVIE: "MOVIE",
    ItemType.SERIES: "SERIES",
    ItemType.SEASON: "SEASON",
    ItemType.EPISODE: "EP",
    ItemType.COLLECTION_FOLDER: "LIBRARY",
    ItemType.FOLDER: "FOLDER",
    ItemType.BOX_SET: "BOXSET",
    ItemType.VIDEO: "VIDEO",
    ItemType.UNKNOWN: "ITEM",
}


def ticks_to_seconds(ticks: Optional[int]) -> int:
    return int(ticks or 0) // TICKS_PER_SECOND


def seconds_to_ticks(seconds: Optional[int]) -> int:
    return int(seconds or 0) * TICKS_PER_SECOND


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass
class UserData:
    """Per-user mutable state the server keeps for an item."""
    is_favorite: bool = False
    playback_position_ticks: int = 0
    played: bool = False
    last_played_date: Optional[str] = None

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "UserData":
        data = data or {}
        return cls(
            is_favorite=bool(data.get("IsFavorite", False)),
            playback_position_ticks=int(data.get("PlaybackPositionTicks") or 0),
            played=bool(data.get("Played", False)),
            last_played_date=data.get("LastPlayedDate"),
        )


@dataclass
class MediaStream:
    type: str = ""
    index: int = 0
    language: str = ""
    title: str = ""
    display_title: str = ""
    is_external: bool = False
    is_default: bool = False
    codec: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MediaStream":
        return cls(
            type=data.get("Type", ""),
            index=int(data.get("Index") or 0),
            language=data.get("Language", "") or "",
            title=data.get("Title", "") or "",
            display_title=data.get("DisplayTitle", "") or "",
            is_external=bool(data.get("IsExternal", False)),
            is_default=bool(data.get("IsDefault", False)),
            codec=data.get("Codec", "") or "",
        )


@dataclass
class MediaSource:
    id: str
    container: str = ""
    streams: List[MediaStream] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MediaSource":
        return cls(
            id=data.get("Id", ""),
            container=data.get("Container", "") or "",
            streams=[MediaStream.from_api(s) for s in data.get("MediaStreams") or []],
        )

    @property
    def subtitle_streams(self) -> List[MediaStream]:
        return [s for s in self.streams if s.type == "Subtitle"]


@dataclass
class MediaItem:
    """A single catalog entry: movie, series, season, episode or folder."""
    id: str
    name: str = ""
    type: ItemType = ItemType.UNKNOWN
    year: int = 0
    overview: str = ""
    series_id: str = ""
    series_name: str = ""
    season_id: str = ""
    season_name: str = ""
    parent_id: str = ""
    index_number: int = 0
    run_time_ticks: int = 0
    primary_image_tag: str = ""
    media_sources: List[MediaSource] = field(default_factory=list)
    user_data: UserData = field(default_factory=UserData)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MediaItem":
        """Build an item from the server's JSON representation."""
        image_tags = data.get("ImageTags") or {}
        return cls(
            id=data.get("Id", ""),
            name=data.get("Name", "") or "",
            type=ItemType(data.get("Type", "")),
            year=int(data.get("ProductionYear") or 0),
            overview=data.get("Overview", "") or "",
            series_id=data.get("SeriesId", "") or "",
            series_name=data.get("SeriesName", "") or "",
            season_id=data.get("SeasonId", "") or "",
            season_name=data.get("SeasonName", "") or "",
            parent_id=data.get("ParentId", "") or "",
            index_number=int(data.get("IndexNumber") or 0),
            run_time_ticks=int(data.get("RunTimeTicks") or 0),
            primary_image_tag=image_tags.get("Primary", "") or "",
            media_sources=[MediaSource.from_api(s) for s in data.get("MediaSources") or []],
            user_data=UserData.from_api(data.get("UserData")),
        )

    @property
    def is_favorite(self) -> bool:
        return self.user_data.is_favorite

    @property
    def position_seconds(self) -> int:
        return ticks_to_seconds(self.user_data.playback_position_ticks)

    @property
    def duration_seconds(self) -> int:
        return ticks_to_seconds(self.run_time_ticks)

    @property
    def display_title(self) -> str:
        if self.index_number > 0 and self.type == ItemType.EPISODE:
            return f"EP {self.index_number:02d} - {self.name}"
        if self.year > 0:
            return f"{self.name} ({self.year})"
        return self.name

    @property
    def owning_season_id(self) -> str:
        return self.season_id or (self.parent_id if self.type == ItemType.EPISODE else "")

    @property
    def owning_series_id(self) -> str:
        if self.series_id:
            return self.series_id
        if self.type == ItemType.SEASON:
            return self.parent_id
        return ""


@dataclass
class SubtitleInfo:
    index: int
    language: str = ""
    title: str = ""
    is_external: bool = False
    codec: str = ""

    @classmethod
    def from_stream(cls, stream: MediaStream) -> "SubtitleInfo":
        return cls(
            index=stream.index,
            language=stream.language,
            title=stream.title or stream.display_title,
            is_external=stream.is_external,
            codec=stream.codec,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubtitleInfo":
        return cls(
            index=int(data.get("index", 0)),
            language=data.get("language", ""),
            title=data.get("title", ""),
            is_external=bool(data.get("is_external", False)),
            codec=data.get("codec", ""),
        )

    @property
    def label(self) -> str:
        text = self.language or self.title or f"#{self.index}"
        return f"{text}*" if self.is_external else text


@dataclass
class MediaDetail:
    """Stream selection and subtitle descriptors for a playable item."""
    item_id: str
    source_id: str
    container: str = ""
    subtitles: List[SubtitleInfo] = field(default_factory=list)
    cached_at: str = field(default_factory=now_iso)

    @classmethod
    def from_item(cls, item: MediaItem) -> Optional["MediaDetail"]:
        """Describe the item's first media source, or None if it has none."""
        if not item.media_sources:
            return None
        source = item.media_sources[0]
        return cls(
            item_id=item.id,
            source_id=source.id,
            container=source.container,
            subtitles=[SubtitleInfo.from_stream(s) for s in source.subtitle_streams],
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaDetail":
        return cls(
            item_id=data.get("item_id", ""),
            source_id=data.get("source_id", ""),
            container=data.get("container", ""),
            subtitles=[SubtitleInfo.from_dict(s) for s in data.get("subtitles") or []],
            cached_at=data.get("cached_at", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def external_subtitles(self) -> List[SubtitleInfo]:
        return [s for s in self.subtitles if s.is_external]


@dataclass
class PlaybackRecord:
    """Locally saved resume point for one item."""
    position_sec: int = 0
    duration_sec: int = 0
    updated_at: str = ""


@dataclass
class ServerProfile:
    """Connection settings for one server, plus its cached credentials."""
    name: str
    url: str
    username: str = ""
    password: str = ""
    user_id: str = ""
    token: str = ""

    @property
    def prefix(self) -> str:
        """Leading word of the name; profiles sharing it share cached data."""
        parts = self.name.split()
        return parts[0] if parts else self.name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerProfile":
        return cls(
            name=data.get("name", ""),
            url=data.get("url", ""),
            username=data.get("username", ""),
            password=data.get("password", ""),
            user_id=data.get("user_id", ""),
            token=data.get("token", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

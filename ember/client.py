"""
HTTP client for the Emby catalog API.
"""
import time
import uuid
from typing import Optional, List, Dict, Any, Tuple
from urllib.parse import urlencode

import requests

from logging_config import get_logger, CatalogError, CatalogAuthError
from .models import MediaItem

logger = get_logger('client')

CLIENT_NAME = "Ember"
DEVICE_NAME = "Python"
DEVICE_ID = "ember-py-001"
CLIENT_VERSION = "1.0.0"

LIST_FIELDS = "Overview,MediaSources,ProductionYear,UserData"
ITEM_FIELDS = "MediaSources,Overview,UserData"


def new_play_session_id() -> str:
    return uuid.uuid4().hex


class CatalogClient:
    """Talks to one Emby server on behalf of one user.

    Every request method raises ``CatalogError`` on transport failures and
    HTTP error statuses, ``CatalogAuthError`` on 401.
    """

    def __init__(self, server: str, user_id: str = "", token: str = "",
                 timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.server = server.rstrip("/")
        self.user_id = user_id
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def auth_header(self) -> str:
        header = (f'MediaBrowser Client="{CLIENT_NAME}", Device="{DEVICE_NAME}", '
                  f'DeviceId="{DEVICE_ID}", Version="{CLIENT_VERSION}"')
        if self.token:
            header += f', Token="{self.token}"'
        return header

    def _request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                 body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.server}{endpoint}"
        headers = {"X-Emby-Authorization": self.auth_header()}
        try:
            response = self.session.request(method, url, params=params, json=body,
                                            headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug(f"{method} {url} failed: {e}")
            raise CatalogError(f"{method} {endpoint}: {e}") from e

        logger.debug(f"{method} {response.url} -> {response.status_code} {response.text[:200]!r}")

        if response.status_code == 401:
            raise CatalogAuthError("Unauthorized", status=401)
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise CatalogError(f"HTTP {response.status_code}: {response.text[:120]}",
                               status=response.status_code) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise CatalogError(f"Invalid JSON from {endpoint}") from e

    def _items(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Tuple[List[MediaItem], int]:
        data = self._request("GET", endpoint, params=params) or {}
        items = [MediaItem.from_api(i) for i in data.get("Items") or []]
        return items, int(data.get("TotalRecordCount") or len(items))

    # -- authentication ------------------------------------------------------

    def login(self, username: str, password: str) -> Tuple[str, str]:
        """Authenticate and keep the returned user id and token."""
        data = self._request("POST", "/emby/Users/AuthenticateByName",
                             body={"Username": username, "Pw": password}) or {}
        user_id = (data.get("User") or {}).get("Id", "")
        token = data.get("AccessToken", "")
        if not user_id or not token:
            raise CatalogAuthError("Login response carried no token")
        self.user_id = user_id
        self.token = token
        logger.info(f"Logged in to {self.server} as {username}")
        return user_id, token

    def verify_token(self) -> bool:
        if not self.user_id or not self.token:
            return False
        try:
            self._request("GET", f"/emby/Users/{self.user_id}")
            return True
        except CatalogError as e:
            logger.info(f"Cached token rejected by {self.server}: {e}")
            return False

    def ping(self) -> float:
        """Round trip time of the public info endpoint, in seconds."""
        start = time.monotonic()
        self._request("GET", "/emby/System/Info/Public")
        return time.monotonic() - start

    # -- lists ---------------------------------------------------------------

    def get_libraries(self) -> List[MediaItem]:
        items, _ = self._items(f"/emby/Users/{self.user_id}/Views")
        return items

    def get_items(self, parent_id: str, start: int, limit: int) -> Tuple[List[MediaItem], int]:
        params = {
            "Recursive": "true",
            "Fields": LIST_FIELDS,
            "SortBy": "SortName",
            "SortOrder": "Ascending",
            "StartIndex": start,
            "Limit": limit,
            "ImageTypeLimit": 1,
            "EnableImageTypes": "Primary",
        }
        if parent_id:
            params["ParentId"] = parent_id
        return self._items(f"/emby/Users/{self.user_id}/Items", params)

    def get_resume(self, limit: int) -> List[MediaItem]:
        items, _ = self._items(f"/emby/Users/{self.user_id}/Items", {
            "Recursive": "true",
            "Limit": limit,
            "Fields": LIST_FIELDS,
            "Filters": "IsResumable",
            "SortBy": "DatePlayed",
            "SortOrder": "Descending",
            "IncludeItemTypes": "Movie,Episode",
            "ImageTypeLimit": 1,
            "EnableImageTypes": "Primary",
        })
        return items

    def get_favorites(self, limit: int) -> List[MediaItem]:
        items, _ = self._items(f"/emby/Users/{self.user_id}/Items", {
            "Recursive": "true",
            "Limit": limit,
            "Fields": LIST_FIELDS,
            "Filters": "IsFavorite",
            "IncludeItemTypes": "Movie,Series,Episode",
            "ImageTypeLimit": 1,
            "EnableImageTypes": "Primary",
        })
        return items

    def search(self, query: str, limit: int) -> List[MediaItem]:
        items, _ = self._items(f"/emby/Users/{self.user_id}/Items", {
            "Recursive": "true",
            "SearchTerm": query,
            "Limit": limit,
            "Fields": LIST_FIELDS,
        })
        return items

    def get_seasons(self, series_id: str) -> List[MediaItem]:
        items, _ = self._items(f"/emby/Shows/{series_id}/Seasons",
                               {"UserId": self.user_id, "Fields": "UserData"})
        return items

    def get_episodes(self, series_id: str, season_id: str) -> List[MediaItem]:
        items, _ = self._items(f"/emby/Shows/{series_id}/Episodes", {
            "UserId": self.user_id,
            "SeasonId": season_id,
            "Fields": "MediaSources,Overview,UserData",
        })
        return items

    def get_item(self, item_id: str) -> MediaItem:
        data = self._request("GET", f"/emby/Users/{self.user_id}/Items/{item_id}",
                             params={"Fields": ITEM_FIELDS})
        if not data:
            raise CatalogError(f"Item {item_id} not found", status=404)
        return MediaItem.from_api(data)

    # -- mutations -----------------------------------------------------------

    def set_favorite(self, item_id: str, favorite: bool) -> None:
        method = "POST" if favorite else "DELETE"
        self._request(method, f"/emby/Users/{self.user_id}/FavoriteItems/{item_id}")

    def report_playback_start(self, item_id: str, source_id: str, play_session_id: str,
                              position_ticks: int) -> None:
        self._request("POST", "/emby/Sessions/Playing", body={
            "ItemId": item_id,
            "MediaSourceId": source_id,
            "CanSeek": True,
            "PlayMethod": "DirectStream",
            "PlaySessionId": play_session_id,
            "PositionTicks": position_ticks,
        })

    def report_playback_progress(self, item_id: str, source_id: str, play_session_id: str,
                                 position_ticks: int, paused: bool = False) -> None:
        self._request("POST", "/emby/Sessions/Playing/Progress", body={
            "ItemId": item_id,
            "MediaSourceId": source_id,
            "CanSeek": True,
            "PlayMethod": "DirectStream",
            "PlaySessionId": play_session_id,
            "PositionTicks": position_ticks,
            "IsPaused": paused,
        })

    def report_playback_stopped(self, item_id: str, source_id: str, play_session_id: str,
                                position_ticks: int) -> None:
        self._request("POST", "/emby/Sessions/Playing/Stopped", body={
            "ItemId": item_id,
            "MediaSourceId": source_id,
            "PlaySessionId": play_session_id,
            "PositionTicks": position_ticks,
        })

    # -- URL builders --------------------------------------------------------

    def stream_url(self, item_id: str, source_id: str, container: str) -> str:
        query = urlencode({"MediaSourceId": source_id, "api_key": self.token, "Static": "true"})
        return f"{self.server}/emby/Videos/{item_id}/stream.{container or 'mkv'}?{query}"

    def subtitle_url(self, item_id: str, source_id: str, index: int) -> str:
        return (f"{self.server}/emby/Videos/{item_id}/{source_id}/Subtitles/{index}/Stream.srt"
                f"?{urlencode({'api_key': self.token})}")

    @staticmethod
    def image_path(item: MediaItem) -> str:
        """Server-relative primary image path; stable across hosts and tokens."""
        target = item.id
        if not item.primary_image_tag:
            target = item.series_id or item.season_id or item.parent_id or item.id
        return f"/emby/Items/{target}/Images/Primary"

    def image_url(self, item: MediaItem, max_width: int) -> str:
        query = urlencode({"maxWidth": max_width, "api_key": self.token})
        return f"{self.server}{self.image_path(item)}?{query}"

    def fetch_bytes(self, url: str, timeout: float) -> bytes:
        try:
            response = self.session.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CatalogError(f"Download failed: {e}") from e
        return response.content

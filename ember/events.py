"""
Background work and the completion events it produces.

A Task runs on a worker thread and yields exactly one event. Events are
delivered through a single queue that only the UI loop reads.
Results tied to one server connection carry the ``epoch`` their task was
created in, so the session can drop them after a switch.
"""
import concurrent.futures
import queue
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from logging_config import get_logger
from .models import MediaDetail, MediaItem
from .navigation import ViewSource

logger = get_logger('events')


@dataclass
class Event:
    """Base class for completion events."""


@dataclass
class ItemsLoaded(Event):
    token: int
    section: Any
    source: ViewSource
    items: List[MediaItem] = field(default_factory=list)
    total: int = 0
    page: int = 0
    title: str = ""
    error: Optional[str] = None


@dataclass
class CoverRendered(Event):
    key: str
    rendered: str
    geometry: Tuple[int, int]
    epoch: int = 0


@dataclass
class DetailLoaded(Event):
    item_id: str
    detail: Optional[MediaDetail] = None
    error: Optional[str] = None
    epoch: int = 0


@dataclass
class QueueEntry:
    item_id: str
    source_id: str
    url: str
    duration_sec: int = 0


@dataclass
class PlaybackPlan:
    """Everything the player needs, resolved before it starts."""
    title: str
    entries: List[QueueEntry]
    subtitle_urls: List[str] = field(default_factory=list)
    start_position: int = 0
    start_index: int = 0
    play_session_id: str = ""


@dataclass
class PlaybackReady(Event):
    plan: Optional[PlaybackPlan] = None
    detail: Optional[MediaDetail] = None
    error: Optional[str] = None
    epoch: int = 0


@dataclass
class PlaybackFinished(Event):
    plan: PlaybackPlan
    position_sec: int = 0
    playlist_index: int = 0
    error: Optional[str] = None


@dataclass
class PlaybackReported(Event):
    item_id: str
    ok: bool


@dataclass
class FavoriteToggled(Event):
    item_id: str
    favorite: bool
    error: Optional[str] = None
    epoch: int = 0


@dataclass
class ServerConnected(Event):
    index: int
    user_id: str = ""
    token: str = ""
    error: Optional[str] = None


@dataclass
class ProbeFinished(Event):
    prefix: str
    latencies: Dict[int, float] = field(default_factory=dict)


@dataclass
class LatencyMeasured(Event):
    latency: float
    epoch: int = 0


@dataclass
class TaskFailed(Event):
    name: str
    error: str


@dataclass
class Task:
    """A unit of blocking work that turns into exactly one event."""
    name: str
    fn: Callable[[], Event]

    def run(self) -> Event:
        try:
            event = self.fn()
        except Exception as e:
            logger.exception(f"Task {self.name} crashed")
            return TaskFailed(self.name, str(e))
        if not isinstance(event, Event):
            logger.error(f"Task {self.name} returned {event!r}")
            return TaskFailed(self.name, "no result")
        return event


class TaskRunner:
    """Thread pool feeding a single event queue."""

    def __init__(self, workers: int = 8):
        self.events: "queue.Queue[Event]" = queue.Queue()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="ember-task")

    def submit(self, task: Task) -> None:
        logger.debug(f"Submitting task {task.name}")
        self._executor.submit(self._run, task)

    def submit_all(self, tasks: List[Task]) -> None:
        for task in tasks:
            self.submit(task)

    def _run(self, task: Task) -> None:
        self.events.put(task.run())

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        events = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except queue.Empty:
                return events

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

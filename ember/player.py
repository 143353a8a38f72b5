"""
External video player control for ember.

The player runs in the foreground on the user's terminal. Its status line
is the only channel back: mpv is told to print ``POS:HH:MM:SS IDX:n`` and
the last position seen before the process exits is the resume point.
"""
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Sequence

from logging_config import get_logger, PlayerError, PlayerNotFoundError

logger = get_logger('player')

STATUS_PATTERN = re.compile(rb"POS:(\d+):(\d{2}):(\d{2})(?:\.\d+)?(?:\s+IDX:(\d+))?")

READ_CHUNK = 256


@dataclass
class PlayResult:
    """Outcome of one player run."""
    position_sec: int
    playlist_index: int = 0
    returncode: Optional[int] = None
    observed: bool = False


class StatusScanner:
    """Incremental parser for the player's status output.

    Chunks may end mid-line, so the unterminated tail is kept until the
    next chunk or ``finish``.
    """

    def __init__(self, start_index: int = 0):
        self.position: int = 0
        self.playlist_index: int = start_index
        self._pending = b""

    @property
    def observed(self) -> bool:
        return self.position > 0

    def feed(self, chunk: bytes) -> None:
        data = self._pending + chunk
        parts = re.split(rb"[\r\n]", data)
        self._pending = parts.pop()
        for line in parts:
            self._scan(line)

    def finish(self) -> None:
        if self._pending:
            self._scan(self._pending)
            self._pending = b""

    def _scan(self, line: bytes) -> None:
        for match in STATUS_PATTERN.finditer(line):
            hours, minutes, seconds, index = match.groups()
            position = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
            if position > 0:
                self.position = position
                if index is not None:
                    self.playlist_index = int(index)


def find_player(candidates: Sequence[str] = (), name: str = "mpv") -> Optional[str]:
    """Look in the fixed install locations first, then on PATH."""
    for candidate in candidates:
        path = Path(candidate).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
    return shutil.which(name)


class MPVPlayer:
    """Launches mpv for a queue of stream URLs and reports where it stopped."""

    def __init__(self, executable: Optional[str] = None,
                 subtitle_languages: Sequence[str] = (),
                 extra_args: Sequence[str] = ()):
        self.executable = executable
        self.subtitle_languages = list(subtitle_languages)
        self.extra_args = list(extra_args)

    @classmethod
    def detect(cls, candidates: Sequence[str] = (), **kwargs) -> "MPVPlayer":
        executable = find_player(candidates)
        if executable:
            logger.info(f"Using player at {executable}")
        else:
            logger.warning("mpv not found; playback disabled")
        return cls(executable, **kwargs)

    @property
    def available(self) -> bool:
        return bool(self.executable)

    def build_command(self, urls: Sequence[str], title: str, subtitle_urls: Sequence[str] = (),
                      start_position: int = 0, start_index: int = 0) -> List[str]:
        cmd = [
            self.executable or "mpv",
            "--hwdec=auto",
            "--vo=gpu",
            "--fullscreen",
            f"--title={title}",
        ]
        if self.subtitle_languages:
            cmd.append("--slang=" + ",".join(self.subtitle_languages))
        cmd.extend([
            "--term-playing-msg=",
            "--term-status-msg=POS:${time-pos} IDX:${playlist-pos}",
            "--msg-level=all=no,statusline=status",
        ])
        cmd.extend(self.extra_args)
        if start_index > 0:
            cmd.append(f"--playlist-start={int(start_index)}")
        for sub_url in subtitle_urls:
            cmd.append(f"--sub-file={sub_url}")
        if start_position > 0 and len(urls) == 1:
            cmd.append(f"--start={int(start_position)}")
            cmd.extend(urls)
        else:
            # per-file option block so later queue entries start from 0
            for i, url in enumerate(urls):
                if start_position > 0 and i == start_index:
                    cmd.extend(["--{", f"--start={int(start_position)}", url, "--}"])
                else:
                    cmd.append(url)
        return cmd

    def play(self, url: str, title: str, subtitle_urls: Sequence[str] = (),
             start_position: int = 0) -> PlayResult:
        return self.play_multiple([url], title, subtitle_urls, start_position, 0)

    def play_multiple(self, urls: Sequence[str], title: str, subtitle_urls: Sequence[str] = (),
                      start_position: int = 0, start_index: int = 0) -> PlayResult:
        """Play ``urls`` as one playlist, blocking until the player exits.

        Returns the last position the player reported, or ``start_position``
        when it reported none. Raises before spawning anything when there is
        no player or nothing to play.
        """
        if not self.executable:
            raise PlayerNotFoundError("mpv not found")
        if not urls:
            raise PlayerError("Nothing to play")

        cmd = self.build_command(urls, title, subtitle_urls, start_position, start_index)
        logger.debug(f"Player command: {cmd}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=None,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to start {self.executable}: {e}")
            raise PlayerError(f"Failed to start player: {e}") from e

        scanner = StatusScanner(start_index)
        fd = process.stdout.fileno()
        try:
            while True:
                try:
                    chunk = os.read(fd, READ_CHUNK)
                except OSError as e:
                    logger.warning(f"Player output closed: {e}")
                    break
                if not chunk:
                    break
                scanner.feed(chunk)
        finally:
            scanner.finish()
            process.stdout.close()
            returncode = process.wait()

        position = scanner.position if scanner.observed else int(start_position)
        logger.info(f"Player exited with {returncode}, position {position}s, "
                    f"index {scanner.playlist_index}")
        return PlayResult(
            position_sec=position,
            playlist_index=scanner.playlist_index,
            returncode=returncode,
            observed=scanner.observed,
        )

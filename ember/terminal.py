"""
Raw terminal handling: cbreak mode, key decoding and screen size.
"""
import contextlib
import fcntl
import os
import select
import shutil
import signal
import struct
import sys
import termios
import tty
from typing import Any, Optional, Tuple

from logging_config import get_logger

logger = get_logger('terminal')

HIDE_CURSOR = "\033[?25l"
SHOW_CURSOR = "\033[?25h"
ALT_SCREEN_ON = "\033[?1049h"
ALT_SCREEN_OFF = "\033[?1049l"
CLEAR = "\033[2J\033[H"

ESCAPE_SEQUENCES = {
    "[A": "up",
    "[B": "down",
    "[C": "right",
    "[D": "left",
    "OA": "up",
    "OB": "down",
    "OC": "right",
    "OD": "left",
    "[Z": "shift+tab",
    "[3~": "delete",
    "[H": "home",
    "[F": "end",
}

CONTROL_KEYS = {
    "\r": "enter",
    "\n": "enter",
    "\t": "tab",
    "\x7f": "backspace",
    "\x08": "backspace",
    "\x03": "ctrl+c",
}


def get_terminal_size() -> Tuple[int, int]:
    """Get (rows, cols) using ioctl with fallback to shutil."""
    try:
        if sys.stdout.isatty():
            winsize = struct.pack("HHHH", 0, 0, 0, 0)
            result = fcntl.ioctl(sys.stdout.fileno(), termios.TIOCGWINSZ, winsize)
            rows, cols, _, _ = struct.unpack("HHHH", result)
            if rows > 0 and cols > 0:
                return (rows, cols)
    except OSError:
        pass

    size = shutil.get_terminal_size()
    return (size.lines, size.columns)


def decode_key(data: str) -> str:
    """Map the characters of one key press to a key name."""
    if data == "\x1b":
        return "esc"
    if data.startswith("\x1b"):
        return ESCAPE_SEQUENCES.get(data[1:], "esc")
    return CONTROL_KEYS.get(data, data)


class Terminal:
    """Owns the tty while the UI runs.

    Use as a context manager; ``suspended`` hands the terminal back in
    cooked mode for a foreground child process.
    """

    def __init__(self, stdin=None, stdout=None):
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.fd = self.stdin.fileno()
        self._saved: Optional[list] = None
        self.resized = True

    def __enter__(self) -> "Terminal":
        self._saved = termios.tcgetattr(self.fd)
        self._enter_ui()
        signal.signal(signal.SIGWINCH, self._handle_resize)
        return self

    def __exit__(self, *exc: Any) -> None:
        signal.signal(signal.SIGWINCH, signal.SIG_DFL)
        self._leave_ui()

    def _handle_resize(self, signum: Optional[int] = None, frame: Any = None) -> None:
        self.resized = True

    def _enter_ui(self) -> None:
        tty.setcbreak(self.fd)
        self.write(ALT_SCREEN_ON + HIDE_CURSOR + CLEAR)

    def _leave_ui(self) -> None:
        self.write(SHOW_CURSOR + ALT_SCREEN_OFF)
        if self._saved is not None:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)

    @contextlib.contextmanager
    def suspended(self):
        """Give the terminal to a child process, then take it back."""
        self._leave_ui()
        try:
            yield
        finally:
            termios.tcflush(self.fd, termios.TCIFLUSH)
            self._enter_ui()
            self.resized = True

    def size(self) -> Tuple[int, int]:
        return get_terminal_size()

    def write(self, text: str) -> None:
        self.stdout.write(text)
        self.stdout.flush()

    def _read_char(self) -> str:
        first = os.read(self.fd, 1)
        if not first:
            return ""
        # complete a UTF-8 sequence
        needed = 0
        if first[0] >= 0xF0:
            needed = 3
        elif first[0] >= 0xE0:
            needed = 2
        elif first[0] >= 0xC0:
            needed = 1
        data = first
        if needed:
            data += os.read(self.fd, needed)
        return data.decode("utf-8", errors="replace")

    def _ready(self, timeout: float) -> bool:
        try:
            return bool(select.select([self.fd], [], [], timeout)[0])
        except InterruptedError:
            return False

    def read_key(self, timeout: float = 0.05) -> Optional[str]:
        """Next key name, or None if nothing arrived within ``timeout``."""
        if not self._ready(timeout):
            return None
        ch = self._read_char()
        if not ch:
            return None
        if ch != "\x1b":
            return decode_key(ch)

        seq = ch
        while self._ready(0.01) and len(seq) < 8:
            nxt = self._read_char()
            seq += nxt
            if len(seq) >= 3 and (nxt.isalpha() or nxt == "~"):
                break
        return decode_key(seq)

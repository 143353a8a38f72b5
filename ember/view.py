"""
Screen rendering: a status sidebar on the left, the cover carousel or the
active form on the right.
"""
import re
import unicodedata
from functools import lru_cache
from typing import List, Optional

from .models import ItemType
from .probe import is_unreachable
from .state import Section, State

COLOR_MAP = {
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "orange": "\033[38;5;208m",
    "cyan": "\033[36m",
    "gray": "\033[90m",
    "purple": "\033[38;5;99m",
    "bold": "\033[1m",
    "reverse": "\033[7m",
    "reset": "\033[0m",
}

C_HEADER = COLOR_MAP["bold"] + COLOR_MAP["purple"]
C_SECONDARY = COLOR_MAP["gray"]
C_SELECTION = COLOR_MAP["reverse"]
C_RESET = COLOR_MAP["reset"]
PLACEHOLDER_BG = "\033[48;5;237m\033[38;5;252m"

BROWSE_KEYS = [
    ("h/l", "move"),
    ("enter", "open"),
    ("esc", "back"),
    ("1-4", "section"),
    ("/", "search"),
    ("f", "favorite"),
    ("c", "continuous"),
    ("s/S", "season/series"),
    ("r", "refresh"),
    ("m", "servers"),
    ("d", "debug log"),
    ("q", "quit"),
]


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text for accurate length calculation."""
    return re.sub(r"\x1b\[[0-?]*[ -/]*[@-~]", "", text)


@lru_cache(maxsize=4096)
def char_display_width(ch: str) -> int:
    """Return display width of a single Unicode character (0, 1 or 2)."""
    if not ch:
        return 0
    cat = unicodedata.category(ch)
    if cat in ("Mn", "Me", "Cf"):
        return 0
    ea = unicodedata.east_asian_width(ch)
    if ea in ("F", "W"):
        return 2
    return 1


@lru_cache(maxsize=4096)
def display_width(text: str) -> int:
    """Return the visible terminal width of `text`, ignoring ANSI escapes."""
    return sum(char_display_width(ch) for ch in strip_ansi(text))


def truncate_to_width(text: str, max_width: int, ellipsis: str = "...") -> str:
    """Truncate plain `text` to fit in `max_width` display columns."""
    if max_width <= 0:
        return ""
    if display_width(text) <= max_width:
        return text

    e_width = display_width(ellipsis)
    target = max_width if e_width >= max_width else max_width - e_width

    out = []
    cur = 0
    for ch in text:
        w = char_display_width(ch)
        if cur + w > target:
            break
        out.append(ch)
        cur += w

    if e_width >= max_width:
        return "".join(out)
    return "".join(out) + ellipsis


def pad(text: str, width: int) -> str:
    """Pad (possibly colored) text with spaces to exactly `width` columns."""
    fill = width - display_width(text)
    return text + " " * fill if fill > 0 else text


def center(text: str, width: int) -> str:
    w = display_width(text)
    if w >= width:
        return text
    left = (width - w) // 2
    return " " * left + text + " " * (width - w - left)


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def format_latency(latency: Optional[float]) -> str:
    if latency is None:
        return f"{C_SECONDARY}--{C_RESET}"
    if is_unreachable(latency):
        return f"{COLOR_MAP['red']}unreachable{C_RESET}"
    ms = int(latency * 1000)
    if latency > 1.0:
        color = COLOR_MAP["red"]
    elif latency > 0.5:
        color = COLOR_MAP["orange"]
    else:
        color = COLOR_MAP["green"]
    return f"{color}{ms}ms{C_RESET}"


def render_sidebar(session, width: int, height: int) -> List[str]:
    inner = width - 2
    lines = [f"{C_HEADER}EMBER{C_RESET}"]
    active = session.store.active_server()
    lines.append(truncate_to_width(active.name if active else "No server", inner))
    lines.append("")

    for section in Section:
        marker = ">" if section == session.view.section else " "
        text = f"{marker} {section.value}"
        lines.append(f"{C_SELECTION}{text}{C_RESET}" if marker == ">" else text)
    lines.append("")

    lines.append(f"Ping: {format_latency(session.latency)}")
    player_ok = session.player is not None and session.player.available
    lines.append(f"MPV: {COLOR_MAP['green'] + 'OK' if player_ok else COLOR_MAP['red'] + 'N/A'}{C_RESET}")
    lines.append(f"Log: {'ON' if session.debug_logging else 'OFF'}")
    lines.append("")

    if session.status:
        lines.append(f"{C_SECONDARY}{truncate_to_width(session.status, inner)}{C_RESET}")

    item = session.current_item if session.state == State.BROWSING else None
    if item is not None:
        detail = session.details.get(item.id)
        if detail is not None and detail.subtitles:
            subs = " ".join(s.label for s in detail.subtitles)
            lines.append(truncate_to_width(f"Subs: {subs}", inner))
        if item.type == ItemType.EPISODE:
            if item.series_name:
                lines.append(truncate_to_width(item.series_name, inner))
            if item.season_name:
                lines.append(truncate_to_width(item.season_name, inner))

    summary = session.playback
    if summary.item_name:
        lines.append("")
        lines.append(truncate_to_width(f"Last: {summary.item_name}", inner))
        report = {True: "OK", False: "FAIL", None: "..."}[summary.report_ok]
        lines.append(f"@{format_duration(summary.position_sec)} Report: {report}")

    keys = BROWSE_KEYS if session.state in (State.BROWSING, State.LOADING) else []
    if keys and len(lines) + len(keys) + 1 <= height:
        lines.append("")
        lines.extend(f"{C_SECONDARY}{k:<6}{C_RESET}{v}" for k, v in keys)

    return [" " + truncate_line(line, inner) for line in lines[:height]]


def truncate_line(line: str, width: int) -> str:
    if display_width(line) <= width:
        return line
    return truncate_to_width(strip_ansi(line), width)


def render_placeholder(label: str, width: int, height: int) -> List[str]:
    rows = []
    for r in range(height):
        text = center(label, width) if r == height // 2 else " " * width
        rows.append(f"{PLACEHOLDER_BG}{text}{C_RESET}")
    return rows


def render_carousel(session, width: int, height: int) -> List[str]:
    items = session.items
    if not items:
        return [center("No items", width) if r == height // 2 else "" for r in range(height)]

    cover_w, cover_h = session.cover_size
    item = session.current_item
    rendered = session.cover_for(item)
    if rendered:
        cover_rows = [center(row, width) for row in rendered.split("\n")][:cover_h]
        top = (cover_h - len(cover_rows)) // 2
        cover_rows = [""] * top + cover_rows + [""] * (cover_h - top - len(cover_rows))
    else:
        box_w = max(1, min(cover_w, cover_h * 4 // 3))
        cover_rows = [center(row, width) for row in render_placeholder(item.type.label, box_w, cover_h)]

    title = truncate_to_width(item.display_title, width - 2)
    subtitle = item.type.value
    if item.is_favorite:
        subtitle += " [FAV]"
    if item.position_seconds > 0:
        subtitle += f"  @{format_duration(item.position_seconds)}"
    view = session.view
    nav = f"< {view.cursor + 1} / {len(view.item_ids)} >  Page {view.page + 1}"

    lines = cover_rows + [
        center(f"{COLOR_MAP['bold']}{title}{C_RESET}", width),
        center(f"{C_SECONDARY}{subtitle}{C_RESET}", width),
        center(f"{C_SECONDARY}{nav}{C_RESET}", width),
    ]
    return lines[:height]


def render_server_manage(session, width: int) -> List[str]:
    lines = [f"{C_HEADER}Server Management{C_RESET}", ""]
    servers = session.store.servers()
    if not servers:
        lines.append(f"{C_SECONDARY}No servers configured{C_RESET}")
    active_idx = session.store.active_index
    for i, profile in enumerate(servers):
        marker = "*" if i == active_idx else " "
        latency = ""
        if i in session.server_latencies:
            latency = "  " + format_latency(session.server_latencies[i])
        text = truncate_to_width(f"{marker} {profile.name}  {profile.url}", width - 16)
        if i == session.manage_cursor:
            text = f"{C_SELECTION}{text}{C_RESET}"
        lines.append(text + latency)
    lines.append("")
    lines.append(f"{C_SECONDARY}[a]dd [e]dit [d]elete [p]ing [enter] connect [esc] back{C_RESET}")
    return lines


def render_server_edit(session, width: int) -> List[str]:
    form = session.form
    if form is None:
        return []
    title = "Add Server" if form.index is None else "Edit Server"
    lines = [f"{C_HEADER}{title}{C_RESET}", ""]
    for i, field_input in enumerate(form.inputs):
        cursor = "_" if i == form.focus else ""
        text = f"{field_input.label:<9} {field_input.display}{cursor}"
        text = truncate_to_width(text, width - 4)
        lines.append(f"{C_SELECTION}{text}{C_RESET}" if i == form.focus else text)
    if form.error:
        lines.append("")
        lines.append(f"{COLOR_MAP['red']}{form.error}{C_RESET}")
    lines.append("")
    lines.append(f"{C_SECONDARY}[tab] next  [enter] save  [esc] cancel{C_RESET}")
    return lines


def render_search(session, width: int) -> List[str]:
    query = truncate_to_width(session.search.value, width - 6)
    return [
        f"{C_HEADER}Search{C_RESET}",
        "",
        f"> {query}_",
        "",
        f"{C_SECONDARY}[enter] search  [esc] cancel{C_RESET}",
    ]


def vcenter(lines: List[str], width: int, height: int) -> List[str]:
    body = [center(line, width) for line in lines[:height]]
    top = (height - len(body)) // 2
    return [""] * top + body


def render_content(session, width: int, height: int) -> List[str]:
    state = session.state
    if state == State.SERVER_MANAGE:
        return vcenter(render_server_manage(session, width), width, height)
    if state == State.SERVER_EDIT:
        return vcenter(render_server_edit(session, width), width, height)
    if state == State.SEARCHING:
        return vcenter(render_search(session, width), width, height)
    if state == State.LOADING:
        return vcenter(["Loading..."], width, height)
    return render_carousel(session, width, height)


def render(session, rows: int, cols: int) -> str:
    """Compose a full frame for a rows x cols terminal."""
    sidebar_w = min(session.config.sidebar_width, max(0, cols - 10))
    content_w = max(0, cols - sidebar_w)
    sidebar = render_sidebar(session, sidebar_w, rows)
    content = render_content(session, content_w, rows)

    out = []
    for r in range(rows):
        left = pad(sidebar[r] if r < len(sidebar) else "", sidebar_w)
        right = content[r] if r < len(content) else ""
        out.append(f"{left}{right}{C_RESET}\033[K")
    return "\033[H" + "\n".join(out)

"""
Cover art rendering with truecolor half-block characters.

Each terminal cell shows two vertically stacked pixels: the foreground
colour of "▀" is the top pixel and the background the bottom one.
"""
import io
from typing import Tuple

from PIL import Image

from logging_config import get_logger

logger = get_logger('images')

HALF_BLOCK = "▀"
RESET = "\033[0m"


def fit_size(image_width: int, image_height: int, width: int, height: int) -> Tuple[int, int]:
    """Largest (columns, rows) box inside width x height keeping the aspect ratio."""
    if image_width <= 0 or image_height <= 0 or width <= 0 or height <= 0:
        return (0, 0)
    pixel_height = height * 2
    scale = min(width / image_width, pixel_height / image_height)
    cols = max(1, min(width, int(image_width * scale)))
    rows = max(1, min(height, int(image_height * scale) // 2))
    return (cols, rows)


def decode(data: bytes) -> Image.Image:
    """Decode raw image bytes to RGB. Raises OSError for unreadable data."""
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGB")


def render(bitmap: Image.Image, width: int, height: int) -> str:
    """Render ``bitmap`` into at most width x height cells.

    Pure function of its inputs; the result has one line per row and no
    trailing newline.
    """
    cols, rows = fit_size(bitmap.width, bitmap.height, width, height)
    if cols == 0 or rows == 0:
        return ""

    img = bitmap.convert("RGB").resize((cols, rows * 2), Image.Resampling.LANCZOS)
    pixels = img.load()

    lines = []
    for row in range(rows):
        parts = []
        last = None
        for col in range(cols):
            top = pixels[col, row * 2]
            bottom = pixels[col, row * 2 + 1]
            if (top, bottom) != last:
                parts.append(f"\033[38;2;{top[0]};{top[1]};{top[2]}m"
                             f"\033[48;2;{bottom[0]};{bottom[1]};{bottom[2]}m")
                last = (top, bottom)
            parts.append(HALF_BLOCK)
        parts.append(RESET)
        lines.append("".join(parts))
    return "\n".join(lines)


def fetch_cover(client, item, width: int, height: int, max_width: int, timeout: float) -> str:
    """Download an item's primary image and render it for the cover box."""
    url = client.image_url(item, max_width)
    data = client.fetch_bytes(url, timeout)
    bitmap = decode(data)
    logger.debug(f"Rendering {bitmap.width}x{bitmap.height} cover for {item.id} into {width}x{height}")
    return render(bitmap, width, height)

"""Caption layout for burned-in text overlays.

``layout_caption`` picks a font size and a line wrap for an arbitrary caption
so that the estimated rendered width stays under a fraction of the frame width
and the block sits near the bottom of the frame. Long text never gets
truncated: when even the minimum font size cannot meet the line budget, the
wrap simply grows more lines.
"""

from __future__ import annotations

import math
import textwrap
from dataclasses import dataclass
from typing import Optional

SHORT_MAX_CHARS = 80
MEDIUM_MAX_CHARS = 240

CHAR_WIDTH_RATIO = 0.6
LINE_SPACING_RATIO = 8 / 36
TOP_LIMIT_RATIO = 0.60
BOTTOM_MARGIN_RATIO = 0.04
MIN_FONT_RATIO = 0.018
MIN_FONT_PX = 12

_FONT_RATIO = {"short": 0.045, "medium": 0.034, "long": 0.030}

# (orientation, bucket) -> max width fraction, (min lines, max lines)
_WIDTH_FRACTION = {
    ("landscape", "short"): 0.65,
    ("landscape", "medium"): 0.82,
    ("landscape", "long"): 0.82,
    ("portrait", "short"): 0.80,
    ("portrait", "medium"): 0.85,
    ("portrait", "long"): 0.85,
}
_LINE_BOUNDS = {
    ("landscape", "short"): (1, 1),
    ("landscape", "medium"): (2, 3),
    ("landscape", "long"): (4, 8),
    ("portrait", "short"): (1, 2),
    ("portrait", "medium"): (3, 10),
    ("portrait", "long"): (6, 20),
}

_ESCAPED_CHARS = ("\\", ":", "%", "'", '"')
_OPTION_SPECIAL = ("\\", "'", ":")
_GRAPH_SPECIAL = ("\\", "'", "[", "]", ",", ";")


@dataclass(frozen=True)
class CaptionLayout:
    font_size: int
    wrapped_text: str
    escaped_text: str
    estimated_width: int
    max_chars_per_line: int
    line_count: int
    line_spacing: int
    x: int
    y: int
    max_width_fraction: float
    window_start: float
    window_end: float


def length_bucket(char_count: int) -> str:
    if char_count <= SHORT_MAX_CHARS:
        return "short"
    if char_count <= MEDIUM_MAX_CHARS:
        return "medium"
    return "long"


def orientation(frame_width: int, frame_height: int) -> str:
    return "portrait" if frame_height >= frame_width else "landscape"


def max_width_fraction(frame_width: int, frame_height: int, char_count: int) -> float:
    return _WIDTH_FRACTION[(orientation(frame_width, frame_height), length_bucket(char_count))]


def line_bounds(frame_width: int, frame_height: int, char_count: int) -> tuple[int, int]:
    return _LINE_BOUNDS[(orientation(frame_width, frame_height), length_bucket(char_count))]


def normalize_text(text: str) -> str:
    paragraphs = [" ".join(part.split()) for part in (text or "").splitlines()]
    return "\n".join(part for part in paragraphs if part)


def wrap_text(text: str, chars_per_line: int) -> list[str]:
    lines: list[str] = []
    for paragraph in text.split("\n"):
        lines.extend(textwrap.wrap(paragraph, width=max(1, chars_per_line), break_long_words=True))
    return lines


def _chars_per_line(font_size: int, width_limit: float, char_count: int, min_lines: int) -> int:
    width_cap = math.floor(width_limit / (CHAR_WIDTH_RATIO * font_size))
    # Narrow enough that word wrapping cannot produce fewer than min_lines.
    lines_cap = math.floor((char_count + 1) / min_lines) - 1
    return max(1, min(width_cap, lines_cap))


def layout_caption(
    text: str,
    window_start: float,
    window_end: float,
    frame_width: int,
    frame_height: int,
) -> Optional[CaptionLayout]:
    normalized = normalize_text(text)
    if not normalized or window_end <= window_start or frame_width <= 0 or frame_height <= 0:
        return None

    char_count = len(normalized)
    bucket = length_bucket(char_count)
    fraction = max_width_fraction(frame_width, frame_height, char_count)
    min_lines, max_lines = line_bounds(frame_width, frame_height, char_count)
    width_limit = frame_width * fraction

    short_side = min(frame_width, frame_height)
    min_font = max(MIN_FONT_PX, int(round(short_side * MIN_FONT_RATIO)))
    preferred_font = max(min_font, int(round(short_side * _FONT_RATIO[bucket])))
    bottom_margin = int(round(frame_height * BOTTOM_MARGIN_RATIO))
    available_height = frame_height - bottom_margin - frame_height * TOP_LIMIT_RATIO

    font_size = preferred_font
    while True:
        chars_per_line = _chars_per_line(font_size, width_limit, char_count, min_lines)
        lines = wrap_text(normalized, chars_per_line)
        spacing = int(round(font_size * LINE_SPACING_RATIO))
        block_height = len(lines) * font_size + (len(lines) - 1) * spacing
        if (len(lines) <= max_lines and block_height <= available_height) or font_size <= min_font:
            break
        font_size -= 1

    longest = max(len(line) for line in lines)
    estimated_width = int(longest * CHAR_WIDTH_RATIO * font_size)
    wrapped = "\n".join(lines)
    return CaptionLayout(
        font_size=font_size,
        wrapped_text=wrapped,
        escaped_text=escape_filter_text(wrapped),
        estimated_width=estimated_width,
        max_chars_per_line=chars_per_line,
        line_count=len(lines),
        line_spacing=spacing,
        x=max(0, (frame_width - estimated_width) // 2),
        y=max(0, frame_height - bottom_margin - block_height),
        max_width_fraction=fraction,
        window_start=float(window_start),
        window_end=float(window_end),
    )


def escape_filter_text(text: str) -> str:
    """Prefix drawtext control characters with a backslash."""
    out: list[str] = []
    for char in text:
        if char in _ESCAPED_CHARS:
            out.append("\\")
        out.append(char)
    return "".join(out)


def unescape_filter_text(text: str) -> str:
    out: list[str] = []
    chars = iter(text)
    for char in chars:
        if char == "\\":
            nxt = next(chars, "")
            if nxt in _ESCAPED_CHARS:
                out.append(nxt)
                continue
            out.append(char)
            out.append(nxt)
            continue
        out.append(char)
    return "".join(out)


def _backslash(text: str, special: tuple[str, ...]) -> str:
    return "".join("\\" + char if char in special else char for char in text)


def escape_filter_value(value: str) -> str:
    """Escape an option value for both the filtergraph and the option parser.

    ffmpeg unescapes a ``-vf`` argument twice: once while splitting the graph
    into filters and once while splitting a filter's ``key=value`` pairs.
    """
    return _backslash(_backslash(value, _OPTION_SPECIAL), _GRAPH_SPECIAL)


def build_drawtext_filter(layout: CaptionLayout, text_file: str, font_file: Optional[str] = None) -> str:
    """drawtext reading ``layout.wrapped_text`` from ``text_file`` verbatim.

    The caption never goes inline: ``expansion=none`` stops drawtext from
    treating ``%`` as a format sequence.
    """
    parts = [
        f"drawtext=textfile={escape_filter_value(text_file)}",
        "expansion=none",
        f"fontsize={layout.font_size}",
    ]
    if font_file:
        parts.append(f"fontfile={escape_filter_value(font_file)}")
    parts.extend(
        [
            "fontcolor=white",
            "bordercolor=black",
            "borderw=2",
            f"x={layout.x}",
            f"y={layout.y}",
            f"line_spacing={layout.line_spacing}",
            f"enable='between(t,{layout.window_start:.2f},{layout.window_end:.2f})'",
        ]
    )
    return ":".join(parts)

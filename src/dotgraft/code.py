"""Syntax-highlighted code blocks as embeddable fragments."""
from __future__ import annotations

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from PIL import ImageFont
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name, guess_lexer
from pygments.util import ClassNotFound

from .dotgraft import XHTML_NS, Fragment, FragmentError

logger = logging.getLogger(__name__)

DEFAULT_THEME = "solarized-light"
DEFAULT_FONT_SIZE = "14px"
# Pygments sets line-height: 125% on the <pre> it emits.
LINE_HEIGHT_RATIO = 1.25
TAB_SIZE = 8

MONOSPACE_FAMILIES = [
    "DejaVu Sans Mono",
    "Liberation Mono",
    "Menlo",
    "Consolas",
    "Courier New",
]


@dataclass
class CodeOptions:
    language: Optional[str] = None
    font_size: str = DEFAULT_FONT_SIZE
    theme: str = DEFAULT_THEME
    padding: str = "0"


class _MonospaceMeasurer:
    """Caches Pillow fonts and measures single lines of code."""

    FONT_DIRS = [
        Path("/System/Library/Fonts"),
        Path("/Library/Fonts"),
        Path("~/Library/Fonts").expanduser(),
        Path("/usr/share/fonts"),
        Path("/usr/local/share/fonts"),
        Path("C:/Windows/Fonts"),
    ]

    def __init__(self) -> None:
        self._font_cache: Dict[int, Optional[ImageFont.FreeTypeFont]] = {}
        self._font_path: Optional[str] = None
        self._font_path_searched = False

    def font(self, size: float) -> Optional[ImageFont.FreeTypeFont]:
        key_size = max(1, int(round(size)))
        if key_size in self._font_cache:
            return self._font_cache[key_size]
        candidates: List[str] = []
        located = self._locate_font()
        if located:
            candidates.append(located)
        candidates.append("DejaVuSansMono.ttf")

        font: Optional[ImageFont.FreeTypeFont] = None
        for candidate in candidates:
            try:
                font = ImageFont.truetype(candidate, key_size)
                break
            except OSError:
                continue
        if font is None:
            logger.debug(
                "no monospace TrueType font found; measuring code at %dpx with Pillow's default font",
                key_size,
            )
            try:
                font = ImageFont.load_default(size=key_size)
            except (OSError, TypeError):
                logger.debug("Pillow default font unavailable; estimating code widths")
                font = None
        self._font_cache[key_size] = font
        return font

    def measure(self, text: str, size: float) -> float:
        font = self.font(size)
        if font is None:
            return 0.6 * size * len(text)
        return float(font.getlength(text))

    def _locate_font(self) -> Optional[str]:
        if self._font_path_searched:
            return self._font_path
        self._font_path_searched = True
        wanted = [re.sub(r"[^a-z0-9]+", "", family.lower()) for family in MONOSPACE_FAMILIES]
        best: Optional[Tuple[int, str]] = None
        for directory in self.FONT_DIRS:
            if not directory.exists():
                continue
            try:
                for path in directory.rglob("*.ttf"):
                    stem = re.sub(r"[^a-z0-9]+", "", path.stem.lower())
                    if stem not in wanted:
                        continue
                    rank = wanted.index(stem)
                    if best is None or rank < best[0]:
                        best = (rank, str(path))
            except OSError:
                continue
        self._font_path = best[1] if best else None
        return self._font_path


_MEASURER = _MonospaceMeasurer()


def render_code(code: str, options: Optional[CodeOptions] = None) -> Fragment:
    """Highlight ``code`` into an XHTML block and measure it."""
    options = options or CodeOptions()
    font_size = _css_px(options.font_size, "font size")
    top, right, bottom, left = _css_padding(options.padding)
    css_padding = f"{top:g}px {right:g}px {bottom:g}px {left:g}px"

    try:
        lexer = get_lexer_by_name(options.language) if options.language else guess_lexer(code)
    except ClassNotFound as exc:
        raise FragmentError(f"unknown code language: {options.language or '<guess>'}") from exc
    try:
        formatter = HtmlFormatter(noclasses=True, style=options.theme)
    except ClassNotFound as exc:
        raise FragmentError(f"unknown highlight theme: {options.theme}") from exc

    highlighted = highlight(code, lexer, formatter)
    container_style = f"width: fit-content; font-size: {font_size:g}px; margin: 0;"
    try:
        container = ET.fromstring(
            f'<div xmlns="{XHTML_NS}" style="{container_style}">{highlighted}</div>'
        )
    except ET.ParseError as exc:
        raise FragmentError(f"highlighted code is not well-formed XHTML: {exc}") from exc
    pre = container.find(f".//{{{XHTML_NS}}}pre")
    if pre is not None:
        style = (pre.get("style") or "").strip()
        if style and not style.endswith(";"):
            style += ";"
        pre.set("style", f"{style} margin: 0; padding: {css_padding};".strip())

    lines = code.rstrip("\n").split("\n")
    text_width = max(_MEASURER.measure(line.expandtabs(TAB_SIZE), font_size) for line in lines)
    width = text_width + left + right
    height = len(lines) * font_size * LINE_HEIGHT_RATIO + top + bottom
    logger.debug("rendered %s code block: %d lines, %.1fx%.1f px", lexer.name, len(lines), width, height)
    return Fragment(container, width, height)


async def render_code_segments(
    segments: Mapping[str, str], options: Optional[CodeOptions] = None
) -> Dict[str, Fragment]:
    """Render each code segment, one at a time, keyed like ``segments``."""
    fragments: Dict[str, Fragment] = {}
    for segment_id, code in segments.items():
        fragments[segment_id] = await asyncio.to_thread(render_code, code, options)
    return fragments


def _css_px(value: str, what: str) -> float:
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)(px)?\s*", value or "")
    if not match:
        raise FragmentError(f"invalid {what} {value!r}; expected a pixel length like 14px")
    return float(match.group(1))


def _css_padding(value: str) -> Tuple[float, float, float, float]:
    parts = (value or "0").split()
    if not 1 <= len(parts) <= 4:
        raise FragmentError(f"invalid padding {value!r}; expected 1 to 4 pixel lengths")
    sizes = [_css_px(part, "padding") for part in parts]
    if len(sizes) == 1:
        sizes = sizes * 4
    elif len(sizes) == 2:
        sizes = [sizes[0], sizes[1], sizes[0], sizes[1]]
    elif len(sizes) == 3:
        sizes = [sizes[0], sizes[1], sizes[2], sizes[1]]
    top, right, bottom, left = sizes
    return top, right, bottom, left

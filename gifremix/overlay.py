"""
Text overlay rendering.

render_text_overlay is stateless: it never modifies the raster it is given and
may be called concurrently for independent rasters. Fonts are resolved by
family and weight and cached per size.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from .config import parse_color
from .models import TextOverlaySpec

logger = logging.getLogger(__name__)

BOLD_WEIGHTS = frozenset({"bold", "bolder", "600", "700", "800", "900"})

# Tried in order when the requested family cannot be found.
FALLBACK_FAMILIES = ("DejaVuSans", "LiberationSans", "Arial")

FontType = ImageFont.FreeTypeFont | ImageFont.ImageFont


def is_bold(font_weight: str) -> bool:
    return str(font_weight).strip().lower() in BOLD_WEIGHTS


def font_file_candidates(family: str, bold: bool) -> List[str]:
    """File names a font family is commonly shipped under."""
    compact = family.replace(" ", "")
    names: List[str] = []
    if bold:
        for base in (family, compact):
            names.extend([f"{base}-Bold.ttf", f"{base} Bold.ttf", f"{base}bd.ttf"])
        names.append(f"{compact.lower()}bd.ttf")
    for base in (family, compact, compact.lower()):
        names.append(f"{base}.ttf")
    seen = set()
    return [name for name in names if not (name in seen or seen.add(name))]


def _search_paths(name: str, font_dirs: Sequence[str]) -> Iterable[str]:
    for directory in font_dirs:
        candidate = Path(directory) / name
        if candidate.is_file():
            yield str(candidate)
    # Bare names let Pillow search the platform font directories.
    yield name


@lru_cache(maxsize=64)
def resolve_font(
    family: str,
    size: int,
    bold: bool = True,
    font_dirs: Tuple[str, ...] = (),
) -> FontType:
    """
    Load a TrueType font for ``family`` at ``size`` pixels.

    Falls back to common sans fonts and finally to Pillow's built-in font.
    """
    for current in (family, *FALLBACK_FAMILIES):
        for name in font_file_candidates(current, bold):
            for path in _search_paths(name, font_dirs):
                try:
                    font = ImageFont.truetype(path, size)
                except OSError:
                    continue
                if current != family:
                    logger.warning("Font %r not found; using %s", family, path)
                return font
    logger.warning("No TrueType font found for %r; using Pillow default font", family)
    return ImageFont.load_default(size=size)


def text_anchor_point(spec: TextOverlaySpec, size: Tuple[int, int]) -> Tuple[float, float]:
    """Pixel position of the text block center for a raster of ``size``."""
    position = spec.position.clamped()
    return (position.x * size[0], position.y * size[1])


def render_text_overlay(
    raster: Image.Image,
    spec: TextOverlaySpec,
    font_dirs: Tuple[str, ...] = (),
) -> Image.Image:
    """
    Stamp the overlay text onto a copy of ``raster``.

    The outline is stroked first and the fill drawn over it, centered on the
    spec's normalized position.

    Args:
        raster: A fully composited frame
        spec: Text, font and color settings
        font_dirs: Extra directories searched for font files

    Returns:
        A new RGBA image; a plain copy when the text is empty or whitespace
    """
    base = raster.convert("RGBA") if raster.mode != "RGBA" else raster.copy()
    if not spec.has_text:
        return base

    fill = parse_color(spec.fill_color)
    outline = parse_color(spec.outline_color)
    font = resolve_font(
        spec.font_family,
        max(1, int(spec.font_size_px)),
        is_bold(spec.font_weight),
        tuple(font_dirs),
    )

    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    stroke_width = max(0, int(spec.outline_width_px))
    draw.text(
        text_anchor_point(spec, base.size),
        spec.text,
        font=font,
        fill=fill,
        anchor="mm",
        align="center",
        stroke_width=stroke_width,
        stroke_fill=outline if stroke_width else None,
    )
    base.alpha_composite(layer)
    return base


def font_search_dirs(extra: Iterable[str] = ()) -> Tuple[str, ...]:
    """Configured font directories plus the user's local font folder if present."""
    dirs = [str(d) for d in extra]
    local = Path(os.path.expanduser("~")) / ".fonts"
    if local.is_dir():
        dirs.append(str(local))
    return tuple(dirs)

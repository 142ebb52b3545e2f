"""
Engine configuration and small parsing helpers.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from PIL import ImageColor

from .errors import ValidationError

MIN_QUALITY = 1
MAX_QUALITY = 30
MIN_POOL_SIZE = 2
MAX_POOL_SIZE = 4


@dataclass(frozen=True)
class RemixConfig:
    """Configuration for rendering and encoding a remix."""

    quality: int = 10  # Palette sampling factor, 1 (best) .. 30 (fastest)
    loop: int = 0
    background: str = "#000000"
    transparent: bool = False
    default_delay_ms: int = 100
    min_workers: int = 2
    max_workers: int = 4
    render_share: float = 0.3
    font_dirs: Tuple[str, ...] = ()

    def __post_init__(self):
        if not MIN_POOL_SIZE <= self.min_workers <= self.max_workers <= MAX_POOL_SIZE:
            raise ValidationError(
                f"Encoder workers must satisfy {MIN_POOL_SIZE} <= min_workers <= max_workers <= {MAX_POOL_SIZE}."
                f" Got: {self.min_workers}..{self.max_workers}"
            )


DEFAULT_CONFIG = RemixConfig()


def parse_color(color_text: str) -> Tuple[int, int, int, int]:
    """Parse a color string into RGBA tuple. Returns (0,0,0,0) for 'transparent'."""
    if not isinstance(color_text, str) or not color_text.strip():
        raise ValidationError(f"Invalid color: {color_text!r}.")
    if color_text.lower() == "transparent":
        return (0, 0, 0, 0)
    try:
        color = ImageColor.getrgb(color_text)
    except ValueError as exc:
        raise ValidationError(
            f"Invalid color: {color_text}. Use hex (#FFFFFF), color name, or 'transparent'."
        ) from exc
    if len(color) == 3:
        return (*color, 255)
    return color


def validate_quality(quality: int) -> int:
    try:
        value = int(quality)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Quality must be an integer. Got: {quality!r}") from exc
    if not MIN_QUALITY <= value <= MAX_QUALITY:
        raise ValidationError(
            f"Quality must be between {MIN_QUALITY} and {MAX_QUALITY}. Got: {value}"
        )
    return value


def quality_label(quality: int) -> str:
    if quality <= 5:
        return "high quality"
    if quality <= 15:
        return "balanced"
    return "fast"


def pool_size(config: RemixConfig = DEFAULT_CONFIG, available: Optional[int] = None) -> int:
    """Encoder worker count: available parallelism clamped to the configured bounds."""
    if available is None:
        available = os.cpu_count() or config.min_workers
    return max(config.min_workers, min(available, config.max_workers))


def _env_bool(text: str) -> bool:
    return text.strip().lower() in ("1", "true", "yes", "on")


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> RemixConfig:
    """Build a config from GIFREMIX_* environment variables."""
    env = os.environ if environ is None else environ
    font_dirs = env.get("GIFREMIX_FONT_DIRS", "")
    try:
        config = RemixConfig(
            quality=validate_quality(env.get("GIFREMIX_QUALITY", DEFAULT_CONFIG.quality)),
            loop=int(env.get("GIFREMIX_LOOP", DEFAULT_CONFIG.loop)),
            background=env.get("GIFREMIX_BACKGROUND", DEFAULT_CONFIG.background),
            transparent=_env_bool(env.get("GIFREMIX_TRANSPARENT", "false")),
            max_workers=int(env.get("GIFREMIX_MAX_WORKERS", DEFAULT_CONFIG.max_workers)),
            font_dirs=tuple(part for part in font_dirs.split(os.pathsep) if part),
        )
    except ValueError as exc:
        raise ValidationError(f"Invalid GIFREMIX_* environment setting: {exc}") from exc
    parse_color(config.background)
    return config

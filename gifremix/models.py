"""
Shared data types for the remix engine.

Frames and containers are immutable once decoded. The overlay spec is a frozen
dataclass; edits produce a new instance via the ``with_*`` helpers.
"""

from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Tuple

from PIL import Image

from .errors import ValidationError


class Disposal(IntEnum):
    """GIF disposal methods (Graphic Control Extension, bits 2-4)."""

    NONE = 0
    DO_NOT_DISPOSE = 1
    RESTORE_TO_BACKGROUND = 2
    RESTORE_TO_PREVIOUS = 3

    @classmethod
    def from_code(cls, code: int) -> "Disposal":
        """Map a raw disposal value; reserved values 4-7 are treated as NONE."""
        try:
            return cls(code)
        except ValueError:
            return cls.NONE


class JobState(str, Enum):
    IDLE = "idle"
    RENDERING = "rendering"
    ENCODING = "encoding"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in (JobState.RENDERING, JobState.ENCODING)


TERMINAL_STATES = frozenset({JobState.FINISHED, JobState.CANCELLED, JobState.FAILED})


@dataclass(frozen=True)
class FrameRect:
    """Patch rectangle of a frame inside the logical screen."""

    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height

    @property
    def box(self) -> Tuple[int, int, int, int]:
        """Pillow-style ``(left, upper, right, lower)`` box."""
        return (self.left, self.top, self.right, self.bottom)

    def fits_within(self, width: int, height: int) -> bool:
        return (
            self.left >= 0
            and self.top >= 0
            and self.right <= width
            and self.bottom <= height
        )

    def clipped(self, width: int, height: int) -> "FrameRect":
        """Return the part of this rectangle that lies inside ``width`` x ``height``."""
        left = min(max(self.left, 0), width)
        top = min(max(self.top, 0), height)
        right = min(max(self.right, left), width)
        bottom = min(max(self.bottom, top), height)
        return FrameRect(left, top, right - left, bottom - top)


@dataclass(frozen=True)
class Frame:
    """One decoded frame: its RGBA patch plus placement and timing."""

    patch: Image.Image
    dims: FrameRect
    delay_ms: int
    disposal: Disposal = Disposal.NONE


@dataclass(frozen=True)
class GifContainer:
    """A decoded GIF: logical screen size and the ordered frame list."""

    width: int
    height: int
    frames: Tuple[Frame, ...]
    loop: int = 0

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)

    def __len__(self) -> int:
        return len(self.frames)


@dataclass(frozen=True)
class OverlayPosition:
    """Normalized anchor of the text block center, each axis in [0, 1]."""

    x: float = 0.5
    y: float = 0.9

    def clamped(self) -> "OverlayPosition":
        return OverlayPosition(_clamp(float(self.x), 0.0, 1.0), _clamp(float(self.y), 0.0, 1.0))


POSITION_PRESETS: Dict[str, OverlayPosition] = {
    "top": OverlayPosition(0.5, 0.15),
    "center": OverlayPosition(0.5, 0.5),
    "bottom": OverlayPosition(0.5, 0.85),
}

MIN_FONT_SIZE = 12
MAX_FONT_SIZE = 120
MAX_OUTLINE_WIDTH = 10


@dataclass(frozen=True)
class TextOverlaySpec:
    """User-styled text label burned into every output frame."""

    text: str = ""
    font_family: str = "Impact"
    font_size_px: int = 48
    font_weight: str = "bold"
    fill_color: str = "#ffffff"
    outline_color: str = "#000000"
    outline_width_px: int = 3
    position: OverlayPosition = field(default_factory=OverlayPosition)

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    def with_position(self, x: float, y: float) -> "TextOverlaySpec":
        """Move the anchor, clamping both coordinates into [0, 1]."""
        return replace(self, position=OverlayPosition(x, y).clamped())

    def with_preset(self, name: str) -> "TextOverlaySpec":
        try:
            preset = POSITION_PRESETS[name]
        except KeyError as exc:
            raise ValidationError(
                f"Unknown position preset: {name}. Use one of {', '.join(POSITION_PRESETS)}."
            ) from exc
        return replace(self, position=preset)

    def normalized(self) -> "TextOverlaySpec":
        """Strip the text and clamp size, outline width and position to their ranges."""
        return replace(
            self,
            text=(self.text or "").strip(),
            font_size_px=_clamp(int(self.font_size_px), MIN_FONT_SIZE, MAX_FONT_SIZE),
            outline_width_px=_clamp(int(self.outline_width_px), 0, MAX_OUTLINE_WIDTH),
            position=self.position.clamped(),
        )

    def validate(self) -> None:
        """Raise ``ValidationError`` for values the renderer cannot draw."""
        from .config import parse_color

        if self.font_size_px <= 0:
            raise ValidationError("Font size must be a positive number of pixels.")
        if self.outline_width_px < 0:
            raise ValidationError("Outline width cannot be negative.")
        parse_color(self.fill_color)
        parse_color(self.outline_color)

    def to_metadata(self) -> Dict[str, Any]:
        """Overlay metadata record handed to the upload collaborator."""
        return {
            "text": self.text,
            "font_family": self.font_family,
            "font_size": self.font_size_px,
            "font_weight": self.font_weight,
            "color": self.fill_color,
            "outline_color": self.outline_color,
            "outline_width": self.outline_width_px,
            "position": {"x": self.position.x, "y": self.position.y},
        }

    @classmethod
    def from_metadata(cls, data: Mapping[str, Any]) -> "TextOverlaySpec":
        defaults = cls()
        position = data.get("position") or {}
        try:
            spec = cls(
                text=str(data.get("text", defaults.text)),
                font_family=str(data.get("font_family", defaults.font_family)),
                font_size_px=int(data.get("font_size", defaults.font_size_px)),
                font_weight=str(data.get("font_weight", defaults.font_weight)),
                fill_color=str(data.get("color", defaults.fill_color)),
                outline_color=str(data.get("outline_color", defaults.outline_color)),
                outline_width_px=int(data.get("outline_width", defaults.outline_width_px)),
                position=OverlayPosition(
                    float(position.get("x", defaults.position.x)),
                    float(position.get("y", defaults.position.y)),
                ),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid overlay metadata: {exc}") from exc
        return spec.normalized()


def _clamp(value, low, high):
    return max(low, min(high, value))

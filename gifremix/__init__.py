"""
GIF remix engine.
Decodes a published GIF, composites its frames with correct disposal handling,
burns in a styled text overlay and re-encodes the result on a worker pool.
"""

from .compositor import AccumulatorSurface, CompositedFrame, CompositingPass, FrameCompositor
from .config import (
    DEFAULT_CONFIG,
    RemixConfig,
    config_from_env,
    parse_color,
    pool_size,
    quality_label,
)
from .decoder import decode_gif
from .encoder import EncoderOptions, GifEncoder, PreparedFrame
from .errors import (
    CompositingError,
    DecodeError,
    EncodeError,
    GenerateInProgressError,
    RemixError,
    ValidationError,
)
from .models import (
    POSITION_PRESETS,
    Disposal,
    Frame,
    FrameRect,
    GifContainer,
    JobState,
    OverlayPosition,
    TextOverlaySpec,
)
from .orchestrator import EncodingJob, EncodingOrchestrator
from .overlay import render_text_overlay
from .session import RemixResult, RemixSession, UploadBridge

__version__ = "1.0.0"

__all__ = [
    "AccumulatorSurface",
    "CompositedFrame",
    "CompositingPass",
    "FrameCompositor",
    "DEFAULT_CONFIG",
    "RemixConfig",
    "config_from_env",
    "parse_color",
    "pool_size",
    "quality_label",
    "decode_gif",
    "EncoderOptions",
    "GifEncoder",
    "PreparedFrame",
    "CompositingError",
    "DecodeError",
    "EncodeError",
    "GenerateInProgressError",
    "RemixError",
    "ValidationError",
    "POSITION_PRESETS",
    "Disposal",
    "Frame",
    "FrameRect",
    "GifContainer",
    "JobState",
    "OverlayPosition",
    "TextOverlaySpec",
    "EncodingJob",
    "EncodingOrchestrator",
    "render_text_overlay",
    "RemixResult",
    "RemixSession",
    "UploadBridge",
]

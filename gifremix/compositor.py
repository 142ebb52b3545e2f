"""
Sequential frame compositing with GIF disposal semantics.

A FrameCompositor owns exactly one AccumulatorSurface. Every traversal of the
frame list happens through a CompositingPass, which starts from a cleared
surface and only hands out frame ``i`` after frames ``0..i-1`` were composited
in the same pass. Starting a new pass invalidates any older one.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from PIL import Image

from .errors import CompositingError
from .models import Disposal, Frame, FrameRect, GifContainer

logger = logging.getLogger(__name__)

TRANSPARENT = (0, 0, 0, 0)


class AccumulatorSurface:
    """Mutable RGBA raster sized to the container's logical screen."""

    def __init__(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise CompositingError(f"Surface dimensions must be positive. Got: {width}x{height}")
        self.width = width
        self.height = height
        self.image = Image.new("RGBA", (width, height), TRANSPARENT)

    @property
    def size(self):
        return (self.width, self.height)

    def clear(self) -> None:
        self.image.paste(TRANSPARENT, (0, 0, self.width, self.height))

    def clear_rect(self, rect: FrameRect) -> None:
        """Restore the pixels inside ``rect`` to transparent background."""
        area = rect.clipped(self.width, self.height)
        if area.width and area.height:
            self.image.paste(TRANSPARENT, area.box)

    def draw_patch(self, patch: Image.Image, rect: FrameRect) -> None:
        """Draw a frame patch over existing content; transparent patch pixels keep what is below."""
        if not (rect.width and rect.height):
            return
        self.image.alpha_composite(patch, dest=(rect.left, rect.top))

    def snapshot(self) -> Image.Image:
        return self.image.copy()


@dataclass(frozen=True)
class CompositedFrame:
    """
    The composited state after frames ``0..index``.

    ``raster`` is the live accumulator image and is overwritten by the next
    advance of the pass; call ``CompositingPass.snapshot`` for an isolated copy.
    """

    index: int
    frame: Frame
    raster: Image.Image


class CompositingPass:
    """Cursor over one full, in-order traversal of the container's frames."""

    def __init__(self, compositor: "FrameCompositor", pass_id: int):
        self._compositor = compositor
        self._pass_id = pass_id
        self._next_index = 0
        self.fidelity_warnings: List[int] = []

    @property
    def next_index(self) -> int:
        return self._next_index

    @property
    def total_frames(self) -> int:
        return len(self._compositor.container.frames)

    @property
    def exhausted(self) -> bool:
        return self._next_index >= self.total_frames

    @property
    def is_current(self) -> bool:
        return self._compositor.current_pass_id == self._pass_id

    def advance(self) -> CompositedFrame:
        """Apply the previous frame's disposal, then draw the next frame's patch."""
        if not self.is_current:
            raise CompositingError("Compositing pass was superseded by a newer pass.")
        if self.exhausted:
            raise CompositingError(
                f"Compositing pass already produced all {self.total_frames} frames."
            )

        surface = self._compositor.surface
        frames = self._compositor.container.frames
        index = self._next_index

        if index > 0:
            self._dispose(frames[index - 1], index - 1, surface)

        frame = frames[index]
        surface.draw_patch(frame.patch, frame.dims)
        self._next_index = index + 1
        return CompositedFrame(index=index, frame=frame, raster=surface.image)

    def advance_to(self, index: int) -> CompositedFrame:
        """Composite forward until ``index`` has been drawn."""
        if index < self._next_index:
            raise CompositingError(
                f"Frame {index} was already composited in this pass; start a new pass."
            )
        if index >= self.total_frames:
            raise CompositingError(
                f"Frame index {index} out of range for {self.total_frames} frames."
            )
        result = self.advance()
        while result.index < index:
            result = self.advance()
        return result

    def snapshot(self) -> Image.Image:
        if not self.is_current:
            raise CompositingError("Compositing pass was superseded by a newer pass.")
        return self._compositor.surface.snapshot()

    def _dispose(self, previous: Frame, previous_index: int, surface: AccumulatorSurface) -> None:
        disposal = previous.disposal
        if disposal == Disposal.RESTORE_TO_BACKGROUND:
            surface.clear_rect(previous.dims)
        elif disposal == Disposal.RESTORE_TO_PREVIOUS:
            # Approximation: the region is left as drawn.
            self.fidelity_warnings.append(previous_index)
            logger.warning(
                "Frame %d uses disposal 'restore to previous'; rendering may not be exact",
                previous_index,
            )

    def __iter__(self):
        return self

    def __next__(self) -> CompositedFrame:
        if self.exhausted:
            raise StopIteration
        return self.advance()


class FrameCompositor:
    """Produces composited rasters for a container, one pass at a time."""

    def __init__(self, container: GifContainer):
        self.container = container
        self._surface: Optional[AccumulatorSurface] = AccumulatorSurface(
            container.width, container.height
        )
        self._pass_id = 0
        self._lock = threading.Lock()

    @property
    def surface(self) -> AccumulatorSurface:
        if self._surface is None:
            raise CompositingError("Compositor has been disposed.")
        return self._surface

    @property
    def current_pass_id(self) -> int:
        return self._pass_id

    @property
    def disposed(self) -> bool:
        return self._surface is None

    def begin_pass(self) -> CompositingPass:
        """Clear the surface and start a new traversal; older passes become invalid."""
        with self._lock:
            self.surface.clear()
            self._pass_id += 1
            return CompositingPass(self, self._pass_id)

    def composite(self, index: int = 0) -> Image.Image:
        """Isolated composited raster for one frame index, via a fresh pass."""
        compositing_pass = self.begin_pass()
        compositing_pass.advance_to(index)
        return compositing_pass.snapshot()

    def reset(self) -> None:
        """Clear the surface and invalidate any pass in progress."""
        with self._lock:
            self.surface.clear()
            self._pass_id += 1

    def dispose(self) -> None:
        with self._lock:
            self._surface = None
            self._pass_id += 1

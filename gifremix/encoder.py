"""
Parallel GIF encoding.

Each prepared frame is quantized independently on a small thread pool; the
indexed frames are then written in order by Pillow as one animated GIF with a
local color table per frame.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Dict, List, Optional, Sequence

from PIL import Image

from .config import DEFAULT_CONFIG, RemixConfig, parse_color
from .errors import EncodeError
from .models import Disposal

logger = logging.getLogger(__name__)

ENCODER_THREAD_PREFIX = "gifremix-encoder"
TRANSPARENT_INDEX = 255
ALPHA_THRESHOLD = 128
POLL_INTERVAL_S = 0.02

ProgressCallback = Callable[[float], None]


class EncodeAborted(Exception):
    """Raised inside the encoder when abort() was requested."""


@dataclass(frozen=True)
class PreparedFrame:
    """A fully rendered frame waiting to be encoded."""

    raster: Image.Image
    delay_ms: int


@dataclass(frozen=True)
class EncoderOptions:
    quality: int = DEFAULT_CONFIG.quality
    loop: int = DEFAULT_CONFIG.loop
    background: str = DEFAULT_CONFIG.background
    transparent: bool = DEFAULT_CONFIG.transparent

    @classmethod
    def from_config(cls, config: RemixConfig, quality: Optional[int] = None) -> "EncoderOptions":
        return cls(
            quality=config.quality if quality is None else quality,
            loop=config.loop,
            background=config.background,
            transparent=config.transparent,
        )


@dataclass(frozen=True)
class EncodedFrame:
    """A quantized frame waiting to be written."""

    index: int
    image: Image.Image
    delay_ms: int


def palette_sample_factor(quality: int) -> int:
    """Downscale factor of the image the palette is learned from; 1 samples every pixel."""
    return max(1, round(max(1, quality) ** 0.5))


def quantize_frame(raster: Image.Image, options: EncoderOptions) -> Image.Image:
    """Reduce an RGBA raster to a palette image without dithering."""
    rgba = raster.convert("RGBA") if raster.mode != "RGBA" else raster
    background = Image.new("RGBA", rgba.size, parse_color(options.background))
    background.alpha_composite(rgba)
    rgb = background.convert("RGB")

    colors = 255 if options.transparent else 256
    method = Image.Quantize.MEDIANCUT if options.quality <= 15 else Image.Quantize.FASTOCTREE
    factor = palette_sample_factor(options.quality)
    sample = rgb
    if factor > 1 and min(rgb.size) >= factor * 2:
        sample = rgb.reduce(factor)
    palette_image = sample.quantize(colors=colors, method=method, dither=Image.Dither.NONE)
    indexed = rgb.quantize(palette=palette_image, dither=Image.Dither.NONE)

    if options.transparent:
        # Reserved index must exist in the color table
        palette = indexed.getpalette() or []
        indexed.putpalette(palette[:765] + [0] * (768 - len(palette[:765])))
        # Use alpha channel as transparency mask
        alpha = rgba.getchannel("A")
        mask = Image.eval(alpha, lambda a: 255 if a < ALPHA_THRESHOLD else 0)
        indexed.paste(TRANSPARENT_INDEX, mask=mask)
    return indexed


def encode_frame(
    index: int,
    frame: PreparedFrame,
    options: EncoderOptions,
    abort_event: Optional[threading.Event] = None,
) -> EncodedFrame:
    """Quantize one frame. Checks ``abort_event`` before and after."""
    if abort_event is not None and abort_event.is_set():
        raise EncodeAborted()
    indexed = quantize_frame(frame.raster, options)
    if abort_event is not None and abort_event.is_set():
        raise EncodeAborted()
    return EncodedFrame(index=index, image=indexed, delay_ms=max(0, int(frame.delay_ms)))


def write_gif(frames: Sequence[EncodedFrame], options: EncoderOptions) -> bytes:
    """Write quantized frames, in order, as one animated GIF."""
    if not frames:
        raise EncodeError("No frames to write.")
    disposal = Disposal.RESTORE_TO_BACKGROUND if options.transparent else Disposal.DO_NOT_DISPOSE
    save_kwargs = {
        "format": "GIF",
        "save_all": True,
        "append_images": [frame.image for frame in frames[1:]],
        "duration": [frame.delay_ms for frame in frames],
        "loop": max(0, options.loop),
        "disposal": int(disposal),
        "optimize": False,
    }
    if options.transparent:
        save_kwargs["transparency"] = TRANSPARENT_INDEX

    output = BytesIO()
    try:
        frames[0].image.save(output, **save_kwargs)
    except (OSError, ValueError) as exc:
        raise EncodeError(f"Writing GIF failed: {exc}") from exc
    return output.getvalue()


class GifEncoder:
    """
    Quantizes prepared frames on a thread pool and writes the result.

    Example::

        with GifEncoder(width, height, options, workers=4) as encoder:
            blob = encoder.encode(frames)

    Leaving the ``with`` block shuts the pool down and waits for its threads.
    ``abort()`` may be called from any thread; the running ``encode`` call
    then raises EncodeAborted and no output is produced.
    """

    def __init__(
        self,
        width: int,
        height: int,
        options: EncoderOptions = EncoderOptions(),
        workers: int = 2,
        on_progress: Optional[ProgressCallback] = None,
        thread_name_prefix: str = ENCODER_THREAD_PREFIX,
    ):
        self.width = width
        self.height = height
        self.options = options
        self.workers = max(1, workers)
        self.on_progress = on_progress
        self.thread_name_prefix = thread_name_prefix
        self._abort_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def abort(self) -> None:
        self._abort_event.set()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

    def __enter__(self) -> "GifEncoder":
        self._executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix=self.thread_name_prefix
        )
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _report(self, fraction: float) -> None:
        if self.on_progress is not None:
            self.on_progress(fraction)

    def encode(self, frames: Sequence[PreparedFrame]) -> bytes:
        """
        Quantize ``frames`` in parallel and return the written GIF bytes.

        Raises:
            EncodeAborted: abort() was called before encoding completed
            EncodeError: A frame failed to quantize, the GIF could not be written,
                or there was nothing to encode
        """
        if self._executor is None:
            raise EncodeError("Encoder is not open; use it as a context manager.")
        if not frames:
            raise EncodeError("No frames to encode.")
        for frame in frames:
            if frame.raster.size != (self.width, self.height):
                raise EncodeError(
                    f"Frame size {frame.raster.size} does not match {self.width}x{self.height}."
                )

        total = len(frames)
        pending: Dict[Future, int] = {
            self._executor.submit(encode_frame, index, frame, self.options, self._abort_event): index
            for index, frame in enumerate(frames)
        }
        results: List[Optional[EncodedFrame]] = [None] * total
        completed = 0
        self._report(0.0)

        try:
            while pending:
                if self._abort_event.is_set():
                    raise EncodeAborted()
                done, _ = wait(pending, timeout=POLL_INTERVAL_S, return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    try:
                        results[index] = future.result()
                    except EncodeAborted:
                        raise
                    except Exception as exc:
                        raise EncodeError(f"Encoding frame {index} failed: {exc}") from exc
                    completed += 1
                    # Leave the last step for writing
                    self._report(completed / (total + 1))
        except BaseException:
            for future in pending:
                future.cancel()
            raise

        if self._abort_event.is_set():
            raise EncodeAborted()
        logger.debug("Quantized %d frames, writing %dx%d GIF", total, self.width, self.height)
        blob = write_gif(results, self.options)
        self._report(1.0)
        return blob

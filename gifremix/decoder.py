"""
GIF container decoding.

The block structure (header, logical screen, extensions, image descriptors) is
parsed here so that per-frame offsets, delays and disposal methods are kept
exactly as the source declares them. Pixel data of each frame is decompressed
by Pillow from a single-image GIF assembled around that frame's own blocks.
"""

import logging
import struct
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional

from PIL import Image

from .errors import DecodeError
from .models import Disposal, Frame, FrameRect, GifContainer

logger = logging.getLogger(__name__)

GIF_SIGNATURES = (b"GIF87a", b"GIF89a")

EXTENSION_INTRODUCER = 0x21
IMAGE_SEPARATOR = 0x2C
TRAILER = 0x3B

GRAPHIC_CONTROL_LABEL = 0xF9
APPLICATION_LABEL = 0xFF
NETSCAPE_IDENTIFIERS = (b"NETSCAPE2.0", b"ANIMEXTS1.0")


def color_table_length(packed: int) -> int:
    """Byte length of a color table declared by the low 3 bits of ``packed``."""
    return 3 * (1 << ((packed & 0x07) + 1))


class _ByteReader:
    """Bounds-checked cursor over the source buffer."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    @property
    def at_end(self) -> bool:
        return self.offset >= len(self.data)

    def read(self, count: int, what: str) -> bytes:
        end = self.offset + count
        if end > len(self.data):
            raise DecodeError(
                f"Truncated GIF data: expected {count} bytes of {what} at offset {self.offset}."
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self, what: str) -> int:
        return self.read(1, what)[0]

    def sub_blocks(self, what: str) -> bytes:
        """Read a chain of data sub-blocks, returning them raw (lengths and terminator included)."""
        start = self.offset
        while True:
            size = self.u8(what)
            if size == 0:
                return self.data[start:self.offset]
            self.read(size, what)


def _join_sub_blocks(raw: bytes) -> bytes:
    payload = bytearray()
    index = 0
    while index < len(raw):
        size = raw[index]
        if size == 0:
            break
        payload.extend(raw[index + 1:index + 1 + size])
        index += 1 + size
    return bytes(payload)


@dataclass
class _GraphicControl:
    disposal: Disposal = Disposal.NONE
    delay_ms: int = 0
    transparent_index: Optional[int] = None


def _parse_graphic_control(payload: bytes) -> _GraphicControl:
    if len(payload) < 4:
        return _GraphicControl()
    packed, delay_cs, transparent_index = struct.unpack("<BHB", payload[:4])
    return _GraphicControl(
        disposal=Disposal.from_code((packed >> 2) & 0x07),
        delay_ms=delay_cs * 10,
        transparent_index=transparent_index if packed & 0x01 else None,
    )


def _build_single_image_gif(
    width: int,
    height: int,
    descriptor_packed: int,
    color_table: bytes,
    local_table: bool,
    control: _GraphicControl,
    image_data: bytes,
) -> bytes:
    """Wrap one frame's compressed data in a minimal standalone GIF."""
    out = bytearray(b"GIF89a")
    if local_table:
        screen_packed = 0x70
        global_table = b""
    else:
        screen_packed = 0xF0 | color_table_bits(color_table)
        global_table = color_table
    out += struct.pack("<HHBBB", width, height, screen_packed, 0, 0)
    out += global_table
    if control.transparent_index is not None:
        out += struct.pack("<BBBBHBB", 0x21, 0xF9, 4, 0x01, 0, control.transparent_index, 0)
    out += struct.pack("<BHHHHB", IMAGE_SEPARATOR, 0, 0, width, height, descriptor_packed)
    if local_table:
        out += color_table
    out += image_data
    out.append(TRAILER)
    return bytes(out)


def _decode_patch(gif_bytes: bytes, index: int) -> Image.Image:
    try:
        with Image.open(BytesIO(gif_bytes)) as raw:
            raw.load()
            return raw.convert("RGBA")
    except (OSError, ValueError, SyntaxError) as exc:
        raise DecodeError(f"Frame {index}: image data could not be decompressed ({exc}).") from exc


def decode_gif(data: bytes) -> GifContainer:
    """
    Parse raw GIF bytes into a GifContainer.

    Args:
        data: The complete source GIF

    Returns:
        The logical screen size and every frame with its RGBA patch, rectangle,
        delay and disposal method, in file order

    Raises:
        DecodeError: On a bad header, missing logical screen, truncated data
            or a file with no frames
    """
    if not data:
        raise DecodeError("Empty GIF data.")
    reader = _ByteReader(bytes(data))

    signature = reader.read(6, "header") if len(data) >= 6 else b""
    if signature not in GIF_SIGNATURES:
        raise DecodeError("Invalid GIF header: expected GIF87a or GIF89a signature.")

    if len(data) < 13:
        raise DecodeError("Missing logical screen descriptor.")
    width, height, screen_packed, _bg_index, _aspect = struct.unpack(
        "<HHBBB", reader.read(7, "logical screen descriptor")
    )
    if width == 0 or height == 0:
        raise DecodeError(f"Invalid logical screen dimensions: {width}x{height}.")

    global_table = b""
    if screen_packed & 0x80:
        global_table = reader.read(color_table_length(screen_packed), "global color table")

    frames: List[Frame] = []
    loop = 0
    control = _GraphicControl()
    terminated = False

    while not reader.at_end:
        block = reader.u8("block introducer")
        if block == TRAILER:
            terminated = True
            break
        if block == EXTENSION_INTRODUCER:
            label = reader.u8("extension label")
            payload = _join_sub_blocks(reader.sub_blocks("extension data"))
            if label == GRAPHIC_CONTROL_LABEL:
                control = _parse_graphic_control(payload)
            elif label == APPLICATION_LABEL and payload[:11] in NETSCAPE_IDENTIFIERS:
                if len(payload) >= 14 and payload[11] == 1:
                    loop = struct.unpack("<H", payload[12:14])[0]
            continue
        if block != IMAGE_SEPARATOR:
            raise DecodeError(f"Unexpected block 0x{block:02X} at offset {reader.offset - 1}.")

        frames.append(_read_frame(reader, len(frames), width, height, global_table, control))
        control = _GraphicControl()

    if not frames:
        raise DecodeError("GIF contains no frames.")
    if not terminated:
        logger.debug("GIF has no trailer; accepting %d complete frames", len(frames))

    logger.info("Decoded GIF: %dx%d, %d frames, loop=%d", width, height, len(frames), loop)
    return GifContainer(width=width, height=height, frames=tuple(frames), loop=loop)


def _read_frame(
    reader: _ByteReader,
    index: int,
    screen_width: int,
    screen_height: int,
    global_table: bytes,
    control: _GraphicControl,
) -> Frame:
    left, top, frame_width, frame_height, packed = struct.unpack(
        "<HHHHB", reader.read(9, "image descriptor")
    )
    local_table = bool(packed & 0x80)
    color_table = global_table
    if local_table:
        color_table = reader.read(color_table_length(packed), "local color table")
    min_code_size = reader.read(1, "LZW minimum code size")
    image_data = min_code_size + reader.sub_blocks("image data")

    if not color_table:
        raise DecodeError(f"Frame {index}: no global or local color table.")
    if frame_width == 0 or frame_height == 0:
        raise DecodeError(f"Frame {index}: empty image descriptor ({frame_width}x{frame_height}).")

    # Keep interlace and local table bits; the sort flag is irrelevant to decoding.
    descriptor_packed = packed & 0xC7 if local_table else packed & 0x40
    patch = _decode_patch(
        _build_single_image_gif(
            frame_width,
            frame_height,
            descriptor_packed,
            color_table,
            local_table,
            control,
            image_data,
        ),
        index,
    )

    rect = FrameRect(left, top, frame_width, frame_height)
    if not rect.fits_within(screen_width, screen_height):
        clipped = rect.clipped(screen_width, screen_height)
        logger.debug("Frame %d rectangle %s clipped to logical screen as %s", index, rect, clipped)
        patch = patch.crop(
            (clipped.left - left, clipped.top - top, clipped.right - left, clipped.bottom - top)
        )
        rect = clipped

    return Frame(patch=patch, dims=rect, delay_ms=control.delay_ms, disposal=control.disposal)


def color_table_bits(color_table: bytes) -> int:
    """Size field (low 3 bits) for a color table of the given byte length."""
    entries = len(color_table) // 3
    bits = 0
    while (1 << (bits + 1)) < entries:
        bits += 1
    return bits

"""
Helpers that assemble GIF bytes by hand, so tests control every patch
rectangle, delay and disposal method exactly.
"""

import struct
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional, Sequence, Tuple, Union

from PIL import Image

BLACK, RED, GREEN, BLUE, WHITE, YELLOW = range(6)

PALETTE: List[Tuple[int, int, int]] = [
    (0, 0, 0),
    (255, 0, 0),
    (0, 255, 0),
    (0, 0, 255),
    (255, 255, 255),
    (255, 255, 0),
]

RGBA = {index: (*rgb, 255) for index, rgb in enumerate(PALETTE)}


@dataclass
class FrameSpec:
    left: int
    top: int
    width: int
    height: int
    pixels: Union[int, Sequence[int]] = RED
    disposal: int = 0
    delay_cs: int = 10
    transparent_index: Optional[int] = None

    def indices(self) -> List[int]:
        if isinstance(self.pixels, int):
            return [self.pixels] * (self.width * self.height)
        return list(self.pixels)


def lzw_literal_stream(indices: Sequence[int], min_code_size: int = 8) -> bytes:
    """LZW data made only of literal codes, with a clear code every 128 pixels."""
    clear = 1 << min_code_size
    end = clear + 1
    width = min_code_size + 1
    codes: List[int] = []
    for position, value in enumerate(indices):
        if position % 128 == 0:
            codes.append(clear)
        codes.append(value)
    codes.append(end)

    out = bytearray()
    bits = 0
    count = 0
    for code in codes:
        bits |= code << count
        count += width
        while count >= 8:
            out.append(bits & 0xFF)
            bits >>= 8
            count -= 8
    if count:
        out.append(bits & 0xFF)
    return bytes(out)


def sub_blocks(data: bytes) -> bytes:
    out = bytearray()
    for start in range(0, len(data), 255):
        chunk = data[start:start + 255]
        out.append(len(chunk))
        out.extend(chunk)
    out.append(0)
    return bytes(out)


def build_gif(
    width: int,
    height: int,
    frames: Sequence[FrameSpec],
    loop: Optional[int] = 0,
    trailer: bool = True,
) -> bytes:
    """Assemble a GIF89a with a 256-entry global palette."""
    table = bytearray()
    for r, g, b in PALETTE:
        table.extend((r, g, b))
    table.extend(b"\x00" * (768 - len(table)))

    out = bytearray(b"GIF89a")
    out += struct.pack("<HHBBB", width, height, 0xF7, 0, 0)
    out += table
    if loop is not None:
        out += b"\x21\xFF\x0BNETSCAPE2.0\x03\x01" + struct.pack("<H", loop) + b"\x00"
    for frame in frames:
        flags = (frame.disposal & 0x07) << 2
        if frame.transparent_index is not None:
            flags |= 0x01
        out += struct.pack(
            "<BBBBHBB", 0x21, 0xF9, 4, flags, frame.delay_cs, frame.transparent_index or 0, 0
        )
        out += struct.pack("<BHHHHB", 0x2C, frame.left, frame.top, frame.width, frame.height, 0)
        out.append(8)
        out += sub_blocks(lzw_literal_stream(frame.indices()))
    if trailer:
        out.append(0x3B)
    return bytes(out)


def solid_frames(count: int, width: int, height: int, delay_cs: int = 10) -> List[FrameSpec]:
    """Full-frame patches cycling through red, green and blue."""
    colors = (RED, GREEN, BLUE)
    return [
        FrameSpec(0, 0, width, height, colors[i % len(colors)], delay_cs=delay_cs)
        for i in range(count)
    ]


def create_pillow_gif(colors: Sequence[str], size=(40, 30), duration: int = 80) -> bytes:
    """Animated GIF written by Pillow, one solid frame per color."""
    frames = [Image.new("RGB", size, color) for color in colors]
    buffer = BytesIO()
    frames[0].save(
        buffer,
        format="GIF",
        save_all=True,
        append_images=frames[1:],
        duration=duration,
        loop=0,
        disposal=1,
    )
    return buffer.getvalue()

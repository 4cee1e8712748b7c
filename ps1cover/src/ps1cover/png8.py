"""Strict reader for 8-bit palette PNG files.

Pillow's paletted-alpha handling has changed between releases, and the
cover format depends on the exact per-index alpha stored in ``tRNS``. This
reader therefore parses the chunk stream itself and accepts only one PNG
flavour: non-interlaced, bit depth 8, color type 3.
"""

from __future__ import annotations

import struct
import zlib
from typing import List

from .errors import DecodeError
from .raster import COVER_HEIGHT, COVER_WIDTH, IndexedRaster, PALETTE_SIZE, PaletteEntry

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

COLOR_TYPE_INDEXED = 3

FILTER_NONE = 0
FILTER_SUB = 1
FILTER_UP = 2
FILTER_AVERAGE = 3
FILTER_PAETH = 4


def paeth_predictor(a: int, b: int, c: int) -> int:
    p = a + b - c
    pa = abs(p - a)
    pb = abs(p - b)
    pc = abs(p - c)
    if pa <= pb and pa <= pc:
        return a
    if pb <= pc:
        return b
    return c


def unfilter_scanlines(raw: bytes, width: int, height: int, bpp: int = 1) -> bytearray:
    """Reverse PNG scanline filtering; ``raw`` holds a filter byte per row."""

    stride = width * bpp
    out = bytearray(stride * height)
    prev = bytearray(stride)
    src = 0
    for y in range(height):
        filter_type = raw[src]
        cur = bytearray(raw[src + 1 : src + 1 + stride])
        src += stride + 1

        if filter_type == FILTER_NONE:
            pass
        elif filter_type == FILTER_SUB:
            for x in range(bpp, stride):
                cur[x] = (cur[x] + cur[x - bpp]) & 0xFF
        elif filter_type == FILTER_UP:
            for x in range(stride):
                cur[x] = (cur[x] + prev[x]) & 0xFF
        elif filter_type == FILTER_AVERAGE:
            for x in range(stride):
                left = cur[x - bpp] if x >= bpp else 0
                cur[x] = (cur[x] + ((left + prev[x]) >> 1)) & 0xFF
        elif filter_type == FILTER_PAETH:
            for x in range(stride):
                left = cur[x - bpp] if x >= bpp else 0
                upper_left = prev[x - bpp] if x >= bpp else 0
                cur[x] = (cur[x] + paeth_predictor(left, prev[x], upper_left)) & 0xFF
        else:
            raise DecodeError(f"Unsupported PNG filter type {filter_type} on row {y}")

        out[y * stride : (y + 1) * stride] = cur
        prev = cur
    return out


def _iter_chunks(data: bytes):
    offset = len(PNG_SIGNATURE)
    while offset < len(data):
        if offset + 8 > len(data):
            raise DecodeError(f"Truncated PNG chunk header at offset {offset}")
        length, chunk_type = struct.unpack(">I4s", data[offset : offset + 8])
        body_end = offset + 8 + length
        if body_end + 4 > len(data):
            raise DecodeError(
                f"PNG chunk {chunk_type!r} declares {length} bytes but the file ends early"
            )
        body = data[offset + 8 : body_end]
        (crc,) = struct.unpack(">I", data[body_end : body_end + 4])
        if zlib.crc32(chunk_type + body) & 0xFFFFFFFF != crc:
            raise DecodeError(f"CRC mismatch in PNG chunk {chunk_type!r}")
        yield chunk_type, body
        offset = body_end + 4


def read_indexed_png(
    data: bytes,
    expected_width: int = COVER_WIDTH,
    expected_height: int = COVER_HEIGHT,
) -> IndexedRaster:
    """Parse an 8-bit indexed PNG into an :class:`IndexedRaster`.

    Palette slots beyond ``PLTE`` are opaque black; alpha comes from ``tRNS``
    wherever it covers a slot.
    """

    if not data.startswith(PNG_SIGNATURE):
        raise DecodeError("Not a PNG file (bad signature)")

    header = None
    plte: bytes | None = None
    trns = b""
    idat = bytearray()
    saw_end = False

    for chunk_type, body in _iter_chunks(data):
        if chunk_type == b"IHDR":
            if len(body) != 13:
                raise DecodeError(f"IHDR chunk must be 13 bytes, got {len(body)}")
            header = struct.unpack(">IIBBBBB", body)
        elif chunk_type == b"PLTE":
            plte = body
        elif chunk_type == b"tRNS":
            trns = body
        elif chunk_type == b"IDAT":
            idat.extend(body)
        elif chunk_type == b"IEND":
            saw_end = True
            break

    if header is None:
        raise DecodeError("PNG has no IHDR chunk")
    if not saw_end:
        raise DecodeError("PNG has no IEND chunk")

    width, height, bit_depth, color_type, _compression, _filter, interlace = header
    if color_type != COLOR_TYPE_INDEXED or bit_depth != 8:
        raise DecodeError(
            "PNG is not 8-bit indexed "
            f"(color type {color_type}, bit depth {bit_depth}; expected type 3, depth 8)"
        )
    if width != expected_width or height != expected_height:
        raise DecodeError(
            f"PNG is {width}x{height}, expected {expected_width}x{expected_height}"
        )
    if interlace != 0:
        raise DecodeError("Interlaced PNG is not supported")
    if plte is None:
        raise DecodeError("PNG is missing the PLTE chunk")
    if len(plte) % 3 != 0 or not 3 <= len(plte) <= PALETTE_SIZE * 3:
        raise DecodeError(f"Invalid PLTE chunk length {len(plte)}")
    if len(trns) > PALETTE_SIZE:
        raise DecodeError(f"tRNS chunk has {len(trns)} entries; at most 256 are allowed")

    color_count = len(plte) // 3
    palette: List[PaletteEntry] = []
    for i in range(PALETTE_SIZE):
        r = g = b = 0
        if i < color_count:
            r, g, b = plte[i * 3 : i * 3 + 3]
        a = trns[i] if i < len(trns) else 255
        palette.append((r, g, b, a))

    expected_raw = (width + 1) * height
    try:
        raw = zlib.decompressobj().decompress(bytes(idat), expected_raw)
    except zlib.error as exc:
        raise DecodeError(f"Failed to decompress PNG image data: {exc}") from exc
    if len(raw) != expected_raw:
        raise DecodeError(
            f"Decompressed PNG image data is {len(raw)} bytes, expected {expected_raw}"
        )

    indices = unfilter_scanlines(raw, width, height)
    return IndexedRaster(
        width=width,
        height=height,
        palette=palette,
        indices=bytes(indices),
        color_count=color_count,
    )

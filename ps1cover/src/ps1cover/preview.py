"""Decode ``.cov`` containers into displayable RGBA images."""

from __future__ import annotations

import struct
from collections import deque
from dataclasses import dataclass
from typing import List, Tuple

from PIL import Image

from .codec import (
    COVER_SIZE,
    COVER_SIZE_WITH_FOOTER,
    CURRENT_SIZES,
    LEGACY_COVER_SIZE,
    PALETTE_BYTES,
    SEMI_TRANSPARENT_FLAG,
    TRANSPARENT_SENTINEL,
    unpack_bgr555,
)
from .errors import SizeContractViolation
from .raster import COVER_HEIGHT, COVER_WIDTH, PALETTE_SIZE, PaletteEntry

SEMI_TRANSPARENT_ALPHA = 128
CORNER_BLOCK = 8


@dataclass
class BackgroundOptions:
    """Thresholds for the disc-background removal heuristic."""

    enabled: bool = True
    corner_ratio: float = 0.90  # share of corner samples that must agree
    center_min: float = 0.20  # background share in the central 16x16
    inner_max: float = 0.55  # background share allowed in the central 32x32
    tolerance: int = 12  # per-channel distance for the flood fill


def decode_palette(data: bytes) -> List[PaletteEntry]:
    palette: List[PaletteEntry] = []
    for (value,) in struct.iter_unpack("<H", data[:PALETTE_BYTES]):
        r, g, b = unpack_bgr555(value)
        if value == TRANSPARENT_SENTINEL:
            alpha = 0
        elif value & SEMI_TRANSPARENT_FLAG:
            alpha = SEMI_TRANSPARENT_ALPHA
        else:
            alpha = 255
        palette.append((r, g, b, alpha))
    return palette


def _index_plane(data: bytes) -> bytes:
    return data[PALETTE_BYTES:COVER_SIZE]


def dominant_corner_index(indices: bytes) -> Tuple[int, float]:
    """Most frequent palette index across the four 8x8 corner blocks."""

    counts = [0] * PALETTE_SIZE
    last = COVER_WIDTH - 1
    for y in range(CORNER_BLOCK):
        for x in range(CORNER_BLOCK):
            counts[indices[y * COVER_WIDTH + x]] += 1
            counts[indices[y * COVER_WIDTH + (last - x)]] += 1
            counts[indices[(last - y) * COVER_WIDTH + x]] += 1
            counts[indices[(last - y) * COVER_WIDTH + (last - x)]] += 1
    total = CORNER_BLOCK * CORNER_BLOCK * 4
    best = max(range(PALETTE_SIZE), key=lambda i: (counts[i], -i))
    return best, counts[best] / total


def _background_ratio(indices: bytes, index: int, size: int) -> float:
    x0 = (COVER_WIDTH - size) // 2
    y0 = (COVER_HEIGHT - size) // 2
    hits = 0
    for y in range(y0, y0 + size):
        row = y * COVER_WIDTH
        hits += indices[row + x0 : row + x0 + size].count(index)
    return hits / (size * size)


def is_likely_disc(indices: bytes, background: int, options: BackgroundOptions) -> bool:
    """A disc shows background through its center hole but not around it."""

    center = _background_ratio(indices, background, 16)
    inner = _background_ratio(indices, background, 32)
    return center >= options.center_min and inner <= options.inner_max


def clear_edge_background(
    image: Image.Image, background: Tuple[int, int, int], tolerance: int
) -> int:
    """Flood-fill from the borders, zeroing alpha of pixels near ``background``.

    Returns the number of pixels cleared.
    """

    width, height = image.size
    pixels = image.load()
    visited = bytearray(width * height)
    queue: deque = deque()
    br, bg, bb = background

    def visit(x: int, y: int) -> None:
        if not (0 <= x < width and 0 <= y < height):
            return
        pos = y * width + x
        if visited[pos]:
            return
        r, g, b, _a = pixels[x, y]
        if abs(r - br) > tolerance or abs(g - bg) > tolerance or abs(b - bb) > tolerance:
            return
        visited[pos] = 1
        queue.append(pos)

    for x in range(width):
        visit(x, 0)
        visit(x, height - 1)
    for y in range(height):
        visit(0, y)
        visit(width - 1, y)

    cleared = 0
    while queue:
        pos = queue.popleft()
        x, y = pos % width, pos // width
        r, g, b, _a = pixels[x, y]
        pixels[x, y] = (r, g, b, 0)
        cleared += 1
        visit(x - 1, y)
        visit(x + 1, y)
        visit(x, y - 1)
        visit(x, y + 1)
    return cleared


def decode_current_cover(data: bytes, options: BackgroundOptions | None = None) -> Image.Image:
    if len(data) not in CURRENT_SIZES:
        raise SizeContractViolation(
            f"Invalid 8bpp .cov size: {len(data)} bytes (expected {COVER_SIZE} "
            f"or {COVER_SIZE_WITH_FOOTER})"
        )
    options = options or BackgroundOptions()
    palette = decode_palette(data)
    indices = _index_plane(data)

    image = Image.new("RGBA", (COVER_WIDTH, COVER_HEIGHT))
    image.putdata([palette[i] for i in indices])

    if options.enabled:
        background, ratio = dominant_corner_index(indices)
        if ratio >= options.corner_ratio and is_likely_disc(indices, background, options):
            clear_edge_background(image, palette[background][:3], options.tolerance)
    return image


def decode_legacy_cover(data: bytes) -> Image.Image:
    """Decode the 32768-byte raw pixel variant; it carries no transparency."""

    if len(data) != LEGACY_COVER_SIZE:
        raise SizeContractViolation(
            f"Invalid legacy .cov size: {len(data)} bytes (expected {LEGACY_COVER_SIZE})"
        )
    image = Image.new("RGBA", (COVER_WIDTH, COVER_HEIGHT))
    image.putdata([unpack_bgr555(v) + (255,) for (v,) in struct.iter_unpack("<H", data)])
    return image


def decode_cover(data: bytes, options: BackgroundOptions | None = None) -> Image.Image:
    """Decode any supported ``.cov`` payload, choosing the format by length."""

    if len(data) in CURRENT_SIZES:
        return decode_current_cover(data, options)
    if len(data) == LEGACY_COVER_SIZE:
        return decode_legacy_cover(data)
    raise SizeContractViolation(
        f"Invalid .cov size: {len(data)} bytes (expected {COVER_SIZE}, "
        f"{COVER_SIZE_WITH_FOOTER} or {LEGACY_COVER_SIZE})"
    )


def cover_format(data: bytes) -> str:
    if len(data) == COVER_SIZE:
        return "8bpp"
    if len(data) == COVER_SIZE_WITH_FOOTER:
        return "8bpp+serial"
    if len(data) == LEGACY_COVER_SIZE:
        return "legacy"
    raise SizeContractViolation(f"Invalid .cov size: {len(data)} bytes")

"""Binary ``.cov`` container encoder.

Reference: cover container layouts
Format   | Size (bytes) | Layout
---------|--------------|----------------------------------------------------
8bpp     | 16896        | 256 x u16 LE palette (512) + 128x128 index bytes
8bpp+ID  | 16912        | as above + 16-byte ASCII serial, NUL padded
legacy   | 32768        | 128x128 x u16 LE BGR555 pixels, no palette

Palette entries are 15-bit ``B5 G5 R5`` values. Bit 15 is the
semi-transparency flag; the value 0x0000 is the transparent sentinel.
"""

from __future__ import annotations

import struct
from typing import Optional, Sequence

from PIL import Image

from .errors import CoverError, SizeContractViolation
from .raster import COVER_HEIGHT, COVER_WIDTH, IndexedRaster, PALETTE_SIZE, PaletteEntry

PALETTE_BYTES = PALETTE_SIZE * 2
INDEX_BYTES = COVER_WIDTH * COVER_HEIGHT
FOOTER_BYTES = 16

COVER_SIZE = PALETTE_BYTES + INDEX_BYTES
COVER_SIZE_WITH_FOOTER = COVER_SIZE + FOOTER_BYTES
LEGACY_COVER_SIZE = COVER_WIDTH * COVER_HEIGHT * 2
CURRENT_SIZES = (COVER_SIZE, COVER_SIZE_WITH_FOOTER)

SEMI_TRANSPARENT_FLAG = 0x8000
TRANSPARENT_SENTINEL = 0x0000
OPAQUE_BLACK = 0x0421

ALPHA_SEMI_MIN = 32
ALPHA_OPAQUE_MIN = 224


def to5(value: int) -> int:
    """Scale an 8-bit channel to 5 bits with rounding."""

    return (value * 31 + 127) // 255


def pack_bgr555(r: int, g: int, b: int) -> int:
    return to5(r) | (to5(g) << 5) | (to5(b) << 10)


def expand5to8(value: int) -> int:
    """Scale a 5-bit channel to 8 bits, replicating the top bits."""

    return (value << 3) | (value >> 2)


def unpack_bgr555(value: int) -> tuple[int, int, int]:
    return (
        expand5to8(value & 0x1F),
        expand5to8((value >> 5) & 0x1F),
        expand5to8((value >> 10) & 0x1F),
    )


def pack_palette_entry(entry: PaletteEntry) -> int:
    """Encode one RGBA palette entry into the loader's 16-bit format.

    alpha < 32        -> 0x0000 (transparent)
    32 <= alpha < 224 -> colour with the semi-transparency flag
    alpha >= 224      -> colour without the flag; black becomes 0x0421
    """

    r, g, b, a = entry
    if a < ALPHA_SEMI_MIN:
        return TRANSPARENT_SENTINEL
    solid = pack_bgr555(r, g, b)
    if a < ALPHA_OPAQUE_MIN:
        return solid | SEMI_TRANSPARENT_FLAG
    return solid if solid != TRANSPARENT_SENTINEL else OPAQUE_BLACK


def encode_palette(palette: Sequence[PaletteEntry]) -> bytes:
    if len(palette) != PALETTE_SIZE:
        raise SizeContractViolation(
            f"Palette must have {PALETTE_SIZE} entries, got {len(palette)}"
        )
    return struct.pack(f"<{PALETTE_SIZE}H", *(pack_palette_entry(e) for e in palette))


def normalize_serial(serial: Optional[str]) -> Optional[str]:
    """Canonicalise a product serial (``slus_012.06`` -> ``SLUS-01206``)."""

    if serial is None:
        return None
    text = serial.strip().upper().replace("_", "-").replace(".", "")
    return text or None


def encode_footer(serial: Optional[str]) -> bytes:
    text = normalize_serial(serial)
    if text is None:
        return bytes(FOOTER_BYTES)
    try:
        raw = text.encode("ascii")
    except UnicodeEncodeError as exc:
        raise CoverError(f"Serial must be ASCII: {serial!r}") from exc
    return raw[:FOOTER_BYTES].ljust(FOOTER_BYTES, b"\x00")


def _check_length(data: bytes, expected: int) -> bytes:
    if len(data) != expected:
        raise SizeContractViolation(
            f"Encoded cover is {len(data)} bytes, expected {expected}"
        )
    return data


def encode_cover(raster: IndexedRaster, serial: Optional[str] = None) -> bytes:
    """Encode an indexed 128x128 raster as a 16896-byte cover.

    When ``serial`` normalises to a non-empty string a 16-byte footer is
    appended, giving 16912 bytes.
    """

    if (raster.width, raster.height) != (COVER_WIDTH, COVER_HEIGHT):
        raise SizeContractViolation(
            f"Cover raster must be {COVER_WIDTH}x{COVER_HEIGHT}, got "
            f"{raster.width}x{raster.height}"
        )
    data = encode_palette(raster.palette) + raster.indices
    _check_length(data, COVER_SIZE)
    if normalize_serial(serial) is None:
        return data
    return _check_length(data + encode_footer(serial), COVER_SIZE_WITH_FOOTER)


def rewrite_footer(data: bytes, serial: Optional[str]) -> bytes:
    """Return a 16912-byte copy of ``data`` with its footer replaced.

    The palette and index sections are copied unchanged; an empty serial
    leaves a zero-filled footer.
    """

    if len(data) not in CURRENT_SIZES:
        raise SizeContractViolation(
            f"Cannot rewrite footer of a {len(data)}-byte file "
            f"(expected {COVER_SIZE} or {COVER_SIZE_WITH_FOOTER})"
        )
    out = bytes(data[:COVER_SIZE]) + encode_footer(serial)
    return _check_length(out, COVER_SIZE_WITH_FOOTER)


def read_footer(data: bytes) -> Optional[str]:
    """Return the serial stored in a cover footer, if any."""

    if len(data) == COVER_SIZE:
        return None
    if len(data) != COVER_SIZE_WITH_FOOTER:
        raise SizeContractViolation(
            f"Invalid .cov size: {len(data)} bytes "
            f"(expected {COVER_SIZE} or {COVER_SIZE_WITH_FOOTER})"
        )
    footer = data[COVER_SIZE:].split(b"\x00", 1)[0]
    text = footer.decode("ascii", errors="replace").strip()
    return text or None


def encode_legacy_cover(image: Image.Image) -> bytes:
    """Encode a 128x128 image as 32768 bytes of truncated BGR555 pixels."""

    if image.size != (COVER_WIDTH, COVER_HEIGHT):
        raise SizeContractViolation(
            f"Legacy cover image must be {COVER_WIDTH}x{COVER_HEIGHT}, got "
            f"{image.size[0]}x{image.size[1]}"
        )
    rgb = image.convert("RGB")
    words = [((b >> 3) << 10) | ((g >> 3) << 5) | (r >> 3) for (r, g, b) in rgb.getdata()]
    data = struct.pack(f"<{len(words)}H", *words)
    return _check_length(data, LEGACY_COVER_SIZE)


def build_riff_palette(data: bytes) -> bytes:
    """Export the palette section of a cover as a RIFF ``PAL `` file."""

    if len(data) not in CURRENT_SIZES:
        raise SizeContractViolation(
            f"Palette export needs an 8bpp cover (16896/16912 bytes), got {len(data)}"
        )
    entries = bytearray()
    for (value,) in struct.iter_unpack("<H", data[:PALETTE_BYTES]):
        r, g, b = unpack_bgr555(value)
        entries.extend((r, g, b, 0))

    body = b"PAL " + b"data" + struct.pack("<I", len(entries)) + bytes(entries)
    return b"RIFF" + struct.pack("<I", len(body)) + body

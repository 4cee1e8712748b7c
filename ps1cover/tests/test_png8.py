import binascii
import struct
import zlib

import pytest

from ps1cover.errors import DecodeError
from ps1cover.png8 import paeth_predictor, read_indexed_png, unfilter_scanlines


def _chunk(chunk_type: bytes, data: bytes) -> bytes:
    return (
        struct.pack(">I", len(data))
        + chunk_type
        + data
        + struct.pack(">I", binascii.crc32(chunk_type + data) & 0xFFFFFFFF)
    )


def _make_png(
    width: int,
    height: int,
    raw_rows: bytes,
    *,
    bit_depth: int = 8,
    color_type: int = 3,
    interlace: int = 0,
    palette: bytes | None = b"\x00\x00\x00\xff\x00\x00",
    trns: bytes | None = None,
) -> bytes:
    signature = b"\x89PNG\r\n\x1a\n"
    ihdr = _chunk(
        b"IHDR", struct.pack(">IIBBBBB", width, height, bit_depth, color_type, 0, 0, interlace)
    )
    body = signature + ihdr
    if palette is not None:
        body += _chunk(b"PLTE", palette)
    if trns is not None:
        body += _chunk(b"tRNS", trns)
    body += _chunk(b"IDAT", zlib.compress(raw_rows))
    body += _chunk(b"IEND", b"")
    return body


def _unfiltered(width: int, height: int, value_at) -> bytes:
    return b"".join(
        b"\x00" + bytes(value_at(x, y) for x in range(width)) for y in range(height)
    )


def test_reads_palette_indices_and_trns_alpha():
    raw = _unfiltered(128, 128, lambda x, y: (x + y) % 2)
    png = _make_png(128, 128, raw, trns=b"\x00")

    raster = read_indexed_png(png)

    assert raster.width == 128 and raster.height == 128
    assert raster.color_count == 2
    assert raster.palette[0] == (0, 0, 0, 0)
    assert raster.palette[1] == (255, 0, 0, 255)
    # Unused slots are opaque black.
    assert raster.palette[2] == (0, 0, 0, 255)
    assert raster.palette[255] == (0, 0, 0, 255)
    assert raster.indices[0] == 0
    assert raster.indices[1] == 1
    assert raster.indices[128] == 1


def test_rejects_truecolor_png():
    raw = b"".join(b"\x00" + b"\x00\x00\x00" * 128 for _ in range(128))
    png = _make_png(128, 128, raw, color_type=2, palette=None)

    with pytest.raises(DecodeError, match="not 8-bit indexed"):
        read_indexed_png(png)


def test_rejects_four_bit_indexed_png():
    raw = b"".join(b"\x00" + b"\x00" * 64 for _ in range(128))
    png = _make_png(128, 128, raw, bit_depth=4)

    with pytest.raises(DecodeError, match="not 8-bit indexed"):
        read_indexed_png(png)


def test_rejects_mismatched_dimensions():
    raw = _unfiltered(64, 64, lambda x, y: 0)
    png = _make_png(64, 64, raw)

    with pytest.raises(DecodeError, match="64x64, expected 128x128"):
        read_indexed_png(png)


def test_custom_expected_dimensions():
    raw = _unfiltered(4, 2, lambda x, y: x % 2)
    raster = read_indexed_png(_make_png(4, 2, raw), expected_width=4, expected_height=2)
    assert raster.indices == bytes([0, 1, 0, 1, 0, 1, 0, 1])


def test_rejects_interlaced_and_missing_palette():
    raw = _unfiltered(128, 128, lambda x, y: 0)
    with pytest.raises(DecodeError, match="Interlaced"):
        read_indexed_png(_make_png(128, 128, raw, interlace=1))
    with pytest.raises(DecodeError, match="PLTE"):
        read_indexed_png(_make_png(128, 128, raw, palette=None))


def test_rejects_truncated_image_data():
    raw = _unfiltered(128, 127, lambda x, y: 0)
    png = _make_png(128, 128, raw)

    with pytest.raises(DecodeError, match="Decompressed PNG image data"):
        read_indexed_png(png)


def test_rejects_bad_signature_and_crc():
    with pytest.raises(DecodeError, match="signature"):
        read_indexed_png(b"GIF89a" + b"\x00" * 32)

    raw = _unfiltered(128, 128, lambda x, y: 0)
    png = bytearray(_make_png(128, 128, raw))
    # Corrupt the IHDR CRC.
    png[8 + 8 + 13] ^= 0xFF
    with pytest.raises(DecodeError, match="CRC mismatch"):
        read_indexed_png(bytes(png))


def test_unknown_filter_type_is_rejected():
    raw = b"\x07" + bytes(128) + _unfiltered(128, 127, lambda x, y: 0)
    with pytest.raises(DecodeError, match="filter type 7"):
        read_indexed_png(_make_png(128, 128, raw))


def test_paeth_predictor_prefers_left_then_up():
    assert paeth_predictor(10, 20, 10) == 20
    assert paeth_predictor(20, 10, 10) == 20
    assert paeth_predictor(5, 5, 5) == 5
    assert paeth_predictor(100, 50, 200) == 50


def test_unfilter_all_filter_types():
    width = 3
    row0 = bytes([10, 20, 30])
    # Sub: deltas against the left neighbour.
    sub = bytes([1, 5, 5])
    # Up: deltas against row 1.
    up = bytes([1, 1, 1])
    # Average of left and up.
    avg = bytes([0, 0, 0])
    paeth = bytes([0, 0, 0])
    raw = (
        b"\x00" + row0
        + b"\x01" + sub
        + b"\x02" + up
        + b"\x03" + avg
        + b"\x04" + paeth
    )

    out = unfilter_scanlines(raw, width, 5)

    assert out[0:3] == row0
    assert out[3:6] == bytes([1, 6, 11])
    assert out[6:9] == bytes([2, 7, 12])
    # Average: x0 = 0 + (0 + 2) // 2, x1 = (1 + 7) // 2, x2 = (4 + 12) // 2
    assert out[9:12] == bytes([1, 4, 8])
    # Paeth with zero deltas copies the predicted neighbour.
    assert out[12:15] == bytes([1, 4, 8])

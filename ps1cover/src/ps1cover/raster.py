"""In-memory raster types passed between the cover conversion stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .errors import DecodeError

Color = Tuple[int, int, int]
PaletteEntry = Tuple[int, int, int, int]

COVER_WIDTH = 128
COVER_HEIGHT = 128
PALETTE_SIZE = 256

OPAQUE_BLACK: PaletteEntry = (0, 0, 0, 255)


@dataclass
class IndexedRaster:
    """A palette image: 256 RGBA entries plus one index byte per pixel.

    ``color_count`` is the number of palette entries the producer actually
    populated; the remaining slots are padding (opaque black unless a tRNS
    chunk said otherwise).
    """

    width: int
    height: int
    palette: List[PaletteEntry]
    indices: bytes
    color_count: int = PALETTE_SIZE

    def __post_init__(self) -> None:
        if len(self.palette) != PALETTE_SIZE:
            raise DecodeError(
                f"Palette must have {PALETTE_SIZE} entries, got {len(self.palette)}"
            )
        if len(self.indices) != self.width * self.height:
            raise DecodeError(
                f"Index plane has {len(self.indices)} bytes, expected "
                f"{self.width * self.height} for {self.width}x{self.height}"
            )
        self.indices = bytes(self.indices)

    def pixel(self, x: int, y: int) -> PaletteEntry:
        return self.palette[self.indices[y * self.width + x]]


def pad_palette(entries: Sequence[PaletteEntry]) -> List[PaletteEntry]:
    """Extend ``entries`` to a full 256-slot palette with opaque black."""

    if len(entries) > PALETTE_SIZE:
        raise DecodeError(f"Palette has {len(entries)} entries; at most 256 are allowed")
    palette = [tuple(entry) for entry in entries]
    palette.extend([OPAQUE_BLACK] * (PALETTE_SIZE - len(palette)))
    return palette  # type: ignore[return-value]

"""Palette reduction strategies producing an :class:`IndexedRaster`.

Three interchangeable quantizers are provided:

* ``PngquantQuantizer`` runs the external ``pngquant`` program and reads its
  8-bit PNG output back through :mod:`ps1cover.png8`.
* ``PillowQuantizer`` uses Pillow's fast octree, round-tripping through an
  in-memory PNG so it obeys the same contract as the external tool.
* ``OctreeQuantizer`` is a self-contained octree used when neither of the
  above is wanted or available.

The cover encoder buckets alpha into three tiers (transparent, semi,
opaque), so every quantizer must keep those tiers apart; colour accuracy is
secondary.
"""

from __future__ import annotations

import io
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Dict, List, Optional

from PIL import Image

from .errors import CoverError, ExternalToolFailure
from .png8 import read_indexed_png
from .raster import (
    COVER_HEIGHT,
    COVER_WIDTH,
    IndexedRaster,
    PALETTE_SIZE,
    PaletteEntry,
    pad_palette,
)

ALPHA_TRANSPARENT_MAX = 31
ALPHA_OPAQUE_MIN = 224

PNGQUANT_ARGS = ["--force", "--strip", "--posterize", "3", "--speed", "1"]

_NO_NODE = -1
_MAX_DEPTH = 8


class Quantizer:
    """Reduce a 128x128 RGBA image to at most 256 palette entries."""

    name = "base"

    def quantize(self, image: Image.Image) -> IndexedRaster:
        raise NotImplementedError


def _check_canvas(image: Image.Image) -> Image.Image:
    if image.size != (COVER_WIDTH, COVER_HEIGHT):
        raise CoverError(
            f"Quantizer input must be {COVER_WIDTH}x{COVER_HEIGHT}, got "
            f"{image.size[0]}x{image.size[1]}"
        )
    if image.mode != "RGBA":
        image = image.convert("RGBA")
    return image


class PngquantQuantizer(Quantizer):
    """Delegate quantization to the ``pngquant`` command line tool."""

    name = "pngquant"

    def __init__(self, executable: str | Path = "pngquant", timeout: float | None = 60.0):
        self.executable = str(executable)
        self.timeout = timeout

    @staticmethod
    def is_available(executable: str | Path = "pngquant") -> bool:
        return shutil.which(str(executable)) is not None

    def quantize(self, image: Image.Image) -> IndexedRaster:
        image = _check_canvas(image)
        with TemporaryDirectory(prefix="ps1cover_") as temp_dir:
            source = Path(temp_dir) / "resized.png"
            target = Path(temp_dir) / "indexed.png"
            image.save(source, format="PNG")

            cmd = [self.executable, *PNGQUANT_ARGS, "--output", str(target), str(source)]
            try:
                result = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=self.timeout,
                    cwd=temp_dir,
                )
            except FileNotFoundError as exc:
                raise ExternalToolFailure(f"pngquant not found: {self.executable}") from exc
            except subprocess.TimeoutExpired as exc:
                raise ExternalToolFailure(
                    f"pngquant timed out after {self.timeout} seconds"
                ) from exc

            if result.returncode != 0:
                raise ExternalToolFailure(
                    f"pngquant failed with exit code {result.returncode}",
                    returncode=result.returncode,
                    stdout=result.stdout or "",
                    stderr=result.stderr or "",
                )
            if not target.exists():
                raise ExternalToolFailure(
                    "pngquant reported success but wrote no output file",
                    returncode=result.returncode,
                    stdout=result.stdout or "",
                    stderr=result.stderr or "",
                )
            return read_indexed_png(target.read_bytes())


class PillowQuantizer(Quantizer):
    """Use Pillow's RGBA-capable fast octree, consumed as an 8-bit PNG."""

    name = "pillow"

    def __init__(self, colors: int = PALETTE_SIZE):
        self.colors = max(2, min(PALETTE_SIZE, colors))

    def quantize(self, image: Image.Image) -> IndexedRaster:
        image = _check_canvas(image)
        paletted = image.quantize(colors=self.colors, method=Image.FASTOCTREE)
        buffer = io.BytesIO()
        # bits=8 keeps Pillow from packing small palettes into 1/2/4-bit rows.
        paletted.save(buffer, format="PNG", bits=8)
        return read_indexed_png(buffer.getvalue())


@dataclass
class _Node:
    is_leaf: bool = False
    pixel_count: int = 0
    r_sum: int = 0
    g_sum: int = 0
    b_sum: int = 0
    a_sum: int = 0
    children: List[int] = field(default_factory=lambda: [_NO_NODE] * 8)
    next_reducible: int = _NO_NODE
    palette_index: int = 0


class Octree:
    """Hierarchical RGB quantizer with nodes stored in a flat arena.

    Each level branches on one bit plane of R, G and B (most significant
    first); nodes at depth 8 are leaves. Internal nodes are threaded onto a
    per-depth singly linked list in creation order. Whenever the leaf count
    exceeds ``max_colors`` the oldest internal node at the deepest populated
    depth is collapsed into a single leaf.
    """

    def __init__(self, max_colors: int = PALETTE_SIZE):
        self.max_colors = max(1, min(PALETTE_SIZE, max_colors))
        self.nodes: List[_Node] = [_Node()]
        self.leaf_count = 0
        self._reducible_head = [_NO_NODE] * _MAX_DEPTH
        self._reducible_tail = [_NO_NODE] * _MAX_DEPTH
        self._palette: List[PaletteEntry] = []

    @staticmethod
    def child_slot(r: int, g: int, b: int, depth: int) -> int:
        shift = 7 - depth
        return (((r >> shift) & 1) << 2) | (((g >> shift) & 1) << 1) | ((b >> shift) & 1)

    def _new_node(self, depth: int) -> int:
        node_id = len(self.nodes)
        node = _Node()
        self.nodes.append(node)
        if depth == _MAX_DEPTH:
            node.is_leaf = True
            self.leaf_count += 1
        else:
            tail = self._reducible_tail[depth]
            if tail == _NO_NODE:
                self._reducible_head[depth] = node_id
            else:
                self.nodes[tail].next_reducible = node_id
            self._reducible_tail[depth] = node_id
        return node_id

    def add_color(self, r: int, g: int, b: int, a: int = 255) -> None:
        node_id = 0
        depth = 0
        while not self.nodes[node_id].is_leaf:
            slot = self.child_slot(r, g, b, depth)
            child = self.nodes[node_id].children[slot]
            if child == _NO_NODE:
                child = self._new_node(depth + 1)
                self.nodes[node_id].children[slot] = child
            node_id = child
            depth += 1

        leaf = self.nodes[node_id]
        leaf.pixel_count += 1
        leaf.r_sum += r
        leaf.g_sum += g
        leaf.b_sum += b
        leaf.a_sum += a

        while self.leaf_count > self.max_colors:
            self.reduce()

    def _pop_reducible(self) -> int:
        for depth in range(_MAX_DEPTH - 1, 0, -1):
            node_id = self._reducible_head[depth]
            if node_id == _NO_NODE:
                continue
            nxt = self.nodes[node_id].next_reducible
            self._reducible_head[depth] = nxt
            if nxt == _NO_NODE:
                self._reducible_tail[depth] = _NO_NODE
            return node_id
        # Only the root is left to merge.
        return 0

    def _collect(self, node_id: int, totals: List[int]) -> int:
        """Add the subtree's sums into ``totals`` and return its leaf count."""

        node = self.nodes[node_id]
        if node.is_leaf:
            totals[0] += node.pixel_count
            totals[1] += node.r_sum
            totals[2] += node.g_sum
            totals[3] += node.b_sum
            totals[4] += node.a_sum
            return 1
        leaves = 0
        for child in node.children:
            if child != _NO_NODE:
                leaves += self._collect(child, totals)
        return leaves

    def reduce(self) -> None:
        node_id = self._pop_reducible()
        node = self.nodes[node_id]
        if node.is_leaf:
            return
        totals = [0, 0, 0, 0, 0]
        leaves = 0
        for slot, child in enumerate(node.children):
            if child != _NO_NODE:
                leaves += self._collect(child, totals)
                node.children[slot] = _NO_NODE
        node.is_leaf = True
        node.pixel_count, node.r_sum, node.g_sum, node.b_sum, node.a_sum = totals
        self.leaf_count -= leaves - 1

    def build_palette(self) -> List[PaletteEntry]:
        """Assign palette indices to leaves in traversal order and return them."""

        self._palette = []
        stack = [0]
        while stack:
            node_id = stack.pop()
            node = self.nodes[node_id]
            if node.is_leaf:
                count = max(1, node.pixel_count)
                node.palette_index = len(self._palette)
                self._palette.append(
                    (
                        node.r_sum // count,
                        node.g_sum // count,
                        node.b_sum // count,
                        node.a_sum // count if node.pixel_count else 255,
                    )
                )
                continue
            for child in reversed(node.children):
                if child != _NO_NODE:
                    stack.append(child)
        if not self._palette:
            self._palette.append((0, 0, 0, 255))
        return list(self._palette)

    def palette_index(self, r: int, g: int, b: int) -> int:
        """Descend to the leaf for ``(r, g, b)``; pruned paths use any sibling."""

        node_id = 0
        depth = 0
        while not self.nodes[node_id].is_leaf:
            children = self.nodes[node_id].children
            child = children[self.child_slot(r, g, b, depth)]
            if child == _NO_NODE:
                child = next((c for c in children if c != _NO_NODE), _NO_NODE)
                if child == _NO_NODE:
                    return 0
            node_id = child
            depth += 1
        return self.nodes[node_id].palette_index


def alpha_tier(alpha: int) -> int:
    """0 = transparent, 1 = semi-transparent, 2 = opaque."""

    if alpha <= ALPHA_TRANSPARENT_MAX:
        return 0
    if alpha < ALPHA_OPAQUE_MIN:
        return 1
    return 2


class OctreeQuantizer(Quantizer):
    """Internal quantizer: one octree per alpha tier sharing a 256-slot budget.

    Fully transparent pixels share a single reserved slot. Semi-transparent
    and opaque pixels are quantized in separate trees so no palette entry
    ever straddles two alpha tiers.
    """

    name = "octree"

    def __init__(self, colors: int = PALETTE_SIZE):
        self.colors = max(3, min(PALETTE_SIZE, colors))

    def _budgets(self, counts: Dict[int, int]) -> Dict[int, int]:
        budget = self.colors - (1 if counts[0] else 0)
        semi, opaque = counts[1], counts[2]
        if semi and opaque:
            semi_budget = round(budget * semi / (semi + opaque))
            semi_budget = max(1, min(budget - 1, semi_budget))
            return {1: semi_budget, 2: budget - semi_budget}
        if semi:
            return {1: budget}
        if opaque:
            return {2: budget}
        return {}

    def quantize(self, image: Image.Image) -> IndexedRaster:
        image = _check_canvas(image)
        pixels = list(image.getdata())
        tiers = [alpha_tier(a) for (_r, _g, _b, a) in pixels]
        counts = {0: tiers.count(0), 1: tiers.count(1), 2: tiers.count(2)}

        palette: List[PaletteEntry] = []
        offsets: Dict[int, int] = {}
        trees: Dict[int, Octree] = {}

        if counts[0]:
            palette.append((0, 0, 0, 0))

        for tier, budget in sorted(self._budgets(counts).items(), reverse=True):
            tree = Octree(budget)
            for (r, g, b, a), pixel_tier in zip(pixels, tiers):
                if pixel_tier == tier:
                    tree.add_color(r, g, b, a)
            offsets[tier] = len(palette)
            palette.extend(tree.build_palette())
            trees[tier] = tree

        indices = bytearray(len(pixels))
        cache: Dict[tuple, int] = {}
        for i, ((r, g, b, _a), tier) in enumerate(zip(pixels, tiers)):
            if tier == 0:
                continue
            key = (tier, r, g, b)
            index = cache.get(key)
            if index is None:
                index = offsets[tier] + trees[tier].palette_index(r, g, b)
                cache[key] = index
            indices[i] = index

        color_count = len(palette)
        return IndexedRaster(
            width=COVER_WIDTH,
            height=COVER_HEIGHT,
            palette=pad_palette(palette),
            indices=bytes(indices),
            color_count=color_count,
        )


QUANTIZER_NAMES = ("auto", "pngquant", "pillow", "octree")


def get_quantizer(
    name: str = "auto",
    pngquant_path: str | Path | None = None,
    timeout: Optional[float] = 60.0,
) -> Quantizer:
    """Build a quantizer by name; ``auto`` prefers pngquant when installed."""

    executable = str(pngquant_path) if pngquant_path else "pngquant"
    key = name.lower()
    if key == "auto":
        if PngquantQuantizer.is_available(executable):
            return PngquantQuantizer(executable, timeout=timeout)
        return OctreeQuantizer()
    if key == "pngquant":
        return PngquantQuantizer(executable, timeout=timeout)
    if key == "pillow":
        return PillowQuantizer()
    if key == "octree":
        return OctreeQuantizer()
    raise CoverError(f"Unknown quantizer: {name} (choose from {', '.join(QUANTIZER_NAMES)})")


__all__ = [
    "Octree",
    "OctreeQuantizer",
    "PillowQuantizer",
    "PngquantQuantizer",
    "QUANTIZER_NAMES",
    "Quantizer",
    "alpha_tier",
    "get_quantizer",
]

"""Conversion pipeline from artwork files to ``.cov`` containers."""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Iterable, List, Optional, Sequence

from PIL import Image

from .codec import COVER_SIZE_WITH_FOOTER, encode_cover, encode_legacy_cover, rewrite_footer
from .errors import CoverError
from .geometry import SUPPORTED_IMAGE_EXTENSIONS, load_image, normalize_cover
from .quantize import Quantizer, get_quantizer

COVER_EXTENSION = ".cov"

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class ConvertOptions:
    """Options for quantizer selection and container layout."""

    quantizer: str = "auto"  # auto, pngquant, pillow, octree
    pngquant_path: Optional[str] = None
    pngquant_timeout: Optional[float] = 60.0
    legacy: bool = False
    always_footer: bool = True
    serial: Optional[str] = None

    def build_quantizer(self) -> Quantizer:
        return get_quantizer(self.quantizer, self.pngquant_path, self.pngquant_timeout)


def convert_image_to_cov(
    image: Image.Image,
    options: ConvertOptions | None = None,
    quantizer: Quantizer | None = None,
) -> bytes:
    """Crop, resample, quantize and encode an in-memory image."""

    options = options or ConvertOptions()
    canvas = normalize_cover(image)
    if options.legacy:
        return encode_legacy_cover(canvas)

    quantizer = quantizer or options.build_quantizer()
    raster = quantizer.quantize(canvas)
    data = encode_cover(raster, options.serial)
    if options.always_footer and len(data) != COVER_SIZE_WITH_FOOTER:
        data = rewrite_footer(data, options.serial)
    return data


def convert_file_to_cov(
    path: str | Path,
    options: ConvertOptions | None = None,
    quantizer: Quantizer | None = None,
) -> bytes:
    return convert_image_to_cov(load_image(path), options, quantizer)


def write_bytes_atomic(target: Path, data: bytes) -> None:
    """Write ``data`` to ``target`` via a temporary sibling file and a rename."""

    target.parent.mkdir(parents=True, exist_ok=True)
    handle = NamedTemporaryFile(
        dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
    )
    try:
        with handle:
            handle.write(data)
        os.replace(handle.name, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(handle.name)
        raise


def resolve_output_path(input_path: Path, output_dir: Optional[Path]) -> Path:
    name = input_path.stem + COVER_EXTENSION
    if output_dir is not None:
        return output_dir / name
    return input_path.with_name(name)


def iter_inputs(paths: Iterable[str | Path]) -> List[Path]:
    """Expand files and folders (non-recursive) into a de-duplicated input list."""

    results: List[Path] = []
    seen = set()
    for raw in paths:
        path = Path(raw)
        if path.is_file():
            candidates = [path]
        elif path.is_dir():
            candidates = [
                entry
                for entry in sorted(path.iterdir())
                if entry.is_file()
                and entry.suffix.lower() in SUPPORTED_IMAGE_EXTENSIONS | {COVER_EXTENSION}
            ]
        else:
            raise CoverError(f"Input path does not exist: {path}")
        for candidate in candidates:
            key = os.path.normcase(str(candidate.resolve())).lower()
            if key in seen:
                continue
            seen.add(key)
            results.append(candidate)
    return results


@dataclass
class ItemResult:
    input_path: Path
    output_path: Optional[Path]
    status: str
    message: str = ""


@dataclass
class BatchReport:
    items: List[ItemResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for item in self.items if item.status == status)

    @property
    def ok(self) -> int:
        return self.count(STATUS_OK)

    @property
    def failed(self) -> int:
        return self.count(STATUS_FAILED)

    @property
    def skipped(self) -> int:
        return self.count(STATUS_SKIPPED)

    def summary(self) -> str:
        return f"Done. OK: {self.ok}, Failed: {self.failed}, Skipped: {self.skipped}"


def convert_one(
    src: Path,
    output_dir: Optional[Path],
    options: ConvertOptions,
    quantizer: Optional[Quantizer],
    force: bool = False,
) -> ItemResult:
    suffix = src.suffix.lower()
    if suffix == COVER_EXTENSION:
        return ItemResult(src, None, STATUS_SKIPPED, "already a .cov (preview only)")
    if suffix not in SUPPORTED_IMAGE_EXTENSIONS:
        return ItemResult(src, None, STATUS_SKIPPED, f"unsupported file type {src.suffix}")

    target = resolve_output_path(src, output_dir)
    if target.exists() and not force:
        return ItemResult(src, target, STATUS_SKIPPED, "output exists (use --force)")
    try:
        data = convert_file_to_cov(src, options, quantizer)
        write_bytes_atomic(target, data)
    except CoverError as exc:
        return ItemResult(src, target, STATUS_FAILED, str(exc))
    except OSError as exc:
        return ItemResult(src, target, STATUS_FAILED, f"Failed to write {target}: {exc}")
    return ItemResult(src, target, STATUS_OK, f"{len(data)} bytes")


def convert_batch(
    inputs: Sequence[Path],
    output_dir: Optional[Path] = None,
    options: ConvertOptions | None = None,
    force: bool = False,
    quantizer: Quantizer | None = None,
) -> BatchReport:
    """Convert every input independently; one failure never stops the rest."""

    options = options or ConvertOptions()
    if quantizer is None and not options.legacy:
        quantizer = options.build_quantizer()
    report = BatchReport()
    for src in inputs:
        report.items.append(convert_one(src, output_dir, options, quantizer, force))
    return report

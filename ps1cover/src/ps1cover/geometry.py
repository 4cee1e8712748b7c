"""Center-crop and resample source artwork to the 128x128 cover canvas."""

from __future__ import annotations

import io
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DecodeError
from .raster import COVER_HEIGHT, COVER_WIDTH

SUPPORTED_IMAGE_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".bmp",
    ".gif",
    ".tif",
    ".tiff",
    ".webp",
}


def load_image(source: str | Path | bytes) -> Image.Image:
    """Decode ``source`` (a path or raw file bytes) into an RGBA image."""

    label = "<bytes>" if isinstance(source, (bytes, bytearray)) else str(source)
    try:
        if isinstance(source, (bytes, bytearray)):
            handle = io.BytesIO(source)
        else:
            handle = Path(source).open("rb")
        with handle, Image.open(handle) as img:
            img = ImageOps.exif_transpose(img)
            return img.convert("RGBA")
    except FileNotFoundError as exc:
        raise DecodeError(f"Input file not found: {label}") from exc
    except UnidentifiedImageError as exc:
        raise DecodeError(f"Not a recognised image: {label}") from exc
    except Image.DecompressionBombError as exc:
        raise DecodeError(f"Image too large to decode safely: {label}: {exc}") from exc
    except OSError as exc:
        raise DecodeError(f"Failed to read image {label}: {exc}") from exc


def center_crop_square(image: Image.Image) -> Image.Image:
    width, height = image.size
    if width < 1 or height < 1:
        raise DecodeError(f"Image has no pixels ({width}x{height})")
    if width == height:
        return image
    size = min(width, height)
    left = (width - size) // 2
    top = (height - size) // 2
    return image.crop((left, top, left + size, top + size))


def normalize_cover(image: Image.Image) -> Image.Image:
    """Return a 128x128 RGBA copy of the largest centered square of ``image``.

    Resampling is bicubic with no extra smoothing pass, so identical input
    always yields identical output.
    """

    if image.mode != "RGBA":
        image = image.convert("RGBA")
    square = center_crop_square(image)
    target = (COVER_WIDTH, COVER_HEIGHT)
    if square.size == target:
        return square.copy()
    return square.resize(target, Image.BICUBIC)

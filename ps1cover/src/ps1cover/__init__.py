"""PS1 cover art converter.

Turns ordinary artwork into the 128x128 ``.cov`` containers read by the PS1
memory card loader, decodes them back for preview, and identifies disc
images by product serial. It can be invoked through the CLI (``python -m
ps1cover``) or imported to convert a single image into bytes.
"""

from .codec import (
    COVER_SIZE,
    COVER_SIZE_WITH_FOOTER,
    LEGACY_COVER_SIZE,
    build_riff_palette,
    encode_cover,
    encode_legacy_cover,
    normalize_serial,
    read_footer,
    rewrite_footer,
)
from .converter import ConvertOptions, convert_batch, convert_file_to_cov, convert_image_to_cov
from .discid import DiscIdentity, SerialMap, find_serial, resolve_disc_identity
from .errors import CoverError, DecodeError, ExternalToolFailure, SizeContractViolation
from .preview import BackgroundOptions, decode_cover
from .raster import IndexedRaster

__all__ = [
    "BackgroundOptions",
    "COVER_SIZE",
    "COVER_SIZE_WITH_FOOTER",
    "ConvertOptions",
    "CoverError",
    "DecodeError",
    "DiscIdentity",
    "ExternalToolFailure",
    "IndexedRaster",
    "LEGACY_COVER_SIZE",
    "SerialMap",
    "SizeContractViolation",
    "build_riff_palette",
    "convert_batch",
    "convert_file_to_cov",
    "convert_image_to_cov",
    "decode_cover",
    "encode_cover",
    "encode_legacy_cover",
    "find_serial",
    "normalize_serial",
    "read_footer",
    "resolve_disc_identity",
    "rewrite_footer",
]

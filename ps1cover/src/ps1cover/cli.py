"""Command line interface for the PS1 cover tools."""

from __future__ import annotations

import argparse
import sys
import warnings
from pathlib import Path
from typing import Optional

from .codec import build_riff_palette, normalize_serial, read_footer, rewrite_footer
from .converter import (
    STATUS_FAILED,
    STATUS_OK,
    ConvertOptions,
    convert_batch,
    iter_inputs,
    write_bytes_atomic,
)
from .discid import SerialMap, ScanResult, iter_scan_results, resolve_disc_identity
from .errors import CoverError
from .preview import BackgroundOptions, cover_format, decode_cover
from .quantize import QUANTIZER_NAMES

DEFAULT_SERIAL_MAP = "serialmap.json"


def read_cover(path: str | Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise CoverError(f"Failed to read {path}: {exc}") from exc


def load_serial_map(path: Optional[str]) -> SerialMap:
    return SerialMap.from_file(path or DEFAULT_SERIAL_MAP)


def format_scan_status(result: ScanResult) -> str:
    if result.cover_exists:
        return "SKIPPED • cover exists"
    if result.error:
        return f"ERROR • {result.error}"
    identity = result.identity
    if identity is not None and identity.found:
        if identity.source == "map":
            return f"FOUND • serial {identity.serial} (PVD {identity.fingerprint})"
        return f"FOUND • serial {identity.serial}"
    if identity is not None and identity.fingerprint:
        return f"serial unknown • PVD {identity.fingerprint}"
    return "serial unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ps1cover",
        description=(
            "Create and inspect 128x128 PS1 cover art containers (.cov).\n"
            "Current format: 256-colour BGR555 palette + 8-bit indices "
            "(16896 bytes, 16912 with a serial footer).\n"
            "Legacy format: 32768 bytes of raw BGR555 pixels."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    convert = commands.add_parser("convert", help="Convert images to .cov files")
    convert.add_argument(
        "inputs",
        nargs="+",
        help="Image files or folders containing images (non-recursive)",
    )
    convert.add_argument(
        "-o",
        "--output-dir",
        help="Destination directory for .cov files (default: next to each input)",
    )
    convert.add_argument("--serial", help="Product serial written to the 16-byte footer")
    convert.add_argument(
        "--quantizer",
        choices=QUANTIZER_NAMES,
        default="auto",
        help="Colour reduction backend (auto prefers pngquant, then octree)",
    )
    convert.add_argument("--pngquant", help="Path to the pngquant executable")
    convert.add_argument(
        "--pngquant-timeout",
        type=float,
        default=60.0,
        help="Seconds to wait for pngquant before failing the item",
    )
    convert.add_argument(
        "--legacy",
        action="store_true",
        help="Write the 32768-byte raw pixel format instead of the palette format",
    )
    convert.add_argument(
        "--no-footer",
        action="store_true",
        help="Omit the footer when no serial is given (16896-byte output)",
    )
    convert.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Overwrite existing files without prompting",
    )

    preview = commands.add_parser("preview", help="Decode a .cov file to PNG")
    preview.add_argument("cover", help=".cov file to decode")
    preview.add_argument("-o", "--output", help="PNG path (default: <cover>.png)")
    preview.add_argument(
        "--keep-background",
        action="store_true",
        help="Disable the disc background removal heuristic",
    )

    identify = commands.add_parser("identify", help="Find the serial of disc images")
    identify.add_argument("games", nargs="+", help=".cue, .bin or .iso files")
    identify.add_argument(
        "--serial-map",
        help=f"JSON fingerprint table (default: {DEFAULT_SERIAL_MAP} if present)",
    )

    scan = commands.add_parser("scan", help="Report the cover status of every game in a tree")
    scan.add_argument("root", help="Directory to walk recursively")
    scan.add_argument(
        "--serial-map",
        help=f"JSON fingerprint table (default: {DEFAULT_SERIAL_MAP} if present)",
    )

    footer = commands.add_parser("footer", help="Rewrite the serial footer of a .cov file")
    footer.add_argument("cover", help=".cov file to update in place")
    footer.add_argument("--serial", default="", help="New serial (empty clears the footer)")

    export_pal = commands.add_parser("export-pal", help="Export the palette as RIFF .pal")
    export_pal.add_argument("cover", help=".cov file (palette format)")
    export_pal.add_argument("-o", "--output", help="PAL path (default: <cover>.pal)")

    info = commands.add_parser("info", help="Show format and footer of a .cov file")
    info.add_argument("cover", help=".cov file")

    return parser


def run_convert(args: argparse.Namespace) -> int:
    options = ConvertOptions(
        quantizer=args.quantizer,
        pngquant_path=args.pngquant,
        pngquant_timeout=args.pngquant_timeout,
        legacy=args.legacy,
        always_footer=not args.no_footer,
        serial=normalize_serial(args.serial),
    )
    inputs = iter_inputs(args.inputs)
    if not inputs:
        raise CoverError("No image files were found in the provided inputs.")
    output_dir = Path(args.output_dir) if args.output_dir else None

    report = convert_batch(inputs, output_dir, options, force=args.force)
    for item in report.items:
        if item.status == STATUS_OK:
            print(f"wrote {item.output_path}")
        elif item.status == STATUS_FAILED:
            print(f"failed {item.input_path}: {item.message}", file=sys.stderr)
        else:
            print(f"skipped {item.input_path}: {item.message}")
    print(report.summary())
    return 1 if report.failed else 0


def run_preview(args: argparse.Namespace) -> int:
    data = read_cover(args.cover)
    options = BackgroundOptions(enabled=not args.keep_background)
    image = decode_cover(data, options)
    target = Path(args.output) if args.output else Path(args.cover).with_suffix(".png")
    try:
        image.save(target, format="PNG")
    except OSError as exc:
        raise CoverError(f"Failed to write {target}: {exc}") from exc
    print(f"wrote {target}")
    return 0


def run_identify(args: argparse.Namespace) -> int:
    serial_map = load_serial_map(args.serial_map)
    failed = 0
    for game in args.games:
        try:
            identity = resolve_disc_identity(game, serial_map)
        except CoverError as exc:
            print(f"{game}: {exc}", file=sys.stderr)
            failed += 1
            continue
        if identity.found:
            line = f"{game}: {identity.serial} ({identity.source})"
            if identity.title:
                line += f" {identity.title}"
        elif identity.fingerprint:
            line = f"{game}: serial unknown • PVD {identity.fingerprint}"
        else:
            line = f"{game}: serial unknown"
        print(line)
    return 1 if failed else 0


def run_scan(args: argparse.Namespace) -> int:
    serial_map = load_serial_map(args.serial_map)
    found = missing = skipped = errors = 0
    for result in iter_scan_results(args.root, serial_map):
        print(f"{result.entry.game_path}: {format_scan_status(result)}")
        if result.cover_exists:
            skipped += 1
        elif result.error:
            errors += 1
        elif result.identity is not None and result.identity.found:
            found += 1
        else:
            missing += 1
    print(f"Done. Found: {found}, Unknown: {missing}, Skipped: {skipped}, Errors: {errors}")
    return 1 if errors else 0


def run_footer(args: argparse.Namespace) -> int:
    target = Path(args.cover)
    data = rewrite_footer(read_cover(target), args.serial)
    try:
        write_bytes_atomic(target, data)
    except OSError as exc:
        raise CoverError(f"Failed to write {target}: {exc}") from exc
    print(f"wrote {target} (serial: {read_footer(data) or 'none'})")
    return 0


def run_export_pal(args: argparse.Namespace) -> int:
    palette = build_riff_palette(read_cover(args.cover))
    target = Path(args.output) if args.output else Path(args.cover).with_suffix(".pal")
    try:
        write_bytes_atomic(target, palette)
    except OSError as exc:
        raise CoverError(f"Failed to write {target}: {exc}") from exc
    print(f"wrote {target}")
    return 0


def run_info(args: argparse.Namespace) -> int:
    data = read_cover(args.cover)
    kind = cover_format(data)
    print(f"{args.cover}: {kind}, {len(data)} bytes")
    if kind != "legacy":
        print(f"serial: {read_footer(data) or 'none'}")
    return 0


COMMANDS = {
    "convert": run_convert,
    "preview": run_preview,
    "identify": run_identify,
    "scan": run_scan,
    "footer": run_footer,
    "export-pal": run_export_pal,
    "info": run_info,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            status = COMMANDS[args.command](args)
        for warning in caught:
            print(f"Warning: {warning.message}")
        return status
    except CoverError as exc:
        print(exc, file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

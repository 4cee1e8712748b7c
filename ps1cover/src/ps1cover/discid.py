"""Identify PlayStation disc images by product serial or descriptor checksum.

A serial such as ``SLUS_012.06`` is normally embedded as plain text near
the start of the data track (``SYSTEM.CNF`` and the boot executable name),
so the first step is a bounded byte scan. Some discs carry no readable
serial; for those the ISO 9660 primary volume descriptor (logical sector
16 of the data track) is CRC32-fingerprinted and looked up in a JSON table.
"""

from __future__ import annotations

import json
import re
import warnings
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional

from .errors import CoverError

MAX_SCAN_BYTES = 64 * 1024 * 1024
SCAN_CHUNK_SIZE = 1024 * 1024
SCAN_OVERLAP = 64

FRAMES_PER_SECOND = 75
PVD_SECTOR = 16
PVD_SIZE = 2048
ISO_DESCRIPTOR_MAGIC = b"\x01CD001"

SERIAL_PREFIXES = (
    "SCUS",
    "SLUS",
    "SLES",
    "SCES",
    "SCPS",
    "SLPS",
    "SCPM",
    "SIPS",
    "SLED",
    "SLPM",
    "SCED",
)
_PREFIX_GROUP = "|".join(SERIAL_PREFIXES).encode("ascii")

# LSP20033.001 -> LSP-200330 (five digits plus the first digit after the dot)
LSP_SERIAL_RE = re.compile(rb"(?<![A-Z0-9])LSP([0-9]{5})\.([0-9]{3})(?![0-9])")
# SLUS_00.220 -> SLUS-00220
SPLIT_2_3_SERIAL_RE = re.compile(
    rb"(?<![A-Z0-9])(" + _PREFIX_GROUP + rb")[_P-]?([0-9]{2})\.([0-9]{3})(?![0-9])"
)
# SLUS_012.06 / SLUSP012.06 -> SLUS-01206
SPLIT_3_2_SERIAL_RE = re.compile(
    rb"(?<![A-Z0-9])(" + _PREFIX_GROUP + rb")[_P-]?([0-9]{3})\.([0-9]{2})(?![0-9])"
)


@dataclass(frozen=True)
class SectorLayout:
    sector_size: int
    data_offset: int


TRACK_LAYOUTS: Dict[str, SectorLayout] = {
    "MODE1/2352": SectorLayout(2352, 16),
    "MODE2/2352": SectorLayout(2352, 24),
    "MODE1/2048": SectorLayout(2048, 0),
}
DEFAULT_TRACK_MODE = "MODE2/2352"


@dataclass(frozen=True)
class DataTrack:
    path: Path
    mode: str
    start_lba: int

    @property
    def layout(self) -> SectorLayout:
        return TRACK_LAYOUTS[self.mode]


@dataclass(frozen=True)
class SerialMapEntry:
    serial: str
    title: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class DiscIdentity:
    serial: Optional[str] = None
    fingerprint: Optional[str] = None
    source: Optional[str] = None  # "scan", "map" or None
    title: Optional[str] = None
    notes: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.serial is not None


def find_serial(text: bytes) -> Optional[str]:
    """Return the first serial in ``text`` normalised to ``PREFIX-DDDDD``."""

    match = LSP_SERIAL_RE.search(text)
    if match:
        return "LSP-" + (match.group(1) + match.group(2)[:1]).decode("ascii")
    for pattern in (SPLIT_2_3_SERIAL_RE, SPLIT_3_2_SERIAL_RE):
        match = pattern.search(text)
        if match:
            prefix, head, tail = (g.decode("ascii") for g in match.groups())
            return f"{prefix}-{head}{tail}"
    return None


def scan_stream_for_serial(
    stream: BinaryIO,
    max_bytes: int = MAX_SCAN_BYTES,
    chunk_size: int = SCAN_CHUNK_SIZE,
    overlap: int = SCAN_OVERLAP,
) -> Optional[str]:
    """Search up to ``max_bytes`` of ``stream`` for an embedded serial.

    Each chunk is searched together with the last ``overlap`` bytes of the
    previous one so a serial straddling a chunk boundary is still found.
    """

    remaining = max_bytes
    carry = b""
    while remaining > 0:
        block = stream.read(min(chunk_size, remaining))
        if not block:
            break
        window = carry + block
        serial = find_serial(window)
        if serial:
            return serial
        carry = window[-overlap:] if overlap else b""
        remaining -= len(block)
    return None


def scan_image_for_serial(path: str | Path, max_bytes: int = MAX_SCAN_BYTES) -> Optional[str]:
    try:
        with Path(path).open("rb") as handle:
            return scan_stream_for_serial(handle, max_bytes=max_bytes)
    except OSError as exc:
        raise CoverError(f"Failed to read disc image {path}: {exc}") from exc


def cue_time_to_lba(timecode: str) -> int:
    """Convert ``mm:ss:ff`` (75 frames per second) to a sector count."""

    parts = timecode.strip().split(":")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise CoverError(f"Invalid cue timecode: {timecode!r}")
    minutes, seconds, frames = (int(p) for p in parts)
    return (minutes * 60 + seconds) * FRAMES_PER_SECOND + frames


def _cue_file_name(line: str) -> Optional[str]:
    first = line.find('"')
    second = line.find('"', first + 1) if first >= 0 else -1
    if first >= 0 and second > first:
        return line[first + 1 : second]
    parts = line.split()
    return parts[1] if len(parts) >= 2 else None


def _read_cue_lines(cue_path: Path) -> List[str]:
    try:
        text = cue_path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise CoverError(f"Failed to read cue sheet {cue_path}: {exc}") from exc
    return [line.strip() for line in text.splitlines()]


def first_bin_from_cue(cue_path: str | Path) -> Optional[Path]:
    """Return the first ``.bin`` named by a ``FILE`` line, resolved next to the sheet."""

    cue_path = Path(cue_path)
    for line in _read_cue_lines(cue_path):
        if not line.upper().startswith("FILE"):
            continue
        name = _cue_file_name(line)
        if name and name.lower().endswith(".bin"):
            return (cue_path.parent / name).resolve()
    return None


def parse_cue_data_track(cue_path: str | Path) -> Optional[DataTrack]:
    """Locate track 01 of a cue sheet: backing file, mode and INDEX 01 start."""

    cue_path = Path(cue_path)
    current_file: Optional[Path] = None
    mode = DEFAULT_TRACK_MODE
    in_first_track = False

    for line in _read_cue_lines(cue_path):
        if not line:
            continue
        upper = line.upper()
        if upper.startswith("FILE"):
            name = _cue_file_name(line)
            if name:
                current_file = (cue_path.parent / name).resolve()
            continue
        if upper.startswith("TRACK"):
            parts = line.split()
            if len(parts) >= 3:
                in_first_track = parts[1] == "01"
                if in_first_track:
                    mode = parts[2].upper()
                    if mode not in TRACK_LAYOUTS:
                        mode = DEFAULT_TRACK_MODE
            continue
        if in_first_track and upper.startswith("INDEX 01"):
            parts = line.split()
            if len(parts) >= 3 and current_file is not None:
                try:
                    start_lba = cue_time_to_lba(parts[2])
                except CoverError:
                    return None
                return DataTrack(current_file, mode, start_lba)
    return None


def crc32_hex(data: bytes) -> str:
    """Standard reflected CRC-32 (poly 0xEDB88320) as eight upper-case hex digits."""

    return f"{zlib.crc32(data) & 0xFFFFFFFF:08X}"


def read_descriptor(path: Path, layout: SectorLayout, start_lba: int = 0) -> Optional[bytes]:
    """Read the 2048 user-data bytes of logical sector 16, or ``None`` if short."""

    offset = (start_lba + PVD_SECTOR) * layout.sector_size + layout.data_offset
    try:
        with path.open("rb") as handle:
            handle.seek(offset)
            data = handle.read(PVD_SIZE)
    except OSError as exc:
        raise CoverError(f"Failed to read disc image {path}: {exc}") from exc
    return data if len(data) == PVD_SIZE else None


def _standalone_layouts(path: Path) -> Iterable[SectorLayout]:
    if path.suffix.lower() == ".iso":
        return [TRACK_LAYOUTS["MODE1/2048"]]
    return [TRACK_LAYOUTS["MODE2/2352"], TRACK_LAYOUTS["MODE1/2352"]]


def compute_descriptor_fingerprint(game_path: str | Path) -> Optional[str]:
    """CRC32 of the primary volume descriptor of a cue sheet or raw image."""

    game_path = Path(game_path)
    if game_path.suffix.lower() == ".cue":
        track = parse_cue_data_track(game_path)
        if track is None or not track.path.is_file():
            return None
        data = read_descriptor(track.path, track.layout, track.start_lba)
        return crc32_hex(data) if data is not None else None

    if not game_path.is_file():
        return None
    candidates = []
    for layout in _standalone_layouts(game_path):
        data = read_descriptor(game_path, layout)
        if data is None:
            continue
        if data.startswith(ISO_DESCRIPTOR_MAGIC):
            return crc32_hex(data)
        candidates.append(data)
    return crc32_hex(candidates[0]) if candidates else None


class SerialMap:
    """Fingerprint-to-serial lookup table loaded from JSON.

    Layout: ``{"pvd_crc32": {"1A2B3C4D": {"serial": "SLUS-01206",
    "title": "...", "notes": "..."}}}``
    """

    def __init__(self, entries: Optional[Dict[str, SerialMapEntry]] = None):
        self.entries: Dict[str, SerialMapEntry] = {
            key.upper(): value for key, value in (entries or {}).items()
        }

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def from_dict(cls, payload: object) -> "SerialMap":
        if not isinstance(payload, dict):
            raise CoverError("Serial map must be a JSON object")
        table = payload.get("pvd_crc32", {})
        if not isinstance(table, dict):
            raise CoverError('Serial map "pvd_crc32" must be a JSON object')
        entries: Dict[str, SerialMapEntry] = {}
        for key, record in table.items():
            serial = record.get("serial") if isinstance(record, dict) else None
            if not isinstance(serial, str) or not serial.strip():
                warnings.warn(
                    f"Serial map entry {key} has no serial; ignored",
                    RuntimeWarning,
                    stacklevel=2,
                )
                continue
            title = record.get("title")
            notes = record.get("notes")
            entries[key] = SerialMapEntry(
                serial=serial.strip(),
                title=title if isinstance(title, str) else None,
                notes=notes if isinstance(notes, str) else None,
            )
        return cls(entries)

    @classmethod
    def from_file(cls, path: str | Path) -> "SerialMap":
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CoverError(f"Failed to load serial map {path}: {exc}") from exc
        return cls.from_dict(payload)

    def lookup(self, fingerprint: str) -> Optional[SerialMapEntry]:
        return self.entries.get(fingerprint.upper())


def data_file_for(game_path: str | Path) -> Optional[Path]:
    game_path = Path(game_path)
    if game_path.suffix.lower() == ".cue":
        return first_bin_from_cue(game_path)
    return game_path


def resolve_disc_identity(
    game_path: str | Path,
    serial_map: Optional[SerialMap] = None,
    data_path: str | Path | None = None,
) -> DiscIdentity:
    """Find a disc's serial by scanning, falling back to the fingerprint table.

    An unknown disc is not an error: the returned identity simply has no
    serial, and carries the fingerprint when one could be computed.
    """

    data = Path(data_path) if data_path else data_file_for(game_path)
    if data is not None and data.is_file():
        serial = scan_image_for_serial(data)
        if serial:
            return DiscIdentity(serial=serial, source="scan")

    fingerprint = compute_descriptor_fingerprint(game_path)
    if fingerprint is None:
        return DiscIdentity()
    entry = serial_map.lookup(fingerprint) if serial_map is not None else None
    if entry is None:
        return DiscIdentity(fingerprint=fingerprint)
    return DiscIdentity(
        serial=entry.serial,
        fingerprint=fingerprint,
        source="map",
        title=entry.title,
        notes=entry.notes,
    )


@dataclass(frozen=True)
class GameEntry:
    game_path: Path

    @property
    def data_path(self) -> Optional[Path]:
        """Backing raw file; cue sheets are read on access."""

        return data_file_for(self.game_path)


def find_game_entries(root: str | Path) -> List[GameEntry]:
    """Collect games under ``root``.

    A directory holding any ``.cue`` contributes only its cue sheets (their
    track files are not listed again); other directories contribute each
    ``.bin`` as a standalone game.
    """

    root = Path(root)
    if not root.is_dir():
        raise CoverError(f"Scan root is not a directory: {root}")
    cues: List[Path] = []
    bins: List[Path] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        suffix = path.suffix.lower()
        if suffix == ".cue":
            cues.append(path)
        elif suffix == ".bin":
            bins.append(path)

    cue_dirs = {cue.parent for cue in cues}
    entries = [GameEntry(cue) for cue in cues]
    entries.extend(GameEntry(b) for b in bins if b.parent not in cue_dirs)
    return entries


@dataclass
class ScanResult:
    entry: GameEntry
    cover_path: Path
    cover_exists: bool
    identity: Optional[DiscIdentity]
    error: Optional[str] = None


def cover_path_for_game(game_path: Path) -> Path:
    return game_path.with_suffix(".cov")


def iter_scan_results(
    root: str | Path, serial_map: Optional[SerialMap] = None
) -> Iterator[ScanResult]:
    """Yield one result per game; callers may stop iterating at any point."""

    for entry in find_game_entries(root):
        cover_path = cover_path_for_game(entry.game_path)
        if cover_path.exists():
            yield ScanResult(entry, cover_path, True, None)
            continue
        try:
            identity = resolve_disc_identity(entry.game_path, serial_map)
        except CoverError as exc:
            yield ScanResult(entry, cover_path, False, None, str(exc))
            continue
        yield ScanResult(entry, cover_path, False, identity)

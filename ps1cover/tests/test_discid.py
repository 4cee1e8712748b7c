import io
import json

import pytest

from ps1cover import discid
from ps1cover.discid import (
    ISO_DESCRIPTOR_MAGIC,
    SerialMap,
    compute_descriptor_fingerprint,
    crc32_hex,
    cue_time_to_lba,
    find_game_entries,
    find_serial,
    first_bin_from_cue,
    iter_scan_results,
    parse_cue_data_track,
    resolve_disc_identity,
    scan_stream_for_serial,
)
from ps1cover.errors import CoverError


def _descriptor(label: bytes) -> bytes:
    return (ISO_DESCRIPTOR_MAGIC + label).ljust(2048, b"\x20")


def _raw_image(descriptor: bytes, sector_size: int = 2352, data_offset: int = 24,
               start_lba: int = 0) -> bytes:
    """A raw image whose logical sector 16 carries ``descriptor``."""

    image = bytearray(sector_size * (start_lba + 18))
    offset = (start_lba + 16) * sector_size + data_offset
    image[offset : offset + len(descriptor)] = descriptor
    return bytes(image)


@pytest.mark.parametrize(
    "text, expected",
    [
        (b"BOOT = cdrom:\\SLUS_012.06;1", "SLUS-01206"),
        (b"cdrom:SLUSP012.06", "SLUS-01206"),
        (b"LSP20033.001", "LSP-200330"),
        (b"BOOT=cdrom:\\SCES_00.344;1", "SCES-00344"),
        (b"slps-01234 no dot", None),
        (b"nothing to see here", None),
    ],
)
def test_find_serial(text, expected):
    assert find_serial(text) == expected


def test_find_serial_rejects_longer_digit_runs():
    assert find_serial(b"SLUS_012.067") is None


def test_scan_finds_serial_across_chunk_boundary():
    payload = b"\x00" * 95 + b"SLUS_012.06" + b"\x00" * 50
    stream = io.BytesIO(payload)

    assert scan_stream_for_serial(stream, chunk_size=100, overlap=64) == "SLUS-01206"


def test_scan_respects_byte_cap():
    payload = b"\x00" * 4096 + b"SLUS_012.06"

    assert scan_stream_for_serial(io.BytesIO(payload), max_bytes=4096, chunk_size=1024) is None
    assert scan_stream_for_serial(io.BytesIO(payload), max_bytes=8192, chunk_size=1024) == (
        "SLUS-01206"
    )


def test_crc32_matches_reference_values():
    assert crc32_hex(b"123456789") == "CBF43926"
    assert crc32_hex(bytes(2048)) == "F1E8BA9E"


def test_cue_time_to_lba():
    assert cue_time_to_lba("00:00:00") == 0
    assert cue_time_to_lba("00:02:00") == 150
    assert cue_time_to_lba("01:00:10") == 4510
    with pytest.raises(CoverError):
        cue_time_to_lba("00:02")


def test_parse_cue_data_track(tmp_path):
    cue = tmp_path / "game.cue"
    cue.write_text(
        'FILE "Game (Track 1).bin" BINARY\n'
        "  TRACK 01 MODE1/2352\n"
        "    INDEX 01 00:00:02\n"
        'FILE "Game (Track 2).bin" BINARY\n'
        "  TRACK 02 AUDIO\n"
        "    INDEX 00 00:00:00\n"
    )

    track = parse_cue_data_track(cue)

    assert track is not None
    assert track.path.name == "Game (Track 1).bin"
    assert track.mode == "MODE1/2352"
    assert track.start_lba == 2
    assert track.layout.data_offset == 16
    assert first_bin_from_cue(cue).name == "Game (Track 1).bin"


def test_unknown_track_mode_falls_back_to_mode2(tmp_path):
    cue = tmp_path / "game.cue"
    cue.write_text("FILE game.bin BINARY\nTRACK 01 CDI/2352\nINDEX 01 00:00:00\n")

    track = parse_cue_data_track(cue)

    assert track.mode == "MODE2/2352"
    assert track.path.name == "game.bin"


def test_fingerprint_from_cue_uses_track_layout(tmp_path):
    descriptor = _descriptor(b"PLAYSTATION")
    (tmp_path / "game.bin").write_bytes(_raw_image(descriptor, data_offset=16))
    cue = tmp_path / "game.cue"
    cue.write_text('FILE "game.bin" BINARY\n  TRACK 01 MODE1/2352\n    INDEX 01 00:00:00\n')

    assert compute_descriptor_fingerprint(cue) == crc32_hex(descriptor)


def test_fingerprint_of_standalone_bin_prefers_descriptor_signature(tmp_path):
    descriptor = _descriptor(b"PLAYSTATION")
    image = tmp_path / "game.bin"
    image.write_bytes(_raw_image(descriptor, data_offset=16))

    # MODE2 (offset 24) would read garbage; the MODE1 read carries CD001.
    assert compute_descriptor_fingerprint(image) == crc32_hex(descriptor)


def test_fingerprint_of_iso(tmp_path):
    descriptor = _descriptor(b"ISO")
    image = tmp_path / "game.iso"
    image.write_bytes(_raw_image(descriptor, sector_size=2048, data_offset=0))

    assert compute_descriptor_fingerprint(image) == crc32_hex(descriptor)


def test_fingerprint_of_short_file_is_none(tmp_path):
    image = tmp_path / "tiny.bin"
    image.write_bytes(bytes(1000))

    assert compute_descriptor_fingerprint(image) is None


def test_serial_map_lookup_is_case_insensitive(tmp_path):
    table = tmp_path / "serialmap.json"
    table.write_text(
        json.dumps(
            {
                "pvd_crc32": {
                    "abcd1234": {"serial": "SLUS-01206", "title": "Example"},
                    "00000000": {"title": "no serial"},
                }
            }
        )
    )

    with pytest.warns(RuntimeWarning, match="no serial"):
        serial_map = SerialMap.from_file(table)

    assert len(serial_map) == 1
    entry = serial_map.lookup("ABCD1234")
    assert entry.serial == "SLUS-01206"
    assert entry.title == "Example"
    assert serial_map.lookup("FFFFFFFF") is None


def test_serial_map_missing_and_malformed(tmp_path):
    assert len(SerialMap.from_file(tmp_path / "absent.json")) == 0

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(CoverError, match="broken.json"):
        SerialMap.from_file(broken)


def test_resolve_identity_prefers_embedded_serial(tmp_path):
    raw = bytearray(_raw_image(_descriptor(b"X")))
    raw[100:120] = b"cdrom:\\SLES_123.45;1"
    image = tmp_path / "game.bin"
    image.write_bytes(bytes(raw))

    identity = resolve_disc_identity(image)

    assert identity.found
    assert identity.serial == "SLES-12345"
    assert identity.source == "scan"


def test_resolve_identity_falls_back_to_fingerprint_map(tmp_path):
    descriptor = _descriptor(b"NOSERIAL")
    image = tmp_path / "game.bin"
    image.write_bytes(_raw_image(descriptor))
    fingerprint = crc32_hex(descriptor)

    unknown = resolve_disc_identity(image, SerialMap())
    assert not unknown.found
    assert unknown.fingerprint == fingerprint

    serial_map = SerialMap.from_dict(
        {"pvd_crc32": {fingerprint.lower(): {"serial": "SCUS-94163", "notes": "manual"}}}
    )
    identity = resolve_disc_identity(image, serial_map)
    assert identity.serial == "SCUS-94163"
    assert identity.source == "map"
    assert identity.notes == "manual"


def test_find_game_entries_prefers_cue_sheets(tmp_path):
    with_cue = tmp_path / "A"
    with_cue.mkdir()
    (with_cue / "a.cue").write_text('FILE "a (Track 1).bin" BINARY\nTRACK 01 MODE2/2352\n')
    (with_cue / "a (Track 1).bin").write_bytes(b"")
    (with_cue / "a (Track 2).bin").write_bytes(b"")
    plain = tmp_path / "B"
    plain.mkdir()
    (plain / "b.bin").write_bytes(b"")
    (plain / "notes.txt").write_text("x")

    entries = find_game_entries(tmp_path)

    assert [e.game_path.name for e in entries] == ["a.cue", "b.bin"]
    assert entries[0].data_path.name == "a (Track 1).bin"
    assert entries[1].data_path == plain / "b.bin"


def test_find_game_entries_requires_directory(tmp_path):
    with pytest.raises(CoverError):
        find_game_entries(tmp_path / "missing")


def test_iter_scan_results_skips_games_with_covers(tmp_path):
    (tmp_path / "done.bin").write_bytes(b"")
    (tmp_path / "done.cov").write_bytes(b"")
    (tmp_path / "todo.bin").write_bytes(b"BOOT=cdrom:\\SCUS_944.55;1")

    results = list(iter_scan_results(tmp_path))

    assert [r.entry.game_path.name for r in results] == ["done.bin", "todo.bin"]
    assert results[0].cover_exists
    assert results[0].identity is None
    assert not results[1].cover_exists
    assert results[1].identity.serial == "SCUS-94455"


def test_malformed_index_timecode_means_no_data_track(tmp_path):
    (tmp_path / "game.bin").write_bytes(bytes(64))
    cue = tmp_path / "game.cue"
    cue.write_text('FILE "game.bin" BINARY\n  TRACK 01 MODE2/2352\n    INDEX 01 00:xx:00\n')

    assert parse_cue_data_track(cue) is None
    assert compute_descriptor_fingerprint(cue) is None

    identity = resolve_disc_identity(cue)
    assert not identity.found
    assert identity.fingerprint is None


def test_scan_continues_past_unreadable_cue_sheet(tmp_path, monkeypatch):
    broken = tmp_path / "A"
    broken.mkdir()
    (broken / "broken.cue").write_text('FILE "broken.bin" BINARY\n')
    plain = tmp_path / "B"
    plain.mkdir()
    (plain / "good.bin").write_bytes(b"BOOT=cdrom:\\SLUS_012.06;1")

    original = discid._read_cue_lines

    def fail_on_broken(cue_path):
        if cue_path.name == "broken.cue":
            raise CoverError(f"Failed to read cue sheet {cue_path}: denied")
        return original(cue_path)

    monkeypatch.setattr(discid, "_read_cue_lines", fail_on_broken)

    entries = find_game_entries(tmp_path)
    assert [e.game_path.name for e in entries] == ["broken.cue", "good.bin"]

    results = list(iter_scan_results(tmp_path))

    assert [r.entry.game_path.name for r in results] == ["broken.cue", "good.bin"]
    assert results[0].identity is None
    assert "denied" in results[0].error
    assert results[1].error is None
    assert results[1].identity.serial == "SLUS-01206"

from __future__ import annotations

import logging

import pytest

from sfpw.core.errors import (
    AmbiguousStride,
    AnchorNotFound,
    EmptyDatabase,
    PointerNotFound,
    SegmentNotFound,
)
from sfpw.firmware.esp32 import Segment, parse_image
from sfpw.firmware.passdb import (
    PasswordEntry,
    count_valid_records,
    detect_stride,
    extract_password_database,
    load_password_database,
    locate_database,
)

from conftest import DROM_BASE, IROM_BASE, build_drom, build_image

PW_A = b"\x11\x22\x33\x44"
PW_B = b"\x80\x81\x82\x83"
PW_C = b"UBNT"
PW_D = b"\x05\x06\x07\x08"

RECORDS = [
    (False, "AOC-SFP10-5M", False, PW_A, b"\x03\x00\x00"),
    (False, "SFP-10G-LR", True, PW_B, b"\x01\x00\x00"),
    (False, "SFP-10G-LR", False, PW_A, b"\x00\x00\x00"),
    (True, "SFP-10G-LR", False, PW_D, b"\x00\x00\x00"),
    (False, "SFP-10G-LR", False, PW_B, b"\x00\x00\x00"),
    (False, "SFP-10G-LR", False, PW_C, b"\x0f\x00\x00"),
    (False, "QSFP-40G", False, b"\xff\xff\xff\xff", b"\x00\x00\x00"),
]


def _image(drom: bytes) -> bytes:
    return build_image([(IROM_BASE, b"\x00" * 16), (DROM_BASE, drom)])


@pytest.mark.parametrize("stride", [16, 20])
def test_extract_detects_stride(stride: int) -> None:
    drom = build_drom(RECORDS, stride=stride, cable_length=3)
    db = extract_password_database(parse_image(_image(drom)))

    assert db.stride == stride
    assert len(db.entries) == len(RECORDS)
    first = db.entries[0]
    assert first.part_number == "AOC-SFP10-5M"
    assert first.password == PW_A
    assert first.flags == b"\x03\x00\x00"
    assert db.entries[1].locked
    assert db.entries[3].read_only
    if stride == 20:
        assert first.cable_length == 3
        assert "cable_length" in db.generation
    else:
        assert first.cable_length is None


def test_default_entry_from_terminator() -> None:
    db = extract_password_database(parse_image(_image(build_drom(RECORDS, default_password=b"\x00\x00\x10\x11"))))
    assert db.default_entry is not None
    assert db.default_entry.is_default
    assert db.default_entry.password == b"\x00\x00\x10\x11"
    assert all(entry.part_number for entry in db.entries)


def test_read_only_terminator_is_not_default() -> None:
    db = extract_password_database(parse_image(_image(build_drom(RECORDS, default_password=None))))
    assert db.default_entry is None
    assert len(db.entries) == len(RECORDS)


def test_passwords_to_try_dedupes_in_table_order() -> None:
    db = extract_password_database(parse_image(_image(build_drom(RECORDS))))

    assert len(db.find_by_part_number("SFP-10G-LR")) == 5
    tried = db.passwords_to_try("SFP-10G-LR")
    assert [entry.password for entry in tried] == [PW_B, PW_A, PW_C]
    assert tried[0].locked


def test_lookup_is_exact() -> None:
    db = extract_password_database(parse_image(_image(build_drom(RECORDS))))
    assert db.passwords_to_try("sfp-10g-lr") == []
    assert db.passwords_to_try("SFP-10G") == []


def test_unique_passwords_skip_read_only_and_blank() -> None:
    db = extract_password_database(parse_image(_image(build_drom(RECORDS))))
    assert db.unique_passwords() == [PW_A, PW_B, PW_C]


def test_stride_tie_prefers_16(caplog: pytest.LogCaptureFixture) -> None:
    records = [(False, "AOC-SFP10-5M", False, PW_A, b"\x00\x00\x00")]
    with caplog.at_level(logging.WARNING, logger="sfpw.firmware.passdb"):
        db = extract_password_database(parse_image(_image(build_drom(records))))
    assert db.stride == 16
    assert "tie" in caplog.text


def test_count_valid_records_stops_at_bad_pointer() -> None:
    drom = build_drom(RECORDS)
    segment = Segment(load_addr=DROM_BASE, data=drom, file_offset=0)
    start = locate_database(segment)
    assert count_valid_records(segment, start, 16) == len(RECORDS)
    assert count_valid_records(segment, start, 20) < len(RECORDS)


def test_no_valid_stride() -> None:
    segment = Segment(load_addr=DROM_BASE, data=b"\x00" * 64, file_offset=0)
    with pytest.raises(AmbiguousStride):
        detect_stride(segment, 0)


def test_missing_drom() -> None:
    with pytest.raises(SegmentNotFound):
        extract_password_database(parse_image(build_image([(IROM_BASE, b"\x00" * 16)])))


def test_missing_anchor() -> None:
    with pytest.raises(AnchorNotFound):
        extract_password_database(parse_image(_image(b"SFP-10G-LR\x00" + b"\x00" * 32)))


def test_anchor_without_pointer() -> None:
    with pytest.raises(PointerNotFound):
        extract_password_database(parse_image(_image(b"AOC-SFP10-5M\x00" + b"\x00" * 31)))


def test_record_cut_off_by_segment_end() -> None:
    drom = b"AOC-SFP10-5M\x00\x00\x00\x00" + b"\x00" * 4 + DROM_BASE.to_bytes(4, "little")
    with pytest.raises(EmptyDatabase):
        extract_password_database(parse_image(_image(drom)))


def test_custom_marker() -> None:
    records = [(False, "UF-MM-10G", False, PW_C, b"\x00\x00\x00")] + RECORDS[1:]
    db = extract_password_database(parse_image(_image(build_drom(records))), marker="UF-MM-10G")
    assert db.entries[0].part_number == "UF-MM-10G"


def test_load_password_database(tmp_path) -> None:
    path = tmp_path / "sfpw.bin"
    path.write_bytes(_image(build_drom(RECORDS)))
    assert len(load_password_database(path).entries) == len(RECORDS)


def test_entry_formatting() -> None:
    entry = PasswordEntry(
        read_only=False,
        part_number="SFP-10G-LR",
        locked=False,
        password=PW_C,
        flags=b"\x03\x00\x00",
    )
    assert entry.format_password() == "55 42 4e 54"
    assert entry.password_ascii() == "UBNT"
    assert entry.format_flags() == "030000"
    assert entry.interpret_flags() == "A0h/lower+A2h/upper1"
    assert not entry.is_default


def test_flag_interpretation_edges() -> None:
    base = dict(read_only=False, part_number="x", locked=False, password=PW_A)
    assert PasswordEntry(flags=b"\x00\x00\x00", **base).interpret_flags() == "none"
    assert PasswordEntry(flags=b"\x00\x00\x00", **base).format_flags() == ""
    assert PasswordEntry(flags=b"\x30\x00\x00", **base).interpret_flags() == "0x30"
    assert PasswordEntry(flags=b"\x00\x00\x00", **base).password_ascii() == ""

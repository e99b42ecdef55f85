import io
import logging
import struct
import zlib

import pytest

from extract_pack import kcap_reader, safe_output_path
from kcap_format import (
    EncodingError,
    FormatError,
    HEADER_SIZE,
    OutOfRangeError,
    TABLE_ENTRY_SIZE,
    pack_header,
    pack_record,
)
from kcap_keytable import create_key_table, xor_crypt
from pack_kcap import kcap_packer

FILES = {
    "script\\main.txt": b"hello pack" * 30,
    "bg\\title.bmp": bytes(range(256)) * 40,
    "se\\click.wav": b"\x01",
    "テキスト\\会話.txt": "電車でD".encode("cp932") * 9,
}


def build_pack(files, password="PackPass") -> bytes:
    packer = kcap_packer()
    for name, data in files.items():
        packer.add_bytes(name, data)
    out = io.BytesIO()
    packer.write_to(out, password)
    return out.getvalue()


def test_roundtrip_with_password():
    pack = kcap_reader(io.BytesIO(build_pack(FILES)), "PackPass")
    assert len(pack) == len(FILES)
    for i, entry in enumerate(pack):
        assert entry.encrypted
        assert pack.read_entry(i) == FILES[entry.name]
    assert {e.name for e in pack} == set(FILES)


def test_entries_can_be_reread_in_any_order():
    pack = kcap_reader(io.BytesIO(build_pack(FILES)), "PackPass")
    order = [3, 0, 3, 1, 2, 0]
    assert [pack.read_entry(i) for i in order] == [
        FILES[pack.entries[i].name] for i in order
    ]


def test_wrong_or_missing_password_changes_payloads():
    raw = build_pack(FILES)
    wrong = kcap_reader(io.BytesIO(raw), "OtherPassword")
    clear = kcap_reader(io.BytesIO(raw), None)
    for i, entry in enumerate(wrong):
        if entry.size > 1:
            assert wrong.read_entry(i) != FILES[entry.name]
            assert clear.read_entry(i) != FILES[entry.name]
        assert clear.read_entry(i) == clear.read_raw(i)


def test_stored_payload_is_xor_of_plain():
    raw = build_pack({"a.bin": bytes(70000)})
    pack = kcap_reader(io.BytesIO(raw), "PackPass")
    table = create_key_table("PackPass")
    assert pack.read_raw(0) == xor_crypt(bytes(70000), table)
    assert raw[HEADER_SIZE + TABLE_ENTRY_SIZE:] == table + table[:70000 - 0x10000]


def test_unencrypted_pack():
    raw = build_pack(FILES, password=None)
    pack = kcap_reader(io.BytesIO(raw), "PackPass")
    for i, entry in enumerate(pack):
        assert not entry.encrypted
        assert pack.read_raw(i) == FILES[entry.name]
        assert pack.read_entry(i) == FILES[entry.name]


def test_layout_sorted_by_size():
    packer = kcap_packer()
    packer.add_bytes("a", bytes(300))
    packer.add_bytes("b", bytes(10))
    packer.add_bytes("c", bytes(5000))
    packer.calc_offset()

    assert [e.size for e in packer.entries] == [10, 300, 5000]
    assert [e.name for e in packer.entries] == ["b", "a", "c"]
    assert [e.offset for e in packer.entries] == [8 + 3 * 84, 8 + 3 * 84 + 10, 8 + 3 * 84 + 310]


def test_layout_is_stable_for_equal_sizes():
    packer = kcap_packer()
    for name in ["z", "y", "x"]:
        packer.add_bytes(name, b"same")
    packer.add_bytes("w", b"")
    packer.calc_offset()
    assert [e.name for e in packer.entries] == ["w", "z", "y", "x"]


def test_directory_bytes():
    raw = build_pack({"b.txt": b"bb", "a.txt": b"a"})
    assert raw[:4] == b"KCAP"
    assert struct.unpack_from("<i", raw, 4)[0] == 2

    name_field, crc, reserved, offset, size, flag = struct.unpack_from("<64sIIIII", raw, 8)
    assert name_field == b"a.txt".ljust(64, b"\x00")
    assert crc == zlib.crc32(name_field)
    assert (reserved, offset, size, flag) == (0, 8 + 2 * 84, 1, 1)
    assert len(raw) == 8 + 2 * 84 + 3


def test_checksum_is_not_verified():
    raw = bytearray(build_pack({"a.txt": b"payload"}, password=None))
    raw[8 + 64:8 + 68] = b"\xde\xad\xbe\xef"
    pack = kcap_reader(io.BytesIO(bytes(raw)), None)
    assert pack.entries[0].checksum == 0xEFBEADDE
    assert pack.read_entry(0) == b"payload"


def test_bad_magic_reads_nothing_further():
    stream = io.BytesIO(b"PACK" + bytes(100))
    with pytest.raises(FormatError, match="magic"):
        kcap_reader(stream, None)
    assert stream.tell() == 4


def test_negative_count():
    with pytest.raises(FormatError, match="negative"):
        kcap_reader(io.BytesIO(b"KCAP" + struct.pack("<i", -1)), None)


def test_truncated_header_and_directory():
    with pytest.raises(FormatError):
        kcap_reader(io.BytesIO(b"KCAP\x01"), None)
    raw = build_pack(FILES)
    with pytest.raises(FormatError, match="entry 1"):
        kcap_reader(io.BytesIO(raw[:8 + 84 + 10]), None)


def test_truncated_payload():
    raw = build_pack({"a.bin": bytes(100)}, password=None)
    pack = kcap_reader(io.BytesIO(raw[:-1]), None)
    with pytest.raises(FormatError, match="past end of file"):
        pack.read_entry(0)


def test_entry_past_end_of_file():
    raw = pack_header(1) + pack_record("a", 10_000, 0, False)
    pack = kcap_reader(io.BytesIO(raw), None)
    assert pack.file_size == len(raw)
    with pytest.raises(FormatError, match=r"entry 0 'a' range 0x2710\+0 past end of file"):
        pack.read_entry(0)

    # an empty entry sitting exactly at the end is fine
    raw = pack_header(1) + pack_record("a", 8 + 84, 0, False)
    assert kcap_reader(io.BytesIO(raw), None).read_entry(0) == b""


def test_out_of_range():
    pack = kcap_reader(io.BytesIO(build_pack(FILES)), "PackPass")
    with pytest.raises(OutOfRangeError):
        pack.read_entry(len(FILES))
    with pytest.raises(OutOfRangeError):
        pack.read_entry(-1)


def test_empty_pack():
    raw = build_pack({})
    assert raw == b"KCAP\x00\x00\x00\x00"
    assert len(kcap_reader(io.BytesIO(raw), "PackPass")) == 0


def test_name_limits():
    packer = kcap_packer()
    packer.add_bytes("x" * 64, b"ok")
    pack = kcap_reader(io.BytesIO(_written(packer)), None)
    assert pack.entries[0].name == "x" * 64

    packer = kcap_packer()
    packer.add_bytes("あ" * 33, b"too long")
    with pytest.raises(EncodingError):
        _written(packer)


def test_unmappable_name_warns(caplog):
    with caplog.at_level(logging.WARNING):
        raw = build_pack({"snow☃.txt": b"x"}, password=None)
    assert "lossy" in caplog.text
    assert kcap_reader(io.BytesIO(raw), None).entries[0].name == "snow?.txt"


def test_find():
    pack = kcap_reader(io.BytesIO(build_pack(FILES)), "PackPass")
    index = pack.find("script\\main.txt")
    assert pack.read_entry(index) == FILES["script\\main.txt"]
    assert pack.find("missing") is None


def test_add_from_disk(tmp_path):
    (tmp_path / "src" / "sub").mkdir(parents=True)
    (tmp_path / "src" / "sub" / "b.dat").write_bytes(b"bbbb")
    (tmp_path / "src" / "a.dat").write_bytes(b"a")

    packer = kcap_packer()
    assert packer.add_directory(tmp_path / "src") == 2
    assert [e.name for e in packer.entries] == ["a.dat", "sub\\b.dat"]

    packer.write(tmp_path / "out.Pack", "PackPass")
    with kcap_reader.open(tmp_path / "out.Pack", "PackPass") as pack:
        assert pack.read_entry(pack.find("sub\\b.dat")) == b"bbbb"
        assert pack.read_entry(pack.find("a.dat")) == b"a"


def test_source_changing_size_is_an_io_error(tmp_path):
    src = tmp_path / "grows.bin"
    src.write_bytes(b"abc")
    packer = kcap_packer()
    packer.add(src, "grows.bin")
    src.write_bytes(b"abcdef")
    with pytest.raises(OSError, match="changed size"):
        packer.write_to(io.BytesIO(), None)


def test_add_missing_file(tmp_path):
    with pytest.raises(OSError):
        kcap_packer().add(tmp_path / "nope.bin", "nope.bin")


def test_open_missing_file(tmp_path):
    with pytest.raises(OSError):
        kcap_reader.open(tmp_path / "nope.Pack")


def test_extract_all(tmp_path):
    raw = build_pack(FILES)
    pack = kcap_reader(io.BytesIO(raw), "PackPass")
    assert pack.extract_all(tmp_path) == len(FILES)
    for name, data in FILES.items():
        assert (tmp_path.joinpath(*name.split("\\"))).read_bytes() == data


@pytest.mark.parametrize("name", ["..\\evil.txt", "a\\..\\..\\b", "C:\\windows\\x", "\\root.txt", ""])
def test_unsafe_names_rejected(tmp_path, name):
    with pytest.raises(FormatError):
        safe_output_path(tmp_path, name)


def _written(packer) -> bytes:
    out = io.BytesIO()
    packer.write_to(out, None)
    return out.getvalue()

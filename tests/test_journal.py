import struct

import pytest

from vsfs.journal import (
    COMMIT_RECORD_SIZE,
    DATA_RECORD_SIZE,
    HEADER_SIZE,
    JOURNAL_MAGIC,
    JournalError,
    JournalState,
    find_free_inode,
    journal_create,
    journal_install,
    main,
    open_disk,
)
from vsfs.layout import (
    BLOCK_SIZE,
    DATA_START_IDX,
    DIRENT_SIZE,
    INODE_BMAP_IDX,
    INODE_SIZE,
    INODE_START_IDX,
    INODE_TYPE_DIR,
    INODE_TYPE_FILE,
    Dirent,
    Inode,
    bitmap_test,
)
from vsfs.mkfs import make_image

NOW = 1_700_000_000


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "vsfs.img"
    make_image(path, now=NOW)
    return path


def _header(disk):
    return struct.unpack("<II", disk.read_journal(0, 8))


def _root_entries(disk):
    block = disk.read_block(DATA_START_IDX)
    entries = (
        Dirent.from_bytes(block[start : start + DIRENT_SIZE])
        for start in range(0, BLOCK_SIZE, DIRENT_SIZE)
    )
    return {entry.name: entry.inode for entry in entries if entry.name}


def _inode(disk, number):
    block = disk.read_block(INODE_START_IDX + number // 32)
    start = (number % 32) * INODE_SIZE
    return Inode.from_bytes(block[start : start + INODE_SIZE])


def test_find_free_inode_skips_inode_zero():
    assert find_free_inode(bytes(BLOCK_SIZE)) == 1


def test_find_free_inode_picks_lowest_clear_bit():
    bitmap = bytearray(BLOCK_SIZE)
    bitmap[0] = 0b0000_0111
    assert find_free_inode(bitmap) == 3


def test_find_free_inode_only_looks_at_first_64():
    bitmap = bytearray(BLOCK_SIZE)
    bitmap[:8] = b"\xff" * 8
    assert find_free_inode(bitmap) is None


def test_journal_records_follow_format(image):
    with open_disk(image) as disk:
        journal_create(disk, "rec", now=NOW)
        offset = 8
        blocks = []
        for _ in range(3):
            rtype, size, block_no = struct.unpack("<HHI", disk.read_journal(offset, 8))
            assert (rtype, size) == (1, 8 + BLOCK_SIZE)
            blocks.append(block_no)
            offset += size
        assert struct.unpack("<HH", disk.read_journal(offset, 4)) == (2, 4)
        assert blocks == [INODE_BMAP_IDX, INODE_START_IDX, DATA_START_IDX]
        assert _header(disk) == (JOURNAL_MAGIC, offset + 4)
        assert (HEADER_SIZE, COMMIT_RECORD_SIZE, DATA_RECORD_SIZE) == (8, 4, 8 + BLOCK_SIZE)


def test_create_logs_but_does_not_touch_disk(image):
    with open_disk(image) as disk:
        before = disk.read_block(INODE_BMAP_IDX)
        inode = journal_create(disk, "hello.txt", now=NOW)
        assert inode == 1
        assert disk.read_block(INODE_BMAP_IDX) == before
        assert "hello.txt" not in _root_entries(disk)
        magic, used = _header(disk)
        assert magic == JOURNAL_MAGIC
        assert used == HEADER_SIZE + 3 * DATA_RECORD_SIZE + COMMIT_RECORD_SIZE


def test_create_then_install_applies_changes(image):
    with open_disk(image) as disk:
        journal_create(disk, "hello.txt", now=NOW + 5)
        result = journal_install(disk)
        assert result.state is JournalState.INSTALLED
        assert result.transactions == 1
        assert result.discarded == 0

        assert bitmap_test(disk.read_block(INODE_BMAP_IDX), 1)
        entries = _root_entries(disk)
        assert entries["hello.txt"] == 1
        assert entries["."] == 0

        new = _inode(disk, 1)
        assert new.type == INODE_TYPE_FILE
        assert new.links == 1
        assert new.size == 0
        assert new.ctime == NOW + 5 and new.mtime == NOW + 5

        root = _inode(disk, 0)
        assert root.type == INODE_TYPE_DIR
        assert root.size == 3 * DIRENT_SIZE

        assert _header(disk) == (JOURNAL_MAGIC, HEADER_SIZE)


def test_successive_creates_get_new_inodes(image):
    with open_disk(image) as disk:
        journal_create(disk, "a", now=NOW)
        journal_install(disk)
        assert journal_create(disk, "b", now=NOW) == 2
        journal_install(disk)
        entries = _root_entries(disk)
        assert (entries["a"], entries["b"]) == (1, 2)
        assert _inode(disk, 0).size == 4 * DIRENT_SIZE


def test_duplicate_name_rejected(image):
    with open_disk(image) as disk:
        journal_create(disk, "dup", now=NOW)
        journal_install(disk)
        with pytest.raises(JournalError, match="already exists"):
            journal_create(disk, "dup", now=NOW)
        with pytest.raises(JournalError, match="already exists"):
            journal_create(disk, "..", now=NOW)


def test_name_length_limit(image):
    with open_disk(image) as disk:
        with pytest.raises(JournalError, match="too long"):
            journal_create(disk, "x" * 28, now=NOW)
        journal_create(disk, "y" * 27, now=NOW)
        journal_install(disk)
        assert _root_entries(disk)["y" * 27] == 1


def test_inode_in_second_block(image):
    with open_disk(image) as disk:
        bitmap = bytearray(disk.read_block(INODE_BMAP_IDX))
        bitmap[:4] = b"\xff" * 4
        disk.write_block(INODE_BMAP_IDX, bitmap)

        assert journal_create(disk, "far", now=NOW) == 32
        _, used = _header(disk)
        assert used == HEADER_SIZE + 4 * DATA_RECORD_SIZE + COMMIT_RECORD_SIZE

        journal_install(disk)
        assert _inode(disk, 32).type == INODE_TYPE_FILE
        assert _root_entries(disk)["far"] == 32


def test_no_free_inodes(image):
    with open_disk(image) as disk:
        bitmap = bytearray(BLOCK_SIZE)
        bitmap[:8] = b"\xff" * 8
        disk.write_block(INODE_BMAP_IDX, bitmap)
        with pytest.raises(JournalError, match="No free inodes"):
            journal_create(disk, "nope", now=NOW)


def test_root_directory_full(image):
    with open_disk(image) as disk:
        block = b"".join(Dirent(0, f"n{i}").pack() for i in range(BLOCK_SIZE // DIRENT_SIZE))
        disk.write_block(DATA_START_IDX, block)
        with pytest.raises(JournalError, match="Root directory is full"):
            journal_create(disk, "new", now=NOW)
        with pytest.raises(JournalError, match="already exists"):
            journal_create(disk, "n5", now=NOW)


def test_install_on_fresh_image_is_uninitialized(image):
    with open_disk(image) as disk:
        result = journal_install(disk)
        assert result.state is JournalState.UNINITIALIZED
        assert result.transactions == 0
        assert _header(disk) == (0, 0)


def test_install_on_empty_journal(image):
    with open_disk(image) as disk:
        journal_create(disk, "f", now=NOW)
        journal_install(disk)
        result = journal_install(disk)
        assert result.state is JournalState.EMPTY


def _data_record(block_no, payload):
    return struct.pack("<HHI", 1, DATA_RECORD_SIZE, block_no) + payload


def test_uncommitted_writes_are_discarded(image):
    target = DATA_START_IDX + 5
    with open_disk(image) as disk:
        record = _data_record(target, b"\xab" * BLOCK_SIZE)
        disk.write_journal(HEADER_SIZE, record)
        disk.write_journal(0, struct.pack("<II", JOURNAL_MAGIC, HEADER_SIZE + len(record)))

        result = journal_install(disk)
        assert result.transactions == 0
        assert result.discarded == 1
        assert disk.read_block(target) == bytes(BLOCK_SIZE)
        assert _header(disk) == (JOURNAL_MAGIC, HEADER_SIZE)


def test_committed_manual_transaction_is_written(image):
    target = DATA_START_IDX + 7
    payload = b"\x5a" * BLOCK_SIZE
    with open_disk(image) as disk:
        records = _data_record(target, payload) + struct.pack("<HH", 2, COMMIT_RECORD_SIZE)
        disk.write_journal(HEADER_SIZE, records)
        disk.write_journal(0, struct.pack("<II", JOURNAL_MAGIC, HEADER_SIZE + len(records)))

        result = journal_install(disk)
        assert result.transactions == 1
        assert disk.read_block(target) == payload


def test_open_disk_rejects_bad_magic(tmp_path):
    path = tmp_path / "bad.img"
    path.write_bytes(bytes(BLOCK_SIZE * 4))
    with pytest.raises(JournalError, match="Invalid filesystem"):
        open_disk(path)


def test_open_disk_missing_file(tmp_path):
    with pytest.raises(JournalError, match="Cannot open"):
        open_disk(tmp_path / "missing.img")


def test_main_without_arguments_prints_usage(capsys):
    assert main([]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_create_and_install(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    make_image("vsfs.img", now=NOW)
    assert main(["create", "notes"]) == 0
    assert "Success: File 'notes' logged to journal (inode 1)" in capsys.readouterr().out
    assert main(["install"]) == 0
    out = capsys.readouterr().out
    assert "Success: Installed 1 transaction(s) from journal." in out
    with open_disk(tmp_path / "vsfs.img") as disk:
        assert _root_entries(disk)["notes"] == 1


def test_main_errors(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["install"]) == 1
    assert "Error: Cannot open vsfs.img" in capsys.readouterr().out

    make_image("vsfs.img", now=NOW)
    assert main(["create"]) == 1
    assert "Error: Missing filename" in capsys.readouterr().out
    assert main(["bogus"]) == 1
    assert "Error: Unknown command 'bogus'" in capsys.readouterr().out
"""Write-ahead journal for VSFS: log file creation, then install it onto the disk."""

from __future__ import annotations

import enum
import os
import struct
import sys
import time
from dataclasses import dataclass
from typing import BinaryIO, Iterator

from vsfs.layout import (
    BLOCK_SIZE,
    DEFAULT_IMAGE,
    DIRECT_POINTERS,
    DIRENT_SIZE,
    DIRENTS_PER_BLOCK,
    FS_MAGIC,
    INODE_SIZE,
    INODE_TYPE_FILE,
    INODES_PER_BLOCK,
    JOURNAL_BLOCKS,
    MAX_NAME_LEN,
    Dirent,
    Inode,
    Superblock,
    bitmap_set,
    bitmap_test,
)

JOURNAL_MAGIC = 0x4A524E4C

REC_DATA = 1
REC_COMMIT = 2

MAX_INODES = 64
MAX_DIRENTS = DIRENTS_PER_BLOCK
MAX_PENDING = 16

_HEADER = struct.Struct("<II")
_REC_HEADER = struct.Struct("<HH")
_DATA_PREFIX = struct.Struct("<HHI")

HEADER_SIZE = _HEADER.size
DATA_RECORD_SIZE = _DATA_PREFIX.size + BLOCK_SIZE
COMMIT_RECORD_SIZE = _REC_HEADER.size
JOURNAL_CAPACITY = JOURNAL_BLOCKS * BLOCK_SIZE
CREATE_SPACE_NEEDED = 4 * DATA_RECORD_SIZE + COMMIT_RECORD_SIZE


class JournalError(Exception):
    """Raised when a journal operation cannot be carried out."""


class JournalState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    EMPTY = "empty"
    INSTALLED = "installed"


@dataclass(frozen=True)
class InstallResult:
    """Outcome of replaying the journal onto the disk."""

    state: JournalState
    transactions: int = 0
    discarded: int = 0


class Disk:
    """An open VSFS image with its superblock."""

    def __init__(self, fileobj: BinaryIO, superblock: Superblock) -> None:
        self._file = fileobj
        self.superblock = superblock

    def __enter__(self) -> Disk:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _read_at(self, position: int, size: int) -> bytes:
        self._file.seek(position)
        data = self._file.read(size)
        if len(data) != size:
            raise JournalError(f"short read of {size} bytes at offset {position}")
        return data

    def _write_at(self, position: int, data: bytes) -> None:
        self._file.seek(position)
        self._file.write(data)
        self._file.flush()

    def read_block(self, block_no: int) -> bytes:
        """Read one whole block."""
        return self._read_at(block_no * BLOCK_SIZE, BLOCK_SIZE)

    def write_block(self, block_no: int, data: bytes) -> None:
        """Write one whole block."""
        if len(data) != BLOCK_SIZE:
            raise ValueError(f"block data must be {BLOCK_SIZE} bytes, got {len(data)}")
        self._write_at(block_no * BLOCK_SIZE, bytes(data))

    def _journal_base(self) -> int:
        return self.superblock.journal_block * BLOCK_SIZE

    def read_journal(self, offset: int, size: int) -> bytes:
        """Read ``size`` bytes at ``offset`` within the journal area."""
        return self._read_at(self._journal_base() + offset, size)

    def write_journal(self, offset: int, data: bytes) -> None:
        """Write ``data`` at ``offset`` within the journal area."""
        self._write_at(self._journal_base() + offset, bytes(data))

    def close(self) -> None:
        """Close the underlying image file."""
        if not self._file.closed:
            self._file.close()


def open_disk(path: str | os.PathLike[str] = DEFAULT_IMAGE) -> Disk:
    """Open an existing image for reading and writing and check its superblock."""
    try:
        fh = open(path, "r+b")
    except OSError as exc:
        raise JournalError(f"Cannot open {os.fspath(path)}") from exc
    block = fh.read(BLOCK_SIZE)
    if len(block) != BLOCK_SIZE or Superblock.from_bytes(block).magic != FS_MAGIC:
        fh.close()
        raise JournalError("Invalid filesystem")
    return Disk(fh, Superblock.from_bytes(block))


def find_free_inode(bitmap: bytes) -> int | None:
    """Lowest free inode number above 0 among the first inodes, or None."""
    return next(
        (
            index
            for index in range(1, MAX_INODES)
            if not bitmap_test(bitmap, index)
        ),
        None,
    )


def _read_header(disk: Disk) -> tuple[int, int]:
    return _HEADER.unpack(disk.read_journal(0, HEADER_SIZE))


def _data_record(block_no: int, data: bytes) -> bytes:
    return _DATA_PREFIX.pack(REC_DATA, DATA_RECORD_SIZE, block_no) + bytes(data)


def _commit_record() -> bytes:
    return _REC_HEADER.pack(REC_COMMIT, COMMIT_RECORD_SIZE)


def _dirents(block: bytes) -> Iterator[Dirent]:
    for start in range(0, MAX_DIRENTS * DIRENT_SIZE, DIRENT_SIZE):
        yield Dirent.from_bytes(block[start : start + DIRENT_SIZE])


def journal_create(
    disk: Disk, filename: str, now: float | None = None
) -> int:
    """Log the creation of an empty file in the root directory.

    Returns the inode number given to the file. Nothing outside the journal
    changes until :func:`journal_install` runs.
    """
    if len(filename.encode("utf-8", "surrogateescape")) > MAX_NAME_LEN:
        raise JournalError(f"Filename too long (max {MAX_NAME_LEN} characters)")
    if "\0" in filename:
        raise JournalError("Filename may not contain NUL")

    magic, used = _read_header(disk)
    if magic != JOURNAL_MAGIC:
        used = HEADER_SIZE
    if used + CREATE_SPACE_NEEDED > JOURNAL_CAPACITY:
        raise JournalError("Journal is full. Please run './journal install' first.")

    sb = disk.superblock
    inode_bitmap = bytearray(disk.read_block(sb.inode_bitmap))
    free_inode = find_free_inode(inode_bitmap)
    if free_inode is None:
        raise JournalError("No free inodes available")
    in_block1 = free_inode >= INODES_PER_BLOCK

    inode_block0 = bytearray(disk.read_block(sb.inode_start))
    inode_block1 = bytearray(disk.read_block(sb.inode_start + 1))

    root = Inode.from_bytes(inode_block0[:INODE_SIZE])
    root_dir_block = root.direct[0]
    dir_block = bytearray(disk.read_block(root_dir_block))

    free_slot = None
    for index, entry in enumerate(_dirents(dir_block)):
        if entry.name:
            if entry.name == filename:
                raise JournalError(f"File '{filename}' already exists")
        elif free_slot is None:
            free_slot = index
    if free_slot is None:
        raise JournalError("Root directory is full")

    bitmap_set(inode_bitmap, free_inode)

    stamp = int(time.time() if now is None else now) & 0xFFFFFFFF
    new_inode = Inode(
        type=INODE_TYPE_FILE,
        links=1,
        size=0,
        direct=(0,) * DIRECT_POINTERS,
        ctime=stamp,
        mtime=stamp,
    ).pack()
    target = inode_block1 if in_block1 else inode_block0
    start = (free_inode % INODES_PER_BLOCK) * INODE_SIZE
    target[start : start + INODE_SIZE] = new_inode

    start = free_slot * DIRENT_SIZE
    dir_block[start : start + DIRENT_SIZE] = Dirent(free_inode, filename).pack()

    highest = max(index for index, entry in enumerate(_dirents(dir_block)) if entry.name)
    root = Inode.from_bytes(inode_block0[:INODE_SIZE])
    root.size = (highest + 1) * DIRENT_SIZE
    inode_block0[:INODE_SIZE] = root.pack()

    records = [
        _data_record(sb.inode_bitmap, inode_bitmap),
        _data_record(sb.inode_start, inode_block0),
    ]
    if in_block1:
        records.append(_data_record(sb.inode_start + 1, inode_block1))
    records.append(_data_record(root_dir_block, dir_block))
    records.append(_commit_record())
    payload = b"".join(records)

    disk.write_journal(used, payload)
    disk.write_journal(0, _HEADER.pack(JOURNAL_MAGIC, used + len(payload)))
    return free_inode


def journal_install(disk: Disk) -> InstallResult:
    """Apply every committed transaction in the journal, then clear it."""
    magic, used = _read_header(disk)
    if magic != JOURNAL_MAGIC:
        return InstallResult(JournalState.UNINITIALIZED)
    if used <= HEADER_SIZE:
        return InstallResult(JournalState.EMPTY)

    journal = disk.read_journal(0, used)
    offset = HEADER_SIZE
    pending: list[tuple[int, bytes]] = []
    transactions = 0

    while offset + _REC_HEADER.size <= used:
        rec_type, rec_size = _REC_HEADER.unpack_from(journal, offset)
        if rec_size == 0 or offset + rec_size > used:
            break
        if rec_type == REC_DATA:
            if offset + DATA_RECORD_SIZE > used:
                break
            if len(pending) < MAX_PENDING:
                _, _, block_no = _DATA_PREFIX.unpack_from(journal, offset)
                body = offset + _DATA_PREFIX.size
                pending.append((block_no, journal[body : body + BLOCK_SIZE]))
            offset += DATA_RECORD_SIZE
        elif rec_type == REC_COMMIT:
            for block_no, data in pending:
                disk.write_block(block_no, data)
            transactions += 1
            pending.clear()
            offset += COMMIT_RECORD_SIZE
        else:
            break

    disk.write_journal(0, _HEADER.pack(JOURNAL_MAGIC, HEADER_SIZE))
    return InstallResult(JournalState.INSTALLED, transactions, len(pending))


def _usage(prog: str) -> None:
    print("Usage:")
    print(f"  {prog} create <filename>")
    print(f"  {prog} install")


def _run(disk: Disk, args: list[str]) -> None:
    command = args[0]
    if command == "create":
        if len(args) < 2:
            raise JournalError("Missing filename")
        filename = args[1]
        inode = journal_create(disk, filename)
        print(f"Success: File '{filename}' logged to journal (inode {inode})")
        print("Run './journal install' to apply changes to disk.")
    elif command == "install":
        result = journal_install(disk)
        if result.state is JournalState.UNINITIALIZED:
            print("Journal is empty or uninitialized.")
        elif result.state is JournalState.EMPTY:
            print("Journal is empty. Nothing to install.")
        else:
            if result.discarded:
                print(f"Warning: Discarding {result.discarded} uncommitted writes")
            print(f"Success: Installed {result.transactions} transaction(s) from journal.")
            print("Journal has been cleared.")
    else:
        raise JournalError(f"Unknown command '{command}'")


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        _usage("journal")
        return 1
    try:
        disk = open_disk(DEFAULT_IMAGE)
    except JournalError as exc:
        print(f"Error: {exc}")
        return 1
    with disk:
        try:
            _run(disk, args)
        except JournalError as exc:
            print(f"Error: {exc}")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
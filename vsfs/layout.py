"""On-disk layout of a VSFS image: geometry constants, records and bitmap helpers."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

FS_MAGIC = 0x56534653

BLOCK_SIZE = 4096
INODE_SIZE = 128
SUPERBLOCK_SIZE = 128
DIRENT_SIZE = 32

JOURNAL_BLOCK_IDX = 1
JOURNAL_BLOCKS = 16
INODE_BLOCKS = 2
DATA_BLOCKS = 64
INODE_BMAP_IDX = JOURNAL_BLOCK_IDX + JOURNAL_BLOCKS
DATA_BMAP_IDX = INODE_BMAP_IDX + 1
INODE_START_IDX = DATA_BMAP_IDX + 1
DATA_START_IDX = INODE_START_IDX + INODE_BLOCKS
TOTAL_BLOCKS = DATA_START_IDX + DATA_BLOCKS
INODE_COUNT = INODE_BLOCKS * (BLOCK_SIZE // INODE_SIZE)
INODES_PER_BLOCK = BLOCK_SIZE // INODE_SIZE
DIRENTS_PER_BLOCK = BLOCK_SIZE // DIRENT_SIZE

DIRECT_POINTERS = 8
NAME_FIELD_SIZE = 28
MAX_NAME_LEN = NAME_FIELD_SIZE - 1

INODE_TYPE_FREE = 0
INODE_TYPE_FILE = 1
INODE_TYPE_DIR = 2

DEFAULT_IMAGE = "vsfs.img"

_SUPERBLOCK_FMT = struct.Struct("<9I")
_INODE_FMT = struct.Struct(f"<HHI{DIRECT_POINTERS}III")
_DIRENT_FMT = struct.Struct(f"<I{NAME_FIELD_SIZE}s")

_NAME_ENCODING = "utf-8"
_NAME_ERRORS = "surrogateescape"


def _pack(fmt: struct.Struct, *values: int | bytes) -> bytes:
    try:
        return fmt.pack(*values)
    except struct.error as exc:
        raise ValueError(f"field out of range: {exc}") from exc


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise ValueError(f"{what} needs at least {size} bytes, got {len(data)}")


@dataclass
class Superblock:
    """The filesystem superblock stored at the start of block 0."""

    magic: int
    block_size: int
    total_blocks: int
    inode_count: int
    journal_block: int
    inode_bitmap: int
    data_bitmap: int
    inode_start: int
    data_start: int

    def pack(self) -> bytes:
        """Encode as the 128-byte on-disk record."""
        body = _pack(
            _SUPERBLOCK_FMT,
            self.magic,
            self.block_size,
            self.total_blocks,
            self.inode_count,
            self.journal_block,
            self.inode_bitmap,
            self.data_bitmap,
            self.inode_start,
            self.data_start,
        )
        return body + bytes(SUPERBLOCK_SIZE - len(body))

    @classmethod
    def from_bytes(cls, data: bytes) -> Superblock:
        """Decode a superblock from the start of ``data``."""
        _require(data, _SUPERBLOCK_FMT.size, "superblock")
        return cls(*_SUPERBLOCK_FMT.unpack_from(data))


@dataclass
class Inode:
    """A 128-byte inode; an all-zero inode is free."""

    type: int = INODE_TYPE_FREE
    links: int = 0
    size: int = 0
    direct: tuple[int, ...] = field(default_factory=lambda: (0,) * DIRECT_POINTERS)
    ctime: int = 0
    mtime: int = 0

    def __post_init__(self) -> None:
        self.direct = tuple(self.direct)
        if len(self.direct) != DIRECT_POINTERS:
            raise ValueError(
                f"inode needs {DIRECT_POINTERS} direct pointers, got {len(self.direct)}"
            )

    def pack(self) -> bytes:
        """Encode as the 128-byte on-disk record."""
        body = _pack(
            _INODE_FMT,
            self.type,
            self.links,
            self.size,
            *self.direct,
            self.ctime,
            self.mtime,
        )
        return body + bytes(INODE_SIZE - len(body))

    @classmethod
    def from_bytes(cls, data: bytes) -> Inode:
        """Decode an inode from the start of ``data``."""
        _require(data, _INODE_FMT.size, "inode")
        type_, links, size, *rest = _INODE_FMT.unpack_from(data)
        direct = tuple(rest[:DIRECT_POINTERS])
        ctime, mtime = rest[DIRECT_POINTERS:]
        return cls(type_, links, size, direct, ctime, mtime)


@dataclass
class Dirent:
    """A 32-byte directory entry: inode number and a name of up to 28 bytes."""

    inode: int = 0
    name: str = ""

    @property
    def encoded_name(self) -> bytes:
        return self.name.encode(_NAME_ENCODING, _NAME_ERRORS)

    @property
    def terminated(self) -> bool:
        """True when the name leaves room for its terminating NUL byte."""
        return len(self.encoded_name) < NAME_FIELD_SIZE

    @property
    def is_empty(self) -> bool:
        """True for an unused slot."""
        return self.inode == 0 and self.name == ""

    def pack(self) -> bytes:
        """Encode as the 32-byte on-disk record."""
        if "\0" in self.name:
            raise ValueError("directory entry name may not contain NUL")
        raw = self.encoded_name
        if len(raw) > NAME_FIELD_SIZE:
            raise ValueError(
                f"directory entry name is {len(raw)} bytes, field holds {NAME_FIELD_SIZE}"
            )
        return _pack(_DIRENT_FMT, self.inode, raw)

    @classmethod
    def from_bytes(cls, data: bytes) -> Dirent:
        """Decode a directory entry from the start of ``data``."""
        _require(data, _DIRENT_FMT.size, "directory entry")
        inode, raw = _DIRENT_FMT.unpack_from(data)
        raw = raw.split(b"\0", 1)[0]
        return cls(inode, raw.decode(_NAME_ENCODING, _NAME_ERRORS))


def default_superblock() -> Superblock:
    """The superblock describing the fixed VSFS geometry."""
    return Superblock(
        magic=FS_MAGIC,
        block_size=BLOCK_SIZE,
        total_blocks=TOTAL_BLOCKS,
        inode_count=INODE_COUNT,
        journal_block=JOURNAL_BLOCK_IDX,
        inode_bitmap=INODE_BMAP_IDX,
        data_bitmap=DATA_BMAP_IDX,
        inode_start=INODE_START_IDX,
        data_start=DATA_START_IDX,
    )


def bitmap_test(bitmap: bytes, index: int) -> bool:
    """Whether bit ``index`` of ``bitmap`` is set (least significant bit first)."""
    return bool((bitmap[index // 8] >> (index % 8)) & 1)


def bitmap_set(bitmap: bytearray, index: int) -> None:
    """Set bit ``index`` of ``bitmap`` in place."""
    bitmap[index // 8] |= 1 << (index % 8)
"""Consistency checker for VSFS images."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from vsfs.layout import (
    BLOCK_SIZE,
    DATA_BLOCKS,
    DATA_BMAP_IDX,
    DATA_START_IDX,
    DEFAULT_IMAGE,
    DIRENT_SIZE,
    FS_MAGIC,
    INODE_BLOCKS,
    INODE_BMAP_IDX,
    INODE_COUNT,
    INODE_SIZE,
    INODE_START_IDX,
    INODE_TYPE_DIR,
    INODE_TYPE_FREE,
    JOURNAL_BLOCK_IDX,
    TOTAL_BLOCKS,
    Dirent,
    Inode,
    Superblock,
    bitmap_test,
)


class ImageReadError(Exception):
    """Raised when a block that the checker needs cannot be read from the image."""


class _Image:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def block(self, block_no: int) -> bytes:
        start = block_no * BLOCK_SIZE
        chunk = self._data[start : start + BLOCK_SIZE]
        if len(chunk) != BLOCK_SIZE:
            raise ImageReadError(f"cannot read block {block_no}")
        return chunk


def validate_superblock(sb: Superblock) -> list[str]:
    """Differences between ``sb`` and the fixed VSFS geometry."""
    expected = [
        (sb.magic == FS_MAGIC, f"invalid superblock magic 0x{sb.magic:08x}"),
        (sb.block_size == BLOCK_SIZE, f"unexpected block size {sb.block_size}"),
        (sb.total_blocks == TOTAL_BLOCKS, f"unexpected total blocks {sb.total_blocks}"),
        (sb.inode_count == INODE_COUNT, f"unexpected inode count {sb.inode_count}"),
        (
            sb.journal_block == JOURNAL_BLOCK_IDX,
            f"journal block index mismatch {sb.journal_block}",
        ),
        (
            sb.inode_bitmap == INODE_BMAP_IDX,
            f"inode bitmap index mismatch {sb.inode_bitmap}",
        ),
        (sb.data_bitmap == DATA_BMAP_IDX, f"data bitmap index mismatch {sb.data_bitmap}"),
        (sb.inode_start == INODE_START_IDX, f"inode start index mismatch {sb.inode_start}"),
        (sb.data_start == DATA_START_IDX, f"data start index mismatch {sb.data_start}"),
    ]
    return [message for ok, message in expected if not ok]


def _stray_bit(bitmap: bytes, valid_bits: int, name: str) -> list[str]:
    for bit in range(valid_bits, len(bitmap) * 8):
        if bitmap_test(bitmap, bit):
            return [f"{name} bitmap has stray bit set at {bit}"]
    return []


@dataclass
class _Checker:
    image: _Image
    inodes: list[Inode]
    inode_used: list[bool]
    link_refs: list[int]
    errors: list[str] = field(default_factory=list)

    def report(self, message: str) -> None:
        self.errors.append(message)

    def check_directory(self, inode: Inode, index: int) -> None:
        if inode.size % DIRENT_SIZE:
            self.report(f"inode {index} directory size {inode.size} is not dirent-aligned")
            return

        remaining = inode.size
        saw_dot = saw_dotdot = False
        for blk in inode.direct:
            if remaining <= 0:
                break
            if blk == 0:
                self.report(
                    f"inode {index} directory missing data block for bytes still remaining"
                )
                return
            block = self.image.block(blk)
            chunk = min(remaining, BLOCK_SIZE)
            for start in range(0, (chunk // DIRENT_SIZE) * DIRENT_SIZE, DIRENT_SIZE):
                entry = Dirent.from_bytes(block[start : start + DIRENT_SIZE])
                if entry.is_empty:
                    continue
                if entry.inode >= len(self.inodes):
                    self.report(
                        f"inode {index} directory entry points to out-of-range inode "
                        f"{entry.inode}"
                    )
                    continue
                if not self.inode_used[entry.inode]:
                    self.report(
                        f"inode {index} directory entry references free inode {entry.inode}"
                    )
                if not entry.terminated:
                    self.report(f"inode {index} directory entry has unterminated name")
                    continue
                if not entry.name:
                    self.report(f"inode {index} directory entry has empty name")
                    continue
                self.link_refs[entry.inode] += 1
                if entry.name == ".":
                    if entry.inode != index:
                        self.report(f"inode {index} '.' entry points to {entry.inode}")
                    saw_dot = True
                elif entry.name == "..":
                    saw_dotdot = True
            remaining -= chunk

        if remaining:
            self.report(
                f"inode {index} directory uses more data than direct pointers cover"
            )
        if inode.size > 0:
            if not saw_dot:
                self.report(f"inode {index} directory missing '.' entry")
            if not saw_dotdot:
                self.report(f"inode {index} directory missing '..' entry")


def _check(image: _Image) -> list[str]:
    sb = Superblock.from_bytes(image.block(0))
    errors = validate_superblock(sb)

    inode_bitmap = image.block(INODE_BMAP_IDX)
    data_bitmap = image.block(DATA_BMAP_IDX)
    inode_area = b"".join(image.block(INODE_START_IDX + i) for i in range(INODE_BLOCKS))

    inode_count = min(sb.inode_count, len(inode_area) // INODE_SIZE)
    inodes = [
        Inode.from_bytes(inode_area[i * INODE_SIZE : (i + 1) * INODE_SIZE])
        for i in range(inode_count)
    ]
    checker = _Checker(
        image=image,
        inodes=inodes,
        inode_used=[ino.type != INODE_TYPE_FREE for ino in inodes],
        link_refs=[0] * inode_count,
        errors=errors,
    )
    report = checker.report

    data_owner: dict[int, int] = {}
    for i, ino in enumerate(inodes):
        allocated = ino.type != INODE_TYPE_FREE
        if allocated != bitmap_test(inode_bitmap, i):
            report(f"inode {i} allocation mismatch (inode vs bitmap)")
        if not allocated:
            continue

        if ino.type > INODE_TYPE_DIR:
            report(f"inode {i} has invalid type {ino.type}")

        required = ((ino.size + BLOCK_SIZE - 1) & 0xFFFFFFFF) // BLOCK_SIZE
        if required > len(ino.direct):
            report(f"inode {i} size {ino.size} exceeds direct pointers")

        used_pointers = [blk for blk in ino.direct if blk]
        for blk in used_pointers:
            if not DATA_START_IDX <= blk < DATA_START_IDX + DATA_BLOCKS:
                report(f"inode {i} points outside data region (block {blk})")
                continue
            data_idx = blk - DATA_START_IDX
            owner = data_owner.get(data_idx)
            if owner is not None and owner != i:
                report(f"data block {blk} referenced by both inode {owner} and inode {i}")
            data_owner[data_idx] = i

        seen = len(used_pointers)
        if seen < required:
            report(
                f"inode {i} lacks blocks for declared size (need {required} have {seen})"
            )
        if required == 0 and seen > 0:
            report(f"inode {i} has data blocks but zero size")

        if ino.type == INODE_TYPE_DIR:
            checker.check_directory(ino, i)

    for i, ino in enumerate(inodes):
        if checker.inode_used[i] and ino.links != checker.link_refs[i]:
            report(
                f"inode {i} link count {ino.links} disagrees with directory refs "
                f"{checker.link_refs[i]}"
            )

    for bit, used in enumerate(checker.inode_used):
        marked = bitmap_test(inode_bitmap, bit)
        if marked and not used:
            report(f"inode bitmap marks {bit} used but inode is free")
        if not marked and used:
            report(f"inode bitmap misses allocated inode {bit}")
    errors.extend(_stray_bit(inode_bitmap, inode_count, "inode"))

    for bit in range(DATA_BLOCKS):
        marked = bitmap_test(data_bitmap, bit)
        referenced = bit in data_owner
        if marked and not referenced:
            report(
                f"data bitmap marks block {bit + DATA_START_IDX} used but no inode "
                "references it"
            )
        if not marked and referenced:
            report(f"data block {bit + DATA_START_IDX} referenced but bitmap is clear")
    errors.extend(_stray_bit(data_bitmap, DATA_BLOCKS, "data"))

    return errors


def validate_image(path: str | os.PathLike[str]) -> list[str]:
    """Check the image at ``path`` and return every inconsistency found, in order.

    Raises :class:`ImageReadError` if a needed block lies beyond the end of
    the image, and :class:`OSError` if the file cannot be read.
    """
    return _check(_Image(Path(path).read_bytes()))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="validator", description="Check a VSFS image for consistency."
    )
    parser.add_argument("image", nargs="?", default=DEFAULT_IMAGE, help="image file to check")
    args = parser.parse_args(argv)

    try:
        errors = validate_image(args.image)
    except OSError as exc:
        print(f"open: {exc.strerror or exc}", file=sys.stderr)
        return 1
    except ImageReadError as exc:
        print(f"pread: {exc}", file=sys.stderr)
        return 1

    for message in errors:
        print(f"ERROR: {message}", file=sys.stderr)
    if not errors:
        print(f"Filesystem '{args.image}' is consistent.")
        return 0
    print(f"{len(errors)} inconsistencies found.", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
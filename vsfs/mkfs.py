"""Create a fresh VSFS image with an empty root directory."""

from __future__ import annotations

import argparse
import os
import sys
import time

from vsfs.layout import (
    BLOCK_SIZE,
    DATA_BMAP_IDX,
    DATA_START_IDX,
    DEFAULT_IMAGE,
    DIRECT_POINTERS,
    DIRENT_SIZE,
    INODE_BMAP_IDX,
    INODE_START_IDX,
    INODE_TYPE_DIR,
    TOTAL_BLOCKS,
    Dirent,
    Inode,
    bitmap_set,
    default_superblock,
)


def _block_offset(block_no: int) -> int:
    return block_no * BLOCK_SIZE


def _build_image(timestamp: int) -> bytes:
    image = bytearray(TOTAL_BLOCKS * BLOCK_SIZE)

    sb = default_superblock().pack()
    image[0 : len(sb)] = sb

    inode_bitmap = bytearray(BLOCK_SIZE)
    bitmap_set(inode_bitmap, 0)  # root inode
    start = _block_offset(INODE_BMAP_IDX)
    image[start : start + BLOCK_SIZE] = inode_bitmap

    data_bitmap = bytearray(BLOCK_SIZE)
    bitmap_set(data_bitmap, 0)  # root directory block
    start = _block_offset(DATA_BMAP_IDX)
    image[start : start + BLOCK_SIZE] = data_bitmap

    root = Inode(
        type=INODE_TYPE_DIR,
        links=2,
        size=2 * DIRENT_SIZE,
        direct=(DATA_START_IDX,) + (0,) * (DIRECT_POINTERS - 1),
        ctime=timestamp,
        mtime=timestamp,
    ).pack()
    start = _block_offset(INODE_START_IDX)
    image[start : start + len(root)] = root

    entries = Dirent(0, ".").pack() + Dirent(0, "..").pack()
    start = _block_offset(DATA_START_IDX)
    image[start : start + len(entries)] = entries

    return bytes(image)


def make_image(path: str | os.PathLike[str], now: float | None = None) -> None:
    """Write a new image to ``path``, replacing any existing file.

    ``now`` is the creation time stamped on the root inode; it defaults to
    the current time.
    """
    timestamp = int(time.time() if now is None else now) & 0xFFFFFFFF
    with open(path, "wb") as fh:
        fh.write(_build_image(timestamp))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="mkfs", description="Create a VSFS image.")
    parser.add_argument("image", nargs="?", default=DEFAULT_IMAGE, help="image file to create")
    args = parser.parse_args(argv)

    try:
        make_image(args.image)
    except OSError as exc:
        print(f"mkfs: {exc.strerror or exc}", file=sys.stderr)
        return 1

    print(f"Created VSFS image '{args.image}' ({TOTAL_BLOCKS} blocks).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
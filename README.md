# vsfs

Tools for a very simple file system (VSFS) stored in a single image file.
An image has 85 blocks of 4096 bytes: a superblock, a 16-block write-ahead
journal, an inode bitmap, a data bitmap, two inode blocks (64 inodes of
128 bytes) and 64 data blocks. The root directory lives in inode 0 and
starts with `.` and `..` entries.

## Installation

```
pip install .
```

## Commands

Create a fresh image, replacing any file of that name (defaults to
`vsfs.img` in the current directory):

```
vsfs-mkfs [IMAGE]
```

Log the creation of an empty file in the root directory to the journal,
then apply every committed transaction to the disk. Both commands always
work on `vsfs.img` in the current directory:

```
vsfs-journal create notes.txt
vsfs-journal install
```

File names may be at most 27 bytes. `create` refuses names that already
exist, reports when no inode or directory slot is free, and stops when the
journal has no room for another transaction; run `vsfs-journal install`
to clear it. `install` writes the blocks of each committed transaction to
their places on disk, discards writes that were never followed by a commit
record, and resets the journal.

Check an image for inconsistencies (superblock fields, bitmaps, block
ownership, directory entries and link counts):

```
vsfs-validate [IMAGE]
```

It prints each problem on standard error, prefixed with `ERROR:`, and exits
with status 1 if any were found, or 0 when the image is consistent.

## Library use

```python
from vsfs.mkfs import make_image
from vsfs.journal import open_disk, journal_create, journal_install
from vsfs.validator import validate_image

make_image("disk.img")
with open_disk("disk.img") as disk:
    inode = journal_create(disk, "hello.txt")
    result = journal_install(disk)
    print(inode, result.state, result.transactions, result.discarded)

print(validate_image("disk.img"))  # list of problems; empty when consistent
```

- `make_image(path, now=None)` writes a new image; `now` sets the time
  stamped on the root inode.
- `open_disk(path)` returns a `Disk` (usable as a context manager) with
  `read_block`, `write_block`, `read_journal`, `write_journal` and `close`.
  It raises `JournalError` if the file cannot be opened or has no valid
  superblock.
- `journal_create(disk, filename, now=None)` returns the new inode number
  and raises `JournalError` when the request cannot be logged.
- `journal_install(disk)` returns an `InstallResult` with `state`
  (a `JournalState`: `UNINITIALIZED`, `EMPTY` or `INSTALLED`),
  `transactions` and `discarded`.
- `validate_image(path)` returns the list of problems in the order found;
  it raises `ImageReadError` if the image is too short and `OSError` if it
  cannot be read. `validate_superblock(sb)` checks a `Superblock` alone.

The on-disk structures are `Superblock`, `Inode` and `Dirent` in
`vsfs.layout`, each with `pack()` and `from_bytes()`, together with
`default_superblock()`, `bitmap_test()` and `bitmap_set()` and the geometry
constants.

## What it does not do

The journal can only record the creation of empty files in the root
directory. There is no way to write file contents, delete or rename files,
or make subdirectories, and the checker reports problems without repairing
them.

## Tests

```
pip install .[test]
pytest
```
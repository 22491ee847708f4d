"""Writing SquashFS images.

Inodes, directory entries and xattrs are stored as uncompressed metadata
blocks, and data blocks are stored uncompressed as well. Directory entries
must be added in sorted order, since SquashFS requires sorted listings.

Block devices, character devices, FIFOs and sockets are not supported, and
only the first extended attribute of each file is stored.
"""

from __future__ import annotations

import io
import math
import posixpath
import struct
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Iterable, Optional, Sequence, Union

from distri.squashfs.format import (
    DATA_BLOCK_SIZE,
    DATA_UNCOMPRESSED_BIT,
    INVALID_FRAGMENT,
    INVALID_XATTR,
    MAGIC,
    MAJOR_VERSION,
    METADATA_BLOCK_SIZE,
    METADATA_UNCOMPRESSED_BIT,
    MINOR_VERSION,
    Compression,
    DirEntry,
    DirHeader,
    DirInodeHeader,
    InodeHeader,
    InodeType,
    LdirInodeHeader,
    LregInodeHeader,
    Superblock,
    SymlinkInodeHeader,
    Xattr,
    XattrId,
    XattrTableHeader,
    block_log,
    filesystem_flags,
)

TimeLike = Union[datetime, int, float]

_SUPERBLOCK_SIZE = 96
_DIR_MODE = 0o755
_PAD_TO = 4096
# On-disk size of a metadata block including its length header.
_METADATA_BLOCK_STRIDE = METADATA_BLOCK_SIZE + 2


def _unix_seconds(t: TimeLike) -> int:
    """Return ``t`` as seconds since the epoch, wrapped into a signed 32-bit value."""
    seconds = math.floor(t.timestamp() if isinstance(t, datetime) else t)
    return ((seconds + 2**31) % 2**32) - 2**31


def _int16(value: int) -> int:
    value &= 0xFFFF
    return value - 0x10000 if value >= 0x8000 else value


@dataclass(frozen=True)
class _FullDirEntry:
    start_block: int
    offset: int
    inode_number: int
    entry_type: int
    name: bytes


class Writer:
    """Writes a SquashFS image to a seekable binary stream.

    File data is written to the stream as soon as it arrives; inodes,
    directories and the superblock are written by flush(). Create entries
    through ``root``; every directory, the root included, must be flushed
    exactly once, children before their parents.
    """

    def __init__(self, w: BinaryIO, mkfs_time: TimeLike) -> None:
        # Skip the superblock; it is written last, once its fields are known.
        w.seek(_SUPERBLOCK_SIZE, io.SEEK_SET)
        self._w = w
        self._xattrs: list[Xattr] = []
        self._xattr_ids: list[XattrId] = []
        self._inode_buf = bytearray()
        self._dir_buf = bytearray()
        self._write_inode_num_to: dict[str, list[int]] = {}
        self.sb = Superblock(
            magic=MAGIC,
            mkfs_time=_unix_seconds(mkfs_time),
            block_size=DATA_BLOCK_SIZE,
            fragments=0,
            compression=Compression.ZLIB,
            block_log=block_log(DATA_BLOCK_SIZE),
            flags=filesystem_flags(),
            no_ids=1,  # a single uid/gid mapping, for root
            major=MAJOR_VERSION,
            minor=MINOR_VERSION,
            xattr_id_table_start=-1,
            lookup_table_start=-1,
        )
        self.root = Directory(self, "", mkfs_time)

    def _inode_position(self) -> tuple[int, int]:
        start_block = len(self._inode_buf) // METADATA_BLOCK_SIZE
        return start_block, len(self._inode_buf) - start_block * METADATA_BLOCK_SIZE

    def _next_inode_number(self) -> int:
        return self.sb.inodes + 1

    def _write_metadata_chunks(self, data: bytes) -> None:
        for start in range(0, len(data), METADATA_BLOCK_SIZE):
            chunk = data[start:start + METADATA_BLOCK_SIZE]
            self._w.write(struct.pack("<H", len(chunk) | METADATA_UNCOMPRESSED_BIT))
            self._w.write(chunk)

    def _write_id_table(self, ids: Sequence[int]) -> int:
        meta_off = self._w.tell()
        payload = struct.pack(f"<{len(ids)}I", *ids)
        self._w.write(struct.pack("<H", len(payload) | METADATA_UNCOMPRESSED_BIT))
        self._w.write(payload)
        start = self._w.tell()
        self._w.write(struct.pack("<q", meta_off))
        return start

    def _write_xattr_tables(self) -> int:
        if not self._xattrs:
            return -1
        xattr_table_start = self._w.tell()

        xattr_buf = bytearray()
        for attr in self._xattrs:
            name = attr.full_name.encode("utf-8")
            xattr_buf += struct.pack("<HH", attr.type, len(name))
            xattr_buf += name
            xattr_buf += struct.pack("<I", len(attr.value))
            xattr_buf += attr.value
        xattr_blocks = -(-len(xattr_buf) // METADATA_BLOCK_SIZE)
        self._write_metadata_chunks(bytes(xattr_buf))

        id_table_off = self._w.tell()
        id_buf = bytearray()
        position = 0
        for xid in self._xattr_ids:
            id_buf += XattrId(xattr=position, count=xid.count, size=xid.size).pack()
            position += xid.size + 8  # type, name size and value size fields
        self._write_metadata_chunks(bytes(id_buf))

        header_off = self._w.tell()
        self._w.write(
            XattrTableHeader(
                xattr_table_start=xattr_table_start,
                xattr_ids=len(self._xattrs),
                unused=0,
            ).pack()
        )
        for i in range(xattr_blocks):
            self._w.write(struct.pack("<Q", id_table_off + i * _METADATA_BLOCK_STRIDE))
        return header_off

    def flush(self) -> None:
        """Write the metadata tables and the superblock.

        The Writer must not be used afterwards.
        """
        sb = self.sb
        sb.inode_table_start = self._w.tell()
        self._write_metadata_chunks(bytes(self._inode_buf))

        sb.directory_table_start = self._w.tell()
        self._write_metadata_chunks(bytes(self._dir_buf))

        # No fragment or export tables are written.
        sb.fragment_table_start = self._w.tell()

        sb.id_table_start = self._write_id_table([0])
        sb.xattr_id_table_start = self._write_xattr_tables()

        end = self._w.tell()
        sb.bytes_used = end
        # The kernel needs the image padded to full pages.
        remainder = end % _PAD_TO
        if remainder:
            self._w.write(bytes(_PAD_TO - remainder))

        self._w.seek(0, io.SEEK_SET)
        self._w.write(sb.pack())


class Directory:
    """A directory of the image under construction."""

    def __init__(
        self,
        writer: Writer,
        name: str,
        mod_time: TimeLike,
        parent: Optional["Directory"] = None,
    ) -> None:
        self._writer = writer
        self.name = name
        self.mod_time = mod_time
        self.parent = parent
        self._entries: list[_FullDirEntry] = []

    @property
    def path(self) -> str:
        """Path of this directory relative to the image root ("" for the root)."""
        if self.parent is None:
            return self.name
        return posixpath.join(self.parent.path, self.name)

    def directory(self, name: str, mod_time: TimeLike) -> "Directory":
        """Create a subdirectory; it must be flushed before this directory."""
        return Directory(self._writer, name, mod_time, parent=self)

    def file(
        self,
        name: str,
        mod_time: TimeLike,
        mode: int,
        xattrs: Optional[Iterable[Xattr]] = None,
    ) -> "File":
        """Create a regular file; the returned File must be closed after writing."""
        w = self._writer
        offset = w._w.tell()
        xattr_list = list(xattrs or ())
        xattr_ref = INVALID_XATTR
        if xattr_list:
            first = xattr_list[0]
            xattr_ref = len(w._xattrs)
            w._xattrs.append(first)
            size = len(first.full_name.encode("utf-8")) + len(first.value)
            w._xattr_ids.append(XattrId(count=1, size=size))
        return File(w, self, offset, name, mod_time, mode, xattr_ref)

    def symlink(self, oldname: str, newname: str, mod_time: TimeLike, mode: int) -> None:
        """Create a symbolic link named ``newname`` pointing to ``oldname``."""
        w = self._writer
        start_block, offset = w._inode_position()
        target = oldname.encode("utf-8")
        inode_number = w._next_inode_number()
        header = SymlinkInodeHeader(
            mode=mode & 0xFFFF,
            uid=0,
            gid=0,
            mtime=_unix_seconds(mod_time),
            inode_number=inode_number,
            nlink=1,
            symlink_size=len(target),
        )
        w._inode_buf += header.pack()
        w._inode_buf += target
        self._entries.append(
            _FullDirEntry(start_block, offset, inode_number, InodeType.SYMLINK, newname.encode("utf-8"))
        )
        w.sb.inodes += 1

    def _add_entry(self, entry: _FullDirEntry) -> None:
        self._entries.append(entry)

    def _write_listing(self) -> int:
        """Append the directory listing to the directory table; return the subdir count."""
        w = self._writer
        count_by_start_block = Counter(e.start_block for e in self._entries)
        current_block: Optional[int] = None
        current_inode_offset = 0
        subdirs = 0
        for entry in self._entries:
            if entry.entry_type == InodeType.DIR:
                subdirs += 1
            if entry.start_block != current_block:
                w._dir_buf += DirHeader(
                    count=count_by_start_block[entry.start_block] - 1,
                    start_block=entry.start_block * _METADATA_BLOCK_STRIDE,
                    inode_offset=entry.inode_number,
                ).pack()
                current_block = entry.start_block
                current_inode_offset = entry.inode_number
            w._dir_buf += DirEntry(
                offset=entry.offset,
                inode_number=_int16(entry.inode_number - current_inode_offset),
                entry_type=entry.entry_type,
                size=(len(entry.name) - 1) & 0xFFFF,
            ).pack()
            w._dir_buf += entry.name
        return subdirs

    def flush(self) -> None:
        """Write this directory's entries and inode; call exactly once."""
        w = self._writer
        dir_buf_start_block = len(w._dir_buf) // METADATA_BLOCK_SIZE
        dir_buf_offset = len(w._dir_buf)

        subdirs = self._write_listing()
        listing_size = len(w._dir_buf) - dir_buf_offset

        start_block, offset = w._inode_position()
        inode_buf_offset = len(w._inode_buf)
        inode_number = w._next_inode_number()
        common = dict(
            mode=_DIR_MODE,
            uid=0,
            gid=0,
            mtime=_unix_seconds(self.mod_time),
            inode_number=inode_number,
            nlink=subdirs + 1,  # + 2 for . and .., - 1
            start_block=dir_buf_start_block * _METADATA_BLOCK_STRIDE,
            offset=dir_buf_offset - dir_buf_start_block * METADATA_BLOCK_SIZE,
            parent_inode=inode_number + 1,  # patched once the parent is flushed
        )
        header: InodeHeader
        if len(self._entries) > 256 or listing_size > METADATA_BLOCK_SIZE:
            header = LdirInodeHeader(
                file_size=listing_size + 3,
                icount=0,
                xattr=INVALID_XATTR,
                **common,
            )
        else:
            header = DirInodeHeader(file_size=(listing_size + 3) & 0xFFFF, **common)
        parent_inode_offset = type(header).field_offset("parent_inode")
        w._inode_buf += header.pack()

        path = self.path
        for position in w._write_inode_num_to.get(path, ()):
            struct.pack_into("<I", w._inode_buf, position, inode_number)

        if self.parent is not None:
            parent_path = posixpath.dirname(path)
            w._write_inode_num_to.setdefault(parent_path, []).append(
                inode_buf_offset + parent_inode_offset
            )
            self.parent._add_entry(
                _FullDirEntry(start_block, offset, inode_number, InodeType.DIR, self.name.encode("utf-8"))
            )
        else:
            w.sb.root_inode = (start_block * _METADATA_BLOCK_STRIDE) << 16 | offset

        w.sb.inodes += 1


class File:
    """A regular file being written; close() writes its inode."""

    def __init__(
        self,
        writer: Writer,
        directory: Directory,
        offset: int,
        name: str,
        mod_time: TimeLike,
        mode: int,
        xattr_ref: int,
    ) -> None:
        self._writer = writer
        self._directory = directory
        self._offset = offset
        self.name = name
        self.mod_time = mod_time
        self.mode = mode
        self._xattr_ref = xattr_ref
        self._buf = bytearray()
        self._block_sizes: list[int] = []
        self.size = 0
        self.closed = False

    def __enter__(self) -> "File":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()

    def write(self, data: bytes) -> int:
        """Append ``data`` to the file; return the number of bytes accepted."""
        if self.closed:
            raise ValueError("write to closed file")
        self._buf += data
        n = len(data)
        self.size += n
        while len(self._buf) >= DATA_BLOCK_SIZE:
            self._write_block()
        return n

    def _write_block(self) -> None:
        n = min(len(self._buf), DATA_BLOCK_SIZE)
        # Blocks are stored uncompressed: the kernel reports I/O errors for
        # compressed blocks larger than their uncompressed data.
        self._writer._w.write(bytes(self._buf[:n]))
        self._block_sizes.append(n | DATA_UNCOMPRESSED_BIT)
        del self._buf[:n]

    def close(self) -> None:
        """Write the remaining data and the file's inode."""
        if self.closed:
            raise ValueError("file already closed")
        while self._buf:
            self._write_block()

        w = self._writer
        start_block, offset = w._inode_position()
        inode_number = w._next_inode_number()
        w._inode_buf += LregInodeHeader(
            mode=self.mode & 0xFFFF,
            uid=0,
            gid=0,
            mtime=_unix_seconds(self.mod_time),
            inode_number=inode_number,
            start_block=self._offset,
            file_size=self.size,
            sparse=0,
            nlink=1,
            fragment=INVALID_FRAGMENT,
            offset=0,
            xattr=self._xattr_ref,
        ).pack()
        w._inode_buf += struct.pack(f"<{len(self._block_sizes)}I", *self._block_sizes)

        self._directory._add_entry(
            _FullDirEntry(start_block, offset, inode_number, InodeType.FILE, self.name.encode("utf-8"))
        )
        w.sb.inodes += 1
        self.closed = True
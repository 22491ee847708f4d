"""Reading SquashFS images such as those produced by :mod:`distri.squashfs.writer`.

Metadata blocks are read as stored; only uncompressed metadata is supported.
"""

from __future__ import annotations

import io
import posixpath
import stat as stat_mod
import struct
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Callable, Union

from distri.squashfs.format import (
    INVALID_XATTR,
    MAGIC,
    XATTR_PREFIX,
    DirEntry,
    DirHeader,
    DirInodeHeader,
    InodeHeader,
    InodeType,
    LdirInodeHeader,
    LregInodeHeader,
    RegInodeHeader,
    Superblock,
    SymlinkInodeHeader,
    Xattr,
    XattrId,
    XattrTableHeader,
)

Source = Union[bytes, bytearray, memoryview, BinaryIO]
ReadAt = Callable[[int, int], bytes]

# The kernel accounts 3 bytes in a directory's size for "." and "..".
_LISTING_SLACK = len(".") + len("..")
_XATTR_IDS_PER_BLOCK = 512  # 8192 / sizeof(XattrId)
_BLOCK_LENGTH_MASK = 0x7FFF

_INODE_CLASSES: dict[int, type[InodeHeader]] = {
    InodeType.DIR: DirInodeHeader,
    InodeType.FILE: RegInodeHeader,
    InodeType.SYMLINK: SymlinkInodeHeader,
    InodeType.LDIR: LdirInodeHeader,
    InodeType.LREG: LregInodeHeader,
}


class NotFoundError(FileNotFoundError):
    """A path could not be found in the image."""

    def __init__(self, path: str) -> None:
        super().__init__(f"{path!r} not found")
        self.path = path


def _decode_name(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _split_inode(inode: int) -> tuple[int, int]:
    """Split an inode reference into (block offset, offset within block)."""
    return inode >> 16, inode & 0xFFFF


@dataclass(frozen=True)
class FileInfo:
    """Directory entry information; ``mode`` uses the ``stat`` module's bits."""

    name: str
    size: int = 0
    mode: int = 0
    mtime: int = 0
    inode: int = 0

    @property
    def mod_time(self) -> datetime:
        return datetime.fromtimestamp(self.mtime, tz=timezone.utc)

    @property
    def is_dir(self) -> bool:
        return stat_mod.S_ISDIR(self.mode)

    @property
    def is_symlink(self) -> bool:
        return stat_mod.S_ISLNK(self.mode)

    @property
    def is_regular(self) -> bool:
        return stat_mod.S_ISREG(self.mode)

    @property
    def permissions(self) -> int:
        return stat_mod.S_IMODE(self.mode)


class SectionReader:
    """Reads a fixed byte range of the image, with its own position."""

    def __init__(self, read_at: ReadAt, base: int, size: int) -> None:
        self._read_at = read_at
        self._base = base
        self.size = size
        self._pos = 0

    def read_at(self, size: int, offset: int) -> bytes:
        """Return up to ``size`` bytes starting at ``offset`` within the section."""
        if offset < 0 or offset >= self.size or size <= 0:
            return b""
        n = min(size, self.size - offset)
        return self._read_at(self._base + offset, n)

    def read(self, size: int = -1) -> bytes:
        """Read from the current position; all remaining bytes if ``size`` is negative."""
        if size is None or size < 0:
            size = max(0, self.size - self._pos)
        data = self.read_at(size, self._pos)
        self._pos += len(data)
        return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the position and return it."""
        if whence == io.SEEK_SET:
            new = offset
        elif whence == io.SEEK_CUR:
            new = self._pos + offset
        elif whence == io.SEEK_END:
            new = self.size + offset
        else:
            raise ValueError(f"invalid whence {whence}")
        if new < 0:
            raise ValueError("invalid offset")
        self._pos = new
        return new

    def tell(self) -> int:
        return self._pos

    def readable(self) -> bool:
        return True


class _MetadataStream:
    """Sequential reader over metadata blocks, each prefixed by a length header."""

    def __init__(self, read_at: ReadAt, position: int, skip: int) -> None:
        self._read_at = read_at
        self._pos = position
        self._block = b""
        self._i = 0
        if skip:
            self.read(skip)

    def _next_block(self) -> None:
        header = self._read_at(self._pos, 2)
        if len(header) < 2:
            raise EOFError("unexpected end of metadata")
        (length,) = struct.unpack("<H", header)
        length &= _BLOCK_LENGTH_MASK
        data = self._read_at(self._pos + 2, length)
        if len(data) < length:
            raise EOFError("truncated metadata block")
        self._pos += 2 + length
        self._block = data
        self._i = 0

    def read(self, n: int) -> bytes:
        """Return exactly ``n`` bytes, crossing block boundaries as needed."""
        out = bytearray()
        while len(out) < n:
            if self._i >= len(self._block):
                self._next_block()
                continue
            take = min(n - len(out), len(self._block) - self._i)
            out += self._block[self._i:self._i + take]
            self._i += take
        return bytes(out)


class Reader:
    """Random access to the contents of a SquashFS image.

    ``source`` is either the image bytes or a seekable binary file.
    """

    def __init__(self, source: Source) -> None:
        if isinstance(source, (bytes, bytearray, memoryview)):
            self._data: bytes | None = bytes(source)
            self._file = None
        else:
            self._data = None
            self._file = source
        self._lock = threading.Lock()
        raw = self._read_at(0, Superblock.SIZE)
        if len(raw) < Superblock.SIZE:
            raise ValueError(
                f"reading superblock: need {Superblock.SIZE} bytes, got {len(raw)}"
            )
        self._super = Superblock.unpack(raw)
        if self._super.magic != MAGIC:
            raise ValueError(
                f"invalid magic (not a SquashFS image?): got {self._super.magic:x}, want {MAGIC:x}"
            )

    @property
    def root_inode(self) -> int:
        return self._super.root_inode

    def _read_at(self, offset: int, size: int) -> bytes:
        if offset < 0:
            raise ValueError(f"negative offset {offset}")
        if self._data is not None:
            return self._data[offset:offset + size]
        with self._lock:
            self._file.seek(offset, io.SEEK_SET)
            chunks = []
            remaining = size
            while remaining > 0:
                chunk = self._file.read(remaining)
                if not chunk:
                    break
                chunks.append(chunk)
                remaining -= len(chunk)
            return b"".join(chunks)

    def _inode_stream(self, inode: int) -> tuple[int, bytes, _MetadataStream]:
        block, offset = _split_inode(inode)
        stream = _MetadataStream(self._read_at, self._super.inode_table_start + block, offset)
        type_bytes = stream.read(2)
        (inode_type,) = struct.unpack("<H", type_bytes)
        return inode_type, type_bytes, stream

    def _read_inode(self, inode: int) -> InodeHeader:
        inode_type, type_bytes, stream = self._inode_stream(inode)
        cls = _INODE_CLASSES.get(inode_type)
        if cls is None:
            raise ValueError(f"unknown inode type {inode_type}")
        return cls.unpack(type_bytes + stream.read(cls.SIZE - 2))

    def stat(self, name: str, inode: int) -> FileInfo:
        """Return the FileInfo of ``inode``, reported under ``name``."""
        header = self._read_inode(inode)
        if isinstance(header, (DirInodeHeader, LdirInodeHeader)):
            mode = stat_mod.S_IFDIR | (header.mode & 0o7777)
            size = header.file_size
        elif isinstance(header, (RegInodeHeader, LregInodeHeader)):
            mode = stat_mod.S_IFREG | (header.mode & 0o777)
            if header.mode & stat_mod.S_ISUID:
                mode |= stat_mod.S_ISUID
            size = header.file_size
        elif isinstance(header, SymlinkInodeHeader):
            mode = stat_mod.S_IFLNK | (header.mode & 0o7777)
            size = header.symlink_size
        else:
            raise ValueError(f"unknown inode type {type(header).__name__}")
        return FileInfo(name=name, size=size, mode=mode, mtime=header.mtime, inode=inode)

    def read_link(self, inode: int) -> str:
        """Return the target of the symbolic link ``inode``."""
        inode_type, type_bytes, stream = self._inode_stream(inode)
        if inode_type != InodeType.SYMLINK:
            raise ValueError(f"invalid inode type: got {inode_type} instead of symlink")
        header = SymlinkInodeHeader.unpack(
            type_bytes + stream.read(SymlinkInodeHeader.SIZE - 2)
        )
        return _decode_name(stream.read(header.symlink_size))

    def file_reader(self, inode: int) -> SectionReader:
        """Return a reader over the contents of the regular file ``inode``."""
        header = self._read_inode(inode)
        if not isinstance(header, (RegInodeHeader, LregInodeHeader)):
            raise ValueError("non-file inode type")
        return SectionReader(self._read_at, header.start_block + header.offset, header.file_size)

    def _lookup_component(self, parent: int, component: str) -> int:
        for info in self._readdir(parent, with_stat=False):
            if info.name == component:
                return info.inode
        raise NotFoundError(component)

    def _lookup_path(self, path: str, follow_symlinks: bool) -> int:
        inode = self.root_inode
        parts = path.split("/")
        for idx, part in enumerate(parts):
            try:
                inode = self._lookup_component(inode, part)
            except NotFoundError:
                raise NotFoundError(path) from None
            if not follow_symlinks:
                continue
            try:
                header = self._read_inode(inode)
            except (ValueError, EOFError) as err:
                raise ValueError(f"Stat({inode}): {err}") from err
            if isinstance(header, SymlinkInodeHeader):
                target = self.read_link(inode)
                target = posixpath.normpath(posixpath.join(*parts[:idx], target))
                inode = self.lookup_path(target)
        return inode

    def lookup_path(self, path: str) -> int:
        """Resolve ``path`` (relative to the root) to an inode, following symlinks."""
        return self._lookup_path(path, True)

    def llookup_path(self, path: str) -> int:
        """Like lookup_path, but returns the inode of a final symlink itself."""
        return self._lookup_path(path, False)

    def readdir(self, dir_inode: int) -> list[FileInfo]:
        """List the directory ``dir_inode`` with full information per entry."""
        return self._readdir(dir_inode, with_stat=True)

    def readdir_no_stat(self, dir_inode: int) -> list[FileInfo]:
        """List a directory without reading each entry's inode.

        Entries carry name, inode and the file type only.
        """
        return self._readdir(dir_inode, with_stat=False)

    def _readdir(self, dir_inode: int, with_stat: bool) -> list[FileInfo]:
        header = self._read_inode(dir_inode)
        if not isinstance(header, (DirInodeHeader, LdirInodeHeader)):
            raise ValueError(f"unknown directory inode type {type(header).__name__}")
        stream = _MetadataStream(
            self._read_at,
            self._super.directory_table_start + header.start_block,
            header.offset,
        )
        listing = stream.read(max(0, header.file_size - _LISTING_SLACK))

        infos: list[FileInfo] = []
        pos = 0
        while pos < len(listing):
            if len(listing) - pos < DirHeader.SIZE:
                raise EOFError("truncated directory header")
            dir_header = DirHeader.unpack(listing[pos:pos + DirHeader.SIZE])
            pos += DirHeader.SIZE
            for _ in range(dir_header.count + 1):  # count is stored minus one
                if len(listing) - pos < DirEntry.SIZE:
                    raise EOFError("truncated directory entry")
                entry = DirEntry.unpack(listing[pos:pos + DirEntry.SIZE])
                pos += DirEntry.SIZE
                name_len = entry.size + 1  # size is stored minus one
                if len(listing) - pos < name_len:
                    raise EOFError("truncated directory entry name")
                name = _decode_name(listing[pos:pos + name_len])
                pos += name_len
                inode = dir_header.start_block << 16 | entry.offset
                if with_stat:
                    infos.append(self.stat(name, inode))
                    continue
                if entry.entry_type in (InodeType.DIR, InodeType.LDIR):
                    mode = stat_mod.S_IFDIR
                elif entry.entry_type in (InodeType.SYMLINK, InodeType.LSYMLINK):
                    mode = stat_mod.S_IFLNK
                else:
                    mode = stat_mod.S_IFREG
                infos.append(FileInfo(name=name, mode=mode, inode=inode))
        return infos

    def _read_xattr(self, table_header: XattrTableHeader, xattr_id: XattrId) -> Xattr:
        block, offset = _split_inode(xattr_id.xattr)
        stream = _MetadataStream(
            self._read_at, table_header.xattr_table_start + block, offset
        )
        typ, name_size = struct.unpack("<HH", stream.read(4))
        name = stream.read(name_size)
        (val_size,) = struct.unpack("<I", stream.read(4))
        value = stream.read(val_size)
        return Xattr(
            type=typ,
            full_name=XATTR_PREFIX.get(typ, "") + _decode_name(name),
            value=value,
        )

    def read_xattrs(self, inode: int) -> list[Xattr]:
        """Return the extended attributes of ``inode`` (empty if it has none)."""
        header = self._read_inode(inode)
        if not isinstance(header, LregInodeHeader) or header.xattr == INVALID_XATTR:
            return []
        xid = header.xattr
        block, index = divmod(xid, _XATTR_IDS_PER_BLOCK)
        offset = index * XattrId.SIZE

        needed = XattrTableHeader.SIZE + (block + 1) * 4
        table = self._read_at(self._super.xattr_id_table_start, needed)
        if len(table) < needed:
            raise EOFError("truncated xattr id table")
        table_header = XattrTableHeader.unpack(table)
        (block_offset,) = struct.unpack_from("<I", table, XattrTableHeader.SIZE + block * 4)

        stream = _MetadataStream(self._read_at, block_offset, offset)
        xattr_id = XattrId.unpack(stream.read(XattrId.SIZE))
        return [self._read_xattr(table_header, xattr_id) for _ in range(xattr_id.count)]
"""On-disk structures and constants of the SquashFS subset distri writes and reads.

All structures are little endian and unpadded. Metadata (inodes, directory
entries, xattrs) is stored uncompressed.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, fields
from typing import ClassVar

MAGIC = 0x73717368  # "hsqs" on disk
DATA_BLOCK_SIZE = 131072
METADATA_BLOCK_SIZE = 8192
MAJOR_VERSION = 4
MINOR_VERSION = 0

INVALID_FRAGMENT = 0xFFFFFFFF
INVALID_XATTR = 0xFFFFFFFF

# Set on a metadata block length header when the block is stored uncompressed.
METADATA_UNCOMPRESSED_BIT = 0x8000
# Set on a data block size when the block is stored uncompressed.
DATA_UNCOMPRESSED_BIT = 1 << 24


class Compression(enum.IntEnum):
    """Compressor identifiers stored in the superblock."""

    ZLIB = 1
    LZMA = 2
    LZO = 3
    XZ = 4
    LZ4 = 5


class InodeType(enum.IntEnum):
    """Inode types; the extended ("L") variants carry e.g. xattrs."""

    DIR = 1
    FILE = 2
    SYMLINK = 3
    BLKDEV = 4
    CHRDEV = 5
    FIFO = 6
    SOCKET = 7
    LDIR = 8
    LREG = 9
    LSYMLINK = 10
    LBLKDEV = 11
    LCHRDEV = 12
    LFIFO = 13
    LSOCKET = 14


class XattrType(enum.IntEnum):
    """Prefix identifiers of extended attribute names."""

    USER = 0
    TRUSTED = 1
    SECURITY = 2


XATTR_PREFIX = {
    XattrType.USER: "user.",
    XattrType.TRUSTED: "trusted.",
    XattrType.SECURITY: "security.",
}


@dataclass
class Xattr:
    """An extended attribute.

    ``type`` is the prefix id; if the value is stored out of line, 0x0100 is
    ORed into it.
    """

    type: int = 0
    full_name: str = ""
    value: bytes = b""


def xattr_from_attr(attr: str, val: bytes) -> Xattr:
    """Split a full attribute name such as ``security.capability`` into an Xattr.

    Returns an empty Xattr if the name carries no known prefix.
    """
    for typ, prefix in XATTR_PREFIX.items():
        if attr.startswith(prefix):
            return Xattr(type=typ, full_name=attr[len(prefix):], value=val)
    return Xattr()


class _Struct:
    """Packing of a dataclass whose fields map one-to-one onto FORMAT codes."""

    FORMAT: ClassVar[str]
    SIZE: ClassVar[int]

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if "FORMAT" in cls.__dict__:
            cls.SIZE = struct.calcsize(cls.FORMAT)

    def pack(self) -> bytes:
        """Encode the structure into its on-disk bytes."""
        values = [getattr(self, f.name) for f in fields(self)]
        try:
            return struct.pack(self.FORMAT, *values)
        except struct.error as err:
            raise ValueError(f"cannot pack {type(self).__name__}: {err}") from err

    @classmethod
    def unpack(cls, data: bytes):
        """Decode the structure from the start of ``data``."""
        if len(data) < cls.SIZE:
            raise ValueError(
                f"{cls.__name__} needs {cls.SIZE} bytes, got {len(data)}"
            )
        return cls(*struct.unpack_from(cls.FORMAT, data))

    @classmethod
    def field_offset(cls, name: str) -> int:
        """Return the byte offset of field ``name`` within the packed structure."""
        names = [f.name for f in fields(cls)]
        try:
            idx = names.index(name)
        except ValueError:
            raise KeyError(name) from None
        return struct.calcsize("<" + cls.FORMAT[1:1 + idx])


@dataclass
class Superblock(_Struct):
    """The 96-byte header at the start of every image."""

    FORMAT = "<IIiIIHHHHHHqqqqqqqq"

    magic: int = MAGIC
    inodes: int = 0
    mkfs_time: int = 0
    block_size: int = 0
    fragments: int = 0
    compression: int = 0
    block_log: int = 0
    flags: int = 0
    no_ids: int = 0
    major: int = 0
    minor: int = 0
    root_inode: int = 0
    bytes_used: int = 0
    id_table_start: int = 0
    xattr_id_table_start: int = 0
    inode_table_start: int = 0
    directory_table_start: int = 0
    fragment_table_start: int = 0
    lookup_table_start: int = 0

    def pack(self) -> bytes:
        """Encode the superblock into its 96 on-disk bytes."""
        return super().pack()

    @classmethod
    def unpack(cls, data: bytes) -> "Superblock":
        """Decode a superblock from the start of ``data``."""
        return super().unpack(data)


@dataclass
class InodeHeader(_Struct):
    """The header shared by all inode types."""

    FORMAT = "<HHHHiI"

    inode_type: int = 0
    mode: int = 0
    uid: int = 0
    gid: int = 0
    mtime: int = 0
    inode_number: int = 0


@dataclass
class RegInodeHeader(InodeHeader):
    """A basic regular file; followed by a uint32 array of block sizes."""

    FORMAT = "<HHHHiI" + "IIII"

    inode_type: int = InodeType.FILE
    start_block: int = 0
    fragment: int = 0
    offset: int = 0
    file_size: int = 0


@dataclass
class LregInodeHeader(InodeHeader):
    """An extended regular file; followed by a uint32 array of block sizes."""

    FORMAT = "<HHHHiI" + "QQQIIII"

    inode_type: int = InodeType.LREG
    start_block: int = 0
    file_size: int = 0
    sparse: int = 0
    nlink: int = 0
    fragment: int = 0
    offset: int = 0
    xattr: int = 0


@dataclass
class SymlinkInodeHeader(InodeHeader):
    """A symbolic link; followed by ``symlink_size`` bytes of target path."""

    FORMAT = "<HHHHiI" + "II"

    inode_type: int = InodeType.SYMLINK
    nlink: int = 0
    symlink_size: int = 0


@dataclass
class DirInodeHeader(InodeHeader):
    """A basic directory.

    ``file_size`` is 3 bytes larger than the listing, accounting for the
    kernel's synthetic "." and ".." entries.
    """

    FORMAT = "<HHHHiI" + "IIHHI"

    inode_type: int = InodeType.DIR
    start_block: int = 0
    nlink: int = 0
    file_size: int = 0
    offset: int = 0
    parent_inode: int = 0


@dataclass
class LdirInodeHeader(InodeHeader):
    """An extended directory, used for large listings."""

    FORMAT = "<HHHHiI" + "IIIIHHI"

    inode_type: int = InodeType.LDIR
    nlink: int = 0
    file_size: int = 0
    start_block: int = 0
    parent_inode: int = 0
    icount: int = 0
    offset: int = 0
    xattr: int = 0


@dataclass
class DirHeader(_Struct):
    """Header of a run of directory entries whose inodes share a metadata block.

    ``count`` is stored as the number of entries minus one.
    """

    FORMAT = "<III"

    count: int = 0
    start_block: int = 0
    inode_offset: int = 0

    def pack(self) -> bytes:
        """Encode the directory header into its 12 on-disk bytes."""
        return super().pack()

    @classmethod
    def unpack(cls, data: bytes) -> "DirHeader":
        """Decode a directory header from the start of ``data``."""
        return super().unpack(data)


@dataclass
class DirEntry(_Struct):
    """A directory entry; followed by ``size + 1`` bytes of name."""

    FORMAT = "<HhHH"

    offset: int = 0
    inode_number: int = 0
    entry_type: int = 0
    size: int = 0

    def pack(self) -> bytes:
        """Encode the directory entry into its 8 on-disk bytes."""
        return super().pack()

    @classmethod
    def unpack(cls, data: bytes) -> "DirEntry":
        """Decode a directory entry from the start of ``data``."""
        return super().unpack(data)


@dataclass
class XattrId(_Struct):
    """An entry of the xattr id table."""

    FORMAT = "<QII"

    xattr: int = 0
    count: int = 0
    size: int = 0


@dataclass
class XattrTableHeader(_Struct):
    """Header of the xattr id table, followed by a block index."""

    FORMAT = "<QII"

    xattr_table_start: int = 0
    xattr_ids: int = 0
    unused: int = 0


class _Flag(enum.IntFlag):
    NO_I = 1 << 0  # uncompressed metadata
    NO_D = 1 << 1  # uncompressed data
    UNUSED = 1 << 2
    NO_F = 1 << 3  # uncompressed fragments
    NO_FRAG = 1 << 4  # never use fragments
    ALWAYS_FRAG = 1 << 5
    DUPLICATE_CHECKING = 1 << 6
    EXPORTABLE = 1 << 7
    NO_X = 1 << 8  # uncompressed xattrs
    NO_XATTR = 1 << 9
    COMPOPT = 1 << 10


def filesystem_flags() -> int:
    """Return the superblock flags for images written by this package."""
    return int(_Flag.NO_I | _Flag.NO_F | _Flag.NO_FRAG | _Flag.NO_X | _Flag.NO_XATTR)


def block_log(block_size: int) -> int:
    """Return log2 of ``block_size`` for powers of two from 4 KiB to 1 MiB, else 0."""
    for exponent in range(12, 21):
        if block_size == 1 << exponent:
            return exponent
    return 0
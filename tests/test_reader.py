import hashlib
import io
import stat

import pytest

from distri.squashfs.format import Xattr, XattrType
from distri.squashfs.reader import FileInfo, NotFoundError, Reader, SectionReader
from distri.squashfs.writer import Writer

MTIME = 1581275131
CAPABILITY = bytes([1, 0, 0, 2, 0, 32, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0])
BIG = bytes(range(256)) * 1100  # spans three data blocks


def _add_file(directory, name, data, mode=0o444, xattrs=None):
    f = directory.file(name, MTIME, mode, xattrs)
    if data:
        f.write(data)
    f.close()


def build_image(xattr=False):
    buf = io.BytesIO()
    w = Writer(buf, MTIME)
    xattrs = [Xattr(type=2, full_name="capability", value=CAPABILITY)] if xattr else None
    _add_file(w.root, "hellö wörld", b"hello world!", xattrs=xattrs)
    _add_file(w.root, "leer", b"")
    _add_file(w.root, "second file", b"NON.\n", mode=0o555)
    w.root.symlink("second file", "second link", MTIME, 0o444)
    subdir = w.root.directory("subdir", MTIME)
    deep = subdir.directory("deep", MTIME)
    _add_file(deep, "yo", b"foo\n")
    deep.flush()
    _add_file(subdir, "third file (in subdir)", b"contents\n")
    subdir.flush()
    w.root.symlink("subdir", "sublink", MTIME, 0o444)
    _add_file(w.root, "suid", b"#!/bin/sh\n", mode=0o4755)
    _add_file(w.root, "testbin", BIG, mode=0o555)
    empty = w.root.directory("zempty", MTIME)
    empty.flush()
    w.root.flush()
    w.flush()
    return buf.getvalue()


def build_big_directory_image(count=300):
    buf = io.BytesIO()
    w = Writer(buf, MTIME)
    big = w.root.directory("big", MTIME)
    for i in range(count):
        _add_file(big, f"f{i:03d}", f"{i}\n".encode())
    big.flush()
    w.root.flush()
    w.flush()
    return buf.getvalue()


@pytest.fixture(scope="module")
def image():
    return build_image(xattr=False)


@pytest.fixture(scope="module")
def reader(image):
    return Reader(image)


@pytest.mark.parametrize("xattr", [False, True])
@pytest.mark.parametrize(
    "path, contents",
    [
        ("leer", b""),
        ("hellö wörld", b"hello world!"),
        ("testbin", BIG),
        ("subdir/third file (in subdir)", b"contents\n"),
        ("subdir/deep/yo", b"foo\n"),
    ],
)
def test_file_contents(xattr, path, contents):
    rd = Reader(build_image(xattr))
    assert rd.file_reader(rd.lookup_path(path)).read() == contents


def test_readdir_root_order(reader):
    names = [fi.name for fi in reader.readdir(reader.root_inode)]
    assert names == [
        "hellö wörld",
        "leer",
        "second file",
        "second link",
        "subdir",
        "sublink",
        "suid",
        "testbin",
        "zempty",
    ]


def test_stat_regular_file(reader):
    fi = reader.stat("hellö wörld", reader.lookup_path("hellö wörld"))
    assert fi.name == "hellö wörld"
    assert fi.size == 12
    assert fi.mode == stat.S_IFREG | 0o444
    assert fi.is_regular and not fi.is_dir
    assert fi.mtime == MTIME
    assert fi.mod_time.timestamp() == MTIME


def test_stat_setuid(reader):
    fi = reader.stat("suid", reader.lookup_path("suid"))
    assert fi.mode == stat.S_IFREG | stat.S_ISUID | 0o755


def test_readdir_entries(reader):
    by_name = {fi.name: fi for fi in reader.readdir(reader.root_inode)}
    link = by_name["second link"]
    assert link.is_symlink
    assert link.size == len("second file")
    assert by_name["subdir"].is_dir
    assert by_name["testbin"].size == len(BIG)
    assert by_name["leer"].size == 0


def test_readdir_subdirectory(reader):
    subdir = reader.lookup_path("subdir")
    infos = reader.readdir(subdir)
    assert [fi.name for fi in infos] == ["deep", "third file (in subdir)"]
    assert infos[0].is_dir
    assert infos[1].size == len("contents\n")


def test_readdir_empty(reader):
    assert reader.readdir(reader.lookup_path("zempty")) == []


def test_readdir_no_stat(reader):
    infos = reader.readdir_no_stat(reader.root_inode)
    by_name = {fi.name: fi for fi in infos}
    assert by_name["subdir"].is_dir
    assert by_name["second link"].is_symlink
    assert by_name["testbin"].is_regular
    assert all(fi.size == 0 for fi in infos)
    full = {fi.name: fi.inode for fi in reader.readdir(reader.root_inode)}
    assert {name: fi.inode for name, fi in by_name.items()} == full


def test_read_link(reader):
    assert reader.read_link(reader.llookup_path("second link")) == "second file"
    assert reader.read_link(reader.llookup_path("sublink")) == "subdir"


def test_lookup_follows_symlinks(reader):
    assert reader.lookup_path("second link") == reader.lookup_path("second file")
    assert reader.llookup_path("second link") != reader.lookup_path("second file")
    inode = reader.lookup_path("sublink/third file (in subdir)")
    assert reader.file_reader(inode).read() == b"contents\n"


def test_lookup_not_found(reader):
    with pytest.raises(NotFoundError) as excinfo:
        reader.lookup_path("subdir/missing")
    assert excinfo.value.path == "subdir/missing"
    assert isinstance(excinfo.value, FileNotFoundError)
    assert "subdir/missing" in str(excinfo.value)


def test_read_xattrs():
    rd = Reader(build_image(xattr=True))
    xattrs = rd.read_xattrs(rd.lookup_path("hellö wörld"))
    assert xattrs == [
        Xattr(type=XattrType.SECURITY, full_name="security.capability", value=CAPABILITY)
    ]


def test_read_xattrs_absent(reader):
    assert reader.read_xattrs(reader.lookup_path("hellö wörld")) == []
    assert reader.read_xattrs(reader.root_inode) == []
    assert reader.read_xattrs(reader.llookup_path("second link")) == []


def test_file_reader_rejects_directory(reader):
    with pytest.raises(ValueError, match="non-file"):
        reader.file_reader(reader.lookup_path("subdir"))


def test_read_link_rejects_file(reader):
    with pytest.raises(ValueError, match="instead of symlink"):
        reader.read_link(reader.lookup_path("leer"))


def test_readdir_rejects_file(reader):
    with pytest.raises(ValueError, match="directory inode type"):
        reader.readdir(reader.lookup_path("leer"))


def test_file_reader_rereads_after_seek(reader):
    r = reader.file_reader(reader.lookup_path("testbin"))
    want = hashlib.md5(BIG).hexdigest()
    for _ in range(2):
        assert r.seek(0, io.SEEK_SET) == 0
        assert hashlib.md5(r.read()).hexdigest() == want
        assert r.tell() == len(BIG)


def test_section_reader_read_at_and_seek(reader):
    r = reader.file_reader(reader.lookup_path("hellö wörld"))
    assert isinstance(r, SectionReader)
    assert r.size == 12
    assert r.read_at(5, 6) == b"world"
    assert r.read_at(100, 6) == b"world!"
    assert r.read_at(4, 12) == b""
    assert r.seek(-6, io.SEEK_END) == 6
    assert r.read(3) == b"wor"
    assert r.seek(1, io.SEEK_CUR) == 10
    assert r.read() == b"d!"
    with pytest.raises(ValueError):
        r.seek(-1, io.SEEK_SET)


def test_reader_from_file(tmp_path, image):
    path = tmp_path / "image.squashfs"
    path.write_bytes(image)
    with open(path, "rb") as f:
        rd = Reader(f)
        assert rd.file_reader(rd.lookup_path("subdir/deep/yo")).read() == b"foo\n"
        assert len(rd.readdir(rd.root_inode)) == 9


def test_invalid_magic():
    with pytest.raises(ValueError, match="invalid magic"):
        Reader(bytes(96))


def test_short_superblock():
    with pytest.raises(ValueError, match="reading superblock"):
        Reader(b"hsqs")


def test_large_directory():
    rd = Reader(build_big_directory_image(300))
    big = rd.lookup_path("big")
    infos = rd.readdir(big)
    assert [fi.name for fi in infos] == [f"f{i:03d}" for i in range(300)]
    assert rd.file_reader(rd.lookup_path("big/f299")).read() == b"299\n"
    assert rd.file_reader(rd.lookup_path("big/f000")).read() == b"0\n"
    root = rd.readdir(rd.root_inode)
    assert [fi.name for fi in root] == ["big"]
    assert root[0].is_dir


def test_file_info_properties():
    fi = FileInfo(name="x", size=3, mode=stat.S_IFDIR | 0o555, mtime=MTIME, inode=7)
    assert fi.is_dir
    assert not fi.is_symlink
    assert fi.permissions == 0o555
    assert fi.mod_time.year == 2020
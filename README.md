# distri

Tools for working with distri packages.

## Package versions

`distri.version.parse_version` splits a package file name such as
`less-amd64-530-17.squashfs` into a `PackageVersion` with `pkg`, `arch`,
`upstream` and `distri_revision`. It also handles exchange-directory link
targets such as `../less-amd64-530-17/bin/less` and build log names such as
`_build/git/build-2.9.5-3.log`. A revision that cannot be parsed is 0.

`package_revision_less(a, b)` reports whether the revision in `a` is below
that of `b`.

```python
from distri.version import parse_version, package_revision_less

v = parse_version("less-amd64-530-17.squashfs")
print(v.pkg, v.arch, v.upstream, v.distri_revision)  # less amd64 530 17
print(v)                                             # less-amd64-530-17

package_revision_less(
    "../libxslt-amd64-1.1.32/bin/xslt-config",
    "../libxslt-amd64-1.1.32-1/bin/xslt-config",
)  # True
```

## SquashFS images

`distri.squashfs.writer.Writer(stream, mkfs_time)` writes a SquashFS image to
a seekable binary stream. Metadata and data blocks are stored uncompressed.
Create entries through `writer.root`:

- `Directory.file(name, mod_time, mode, xattrs)` returns a `File`; `write`
  data to it and `close` it (it can also be used as a context manager).
  Only the first extended attribute given is stored.
- `Directory.symlink(oldname, newname, mod_time, mode)` adds a link named
  `newname` pointing to `oldname`.
- `Directory.directory(name, mod_time)` creates a subdirectory.

Every directory, the root included, must be finished with `Directory.flush`
exactly once, children before parents; then `Writer.flush` writes the tables
and the superblock. Entries must be added in sorted order.

```python
import io, time
from distri.squashfs.writer import Writer
from distri.squashfs.reader import Reader

buf = io.BytesIO()
w = Writer(buf, time.time())
with w.root.file("hello", time.time(), 0o444, None) as f:
    f.write(b"hello world!")
w.root.flush()
w.flush()

rd = Reader(buf.getvalue())
inode = rd.lookup_path("hello")
print(rd.file_reader(inode).read())  # b'hello world!'
```

`distri.squashfs.reader.Reader` accepts image bytes or a seekable binary file
and offers `readdir`, `readdir_no_stat`, `stat`, `lookup_path`,
`llookup_path`, `read_link`, `file_reader` (a `SectionReader` with `read`,
`read_at` and `seek`) and `read_xattrs`. A missing path raises
`distri.squashfs.reader.NotFoundError`. Only images with uncompressed
metadata and data, such as those produced by `Writer`, can be read.

Structure layouts and constants live in `distri.squashfs.format`
(`Superblock`, `DirHeader`, `DirEntry`, `Xattr`, `xattr_from_attr`, ...).

## Repositories

`distri.repo.open_reader(repo, fn, cache=False)` opens `fn` from a
`Repo(pkg_path=...)`, where `pkg_path` is a local directory or an
`http://`/`https://` URL. Remote files are requested with zstd or gzip
transfer encoding and decoded. With `cache=True`, the file is stored under
the user cache directory (`cache_filename` gives the path) and revalidated
with `If-Modified-Since`. HTTP 404 raises `distri.repo.NotFoundError`; other
failing statuses raise `OSError`.

## Tracing

`distri.trace` writes Chrome trace event files. Call `enable(prefix)` to
write into `$TMPDIR/distri.traces/<prefix>.<pid>` (the path is returned), or
`sink(stream)` for any writable binary stream. Then create events with
`event(name, tid)` and call `done()` on them. `cpu_events(stop, frequency)`
and `mem_events(stop, frequency)` record counters from `/proc/stat` and
`/proc/meminfo` every `frequency` seconds until the `threading.Event` `stop`
is set.

## Cutting a release

Run inside a distri git checkout:

```
distri-release --help
distri-release -name jackherer
```

This creates the release git branch (named `jackherer` by default) if it
does not exist yet, then runs `distri batch` to build every package. The
`distri` command must be on `PATH`; it is not provided by this package.

## What this package does not do

It does not mount package images as a file system, install packages onto a
system, or build packages. It reads and writes images, parses versions and
fetches repository files.

## Installation and tests

```
pip install .[test]
pytest
```
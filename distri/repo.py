"""Opening files from a package repository, either a local directory or HTTP(S)."""

from __future__ import annotations

import email.utils
import gzip
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import BinaryIO, Optional

import requests
import zstandard

log = logging.getLogger(__name__)

_session = requests.Session()


@dataclass(frozen=True)
class Repo:
    """A configured repository.

    ``pkg_path`` is a directory or an ``http://`` / ``https://`` URL under
    which package files are found.
    """

    path: str = ""
    pkg_path: str = ""


class NotFoundError(FileNotFoundError):
    """The repository answered a request with HTTP status 404."""

    def __init__(self, url: str) -> None:
        super().__init__(f"{url}: HTTP status 404")
        self.url = url


def _user_cache_dir() -> str:
    if sys.platform == "win32":
        directory = os.environ.get("LocalAppData", "")
        if not directory:
            raise OSError("%LocalAppData% is not defined")
        return directory
    home = os.environ.get("HOME", "")
    if sys.platform == "darwin":
        if not home:
            raise OSError("$HOME is not defined")
        return os.path.join(home, "Library", "Caches")
    directory = os.environ.get("XDG_CACHE_HOME", "")
    if directory:
        if not os.path.isabs(directory):
            raise OSError("path in $XDG_CACHE_HOME is relative")
        return directory
    if not home:
        raise OSError("neither $XDG_CACHE_HOME nor $HOME are defined")
    return os.path.join(home, ".cache")


def cache_filename(cache: bool, repo: Repo, fn: str) -> Optional[str]:
    """Return the local cache path for ``fn`` from ``repo``, or None if not caching.

    The parent directory is created. Problems are logged and disable caching.
    """
    if not cache:
        return None
    try:
        base = _user_cache_dir()
    except OSError as err:
        log.warning("cannot cache: %s", err)
        return None
    path = os.path.join(base, "distri", repo.pkg_path.replace("/", "_"), fn)
    try:
        os.makedirs(os.path.dirname(path), mode=0o755, exist_ok=True)
    except OSError as err:
        log.warning("cannot cache: %s", err)
        return None
    return path


class _RemoteReader:
    """Reads a (decoded) HTTP body, copying it into a cache file if one is given."""

    def __init__(
        self,
        stream,
        response: requests.Response,
        cache_file: Optional[BinaryIO],
        cache_path: Optional[str],
        mtime: float,
    ) -> None:
        self._stream = stream
        self._response = response
        self._cache_file = cache_file
        self._cache_path = cache_path
        self._mtime = mtime
        self.closed = False

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed reader")
        data = self._stream.read() if size is None or size < 0 else self._stream.read(size)
        if data and self._cache_file is not None:
            self._cache_file.write(data)
        return data

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if self._stream is not self._response.raw:
                self._stream.close()
        finally:
            self._response.close()
        if self._cache_file is not None:
            self._cache_file.close()
            os.utime(self._cache_path, (self._mtime, self._mtime))

    def __enter__(self) -> "_RemoteReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _parse_last_modified(value: str) -> float:
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None or parsed.tzinfo is None:
        log.warning("invalid Last-Modified header %r", value)
        return time.time()
    return parsed.timestamp()


def open_reader(repo: Repo, fn: str, cache: bool = False):
    """Open ``fn`` from ``repo`` for reading as a binary stream.

    Local repositories are read directly. Remote files are fetched with
    zstd or gzip transfer compression and, if ``cache`` is set, stored in
    the user cache directory and revalidated with If-Modified-Since.
    Raises NotFoundError on HTTP 404 and OSError on other failing statuses.
    """
    if not (repo.pkg_path.startswith("http://") or repo.pkg_path.startswith("https://")):
        return open(os.path.join(repo.pkg_path, fn), "rb")

    cache_path = cache_filename(cache, repo, fn)
    headers = {}
    if cache_path is not None:
        try:
            st = os.stat(cache_path)
        except OSError:
            pass
        else:
            headers["If-Modified-Since"] = email.utils.formatdate(st.st_mtime, usegmt=True)
    if os.environ.get("DISTRI_REEXEC") == "1":
        headers["X-Distri-Reexec"] = "yes"
    headers["Accept-Encoding"] = "zstd, gzip"

    url = repo.pkg_path + "/" + fn
    resp = _session.get(url, headers=headers, stream=True)
    if cache_path is not None and resp.status_code == 304:
        resp.close()
        return open(cache_path, "rb")
    if resp.status_code != 200:
        status, reason = resp.status_code, resp.reason
        resp.close()
        if status == 404:
            raise NotFoundError(url)
        raise OSError(f"{url}: HTTP status {status} {reason}")

    resp.raw.decode_content = False
    encoding = resp.headers.get("Content-Encoding", "").lower()
    if encoding == "gzip":
        stream = gzip.GzipFile(fileobj=resp.raw, mode="rb")
    elif encoding == "zstd":
        stream = zstandard.ZstdDecompressor().stream_reader(resp.raw)
    else:
        stream = resp.raw

    cache_file = None
    if cache_path is not None:
        try:
            cache_file = open(cache_path, "wb")
        except OSError as err:
            log.warning("cannot cache: %s", err)
    last_modified = resp.headers.get("Last-Modified", "")
    mtime = _parse_last_modified(last_modified) if last_modified else time.time()
    return _RemoteReader(stream, resp, cache_file, cache_path, mtime)
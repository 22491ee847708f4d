import email.utils
import gzip
import os

import pytest
import responses
import zstandard

from distri.repo import NotFoundError, Repo, cache_filename, open_reader

BASE = "http://example.com/pkg"


def test_local_repo_reads_file(tmp_path):
    (tmp_path / "less-amd64-530.meta.textproto").write_bytes(b"version: \"530\"\n")
    repo = Repo(path=str(tmp_path), pkg_path=str(tmp_path))
    with open_reader(repo, "less-amd64-530.meta.textproto") as f:
        assert f.read() == b"version: \"530\"\n"


def test_local_repo_missing_file(tmp_path):
    repo = Repo(pkg_path=str(tmp_path))
    with pytest.raises(FileNotFoundError):
        open_reader(repo, "missing.squashfs")


def test_http_plain_body_and_headers(monkeypatch):
    monkeypatch.setenv("DISTRI_REEXEC", "1")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, BASE + "/a.meta.textproto", body=b"plain contents")
        with open_reader(Repo(pkg_path=BASE), "a.meta.textproto") as f:
            assert f.read() == b"plain contents"
        request = rsps.calls[0].request
        assert request.headers["Accept-Encoding"] == "zstd, gzip"
        assert request.headers["X-Distri-Reexec"] == "yes"


def test_http_without_reexec_header(monkeypatch):
    monkeypatch.delenv("DISTRI_REEXEC", raising=False)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, BASE + "/a", body=b"x")
        with open_reader(Repo(pkg_path=BASE), "a") as f:
            assert f.read() == b"x"
        assert "X-Distri-Reexec" not in rsps.calls[0].request.headers


def test_http_gzip_decoded():
    payload = b"gzip compressed payload " * 50
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.GET,
            BASE + "/g",
            body=gzip.compress(payload),
            headers={"Content-Encoding": "gzip"},
        )
        with open_reader(Repo(pkg_path=BASE), "g") as f:
            assert f.read() == payload


def test_http_zstd_decoded():
    payload = b"zstd compressed payload " * 50
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.GET,
            BASE + "/z",
            body=zstandard.ZstdCompressor().compress(payload),
            headers={"Content-Encoding": "zstd"},
        )
        with open_reader(Repo(pkg_path=BASE), "z") as f:
            assert f.read() == payload


def test_http_not_found():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, BASE + "/nope", status=404)
        with pytest.raises(NotFoundError) as excinfo:
            open_reader(Repo(pkg_path=BASE), "nope")
    assert excinfo.value.url == BASE + "/nope"
    assert str(excinfo.value) == BASE + "/nope: HTTP status 404"
    assert isinstance(excinfo.value, FileNotFoundError)


def test_http_server_error():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, BASE + "/broken", status=500)
        with pytest.raises(OSError) as excinfo:
            open_reader(Repo(pkg_path=BASE), "broken")
    assert not isinstance(excinfo.value, NotFoundError)
    assert "HTTP status 500" in str(excinfo.value)


def test_cache_filename_disabled():
    assert cache_filename(False, Repo(pkg_path=BASE), "x") is None


def test_cache_filename_layout(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    path = cache_filename(True, Repo(pkg_path=BASE), "x.meta.textproto")
    assert path.endswith(
        os.path.join("distri", BASE.replace("/", "_"), "x.meta.textproto")
    )
    assert os.path.isdir(os.path.dirname(path))


def test_cache_round_trip(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    last_modified = "Sun, 06 Nov 1994 08:49:37 GMT"
    repo = Repo(pkg_path=BASE)
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.GET,
            BASE + "/c",
            body=b"cached body",
            headers={"Last-Modified": last_modified},
        )
        rsps.add(responses.GET, BASE + "/c", status=304)

        with open_reader(repo, "c", cache=True) as f:
            assert f.read() == b"cached body"

        path = cache_filename(True, repo, "c")
        with open(path, "rb") as cached:
            assert cached.read() == b"cached body"
        expected = email.utils.parsedate_to_datetime(last_modified).timestamp()
        assert os.stat(path).st_mtime == pytest.approx(expected)

        with open_reader(repo, "c", cache=True) as f:
            assert f.read() == b"cached body"
        assert rsps.calls[1].request.headers["If-Modified-Since"] == last_modified
        assert "If-Modified-Since" not in rsps.calls[0].request.headers
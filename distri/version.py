"""Parsing of distri package version strings such as ``glibc-amd64-2.31-4``."""

from __future__ import annotations

from dataclasses import dataclass

ARCHITECTURES = frozenset({"amd64"})

_FILE_EXTENSIONS = ("squashfs", "meta.textproto", "log")

_INT64_MAX = 2**63 - 1
_INT64_MIN = -(2**63)


@dataclass(frozen=True)
class PackageVersion:
    """One released version of a package.

    ``upstream`` is meant for humans and never compared. ``distri_revision``
    increases by one with every change to the package and is 0 when the
    version could not be parsed.
    """

    pkg: str = ""
    arch: str = ""
    upstream: str = ""
    distri_revision: int = 0

    def __str__(self) -> str:
        return f"{self.pkg}-{self.arch}-{self.upstream}-{self.distri_revision}"


def _likely_fully_specified(component: str) -> bool:
    return any(f"-{arch}-" in component for arch in ARCHITECTURES)


def _is_build_file(filename: str, full: str) -> bool:
    return filename.split("/")[-1] == "build" and full.endswith(".log")


def _any_fully_specified(filename: str) -> str:
    """Return the first path component that names a full package version."""
    return next(
        (c for c in filename.split("/") if _likely_fully_specified(c)),
        filename,
    )


def _parse_int(text: str) -> int:
    """Parse an integer with automatic base detection; 0 on syntax errors.

    Accepts an optional sign and the prefixes ``0x``, ``0o``, ``0b`` or a
    leading ``0`` for octal. Out-of-range values saturate at the 64-bit
    signed limits.
    """
    s = text
    if not s:
        return 0
    sign = 1
    if s[0] in "+-":
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    base = 10
    prefixed = False
    lowered = s.lower()
    for prefix, prefix_base in (("0x", 16), ("0o", 8), ("0b", 2)):
        if lowered.startswith(prefix):
            base, s, prefixed = prefix_base, s[2:], True
            break
    else:
        if len(s) > 1 and s[0] == "0":
            base, s, prefixed = 8, s[1:], True
    if not s or not all(c.isascii() and (c.isalnum() or c == "_") for c in s):
        return 0
    if "_" in s:
        if not prefixed:
            return 0
        if s.startswith("_"):
            s = s[1:]
            if s.startswith("_"):
                return 0
    try:
        value = sign * int(s, base)
    except ValueError:
        return 0
    return max(_INT64_MIN, min(_INT64_MAX, value))


def parse_version(filename: str) -> PackageVersion:
    """Parse a package version out of a file name or link target.

    ``glibc-amd64-2.31-4`` parses into pkg ``glibc``, arch ``amd64``,
    upstream ``2.31`` and revision 4.
    """
    filename = _any_fully_specified(filename)
    pkg = arch = ""
    parts = filename.split("-")
    # The last architecture specifier wins: earlier ones may be part of the
    # package name (e.g. glibc-i686-host).
    arch_index = next(
        (i for i in range(len(parts) - 1, 0, -1) if parts[i] in ARCHITECTURES),
        None,
    )
    if arch_index is not None:
        pkg = "-".join(parts[:arch_index]).rpartition("/")[2]
        arch = parts[arch_index]
        parts = parts[arch_index + 1:]
    if pkg == "build" and filename.endswith(".log"):
        pkg = ""
    if not parts:
        return PackageVersion(pkg=pkg, arch=arch)
    if _is_build_file(parts[0], filename):
        parts = parts[1:]
    upstream = "-".join(parts)
    for ext in _FILE_EXTENSIONS:
        upstream = upstream.removesuffix("." + ext)
    upstream = upstream.partition("/")[0]
    if len(parts) <= 1:
        return PackageVersion(pkg=pkg, arch=arch, upstream=upstream)
    rev = parts[-1].partition(".")[0].partition("/")[0]
    revision = _parse_int(rev)
    if revision > 0:
        upstream = "-".join(parts[:-1])
    return PackageVersion(pkg=pkg, arch=arch, upstream=upstream, distri_revision=revision)


def package_revision_less(filename_a: str, filename_b: str) -> bool:
    """Report whether the revision in ``filename_a`` is below that of ``filename_b``."""
    return parse_version(filename_a).distri_revision < parse_version(filename_b).distri_revision
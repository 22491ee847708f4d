"""Cutting a distri release: create the release branch and build all packages."""

from __future__ import annotations

import argparse
import logging
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

log = logging.getLogger(__name__)

DEFAULT_NAME = "jackherer"


def _format_args(args: Sequence[str]) -> str:
    return "[" + " ".join(args) + "]"


def branch_exists(branch_name: str) -> bool:
    """Report whether the current git repository has a branch ``branch_name``."""
    result = subprocess.run(
        ["git", "branch", "--format", "%(refname:short)"],
        stdout=subprocess.PIPE,
        check=True,
        text=True,
    )
    return branch_name in result.stdout.strip().split("\n")


def _run(args: list[str]) -> None:
    try:
        subprocess.run(args, check=True)
    except (OSError, subprocess.CalledProcessError) as err:
        raise RuntimeError(f"{_format_args(args)}: {err}") from err


@dataclass
class Release:
    """A release, named after its git branch."""

    branch_name: str = DEFAULT_NAME

    def release(self) -> None:
        """Create the release branch if needed, then build every package."""
        if branch_exists(self.branch_name):
            log.info("git branch %r already exists, not creating", self.branch_name)
        else:
            log.info("creating git branch %r", self.branch_name)
            _run(["git", "checkout", "-b", self.branch_name])
        # Packages which fail to build are fixed or removed from the branch.
        _run(["distri", "batch"])


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point; returns the exit status."""
    parser = argparse.ArgumentParser(prog="release")
    parser.add_argument(
        "-name",
        "--name",
        dest="branch_name",
        default=DEFAULT_NAME,
        help="distri release name",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    try:
        Release(branch_name=args.branch_name).release()
    except KeyboardInterrupt:
        log.error("interrupted")
        return 1
    except (RuntimeError, OSError, subprocess.CalledProcessError) as err:
        log.error("%s", err)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "distri"
version = "0.1.0"
description = "Package version parsing, SquashFS image reading and writing, repository access and trace output for distri packages"
requires-python = ">=3.10"
keywords = ["squashfs", "packages", "distribution", "repository", "trace"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Software Distribution",
    "Topic :: System :: Filesystems",
]
dependencies = [
    "requests>=2.25",
    "zstandard>=0.15",
]

[project.optional-dependencies]
test = [
    "pytest>=7",
    "responses>=0.23",
]

[project.scripts]
distri-release = "distri.release:main"

[tool.hatch.build.targets.wheel]
packages = ["distri"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

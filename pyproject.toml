[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cephnode"
version = "0.1.0"
description = "Node-level management of Ceph OSDs, pools, snap services and RBD mirroring status through the ceph, rbd and snapctl tools"
requires-python = ">=3.10"
dependencies = []
keywords = ["ceph", "osd", "rbd", "mirroring", "storage", "pool", "snap", "luks"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Filesystems",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cephnode"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

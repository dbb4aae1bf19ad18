[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ddckv"
version = "0.1.0"
description = "Memory-node server, hash-index layout and block bookkeeping for a disaggregated key-value store"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "key-value store",
    "disaggregated memory",
    "memory allocator",
    "hash table",
    "udp",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
ddckv-server = "ddckv.server:main"

[tool.hatch.build.targets.wheel]
packages = ["ddckv"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

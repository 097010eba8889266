[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "orbitkit"
version = "0.1.0"
description = "Replicated event-log, key-value and document stores built on an append-only operation log"
requires-python = ">=3.10"
keywords = ["crdt", "database", "peer-to-peer", "replication", "pubsub", "event-log", "key-value"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "cbor2",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["orbitkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

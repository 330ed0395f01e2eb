[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "glomers"
version = "0.1.0"
description = "Distributed-systems nodes speaking the Maelstrom JSON protocol: echo, unique ids, broadcast, counter, log and a Raft key-value store"
requires-python = ">=3.10"
dependencies = []
keywords = ["distributed-systems", "maelstrom", "raft", "gossip", "crdt", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
glomers-echo = "glomers.echo:main"
glomers-unique-ids = "glomers.unique_ids:main"
glomers-broadcast = "glomers.broadcast:main"
glomers-counter = "glomers.counter:main"
glomers-kafka = "glomers.kafka:main"
glomers-key-value = "glomers.keyvalue.handler:main"

[tool.hatch.build.targets.wheel]
packages = ["glomers"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

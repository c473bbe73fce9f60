[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "handynet"
version = "0.1.0"
description = "Event-driven TCP networking toolkit: event loop, timers, connections, message codecs, config files and daemon helpers"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "networking",
    "event-loop",
    "tcp",
    "server",
    "reactor",
    "codec",
    "daemon",
    "timers",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
handynet = "handynet.cli:main"
handynet-10m-cli = "handynet.bench:client_main"
handynet-10m-svr = "handynet.bench:server_main"

[tool.hatch.build.targets.wheel]
packages = ["handynet"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

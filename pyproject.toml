[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "streamlog"
version = "0.1.0"
description = "Segmented, checksummed append-only data log storage for event streaming brokers"
requires-python = ">=3.10"
dependencies = []
keywords = ["streaming", "log", "segments", "storage", "broker", "events", "index"]
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
    "Topic :: System :: Distributed Computing",
    "Topic :: Database :: Database Engines/Servers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["streamlog"]

[tool.pytest.ini_options]
addopts = "-ra"

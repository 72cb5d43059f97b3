[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "linkagg"
version = "0.9.7"
description = "TCP, WebSocket and RFCOMM link transports, network helpers, a speed test and formatting helpers for aggregated links"
requires-python = ">=3.10"
keywords = ["networking", "link aggregation", "tcp", "websocket", "rfcomm", "speed test", "asyncio"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "psutil",
    "websockets",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["linkagg"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "edgeworker"
version = "0.1.0"
description = "Edge device worker components: configuration management, heartbeats, hardware reporting, data transfer and playbook job events"
requires-python = ">=3.10"
dependencies = []
keywords = ["edge", "device", "heartbeat", "ansible", "configuration", "worker"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["edgeworker"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

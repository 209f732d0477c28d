[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpljail"
version = "4.0.4"
description = "HTTP, WebSocket and stream redirection core of a jailed program execution server"
requires-python = ">=3.10"
dependencies = []
keywords = ["websocket", "http", "jail", "sandbox", "vnc", "terminal", "redirector"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Education",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vpljail"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

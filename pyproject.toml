[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nexttrace"
version = "1.3.0"
description = "Route tracing command-line tool with per-hop geolocation, MPLS label decoding and route-path summaries"
requires-python = ">=3.10"
keywords = [
    "traceroute",
    "network",
    "icmp",
    "tcp",
    "udp",
    "geoip",
    "mpls",
    "routing",
    "dns-over-tls",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: Internet",
]
dependencies = [
    "dnspython",
    "requests",
    "termcolor",
    "tabulate",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
nexttrace = "nexttrace.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["nexttrace"]

[tool.hatch.build.targets.sdist]
include = [
    "nexttrace",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true

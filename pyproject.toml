[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "whkmail"
version = "0.1.0"
description = "Mail engine library: SQLite message cache, an HTTP API over a Unix socket with its async client, and SMTP submission with XOAUTH2."
requires-python = ">=3.11"
keywords = ["email", "smtp", "xoauth2", "mail-client", "sqlite", "daemon", "server-sent-events"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Topic :: Communications :: Email :: Email Clients (MUA)",
]
dependencies = [
    "aiohttp>=3.9",
    "httpx>=0.27",
]

[project.optional-dependencies]
test = [
    "pytest>=8.0",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["whkmail"]

[tool.hatch.build.targets.sdist]
include = ["whkmail", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
check_untyped_defs = true

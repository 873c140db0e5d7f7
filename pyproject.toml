[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mgnx"
version = "0.1.0"
description = "BitTorrent indexer building blocks: bencode, peer metadata fetching, UDP tracker scraping, metrics, health endpoints and a VPN gateway client."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "bittorrent",
    "bencode",
    "metadata",
    "ut_metadata",
    "tracker",
    "scrape",
    "metrics",
    "indexer",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mgnx"]

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
warn_redundant_casts = true

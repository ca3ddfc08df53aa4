[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "midwest_mainline"
version = "0.1.1"
description = "Building blocks for a BitTorrent mainline DHT node on asyncio: bencode, KRPC messages, routing table and client"
requires-python = ">=3.10"
dependencies = []
keywords = ["bittorrent", "dht", "kademlia", "krpc", "bencode", "asyncio", "bep-5", "bep-42"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["midwest_mainline"]

[tool.pytest.ini_options]
addopts = "-ra"

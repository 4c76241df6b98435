[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "p2pool"
version = "0.1.0"
description = "Share chain, ckpool message handling and bitcoin block building for a peer-to-peer mining pool"
requires-python = ">=3.10"
keywords = ["bitcoin", "mining", "p2pool", "ckpool", "share-chain"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Topic :: Office/Business :: Financial",
]
dependencies = [
    "cbor2",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["p2pool"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

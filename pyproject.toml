[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cidlistener"
version = "0.1.0"
description = "Delegated routing listener that batches provided CIDs into chunks, advertises them and expires them after a TTL"
requires-python = ">=3.10"
dependencies = []
keywords = ["cid", "delegated-routing", "indexer", "advertisement", "content-routing", "multihash"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cidlistener"]

[tool.pytest.ini_options]
addopts = "-ra"

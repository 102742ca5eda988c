[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "csiaddons"
version = "0.1.0"
description = "Reconcilers for CSI add-on resources: node connections, network fencing, space reclamation and volume replication helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["csi", "storage", "reconciler", "replication", "reclaim-space", "network-fence", "cron"]
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
    "Topic :: System :: Systems Administration",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["csiaddons"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

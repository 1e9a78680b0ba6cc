[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lakerunner"
version = "0.1.0"
description = "DDSketch encoding, TID-based metric merging, SQLite metric tables, storage profiles and work-queue helpers for a telemetry data lake"
requires-python = ">=3.10"
keywords = ["telemetry", "metrics", "ddsketch", "data-lake", "workqueue", "sqlite"]
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
    "Topic :: Database",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
lakerunner-sysinfo = "lakerunner.sysinfo:main"

[tool.hatch.build.targets.wheel]
packages = ["lakerunner"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

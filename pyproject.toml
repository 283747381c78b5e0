[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "torkflow"
version = "0.1.0"
description = "Job definitions, validation, an expiring cache, health checks and an engine lifecycle for a distributed task workflow system"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["workflow", "jobs", "tasks", "scheduler", "distributed", "validation", "cache"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["torkflow"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

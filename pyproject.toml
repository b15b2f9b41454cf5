[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "icesched"
version = "0.1.0"
description = "Job scheduling core for a distributed compile cluster: compile servers, job queues, speed statistics and a text control interface."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "distributed compilation",
    "scheduler",
    "build cluster",
    "compile farm",
    "load balancing",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["icesched"]

[tool.hatch.build.targets.sdist]
include = ["icesched", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 99
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

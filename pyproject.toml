[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "forgeclaw-store"
version = "0.1.0"
description = "Persistence layer for messages, groups, tasks, sessions, key/value state and an event audit log on SQLite or PostgreSQL"
requires-python = ">=3.10"
keywords = [
    "database",
    "sqlalchemy",
    "sqlite",
    "postgresql",
    "persistence",
    "audit-log",
    "scheduler",
]
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
    "Topic :: Database :: Front-Ends",
]
dependencies = [
    "sqlalchemy>=2.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7",
]

[tool.hatch.build.targets.wheel]
packages = ["forgeclaw_store"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"

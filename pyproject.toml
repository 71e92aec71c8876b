[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "travelops"
version = "0.1.0"
description = "Double-entry finance ledger, escrow, withdrawals and group itinerary management for a travel back office, stored in SQLite."
requires-python = ">=3.11"
dependencies = []
keywords = [
    "travel",
    "itinerary",
    "ledger",
    "escrow",
    "double-entry",
    "withdrawals",
    "refunds",
    "reconciliation",
    "sqlite",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business",
    "Topic :: Office/Business :: Financial :: Accounting",
    "Topic :: Office/Business :: Scheduling",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["travelops"]

[tool.hatch.build.targets.sdist]
include = ["travelops", "tests"]

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

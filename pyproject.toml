[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kudo"
version = "0.1.0"
description = "Plan execution engine for operator instances: templated tasks, phases and steps with serial or parallel strategies"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["operator", "kubernetes", "plan", "tasks", "templates"]
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
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["kudo"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

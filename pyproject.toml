[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "edgefleet"
version = "0.1.0"
description = "Services for building, tracking and publishing edge operating-system images, OSTree repositories and installers"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "edge",
    "ostree",
    "image-builder",
    "fleet-management",
    "kickstart",
    "installer",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Software Distribution",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["edgefleet"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dockertestkit"
version = "0.1.0"
description = "Create, start and inspect throwaway Docker containers for integration tests."
requires-python = ">=3.10"
dependencies = []
keywords = ["docker", "testing", "containers", "integration-tests", "docker-engine-api"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["dockertestkit"]

[tool.hatch.build.targets.sdist]
include = ["dockertestkit", "tests", "README.md"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pgharness"
version = "0.1.0"
description = "Disposable PostgreSQL servers and postgres_exporter processes for integration tests"
requires-python = ">=3.10"
dependencies = []
keywords = ["postgresql", "testing", "integration-tests", "prometheus", "exporter", "fixtures"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pgharness"]

[tool.pytest.ini_options]
addopts = "-ra"

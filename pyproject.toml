[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "apkforge"
version = "0.1.0"
description = "Checks and metadata for APK package trees: linting, SPDX SBOMs, dependency analysis, ELF reading and tar filtering."
requires-python = ">=3.10"
dependencies = []
keywords = ["apk", "packaging", "sbom", "spdx", "linter", "elf", "dependencies", "tar"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Packaging",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["apkforge"]

[tool.pytest.ini_options]
addopts = "-ra"

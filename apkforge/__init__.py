"""Linting, SPDX SBOMs, dependency analysis, ELF reading and tar filtering for APK package trees."""

__version__ = "0.1.0"

__all__ = ["elf", "lint_defaults", "linter", "sbom", "sca", "tarfilter", "util"]
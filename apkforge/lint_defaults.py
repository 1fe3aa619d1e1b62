"""Linter classes and the linters each class runs by default."""

from __future__ import annotations

import enum


class LinterClass(enum.IntFlag):
    """Where a linter applies."""

    DEFAULT = enum.auto()
    BUILD = enum.auto()
    APK = enum.auto()


# Run for every kind of target.
_DEFAULT_LINTERS = (
    "dev",
    "documentation",
    "empty",
    "opt",
    "object",
    "python/docs",
    "python/multiple",
    "python/test",
    "srv",
    "setuidgid",
    "strip",
    "tempdir",
    "usrlocal",
    "varempty",
    "worldwrite",
)

# Run on builds but not on APKs.
_DEFAULT_BUILD_LINTERS = ("sbom",)

# Run on APKs but not on builds.
_DEFAULT_APK_LINTERS: tuple[str, ...] = ()


def get_default_linters(linter_class: LinterClass) -> list[str]:
    """Return a fresh list of the default linters for ``linter_class``."""
    linters = list(_DEFAULT_LINTERS)
    if linter_class == LinterClass.DEFAULT:
        pass
    elif linter_class == LinterClass.BUILD:
        linters.extend(_DEFAULT_BUILD_LINTERS)
    elif linter_class == LinterClass.APK:
        linters.extend(_DEFAULT_APK_LINTERS)
    else:
        raise ValueError(f"invalid linter set: {linter_class!r}")
    return linters
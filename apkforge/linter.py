"""Checks that flag questionable content in package trees and APK archives."""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import re
import stat
import tarfile
from dataclasses import dataclass, field
from typing import Callable, Iterator, Protocol

from apkforge.elf import ElfError, is_elf
from apkforge.elf import parse as parse_elf
from apkforge.lint_defaults import LinterClass

_log = logging.getLogger(__name__)

Warn = Callable[[Exception], None]

_ELF_MAGIC_SIZE = 4

_COMPAT_PACKAGE = re.compile(r"-compat\Z")
_OBJECT_FILE = re.compile(r"\.(a|so|dylib)(\..*)?")
_SBOM_PATH = re.compile(r"^var/lib/db/sbom/")
_DOCUMENTATION_FILE = re.compile(
    r"(?:READ(?:\.?ME)?|TODO|CREDITS|\.(?:md|docx?|rst|[0-9][a-z]))\Z"
)


class LintError(Exception):
    """A linter found a problem, or linting could not be carried out."""


@dataclass(frozen=True)
class _Entry:
    """One node of a file tree, as seen without following symlinks."""

    path: str
    mode: int
    size: int

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.mode)

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)


class _FileSystem(Protocol):
    def walk(self) -> Iterator[_Entry]: ...

    def listdir(self, path: str) -> list[str]: ...

    def read_bytes(self, path: str) -> bytes: ...


def _ext(path: str) -> str:
    base = path.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


def _basename(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1]


def _join(parent: str, name: str) -> str:
    return name if parent == "." else f"{parent}/{name}"


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else "."


class _DirFS:
    """A directory on disk, addressed with "/"-separated relative paths."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = os.fspath(root)

    def _full(self, path: str) -> str:
        if path == ".":
            return self._root
        return os.path.join(self._root, *path.split("/"))

    def walk(self) -> Iterator[_Entry]:
        try:
            info = os.stat(self._root)
        except OSError as exc:
            raise LintError(f"error traversing tree at .: {exc}") from exc
        root = _Entry(".", info.st_mode, info.st_size)
        yield root
        if root.is_dir:
            yield from self._walk_dir(".")

    def _walk_dir(self, path: str) -> Iterator[_Entry]:
        try:
            names = sorted(os.listdir(self._full(path)))
        except OSError as exc:
            raise LintError(f"error traversing tree at {path}: {exc}") from exc
        for name in names:
            child = _join(path, name)
            try:
                info = os.lstat(self._full(child))
            except OSError as exc:
                raise LintError(f"error traversing tree at {child}: {exc}") from exc
            entry = _Entry(child, info.st_mode, info.st_size)
            yield entry
            if entry.is_dir:
                yield from self._walk_dir(child)

    def listdir(self, path: str) -> list[str]:
        try:
            return sorted(os.listdir(self._full(path)))
        except OSError:
            return []

    def read_bytes(self, path: str) -> bytes:
        with open(self._full(path), "rb") as handle:
            return handle.read()


def _tar_type_bits(member: tarfile.TarInfo) -> int:
    if member.isdir():
        return stat.S_IFDIR
    if member.issym():
        return stat.S_IFLNK
    if member.ischr():
        return stat.S_IFCHR
    if member.isblk():
        return stat.S_IFBLK
    if member.isfifo():
        return stat.S_IFIFO
    return stat.S_IFREG


@dataclass
class _TarFS:
    """The data part of an archive, held in memory."""

    _entries: dict[str, _Entry] = field(default_factory=dict)
    _children: dict[str, set[str]] = field(default_factory=dict)
    _contents: dict[str, bytes] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._entries["."] = _Entry(".", stat.S_IFDIR | 0o755, 0)

    def _register(self, entry: _Entry) -> None:
        self._entries[entry.path] = entry
        path = entry.path
        while path != ".":
            parent = _parent(path)
            self._children.setdefault(parent, set()).add(_basename(path))
            if parent in self._entries:
                break
            self._entries[parent] = _Entry(parent, stat.S_IFDIR | 0o755, 0)
            path = parent

    def add(self, name: str, member: tarfile.TarInfo, data: bytes) -> None:
        mode = _tar_type_bits(member) | (member.mode & 0o7777)
        size = len(data) if stat.S_ISREG(mode) else member.size
        self._register(_Entry(name, mode, size))
        if stat.S_ISREG(mode):
            self._contents[name] = data

    def walk(self) -> Iterator[_Entry]:
        yield from self._walk(".")

    def _walk(self, path: str) -> Iterator[_Entry]:
        entry = self._entries[path]
        yield entry
        if entry.is_dir:
            for name in self.listdir(path):
                yield from self._walk(_join(path, name))

    def listdir(self, path: str) -> list[str]:
        entry = self._entries.get(path)
        if entry is None or not entry.is_dir:
            return []
        return sorted(self._children.get(path, ()))

    def read_bytes(self, path: str) -> bytes:
        try:
            return self._contents[path]
        except KeyError:
            raise FileNotFoundError(f"no such file in archive: {path}") from None


@dataclass
class LinterContext:
    """The package being linted and the file tree holding its contents."""

    pkgname: str
    fs: _FileSystem

    def _lint(self, warn: Warn, linters: list[str], linter_class: LinterClass) -> None:
        if _COMPAT_PACKAGE.search(self.pkgname):
            return

        bad = check_valid_linters(linters)
        if bad:
            raise LintError(f"unknown linter(s): {', '.join(bad)}")

        walk_linters = [
            (name, _LINTERS[name]) for name in linters
            if name in _LINTERS and _LINTERS[name].linter_class & linter_class
        ]
        post_linters = [
            (name, _POST_LINTERS[name]) for name in linters
            if name not in _LINTERS and _POST_LINTERS[name].linter_class & linter_class
        ]

        for entry in self.fs.walk():
            for name, linter in walk_linters:
                try:
                    linter.check(self, entry)
                except (LintError, OSError) as exc:
                    if linter.fail_on_error:
                        raise LintError(
                            f"linter {name} failed at path {entry.path!r}: {exc}; "
                            f"suggest: {linter.explain}"
                        ) from exc
                    warn(exc)

        for name, linter in post_linters:
            try:
                linter.check(self)
            except (LintError, OSError) as exc:
                if linter.fail_on_error:
                    raise LintError(
                        f"linter {name} failed; suggest: {linter.explain}"
                    ) from exc
                warn(exc)


def _is_ignored(path: str) -> bool:
    return bool(_SBOM_PATH.match(path))


def _prefix_check(pattern: str, message: str) -> Callable[[LinterContext, _Entry], None]:
    regex = re.compile(pattern)

    def check(_ctx: LinterContext, entry: _Entry) -> None:
        if regex.match(entry.path):
            raise LintError(message)

    return check


def _object_check(_ctx: LinterContext, entry: _Entry) -> None:
    if _ext(entry.path) == ".o":
        raise LintError(
            f"package contains intermediate object file '{entry.path}'. This is usually "
            "wrong. In most cases they should be removed"
        )


def _documentation_check(ctx: LinterContext, entry: _Entry) -> None:
    if _DOCUMENTATION_FILE.search(entry.path) and not ctx.pkgname.endswith("-doc"):
        raise LintError("package contains documentation files but is not a documentation package")


def _setuid_gid_check(_ctx: LinterContext, entry: _Entry) -> None:
    if _is_ignored(entry.path):
        return
    if entry.mode & stat.S_ISUID:
        raise LintError("file is setuid")
    if entry.mode & stat.S_ISGID:
        raise LintError("file is setgid")


def _world_writeable_check(_ctx: LinterContext, entry: _Entry) -> None:
    if _is_ignored(entry.path) or not entry.is_regular:
        return
    if entry.mode & 0o002:
        if entry.mode & 0o111:
            raise LintError("world-writeable executable file found in package (security risk)")
        raise LintError("world-writeable file found in package")


def _stripped_check(ctx: LinterContext, entry: _Entry) -> None:
    if _is_ignored(entry.path) or not entry.is_regular:
        return
    if entry.size < _ELF_MAGIC_SIZE:
        return
    if not entry.mode & 0o111 and not _OBJECT_FILE.search(_ext(entry.path)):
        return

    try:
        data = ctx.fs.read_bytes(entry.path)
    except OSError as exc:
        raise LintError(f"opening file: {exc}") from exc
    if not is_elf(data):
        return

    try:
        binary = parse_elf(data)
    except ElfError as exc:
        _log.warning("Could not open file %r as executable: %s", entry.path, exc)
        return

    if binary.section(".debug") is not None or binary.section(".zdebug") is not None:
        raise LintError("ELF file is not stripped")


def _empty_post_check(ctx: LinterContext) -> None:
    for entry in ctx.fs.walk():
        if _is_ignored(entry.path) or entry.is_dir:
            continue
        return
    raise LintError("package is empty but no-provides is not set")


def _glob(fs: _FileSystem, directory: str, pattern: str) -> list[str]:
    return [
        f"{directory}/{name}" for name in fs.listdir(directory)
        if fnmatch.fnmatchcase(name, pattern)
    ]


def _python_site_packages(fs: _FileSystem) -> list[str]:
    python_dirs = _glob(fs, "usr/lib", "python3.*")
    if not python_dirs:
        return []
    if len(python_dirs) > 1:
        raise LintError(f"more than one Python version detected: {len(python_dirs)} found")
    return _glob(fs, f"{python_dirs[0]}/site-packages", "*")


def _python_docs_post_check(ctx: LinterContext) -> None:
    for match in _python_site_packages(ctx.fs):
        if _basename(match) in ("doc", "docs"):
            raise LintError("docs directory encountered in Python site-packages directory")


def _python_test_post_check(ctx: LinterContext) -> None:
    for match in _python_site_packages(ctx.fs):
        if _basename(match) in ("test", "tests"):
            raise LintError("tests directory encountered in Python site-packages directory")


def _python_multiple_post_check(ctx: LinterContext) -> None:
    found: set[str] = set()
    for match in _python_site_packages(ctx.fs):
        base = _basename(match)
        if base.startswith("_"):
            continue
        if base in ("test", "tests", "doc", "docs"):
            continue
        ext = _ext(base)
        if ext in (".egg-info", ".dist-info", ".pth"):
            continue
        if ext:
            base = base[: len(ext)]
            if not base:
                continue
        found.add(json.dumps(base, ensure_ascii=False))

    if len(found) > 1:
        listed = ", ".join(sorted(found))
        raise LintError(f"multiple Python packages detected: {len(found)} found ({listed})")


@dataclass(frozen=True)
class _Linter:
    check: Callable[..., None]
    linter_class: LinterClass
    fail_on_error: bool
    explain: str


_BOTH = LinterClass.BUILD | LinterClass.APK
_COMPAT_HINT = "This package should be a -compat package"

_LINTERS: dict[str, _Linter] = {
    "dev": _Linter(
        _prefix_check(r"^dev/", "package writes to /dev"), _BOTH, False,
        "If this package is creating /dev nodes, it should use udev instead; "
        "otherwise, remove any files in /dev",
    ),
    "documentation": _Linter(
        _documentation_check, _BOTH, False,
        "Place documentation into a separate package or remove it",
    ),
    "opt": _Linter(_prefix_check(r"^opt/", "package writes to /opt"), _BOTH, False, _COMPAT_HINT),
    "object": _Linter(
        _object_check, _BOTH, False, "This package contains intermediate object files",
    ),
    "sbom": _Linter(
        _prefix_check(r"^var/lib/db/sbom/", "package writes to /var/lib/db/sbom"),
        LinterClass.BUILD, False, "Remove any files in /var/lib/db/sbom from the package",
    ),
    "setuidgid": _Linter(
        _setuid_gid_check, _BOTH, False,
        "Unset the setuid/setgid bit on the relevant files, or remove this linter",
    ),
    "srv": _Linter(_prefix_check(r"^srv/", "package writes to /srv"), _BOTH, False, _COMPAT_HINT),
    "tempdir": _Linter(
        _prefix_check(r"^(var/)?(tmp|run)/", "package writes to a temp dir"), _BOTH, False,
        "Remove any offending files in temporary dirs in the pipeline",
    ),
    "usrlocal": _Linter(
        _prefix_check(r"^usr/local/", "/usr/local path found in non-compat package"),
        _BOTH, False, _COMPAT_HINT,
    ),
    "varempty": _Linter(
        _prefix_check(r"^var/empty/", "package writes to /var/empty"), _BOTH, False,
        "Remove any offending files in /var/empty in the pipeline",
    ),
    "worldwrite": _Linter(
        _world_writeable_check, _BOTH, False,
        "Change the permissions of any world-writeable files in the package, disable the "
        "linter, or make this a -compat package",
    ),
    "strip": _Linter(
        _stripped_check, _BOTH, False, "Properly strip all binaries in the pipeline",
    ),
}

_POST_LINTERS: dict[str, _Linter] = {
    "empty": _Linter(
        _empty_post_check, _BOTH, False,
        "Verify that this package is supposed to be empty; if it is, disable this linter; "
        "otherwise check the build",
    ),
    "python/docs": _Linter(
        _python_docs_post_check, _BOTH, False, "Remove all docs directories from the package",
    ),
    "python/multiple": _Linter(
        _python_multiple_post_check, _BOTH, False,
        "Split this package up into multiple packages and verify you are not improperly "
        "using pip install",
    ),
    "python/test": _Linter(
        _python_test_post_check, _BOTH, False, "Remove all test directories from the package",
    ),
}


def check_valid_linters(check: list[str]) -> list[str]:
    """Return the names in ``check`` that are not known linters."""
    return [name for name in check if name not in _LINTERS and name not in _POST_LINTERS]


def lint_build(
    package_name: str, path: str | os.PathLike[str], warn: Warn, linters: list[str]
) -> None:
    """Lint the build tree at ``path``, reporting findings through ``warn``."""
    LinterContext(package_name, _DirFS(path))._lint(warn, linters, LinterClass.BUILD)


def _normalize_member_name(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    name = name.strip("/")
    return "" if name == "." else name


def _parse_pkginfo(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(("#", ";")) or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def _member_data(archive: tarfile.TarFile, member: tarfile.TarInfo) -> bytes:
    if not (member.isreg() or member.islnk()):
        return b""
    try:
        handle = archive.extractfile(member)
    except KeyError:
        return b""
    if handle is None:
        return b""
    with handle:
        return handle.read()


def _read_apk(path: str | os.PathLike[str]) -> tuple[str, _TarFS]:
    shown = os.fspath(path)
    try:
        handle = open(path, "rb")
    except OSError as exc:
        raise LintError(f"linting apk {shown!r}: {exc}") from exc

    pkginfo: bytes | None = None
    fs = _TarFS()
    with handle:
        try:
            with tarfile.open(fileobj=handle, mode="r:gz", ignore_zeros=True) as archive:
                for member in archive:
                    name = _normalize_member_name(member.name)
                    if not name:
                        continue
                    if "/" not in name and name.startswith("."):
                        if name == ".PKGINFO":
                            pkginfo = _member_data(archive, member)
                        continue
                    fs.add(name, member, _member_data(archive, member))
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise LintError(f"expanding apk {shown!r}: {exc}") from exc

    if pkginfo is None:
        raise LintError("could not open .PKGINFO file")
    pkgname = _parse_pkginfo(pkginfo.decode("utf-8", errors="replace")).get("pkgname", "")
    if not pkgname:
        raise LintError("pkgname is nonexistent")
    return pkgname, fs


def lint_apk(path: str | os.PathLike[str], warn: Warn, linters: list[str]) -> None:
    """Lint the APK archive at ``path``, reporting findings through ``warn``."""
    pkgname, fs = _read_apk(path)
    LinterContext(pkgname, fs)._lint(warn, linters, LinterClass.APK)
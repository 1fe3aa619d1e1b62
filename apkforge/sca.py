"""Derive provides and runtime dependencies from the contents of a package tree."""

from __future__ import annotations

import errno
import logging
import os
import posixpath
import re
import stat
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator

from apkforge.elf import DynTag, ElfError
from apkforge.elf import parse as parse_elf

_log = logging.getLogger(__name__)

LIB_DIRS = ("lib/", "usr/lib/", "lib64/", "usr/lib64/")
CMD_PREFIXES = ("bin/", "sbin/", "usr/bin/", "usr/sbin/")
PC_DIRS = ("lib/pkgconfig/", "usr/lib/pkgconfig/", "lib64/pkgconfig/", "usr/lib64/pkgconfig/")

_PKG_CONFIG_VERSION = re.compile(r"-(alpha|beta|rc|pre)")
_PC_LINE = re.compile(r"([A-Za-z0-9_.]+)\s*([:=])\s*(.*)")
_PC_VARIABLE = re.compile(r"\$\{([^}]*)\}")
_PC_OPERATORS = frozenset({"<", "<=", "=", "!=", ">=", ">"})
_MAX_LINK_HOPS = 40

# Runtime pkg-config dependencies stay off until enough packages carry provider data.
_GENERATE_RUNTIME_PKGCONFIG_DEPS = False


@dataclass
class Dependencies:
    """Dependency data for a package: what it needs, provides and bundles."""

    runtime: list[str] = field(default_factory=list)
    provides: list[str] = field(default_factory=list)
    vendored: list[str] = field(default_factory=list)


@dataclass
class PackageOptions:
    """Switches that turn parts of the analysis off."""

    no_provides: bool = False
    no_depends: bool = False
    no_commands: bool = False


class DirectoryFS:
    """A package tree on disk, addressed by "/"-separated paths relative to its root.

    Symlinks are resolved inside the tree: an absolute target counts from the root.
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = os.fspath(root)

    def _resolve(self, path: str) -> str:
        pending = deque(part for part in path.split("/") if part not in ("", "."))
        resolved: list[str] = []
        hops = 0
        while pending:
            part = pending.popleft()
            if part == "..":
                if resolved:
                    resolved.pop()
                continue
            candidate = [*resolved, part]
            full = os.path.join(self.root, *candidate)
            if os.path.islink(full):
                hops += 1
                if hops > _MAX_LINK_HOPS:
                    raise OSError(errno.ELOOP, "too many levels of symbolic links", path)
                target = os.readlink(full)
                if target.startswith("/"):
                    resolved = []
                pending.extendleft(
                    reversed([p for p in target.split("/") if p not in ("", ".")])
                )
            else:
                resolved = candidate
        return os.path.join(self.root, *resolved) if resolved else self.root

    def _unfollowed(self, path: str) -> str:
        parent, _, name = path.strip("/").rpartition("/")
        if not name or name == ".":
            return self._resolve(parent)
        return os.path.join(self._resolve(parent), name)

    def walk(self) -> Iterator[tuple[str, os.stat_result]]:
        """Yield ``(path, lstat result)`` for the root "." and everything below, in lexical order."""
        yield ".", os.stat(self.root)
        yield from self._walk(".")

    def _walk(self, path: str) -> Iterator[tuple[str, os.stat_result]]:
        directory = self.root if path == "." else os.path.join(self.root, *path.split("/"))
        for name in sorted(os.listdir(directory)):
            child = name if path == "." else f"{path}/{name}"
            info = os.lstat(os.path.join(directory, name))
            yield child, info
            if stat.S_ISDIR(info.st_mode):
                yield from self._walk(child)

    def lstat(self, path: str) -> os.stat_result:
        """Stat ``path`` without following a final symlink."""
        return os.lstat(self._unfollowed(path))

    def stat(self, path: str) -> os.stat_result:
        """Stat ``path``, following symlinks inside the tree."""
        return os.lstat(self._resolve(path))

    def readlink(self, path: str) -> str:
        """Return the target of the symlink at ``path``."""
        return os.readlink(self._unfollowed(path))

    def read_bytes(self, path: str) -> bytes:
        """Return the contents of the file at ``path``, following symlinks."""
        with open(self._resolve(path), "rb") as handle:
            return handle.read()


@dataclass
class ScaHandle:
    """Everything the analysis needs to know about one package.

    ``relatives`` maps related package names to their trees; when it is empty
    the package is its own only relative.
    """

    package_name: str
    version: str
    filesystem: DirectoryFS
    relatives: dict[str, DirectoryFS] = field(default_factory=dict)
    options: PackageOptions = field(default_factory=PackageOptions)
    base_dependencies: Dependencies = field(default_factory=Dependencies)

    def _relative_names(self) -> list[str]:
        return list(self.relatives) or [self.package_name]

    def _filesystem_for(self, name: str) -> DirectoryFS:
        if name in self.relatives:
            return self.relatives[name]
        if name == self.package_name:
            return self.filesystem
        raise KeyError(f"no filesystem for package {name!r}")


def _has_prefix(path: str, prefixes: tuple[str, ...]) -> bool:
    return path.startswith(prefixes)


def soname_libver(soname: str) -> str:
    """Return the version part of a SONAME, or "0" when it is not purely numeric."""
    parts = soname.split(".so.")
    if len(parts) < 2:
        return "0"
    libver = parts[1]
    if all(ch == "." or ch.isdecimal() for ch in libver):
        return libver
    return "0"


def _generate_cmd_providers(handle: ScaHandle, generated: Dependencies) -> None:
    if handle.options.no_commands:
        return
    _log.info("scanning for commands...")
    for path, info in handle.filesystem.walk():
        if not stat.S_ISREG(info.st_mode):
            continue
        if info.st_mode & 0o555 == 0o555 and _has_prefix(path, CMD_PREFIXES):
            _log.info("  found command %s", path)
            generated.provides.append(f"cmd:{posixpath.basename(path)}={handle.version}")


def _dereference_cross_package_symlink(handle: ScaHandle, path: str) -> tuple[str, str]:
    real_name = posixpath.basename(handle.filesystem.readlink(path))
    for name in handle._relative_names():
        relative = handle._filesystem_for(name)
        for lib_dir in LIB_DIRS:
            candidate = lib_dir + real_name
            try:
                relative.stat(candidate)
            except OSError:
                continue
            return name, candidate
    return "", ""


def _symlinked_sonames(handle: ScaHandle, path: str, generated: Dependencies) -> None:
    try:
        target_pkg, real_path = _dereference_cross_package_symlink(handle, path)
        target_fs = handle._filesystem_for(target_pkg)
    except (OSError, KeyError):
        return
    if not real_path:
        return

    try:
        binary = parse_elf(target_fs.read_bytes(real_path))
    except (OSError, ElfError):
        return
    try:
        sonames = binary.dynamic_strings(DynTag.SONAME)
    except ElfError:
        _log.warning("library %s lacks SONAME", path)
        return

    for soname in sonames:
        _log.info("  found soname %s for %s", soname, path)
        if not handle.options.no_depends:
            generated.runtime.append(f"so:{soname}")


def _scan_object(handle: ScaHandle, path: str, generated: Dependencies) -> None:
    basename = posixpath.basename(path)
    # Executables are often scripts rather than ELF objects; skip anything unreadable.
    try:
        binary = parse_elf(handle.filesystem.read_bytes(path))
    except (OSError, ElfError):
        return

    interp = binary.interpreter()
    if interp and not handle.options.no_depends:
        _log.info("interpreter for %s => %s", basename, interp)
        # The musl loader links back to libc, so depend on the libc name.
        name = f"so:{posixpath.basename(interp)}".replace("so:ld-musl", "so:libc.musl")
        generated.runtime.append(name)

    try:
        libs = binary.imported_libraries()
    except ElfError as exc:
        _log.warning("could not read imported libraries of %s: %s", path, exc)
        return

    if not handle.options.no_depends:
        for lib in libs:
            if ".so." in lib:
                _log.info("  found lib %s for %s", lib, path)
                generated.runtime.append(f"so:{lib}")

    # Programs should carry no SONAME, but some shared objects are also
    # runnable (libc, libcap); a ".so." in the file name marks those.
    if interp and ".so." not in basename:
        return
    try:
        sonames = binary.dynamic_strings(DynTag.SONAME)
    except ElfError:
        _log.warning("library %s lacks SONAME", path)
        return
    for soname in sonames:
        entry = f"so:{soname}={soname_libver(soname)}"
        if _has_prefix(path, LIB_DIRS):
            generated.provides.append(entry)
        else:
            generated.vendored.append(entry)


def _generate_shared_object_deps(handle: ScaHandle, generated: Dependencies) -> None:
    _log.info("scanning for shared object dependencies...")
    for path, info in handle.filesystem.walk():
        mode = info.st_mode
        if stat.S_ISLNK(mode):
            if ".so" in path:
                _symlinked_sonames(handle, path, generated)
            continue
        if not stat.S_ISREG(mode) or mode & 0o555 != 0o555:
            continue
        _scan_object(handle, path, generated)


@dataclass
class _PkgConfig:
    version: str = ""
    requires: list[str] = field(default_factory=list)
    requires_private: list[str] = field(default_factory=list)
    requires_internal: list[str] = field(default_factory=list)


def _module_names(value: str) -> list[str]:
    names: list[str] = []
    skip_version = False
    for token in value.replace(",", " ").split():
        if skip_version:
            skip_version = False
        elif token in _PC_OPERATORS:
            skip_version = True
        else:
            names.append(token)
    return names


def _parse_pkg_config(text: str) -> _PkgConfig:
    variables: dict[str, str] = {}
    fields: dict[str, str] = {}

    def expand(value: str) -> str:
        def lookup(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in variables:
                raise ValueError(f"undefined variable {name!r}")
            return variables[name]

        return _PC_VARIABLE.sub(lookup, value)

    for number, raw in enumerate(text.splitlines(), 1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        match = _PC_LINE.match(line)
        if match is None:
            raise ValueError(f"line {number}: cannot parse {raw!r}")
        key, separator, value = match.groups()
        value = expand(value.strip())
        if separator == "=":
            variables[key] = value
        else:
            fields[key.lower()] = value

    return _PkgConfig(
        version=fields.get("version", ""),
        requires=_module_names(fields.get("requires", "")),
        requires_private=_module_names(fields.get("requires.private", "")),
        requires_internal=_module_names(fields.get("requires.internal", "")),
    )


def _generate_pkg_config_deps(handle: ScaHandle, generated: Dependencies) -> None:
    _log.info("scanning for pkg-config data...")
    fsys = handle.filesystem
    for path, info in fsys.walk():
        if not path.endswith(".pc"):
            continue
        # Some packages alias .pc files to one another with symlinks; skip those.
        if stat.S_ISLNK(info.st_mode):
            continue
        try:
            data = fsys.read_bytes(path)
        except OSError:
            continue
        try:
            pkg = _parse_pkg_config(data.decode("utf-8", errors="replace"))
        except ValueError as exc:
            _log.warning("Unable to load .pc file (%s) using pkgconfig: %s", path, exc)
            continue

        pc_name = posixpath.basename(path).removesuffix(".pc")
        apk_version = _PKG_CONFIG_VERSION.sub(r"_\1", pkg.version)
        if not handle.options.no_provides:
            entry = f"pc:{pc_name}={apk_version}"
            if _has_prefix(path, PC_DIRS):
                _log.info("  found pkg-config %s for %s", pc_name, path)
                generated.provides.append(entry)
            else:
                _log.info("  found vendored pkg-config %s for %s", pc_name, path)
                generated.vendored.append(entry)

        if _GENERATE_RUNTIME_PKGCONFIG_DEPS:
            for dep in (*pkg.requires, *pkg.requires_private, *pkg.requires_internal):
                _log.info("  found pkg-config dependency %s for %s", dep, path)
                generated.runtime.append(f"pc:{dep}")


def _generate_python_deps(handle: ScaHandle, generated: Dependencies) -> None:
    _log.info("scanning for python modules...")
    module_version = ""
    for path, info in handle.filesystem.walk():
        # Modules live in .../pythonX.Y/site-packages; X.Y is the version to pin.
        if posixpath.basename(path) != "site-packages":
            continue
        parent = posixpath.basename(posixpath.dirname(path))
        if not parent.startswith("python"):
            continue
        if not stat.S_ISDIR(info.st_mode):
            continue
        module_version = parent[len("python"):]

    if not module_version:
        return

    for dep in handle.base_dependencies.runtime:
        if dep.startswith("python"):
            _log.warning(
                "%s: Python dependency %r already specified, consider removing it in favor "
                "of SCA-generated dependency", handle.package_name, dep,
            )
            return

    _log.info("  found python module, generating python3~%s dependency", module_version)
    generated.runtime.append(f"python3~{module_version}")


_GENERATORS = (
    _generate_shared_object_deps,
    _generate_cmd_providers,
    _generate_pkg_config_deps,
    _generate_python_deps,
)


def analyze(handle: ScaHandle, generated: Dependencies) -> None:
    """Run every analyzer on ``handle``, appending findings to ``generated``."""
    if handle.options.no_provides:
        return
    for generator in _GENERATORS:
        generator(handle, generated)
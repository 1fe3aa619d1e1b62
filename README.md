# apkforge

A pure-Python library, with no third-party dependencies, for checking package
trees and APK archives and for deriving metadata from them.

## Modules

- `apkforge.linter` — `lint_build(package_name, path, warn, linters)` lints a
  directory tree; `lint_apk(path, warn, linters)` lints a gzip-compressed APK
  archive, taking the package name from the `pkgname` line of its `.PKGINFO`.
  Findings are passed to `warn` as `LintError` instances; unknown linter names,
  an unreadable archive or a missing `pkgname` raise `LintError`.
  `check_valid_linters(names)` returns the names that are not known linters.
  Packages whose name ends in `-compat` are not linted. The linters are:
  `dev`, `opt`, `srv`, `usrlocal`, `varempty`, `tempdir` (files under those
  directories), `sbom` (files under `var/lib/db/sbom`, builds only),
  `documentation` (documentation files in a package not ending in `-doc`),
  `object` (`.o` files), `setuidgid`, `worldwrite`, `strip` (ELF files with
  `.debug` or `.zdebug` sections), `empty` (no files at all), and
  `python/docs`, `python/test`, `python/multiple` (site-packages layout).
- `apkforge.lint_defaults` — the `LinterClass` flags (`DEFAULT`, `BUILD`,
  `APK`) and `get_default_linters(linter_class)`, which returns the default
  linter names for a class and raises `ValueError` for anything else.
- `apkforge.sbom` — `Generator().generate_sbom(spec)` hashes every regular file
  under `spec.path` (SHA1, SHA256, SHA512) and writes an SPDX 2.3 JSON document
  to `var/lib/db/sbom/<name>-<version>.spdx.json` inside that tree, returning
  the path written, or `None` if the tree does not exist. `build_document`
  returns the document as a dict; `string_to_identifier`,
  `get_directory_tree` and `compute_verification_code` are exposed as well.
  The creation time honours `SOURCE_DATE_EPOCH`.
- `apkforge.sca` — `analyze(handle, generated)` fills a `Dependencies`
  (`runtime`, `provides`, `vendored`) with `so:`, `cmd:`, `pc:` and
  `python3~X.Y` entries found in the tree of a `ScaHandle`.
  `PackageOptions` switches parts of the analysis off; `DirectoryFS` gives the
  handle access to a tree on disk; `soname_libver` extracts the version from a
  SONAME.
- `apkforge.elf` — `parse(data)` returns an `ElfFile` with `section(name)`,
  `interpreter()`, `dynamic_strings(tag)` and `imported_libraries()`;
  `is_elf(data)` checks the magic number; malformed data raises `ElfError`.
- `apkforge.tarfilter` — `TarFilter(source, only, trim=False)` is a readable
  stream that passes on only the tar entries below `only`, optionally with
  that prefix removed from their names.
- `apkforge.util` — `source_date_epoch`, `download_file`, `hash_file`,
  `right_join_map`, `reverse_in_place` and `dedup`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

Lint a build directory with the default build linters:

```python
from apkforge.lint_defaults import LinterClass, get_default_linters
from apkforge.linter import lint_build

warnings = []
lint_build("hello", "/path/to/package-root", warnings.append,
           get_default_linters(LinterClass.BUILD))
for warning in warnings:
    print(warning)
```

Generate an SBOM inside a package directory:

```python
from apkforge.sbom import Generator, Spec

written = Generator().generate_sbom(Spec(
    path="/path/to/package-root",
    package_name="hello",
    package_version="1.0-r0",
    license="MIT",
    namespace="example",
    arch="x86_64",
))
print(written)
```

Derive dependencies from a package tree:

```python
from apkforge.sca import Dependencies, DirectoryFS, ScaHandle, analyze

handle = ScaHandle(
    package_name="hello",
    version="1.0-r0",
    filesystem=DirectoryFS("/path/to/package-root"),
)
generated = Dependencies()
analyze(handle, generated)
print(generated.runtime, generated.provides, generated.vendored)
```

Keep only one subtree of a tar stream:

```python
import tarfile
from apkforge.tarfilter import TarFilter

with open("archive.tar", "rb") as raw:
    filtered = TarFilter(raw, "/foo/bar", trim=True)
    with tarfile.open(fileobj=filtered, mode="r|") as archive:
        for member in archive:
            print(member.name)
```

## What it does not do

This is a library only: it has no command-line program. It does not build
packages, run build pipelines, create or sign APK archives, or maintain
repository indexes. `lint_apk` reads an archive into memory and does not
verify its signature or checksums. The SBOM's license check is a simple
syntax check of the expression, not a lookup against the SPDX license list.
"""Generate an SPDX 2.3 software bill of materials for a package's file tree."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Union
from urllib.parse import quote

from apkforge.util import hash_file, source_date_epoch

_log = logging.getLogger(__name__)

NOASSERTION = "NOASSERTION"
SBOM_DIR = ("var", "lib", "db", "sbom")
_TOOL = "Tool: apkforge"
_NAMESPACE_PREFIX = "urn:apkforge:spdxdocs:"
_LICENSE_LIST_VERSION = "3.22"
_HASHES = (("SHA1", "sha1"), ("SHA256", "sha256"), ("SHA512", "sha512"))

_INVALID_ID_CHARS = re.compile(r"[^a-zA-Z0-9\-.]+")
_LICENSE_ID = re.compile(
    r"[A-Za-z0-9][A-Za-z0-9.\-]*\+?|(?:DocumentRef-[A-Za-z0-9.\-]+:)?LicenseRef-[A-Za-z0-9.\-]+"
)
_LICENSE_OPERATORS = frozenset({"AND", "OR", "WITH"})

_PACKAGE_OPTIONAL = frozenset(
    {"versionInfo", "hasFiles", "licenseInfoFromFiles", "supplier", "originator",
     "downloadLocation", "checksums", "externalRefs", "packageVerificationCode"}
)
_FILE_OPTIONAL = frozenset({"copyrightText", "fileTypes"})
_DOCUMENT_OPTIONAL = frozenset({"files", "relationships", "externalDocumentRefs"})


def string_to_identifier(value: str) -> str:
    """Turn ``value`` into a string that is safe inside an SPDX identifier."""
    value = value.replace(":", "-").replace("/", "-")
    return _INVALID_ID_CHARS.sub(
        lambda match: "".join(f"C{byte}" for byte in match.group().encode("utf-8")), value
    )


@dataclass
class Spec:
    """What to describe and where its files are."""

    path: str
    package_name: str
    package_version: str = ""
    license: str = ""
    copyright: str = ""
    namespace: str = ""
    arch: str = ""


@dataclass
class Package:
    """A package in the bill of materials."""

    name: str
    version: str = ""
    ident: str = ""
    files_analyzed: bool = False
    home_page: str = ""
    supplier: str = ""
    originator: str = ""
    copyright: str = ""
    license_declared: str = ""
    license_concluded: str = ""
    namespace: str = ""
    arch: str = ""
    checksums: dict[str, str] = field(default_factory=dict)
    relationships: list[Relationship] = field(default_factory=list, repr=False, compare=False)

    def id(self) -> str:
        return f"SPDXRef-Package-{self.ident or self.name}"


@dataclass
class File:
    """A file in the bill of materials."""

    name: str
    version: str = ""
    ident: str = ""
    checksums: dict[str, str] = field(default_factory=dict)
    relationships: list[Relationship] = field(default_factory=list, repr=False, compare=False)

    def id(self) -> str:
        return f"SPDXRef-File-{self.ident or self.name}"


Element = Union[Package, File]


@dataclass
class Relationship:
    """A typed link from one element to another."""

    source: Element
    target: Element
    type: str


@dataclass
class Bom:
    """The packages and files a document describes."""

    packages: list[Package] = field(default_factory=list)
    files: list[File] = field(default_factory=list)


def get_directory_tree(dir_path: str | os.PathLike[str]) -> list[str]:
    """List every non-directory, non-symlink under ``dir_path`` as sorted "/"-rooted paths."""
    found: list[str] = []

    def visit(directory: str, prefix: str) -> None:
        with os.scandir(directory) as entries:
            for entry in entries:
                relative = f"{prefix}/{entry.name}"
                if entry.is_dir(follow_symlinks=False):
                    visit(entry.path, relative)
                elif not entry.is_symlink():
                    found.append(relative)

    visit(os.fspath(dir_path), "")
    return sorted(found)


def compute_verification_code(hash_list: list[str]) -> str:
    """Return the SPDX package verification code for a list of SHA1 digests."""
    return hashlib.sha1("".join(sorted(hash_list)).encode()).hexdigest()


def _check_environment(spec: Spec) -> bool:
    try:
        os.stat(os.path.abspath(spec.path))
    except FileNotFoundError:
        return False
    return True


def _generate_apk_package(spec: Spec) -> Package:
    if not spec.package_name:
        raise ValueError("unable to generate package, name not specified")
    return Package(
        ident=string_to_identifier(f"{spec.package_name}-{spec.package_version}"),
        name=spec.package_name,
        version=spec.package_version,
        license_declared=spec.license or NOASSERTION,
        license_concluded=NOASSERTION,
        copyright=spec.copyright,
        namespace=spec.namespace,
        arch=spec.arch,
        originator="Organization: " + spec.namespace.title(),
    )


def _scan_files(spec: Spec, package: Package) -> None:
    root = os.path.abspath(spec.path)
    paths = get_directory_tree(root)
    package.files_analyzed = True

    def describe(path: str) -> File:
        full = os.path.join(root, path.lstrip("/"))
        return File(
            ident=string_to_identifier(path),
            name=path.removeprefix("/"),
            checksums={label: hash_file(full, algo) for label, algo in _HASHES},
        )

    with ThreadPoolExecutor(max_workers=4) as pool:
        files = list(pool.map(describe, paths))

    for item in sorted(files, key=lambda f: f.name):
        package.relationships.append(Relationship(source=package, target=item, type="CONTAINS"))


def _prune(entry: dict, optional: frozenset[str]) -> dict:
    return {k: v for k, v in entry.items() if k not in optional or v not in ("", [], None)}


def _checksums(checksums: dict[str, str]) -> list[dict[str, str]]:
    return [{"algorithm": algo, "checksumValue": checksums[algo]} for algo in sorted(checksums)]


def _purl(namespace: str, name: str, version: str, arch: str) -> str:
    def segment(text: str) -> str:
        return quote(text, safe="$&+:=@")

    locator = "pkg:apk/" + "/".join(segment(part) for part in namespace.split("/"))
    locator += "/" + segment(name)
    if version:
        locator += "@" + segment(version)
    if arch:
        locator += "?arch=" + quote(arch, safe="")
    return locator


def _has_relationship(document: dict, relationship: Relationship) -> bool:
    source, target = relationship.source.id(), relationship.target.id()
    return any(
        rel["spdxElementId"] == source
        and rel["relatedSpdxElement"] == target
        and rel["relationshipType"] == relationship.type
        for rel in document["relationships"]
    )


def _add_related(document: dict, element: Element) -> None:
    for relationship in element.relationships:
        if _has_relationship(document, relationship):
            continue
        target = relationship.target
        if isinstance(target, File):
            _add_file(document, target)
        elif isinstance(target, Package):
            _add_package(document, target)
        if isinstance(element, Package):
            document["relationships"].append({
                "spdxElementId": relationship.source.id(),
                "relationshipType": relationship.type,
                "relatedSpdxElement": target.id(),
            })


def _add_package(document: dict, package: Package) -> None:
    has_files: list[str] = []
    hashes: list[str] = []
    excluded: list[str] = []
    for relationship in package.relationships:
        target = relationship.target
        if isinstance(target, File):
            has_files.append(target.id())
            sha1 = target.checksums.get("SHA1")
            if sha1 is None:
                excluded.append(target.id())
            else:
                hashes.append(sha1)

    entry: dict = {
        "SPDXID": package.id(),
        "name": package.name,
        "versionInfo": package.version,
        "filesAnalyzed": False,
        "hasFiles": has_files,
        "licenseInfoFromFiles": [],
        "originator": package.originator,
        "copyrightText": package.copyright,
        "licenseConcluded": package.license_concluded,
        "licenseDeclared": package.license_declared,
        "downloadLocation": NOASSERTION,
        "checksums": _checksums(package.checksums),
        "externalRefs": [],
    }

    code = compute_verification_code(hashes)
    if code:
        verification = {"packageVerificationCodeValue": code}
        if excluded:
            verification["packageVerificationCodeExcludedFiles"] = excluded
        entry["packageVerificationCode"] = verification
        entry["filesAnalyzed"] = True

    if package.namespace:
        entry["externalRefs"].append({
            "referenceCategory": "PACKAGE_MANAGER",
            "referenceLocator": _purl(package.namespace, package.name, package.version,
                                      package.arch),
            "referenceType": "purl",
        })

    document["packages"].append(_prune(entry, _PACKAGE_OPTIONAL))
    _add_related(document, package)


def _add_file(document: dict, item: File) -> None:
    entry = {
        "SPDXID": item.id(),
        "fileName": item.name,
        "licenseConcluded": NOASSERTION,
        "fileTypes": [],
        "licenseInfoInFiles": [],
        "checksums": _checksums(item.checksums),
    }
    document["files"].append(_prune(entry, _FILE_OPTIONAL))
    _add_related(document, item)


def _invalid_license_terms(expression: str) -> list[str]:
    tokens = expression.replace("(", " ").replace(")", " ").split()
    return [
        token for token in tokens
        if token.upper() not in _LICENSE_OPERATORS and not _LICENSE_ID.fullmatch(token)
    ]


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    return text.replace("+00:00", "Z")


def build_document(spec: Spec, doc: Bom) -> dict:
    """Build the SPDX 2.3 document, as a JSON-ready dict, for ``doc``."""
    created = source_date_epoch(datetime.now(timezone.utc))
    name = f"apk-{spec.package_name}-{spec.package_version}"

    document: dict = {
        "SPDXID": "SPDXRef-DOCUMENT",
        "name": name,
        "spdxVersion": "SPDX-2.3",
        "creationInfo": {
            "created": _rfc3339(created),
            "creators": [_TOOL],
            "licenseListVersion": _LICENSE_LIST_VERSION,
        },
        "dataLicense": "CC0-1.0",
        "documentNamespace": _NAMESPACE_PREFIX + hashlib.sha1(name.encode()).hexdigest(),
        "documentDescribes": [],
        "files": [],
        "packages": [],
        "relationships": [],
        "externalDocumentRefs": [],
    }

    if not spec.license:
        _log.warning("no license specified, defaulting to %s", NOASSERTION)
    else:
        bad = _invalid_license_terms(spec.license)
        if bad:
            _log.warning("invalid license: %s", ", ".join(bad))

    for package in doc.packages:
        document["documentDescribes"].append(string_to_identifier(package.id()))
        _add_package(document, package)

    for item in doc.files:
        document["documentDescribes"].append(string_to_identifier(item.id()))
        _add_file(document, item)

    return _prune(document, _DOCUMENT_OPTIONAL)


def _encode(document: dict) -> str:
    text = json.dumps(document, indent=2, ensure_ascii=False)
    for raw, escaped in (("<", "\\u003c"), (">", "\\u003e"), ("&", "\\u0026"),
                         ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        text = text.replace(raw, escaped)
    return text + "\n"


def _write_sbom(spec: Spec, doc: Bom) -> Path:
    document = build_document(spec, doc)
    directory = Path(os.path.abspath(spec.path)).joinpath(*SBOM_DIR)
    directory.mkdir(mode=0o755, parents=True, exist_ok=True)
    target = directory / f"{spec.package_name}-{spec.package_version}.spdx.json"
    target.write_text(_encode(document), encoding="utf-8")
    return target


class Generator:
    """Writes SBOMs into package trees."""

    def generate_sbom(self, spec: Spec) -> Path | None:
        """Describe the tree at ``spec.path`` and write the SBOM into it.

        Returns the path written, or None when the tree does not exist.
        """
        if not _check_environment(spec):
            _log.warning("Working directory not found, probably apk is empty")
            return None

        package = _generate_apk_package(spec)
        _scan_files(spec, package)
        return _write_sbom(spec, Bom(packages=[package]))
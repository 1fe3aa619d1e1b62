"""Small helpers shared across the package: time, downloads, hashing and collections."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import tempfile
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from typing import Any, Hashable, Iterable, Mapping, MutableSequence, TypeVar

_log = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INTEGER = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_CHUNK = 64 * 1024

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
T = TypeVar("T")


def source_date_epoch(default_time: datetime) -> datetime:
    """Return the time given by SOURCE_DATE_EPOCH, or ``default_time`` when it is unset.

    The variable must hold a base-10 integer number of seconds; anything else
    raises ``ValueError``.
    """
    value = os.environ.get("SOURCE_DATE_EPOCH", "").strip()
    if not value:
        _log.warning(
            "SOURCE_DATE_EPOCH is specified but empty, setting it to %s", default_time
        )
        return default_time

    if not _INTEGER.fullmatch(value):
        raise ValueError(f"failed to parse SOURCE_DATE_EPOCH: invalid syntax {value!r}")
    seconds = int(value)
    if not _INT64_MIN <= seconds <= _INT64_MAX:
        raise ValueError(f"failed to parse SOURCE_DATE_EPOCH: value out of range {value!r}")

    try:
        return _EPOCH + timedelta(seconds=seconds)
    except OverflowError as exc:
        raise ValueError(
            f"failed to parse SOURCE_DATE_EPOCH: value out of range {value!r}"
        ) from exc


class _DropRefererRedirect(urllib.request.HTTPRedirectHandler):
    """Follow redirects without passing the Referer header along."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        new_request = super().redirect_request(req, fp, code, msg, headers, newurl)
        if new_request is not None:
            new_request.remove_header("Referer")
        return new_request


def download_file(uri: str) -> str:
    """Download ``uri`` into a temporary file and return the file's path.

    Any response other than 200 raises ``OSError``.
    """
    opener = urllib.request.build_opener(_DropRefererRedirect)
    request = urllib.request.Request(uri, headers={"Accept": "text/html"}, method="GET")
    try:
        response = opener.open(request)
    except urllib.error.HTTPError as exc:
        exc.close()
        raise OSError(f"got {exc.code} {exc.reason} when fetching {uri}") from exc

    with response:
        if response.status != 200:
            raise OSError(f"got {response.status} {response.reason} when fetching {uri}")
        with tempfile.NamedTemporaryFile(prefix="apkforge-update-", delete=False) as target:
            try:
                shutil.copyfileobj(response, target)
            except BaseException:
                target.close()
                os.remove(target.name)
                raise
            return target.name


def hash_file(path: str | os.PathLike[str], algorithm: Any) -> str:
    """Hash a file's contents and return the hex digest.

    ``algorithm`` is either a hashlib algorithm name or a fresh hash object.
    """
    digest = hashlib.new(algorithm) if isinstance(algorithm, str) else algorithm
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def right_join_map(left: Mapping[K, V], right: Mapping[K, V]) -> dict[K, V]:
    """Return a new dict holding ``left`` overlaid with ``right``."""
    return {**left, **right}


def reverse_in_place(items: MutableSequence[T]) -> None:
    """Reverse a mutable sequence in place."""
    items.reverse()


def dedup(items: Iterable[T]) -> list[T]:
    """Return the distinct items, sorted."""
    return sorted(set(items))
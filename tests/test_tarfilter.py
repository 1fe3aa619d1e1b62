import io
import tarfile

import pytest

from apkforge.tarfilter import TarFilter

ONLY = "/foo/bar"

FILES = [
    ("foo", True, None, False),
    ("foo/bar", True, None, False),
    ("foo/bar/baz", False, b"baz", True),
    ("foo/bar/qux", False, b"qux", True),
    ("foo/bar/sub", True, None, True),
    ("foo/bar/sub/file", False, b"content", True),
    ("out", True, None, False),
    ("out/dir", True, None, False),
    ("out/dir/abc", False, b"def", False),
    ("out/file", False, b"hello", False),
]


@pytest.fixture
def archive_bytes():
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, is_dir, content, _ in FILES:
            info = tarfile.TarInfo(name)
            if is_dir:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info.type = tarfile.REGTYPE
                info.mode = 0o644
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def _collect(stream):
    files, dirs = {}, set()
    with tarfile.open(fileobj=stream, mode="r|") as tar:
        for member in tar:
            if member.isdir():
                dirs.add(member.name)
            else:
                files[member.name] = tar.extractfile(member).read()
    return files, dirs


def test_trim(archive_bytes):
    files, dirs = _collect(TarFilter(io.BytesIO(archive_bytes), ONLY, True))
    trimmed = ONLY.removeprefix("/")
    expected_files = {}
    expected_dirs = set()
    for name, is_dir, content, present in FILES:
        if not present:
            continue
        short = name.removeprefix(trimmed).removeprefix("/")
        if is_dir:
            expected_dirs.add(short)
        else:
            expected_files[short] = content
    assert files == expected_files
    assert dirs == expected_dirs
    for name, _, _, present in FILES:
        if not present:
            assert name not in files
            assert name not in dirs


def test_no_trim(archive_bytes):
    files, dirs = _collect(TarFilter(io.BytesIO(archive_bytes), ONLY, False))
    expected_files = {n: c for n, d, c, p in FILES if p and not d}
    expected_dirs = {n for n, d, _, p in FILES if p and d}
    assert files == expected_files
    assert dirs == expected_dirs


def test_leading_slash_is_optional(archive_bytes):
    with_slash = TarFilter(io.BytesIO(archive_bytes), "/foo/bar", True).read()
    without_slash = TarFilter(io.BytesIO(archive_bytes), "foo/bar", True).read()
    assert with_slash == without_slash


def test_small_reads_match_full_read(archive_bytes):
    whole = TarFilter(io.BytesIO(archive_bytes), ONLY, True).read()
    filt = TarFilter(io.BytesIO(archive_bytes), ONLY, True)
    pieces = list(iter(lambda: filt.read(7), b""))
    assert all(len(piece) <= 7 for piece in pieces)
    assert b"".join(pieces) == whole
    assert filt.read() == b""


def test_no_matching_entries(archive_bytes):
    files, dirs = _collect(TarFilter(io.BytesIO(archive_bytes), "/nothing/here", False))
    assert files == {}
    assert dirs == set()


def test_close_closes_source(archive_bytes):
    source = io.BytesIO(archive_bytes)
    with TarFilter(source, ONLY, False) as filt:
        filt.read(10)
    assert source.closed
    assert filt.read() == b""
import hashlib
import os
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from apkforge.util import (
    dedup,
    download_file,
    hash_file,
    reverse_in_place,
    right_join_map,
    source_date_epoch,
)

UTC = timezone.utc
ZERO_TIME = datetime.min.replace(tzinfo=UTC)


@pytest.mark.parametrize(
    "env_value, default_time, want",
    [
        (None, ZERO_TIME, ZERO_TIME),
        ("    ", ZERO_TIME, ZERO_TIME),
        (None, datetime.fromtimestamp(1234567890, UTC), datetime.fromtimestamp(1234567890, UTC)),
        ("0", datetime.fromtimestamp(1234567890, UTC), datetime.fromtimestamp(0, UTC)),
        ("1234567890", datetime.fromtimestamp(0, UTC), datetime.fromtimestamp(1234567890, UTC)),
    ],
    ids=["empty", "strings", "defaultTime", "0", "1234567890"],
)
def test_source_date_epoch(monkeypatch, env_value, default_time, want):
    if env_value is None:
        monkeypatch.delenv("SOURCE_DATE_EPOCH", raising=False)
    else:
        monkeypatch.setenv("SOURCE_DATE_EPOCH", env_value)
    assert source_date_epoch(default_time) == want


def test_source_date_epoch_invalid(monkeypatch):
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "tacocat")
    with pytest.raises(ValueError, match="SOURCE_DATE_EPOCH"):
        source_date_epoch(datetime.fromtimestamp(0, UTC))


def test_source_date_epoch_rejects_fraction(monkeypatch):
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "12.5")
    with pytest.raises(ValueError):
        source_date_epoch(ZERO_TIME)


def test_dedup():
    a = [0, 1, 2, 3, 1, 4, 5, 9, 16, 9, 12, 9, 9, 9, 13, 12, 15, 17, 15]
    b = dedup(a)
    assert len(b) == 12
    assert b == sorted(b)
    assert set(b) == set(a)


def test_right_join_map_right_wins():
    left = {"a": "1", "b": "2"}
    right = {"b": "3", "c": "4"}
    assert right_join_map(left, right) == {"a": "1", "b": "3", "c": "4"}
    assert left == {"a": "1", "b": "2"}


def test_reverse_in_place():
    items = [1, 2, 3, 4]
    assert reverse_in_place(items) is None
    assert items == [4, 3, 2, 1]


def test_hash_file_by_name(tmp_path):
    path = tmp_path / "data"
    path.write_bytes(b"abc")
    assert (
        hash_file(path, "sha256")
        == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


def test_hash_file_with_hash_object(tmp_path):
    path = tmp_path / "data"
    path.write_bytes(b"abc" * 50000)
    assert hash_file(path, hashlib.sha512()) == hash_file(path, "sha512")


def test_hash_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        hash_file(tmp_path / "nope", "sha256")


@pytest.fixture
def server(monkeypatch):
    for name in ("http_proxy", "HTTP_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(name, raising=False)
    seen = []

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            seen.append((self.path, dict(self.headers)))
            if self.path == "/file":
                body = b"payload-bytes"
                self.send_response(200)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
            elif self.path == "/redirect":
                self.send_response(302)
                self.send_header("Location", "/file")
                self.send_header("Content-Length", "0")
                self.end_headers()
            else:
                self.send_response(404)
                self.send_header("Content-Length", "0")
                self.end_headers()

        def log_message(self, format, *args):
            pass

    httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_port}", seen
    httpd.shutdown()
    httpd.server_close()


def test_download_file(server):
    base, seen = server
    path = download_file(base + "/file")
    try:
        with open(path, "rb") as handle:
            assert handle.read() == b"payload-bytes"
    finally:
        os.remove(path)
    assert seen[0][1].get("Accept") == "text/html"


def test_download_file_follows_redirect(server):
    base, seen = server
    path = download_file(base + "/redirect")
    try:
        with open(path, "rb") as handle:
            assert handle.read() == b"payload-bytes"
    finally:
        os.remove(path)
    assert [p for p, _ in seen] == ["/redirect", "/file"]
    assert "Referer" not in seen[1][1]


def test_download_file_error_status(server):
    base, _ = server
    with pytest.raises(OSError, match="404"):
        download_file(base + "/missing")
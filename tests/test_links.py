"""Link status probes used by SEC001."""

from __future__ import annotations

import socket
import threading
import urllib.error
import urllib.request

from gridlint.rules.links import BROKEN, OK, UNKNOWN, file_probe, http_probe, is_url, probe_all


class TestIsUrl:
    def test_schemes(self) -> None:
        assert is_url("https://example.com")
        assert is_url("  HTTP://example.com/x ")
        assert not is_url("ftp://example.com")
        assert not is_url("other.xlsx")


class TestFileProbe:
    def test_existing_and_missing(self, tmp_path) -> None:
        target = tmp_path / "linked.xlsx"
        target.write_bytes(b"x")
        assert file_probe(str(target), None) == OK
        assert file_probe(str(tmp_path / "gone.xlsx"), None) == BROKEN

    def test_relative_to_the_workbook(self, tmp_path) -> None:
        (tmp_path / "linked.xlsx").write_bytes(b"x")
        assert file_probe("linked.xlsx", str(tmp_path)) == OK

    def test_file_url(self, tmp_path) -> None:
        target = tmp_path / "linked.ods"
        target.write_bytes(b"x")
        assert file_probe(target.as_uri(), None) == OK


class TestHttpProbe:
    def test_malformed_url_is_broken(self) -> None:
        assert http_probe("http://", 0.5) == BROKEN

    def test_connect_timeout_is_unknown(self, monkeypatch) -> None:
        def slow_connect(req, timeout=None):
            raise urllib.error.URLError(socket.timeout("timed out"))

        monkeypatch.setattr(urllib.request, "urlopen", slow_connect)
        assert http_probe("https://slow.example/", 0.5) == UNKNOWN

    def test_refused_connection_is_broken(self, monkeypatch) -> None:
        def refused(req, timeout=None):
            raise urllib.error.URLError(ConnectionRefusedError(111, "Connection refused"))

        monkeypatch.setattr(urllib.request, "urlopen", refused)
        assert http_probe("https://down.example/", 0.5) == BROKEN


class TestProbeAll:
    def test_statuses(self) -> None:
        def probe(target: str, timeout: float) -> str:
            return BROKEN if "bad" in target else OK

        assert probe_all(["a", "bad", "a"], probe, 1.0) == {"a": OK, "bad": BROKEN}

    def test_empty(self) -> None:
        assert probe_all([], lambda t, s: OK, 1.0) == {}

    def test_slow_probe_is_unknown(self) -> None:
        release = threading.Event()

        def probe(target: str, timeout: float) -> str:
            release.wait(5)
            return OK

        try:
            assert probe_all(["slow"], probe, 0.1) == {"slow": UNKNOWN}
        finally:
            release.set()

    def test_raising_probe_is_unknown(self) -> None:
        def probe(target: str, timeout: float) -> str:
            raise RuntimeError("no route")

        assert probe_all(["x"], probe, 1.0) == {"x": UNKNOWN}

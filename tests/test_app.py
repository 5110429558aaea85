"""Tests for the FastAPI service layer."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from fastapi.testclient import TestClient

import scanner
from app import app


@pytest.fixture
def client():
    app.state.qbit = None
    with TestClient(app) as c:
        yield c
    app.state.qbit = None


@pytest.fixture
def qbit():
    q = MagicMock()
    q.connected = True
    q.base = "http://q:8080"
    app.state.qbit = q
    return q


class TestConnection:
    def test_not_connected(self, client):
        assert client.get("/api/connection").json() == {"connected": False, "url": None}
        r = client.get("/api/torrents")
        assert r.status_code == 409
        assert r.json()["msg"] == "not connected"

    def test_connect_and_disconnect(self, client):
        fake = MagicMock()
        fake.connected = True
        fake.base = "http://q:8080"
        fake.version.return_value = "v4.6.2"
        with patch("app.QbitClient", return_value=fake) as cls:
            r = client.post("/api/connect", json={"url": "http://q:8080", "username": "admin", "password": "pw"})
        assert r.status_code == 200
        assert r.json() == {"ok": True, "version": "v4.6.2"}
        cls.assert_called_once_with("http://q:8080", "admin", "pw")
        assert client.get("/api/connection").json() == {"connected": True, "url": "http://q:8080"}

        assert client.post("/api/disconnect").json() == {"ok": True}
        fake.disconnect.assert_called_once()
        assert client.get("/api/connection").json()["connected"] is False

    def test_connect_bad_credentials(self, client):
        fake = MagicMock()
        fake.login.side_effect = RuntimeError("qBittorrent login failed (no Ok. and no SID cookie)")
        with patch("app.QbitClient", return_value=fake):
            r = client.post("/api/connect", json={"url": "http://q", "username": "a", "password": "b"})
        assert r.status_code == 401
        assert app.state.qbit is None

    def test_connect_save(self, client):
        fake = MagicMock()
        fake.version.return_value = "v5.0.0"
        with patch("app.QbitClient", return_value=fake):
            client.post("/api/connect", json={"url": "http://q", "username": "a", "password": "b", "save": True})
        assert scanner.load_config() == {"Qbit_Url": "http://q", "Qbit_User": "a", "Qbit_Pass": "b"}

    def test_connect_save_failure_is_reported(self, client):
        fake = MagicMock()
        fake.version.return_value = "v5.0.0"
        with patch("app.QbitClient", return_value=fake), \
                patch("app.scanner.save_config", side_effect=OSError("read-only file system")):
            r = client.post("/api/connect", json={"url": "http://q", "username": "a", "password": "b", "save": True})
        assert r.status_code == 500
        assert "Failed to save configuration" in r.json()["detail"]
        assert "read-only file system" in r.json()["detail"]

    def test_qbit_http_error_is_bad_gateway(self, client, qbit):
        qbit.torrents.side_effect = requests.ConnectionError("boom")
        r = client.get("/api/torrents")
        assert r.status_code == 502


class TestConfigRoutes:
    def test_round_trip(self, client):
        r = client.post("/api/config", json={"Qbit_Url": "http://q", "Qbit_User": "u", "Qbit_Pass": "p",
                                             "Log_Level": "INFO", "Other": 1})
        assert r.status_code == 200
        got = client.get("/api/config").json()
        assert got["Qbit_Url"] == "http://q"
        assert got["Qbit_User"] == "u"
        assert got["Has_Password"] is True
        assert "Qbit_Pass" not in got


class TestTorrentRoutes:
    def test_torrents(self, client, qbit):
        qbit.torrents.return_value = [{
            "hash": "abc", "name": "Show", "size": 300, "progress": 0.5, "state": "pausedDL",
            "save_path": "/downloads", "content_path": "/downloads/Show",
        }]
        assert client.get("/api/torrents").json() == [{
            "hash": "abc", "name": "Show", "size": 300, "progress": 0.5, "state": "pausedDL",
            "savePath": "/downloads", "contentPath": "/downloads/Show",
        }]

    def test_files(self, client, qbit):
        qbit.files.return_value = [{"index": 0, "name": "Show/ep01.mkv", "size": 100, "progress": 0.0}]
        r = client.get("/api/torrents/abc/files")
        assert r.json() == [{"index": 0, "name": "Show/ep01.mkv", "size": 100, "progress": 0.0}]
        qbit.files.assert_called_once_with("abc")


class TestScanRoutes:
    def test_scan(self, client, make_file, tmp_path):
        make_file("Season 1/S01E01.mkv", 10)
        r = client.post("/api/scan", json={"path": str(tmp_path / "disk")})
        assert r.status_code == 200
        assert [(f["name"], f["size"]) for f in r.json()] == [("S01E01.mkv", 10)]

    def test_scan_missing_root(self, client, tmp_path):
        r = client.post("/api/scan", json={"path": str(tmp_path / "missing")})
        assert r.status_code == 400

    def test_background_scan(self, client, make_file, tmp_path):
        make_file("a.bin", 1)
        assert client.post("/api/scan/start", json={"path": str(tmp_path / "disk")}).json() == {"ok": True}
        scanner.wait_scan(10)
        st = client.get("/api/status", params={"files": True}).json()
        assert st["running"] is False
        assert [f["name"] for f in st["files"]] == ["a.bin"]
        assert client.post("/api/scan/stop").status_code == 409

    def test_scan_start_lost_race(self, client, tmp_path):
        idle = {"running": False, "path": "", "files_scanned": 0, "error": None}
        with patch("app.scanner.status", return_value=idle), \
                patch("app.scanner.start_scan", side_effect=RuntimeError("Scan already running")):
            r = client.post("/api/scan/start", json={"path": str(tmp_path)})
        assert r.status_code == 409
        assert r.json() == {"ok": False, "msg": "Scan already running"}

    def test_dir_exists(self, client, tmp_path):
        assert client.get("/api/dir-exists", params={"path": str(tmp_path)}).json() == {"exists": True}
        assert client.get("/api/dir-exists", params={"path": str(tmp_path / "x")}).json() == {"exists": False}


class TestMatchRoutes:
    def test_match_then_renames(self, client):
        body = {
            "torrentFiles": [
                {"index": 0, "name": "Season 1/ep01.mkv", "size": 1000},
                {"index": 1, "name": "Season 1/ep02.mkv", "size": 2000},
                {"index": 2, "name": "video.mkv", "size": 5},
            ],
            "diskFiles": [
                {"path": "/d/S01E01.mkv", "name": "S01E01.mkv", "size": 1000},
                {"path": "/d/a.mkv", "name": "a.mkv", "size": 2000},
                {"path": "/d/b.mkv", "name": "b.mkv", "size": 2000},
            ],
            "requireSameExtension": True,
        }
        result = client.post("/api/match", json=body).json()

        assert result["totalFiles"] == 3
        assert result["matchedCount"] == 1
        assert result["unmatched"] == [{"index": 2, "name": "video.mkv", "size": 5}]
        first, second = result["matches"]
        assert first["autoMatched"] is True
        assert second["selected"] is None
        assert len(second["diskFiles"]) == 2

        # user picks b.mkv for the ambiguous one
        second["selected"] = second["diskFiles"][1]
        ops = client.post("/api/renames", json={"matches": result["matches"],
                                                "torrentContentPath": "/d"}).json()
        assert [(o["oldPath"], o["newPath"]) for o in ops] == [
            ("Season 1/ep01.mkv", "Season 1/S01E01.mkv"),
            ("Season 1/ep02.mkv", "Season 1/b.mkv"),
        ]
        assert ops[0]["diskFile"]["path"] == "/d/S01E01.mkv"

    def test_renames_rejects_foreign_selection(self, client):
        match = {
            "torrentFile": {"index": 0, "name": "a.mkv", "size": 1},
            "diskFiles": [{"path": "/d/b.mkv", "size": 1}],
            "selected": {"path": "/x/c.mkv", "size": 1},
        }
        assert client.post("/api/renames", json={"matches": [match]}).status_code == 422

    @pytest.mark.parametrize("size", [None, "big", -1])
    def test_match_rejects_bad_sizes(self, client, size):
        body = {
            "torrentFiles": [{"index": 0, "name": "a.mkv", "size": size}],
            "diskFiles": [{"path": "/d/a.mkv", "size": 1}],
        }
        assert client.post("/api/match", json=body).status_code == 422
        body = {
            "torrentFiles": [{"index": 0, "name": "a.mkv", "size": 1}],
            "diskFiles": [{"path": "/d/a.mkv", "size": size}],
        }
        assert client.post("/api/match", json=body).status_code == 422

    def test_match_rejects_missing_lists(self, client):
        assert client.post("/api/match", json={"torrentFiles": None, "diskFiles": []}).status_code == 422
        assert client.post("/api/match", json={"diskFiles": []}).status_code == 422

    def test_renames_rejects_null_size(self, client):
        match = {
            "torrentFile": {"index": 0, "name": "a.mkv", "size": None},
            "diskFiles": [{"path": "/d/b.mkv", "size": 1}],
        }
        assert client.post("/api/renames", json={"matches": [match]}).status_code == 422

    def test_apply(self, client, qbit):
        body = {
            "hash": "abc",
            "renames": [{"oldPath": "a.mkv", "newPath": "b.mkv"}, {"oldPath": "c.mkv", "newPath": "d.mkv"}],
            "skipIndices": [4, 7],
            "recheck": True,
        }
        qbit.rename_file.side_effect = [None, requests.HTTPError("409")]

        out = client.post("/api/apply", json=body).json()

        assert out["renamed"] == 1
        assert out["failed"] == [{"oldPath": "c.mkv", "error": "409"}]
        assert out["skipped"] == 2
        assert out["rechecked"] is True
        qbit.set_file_priority.assert_called_once_with("abc", [4, 7], 0)
        qbit.recheck.assert_called_once_with("abc")

    def test_apply_requires_connection(self, client):
        r = client.post("/api/apply", json={"hash": "abc"})
        assert r.status_code == 409

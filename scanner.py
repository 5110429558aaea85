#!/usr/bin/env python3
# scanner.py: YAML config, logging and qBittorrent Web API access for the file matcher
# - Config file + QBT_* environment overrides
# - qBit client with explicit connected state (rename, file priority, recheck)
# - Background directory indexing with status polling and stop support

import os
import time
import threading
import unicodedata
from pathlib import Path
from typing import Dict, List, Optional

import requests
import logging
from logging.handlers import RotatingFileHandler
import yaml

from matcher import DiskEntry, ScanError, TorrentEntry, scan

APP_NAME = "qbittorrent-file-matcher"


class ScanStopped(Exception):
    """Raised when user stops a scan."""
    pass


class NotConnected(RuntimeError):
    """Raised when a qBittorrent call is made before login()."""
    pass


class ConfigError(Exception):
    pass

# --------------------------
# Config location
# --------------------------

def config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_NAME


def config_path() -> Path:
    override = os.environ.get("QBFM_CONFIG")
    if override:
        return Path(override).expanduser()
    return config_dir() / "config.yml"


def logs_dir() -> Path:
    override = os.environ.get("QBFM_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return config_path().parent / "logs"

# --------------------------
# Globals & logging
# --------------------------

logger = logging.getLogger(APP_NAME)

default_level = logging.INFO
if not logger.handlers:
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        LOGS_DIR = logs_dir()
        LOGS_DIR.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(str(LOGS_DIR / "matcher.log"), maxBytes=10 * 1024 * 1024, backupCount=3, encoding="utf-8")
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        # read-only home: console logging only
        pass
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)
logger.setLevel(default_level)


def apply_log_level(cfg: Dict) -> str:
    """Apply Log_Level from config (default INFO) to the logger and its handlers."""
    lvl_name = str(cfg.get("Log_Level") or "INFO").upper()
    lvl = getattr(logging, lvl_name, logging.INFO)
    logger.setLevel(lvl)
    for h in logger.handlers:
        h.setLevel(lvl)
    logger.debug("Log level set to %s", lvl_name)
    return lvl_name

# --------------------------
# Config loader
# --------------------------

CONFIG_KEYS = ("Qbit_Url", "Qbit_User", "Qbit_Pass", "Log_Level")

ENV_OVERRIDES = {
    "QBT_URL": "Qbit_Url",
    "QBT_USERNAME": "Qbit_User",
    "QBT_PASSWORD": "Qbit_Pass",
}


def load_config(path: Optional[Path] = None) -> Dict:
    """Read the YAML config. A missing file is an empty config, not an error."""
    path = path or config_path()
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Failed to read {path}: expected a mapping, got {type(data).__name__}")
    return data


def save_config(cfg: Dict, path: Optional[Path] = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    data = {k: cfg.get(k, "") for k in CONFIG_KEYS if cfg.get(k) not in (None, "")}
    tmp = path.with_suffix(".tmp")
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write("# qBittorrent file matcher configuration\n")
        f.write("# Levels: DEBUG, INFO, WARNING, ERROR, CRITICAL\n")
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    tmp.replace(path)
    logger.info("Configuration saved to %s", path)
    return path


def connection_settings(cfg: Dict) -> Dict:
    """Config values with QBT_* environment variables layered on top."""
    merged = {k: cfg.get(k, "") or "" for k in ("Qbit_Url", "Qbit_User", "Qbit_Pass")}
    for env, key in ENV_OVERRIDES.items():
        val = os.environ.get(env)
        if val:
            merged[key] = val
    return merged

# --------------------------
# Path helpers
# --------------------------

def normalize(p: str) -> str:
    if not p:
        return ""
    p = unicodedata.normalize("NFC", p)
    return os.path.normpath(p)


def expand_path(p: str) -> str:
    """Expand a leading ~ and normalize."""
    if not p:
        return ""
    return normalize(os.path.expanduser(p))


def dir_exists(p: str) -> bool:
    return bool(p) and os.path.isdir(expand_path(p))


def format_size(n: int) -> str:
    if n == 0:
        return "0 B"
    sizes = ["B", "KB", "MB", "GB", "TB"]
    size = float(n)
    i = 0
    while size >= 1024 and i < len(sizes) - 1:
        size /= 1024
        i += 1
    return "%.1f %s" % (size, sizes[i])

# --------------------------
# qBittorrent client
# --------------------------

class QbitClient:
    def __init__(self, url: str, user: str = "", password: str = "", timeout: int = 25):
        self.base = url.rstrip("/")
        self.user = user
        self.password = password
        self.timeout = timeout
        self.s: Optional[requests.Session] = None

    @property
    def connected(self) -> bool:
        return self.s is not None

    def _session(self) -> requests.Session:
        if self.s is None:
            raise NotConnected("not connected to qBittorrent")
        return self.s

    def _get(self, endpoint: str, **params):
        r = self._session().get(f"{self.base}/api/v2/{endpoint}", params=params or None, timeout=self.timeout)
        r.raise_for_status()
        return r

    def _post(self, endpoint: str, data: Dict):
        r = self._session().post(f"{self.base}/api/v2/{endpoint}", data=data, timeout=self.timeout)
        r.raise_for_status()
        return r

    def login(self) -> None:
        s = requests.Session()
        s.headers.update({"Referer": self.base})
        r = s.post(
            f"{self.base}/api/v2/auth/login",
            data={"username": self.user, "password": self.password},
            timeout=self.timeout,
        )
        r.raise_for_status()

        ok_text = "Ok." in (r.text or "")
        have_cookie = any(c.name.lower() in ("sid", "qbittorrent-sid") for c in s.cookies)
        if not (ok_text or have_cookie):
            raise RuntimeError("qBittorrent login failed (no Ok. and no SID cookie)")

        vr = s.get(f"{self.base}/api/v2/app/version", timeout=self.timeout)
        if vr.status_code != 200:
            raise RuntimeError(f"qBittorrent session verify failed (HTTP {vr.status_code})")
        self.s = s
        logger.info("Connected to qBittorrent %s at %s", (vr.text or "").strip(), self.base)

    def disconnect(self) -> None:
        if self.s is None:
            return
        try:
            self.s.post(f"{self.base}/api/v2/auth/logout", timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug("qBittorrent logout failed: %s", e)
        self.s.close()
        self.s = None
        logger.info("Disconnected from qBittorrent at %s", self.base)

    def version(self) -> str:
        return (self._get("app/version").text or "").strip()

    def torrents(self, hashes: str = None) -> List[Dict]:
        params = {}
        if hashes:
            params["hashes"] = hashes
        return self._get("torrents/info", **params).json()

    def files(self, torrent_hash: str) -> List[Dict]:
        return self._get("torrents/files", hash=torrent_hash).json() or []

    def torrent_entries(self, torrent_hash: str) -> List[TorrentEntry]:
        entries = []
        for pos, f in enumerate(self.files(torrent_hash)):
            # older WebUI versions omit "index"; files come back in index order
            idx = f.get("index", pos)
            entries.append(TorrentEntry(index=int(idx), name=f.get("name") or "", size=int(f.get("size") or 0)))
        return entries

    def rename_file(self, torrent_hash: str, old_path: str, new_path: str) -> None:
        self._post("torrents/renameFile", {"hash": torrent_hash, "oldPath": old_path, "newPath": new_path})

    def set_file_priority(self, torrent_hash: str, file_ids: List[int], priority: int) -> None:
        """Priority: 0 = do not download, 1 = normal, 6 = high, 7 = maximum."""
        ids = "|".join(str(i) for i in file_ids)
        self._post("torrents/filePrio", {"hash": torrent_hash, "id": ids, "priority": priority})

    def recheck(self, torrent_hash: str) -> None:
        self._post("torrents/recheck", {"hashes": torrent_hash})

    def set_location(self, torrent_hash: str, location: str) -> None:
        self._post("torrents/setLocation", {"hashes": torrent_hash, "location": location})


def login_qbit(settings: Dict) -> QbitClient:
    url = settings.get("Qbit_Url") or ""
    if not url:
        raise ConfigError("qBittorrent URL is not configured")
    cli = QbitClient(url, settings.get("Qbit_User") or "", settings.get("Qbit_Pass") or "")
    logger.info("Logging into qBittorrent at %s", url)
    cli.login()
    return cli

# --------------------------
# Scanner runner
# --------------------------

class ScanRunner:
    """Indexes one directory on a worker thread so a UI can poll progress."""

    def __init__(self, root: str):
        self.root = expand_path(root)
        self.stop_evt = threading.Event()
        self.progress = {"files": 0, "skipped": 0, "label": "Idle"}
        self.entries: List[DiskEntry] = []
        self.last_error: Optional[str] = None
        self.last_timestamp: Optional[str] = None
        self._start_time = None

    def stop(self):
        self.stop_evt.set()

    def _on_skip(self, path: str, err: OSError):
        self.progress["skipped"] += 1
        logger.debug("Skipping unreadable path %s: %s", path, err)

    def run(self):
        self._start_time = time.time()
        self.last_error = None
        self.progress["label"] = f"Scanning {self.root}"
        logger.info("Scanning %s", self.root)
        try:
            self.entries = scan(self.root, stop_evt=self.stop_evt, on_error=self._on_skip)
            self.progress["files"] = len(self.entries)
            if self.stop_evt.is_set():
                raise ScanStopped
            self.progress["label"] = f"Finished ({len(self.entries)} files)"
            logger.info("Scan of %s found %d files (%d skipped) in %.1fs",
                        self.root, len(self.entries), self.progress["skipped"], time.time() - self._start_time)
        except ScanStopped:
            self.last_error = "Stopped by user"
            self.progress["label"] = f"Stopped ({len(self.entries)} files)"
            logger.info("Scan of %s stopped by user", self.root)
        except ScanError as e:
            self.last_error = str(e)
            self.progress["label"] = "Error"
            logger.error("Scan failed: %s", e)
        finally:
            self.last_timestamp = time.strftime("%Y-%m-%d %H:%M:%S")

# --------------------------
# Module-level control
# --------------------------

_runner: Optional[ScanRunner] = None
_thread: Optional[threading.Thread] = None


def start_scan(root: str) -> ScanRunner:
    global _runner, _thread
    if _thread and _thread.is_alive():
        raise RuntimeError("Scan already running")
    _runner = ScanRunner(root)
    _thread = threading.Thread(target=_runner.run, daemon=True)
    _thread.start()
    logger.info("Scan started")
    return _runner


def stop_scan():
    if _runner:
        _runner.stop()
        logger.info("Stop requested")


def wait_scan(timeout: Optional[float] = None) -> None:
    if _thread:
        _thread.join(timeout)


def status(include_files: bool = False) -> Dict:
    running = bool(_thread and _thread.is_alive())
    prog = dict(_runner.progress) if _runner else {"files": 0, "skipped": 0, "label": "Idle"}
    st = {
        "running": running,
        "root": _runner.root if _runner else None,
        "progress": prog,
        "error": _runner.last_error if _runner else None,
        "timestamp": _runner.last_timestamp if _runner else None,
    }
    if include_files and _runner and not running:
        st["files"] = [e.to_dict() for e in _runner.entries]
    return st

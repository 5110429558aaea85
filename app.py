from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn
import logging
import requests
import os

import scanner  # use the scanner module (which sets up logging)
from matcher import (
    DiskEntry,
    Match,
    ScanError,
    TorrentEntry,
    find_matches,
    generate_renames,
    scan,
)
from scanner import NotConnected, QbitClient
from typing import List, Optional

app = FastAPI(title="qBittorrent File Matcher")

# Use the same logger as scanner
logger = logging.getLogger(scanner.APP_NAME)

# The live qBittorrent connection, None until /api/connect succeeds
app.state.qbit = None


# ---------- request bodies ----------

class ConnectRequest(BaseModel):
    url: str
    username: str = ""
    password: str = ""
    save: bool = False


class ScanRequest(BaseModel):
    path: str


class TorrentFileBody(BaseModel):
    index: int = Field(..., ge=0)
    name: str
    size: int = Field(0, ge=0)

    def entry(self) -> TorrentEntry:
        return TorrentEntry(index=self.index, name=self.name, size=self.size)


class DiskFileBody(BaseModel):
    path: str
    name: str = ""
    size: int = Field(0, ge=0)

    def entry(self) -> DiskEntry:
        return DiskEntry(path=self.path, name=self.name or os.path.basename(self.path), size=self.size)


class MatchBody(BaseModel):
    torrentFile: TorrentFileBody
    diskFiles: List[DiskFileBody]
    selected: Optional[DiskFileBody] = None
    autoMatched: bool = False

    def match(self) -> Match:
        return Match.from_dict({
            "torrentFile": self.torrentFile.entry().to_dict(),
            "diskFiles": [d.entry().to_dict() for d in self.diskFiles],
            "selected": self.selected.entry().to_dict() if self.selected else None,
            "autoMatched": self.autoMatched,
        })


class MatchRequest(BaseModel):
    torrentFiles: List[TorrentFileBody]
    diskFiles: List[DiskFileBody]
    requireSameExtension: bool = True


class RenameRequest(BaseModel):
    matches: List[MatchBody]
    torrentContentPath: str = ""


class RenamePair(BaseModel):
    oldPath: str
    newPath: str


class ApplyRequest(BaseModel):
    hash: str
    renames: List[RenamePair] = []
    skipIndices: List[int] = []
    recheck: bool = False


# ---------- helpers ----------

def read_config() -> dict:
    try:
        return scanner.load_config()
    except scanner.ConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))


def apply_log_level():
    """Apply log level from the config file (default INFO)."""
    try:
        scanner.apply_log_level(scanner.load_config())
    except scanner.ConfigError as e:
        logger.warning("Failed to set log level from config: %s", e)


def get_qbit() -> QbitClient:
    qbit = app.state.qbit
    if qbit is None or not qbit.connected:
        raise NotConnected("not connected")
    return qbit


@app.exception_handler(NotConnected)
def not_connected_handler(request: Request, exc: NotConnected):
    return JSONResponse({"ok": False, "msg": str(exc)}, status_code=409)


@app.exception_handler(requests.RequestException)
def qbit_error_handler(request: Request, exc: requests.RequestException):
    logger.warning("qBittorrent request failed on %s: %s", request.url.path, exc)
    return JSONResponse({"ok": False, "msg": f"qBittorrent request failed: {exc}"}, status_code=502)


# Apply log level at startup
apply_log_level()

# ---------- routes: config & connection ----------

@app.get("/api/config")
def api_config():
    logger.debug("GET /api/config called")
    cfg = read_config()
    return {
        "Qbit_Url": cfg.get("Qbit_Url", ""),
        "Qbit_User": cfg.get("Qbit_User", ""),
        "Has_Password": bool(cfg.get("Qbit_Pass")),
        "Log_Level": cfg.get("Log_Level", "INFO"),
        "Config_Path": str(scanner.config_path()),
    }


@app.post("/api/config")
def api_config_save(config_data: dict):
    """Save configuration to the config file"""
    logger.debug("POST /api/config called with %d keys", len(config_data))
    cfg = read_config()
    cfg.update({k: v for k, v in config_data.items() if k in scanner.CONFIG_KEYS})
    try:
        scanner.save_config(cfg)
    except OSError as e:
        logger.error("Failed to save configuration: %s", e)
        raise HTTPException(status_code=500, detail=f"Failed to save configuration: {e}")
    apply_log_level()
    return {"success": True, "message": "Configuration saved successfully"}


@app.post("/api/connect")
def api_connect(req: ConnectRequest):
    logger.debug("POST /api/connect called for %s", req.url)
    if app.state.qbit is not None:
        app.state.qbit.disconnect()
        app.state.qbit = None
    qbit = QbitClient(req.url, req.username, req.password)
    try:
        qbit.login()
    except RuntimeError as e:
        raise HTTPException(status_code=401, detail=f"failed to connect: {e}")
    app.state.qbit = qbit
    if req.save:
        cfg = read_config()
        cfg.update({"Qbit_Url": req.url, "Qbit_User": req.username, "Qbit_Pass": req.password})
        try:
            scanner.save_config(cfg)
        except OSError as e:
            logger.error("Failed to save configuration: %s", e)
            raise HTTPException(status_code=500, detail=f"Failed to save configuration: {e}")
    return {"ok": True, "version": qbit.version()}


@app.post("/api/disconnect")
def api_disconnect():
    if app.state.qbit is not None:
        app.state.qbit.disconnect()
        app.state.qbit = None
    return {"ok": True}


@app.get("/api/connection")
def api_connection():
    qbit = app.state.qbit
    connected = bool(qbit is not None and qbit.connected)
    return {"connected": connected, "url": qbit.base if connected else None}


@app.get("/api/version")
def api_version():
    return {"version": get_qbit().version()}

# ---------- routes: torrents ----------

@app.get("/api/torrents")
def api_torrents():
    logger.debug("GET /api/torrents called")
    out = []
    for t in get_qbit().torrents():
        out.append({
            "hash": t.get("hash", ""),
            "name": t.get("name", ""),
            "size": t.get("size", 0),
            "progress": t.get("progress", 0.0),
            "state": t.get("state", ""),
            "savePath": t.get("save_path", ""),
            "contentPath": t.get("content_path", ""),
        })
    return out


@app.get("/api/torrents/{torrent_hash}/files")
def api_torrent_files(torrent_hash: str):
    logger.debug("GET /api/torrents/%s/files called", torrent_hash)
    out = []
    for pos, f in enumerate(get_qbit().files(torrent_hash)):
        out.append({
            "index": f.get("index", pos),
            "name": f.get("name", ""),
            "size": f.get("size", 0),
            "progress": f.get("progress", 0.0),
        })
    return out

# ---------- routes: disk scan ----------

@app.post("/api/scan")
def api_scan(req: ScanRequest):
    root = scanner.expand_path(req.path)
    logger.debug("POST /api/scan called for %s", root)
    try:
        entries = scan(root, on_error=lambda p, e: logger.debug("Skipping %s: %s", p, e))
    except ScanError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Scanned %s: %d files", root, len(entries))
    return [e.to_dict() for e in entries]


@app.post("/api/scan/start")
def api_scan_start(req: ScanRequest):
    logger.debug("POST /api/scan/start called")
    st = scanner.status()
    if st.get("running"):
        return JSONResponse({"ok": False, "msg": "Scan already running"}, status_code=409)
    try:
        scanner.start_scan(req.path)
    except RuntimeError as e:
        return JSONResponse({"ok": False, "msg": str(e)}, status_code=409)
    return {"ok": True}


@app.post("/api/scan/stop")
def api_scan_stop():
    logger.debug("POST /api/scan/stop called")
    st = scanner.status()
    if not st.get("running"):
        return JSONResponse({"ok": False, "msg": "No scan running"}, status_code=409)
    scanner.stop_scan()
    return {"ok": True}


@app.get("/api/status")
def api_status(files: bool = False):
    return scanner.status(include_files=files)


@app.get("/api/dir-exists")
def api_dir_exists(path: str = ""):
    return {"exists": scanner.dir_exists(path)}

# ---------- routes: matching ----------

@app.post("/api/match")
def api_match(req: MatchRequest):
    torrent_entries = [t.entry() for t in req.torrentFiles]
    disk_entries = [d.entry() for d in req.diskFiles]
    result = find_matches(torrent_entries, disk_entries, req.requireSameExtension)
    logger.info("Matched %d/%d files (%d unmatched, %d ambiguous)",
                result.matched_count, result.total_files, len(result.unmatched), len(result.unresolved()))
    return result.to_dict()


@app.post("/api/renames")
def api_renames(req: RenameRequest):
    try:
        matches = [m.match() for m in req.matches]
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    content_root: Optional[str] = req.torrentContentPath or None
    return [op.to_dict() for op in generate_renames(matches, content_root)]


@app.post("/api/apply")
def api_apply(req: ApplyRequest):
    qbit = get_qbit()
    renamed, failed = 0, []
    for r in req.renames:
        try:
            qbit.rename_file(req.hash, r.oldPath, r.newPath)
            renamed += 1
        except requests.RequestException as e:
            logger.warning("Failed to rename %s: %s", r.oldPath, e)
            failed.append({"oldPath": r.oldPath, "error": str(e)})

    skipped = 0
    if req.skipIndices:
        qbit.set_file_priority(req.hash, req.skipIndices, 0)
        skipped = len(req.skipIndices)

    rechecked = False
    if req.recheck and renamed > 0:
        qbit.recheck(req.hash)
        rechecked = True

    logger.info("Applied %d renames (%d failed), skipped %d files, recheck=%s",
                renamed, len(failed), skipped, rechecked)
    return {"renamed": renamed, "failed": failed, "skipped": skipped, "rechecked": rechecked}


if __name__ == "__main__":
    uvicorn.run("app:app", host=os.environ.get("QBFM_HOST", "127.0.0.1"),
                port=int(os.environ.get("QBFM_PORT", "3751")), reload=False)

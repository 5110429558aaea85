# matcher.py: match torrent files against files on disk and plan renames
# - Disk index: recursive walk, unreadable subpaths skipped, grouped by size
# - Matching: same size (+ optional same extension), auto-pick single/exact-name candidates
# - Renames: keep the torrent's folder layout, swap in the disk file's leaf name

import os
import posixpath
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional


class ScanError(Exception):
    """Raised when the scan root itself cannot be opened."""
    pass

# --------------------------
# Data model
# --------------------------

@dataclass(frozen=True)
class TorrentEntry:
    index: int
    name: str   # forward-slash path as declared by the torrent
    size: int

    def to_dict(self) -> Dict:
        return {"index": self.index, "name": self.name, "size": self.size}

    @classmethod
    def from_dict(cls, d: Dict) -> "TorrentEntry":
        return cls(index=int(d.get("index", 0)), name=d.get("name") or "", size=int(d.get("size", 0)))


@dataclass(frozen=True)
class DiskEntry:
    path: str   # OS-native path
    name: str   # base name only
    size: int

    def to_dict(self) -> Dict:
        return {"path": self.path, "name": self.name, "size": self.size}

    @classmethod
    def from_dict(cls, d: Dict) -> "DiskEntry":
        path = d.get("path") or ""
        return cls(path=path, name=d.get("name") or os.path.basename(path), size=int(d.get("size", 0)))


@dataclass
class Match:
    """A torrent entry and its same-size disk candidates.

    The selection is held as an index into ``candidates`` so it can only ever
    point at one of them; ``None`` means no decision has been made yet.
    """
    torrent_entry: TorrentEntry
    candidates: List[DiskEntry]
    selected_index: Optional[int] = None
    auto_selected: bool = False

    def __post_init__(self):
        if not self.candidates:
            raise ValueError(f"Match for {self.torrent_entry.name!r} needs at least one candidate")
        if self.selected_index is not None and not 0 <= self.selected_index < len(self.candidates):
            raise ValueError(f"selected index {self.selected_index} out of range")

    @property
    def selected(self) -> Optional[DiskEntry]:
        if self.selected_index is None:
            return None
        return self.candidates[self.selected_index]

    @property
    def is_resolved(self) -> bool:
        return self.selected_index is not None

    def to_dict(self) -> Dict:
        sel = self.selected
        return {
            "torrentFile": self.torrent_entry.to_dict(),
            "diskFiles": [c.to_dict() for c in self.candidates],
            "selected": sel.to_dict() if sel else None,
            "autoMatched": self.auto_selected,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "Match":
        candidates = [DiskEntry.from_dict(c) for c in d.get("diskFiles") or []]
        selected_index = None
        sel = d.get("selected")
        if sel:
            wanted = DiskEntry.from_dict(sel)
            for i, c in enumerate(candidates):
                if c.path == wanted.path:
                    selected_index = i
                    break
            else:
                raise ValueError(f"selected file {wanted.path!r} is not one of the candidates")
        return cls(
            torrent_entry=TorrentEntry.from_dict(d.get("torrentFile") or {}),
            candidates=candidates,
            selected_index=selected_index,
            auto_selected=bool(d.get("autoMatched", False)),
        )


@dataclass
class MatchResult:
    matches: List[Match] = field(default_factory=list)
    unmatched: List[TorrentEntry] = field(default_factory=list)
    total_files: int = 0
    matched_count: int = 0

    def select(self, match: Match, index: int, auto: bool = False) -> None:
        """Record a selection made after matching (prompt, policy or override)."""
        if not 0 <= index < len(match.candidates):
            raise IndexError(f"candidate index {index} out of range for {match.torrent_entry.name!r}")
        if match.selected_index is None:
            self.matched_count += 1
        match.selected_index = index
        match.auto_selected = auto

    def unresolved(self) -> List[Match]:
        return [m for m in self.matches if not m.is_resolved]

    def to_dict(self) -> Dict:
        return {
            "matches": [m.to_dict() for m in self.matches],
            "unmatched": [t.to_dict() for t in self.unmatched],
            "totalFiles": self.total_files,
            "matchedCount": self.matched_count,
        }


@dataclass(frozen=True)
class RenameOperation:
    old_path: str
    new_path: str
    torrent_entry: TorrentEntry
    disk_entry: DiskEntry

    def to_dict(self) -> Dict:
        return {
            "oldPath": self.old_path,
            "newPath": self.new_path,
            "torrentFile": self.torrent_entry.to_dict(),
            "diskFile": self.disk_entry.to_dict(),
        }

# --------------------------
# Disk index
# --------------------------

def scan(root: str, stop_evt: Optional[threading.Event] = None,
         on_error: Optional[Callable[[str, OSError], None]] = None) -> List[DiskEntry]:
    """Recursively list every file under ``root``.

    Only a root that cannot be opened raises ``ScanError``. Anything below it
    that cannot be read is skipped (and reported to ``on_error`` if given).
    When ``stop_evt`` gets set the walk returns what it has collected so far.
    """
    try:
        st = os.stat(root)
    except OSError as e:
        raise ScanError(f"cannot open {root}: {e}") from e

    if not os.path.isdir(root):
        return [DiskEntry(path=root, name=os.path.basename(root), size=st.st_size)]

    try:
        os.listdir(root)
    except OSError as e:
        raise ScanError(f"cannot list {root}: {e}") from e

    def _skip(e: OSError):
        if on_error:
            on_error(e.filename or "", e)

    entries: List[DiskEntry] = []
    for r, dirs, files in os.walk(root, onerror=_skip):
        if stop_evt is not None and stop_evt.is_set():
            break
        dirs.sort()
        for name in sorted(files):
            full = os.path.join(r, name)
            try:
                fst = os.stat(full)
            except OSError as e:
                # broken symlink, vanished file, permission denied
                _skip(e)
                continue
            if not os.path.isfile(full):
                continue
            entries.append(DiskEntry(path=full, name=name, size=fst.st_size))
    return entries


def group_by_size(entries: Iterable[DiskEntry]) -> Dict[int, List[DiskEntry]]:
    buckets: Dict[int, List[DiskEntry]] = {}
    for e in entries:
        buckets.setdefault(e.size, []).append(e)
    return buckets

# --------------------------
# Matching
# --------------------------

def _extension(name: str) -> str:
    base = posixpath.basename(name)
    dot = base.rfind(".")
    if dot < 0:
        return ""
    return base[dot + 1:].lower()


def _leaf(torrent_name: str) -> str:
    return posixpath.basename(torrent_name)


def find_matches(torrent_entries: Iterable[TorrentEntry], disk_entries: Iterable[DiskEntry],
                 require_same_extension: bool) -> MatchResult:
    torrent_entries = list(torrent_entries)
    result = MatchResult(total_files=len(torrent_entries))
    buckets = group_by_size(disk_entries)

    for t in torrent_entries:
        candidates = buckets.get(t.size, [])

        if candidates and require_same_extension:
            want = _extension(t.name)
            candidates = [c for c in candidates if _extension(c.name) == want]

        if not candidates:
            result.unmatched.append(t)
            continue

        # copy so later selection never touches the shared bucket
        match = Match(torrent_entry=t, candidates=list(candidates))

        if len(candidates) == 1:
            match.selected_index = 0
            match.auto_selected = True
        else:
            leaf = _leaf(t.name).casefold()
            for i, c in enumerate(candidates):
                if os.path.basename(c.path).casefold() == leaf:
                    match.selected_index = i
                    match.auto_selected = True
                    break

        if match.is_resolved:
            result.matched_count += 1
        result.matches.append(match)

    return result

# --------------------------
# Resolving ambiguous matches
# --------------------------

Resolver = Callable[[Match], Optional[int]]


def pick_first(match: Match) -> Optional[int]:
    """Headless policy: take the first candidate in scan order."""
    return 0


def resolve_ambiguous(result: MatchResult, resolver: Resolver) -> int:
    """Feed every unresolved multi-candidate match to ``resolver``.

    The resolver returns a candidate index or ``None`` to leave the match
    unresolved. Returns the number of matches that got a selection.
    """
    resolved = 0
    for m in result.matches:
        if m.is_resolved or len(m.candidates) <= 1:
            continue
        choice = resolver(m)
        if choice is None:
            continue
        result.select(m, choice)
        resolved += 1
    return resolved

# --------------------------
# Rename planning
# --------------------------

def generate_renames(matches: Iterable[Match], content_root: Optional[str] = None) -> List[RenameOperation]:
    """Renames that make each selected torrent entry carry its disk file's name.

    The torrent's own folder layout is kept and only the leaf is swapped;
    paths stay forward-slash separated as qBittorrent expects on every
    platform. ``content_root`` is informational: torrent paths are relative
    to the torrent, not to the scanned directory.
    """
    ops: List[RenameOperation] = []
    for m in matches:
        sel = m.selected
        if sel is None:
            continue

        old_path = m.torrent_entry.name
        folder = posixpath.dirname(old_path)
        new_leaf = os.path.basename(sel.path)
        new_path = new_leaf if folder in ("", ".") else posixpath.join(folder, new_leaf)

        if new_path != old_path:
            ops.append(RenameOperation(
                old_path=old_path,
                new_path=new_path,
                torrent_entry=m.torrent_entry,
                disk_entry=sel,
            ))
    return ops

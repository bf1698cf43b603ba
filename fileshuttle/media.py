import logging
import mimetypes
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .storage import SharedRoot, file_extension, mtime_millis

logger = logging.getLogger("fileshuttle.media")

KIND_IMAGE = "image"
KIND_VIDEO = "video"
KIND_OTHER = "other"

DAY_MS = 24 * 60 * 60 * 1000

GROUP_ORDER = ("today", "yesterday", "week", "month", "older")
GROUP_LABELS = {
    "today": "Today",
    "yesterday": "Yesterday",
    "week": "This week",
    "month": "This month",
    "older": "Earlier",
}

_EXTRA_MIME_TYPES = {
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".webp": "image/webp",
    ".mkv": "video/x-matroska",
    ".3gp": "video/3gpp",
    ".m4v": "video/x-m4v",
    ".flv": "video/x-flv",
    ".apk": "application/vnd.android.package-archive",
}
for _extension, _mimetype in _EXTRA_MIME_TYPES.items():
    mimetypes.add_type(_mimetype, _extension)


def guess_mimetype(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name, strict=False)
    return guessed or "application/octet-stream"


def current_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class MediaEntry:
    name: str
    path: str
    size: int
    modified: int
    ext: str
    kind: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "time": self.modified,
            "ext": self.ext,
            "kind": self.kind,
        }


def build_kind_map(
    image_extensions: Iterable[str], video_extensions: Iterable[str]
) -> Dict[str, str]:
    """Map lowercase extensions to their kind. Video wins on overlap."""

    kind_map = {ext.lower().lstrip("."): KIND_IMAGE for ext in image_extensions}
    kind_map.update({ext.lower().lstrip("."): KIND_VIDEO for ext in video_extensions})
    kind_map.pop("", None)
    return kind_map


def classify(ext: str, kind_map: Mapping[str, str]) -> str:
    return kind_map.get(ext.lower(), KIND_OTHER)


def scan_media(
    shared_root: SharedRoot,
    scan_dirs: Sequence[str],
    kind_map: Mapping[str, str],
    kinds: Optional[Iterable[str]] = None,
) -> List[MediaEntry]:
    """Snapshot the media files below *scan_dirs*.

    Only files whose extension has a kind are returned, optionally narrowed
    to *kinds*. Entries keep walk order; callers sort.
    """

    wanted = set(kinds) if kinds is not None else None
    entries = []
    for path, st in shared_root.walk_files(scan_dirs):
        ext = file_extension(path.name)
        kind = classify(ext, kind_map)
        if kind == KIND_OTHER:
            continue
        if wanted is not None and kind not in wanted:
            continue
        entries.append(
            MediaEntry(
                name=path.name,
                path=shared_root.relative_path(path),
                size=st.st_size,
                modified=mtime_millis(st),
                ext=ext,
                kind=kind,
            )
        )
    logger.debug("scan_completed dirs=%d entries=%d", len(scan_dirs), len(entries))
    return entries


def summarize(entries: Iterable[MediaEntry]) -> Dict[str, int]:
    images = videos = total_size = 0
    for entry in entries:
        if entry.kind == KIND_IMAGE:
            images += 1
        elif entry.kind == KIND_VIDEO:
            videos += 1
        else:
            continue
        total_size += entry.size
    return {"images": images, "videos": videos, "totalSize": total_size}


def _local_utc_offset_ms(now_ms: int) -> int:
    offset = datetime.fromtimestamp(now_ms / 1000).astimezone().utcoffset()
    return int(offset.total_seconds() * 1000) if offset is not None else 0


def start_of_day(now_ms: int, utc_offset_ms: Optional[int] = None) -> int:
    """Epoch milliseconds of the most recent local midnight."""

    if utc_offset_ms is None:
        utc_offset_ms = _local_utc_offset_ms(now_ms)
    return now_ms - ((now_ms + utc_offset_ms) % DAY_MS)


def age_bucket(modified: int, today_start: int) -> str:
    if modified >= today_start:
        return "today"
    day_distance = (today_start - modified) // DAY_MS
    if day_distance < 1:
        return "yesterday"
    if day_distance < 7:
        return "week"
    if day_distance < 30:
        return "month"
    return "older"


def group_by_age(
    entries: Iterable[MediaEntry],
    now_ms: Optional[int] = None,
    utc_offset_ms: Optional[int] = None,
) -> Dict[str, Dict[str, object]]:
    """Partition entries into age buckets, newest first within each bucket.

    Buckets without members are left out; the remaining keys follow
    ``GROUP_ORDER``.
    """

    if now_ms is None:
        now_ms = current_millis()
    today_start = start_of_day(now_ms, utc_offset_ms)

    ordered = sorted(entries, key=lambda entry: entry.modified, reverse=True)
    members: Dict[str, List[MediaEntry]] = {key: [] for key in GROUP_ORDER}
    for entry in ordered:
        members[age_bucket(entry.modified, today_start)].append(entry)

    groups: Dict[str, Dict[str, object]] = {}
    for key in GROUP_ORDER:
        bucket = members[key]
        if not bucket:
            continue
        groups[key] = {
            "label": GROUP_LABELS[key],
            "files": [entry.to_dict() for entry in bucket],
            "count": len(bucket),
            "totalSize": sum(entry.size for entry in bucket),
        }
    return groups

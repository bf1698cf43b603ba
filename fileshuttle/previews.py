import logging
import threading
from collections import OrderedDict
from typing import NamedTuple

from .config import DEFAULT_PREVIEW_MAX_BYTES
from .errors import NotFoundError
from .media import guess_mimetype
from .storage import SharedRoot

logger = logging.getLogger("fileshuttle.previews")


class PreviewBlob(NamedTuple):
    data: bytes
    mimetype: str


class PreviewCache:
    """Thread-safe LRU map of file path -> leading bytes of that file.

    The blob is a raw prefix, not a decoded thumbnail. Entries are never
    invalidated; a file changed after caching keeps its old prefix until it
    is evicted.
    """

    def __init__(
        self,
        shared_root: SharedRoot,
        capacity: int,
        max_bytes: int = DEFAULT_PREVIEW_MAX_BYTES,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.shared_root = shared_root
        self.capacity = capacity
        self.max_bytes = max_bytes
        self._entries: "OrderedDict[str, PreviewBlob]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def keys(self):
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get(self, relative: str) -> PreviewBlob:
        path, _ = self.shared_root.stat_file(relative)
        key = self.shared_root.relative_path(path)

        with self._lock:
            blob = self._entries.get(key)
            if blob is not None:
                self._entries.move_to_end(key)
                return blob

        try:
            data = self.shared_root.read_prefix(path, self.max_bytes)
        except OSError as error:
            raise NotFoundError("File not found") from error
        blob = PreviewBlob(data, guess_mimetype(path.name))

        with self._lock:
            self._entries[key] = blob
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("preview_evicted path=%s", evicted)
        return blob

"""Filesystem access rooted at the shared directory.

Every client-supplied path goes through :meth:`SharedRoot.resolve`, which
normalizes it and checks the fully resolved result against the resolved root
before anything touches the disk.
"""

import logging
import os
import stat as stat_module
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import InvalidRequestError, NotFoundError, PathOutsideRootError

logger = logging.getLogger("fileshuttle.storage")

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming


def is_hidden(name: str) -> bool:
    return name.startswith(".")


def mtime_millis(st: os.stat_result) -> int:
    return st.st_mtime_ns // 1_000_000


def file_extension(name: str) -> str:
    """Lowercase extension without the dot; empty for dotless names."""

    suffix = PurePosixPath(name).suffix
    return suffix[1:].lower() if suffix else ""


class SharedRoot:
    """The directory tree exposed to clients."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).expanduser().resolve()

    def __repr__(self) -> str:
        return f"SharedRoot({str(self.root)!r})"

    def resolve(self, relative: Optional[str]) -> Path:
        """Map a client path such as ``/DCIM/a.jpg`` to an absolute path.

        Raises :class:`PathOutsideRootError` when the normalized path, with
        symlinks followed, would leave the root.
        """

        requested = relative or ""
        if "\x00" in requested:
            raise InvalidRequestError("Path contains invalid characters")

        parts = [
            part
            for part in PurePosixPath(requested.replace("\\", "/")).parts
            if part not in ("/", "", ".")
        ]
        candidate = self.root.joinpath(*parts)
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError) as error:
            logger.debug("path_resolve_failed path=%r error=%s", requested, error)
            raise NotFoundError("Path not found") from error

        if not self.contains(resolved):
            logger.warning("path_outside_root requested=%r", requested)
            raise PathOutsideRootError(requested)
        return resolved

    def relative_path(self, path: Path) -> str:
        relative = path.relative_to(self.root).as_posix()
        return "/" if relative == "." else f"/{relative}"

    def stat_file(self, relative: Optional[str]) -> Tuple[Path, os.stat_result]:
        """Resolve *relative* and require a regular file."""

        if not relative:
            raise InvalidRequestError("Missing path")
        path = self.resolve(relative)
        try:
            st = path.stat()
        except OSError as error:
            raise NotFoundError("File not found") from error
        if not stat_module.S_ISREG(st.st_mode):
            raise NotFoundError("File not found")
        return path, st

    def read_prefix(self, path: Path, limit: int) -> bytes:
        with path.open("rb") as handle:
            return handle.read(limit)

    def contains(self, path: Path) -> bool:
        return path == self.root or self.root in path.parents

    def iter_children(self, directory: Path) -> Iterator[Tuple[os.DirEntry, os.stat_result]]:
        """Yield visible children of *directory* with their stat results.

        Children that vanish or cannot be stat'ed are skipped, as are symlinks
        whose target lies outside the root.
        """

        with os.scandir(directory) as entries:
            for entry in entries:
                if is_hidden(entry.name):
                    continue
                try:
                    if entry.is_symlink() and not self.contains(Path(entry.path).resolve()):
                        logger.debug("symlink_outside_root path=%s", entry.path)
                        continue
                    st = entry.stat()
                except (OSError, RuntimeError) as error:
                    logger.debug("stat_failed path=%s error=%s", entry.path, error)
                    continue
                yield entry, st

    def walk_files(self, relative_dirs: Iterable[str]) -> Iterator[Tuple[Path, os.stat_result]]:
        """Recursively yield visible regular files below each directory.

        Missing directories, unreadable subtrees and files that disappear
        mid-walk are skipped. Symlinked directories are not followed, and a
        file reachable from two overlapping directories is reported once.
        """

        seen = set()
        for relative in relative_dirs:
            try:
                top = self.resolve(relative)
            except (InvalidRequestError, NotFoundError):
                logger.debug("scan_dir_skipped dir=%r", relative)
                continue
            if not top.is_dir():
                continue
            pending = [top]
            while pending:
                directory = pending.pop()
                try:
                    children = list(self.iter_children(directory))
                except OSError as error:
                    logger.debug("scan_dir_unreadable path=%s error=%s", directory, error)
                    continue
                for entry, st in children:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            pending.append(Path(entry.path))
                            continue
                    except OSError:
                        continue
                    if not stat_module.S_ISREG(st.st_mode):
                        continue
                    path = Path(entry.path)
                    if path in seen:
                        continue
                    seen.add(path)
                    yield path, st


def list_directory(shared_root: SharedRoot, relative: Optional[str]) -> List[Dict[str, object]]:
    """List the immediate, visible children of a directory.

    Directories sort before files, then names compare case-insensitively.
    """

    directory = shared_root.resolve(relative or "/")
    if not directory.is_dir():
        raise NotFoundError("Not a directory")

    try:
        children = list(shared_root.iter_children(directory))
    except OSError as error:
        raise NotFoundError("Directory not readable") from error

    items = []
    for entry, st in children:
        is_dir = stat_module.S_ISDIR(st.st_mode)
        items.append(
            {
                "name": entry.name,
                "path": shared_root.relative_path(directory / entry.name),
                "size": 0 if is_dir else st.st_size,
                "isDir": is_dir,
                "time": mtime_millis(st),
                "ext": "" if is_dir else file_extension(entry.name),
            }
        )
    items.sort(key=lambda item: (not item["isDir"], str(item["name"]).lower()))
    return items

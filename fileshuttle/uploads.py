"""Resumable, offset-addressed uploads.

A session is created with a target filename and a declared length, then
receives chunks strictly in order. Each chunk names the offset it starts at;
anything but the committed offset is rejected, so clients recover from an
interrupted transfer by asking for the offset and resending from there.
"""

import logging
import os
import re
import threading
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

from werkzeug.exceptions import ClientDisconnected

from .errors import InternalError, InvalidRequestError, NotFoundError, UploadConflictError
from .storage import CHUNK_SIZE_BYTES

logger = logging.getLogger("fileshuttle.uploads")

TUS_VERSION = "1.0.0"
MAX_FILENAME_LENGTH = 255
TEMP_PREFIX = ".fileshuttle-"
TEMP_SUFFIX = ".part"
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")

ChunkData = Union[bytes, bytearray, memoryview, BinaryIO]


class UploadSession:
    def __init__(
        self,
        session_id: str,
        filename: str,
        size: int,
        temp_path: Path,
        final_path: Path,
        created_at: float,
    ) -> None:
        self.session_id = session_id
        self.filename = filename
        self.size = size
        self.offset = 0
        self.temp_path = temp_path
        self.final_path = final_path
        self.created_at = created_at
        self.updated_at = created_at
        self.completed = False
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"UploadSession(id={self.session_id!r}, filename={self.filename!r}, "
            f"offset={self.offset}, size={self.size})"
        )


class AppendResult(NamedTuple):
    offset: int
    completed: bool


def sanitize_upload_filename(filename: Optional[str], fallback: str) -> str:
    """Reduce a client-supplied name to a safe basename.

    Directory components and control characters are dropped. A missing name
    becomes *fallback*; a name that sanitizes to nothing is rejected.
    """

    if filename is None or (isinstance(filename, str) and not filename.strip()):
        return fallback
    if not isinstance(filename, str):
        raise InvalidRequestError("filename must be a string")

    name = PurePosixPath(filename.replace("\\", "/")).name
    name = _CONTROL_CHAR_PATTERN.sub("", name).strip()
    if not name or name in {".", ".."}:
        raise InvalidRequestError("Invalid filename")
    if len(name) > MAX_FILENAME_LENGTH:
        raise InvalidRequestError(
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters"
        )
    return name


def parse_declared_size(value: object) -> int:
    if isinstance(value, bool):
        raise InvalidRequestError("size must be a non-negative integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise InvalidRequestError("size must be a non-negative integer")
    return value


def _iter_chunks(data: ChunkData) -> Iterator[bytes]:
    if isinstance(data, (bytes, bytearray, memoryview)):
        if len(data):
            yield bytes(data)
        return
    while True:
        chunk = data.read(CHUNK_SIZE_BYTES)
        if not chunk:
            break
        yield chunk


class UploadSessionManager:
    """Registry of in-flight uploads writing into *upload_dir*.

    Appends to one session are serialized on that session's lock. The
    registry lock only guards the id -> session map, and is always taken
    after a session lock, never before one.
    """

    def __init__(
        self,
        upload_dir: Union[str, Path],
        max_upload_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.upload_dir = Path(upload_dir)
        self.max_upload_size = max_upload_size or None
        self._clock = clock
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = threading.RLock()

    def ensure_upload_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, session_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found")
        return session

    def create(self, filename: Optional[str], size: object) -> UploadSession:
        now = self._clock()
        declared = parse_declared_size(size)
        if self.max_upload_size is not None and declared > self.max_upload_size:
            raise InvalidRequestError("Declared size exceeds the upload limit")
        name = sanitize_upload_filename(filename, f"upload_{int(now * 1000)}")

        session_id = uuid.uuid4().hex[:16]
        temp_path = self.upload_dir / f"{TEMP_PREFIX}{session_id}{TEMP_SUFFIX}"
        try:
            self.ensure_upload_dir()
            with temp_path.open("xb"):
                pass
        except OSError as error:
            logger.error("upload_create_failed filename=%r error=%s", name, error)
            raise InternalError("Could not create upload file") from error

        session = UploadSession(
            session_id, name, declared, temp_path, self.upload_dir / name, now
        )
        with self._lock:
            self._sessions[session_id] = session
        logger.info(
            "upload_created session_id=%s filename=%r size=%d", session_id, name, declared
        )

        if declared == 0:
            with session.lock:
                self._finalize(session)
        return session

    def status(self, session_id: str) -> Tuple[int, int]:
        session = self.get(session_id)
        return session.offset, session.size

    def append(self, session_id: str, chunk_offset: int, data: ChunkData) -> AppendResult:
        session = self.get(session_id)
        with session.lock:
            with self._lock:
                if self._sessions.get(session_id) is not session:
                    raise NotFoundError("Session not found")
            if chunk_offset != session.offset:
                logger.warning(
                    "upload_offset_conflict session_id=%s expected=%d received=%d",
                    session_id,
                    session.offset,
                    chunk_offset,
                )
                raise UploadConflictError(session.offset, chunk_offset)

            written = self._write_chunk(session, data)
            session.offset += written
            session.updated_at = self._clock()
            logger.debug(
                "upload_chunk_written session_id=%s bytes=%d offset=%d size=%d",
                session_id,
                written,
                session.offset,
                session.size,
            )
            if session.offset >= session.size:
                self._finalize(session)
            return AppendResult(session.offset, session.completed)

    def _write_chunk(self, session: UploadSession, data: ChunkData) -> int:
        start = session.offset
        remaining = session.size - start
        written = 0
        try:
            with session.temp_path.open("r+b") as handle:
                handle.seek(start)
                try:
                    for chunk in _iter_chunks(data):
                        if written + len(chunk) > remaining:
                            raise InvalidRequestError(
                                "Chunk exceeds the declared upload length"
                            )
                        handle.write(chunk)
                        written += len(chunk)
                except ClientDisconnected:
                    # The body ended early; what did arrive is kept.
                    logger.warning(
                        "upload_chunk_interrupted session_id=%s offset=%d received=%d",
                        session.session_id,
                        start,
                        written,
                    )
                except BaseException:
                    handle.truncate(start)
                    raise
                handle.flush()
        except OSError as error:
            logger.error(
                "upload_write_failed session_id=%s offset=%d error=%s",
                session.session_id,
                start,
                error,
            )
            raise InternalError("Could not write upload chunk") from error
        return written

    def _finalize(self, session: UploadSession) -> None:
        """Move the finished temp file into place. Caller holds ``session.lock``."""

        try:
            os.replace(session.temp_path, session.final_path)
        except OSError as error:
            logger.error(
                "upload_finalize_failed session_id=%s target=%s error=%s",
                session.session_id,
                session.final_path,
                error,
            )
            raise InternalError("Could not finalize upload") from error
        session.completed = True
        with self._lock:
            self._sessions.pop(session.session_id, None)
        logger.info(
            "upload_completed session_id=%s filename=%r size=%d",
            session.session_id,
            session.filename,
            session.size,
        )

    def expire_idle(self, max_idle_seconds: float, now: Optional[float] = None) -> int:
        """Drop sessions idle for longer than *max_idle_seconds*.

        Returns the number of sessions removed. Their temp files are deleted.
        """

        now = self._clock() if now is None else now
        with self._lock:
            candidates: List[UploadSession] = [
                session
                for session in self._sessions.values()
                if now - session.updated_at > max_idle_seconds
            ]

        removed = 0
        for session in candidates:
            with session.lock:
                with self._lock:
                    if self._sessions.get(session.session_id) is not session:
                        continue
                    if now - session.updated_at <= max_idle_seconds:
                        continue
                    del self._sessions[session.session_id]
                try:
                    session.temp_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as error:
                    logger.warning(
                        "upload_temp_remove_failed path=%s error=%s", session.temp_path, error
                    )
            removed += 1
            logger.info(
                "upload_expired session_id=%s filename=%r offset=%d size=%d",
                session.session_id,
                session.filename,
                session.offset,
                session.size,
            )
        return removed

    def remove_orphaned_temp_files(self, max_age_seconds: float) -> int:
        """Delete temp files older than *max_age_seconds* that no session owns."""

        if not self.upload_dir.is_dir():
            return 0
        with self._lock:
            owned = {session.temp_path.name for session in self._sessions.values()}
        cutoff = self._clock() - max_age_seconds

        removed = 0
        for temp_file in self.upload_dir.glob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"):
            if temp_file.name in owned:
                continue
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning("temp_cleanup_failed path=%s error=%s", temp_file, error)
        return removed

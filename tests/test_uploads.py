import io
import os
import tempfile
import threading
import time
import unittest
from pathlib import Path

from werkzeug.exceptions import ClientDisconnected

from fileshuttle.errors import InternalError, InvalidRequestError, NotFoundError, UploadConflictError
from fileshuttle.uploads import (
    TEMP_PREFIX,
    UploadSessionManager,
    parse_declared_size,
    sanitize_upload_filename,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class DroppedStream:
    """Request body whose client goes away after *payload*."""

    def __init__(self, payload: bytes) -> None:
        self._payload = payload

    def read(self, size: int = -1) -> bytes:
        if self._payload:
            data, self._payload = self._payload, b""
            return data
        raise ClientDisconnected()


class UploadSessionManagerTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.upload_dir = Path(self.tmp.name) / "uploads"
        self.clock = FakeClock()
        self.manager = UploadSessionManager(self.upload_dir, clock=self.clock)

    def tearDown(self):
        self.tmp.cleanup()

    def test_create_registers_empty_hidden_temp_file(self):
        session = self.manager.create("photo.jpg", 10)

        self.assertEqual(session.offset, 0)
        self.assertEqual(len(session.session_id), 16)
        self.assertTrue(session.temp_path.exists())
        self.assertEqual(session.temp_path.stat().st_size, 0)
        self.assertTrue(session.temp_path.name.startswith("."))
        self.assertEqual(session.temp_path.name, f"{TEMP_PREFIX}{session.session_id}.part")
        self.assertEqual(session.final_path, self.upload_dir / "photo.jpg")
        self.assertEqual(self.manager.status(session.session_id), (0, 10))
        self.assertEqual(self.manager.active_count(), 1)

    def test_single_chunk_completes_and_removes_session(self):
        session = self.manager.create("photo.jpg", 10)

        result = self.manager.append(session.session_id, 0, b"0123456789")

        self.assertEqual(result.offset, 10)
        self.assertTrue(result.completed)
        self.assertEqual((self.upload_dir / "photo.jpg").read_bytes(), b"0123456789")
        self.assertFalse(session.temp_path.exists())
        with self.assertRaises(NotFoundError):
            self.manager.status(session.session_id)
        self.assertEqual(self.manager.active_count(), 0)

    def test_ordered_chunks_reassemble_file(self):
        chunks = [b"alpha-", b"", b"beta-", b"gamma"]
        total = sum(len(chunk) for chunk in chunks)
        session = self.manager.create("notes.txt", total)

        offset = 0
        for chunk in chunks:
            result = self.manager.append(session.session_id, offset, chunk)
            offset = result.offset
            if offset < total:
                self.assertFalse(result.completed)
                self.assertEqual(session.temp_path.stat().st_size, offset)

        self.assertTrue(result.completed)
        self.assertEqual((self.upload_dir / "notes.txt").read_bytes(), b"".join(chunks))

    def test_stream_chunks_use_bytes_actually_read(self):
        session = self.manager.create("clip.mp4", 8)

        result = self.manager.append(session.session_id, 0, io.BytesIO(b"abc"))
        self.assertEqual(result.offset, 3)
        result = self.manager.append(session.session_id, 3, io.BytesIO(b"defgh"))

        self.assertTrue(result.completed)
        self.assertEqual((self.upload_dir / "clip.mp4").read_bytes(), b"abcdefgh")

    def test_disconnected_stream_keeps_bytes_received(self):
        session = self.manager.create("clip.mp4", 10)

        result = self.manager.append(session.session_id, 0, DroppedStream(b"abcd"))

        self.assertEqual(result, (4, False))
        self.assertEqual(session.temp_path.read_bytes(), b"abcd")
        self.assertEqual(self.manager.status(session.session_id), (4, 10))

        result = self.manager.append(session.session_id, 4, b"efghij")
        self.assertTrue(result.completed)
        self.assertEqual((self.upload_dir / "clip.mp4").read_bytes(), b"abcdefghij")

    def test_offset_mismatch_is_conflict_without_mutation(self):
        session = self.manager.create("photo.jpg", 10)
        self.manager.append(session.session_id, 0, b"12345")

        for bad_offset in (0, 3, 6, 10):
            with self.assertRaises(UploadConflictError) as caught:
                self.manager.append(session.session_id, bad_offset, b"xx")
            self.assertEqual(caught.exception.expected, 5)

        self.assertEqual(self.manager.status(session.session_id), (5, 10))
        self.assertEqual(session.temp_path.read_bytes(), b"12345")

    def test_chunk_past_declared_size_is_rejected_and_rolled_back(self):
        session = self.manager.create("photo.jpg", 4)
        self.manager.append(session.session_id, 0, b"ab")

        with self.assertRaises(InvalidRequestError):
            self.manager.append(session.session_id, 2, io.BytesIO(b"cdef"))

        self.assertEqual(self.manager.status(session.session_id), (2, 4))
        self.assertEqual(session.temp_path.read_bytes(), b"ab")

    def test_unknown_session_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.manager.append("missing", 0, b"data")
        with self.assertRaises(NotFoundError):
            self.manager.status("missing")

    def test_zero_length_upload_completes_on_create(self):
        session = self.manager.create("empty.bin", 0)

        self.assertTrue(session.completed)
        self.assertEqual((self.upload_dir / "empty.bin").read_bytes(), b"")
        with self.assertRaises(NotFoundError):
            self.manager.status(session.session_id)

    def test_completion_replaces_existing_file(self):
        self.upload_dir.mkdir(parents=True)
        (self.upload_dir / "photo.jpg").write_bytes(b"old contents")
        session = self.manager.create("photo.jpg", 3)

        self.manager.append(session.session_id, 0, b"new")

        self.assertEqual((self.upload_dir / "photo.jpg").read_bytes(), b"new")

    def test_write_failure_leaves_offset_unchanged(self):
        session = self.manager.create("photo.jpg", 10)
        session.temp_path.unlink()

        with self.assertRaises(InternalError):
            self.manager.append(session.session_id, 0, b"12345")
        self.assertEqual(self.manager.status(session.session_id), (0, 10))

    def test_declared_size_limit(self):
        manager = UploadSessionManager(self.upload_dir, max_upload_size=5)
        with self.assertRaises(InvalidRequestError):
            manager.create("big.bin", 6)
        self.assertEqual(manager.create("ok.bin", 5).size, 5)

    def test_concurrent_appends_on_one_session_are_serialized(self):
        session = self.manager.create("race.bin", 10)
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                self.manager.append(session.session_id, 0, b"x" * 5)
                outcome = "ok"
            except UploadConflictError:
                outcome = "conflict"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("conflict"), 7)
        self.assertEqual(self.manager.status(session.session_id), (5, 10))
        self.assertEqual(session.temp_path.stat().st_size, 5)

    def test_independent_sessions_do_not_interfere(self):
        first = self.manager.create("a.txt", 6)
        second = self.manager.create("b.txt", 6)

        self.manager.append(first.session_id, 0, b"aaa")
        self.manager.append(second.session_id, 0, b"bbbbbb")
        self.manager.append(first.session_id, 3, b"AAA")

        self.assertEqual((self.upload_dir / "a.txt").read_bytes(), b"aaaAAA")
        self.assertEqual((self.upload_dir / "b.txt").read_bytes(), b"bbbbbb")

    def test_expire_idle_removes_stale_sessions_only(self):
        stale = self.manager.create("stale.bin", 10)
        self.clock.now += 500
        fresh = self.manager.create("fresh.bin", 10)
        self.clock.now += 200

        removed = self.manager.expire_idle(600)

        self.assertEqual(removed, 1)
        self.assertFalse(stale.temp_path.exists())
        with self.assertRaises(NotFoundError):
            self.manager.status(stale.session_id)
        self.assertEqual(self.manager.status(fresh.session_id), (0, 10))

    def test_append_refreshes_idle_timer(self):
        session = self.manager.create("slow.bin", 10)
        self.clock.now += 500
        self.manager.append(session.session_id, 0, b"12")
        self.clock.now += 500

        self.assertEqual(self.manager.expire_idle(600), 0)
        self.assertEqual(self.manager.status(session.session_id), (2, 10))

    def test_remove_orphaned_temp_files_keeps_live_sessions(self):
        live = self.manager.create("live.bin", 10)
        orphan = self.upload_dir / f"{TEMP_PREFIX}deadbeef.part"
        orphan.write_bytes(b"leftover")
        old = time.time() - 7200
        os.utime(orphan, (old, old))
        os.utime(live.temp_path, (old, old))
        self.clock.now = time.time()

        removed = self.manager.remove_orphaned_temp_files(3600)

        self.assertEqual(removed, 1)
        self.assertFalse(orphan.exists())
        self.assertTrue(live.temp_path.exists())


class UploadValidationTests(unittest.TestCase):
    def test_filename_is_reduced_to_basename(self):
        self.assertEqual(sanitize_upload_filename("../../evil.txt", "x"), "evil.txt")
        self.assertEqual(sanitize_upload_filename("C:\\Users\\me\\pic.jpg", "x"), "pic.jpg")
        self.assertEqual(sanitize_upload_filename("bad\nname.txt", "x"), "badname.txt")
        self.assertEqual(sanitize_upload_filename("照片.jpg", "x"), "照片.jpg")

    def test_missing_filename_uses_fallback(self):
        self.assertEqual(sanitize_upload_filename(None, "upload_1"), "upload_1")
        self.assertEqual(sanitize_upload_filename("  ", "upload_1"), "upload_1")

    def test_unusable_filenames_are_rejected(self):
        for name in ("..", "dir/..", "x" * 300):
            with self.assertRaises(InvalidRequestError):
                sanitize_upload_filename(name, "fallback")
        with self.assertRaises(InvalidRequestError):
            sanitize_upload_filename(42, "fallback")

    def test_declared_size_parsing(self):
        self.assertEqual(parse_declared_size(10), 10)
        self.assertEqual(parse_declared_size("10"), 10)
        self.assertEqual(parse_declared_size(10.0), 10)
        for bad in (-1, 1.5, True, "ten", None):
            with self.assertRaises(InvalidRequestError):
                parse_declared_size(bad)


if __name__ == "__main__":
    unittest.main()

import logging
import signal
import threading
from typing import Any, Dict, Mapping, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from werkzeug.serving import BaseWSGIServer, make_server

from .app import ShuttleState, create_app

logger = logging.getLogger("fileshuttle.server")

EXPIRE_JOB_ID = "expire_idle_uploads"


class FileShuttleServer:
    """Owns one application instance, its WSGI server and its scheduler.

    Each request is served on its own thread. ``start`` and ``stop`` may be
    called repeatedly; the host process decides when.
    """

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        self.app = create_app(config)
        self.config: Dict[str, Any] = self.app.config["FILESHUTTLE"]
        self.scheduler: Optional[BackgroundScheduler] = None
        self._server: Optional[BaseWSGIServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ShuttleState:
        return self.app.extensions["fileshuttle"]

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server is not None else None

    @property
    def url(self) -> Optional[str]:
        if self._server is None:
            return None
        host = self.config["host"]
        if host in ("0.0.0.0", "::", ""):
            host = "127.0.0.1"
        return f"http://{host}:{self.port}"

    def start(self) -> None:
        with self._lock:
            if self._server is not None:
                return
            server = make_server(self.config["host"], self.config["port"], self.app, threaded=True)
            thread = threading.Thread(
                target=server.serve_forever, name="fileshuttle-http", daemon=True
            )
            thread.start()
            self._server = server
            self._thread = thread
            self._start_scheduler()
        logger.info(
            "server_started host=%s port=%d root=%s",
            self.config["host"],
            server.server_port,
            self.state.shared_root.root,
        )

    def stop(self) -> None:
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
            scheduler, self.scheduler = self.scheduler, None
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        logger.info("server_stopped port=%d", server.server_port)

    def cleanup_uploads(self) -> int:
        """Expire idle upload sessions and orphaned temp files."""

        ttl_seconds = self.config["upload_session_ttl_minutes"] * 60
        if ttl_seconds <= 0:
            return 0
        uploads = self.state.uploads
        removed = uploads.expire_idle(ttl_seconds)
        removed += uploads.remove_orphaned_temp_files(ttl_seconds)
        if removed:
            logger.info("upload_cleanup removed=%d", removed)
        return removed

    def _start_scheduler(self) -> None:
        if self.config["upload_session_ttl_minutes"] <= 0:
            return
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            func=self.cleanup_uploads,
            trigger="interval",
            minutes=max(1, self.config["cleanup_interval_minutes"]),
            id=EXPIRE_JOB_ID,
            name="Expire idle upload sessions",
            replace_existing=True,
        )
        scheduler.start()
        self.scheduler = scheduler


def main(config: Optional[Mapping[str, Any]] = None) -> None:
    server = FileShuttleServer(config)
    stopped = threading.Event()

    def _handle_signal(signum, frame):  # pragma: no cover - signal hook
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    server.start()
    logger.info("serving url=%s", server.url)
    try:
        stopped.wait()
    finally:
        server.stop()


if __name__ == "__main__":
    main()

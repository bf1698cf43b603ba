import logging
import os
import re
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from flask import Blueprint, Flask, Response, current_app, g, has_request_context, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from .config import BYTES_PER_MB, load_config, resolve_under_root
from .downloads import build_download_response
from .errors import FileShuttleError, InvalidRequestError
from .media import KIND_IMAGE, KIND_VIDEO, build_kind_map, group_by_age, guess_mimetype, scan_media, summarize
from .previews import PreviewCache
from .storage import SharedRoot, list_directory, mtime_millis
from .uploads import TUS_VERSION, UploadSessionManager

VERSION = "2.0.0"

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
PREVIEW_CACHE_CONTROL = "max-age=604800"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(level=numeric_level, format=LOG_FORMAT)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PATCH, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Range, Upload-Offset, Upload-Length, Tus-Resumable",
    "Access-Control-Expose-Headers": (
        "Content-Range, Content-Length, Content-Disposition, Accept-Ranges, X-File-Size, "
        "Upload-Offset, Upload-Length, Tus-Resumable, X-Upload-Complete, Location, X-Request-ID"
    ),
}

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


_base_lifecycle_logger = logging.getLogger("fileshuttle.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def configure_file_logging(logs_dir: Path) -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "fileshuttle.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


class ShuttleState:
    """Per-application services shared by all request threads."""

    def __init__(self, config: Mapping[str, Any]) -> None:
        self.config = dict(config)
        self.shared_root = SharedRoot(config["root"])
        self.scan_dirs = list(config["scan_dirs"])
        self.kind_map = build_kind_map(config["image_extensions"], config["video_extensions"])
        upload_dir = resolve_under_root(config, "upload_dir") or self.shared_root.root
        self.uploads = UploadSessionManager(
            upload_dir, max_upload_size=config["max_upload_size_mb"] * BYTES_PER_MB
        )
        self.previews = PreviewCache(
            self.shared_root,
            capacity=config["preview_cache_entries"],
            max_bytes=config["preview_max_bytes"],
        )


def get_state() -> ShuttleState:
    return current_app.extensions["fileshuttle"]


def _required_path() -> str:
    path = request.args.get("path")
    if not path:
        raise InvalidRequestError("Missing path")
    return path


def _parse_upload_offset(raw_value: Optional[str]) -> int:
    if raw_value is None or not raw_value.strip().isdigit():
        raise InvalidRequestError("Upload-Offset header must be a non-negative integer")
    return int(raw_value.strip())


api = Blueprint("api", __name__, url_prefix="/api")


@api.route("/status")
def status():
    state = get_state()
    summary = summarize(scan_media(state.shared_root, state.scan_dirs, state.kind_map))
    return jsonify(
        {
            "ready": True,
            "scanning": False,
            "images": summary["images"],
            "videos": summary["videos"],
            "totalSize": summary["totalSize"],
            "uploadSessions": state.uploads.active_count(),
            "previewCacheEntries": len(state.previews),
            "version": VERSION,
        }
    )


@api.route("/grouped")
def grouped():
    state = get_state()
    media_type = request.args.get("type", KIND_IMAGE)
    if media_type not in (KIND_IMAGE, KIND_VIDEO):
        raise InvalidRequestError("type must be 'image' or 'video'")
    entries = scan_media(state.shared_root, state.scan_dirs, state.kind_map, kinds=[media_type])
    return jsonify(group_by_age(entries))


@api.route("/files")
def files():
    path = request.args.get("path") or "/"
    items = list_directory(get_state().shared_root, path)
    return jsonify({"files": items, "path": path})


@api.route("/file-info")
def file_info():
    shared_root = get_state().shared_root
    path, st = shared_root.stat_file(_required_path())
    return jsonify(
        {
            "name": path.name,
            "path": shared_root.relative_path(path),
            "size": st.st_size,
            "time": mtime_millis(st),
            "mime": guess_mimetype(path.name),
        }
    )


@api.route("/thumb")
def thumb():
    blob = get_state().previews.get(_required_path())
    response = Response(blob.data, mimetype=blob.mimetype)
    response.headers["Cache-Control"] = PREVIEW_CACHE_CONTROL
    return response


@api.route("/download")
def download():
    path = _required_path()
    range_header = request.headers.get("Range")
    response = build_download_response(get_state().shared_root, path, range_header)
    lifecycle_logger.info(
        "file_download path=%s status=%d range=%s",
        sanitize_log_value(path),
        response.status_code,
        sanitize_log_value(range_header or "-"),
    )
    return response


@api.route("/upload/create", methods=["POST"])
def upload_create():
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object body")
    if "size" not in payload:
        raise InvalidRequestError("Missing size")

    session = get_state().uploads.create(payload.get("filename"), payload["size"])
    location = f"/api/upload/{session.session_id}"
    response = jsonify(
        {
            "id": session.session_id,
            "filename": session.filename,
            "offset": session.offset,
            "size": session.size,
            "location": location,
            "completed": session.completed,
        }
    )
    response.status_code = 201
    response.headers["Location"] = location
    response.headers["Upload-Offset"] = str(session.offset)
    response.headers["Upload-Length"] = str(session.size)
    response.headers["Tus-Resumable"] = TUS_VERSION
    if session.completed:
        response.headers["X-Upload-Complete"] = "true"
    return response


@api.route("/upload/<session_id>", methods=["PATCH"])
def upload_append(session_id: str):
    offset = _parse_upload_offset(request.headers.get("Upload-Offset"))
    result = get_state().uploads.append(session_id, offset, request.stream)

    if result.completed:
        response = Response(status=200, mimetype="text/plain")
        response.headers["X-Upload-Complete"] = "true"
    else:
        response = Response(status=204, mimetype="text/plain")
    response.headers["Upload-Offset"] = str(result.offset)
    response.headers["Tus-Resumable"] = TUS_VERSION
    return response


@api.route("/upload/<session_id>", methods=["HEAD"])
def upload_status(session_id: str):
    offset, size = get_state().uploads.status(session_id)
    response = Response(status=200, mimetype="text/plain")
    response.headers["Upload-Offset"] = str(offset)
    response.headers["Upload-Length"] = str(size)
    response.headers["Tus-Resumable"] = TUS_VERSION
    response.headers["Cache-Control"] = "no-store"
    return response


def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


def answer_preflight() -> Optional[Response]:
    if request.method == "OPTIONS":
        return Response(status=204)
    return None


def add_cors_headers(response: Response) -> Response:
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value
    return response


def add_request_id_header(response: Response) -> Response:
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


def log_request_completion(response: Response) -> Response:
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


def handle_shuttle_error(error: FileShuttleError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s status=%d error=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(error.message),
        )
    else:
        lifecycle_logger.warning(
            "request_rejected path=%s status=%d error=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(error.message),
        )
    return jsonify({"error": error.message}), error.status_code


def handle_file_too_large(error):
    return jsonify({"error": "Chunk too large"}), 413


def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


def handle_http_error(error: HTTPException):
    response = jsonify({"error": error.name, "message": error.description})
    response.status_code = error.code or 500
    for key, value in error.get_headers():
        if key.lower() != "content-type":
            response.headers[key] = value
    return response


def handle_unexpected_error(error: Exception):
    lifecycle_logger.exception(
        "request_unhandled_error method=%s path=%s",
        request.method,
        sanitize_log_value(request.path),
    )
    return Response(f"Internal server error: {error}", status=500, mimetype="text/plain")


def create_app(config: Optional[Mapping[str, Any]] = None) -> Flask:
    """Build the file transfer application.

    *config* holds host-supplied settings; they are layered over the defaults,
    the optional JSON config file and ``FILESHUTTLE_*`` environment variables.
    """

    settings: Dict[str, Any] = load_config(overrides=config)
    app = Flask(__name__)
    app.json.sort_keys = False
    app.config["FILESHUTTLE"] = settings
    app.config["MAX_CONTENT_LENGTH"] = settings["max_chunk_size_mb"] * BYTES_PER_MB
    app.config["RATELIMIT_ENABLED"] = settings["rate_limit_enabled"]

    logs_dir = resolve_under_root(settings, "logs_dir")
    if logs_dir is not None:
        configure_file_logging(logs_dir)

    state = ShuttleState(settings)
    try:
        state.uploads.ensure_upload_dir()
    except OSError as error:
        lifecycle_logger.warning(
            "upload_dir_unavailable path=%s error=%s", state.uploads.upload_dir, error
        )
    app.extensions["fileshuttle"] = state

    # Preflight answers before the rate limiter's own before_request hook.
    app.before_request(add_request_id)
    app.before_request(answer_preflight)
    Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[settings["rate_limit"]],
        storage_uri=settings["rate_limit_storage"],
    )

    app.after_request(log_request_completion)
    app.after_request(add_request_id_header)
    app.after_request(add_cors_headers)

    app.register_error_handler(FileShuttleError, handle_shuttle_error)
    app.register_error_handler(413, handle_file_too_large)
    app.register_error_handler(429, handle_rate_limit)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)

    app.register_blueprint(api)
    lifecycle_logger.info(
        "app_created root=%s scan_dirs=%d upload_dir=%s",
        state.shared_root.root,
        len(state.scan_dirs),
        state.uploads.upload_dir,
    )
    return app

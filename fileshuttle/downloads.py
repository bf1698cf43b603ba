import unicodedata
from typing import BinaryIO, Dict, Iterator, Optional, Tuple
from urllib.parse import quote

from flask import Response
from werkzeug.exceptions import RequestedRangeNotSatisfiable
from werkzeug.http import parse_range_header

from .errors import NotFoundError
from .media import guess_mimetype
from .storage import CHUNK_SIZE_BYTES, SharedRoot


def content_disposition_options(filename: str) -> Dict[str, str]:
    """Options for an ``attachment`` Content-Disposition header.

    ASCII names are sent as-is; anything else gets an ASCII fallback plus a
    percent-encoded UTF-8 ``filename*``, as werkzeug's
    ``send_file(as_attachment=True)`` writes it.
    """

    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        simple = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
        quoted = quote(filename, safe="!#$&+^`|~")
        return {"filename": simple.strip() or "download", "filename*": f"UTF-8''{quoted}"}
    return {"filename": filename}


def parse_byte_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Return the inclusive ``(start, end)`` slice requested by *header*.

    ``None`` means the full body: no header, a malformed one, or more than one
    range. A well-formed single range that cannot be satisfied raises
    :class:`RequestedRangeNotSatisfiable`.
    """

    if not header:
        return None
    parsed = parse_range_header(header)
    if parsed is None or parsed.units != "bytes" or len(parsed.ranges) != 1:
        return None
    bounds = parsed.range_for_length(size)
    if bounds is None:
        raise RequestedRangeNotSatisfiable(length=size)
    start, stop = bounds
    return start, stop - 1


def iter_file_range(
    handle: BinaryIO, start: int, length: int, chunk_size: int = CHUNK_SIZE_BYTES
) -> Iterator[bytes]:
    """Yield at most *length* bytes from *handle* starting at *start*."""

    try:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


def build_download_response(
    shared_root: SharedRoot, relative: Optional[str], range_header: Optional[str]
) -> Response:
    path, st = shared_root.stat_file(relative)
    size = st.st_size
    byte_range = parse_byte_range(range_header, size)

    try:
        handle = path.open("rb")
    except OSError as error:
        raise NotFoundError("File not found") from error

    if byte_range is None:
        status, start, length = 200, 0, size
    else:
        start, end = byte_range
        status, length = 206, end - start + 1

    response = Response(
        iter_file_range(handle, start, length),
        status=status,
        mimetype=guess_mimetype(path.name),
        direct_passthrough=True,
    )
    response.call_on_close(handle.close)
    response.content_length = length
    response.headers["Accept-Ranges"] = "bytes"
    response.headers["X-File-Size"] = str(size)
    if status == 206:
        response.headers["Content-Range"] = f"bytes {start}-{start + length - 1}/{size}"
    response.headers.set(
        "Content-Disposition", "attachment", **content_disposition_options(path.name)
    )
    return response

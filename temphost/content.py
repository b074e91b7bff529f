import json
import logging
import mimetypes
from typing import BinaryIO, Iterator, Optional, Tuple
from urllib.parse import quote

from flask import Response
from werkzeug.http import http_date, parse_range_header

from .errors import ContentStreamError, InternalError, NotFoundError
from .registry import FileRecord
from .settings import RANGE_CHUNK_SIZE, isoformat_utc

logger = logging.getLogger("temphost.content")

STREAM_BLOCK_SIZE = 64 * 1024
CACHE_CONTROL = "public, max-age=3600"
RANGE_MEDIA_PREFIXES = ("audio/", "video/")


class RangeNotSatisfiable(Exception):
    def __init__(self, size: int) -> None:
        super().__init__(f"Range not satisfiable for {size} bytes")
        self.size = size


def resolve_content_type(record: FileRecord) -> str:
    guessed, _ = mimetypes.guess_type(record.original_name)
    return guessed or record.mime_type or "application/octet-stream"


def resolve_byte_range(
    range_header: Optional[str],
    size: int,
    chunk_size: int = RANGE_CHUNK_SIZE,
) -> Optional[Tuple[int, int]]:
    """Translate a Range header into an inclusive ``(start, end)`` span.

    Only the first range of a multi-range header is honoured and a span never
    exceeds *chunk_size* bytes. Returns None for a missing or malformed
    header; raises :class:`RangeNotSatisfiable` when the start lies beyond
    the content.
    """
    if not range_header:
        return None
    parsed = parse_range_header(range_header)
    if parsed is None or parsed.units != "bytes" or not parsed.ranges:
        return None

    start, stop = parsed.ranges[0]
    if start < 0:
        # Suffix form: the last -start bytes.
        start = max(0, size + start)
        stop = None
    if start >= size:
        raise RangeNotSatisfiable(size)

    end = min(start + chunk_size - 1, size - 1)
    if stop is not None:
        end = min(end, stop - 1)
    return start, end


def content_disposition(filename: str) -> str:
    fallback = filename.encode("ascii", "ignore").decode("ascii").replace('"', "").replace("\\", "")
    return f"inline; filename=\"{fallback or 'download'}\"; filename*=UTF-8''{quote(filename)}"


class ContentServer:
    def __init__(self, blob_store, chunk_size: int = RANGE_CHUNK_SIZE) -> None:
        self._blobs = blob_store
        self._chunk_size = chunk_size

    def _open(self, record: FileRecord) -> BinaryIO:
        try:
            return self._blobs.open(record.storage_path)
        except FileNotFoundError as error:
            raise NotFoundError("File has been deleted") from error
        except OSError as error:
            logger.error("content_open_failed file_id=%s error=%s", record.file_id, error)
            raise InternalError("Error while accessing file") from error

    def stream(self, record: FileRecord, range_header: Optional[str] = None) -> Response:
        content_type = resolve_content_type(record)
        size = record.size_bytes
        headers = {
            "Content-Disposition": content_disposition(record.original_name),
            "Cache-Control": CACHE_CONTROL,
            "Last-Modified": http_date(record.uploaded_at),
            "X-File-ID": record.file_id,
            "X-File-Name": quote(record.original_name),
            "X-Expires-At": isoformat_utc(record.expires_at),
        }

        span = None
        if range_header and content_type.startswith(RANGE_MEDIA_PREFIXES):
            headers["Accept-Ranges"] = "bytes"
            try:
                span = resolve_byte_range(range_header, size, self._chunk_size)
            except RangeNotSatisfiable:
                headers["Content-Range"] = f"bytes */{size}"
                body = json.dumps({"error": "Requested range not satisfiable", "size": size})
                return Response(body, status=416, headers=headers, content_type="application/json")

        handle = self._open(record)
        if span is None:
            status, start, length = 200, 0, size
        else:
            start, end = span
            status, length = 206, end - start + 1
            headers["Content-Range"] = f"bytes {start}-{end}/{size}"
            logger.debug("content_range file_id=%s start=%d end=%d", record.file_id, start, end)
        headers["Content-Length"] = str(length)

        response = Response(
            self._iter_blob(handle, record, start, length),
            status=status,
            headers=headers,
            content_type=content_type,
            direct_passthrough=True,
        )
        # HEAD requests and early disconnects never start the body generator.
        response.call_on_close(handle.close)
        return response

    @staticmethod
    def _iter_blob(handle: BinaryIO, record: FileRecord, start: int, length: int) -> Iterator[bytes]:
        remaining = length
        try:
            if start:
                handle.seek(start)
            while remaining > 0:
                chunk = handle.read(min(STREAM_BLOCK_SIZE, remaining))
                if not chunk:
                    raise ContentStreamError("Stored file is shorter than expected")
                remaining -= len(chunk)
                yield chunk
        except (GeneratorExit, BrokenPipeError, ConnectionResetError):
            # The client went away; that is a normal end of the transfer.
            logger.debug(
                "content_stream_closed_by_client file_id=%s sent=%d",
                record.file_id,
                length - remaining,
            )
            return
        except ContentStreamError:
            logger.error("content_stream_truncated file_id=%s", record.file_id)
            raise
        except OSError as error:
            logger.error("content_stream_failed file_id=%s error=%s", record.file_id, error)
            raise ContentStreamError("Error while reading file") from error
        finally:
            handle.close()

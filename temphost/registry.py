import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from .errors import ExtensionMismatchError, InternalError, InvalidInputError, NotFoundError
from .scheduling import ScheduledTask
from .settings import (
    FALLBACK_EXTENSION,
    MAX_UPLOAD_BYTES,
    RETENTION_SECONDS,
    format_file_size,
    format_time_remaining,
    isoformat_utc,
)
from .shortid import ShortIdGenerator

logger = logging.getLogger("temphost.registry")

REQUIRED_FIELDS = ("original_name", "mime_type", "size_bytes", "storage_path", "uploaded_by_ip")
MAX_ID_ATTEMPTS = 50


def extension_of(filename: Optional[str]) -> str:
    """Return the lower-cased final suffix of *filename* without the dot."""

    _, ext = os.path.splitext(filename or "")
    ext = ext[1:].lower()
    return ext if ext.isascii() and ext.isalnum() else FALLBACK_EXTENSION


@dataclass
class FileRecord:
    file_id: str
    original_name: str
    extension: str
    mime_type: str
    size_bytes: int
    storage_path: str
    uploaded_at: float
    expires_at: float
    uploaded_by_ip: str
    source_url: Optional[str] = None
    deletion_handle: Optional[ScheduledTask] = field(default=None, repr=False, compare=False)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    def to_dict(self, now: float) -> Dict[str, Any]:
        remaining = self.remaining_seconds(now)
        return {
            "fileId": self.file_id,
            "originalName": self.original_name,
            "size": self.size_bytes,
            "formattedSize": format_file_size(self.size_bytes),
            "mimeType": self.mime_type,
            "extension": self.extension,
            "uploadedAt": isoformat_utc(self.uploaded_at),
            "expiresAt": isoformat_utc(self.expires_at),
            "uploadedBy": self.uploaded_by_ip,
            "sourceUrl": self.source_url,
            "timeRemaining": int(remaining * 1000),
            "timeRemainingFormatted": format_time_remaining(remaining),
        }


class FileRegistry:
    """In-memory index of stored uploads and their scheduled deletion.

    Every record owns exactly one blob. Records whose blob has vanished are
    dropped on the next lookup, and every removal path tolerates the record
    already being gone.
    """

    def __init__(
        self,
        blob_store,
        scheduler,
        id_generator: Optional[ShortIdGenerator] = None,
        retention_seconds: float = RETENTION_SECONDS,
        max_size_bytes: int = MAX_UPLOAD_BYTES,
    ) -> None:
        self._blobs = blob_store
        self._scheduler = scheduler
        self._ids = id_generator or ShortIdGenerator()
        self._retention_seconds = retention_seconds
        self._max_size_bytes = max_size_bytes
        self._records: Dict[str, FileRecord] = {}
        self._lock = threading.RLock()

    @property
    def id_generator(self) -> ShortIdGenerator:
        return self._ids

    def new_id(self) -> str:
        """Return a fresh id that no live record is using."""

        for _ in range(MAX_ID_ATTEMPTS):
            candidate = self._ids.generate()
            with self._lock:
                if candidate not in self._records:
                    return candidate
        raise InternalError("Could not allocate a file identifier")

    def register(self, meta: Mapping[str, Any]) -> FileRecord:
        missing = [
            key for key in REQUIRED_FIELDS
            if meta.get(key) is None or (isinstance(meta.get(key), str) and not meta.get(key).strip())
        ]
        if missing:
            raise InvalidInputError("Missing required file metadata", missing=missing)

        size_bytes = meta["size_bytes"]
        if isinstance(size_bytes, bool) or not isinstance(size_bytes, int) or size_bytes < 0:
            raise InvalidInputError("size_bytes must be a non-negative integer")
        if size_bytes > self._max_size_bytes:
            raise InvalidInputError(
                "File exceeds the maximum allowed size",
                maxSize=format_file_size(self._max_size_bytes),
            )

        file_id = meta.get("file_id") or self.new_id()
        uploaded_at = self._scheduler.now()
        expires_at = uploaded_at + self._retention_seconds
        record = FileRecord(
            file_id=file_id,
            original_name=meta["original_name"],
            extension=meta.get("extension") or extension_of(meta["original_name"]),
            mime_type=meta["mime_type"],
            size_bytes=size_bytes,
            storage_path=meta["storage_path"],
            uploaded_at=uploaded_at,
            expires_at=expires_at,
            uploaded_by_ip=meta["uploaded_by_ip"],
            source_url=meta.get("source_url"),
        )

        with self._lock:
            if file_id in self._records:
                raise InvalidInputError("File identifier already in use", fileId=file_id)
            record.deletion_handle = self._scheduler.schedule_at(
                expires_at, self._expire, file_id, record.storage_path
            )
            self._records[file_id] = record

        logger.info(
            "file_registered file_id=%s size=%d mime_type=%s expires_at=%s",
            file_id,
            size_bytes,
            record.mime_type,
            isoformat_utc(expires_at),
        )
        return record

    def lookup(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            record = self._records.get(file_id)
        if record is None:
            return None

        if record.is_expired(self._scheduler.now()):
            self._remove(record, "expired_on_access")
            return None

        # Blob check runs outside the lock; stale records heal themselves here.
        if not self._blobs.exists(record.storage_path):
            self._discard(record)
            return None
        return record

    def resolve_for_access(self, file_id: str, requested_extension: str) -> FileRecord:
        with self._lock:
            known = file_id in self._records
        # Expired or orphaned records are evicted before the extension is compared.
        record = self.lookup(file_id)
        if record is None:
            raise NotFoundError("File has been deleted" if known else "File not found")
        if requested_extension != record.extension and requested_extension != FALLBACK_EXTENSION:
            raise ExtensionMismatchError(file_id, record.extension)
        return record

    def delete(self, file_id: str) -> bool:
        with self._lock:
            record = self._records.get(file_id)
        if record is None:
            return False
        return self._remove(record, "deleted")

    def _expire(self, file_id: str, storage_path: str) -> None:
        with self._lock:
            record = self._records.get(file_id)
        # Never let a stale timer remove a newer record that reused the id.
        if record is None or record.storage_path != storage_path:
            return
        self._remove(record, "expired")

    def _detach(self, record: FileRecord) -> bool:
        with self._lock:
            if self._records.get(record.file_id) is not record:
                return False
            del self._records[record.file_id]
        if record.deletion_handle is not None:
            record.deletion_handle.cancel()
        return True

    def _remove(self, record: FileRecord, reason: str) -> bool:
        if not self._detach(record):
            return False
        try:
            self._blobs.delete(record.storage_path)
        except OSError as error:
            # The orphan sweep retries blobs that outlive their record.
            logger.warning(
                "file_blob_delete_failed file_id=%s error=%s", record.file_id, error
            )
        logger.info("file_removed file_id=%s reason=%s", record.file_id, reason)
        return True

    def _discard(self, record: FileRecord) -> None:
        if self._detach(record):
            logger.warning(
                "file_record_orphaned file_id=%s reason=blob_missing", record.file_id
            )

    def sweep_expired(self, now: Optional[float] = None) -> int:
        now = self._scheduler.now() if now is None else now
        with self._lock:
            expired = [record for record in self._records.values() if record.is_expired(now)]
        removed = sum(1 for record in expired if self._remove(record, "swept"))
        if removed:
            logger.info("cleanup_completed removed=%d", removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            records: List[FileRecord] = list(self._records.values())
        files_by_type: Dict[str, int] = {}
        for record in records:
            top_level = (record.mime_type or "application").split("/", 1)[0]
            files_by_type[top_level] = files_by_type.get(top_level, 0) + 1
        return {
            "total_files": len(records),
            "total_bytes": sum(record.size_bytes for record in records),
            "files_by_type": files_by_type,
        }

    def storage_paths(self) -> Set[str]:
        with self._lock:
            return {record.storage_path for record in self._records.values()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

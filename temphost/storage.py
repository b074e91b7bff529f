import contextlib
import ipaddress
import logging
import shutil
import socket
import time
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterable, Iterator, Optional, Set, Tuple, Union
from urllib.parse import urlparse

import requests

from .errors import (
    InternalError,
    InvalidURLError,
    TooLargeError,
    UpstreamFetchFailedError,
)
from .logs import sanitize_log_value
from .settings import MAX_UPLOAD_BYTES, URL_FETCH_TIMEOUT_SECONDS, format_file_size

logger = logging.getLogger("temphost.storage")

COPY_CHUNK_SIZE_BYTES = 64 * 1024
DOWNLOAD_CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEMP_SUFFIX = ".tmp"
SHARD_PREFIX_LENGTH = 2
TEMP_FILE_MAX_AGE_SECONDS = 3600
ORPHAN_MIN_AGE_SECONDS = 600

# Blocked regardless of what the resolver says.
DANGEROUS_HOSTNAMES = [
    "localhost",
    "127.0.0.1",
    "::1",
    "0.0.0.0",
    "metadata.google.internal",  # GCP metadata service
    "169.254.169.254",  # AWS/Azure metadata service IP
    "169.254.170.2",
    "instance-data",  # OpenStack metadata
]


def _is_safe_url(url: str) -> Tuple[bool, Optional[str]]:
    """Validate *url* against SSRF targets.

    Blocks non-HTTP(S) schemes, private, loopback, link-local, reserved and
    multicast addresses, and well-known cloud metadata hostnames.

    Returns:
        tuple[bool, Optional[str]]: (is_safe, error_message)
    """
    try:
        parsed = urlparse(url)
    except ValueError as error:
        return False, f"Invalid URL: {error}"

    if parsed.scheme not in ("http", "https"):
        return False, f"Unsupported URL scheme: {parsed.scheme or 'none'}. Only http and https are allowed."

    hostname = parsed.hostname
    if not hostname:
        return False, "Invalid URL: missing hostname"

    hostname_lower = hostname.lower()
    for dangerous in DANGEROUS_HOSTNAMES:
        if hostname_lower == dangerous or hostname_lower.endswith("." + dangerous):
            return False, f"Access to hostname '{hostname}' is not allowed"

    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror as error:
        return False, f"Could not resolve hostname '{hostname}': {error}"
    except OSError as error:
        return False, f"Network error resolving hostname '{hostname}': {error}"

    for _family, _, _, _, sockaddr in addr_info:
        try:
            ip = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast:
            return False, f"Access to non-public address is not allowed: {ip}"

    return True, None


class BlobStore:
    """Write-once file blobs in a sharded directory tree.

    A storage path is ``<prefix>/<file_id>.<extension>`` relative to the
    uploads directory, where the prefix is the first two id characters.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def ensure_directories(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def storage_path_for(self, file_id: str, extension: str) -> str:
        return f"{file_id[:SHARD_PREFIX_LENGTH]}/{file_id}.{extension}"

    def resolve(self, storage_path: str) -> Path:
        """Map a storage path to disk, refusing anything outside the root."""

        candidate = PurePosixPath(storage_path)
        if candidate.is_absolute() or any(part in {"..", ""} for part in candidate.parts):
            raise ValueError(f"Invalid storage path: {storage_path!r}")
        resolved = (self.root / candidate).resolve()
        if self.root not in resolved.parents:
            raise ValueError(f"Storage path escapes root: {storage_path!r}")
        return resolved

    def _prepare_destination(self, file_id: str, extension: str) -> Tuple[str, Path, Path]:
        storage_path = self.storage_path_for(file_id, extension)
        dest_path = self.resolve(storage_path)
        if dest_path.exists():
            raise InternalError("Storage slot already in use")
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        return storage_path, dest_path, dest_path.with_name(dest_path.name + TEMP_SUFFIX)

    def put(
        self,
        file_id: str,
        extension: str,
        source: Union[bytes, BinaryIO],
        max_bytes: int = MAX_UPLOAD_BYTES,
    ) -> Tuple[str, int]:
        """Persist *source* and return ``(storage_path, size)``.

        Raises:
            TooLargeError: If more than *max_bytes* arrive; nothing is kept.
        """
        storage_path, dest_path, temp_path = self._prepare_destination(file_id, extension)
        if isinstance(source, (bytes, bytearray)):
            chunks: Iterable[bytes] = [bytes(source)]
        else:
            chunks = iter(lambda: source.read(COPY_CHUNK_SIZE_BYTES), b"")

        try:
            total_size = self._write_chunks(temp_path, chunks, max_bytes)
            temp_path.rename(dest_path)
        finally:
            # Clean up the temporary file if it still exists (write failed)
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)
            if not dest_path.exists():
                self._drop_shard(dest_path.parent)

        logger.info("blob_stored path=%s size=%d", storage_path, total_size)
        return storage_path, total_size

    @staticmethod
    def _write_chunks(
        temp_path: Path,
        chunks: Iterable[bytes],
        max_bytes: int,
        deadline: Optional[float] = None,
    ) -> int:
        total_size = 0
        with temp_path.open("wb") as handle:
            for chunk in chunks:
                if not chunk:
                    continue
                total_size += len(chunk)
                if total_size > max_bytes:
                    raise TooLargeError(
                        "File too large",
                        maxSize=format_file_size(max_bytes),
                    )
                if deadline is not None and time.monotonic() > deadline:
                    raise UpstreamFetchFailedError("Download timed out")
                handle.write(chunk)
        return total_size

    def put_from_url(
        self,
        file_id: str,
        extension: str,
        url: str,
        max_bytes: int = MAX_UPLOAD_BYTES,
        timeout: int = URL_FETCH_TIMEOUT_SECONDS,
    ) -> Tuple[str, int, Optional[str]]:
        """Stream *url* into the store.

        Returns:
            Tuple of (storage_path, size, content_type)

        Raises:
            InvalidURLError: If the URL is malformed or targets a non-public host
            TooLargeError: If the declared or actual size exceeds *max_bytes*
            UpstreamFetchFailedError: If the download fails or times out
        """
        is_safe, error_msg = _is_safe_url(url)
        if not is_safe:
            logger.warning(
                "url_blocked_ssrf url=%s reason=%s", sanitize_log_value(url), error_msg
            )
            raise InvalidURLError("URL is not allowed", detail=error_msg)

        storage_path, dest_path, temp_path = self._prepare_destination(file_id, extension)
        response = None
        try:
            response = requests.get(url, timeout=timeout, stream=True)
            response.raise_for_status()

            content_length = response.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > max_bytes:
                raise TooLargeError(
                    "File from URL too large",
                    maxSize=format_file_size(max_bytes),
                    actualSize=format_file_size(int(content_length)),
                )

            deadline = time.monotonic() + timeout
            total_size = self._write_chunks(
                temp_path,
                response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE_BYTES),
                max_bytes,
                deadline,
            )
            temp_path.rename(dest_path)
        except requests.HTTPError as error:
            status = error.response.status_code if error.response is not None else None
            logger.warning(
                "url_download_rejected url=%s status=%s", sanitize_log_value(url), status
            )
            raise UpstreamFetchFailedError(
                "Remote server rejected the request", upstreamStatus=status
            ) from error
        except requests.RequestException as error:
            logger.warning(
                "url_download_failed url=%s error=%s",
                sanitize_log_value(url),
                sanitize_log_value(str(error)),
            )
            raise UpstreamFetchFailedError("Could not download from URL") from error
        finally:
            if response is not None:
                response.close()
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)
            if not dest_path.exists():
                self._drop_shard(dest_path.parent)

        content_type = response.headers.get("content-type")
        logger.info(
            "blob_fetched path=%s size=%d url=%s",
            storage_path,
            total_size,
            sanitize_log_value(url),
        )
        return storage_path, total_size, content_type

    def open(self, storage_path: str) -> BinaryIO:
        """Open a blob for reading; raises FileNotFoundError when absent."""

        try:
            path = self.resolve(storage_path)
        except ValueError as error:
            raise FileNotFoundError(storage_path) from error
        return path.open("rb")

    def exists(self, storage_path: str) -> bool:
        try:
            return self.resolve(storage_path).is_file()
        except ValueError:
            return False

    def size_of(self, storage_path: str) -> int:
        try:
            return self.resolve(storage_path).stat().st_size
        except ValueError as error:
            raise FileNotFoundError(storage_path) from error

    def delete(self, storage_path: str) -> bool:
        """Remove a blob; returns False when it was already gone."""

        try:
            path = self.resolve(storage_path)
        except ValueError:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._drop_shard(path.parent)
        logger.info("blob_deleted path=%s", storage_path)
        return True

    def _drop_shard(self, shard: Path) -> None:
        """Remove a shard directory once its last blob is gone."""

        if shard.parent != self.root:
            return
        with contextlib.suppress(OSError):
            shard.rmdir()

    def iter_storage_paths(self) -> Iterator[str]:
        if not self.root.exists():
            return
        for shard_dir in sorted(self.root.iterdir()):
            if not shard_dir.is_dir():
                continue
            for entry in sorted(shard_dir.iterdir()):
                if entry.is_file() and not entry.name.endswith(TEMP_SUFFIX):
                    yield f"{shard_dir.name}/{entry.name}"

    def cleanup_orphans(
        self,
        live_paths: Set[str],
        now: Optional[float] = None,
        min_age_seconds: float = ORPHAN_MIN_AGE_SECONDS,
    ) -> int:
        """Remove blobs no registry record refers to.

        Blobs younger than *min_age_seconds* are kept: an upload writes its
        blob just before the record is registered.
        """
        now = time.time() if now is None else now
        removed = 0
        for storage_path in list(self.iter_storage_paths()):
            if storage_path in live_paths:
                continue
            path = self.resolve(storage_path)
            try:
                if now - path.stat().st_mtime < min_age_seconds:
                    continue
                path.unlink()
                removed += 1
                logger.info("orphan_blob_removed path=%s", storage_path)
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.warning("orphan_cleanup_failed path=%s error=%s", storage_path, error)
                continue
            self._drop_shard(path.parent)
        if removed:
            logger.info("orphan_cleanup_completed removed=%d", removed)
        return removed

    def cleanup_temp_files(self, now: Optional[float] = None) -> int:
        """Remove lingering temporary files from interrupted writes."""

        if not self.root.exists():
            return 0
        cutoff = (time.time() if now is None else now) - TEMP_FILE_MAX_AGE_SECONDS
        removed = 0
        for temp_file in self.root.rglob(f"*{TEMP_SUFFIX}"):
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file.name)
            except OSError as error:
                logger.warning("temp_cleanup_failed path=%s error=%s", temp_file.name, error)
        return removed

    def disk_free_bytes(self) -> int:
        self.ensure_directories()
        return shutil.disk_usage(self.root).free

import atexit
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlparse

from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    jsonify,
    request,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .abuse import AbuseGuard, BanRecord
from .content import ContentServer
from .errors import (
    BannedError,
    InternalError,
    InvalidInputError,
    InvalidURLError,
    NotFoundError,
    RateLimitedError,
    TempHostError,
    TooLargeError,
)
from .logs import configure_logging, lifecycle_logger, sanitize_log_value
from .reaper import FILE_SWEEP_JOB_ID, PeriodicReaper
from .registry import FileRecord, FileRegistry, extension_of
from .scheduling import Scheduler
from .settings import (
    BAN_DURATION_HOURS,
    MAX_UPLOAD_BYTES,
    MULTIPART_OVERHEAD_BYTES,
    RETENTION_HOURS,
    UPLOAD_RATE_LIMIT_REQUESTS,
    UPLOAD_RATE_LIMIT_WINDOW_SECONDS,
    VELOCITY_LIMIT_REQUESTS,
    format_file_size,
    format_time_remaining,
    isoformat_utc,
    load_settings,
)
from .shortid import ShortIdGenerator, is_valid
from .storage import BlobStore
from .validation import (
    ALLOWED_TYPE_SUMMARY,
    ensure_allowed_mime_type,
    filename_from_url,
    resolve_mime_type,
    sanitize_filename,
)

SERVICE_VERSION = "1.0.0"
EXTENSION_KEY = "temphost"

AVAILABLE_ENDPOINTS = [
    "GET /",
    "POST /upload",
    "POST /upload-url",
    "GET /ac/:fileId.:ext",
    "GET /info/:fileId",
    "DELETE /delete/:fileId",
    "GET /stats",
    "GET /banlist",
    "POST /unban/:ip",
    "GET /health",
]

limiter = Limiter(key_func=get_remote_address, default_limits=[])
bp = Blueprint("temphost", __name__)


class Services:
    """Core components shared by the request handlers of one app."""

    def __init__(self, settings: Dict[str, Any], scheduler) -> None:
        self.settings = settings
        self.scheduler = scheduler
        self.blobs = BlobStore(settings["uploads_dir"])
        self.ids = ShortIdGenerator()
        self.guard = AbuseGuard(scheduler)
        self.registry = FileRegistry(self.blobs, scheduler, self.ids)
        self.content = ContentServer(self.blobs)
        # Holds back throttled uploads.
        self.sleep = time.sleep
        self.reaper = PeriodicReaper(
            self.registry,
            self.guard,
            self.blobs,
            scheduler,
            interval_minutes=settings["reaper_interval_minutes"],
        )


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def download_rate_limit_string() -> str:
    value = get_services().settings["download_rate_limit_per_minute"]
    return f"{value} per minute"


def _external_url(endpoint: str, **values: Any) -> str:
    public_url = get_services().settings.get("public_url")
    if public_url:
        return public_url + url_for(endpoint, **values)
    return url_for(endpoint, _external=True, **values)


def _rejection_from_ban(ban: BanRecord, now: float) -> Dict[str, str]:
    return {
        "reason": ban.reason,
        "banned_until": isoformat_utc(ban.expires_at),
        "expires_in": format_time_remaining(ban.remaining_seconds(now)),
    }


def guarded(upload: bool = False, track_velocity: bool = True):
    """Reject banned clients and count the request against abuse limits."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            services = get_services()
            guard = services.guard
            client_ip = get_remote_address()

            ban = guard.check_banned(client_ip)
            if ban is not None:
                lifecycle_logger.info(
                    "request_blocked_banned ip=%s path=%s",
                    client_ip,
                    sanitize_log_value(request.path),
                )
                details = _rejection_from_ban(ban, services.scheduler.now())
                raise BannedError(
                    "Your IP is banned",
                    details["reason"],
                    details["banned_until"],
                    details["expires_in"],
                )

            violation = None
            if track_velocity:
                violation = guard.record_and_check_velocity(client_ip)
            if violation is None and upload:
                violation = guard.enforce_rate_limit(
                    client_ip,
                    UPLOAD_RATE_LIMIT_WINDOW_SECONDS,
                    UPLOAD_RATE_LIMIT_REQUESTS,
                    scope="upload",
                )
            if violation is not None:
                details = _rejection_from_ban(violation, services.scheduler.now())
                raise RateLimitedError(
                    "Too many requests",
                    detail=f"Your IP has been banned for {BAN_DURATION_HOURS} hours because of spam requests",
                    reason=details["reason"],
                    bannedUntil=details["banned_until"],
                    limits={
                        "uploads": f"{UPLOAD_RATE_LIMIT_REQUESTS} requests per {UPLOAD_RATE_LIMIT_WINDOW_SECONDS} seconds",
                        "general": f"{VELOCITY_LIMIT_REQUESTS} requests per minute",
                    },
                )
            if upload:
                delay = guard.slowdown_delay(client_ip)
                if delay > 0:
                    lifecycle_logger.info(
                        "upload_slowed ip=%s delay_ms=%d", client_ip, int(delay * 1000)
                    )
                    services.sleep(delay)
            return view(*args, **kwargs)

        return wrapper

    return decorator


def _upload_payload(record: FileRecord, message: str) -> Dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "data": {
            "fileId": record.file_id,
            "originalName": record.original_name,
            "size": record.size_bytes,
            "formattedSize": format_file_size(record.size_bytes),
            "mimeType": record.mime_type,
            "accessUrl": _external_url(
                "temphost.access", name=f"{record.file_id}.{record.extension}"
            ),
            "expiresAt": isoformat_utc(record.expires_at),
            "expiresIn": f"{RETENTION_HOURS} hours",
            "deleteUrl": _external_url("temphost.delete_file", file_id=record.file_id),
            "infoUrl": _external_url("temphost.info", file_id=record.file_id),
        },
    }


def _register_or_rollback(services: Services, meta: Dict[str, Any]) -> FileRecord:
    try:
        return services.registry.register(meta)
    except Exception:
        services.blobs.delete(meta["storage_path"])
        raise


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        stream = getattr(file_storage, "stream", None)
        if stream is not None and hasattr(stream, "close"):
            try:
                stream.close()
            except OSError as error:
                lifecycle_logger.warning(
                    "stream_close_failed filename=%s error=%s",
                    sanitize_log_value(file_storage.filename or ""),
                    sanitize_log_value(str(error)),
                )


@bp.route("/upload", methods=["POST"])
@guarded(upload=True)
def upload():
    file_storage = request.files.get("file")
    if not isinstance(file_storage, FileStorage) or not file_storage.filename:
        lifecycle_logger.warning("upload_failed reason=no_file_part")
        raise InvalidInputError(
            "No file uploaded",
            allowedTypes=ALLOWED_TYPE_SUMMARY,
            maxSize=format_file_size(MAX_UPLOAD_BYTES),
        )

    with upload_stream_handler(file_storage):
        filename = sanitize_filename(file_storage.filename)
        mime_type = ensure_allowed_mime_type(
            resolve_mime_type(filename, file_storage.mimetype)
        )

        services = get_services()
        file_id = services.registry.new_id()
        extension = extension_of(filename)
        storage_path, size = services.blobs.put(
            file_id, extension, file_storage.stream, MAX_UPLOAD_BYTES
        )

    record = _register_or_rollback(
        services,
        {
            "file_id": file_id,
            "original_name": filename,
            "extension": extension,
            "mime_type": mime_type,
            "size_bytes": size,
            "storage_path": storage_path,
            "uploaded_by_ip": get_remote_address(),
        },
    )
    lifecycle_logger.info(
        "file_uploaded file_id=%s filename=%s size=%d",
        record.file_id,
        sanitize_log_value(filename),
        size,
    )
    return jsonify(_upload_payload(record, "File uploaded successfully")), 200


@bp.route("/upload-url", methods=["POST"])
@guarded(upload=True)
def upload_url():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    url = data.get("url")
    if not isinstance(url, str) or not url.strip():
        raise InvalidInputError(
            "URL is required",
            example={
                "url": "https://example.com/file.jpg",
                "filename": "optional-custom-filename.jpg",
            },
        )
    url = url.strip()
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise InvalidURLError("Invalid URL")

    requested_name = data.get("filename")
    filename = filename_from_url(url, requested_name if isinstance(requested_name, str) else None)

    services = get_services()
    file_id = services.registry.new_id()
    extension = extension_of(filename)
    lifecycle_logger.info(
        "downloading_from_url file_id=%s url=%s", file_id, sanitize_log_value(url)
    )
    storage_path, size, content_type = services.blobs.put_from_url(
        file_id, extension, url, MAX_UPLOAD_BYTES
    )
    try:
        mime_type = ensure_allowed_mime_type(resolve_mime_type(filename, content_type))
    except TempHostError:
        services.blobs.delete(storage_path)
        raise

    record = _register_or_rollback(
        services,
        {
            "file_id": file_id,
            "original_name": filename,
            "extension": extension,
            "mime_type": mime_type,
            "size_bytes": size,
            "storage_path": storage_path,
            "uploaded_by_ip": get_remote_address(),
            "source_url": url,
        },
    )
    lifecycle_logger.info(
        "file_uploaded_from_url file_id=%s size=%d url=%s",
        record.file_id,
        size,
        sanitize_log_value(url),
    )
    return jsonify(_upload_payload(record, "File uploaded from URL successfully")), 200


@bp.route("/ac/<name>")
@limiter.limit(lambda: download_rate_limit_string())
@guarded(track_velocity=False)
def access(name: str):
    file_id, _, extension = name.partition(".")
    if not is_valid(file_id):
        raise NotFoundError("File not found")

    services = get_services()
    record = services.registry.resolve_for_access(file_id, extension)
    try:
        response = services.content.stream(record, request.headers.get("Range"))
    except NotFoundError:
        # The blob vanished after resolution; lookup drops the stale record.
        services.registry.lookup(file_id)
        raise
    lifecycle_logger.info("file_accessed file_id=%s status=%d", file_id, response.status_code)
    return response


@bp.route("/info/<file_id>")
@guarded()
def info(file_id: str):
    services = get_services()
    record = services.registry.lookup(file_id)
    if record is None:
        raise NotFoundError("File not found")
    payload = record.to_dict(services.scheduler.now())
    payload["accessUrl"] = _external_url(
        "temphost.access", name=f"{record.file_id}.{record.extension}"
    )
    return jsonify(payload)


@bp.route("/delete/<file_id>", methods=["DELETE"])
@guarded()
def delete_file(file_id: str):
    services = get_services()
    if not services.registry.delete(file_id):
        lifecycle_logger.warning("file_delete_missing file_id=%s", sanitize_log_value(file_id))
        raise NotFoundError("File not found")
    lifecycle_logger.info("file_deleted file_id=%s", file_id)
    return jsonify(
        {
            "success": True,
            "message": "File deleted successfully",
            "fileId": file_id,
            "deletedAt": isoformat_utc(services.scheduler.now()),
        }
    )


@bp.route("/stats")
def stats():
    services = get_services()
    summary = services.registry.stats()
    return jsonify(
        {
            "totalFiles": summary["total_files"],
            "totalSize": summary["total_bytes"],
            "totalSizeFormatted": format_file_size(summary["total_bytes"]),
            "filesByType": summary["files_by_type"],
            "maxFileSize": format_file_size(MAX_UPLOAD_BYTES),
            "fileLifetime": f"{RETENTION_HOURS} hours",
            "bannedIPs": services.guard.ban_count(),
            "trackedIds": services.ids.stats()["total_used"],
        }
    )


@bp.route("/banlist")
def banlist():
    services = get_services()
    now = services.scheduler.now()
    bans = [record.to_dict(now) for record in services.guard.list_bans(now)]
    return jsonify({"totalBanned": len(bans), "bans": bans})


@bp.route("/unban/<ip>", methods=["POST"])
def unban(ip: str):
    if not get_services().guard.unban(ip):
        raise NotFoundError("IP not found in ban list", ip=ip)
    return jsonify({"success": True, "message": f"IP {ip} has been unbanned"})


@bp.route("/")
def index():
    return jsonify(
        {
            "service": "Temporary File Hosting",
            "version": SERVICE_VERSION,
            "endpoints": {
                "uploadFile": "POST /upload",
                "uploadFromUrl": "POST /upload-url",
                "accessFile": "GET /ac/:fileId.:ext",
                "fileInfo": "GET /info/:fileId",
                "deleteFile": "DELETE /delete/:fileId",
                "statistics": "GET /stats",
            },
            "limits": {
                "maxFileSize": format_file_size(MAX_UPLOAD_BYTES),
                "rateLimit": f"{UPLOAD_RATE_LIMIT_REQUESTS} requests per {UPLOAD_RATE_LIMIT_WINDOW_SECONDS} seconds",
                "fileLifetime": f"{RETENTION_HOURS} hours",
                "banDuration": f"{BAN_DURATION_HOURS} hours for spam",
            },
        }
    )


@bp.route("/health")
def health_check():
    services = get_services()
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        disk_free_gb = services.blobs.disk_free_bytes() / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        if disk_free_gb < 1:
            checks["disk_space_status"] = "critical"
            healthy = False
        else:
            checks["disk_space_status"] = "ok"
    except OSError as error:
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        services.blobs.ensure_directories()
        check_file = services.blobs.root / f".health_check_{uuid.uuid4().hex}"
        check_file.write_text("health_check", encoding="utf-8")
        check_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["scheduler_running"] = bool(services.scheduler.running)
    sweep_task = next(
        (task for task in services.reaper.tasks if task.job_id == FILE_SWEEP_JOB_ID), None
    )
    next_run = sweep_task.next_run_time() if sweep_task is not None else None
    checks["reaper"] = "scheduled" if next_run else "not_scheduled"
    if next_run:
        checks["reaper_next_run"] = next_run.isoformat()
    checks["files"] = len(services.registry)
    checks["banned_ips"] = services.guard.ban_count()

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
            "version": SERVICE_VERSION,
        }
    ), (200 if healthy else 503)


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.after_request
    def log_request_completion(response: Response):
        lifecycle_logger.info(
            "request_completed method=%s path=%s status=%d ip=%s",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
            get_remote_address(),
        )
        return response

    @app.after_request
    def add_security_headers(response: Response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(TempHostError)
    def handle_service_error(error: TempHostError):
        if error.status_code >= 500:
            lifecycle_logger.error(
                "request_failed path=%s code=%s", sanitize_log_value(request.path), error.error_code
            )
        else:
            lifecycle_logger.info(
                "request_rejected path=%s code=%s status=%d",
                sanitize_log_value(request.path),
                error.error_code,
                error.status_code,
            )
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(413)
    def handle_file_too_large(error):
        payload = TooLargeError(
            "File too large", maxSize=format_file_size(MAX_UPLOAD_BYTES)
        ).to_payload()
        return jsonify(payload), 413

    @app.errorhandler(429)
    def handle_rate_limit(error):
        description = getattr(error, "description", "Too many requests")
        payload = RateLimitedError("Rate limit exceeded", detail=str(description)).to_payload()
        return jsonify(payload), 429

    @app.errorhandler(404)
    def handle_unknown_endpoint(error):
        return jsonify(
            {
                "error": "Endpoint not found",
                "code": "not_found",
                "availableEndpoints": AVAILABLE_ENDPOINTS,
            }
        ), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify(
            {
                "error": "Method not allowed",
                "code": "method_not_allowed",
                "availableEndpoints": AVAILABLE_ENDPOINTS,
            }
        ), 405

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        if isinstance(error, HTTPException):
            return error
        lifecycle_logger.exception(
            "unhandled_error path=%s", sanitize_log_value(request.path)
        )
        return jsonify(InternalError().to_payload()), 500


def create_app(settings: Optional[Dict[str, Any]] = None, scheduler=None) -> Flask:
    """Create the Flask application and its core services.

    Args:
        settings: Overrides applied on top of the environment settings.
        scheduler: Clock/scheduler to use; an APScheduler-backed one by default.
    """
    resolved = load_settings(settings)
    configure_logging(
        resolved["log_level"], resolved["logs_dir"] if resolved["log_to_file"] else None
    )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES + MULTIPART_OVERHEAD_BYTES
    app.config["RATELIMIT_STORAGE_URI"] = resolved["rate_limit_storage"]
    app.config["RATELIMIT_HEADERS_ENABLED"] = True
    app.json.sort_keys = False

    if resolved["trusted_proxies"] > 0:
        hops = resolved["trusted_proxies"]
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops, x_host=hops)

    services = Services(resolved, scheduler or Scheduler())
    services.blobs.ensure_directories()
    app.extensions[EXTENSION_KEY] = services

    limiter.init_app(app)
    app.register_blueprint(bp)
    _register_request_hooks(app)
    _register_error_handlers(app)

    if resolved["enable_scheduler"]:
        services.reaper.start()
        services.scheduler.start()
        atexit.register(lambda: services.scheduler.shutdown(wait=False))
        # Enforce retention before serving traffic.
        services.reaper.run_once()

    return app


if __name__ == "__main__":
    application = create_app()
    application.run(
        host="0.0.0.0",
        port=application.extensions[EXTENSION_KEY].settings["port"],
        debug=False,
    )

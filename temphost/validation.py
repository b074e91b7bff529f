import mimetypes
import os
from typing import Optional
from urllib.parse import unquote, urlparse

from werkzeug.utils import secure_filename

from .errors import InvalidInputError, UnsupportedMediaTypeError

MAX_FILENAME_LENGTH = 255
DEFAULT_URL_FILENAME = "downloaded-file"

ALLOWED_MIME_TYPES = frozenset(
    [
        # Images
        "image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml", "image/bmp",
        # Documents
        "application/pdf", "text/plain", "text/markdown", "text/html",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-powerpoint",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        # Archives
        "application/zip", "application/x-rar-compressed", "application/x-7z-compressed",
        "application/x-tar", "application/gzip",
        # Media
        "video/mp4", "video/webm", "video/ogg", "video/quicktime",
        "audio/mpeg", "audio/wav", "audio/ogg", "audio/webm", "audio/aac",
        # Code
        "application/javascript", "text/javascript", "application/json",
        "text/css", "text/x-python", "text/x-java-source", "text/x-php",
        # Other
        "application/octet-stream",
    ]
)

ALLOWED_TYPE_SUMMARY = [
    "Images (JPEG, PNG, GIF, WebP, SVG, BMP)",
    "Documents (PDF, TXT, DOC, DOCX, XLS, XLSX, PPT, PPTX)",
    "Archives (ZIP, RAR, 7Z, TAR, GZ)",
    "Media (MP4, WebM, MP3, WAV, AAC)",
    "Code (JS, JSON, CSS, Python, Java, PHP)",
]


def normalize_mime_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.split(";", 1)[0].strip().lower()
    return normalized or None


def resolve_mime_type(filename: str, declared: Optional[str]) -> str:
    """Prefer the declared type; fall back to a guess from *filename*."""

    normalized = normalize_mime_type(declared)
    if normalized:
        return normalized
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def ensure_allowed_mime_type(mime_type: str) -> str:
    if mime_type not in ALLOWED_MIME_TYPES:
        raise UnsupportedMediaTypeError(mime_type, allowedTypes=ALLOWED_TYPE_SUMMARY)
    return mime_type


def sanitize_filename(raw_name: Optional[str]) -> str:
    """Return a filesystem-safe display name or raise InvalidInputError."""

    filename = secure_filename(raw_name or "")
    if not filename:
        raise InvalidInputError("Filename could not be sanitized", filename=raw_name or "")
    if len(filename) > MAX_FILENAME_LENGTH:
        stem, ext = os.path.splitext(filename)
        filename = stem[: MAX_FILENAME_LENGTH - len(ext)] + ext
    return filename


def filename_from_url(url: str, requested: Optional[str] = None) -> str:
    if requested:
        return sanitize_filename(requested)
    candidate = os.path.basename(unquote(urlparse(url).path))
    return secure_filename(candidate) or DEFAULT_URL_FILENAME

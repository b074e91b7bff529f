from typing import Any, Dict, Optional


class TempHostError(Exception):
    """Base error carrying an HTTP status and a client-facing payload."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.error_code}
        payload.update(self.context)
        return payload


class InvalidInputError(TempHostError):
    status_code = 400
    error_code = "invalid_input"


class InvalidURLError(InvalidInputError):
    error_code = "invalid_url"


class UnsupportedMediaTypeError(InvalidInputError):
    status_code = 415
    error_code = "unsupported_media_type"

    def __init__(self, mime_type: Optional[str], **context: Any) -> None:
        super().__init__(
            f"File type not allowed: {mime_type or 'unknown'}",
            mimeType=mime_type,
            **context,
        )
        self.mime_type = mime_type


class TooLargeError(TempHostError):
    status_code = 413
    error_code = "too_large"


class NotFoundError(TempHostError):
    status_code = 404
    error_code = "not_found"


class ExtensionMismatchError(NotFoundError):
    """The id exists but the URL suffix does not match the stored file."""

    error_code = "extension_mismatch"

    def __init__(self, file_id: str, correct_extension: str) -> None:
        super().__init__(
            "File extension does not match",
            correctExtension=correct_extension,
            correctUrl=f"/ac/{file_id}.{correct_extension}",
        )
        self.file_id = file_id
        self.correct_extension = correct_extension


class RateLimitedError(TempHostError):
    status_code = 429
    error_code = "rate_limited"


class BannedError(TempHostError):
    status_code = 429
    error_code = "banned"

    def __init__(self, message: str, reason: str, banned_until: str, expires_in: str) -> None:
        super().__init__(
            message,
            reason=reason,
            bannedUntil=banned_until,
            expiresIn=expires_in,
        )
        self.reason = reason


class UpstreamFetchFailedError(TempHostError):
    status_code = 502
    error_code = "upstream_fetch_failed"


class InternalError(TempHostError):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)


class ContentStreamError(InternalError):
    """Raised when stored content becomes unreadable mid-transfer."""

# pixelgate/core/errors.py
"""
Typed gateway errors.

Each error maps to a specific HTTP status code.  Every layer (middleware,
sources, operations) raises a ``GatewayError`` subtype; the middleware chain
is the only place that turns them into responses.
"""
from __future__ import annotations

import json


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code: int = 400
    default_message: str = "Bad request"

    def __init__(self, message: str | None = None, status: int | None = None):
        text = self.default_message if message is None else message
        object.__setattr__(self, "_message", text.replace("\n", ""))
        object.__setattr__(self, "_status", self.status_code if status is None else status)
        super().__init__(self._message)

    def __setattr__(self, name, value):
        # Dunder attributes (notes, chaining) stay writable for the interpreter.
        if name.startswith("__"):
            object.__setattr__(self, name, value)
            return
        raise AttributeError(f"{type(self).__name__} is immutable")

    @property
    def message(self) -> str:
        return self._message

    @property
    def status(self) -> int:
        return self._status

    @property
    def http_status(self) -> int:
        """Status to put on the wire; out-of-range codes become 503."""
        if 400 <= self._status <= 511:
            return self._status
        return 503

    def to_dict(self) -> dict:
        if not self._message:
            return {"status": self._status}
        return {"message": self._message, "status": self._status}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self._message!r}, status={self._status})"


class InvalidInputError(GatewayError):
    """Malformed path, URL or parameters (400)."""

    status_code = 400
    default_message = "Invalid request parameters"


class MissingSourceError(GatewayError):
    """No image source claimed the request (400)."""

    status_code = 400
    default_message = "Cannot process the image due to missing or invalid params"


class UnauthorizedError(GatewayError):
    """API key failure (401)."""

    status_code = 401
    default_message = "Invalid or missing API key"


class ForbiddenError(GatewayError):
    """Origin not allow-listed or signature mismatch (403)."""

    status_code = 403
    default_message = "Forbidden"


class NotFoundError(GatewayError):
    status_code = 404
    default_message = "Not found"


class MethodNotAllowedError(GatewayError):
    status_code = 405
    default_message = (
        "HTTP method not allowed. Try with a POST or GET method "
        "(-enable-url-source flag must be defined)"
    )


class UnsupportedMediaError(GatewayError):
    status_code = 406
    default_message = "Unsupported media type"


class PayloadTooLargeError(GatewayError):
    status_code = 413
    default_message = "Payload too large"


class ResolutionTooLargeError(GatewayError):
    status_code = 422
    default_message = "Image resolution is too big"


class RateLimitedError(GatewayError):
    status_code = 429
    default_message = "Rate limit exceeded"


class UpstreamFetchError(GatewayError):
    """Remote source network or status error.

    Carries the upstream status when the origin answered; network failures
    keep the default 400.
    """

    status_code = 400
    default_message = "error fetching remote http image"


class TransformError(GatewayError):
    """Image engine failure, including unexpected crashes inside the engine."""

    status_code = 400
    default_message = "Error processing image"


class NotImplementedEndpointError(GatewayError):
    status_code = 501
    default_message = "Not implemented endpoint"


class InternalError(GatewayError):
    status_code = 500
    default_message = "Internal server error"


# ---------------------------------------------------------------------------
# Canonical errors (fresh instance per raise)
# ---------------------------------------------------------------------------

def get_method_not_allowed() -> MethodNotAllowedError:
    return MethodNotAllowedError(
        "GET method not allowed. Make sure remote URL source is enabled "
        "by using the flag: -enable-url-source"
    )


def empty_body() -> InvalidInputError:
    return InvalidInputError("Empty or unreadable image")


def missing_param_file() -> InvalidInputError:
    return InvalidInputError("Missing required param: file")


def invalid_file_path() -> InvalidInputError:
    return InvalidInputError("Invalid file path")


def invalid_image_url() -> InvalidInputError:
    return InvalidInputError("Invalid image URL")


def output_format_error() -> InvalidInputError:
    return InvalidInputError("Unsupported output image format")


def invalid_url_signature() -> InvalidInputError:
    return InvalidInputError("Invalid URL signature")


def url_signature_mismatch() -> ForbiddenError:
    return ForbiddenError("URL signature mismatch")

# pixelgate/transport/replier.py
"""
Error replies.

Every terminal ``GatewayError`` ends here.  In placeholder mode the caller
gets a fallback image (resized per ``width``/``height``) with the original
error JSON in an ``Error`` header; otherwise the JSON error itself.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from pixelgate.config import Settings
from pixelgate.core.errors import GatewayError
from pixelgate.infra.imaging import (
    MODE_FORCE,
    ImageError,
    PillowEngine,
    TransformSpec,
    build_placeholder,
    image_type,
)
from pixelgate.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)


def load_placeholder(settings: Settings) -> Optional[bytes]:
    """Placeholder bytes for the configured mode, or None when disabled."""
    if not settings.placeholder_enabled:
        return None
    if settings.placeholder:
        return Path(settings.placeholder).read_bytes()
    return build_placeholder()


def _parse_dimension(value: str | None, name: str) -> int:
    if not value:
        return 0
    try:
        parsed = int(value)
    except ValueError:
        raise ValueError(f"invalid {name} value: {value}")
    if parsed < 0:
        raise ValueError(f"invalid {name} value: {value}")
    return parsed


class Replier:
    def __init__(
        self,
        engine: PillowEngine,
        placeholder: Optional[bytes] = None,
        placeholder_status: int = 0,
    ):
        self.engine = engine
        self.placeholder = placeholder
        self.placeholder_status = placeholder_status

    @classmethod
    def from_settings(cls, settings: Settings, engine: PillowEngine) -> "Replier":
        return cls(
            engine=engine,
            placeholder=load_placeholder(settings),
            placeholder_status=settings.placeholder_status,
        )

    @property
    def placeholder_enabled(self) -> bool:
        return self.placeholder is not None

    async def reply(self, request: Request, err: GatewayError) -> Response:
        request_id = getattr(request.state, "request_id", None)
        log_ctx = LogContext(logger, request_id=request_id, path=request.url.path)
        level = logging.ERROR if err.http_status >= 500 else logging.WARNING
        log_ctx.log(
            level,
            f"Request rejected: {err.http_status} {err.message}",
            extra={"status_code": err.http_status},
        )

        if self.placeholder is None:
            return JSONResponse(err.to_dict(), status_code=err.http_status)
        return await self._reply_with_placeholder(request, err)

    async def _reply_with_placeholder(self, request: Request, err: GatewayError) -> Response:
        query = request.query_params
        try:
            width = _parse_dimension(query.get("width"), "width")
            height = _parse_dimension(query.get("height"), "height")
        except ValueError as e:
            return JSONResponse({"error": str(e), "status": 400}, status_code=400)

        spec = TransformSpec(
            width=width,
            height=height,
            mode=MODE_FORCE,
            enlarge=True,
            type=image_type(query.get("type")) or "",
        )

        loop = asyncio.get_running_loop()
        try:
            image = await loop.run_in_executor(None, self.engine.transform, self.placeholder, spec)
        except ImageError as e:
            return JSONResponse({"error": str(e), "status": 400}, status_code=400)

        return Response(
            content=image.body,
            status_code=self.placeholder_status or err.http_status,
            media_type=image.mime,
            headers={"Error": err.to_json()},
        )

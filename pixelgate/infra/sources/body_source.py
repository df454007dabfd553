# pixelgate/infra/sources/body_source.py
from __future__ import annotations

from typing import Optional

from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request

from pixelgate.core.errors import InvalidInputError, PayloadTooLargeError, missing_param_file
from pixelgate.infra.logging_config import get_logger
from pixelgate.infra.sources.base import SourceConfig

logger = get_logger(__name__)

FORM_FIELD = "file"
MAX_BODY_SIZE = 64 * 1024 * 1024  # 64 MiB for raw and multipart uploads
READ_CHUNK_SIZE = 64 * 1024


def _too_large() -> PayloadTooLargeError:
    return PayloadTooLargeError(f"Request body exceeds maximum allowed {MAX_BODY_SIZE} bytes")


class RequestBodySource:
    """Image source for POST/PUT: a multipart ``file`` field or the raw body."""

    name = "body"

    def __init__(self, max_size: int = MAX_BODY_SIZE):
        self.max_size = max_size

    def matches(self, request: Request) -> bool:
        return request.method in ("POST", "PUT")

    async def fetch(self, request: Request) -> bytes:
        content_type = request.headers.get("content-type", "")
        if content_type.lower().startswith("multipart/"):
            return await self._read_multipart(request)
        return await self._read_raw(request)

    async def _read_multipart(self, request: Request) -> bytes:
        try:
            form = await request.form(max_files=4, max_fields=64)
        except (MultiPartException, HTTPException) as e:
            detail = getattr(e, "message", None) or getattr(e, "detail", "")
            raise InvalidInputError(f"Invalid multipart body: {detail}")

        try:
            upload = form.get(FORM_FIELD)
            if not isinstance(upload, UploadFile):
                raise missing_param_file()

            chunks = []
            total = 0
            while True:
                chunk = await upload.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if total > self.max_size:
                    raise _too_large()
                chunks.append(chunk)
            return b"".join(chunks)
        finally:
            await form.close()

    async def _read_raw(self, request: Request) -> bytes:
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_size:
            raise _too_large()

        chunks = []
        total = 0
        async for chunk in request.stream():
            total += len(chunk)
            if total > self.max_size:
                raise _too_large()
            chunks.append(chunk)
        return b"".join(chunks)


def body_source_factory(config: SourceConfig) -> Optional[RequestBodySource]:
    return RequestBodySource()

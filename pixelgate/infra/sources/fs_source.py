# pixelgate/infra/sources/fs_source.py
from __future__ import annotations

import asyncio
import os
from typing import Optional
from urllib.parse import unquote

from starlette.requests import Request

from pixelgate.core.errors import invalid_file_path
from pixelgate.infra.logging_config import get_logger
from pixelgate.infra.sources.base import SourceConfig

logger = get_logger(__name__)

FILE_QUERY_KEY = "file"


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class FilesystemSource:
    """
    Image source for ``GET ?file=`` below a mount directory.

    Traversal (``..``, absolute paths, symlinks escaping the mount) and read
    failures all map to the same "Invalid file path" error.
    """

    name = "fs"

    def __init__(self, mount_path: str):
        self.mount = os.path.realpath(mount_path)

    def matches(self, request: Request) -> bool:
        return request.method == "GET" and bool(request.query_params.get(FILE_QUERY_KEY))

    def resolve_path(self, file_param: str) -> str:
        """Canonical path for ``file_param``; must be strictly inside the mount."""
        name = unquote(file_param)
        if not name or "\x00" in name:
            raise invalid_file_path()

        candidate = os.path.realpath(os.path.join(self.mount, name))
        try:
            common = os.path.commonpath([self.mount, candidate])
        except ValueError:
            raise invalid_file_path()

        if common != self.mount or candidate == self.mount:
            logger.warning("Rejected file path outside the mount directory")
            raise invalid_file_path()
        return candidate

    async def fetch(self, request: Request) -> bytes:
        path = self.resolve_path(request.query_params.get(FILE_QUERY_KEY, ""))

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _read_file, path)
        except OSError as e:
            logger.debug(f"File read failed: {type(e).__name__}")
            raise invalid_file_path()


def fs_source_factory(config: SourceConfig) -> Optional[FilesystemSource]:
    if not config.mount_path:
        return None
    return FilesystemSource(config.mount_path)

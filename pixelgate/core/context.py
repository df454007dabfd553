# pixelgate/core/context.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from starlette.requests import Request

from pixelgate.core.options import ImageOptions


@dataclass
class RequestContext:
    """
    Per-request state shared by the middleware chain and the controller.

    ``headers`` accumulates response headers set by any layer (rate limit
    counters, cache directives, ``Vary``); they are applied to whatever
    response ends the request, error replies included.
    """

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    headers: dict[str, str] = field(default_factory=dict)
    image: bytes | None = None
    mime: str = ""
    options: ImageOptions | None = None

    def add_vary(self, value: str) -> None:
        current = [v.strip() for v in self.headers.get("Vary", "").split(",") if v.strip()]
        if value not in current:
            current.append(value)
        self.headers["Vary"] = ", ".join(current)


def get_context(request: Request) -> RequestContext:
    """Return the request's context, creating it on first access."""
    ctx = getattr(request.state, "ctx", None)
    if ctx is None:
        request_id = getattr(request.state, "request_id", None)
        ctx = RequestContext(request_id=request_id) if request_id else RequestContext()
        request.state.ctx = ctx
    return ctx

"""Run the gateway: ``python -m pixelgate``."""
import uvicorn

from pixelgate.config import settings


def main() -> None:
    uvicorn.run(
        "pixelgate.transport.http_app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,  # RequestLoggingMiddleware writes access records
        server_header=False,  # The chain sets its own Server header
    )


if __name__ == "__main__":
    main()

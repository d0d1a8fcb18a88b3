from __future__ import annotations

import os
import socket

import structlog
import uvicorn

logger = structlog.get_logger()


def _port_is_free(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def _pick_port(*, host: str, preferred: int, tries: int) -> int:
    """First free port at or above ``preferred``; ``preferred`` if none is."""
    candidates = range(preferred, preferred + max(1, tries))
    return next((port for port in candidates if _port_is_free(host, port)), preferred)


def main() -> None:
    host = os.getenv("HOST", "127.0.0.1")
    preferred_port = int(os.getenv("PORT", "8002"))
    tries = int(os.getenv("PORT_TRIES", "20"))
    port = _pick_port(host=host, preferred=preferred_port, tries=tries)
    if port != preferred_port:
        logger.info("preferred port busy", preferred=preferred_port, port=port)

    uvicorn.run(
        "intake.main:app",
        host=host,
        port=port,
        reload=os.getenv("RELOAD", "0") not in {"0", "false", "False"},
        log_level=os.getenv("LOG_LEVEL", "info"),
    )


if __name__ == "__main__":
    main()

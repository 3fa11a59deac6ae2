from __future__ import annotations

import logging
import socket

import uvicorn

from devicemem.bootstrap.app_factory import create_app
from devicemem.config.settings import MemorySettings


def _is_port_open(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex((host, port)) == 0


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    settings = MemorySettings.from_env()
    _configure_logging(settings.log_level)
    if _is_port_open(settings.host, settings.port):
        raise RuntimeError(
            f"Port {settings.port} is already in use. Set DEVICEMEM_PORT or free it manually."
        )
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)

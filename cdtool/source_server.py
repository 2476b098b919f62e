"""Serve local disk images over plain HTTP for the download container.

Images are copied (or written) into a fresh temporary directory and only that
directory is served, so nothing else from the operator's filesystem is
exposed. The listening socket is bound before :meth:`SourceServer.open`
returns, which means a port conflict is reported before any job gets
submitted.
"""

import ipaddress
import logging
import os
import shutil
import socket
import tempfile
import threading
import time
from typing import Optional
from urllib.parse import quote

import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from cdtool.errors import SourceServerError

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT_SECONDS = 10.0


def _static_app(root_dir: str) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.mount("/", StaticFiles(directory=root_dir), name="images")
    return app


class SourceServer:
    """A static file server over one temporary directory.

    ``stage`` serves a single file at ``url``. The control plane instead keeps
    one server open and gives every job its own subdirectory via ``job_dir``.
    """

    def __init__(self, root_dir: str, listen_addr: str, sock: socket.socket):
        self.root_dir = root_dir
        self.listen_addr = listen_addr
        self.file_name: Optional[str] = None
        self._sock = sock
        self.port: int = sock.getsockname()[1]
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = False
        self._lock = threading.Lock()

    @classmethod
    def open(cls, listen_addr: str, port: int, prefix: str = "cdtool") -> "SourceServer":
        try:
            addr = ipaddress.ip_address(listen_addr)
        except ValueError as e:
            raise SourceServerError(f"invalid listen address {listen_addr!r}") from e

        try:
            root_dir = tempfile.mkdtemp(prefix=f"{prefix}-")
        except OSError as e:
            raise SourceServerError(f"failed to create temporary directory: {e}") from e

        family = socket.AF_INET6 if addr.version == 6 else socket.AF_INET
        try:
            sock = socket.create_server((str(addr), port), family=family)
        except OSError as e:
            shutil.rmtree(root_dir, ignore_errors=True)
            raise SourceServerError(f"failed to listen on {listen_addr}:{port}: {e}") from e
        return cls(root_dir, str(addr), sock)

    @classmethod
    def stage(cls, file_path: str, listen_addr: str, port: int, prefix: str = "cdtool") -> "SourceServer":
        if not os.path.isfile(file_path):
            raise SourceServerError(f"local image file {file_path} does not exist")
        server = cls.open(listen_addr, port, prefix)
        try:
            server.add_file(file_path)
        except SourceServerError:
            server.stop()
            raise
        server.file_name = os.path.basename(file_path)
        logger.info("staged %s in %s", file_path, server.root_dir)
        return server

    def add_file(self, file_path: str, subdir: Optional[str] = None) -> str:
        target_dir = self.job_dir(subdir) if subdir else self.root_dir
        file_name = os.path.basename(file_path)
        try:
            shutil.copy2(file_path, os.path.join(target_dir, file_name))
        except OSError as e:
            raise SourceServerError(f"failed to copy {file_path}: {e}") from e
        return self.url_for(f"{subdir}/{file_name}" if subdir else file_name)

    def job_dir(self, subdir: str) -> str:
        path = os.path.join(self.root_dir, os.path.basename(subdir))
        os.makedirs(path, exist_ok=True)
        return path

    def remove(self, subdir: str) -> None:
        shutil.rmtree(os.path.join(self.root_dir, os.path.basename(subdir)), ignore_errors=True)

    def url_for(self, path: str) -> str:
        host = self.listen_addr
        if ipaddress.ip_address(host).version == 6:
            host = f"[{host}]"
        return f"http://{host}:{self.port}/{quote(path)}"

    @property
    def url(self) -> str:
        if self.file_name is None:
            raise SourceServerError("no file staged on this server")
        return self.url_for(self.file_name)

    @property
    def running(self) -> bool:
        return not self._stopped and self._thread is not None and self._thread.is_alive()

    def start(self) -> "SourceServer":
        with self._lock:
            if self._stopped:
                raise SourceServerError("source server already stopped")
            if self._thread is not None:
                return self
            self._server = uvicorn.Server(
                uvicorn.Config(_static_app(self.root_dir), log_config=None, lifespan="off")
            )
            self._thread = threading.Thread(
                target=self._server.run,
                kwargs={"sockets": [self._sock]},
                name="cdtool-source-server",
                daemon=True,
            )
            self._thread.start()

        address = f"{self.listen_addr}:{self.port}"
        deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                self.stop()
                raise SourceServerError(f"source server on {address} failed to start")
            time.sleep(0.05)
        logger.info("serving %s on %s", self.root_dir, address)
        return self

    def stop(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        if self._thread is not None:
            self._server.should_exit = True
            self._thread.join()
        self._sock.close()
        shutil.rmtree(self.root_dir, ignore_errors=True)
        logger.info("source server stopped, removed %s", self.root_dir)

    def __enter__(self) -> "SourceServer":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

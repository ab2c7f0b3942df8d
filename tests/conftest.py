"""Shared fixtures for Hop tests."""

import asyncio
import os
import socket
from types import SimpleNamespace

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from hop.core.registry import ProcessProbe, Registry


def free_port() -> int:
    """Return a TCP port that is currently unbound on 127.0.0.1."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            return False
        return True


class FakeProbe(ProcessProbe):
    """Liveness driven by a set of pids; records termination requests."""

    def __init__(self, alive=None, terminate_error=None):
        self.alive = set(alive or ())
        self.terminated = []
        self.terminate_error = terminate_error

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def terminate(self, pid: int) -> None:
        self.terminated.append(pid)
        if self.terminate_error is not None:
            raise self.terminate_error
        self.alive.discard(pid)


@pytest.fixture
def probe():
    return FakeProbe(alive={os.getpid()})


@pytest.fixture
def registry(tmp_path, probe):
    return Registry(path=tmp_path / "run" / "registry.json", probe=probe)


@pytest_asyncio.fixture
async def upstream():
    """An upstream HTTP server that records every request it receives."""
    seen = []

    async def handler(request: web.Request) -> web.StreamResponse:
        body = await request.read()
        seen.append({
            "method": request.method,
            "path": request.raw_path,
            "headers": dict(request.headers),
            "body": body,
        })
        if request.path == "/boom":
            return web.Response(status=500, text="boom")
        if request.path == "/slow":
            await asyncio.sleep(1.0)
            return web.Response(text="ok")
        if request.path == "/sized":
            return web.Response(body=b"x" * 1234, content_type="application/octet-stream")
        if request.path == "/stream":
            stream = web.StreamResponse(headers={"Content-Type": "text/plain"})
            await stream.prepare(request)
            await stream.write(b"first\n")
            await asyncio.sleep(1.0)
            await stream.write(b"second\n")
            await stream.write_eof()
            return stream
        return web.json_response(
            {"path": request.raw_path, "method": request.method},
            headers={"X-Upstream": "yes"},
        )

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handler)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    yield SimpleNamespace(url=f"http://127.0.0.1:{server.port}", seen=seen)
    await server.close()


@pytest.fixture
def get_free_port():
    return free_port


@pytest.fixture
def is_port_free():
    return port_is_free

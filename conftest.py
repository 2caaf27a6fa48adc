"""Shared fixtures: master configs and an in-process fake control API."""

from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from tunnel_canvas.models import MasterConfig

HANDSHAKE_LOG = "2024-05-01 12:00:00 [INFO] Tunnel handshaked: 203.0.113.7:10000 in 42 ms"


class FakeControlApi:
    """A control API serving ``/api/instances`` and ``/api/events``.

    ``failures`` maps a URL fragment to ``(status, message)``; any created
    instance whose URL contains the fragment is refused with that answer.
    """

    def __init__(
        self,
        events_status: int = 200,
        send_handshake: bool = True,
        silent_events: bool = False,
        failures: dict | None = None,
        instances: list | None = None,
    ):
        self.events_status = events_status
        self.send_handshake = send_handshake
        self.silent_events = silent_events
        self.failures = failures or {}
        self.instances = instances or []
        self.created_urls: list[str] = []
        self.api_keys: list[str] = []
        self.event_connections = 0
        self.stopped = False

        self.app = web.Application()
        self.app.router.add_get('/api/events', self.handle_events)
        self.app.router.add_post('/api/instances', self.handle_create)
        self.app.router.add_get('/api/instances', self.handle_list)

    async def handle_events(self, request):
        self.event_connections += 1
        self.api_keys.append(request.headers.get("X-API-Key", ""))
        if self.events_status != 200:
            return web.json_response({"message": "event stream disabled"}, status=self.events_status)

        response = web.StreamResponse(
            status=200,
            headers={'Content-Type': 'text/event-stream', 'Cache-Control': 'no-cache'},
        )
        await response.prepare(request)
        handshake_sent = False
        try:
            if not self.silent_events:
                await response.write(b': connected\n\n')
            while not self.stopped:
                await asyncio.sleep(0.05)
                if self.silent_events:
                    continue
                if self.send_handshake and self.created_urls and not handshake_sent:
                    payload = {"type": "log", "logs": HANDSHAKE_LOG, "instance": {"id": "inst0001"}, "time": "2024-05-01T12:00:00Z"}
                    await response.write(f"event: instance\ndata: {json.dumps(payload)}\n\n".encode())
                    handshake_sent = True
                else:
                    await response.write(b': keepalive\n\n')
        except ConnectionError:
            pass
        return response

    async def handle_create(self, request):
        self.api_keys.append(request.headers.get("X-API-Key", ""))
        body = await request.json()
        url = body.get("url", "")
        self.created_urls.append(url)
        for fragment, (status, message) in self.failures.items():
            if fragment in url:
                return web.json_response({"message": message}, status=status)
        instance = {
            "id": f"inst{len(self.created_urls):04d}deadbeef",
            "type": url.split("://", 1)[0],
            "status": "running",
            "url": url,
        }
        return web.json_response(instance, status=201)

    async def handle_list(self, request):
        self.api_keys.append(request.headers.get("X-API-Key", ""))
        return web.json_response(self.instances)


async def serve(api: FakeControlApi, body):
    """Run ``body(api_url)`` against ``api`` and shut the server down after."""
    server = TestServer(api.app)
    await server.start_server()
    try:
        return await body(f"http://{server.host}:{server.port}")
    finally:
        api.stopped = True
        await server.close()


def make_master(master_id: str, api_url: str, **extra) -> MasterConfig:
    fields = {"name": master_id.title(), "token": f"{master_id}-token", "prefix_path": "/api"}
    fields.update(extra)
    return MasterConfig(id=master_id, api_url=api_url, **fields)


@pytest.fixture
def masters():
    return [
        make_master("alpha", "https://master1.example.com:9090"),
        make_master("beta", "https://master2.example.com:9090"),
    ]

"""aiohttp client for one master's control API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import aiohttp

from .errors import ControlApiError
from .events import ServerSentEvent, iter_sse_events
from .models import MasterConfig

logger = logging.getLogger(__name__)


class ControlApiClient:
    """Thin wrapper over the ``/instances`` and ``/events`` endpoints.

    The session is owned by the caller so several clients (one per master)
    can share a connection pool.
    """

    def __init__(self, master: MasterConfig, session: aiohttp.ClientSession):
        self.master = master
        self.session = session

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {"X-API-Key": self.master.token}
        headers.update(extra or {})
        return headers

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return
        message = response.reason or f"HTTP error {response.status}"
        try:
            body = await response.json(content_type=None)
        except (ValueError, aiohttp.ClientError):
            body = None
        if isinstance(body, dict) and body.get("message"):
            message = str(body["message"])
        raise ControlApiError(message, response.status)

    async def create_instance(self, url: str) -> dict[str, Any]:
        """``POST /instances`` and return the created instance."""
        logger.debug(f"Creating instance on {self.master.get_label()}: {url}")
        try:
            async with self.session.post(
                self.master.instances_url(),
                json={"url": url},
                headers=self._headers(),
            ) as response:
                await self._raise_for_status(response)
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ControlApiError(str(e) or e.__class__.__name__) from e

    async def list_instances(self) -> list[dict[str, Any]]:
        try:
            async with self.session.get(self.master.instances_url(), headers=self._headers()) as response:
                await self._raise_for_status(response)
                instances = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ControlApiError(str(e) or e.__class__.__name__) from e
        return instances if isinstance(instances, list) else []

    @asynccontextmanager
    async def open_events(self, timeout: Optional[aiohttp.ClientTimeout] = None) -> AsyncIterator[aiohttp.ClientResponse]:
        """Open ``GET /events`` and yield the streaming response."""
        headers = self._headers({"Accept": "text/event-stream", "Cache-Control": "no-cache"})
        try:
            async with self.session.get(self.master.events_url(), headers=headers, timeout=timeout) as response:
                await self._raise_for_status(response)
                yield response
        except aiohttp.ClientError as e:
            raise ControlApiError(str(e) or e.__class__.__name__) from e

    async def events(self) -> AsyncIterator[ServerSentEvent]:
        """Iterate decoded events until the stream ends or the task is cancelled."""
        # No total timeout on a long-lived stream; callers bound it themselves
        async with self.open_events(timeout=aiohttp.ClientTimeout(total=None)) as response:
            async for event in iter_sse_events(response.content.iter_any()):
                yield event

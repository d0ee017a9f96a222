"""HTTP client for the collector: manifest download and event delivery."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .errors import DeliveryError, ManifestDecodeError, ManifestFetchError
from .protocol import SyncEvent

logger = logging.getLogger("tether.sync.transport")


class _TransportFailure(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass
class CollectorClient:
    """Talks to one collector on behalf of one session identity.

    Blocking urllib calls run in a worker thread so the event loop only
    suspends at the network boundary.
    """

    base_url: str
    identity: Mapping[str, str] = field(default_factory=dict)
    timeout: float = 30.0

    def url_for(self, path: str, query: Optional[Mapping[str, str]] = None) -> str:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        if query:
            url = f"{url}?{urlencode(dict(query))}"
        return url

    def event_body(self, event: SyncEvent) -> Dict[str, Any]:
        body = event.to_dict()
        body.update(self.identity)
        return body

    async def fetch_manifest(self) -> Any:
        """GET ``/manifest`` with the identity as query parameters."""
        url = self.url_for("/manifest", self.identity)
        try:
            raw = await asyncio.to_thread(self._request, Request(url, method="GET"))
        except _TransportFailure as exc:
            raise ManifestFetchError(f"manifest fetch failed: {exc}", status=exc.status) from exc
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestDecodeError(f"manifest is not valid JSON: {exc}") from exc

    async def post_event(self, event: SyncEvent) -> None:
        """POST one event; raises :class:`DeliveryError` unless the collector answers 2xx."""
        data = json.dumps(self.event_body(event)).encode("utf-8")
        req = Request(
            self.url_for(event.endpoint),
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            await asyncio.to_thread(self._request, req)
        except _TransportFailure as exc:
            raise DeliveryError(f"{event.kind.value} delivery failed: {exc}", status=exc.status) from exc
        logger.debug("Delivered %s", event.kind.value, extra={"event": event.kind.value})

    def _request(self, req: Request) -> bytes:
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
                body = resp.read()
        except HTTPError as e:
            raise _TransportFailure(f"HTTP {e.code} {e.reason}", status=e.code) from e
        except URLError as e:
            raise _TransportFailure(f"connection error: {e.reason}") from e
        except (OSError, ValueError) as e:
            raise _TransportFailure(str(e)) from e

        if not 200 <= status < 300:
            raise _TransportFailure(f"HTTP {status}", status=status)
        return body


__all__ = ["CollectorClient"]

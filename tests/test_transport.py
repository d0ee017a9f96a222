"""Tests for the collector HTTP client."""

from __future__ import annotations

import io
import json
from typing import List
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlsplit

import pytest

import tether.sync.transport as transport
from tether.sync.errors import DeliveryError, ManifestDecodeError, ManifestFetchError
from tether.sync.protocol import DeleteEvent, FileSnapshot, HeartbeatEvent
from tether.sync.transport import CollectorClient


class FakeResponse:
    def __init__(self, body: bytes = b"", status: int = 200):
        self.status = status
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def requests(monkeypatch):
    """Capture outgoing requests; tests set ``requests.reply`` to control the answer."""

    class Recorder(list):
        reply = FakeResponse()

    recorder: List = Recorder()

    def fake_urlopen(req, timeout=None):
        recorder.append(req)
        if isinstance(recorder.reply, Exception):
            raise recorder.reply
        return recorder.reply

    monkeypatch.setattr(transport, "urlopen", fake_urlopen)
    return recorder


@pytest.fixture
def client() -> CollectorClient:
    return CollectorClient("http://collector.test/api/", {"student": "s1", "exercise": "lab1"}, timeout=5)


def test_url_for_keeps_base_path_and_encodes_query(client):
    assert client.url_for("/event/delete") == "http://collector.test/api/event/delete"
    url = client.url_for("/manifest", {"student": "s 1"})
    assert url == "http://collector.test/api/manifest?student=s+1"


def test_identity_wins_over_event_fields():
    client = CollectorClient("http://c", {"path": "identity-path", "student": "s1"})
    body = client.event_body(DeleteEvent("a.txt"))
    assert body == {"path": "identity-path", "student": "s1"}


@pytest.mark.asyncio
async def test_fetch_manifest_sends_identity_as_query(client, requests):
    requests.reply = FakeResponse(json.dumps([{"path": "a.txt", "type": "file"}]).encode())

    payload = await client.fetch_manifest()

    assert payload == [{"path": "a.txt", "type": "file"}]
    (req,) = requests
    assert req.get_method() == "GET"
    parts = urlsplit(req.full_url)
    assert parts.path == "/api/manifest"
    assert parse_qs(parts.query) == {"student": ["s1"], "exercise": ["lab1"]}


@pytest.mark.asyncio
async def test_fetch_manifest_http_error_carries_status(client, requests):
    requests.reply = HTTPError("http://collector.test/api/manifest", 503, "Unavailable", {}, io.BytesIO())

    with pytest.raises(ManifestFetchError) as excinfo:
        await client.fetch_manifest()

    assert excinfo.value.status == 503


@pytest.mark.asyncio
async def test_fetch_manifest_rejects_non_json(client, requests):
    requests.reply = FakeResponse(b"<html>oops</html>")

    with pytest.raises(ManifestDecodeError):
        await client.fetch_manifest()


@pytest.mark.asyncio
async def test_post_event_sends_json_with_identity(client, requests):
    await client.post_event(FileSnapshot.from_bytes("src/main.py", b"hi"))

    (req,) = requests
    assert req.get_method() == "POST"
    assert req.full_url == "http://collector.test/api/event/fileSnapshot"
    assert req.get_header("Content-type") == "application/json"
    assert json.loads(req.data) == {
        "path": "src/main.py",
        "isBinary": False,
        "content": "aGk=",
        "student": "s1",
        "exercise": "lab1",
    }


@pytest.mark.asyncio
async def test_post_event_connection_failure_is_transient(client, requests):
    requests.reply = URLError("connection refused")

    with pytest.raises(DeliveryError) as excinfo:
        await client.post_event(HeartbeatEvent(ts=1))

    assert excinfo.value.status is None
    assert excinfo.value.permanent is False


@pytest.mark.asyncio
async def test_post_event_rejection_is_permanent(client, requests):
    requests.reply = HTTPError("http://collector.test/api/event/delete", 400, "Bad Request", {}, io.BytesIO())

    with pytest.raises(DeliveryError) as excinfo:
        await client.post_event(DeleteEvent("a.txt"))

    assert excinfo.value.status == 400
    assert excinfo.value.permanent is True


@pytest.mark.asyncio
async def test_post_event_non_2xx_status_fails(client, requests):
    requests.reply = FakeResponse(status=302)

    with pytest.raises(DeliveryError) as excinfo:
        await client.post_event(DeleteEvent("a.txt"))

    assert excinfo.value.status == 302
    assert excinfo.value.permanent is False

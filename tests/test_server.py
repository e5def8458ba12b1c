from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer

from ccbridge.engine.registry import ConversationRegistry
from ccbridge.server import BridgeServer
from ccbridge.shared.services.auth import AuthStatus


@dataclass
class _Request:
    match_info: dict[str, str]
    query: dict[str, str] = field(default_factory=dict)
    body: dict | None = None

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self) -> dict:
        return self.body or {}

    def get(self, key: str, default=None):
        return default


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _authenticated() -> AuthStatus:
    return AuthStatus(authenticated=True, subscription_type="max", expires_at=4102444800000)


def _build_server(config, spawner) -> BridgeServer:
    registry = ConversationRegistry(config, spawner=spawner)
    return BridgeServer(config, registry=registry, auth_checker=_authenticated)


def _assistant_text(text: str) -> dict:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


# ── Handlers ──


@pytest.mark.asyncio
async def test_health_reports_counts_and_auth(config, spawner) -> None:
    server = _build_server(config, spawner)
    server.registry.create_conversation("s1")
    payload = _json_payload(await server._handle_health(_Request(match_info={})))
    assert payload["ok"] is True
    assert payload["authenticated"] is True
    assert payload["subscriptionType"] == "max"
    assert payload["claudeProcesses"] == 0
    assert payload["conversations"] == 1


@pytest.mark.asyncio
async def test_auth_status(config, spawner) -> None:
    server = BridgeServer(
        config,
        registry=ConversationRegistry(config, spawner=spawner),
        auth_checker=lambda: AuthStatus(authenticated=False, error="No Claude OAuth credentials found"),
    )
    payload = _json_payload(await server._handle_auth_status(_Request(match_info={})))
    assert payload == {"authenticated": False, "error": "No Claude OAuth credentials found"}


@pytest.mark.asyncio
async def test_create_conversation_accepts_both_session_keys(config, spawner) -> None:
    server = _build_server(config, spawner)
    first = _json_payload(await server._handle_create_conversation(
        _Request(match_info={}, body={"session_id": "s1"})
    ))
    assert first == {"success": True, "conversationId": "s1", "isResume": False}

    second = _json_payload(await server._handle_create_conversation(
        _Request(match_info={}, body={"sessionId": "s1", "model": "opus"})
    ))
    assert second["isResume"] is True
    assert server.registry.get("s1").model == "opus"

    generated = _json_payload(await server._handle_create_conversation(_Request(match_info={})))
    assert generated["conversationId"].startswith("conv_")


@pytest.mark.asyncio
async def test_create_conversation_rejects_bad_schema(config, spawner) -> None:
    server = _build_server(config, spawner)
    resp = await server._handle_create_conversation(_Request(match_info={}, body={"schema": "nope"}))
    assert resp.status == 400


@pytest.mark.asyncio
async def test_send_message_requires_content(config, spawner) -> None:
    server = _build_server(config, spawner)
    resp = await server._handle_send_message(_Request(match_info={"id": "c1"}, body={}))
    assert resp.status == 400
    assert spawner.calls == []


@pytest.mark.asyncio
async def test_send_message_spawns_and_stores_html(config, spawner) -> None:
    server = _build_server(config, spawner)
    resp = await server._handle_send_message(_Request(
        match_info={"id": "c1"},
        body={"content": "hi", "html": "<main>page</main>"},
    ))
    assert _json_payload(resp) == {"success": True}
    assert spawner.last.stdin.records()[0]["message"]["content"] == "hi"
    assert "c1" in server.registry.snapshots


@pytest.mark.asyncio
async def test_send_message_spawn_failure_is_500(config, spawner) -> None:
    server = _build_server(config, spawner)
    spawner.fail_with = FileNotFoundError("npx")
    resp = await server._handle_send_message(_Request(match_info={"id": "c1"}, body={"content": "hi"}))
    assert resp.status == 500
    assert "npx" in _json_payload(resp)["error"]


@pytest.mark.asyncio
async def test_approve_without_process_is_400(config, spawner) -> None:
    server = _build_server(config, spawner)
    resp = await server._handle_approve(_Request(match_info={"id": "c1"}, body={"requestId": "r1"}))
    assert resp.status == 400
    assert _json_payload(resp) == {"error": "Claude CLI not started"}


@pytest.mark.asyncio
async def test_deny_writes_control_record(config, spawner) -> None:
    server = _build_server(config, spawner)
    await server._handle_send_message(_Request(match_info={"id": "c1"}, body={"content": "hi"}))
    resp = await server._handle_deny(_Request(
        match_info={"id": "c1"}, body={"requestId": "r1", "reason": "unsafe"},
    ))
    assert _json_payload(resp) == {"success": True}
    assert spawner.last.stdin.records()[-1] == {
        "type": "control", "action": "deny", "requestId": "r1", "reason": "unsafe",
    }


@pytest.mark.asyncio
async def test_get_and_delete_conversation(config, spawner) -> None:
    server = _build_server(config, spawner)
    missing = await server._handle_get_conversation(_Request(match_info={"id": "nope"}))
    assert missing.status == 404

    server.registry.create_conversation("s1")
    summary = _json_payload(await server._handle_get_conversation(_Request(match_info={"id": "s1"})))
    assert summary["conversationId"] == "s1"
    assert summary["messages"] == []
    assert summary["running"] is False

    deleted = await server._handle_delete_conversation(_Request(match_info={"id": "s1"}))
    assert _json_payload(deleted) == {"success": True}
    assert "s1" not in server.registry


@pytest.mark.asyncio
async def test_put_html_requires_string(config, spawner) -> None:
    server = _build_server(config, spawner)
    bad = await server._handle_put_html(_Request(match_info={"id": "c1"}, body={"html": 5}))
    assert bad.status == 400
    ok = await server._handle_put_html(_Request(match_info={"id": "c1"}, body={"html": "<p/>"}))
    assert _json_payload(ok) == {"success": True}


# ── Over HTTP ──


@pytest.mark.asyncio
async def test_sse_stream_delivers_turn_then_closes(config, spawner, settle) -> None:
    server = _build_server(config, spawner)
    async with TestClient(TestServer(server.app)) as client:
        stream = await client.get("/conversations/s1/stream")
        assert stream.status == 200
        assert stream.headers["Content-Type"].startswith("text/event-stream")
        await settle(lambda: server.registry.binding.is_attached("s1"))

        sent = await client.post("/conversations/s1/messages", json={"content": "hi"})
        assert (await sent.json()) == {"success": True}
        spawner.last.emit(_assistant_text("Hello"))
        spawner.last.emit({"type": "result", "subtype": "success"})

        body = await asyncio.wait_for(stream.text(), timeout=2)
        assert body == (
            'data: {"type": "text", "data": "Hello"}\n\n'
            'data: {"type": "done"}\n\n'
        )
        await settle(lambda: not server.registry.binding.is_attached("s1"))


@pytest.mark.asyncio
async def test_sse_keepalive(config, spawner, settle) -> None:
    config.sse_keepalive_seconds = 0.05
    server = _build_server(config, spawner)
    async with TestClient(TestServer(server.app)) as client:
        stream = await client.get("/conversations/s1/stream")
        line = await asyncio.wait_for(stream.content.readline(), timeout=2)
        assert line == b": keepalive\n"
        stream.close()
        await settle(lambda: not server.registry.binding.is_attached("s1"))


@pytest.mark.asyncio
async def test_cors_preflight_and_headers(config, spawner) -> None:
    server = _build_server(config, spawner)
    async with TestClient(TestServer(server.app)) as client:
        preflight = await client.options("/conversations/abc/messages")
        assert preflight.status == 204
        assert preflight.headers["Access-Control-Allow-Origin"] == "*"

        health = await client.get("/health")
        assert health.status == 200
        assert health.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_malformed_json_is_400(config, spawner) -> None:
    server = _build_server(config, spawner)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post(
            "/conversations",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert (await resp.json()) == {"error": "Invalid JSON body"}

        not_utf8 = await client.post(
            "/conversations",
            data=b"\xff\xfe{}",
            headers={"Content-Type": "application/json"},
        )
        assert not_utf8.status == 400
        assert (await not_utf8.json()) == {"error": "Invalid JSON body"}


@pytest.mark.asyncio
async def test_chunk_endpoint(config, spawner) -> None:
    server = _build_server(config, spawner)
    html = "<html><body><header>Top</header><main id='main'><p>Body</p></main></body></html>"
    async with TestClient(TestServer(server.app)) as client:
        missing = await client.get("/conversations/c1/chunk", params={"selector": "#main"})
        assert missing.status == 404

        await client.put("/conversations/c1/html", json={"html": html})

        no_selector = await client.get("/conversations/c1/chunk")
        assert no_selector.status == 400

        single = await (await client.get("/conversations/c1/chunk", params={"selector": "#main"})).json()
        assert single["selector"] == "#main"
        assert single["found"] is True
        assert single["html"] == '<main id="main"><p>Body</p></main>'

        multi = await (await client.get(
            "/conversations/c1/chunk", params={"selectors": "header,.missing"},
        )).json()
        assert [r["selector"] for r in multi["results"]] == ["header", ".missing"]
        assert multi["results"][0]["html"] == "<header>Top</header>"
        assert multi["results"][1]["found"] is False


@pytest.mark.asyncio
async def test_stop_ends_open_streams_without_waiting(config, spawner, settle) -> None:
    config.ports = [0]
    config.idle_conversation_seconds = 0
    server = _build_server(config, spawner)
    await server.start()
    port = server._runner.addresses[0][1]
    async with aiohttp.ClientSession() as session:
        idle = await session.get(f"http://127.0.0.1:{port}/conversations/c1/stream")
        await settle(lambda: server.registry.binding.is_attached("c1"))

        await asyncio.wait_for(server.stop(), timeout=3)
        assert len(server.registry.binding) == 0
        idle.close()

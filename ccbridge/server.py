"""HTTP + SSE server for the Claude CLI bridge.

Exposes a small REST API over the conversation registry, with one
Server-Sent Events stream per conversation carrying normalized events
from that conversation's Claude CLI process.

Usage:
    ccbridge [--port PORT]
"""
from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import signal
import sys
import time
import uuid
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ccbridge.adapters.sink import QueueSink
from ccbridge.engine.config import BridgeConfig
from ccbridge.engine.errors import (
    ProcessMissingError,
    SnapshotNotFoundError,
    SpawnError,
)
from ccbridge.engine.registry import ConversationRegistry
from ccbridge.shared.models.conversation import ConversationState
from ccbridge.shared.services.auth import AuthStatus, check_claude_auth

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Request-Id",
}

ENDPOINTS = [
    "GET    /health",
    "GET    /auth/status",
    "POST   /conversations",
    "GET    /conversations/:id",
    "DELETE /conversations/:id",
    "POST   /conversations/:id/messages",
    "GET    /conversations/:id/stream",
    "POST   /conversations/:id/approve",
    "POST   /conversations/:id/deny",
    "PUT    /conversations/:id/html",
    "GET    /conversations/:id/chunk",
]


class BridgeServer:
    """HTTP server exposing conversations and their event streams."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        registry: ConversationRegistry | None = None,
        auth_checker: Callable[[], AuthStatus] | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._registry = registry or ConversationRegistry(self._config)
        self._auth_checker = auth_checker or (
            lambda: check_claude_auth(self._config.credentials_path)
        )
        self._started_at = time.time()
        self._port: int | None = None
        self._runner: web.AppRunner | None = None
        self._reaper_task: asyncio.Task | None = None
        self._app = web.Application(
            middlewares=[self._cors_middleware, self._request_logging_middleware],
            client_max_size=self._config.max_body_bytes,
        )
        self._setup_routes()
        logger.info(
            "BridgeServer init host=%s ports=%s command=%s pid=%s",
            self._config.host, self._config.ports, self._config.command, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> ConversationRegistry:
        return self._registry

    @property
    def port(self) -> int | None:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=204, headers=CORS_HEADERS)
        response = await handler(request)
        if not response.prepared:
            response.headers.update(CORS_HEADERS)
        return response

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/auth/status", self._handle_auth_status)
        r.add_post("/conversations", self._handle_create_conversation)
        r.add_get("/conversations/{id}", self._handle_get_conversation)
        r.add_delete("/conversations/{id}", self._handle_delete_conversation)
        r.add_post("/conversations/{id}/messages", self._handle_send_message)
        r.add_get("/conversations/{id}/stream", self._handle_stream)
        r.add_post("/conversations/{id}/approve", self._handle_approve)
        r.add_post("/conversations/{id}/deny", self._handle_deny)
        r.add_put("/conversations/{id}/html", self._handle_put_html)
        r.add_get("/conversations/{id}/chunk", self._handle_get_chunk)

    # ── Lifecycle ──

    async def start(self) -> int:
        """Bind the first free port in ``config.ports`` and start serving."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        for port in self._config.ports:
            site = web.TCPSite(runner, self._config.host, port)
            try:
                await site.start()
            except OSError as exc:
                if exc.errno != errno.EADDRINUSE:
                    await runner.cleanup()
                    raise
                logger.warning("Port %d is already in use, trying next port...", port)
                continue
            self._port = port
            break
        if self._port is None:
            await runner.cleanup()
            raise RuntimeError(
                f"Failed to start server on any port (tried {', '.join(map(str, self._config.ports))})"
            )
        self._runner = runner
        logger.info("Bridge listening on %s:%d", self._config.host, self._port)
        self._print_banner()
        if self._config.idle_conversation_seconds > 0:
            self._reaper_task = asyncio.create_task(self._reap_loop())
        return self._port

    async def stop(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            self._reaper_task = None
        signalled = self._registry.shutdown()
        logger.info("Server shutting down (signalled %d process(es))", signalled)
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def serve_forever(self) -> None:
        """Start, then run until SIGINT/SIGTERM."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                logger.debug("Signal handlers unavailable for %s", sig)
        try:
            await stop_event.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        finally:
            await self.stop()

    async def _reap_loop(self) -> None:
        idle = self._config.idle_conversation_seconds
        interval = max(1.0, min(60.0, idle / 2))
        while True:
            await asyncio.sleep(interval)
            try:
                self._registry.reap_idle(idle)
            except Exception:
                logger.exception("Idle conversation reaping failed")

    def _print_banner(self) -> None:
        auth = self._auth_checker()
        lines = [
            "",
            f"Claude Code Bridge running on http://{self._config.host}:{self._port}",
            "",
            "Auth Status:",
        ]
        if auth.authenticated:
            lines.append(f"  Authenticated ({auth.subscription_type} subscription)")
        else:
            lines.append("  Not authenticated")
            lines.append(f"  {auth.error}")
        lines.append("")
        lines.append("Endpoints:")
        lines.extend(f"  {endpoint}" for endpoint in ENDPOINTS)
        lines.append("")
        sys.stdout.write("\n".join(lines) + "\n")
        sys.stdout.flush()

    # ── Helpers ──

    async def _read_json(self, request: web.Request) -> tuple[dict[str, Any], web.Response | None]:
        """Return (body, None) or ({}, 400 response)."""
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}, web.json_response({"error": "Invalid JSON body"}, status=400)
        if body is None:
            return {}, None
        if not isinstance(body, dict):
            return {}, web.json_response({"error": "JSON body must be an object"}, status=400)
        return body, None

    def _require_conversation(self, request: web.Request) -> tuple[ConversationState | None, web.Response | None]:
        """Return (state, None) or (None, 404 response)."""
        conversation_id = request.match_info["id"]
        state = self._registry.get(conversation_id)
        if state is None:
            return None, web.json_response(
                {"error": f"Conversation {conversation_id} not found"},
                status=404,
            )
        return state, None

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        auth = self._auth_checker()
        return web.json_response({
            "ok": True,
            "authenticated": auth.authenticated,
            "claudeProcesses": self._registry.process_count,
            "conversations": len(self._registry),
            "pid": os.getpid(),
            "uptimeSeconds": round(max(0.0, time.time() - self._started_at), 3),
            **auth.to_dict(),
        })

    async def _handle_auth_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._auth_checker().to_dict())

    async def _handle_create_conversation(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        session_id = body.get("sessionId") or body.get("session_id")
        if session_id is not None and not isinstance(session_id, str):
            return web.json_response({"error": "sessionId must be a string"}, status=400)
        schema = body.get("schema")
        if schema is not None and not isinstance(schema, dict):
            return web.json_response({"error": "schema must be an object"}, status=400)
        html = body.get("html")
        if html is not None and not isinstance(html, str):
            return web.json_response({"error": "html must be a string"}, status=400)

        state = self._registry.create_conversation(
            session_id or None,
            system_prompt=body.get("systemPrompt"),
            model=body.get("model"),
            schema=schema,
            html=html,
        )
        logger.info(
            "Conversation %s created session=%s resume=%s req=%s",
            state.id, state.session_id, state.resume, request.get("req_id", "unknown"),
        )
        return web.json_response({
            "success": True,
            "conversationId": state.id,
            "isResume": state.resume,
        })

    async def _handle_get_conversation(self, request: web.Request) -> web.Response:
        state, err = self._require_conversation(request)
        if err:
            return err
        return web.json_response(state.to_dict())

    async def _handle_delete_conversation(self, request: web.Request) -> web.Response:
        state, err = self._require_conversation(request)
        if err:
            return err
        await self._registry.remove(state.id)
        return web.json_response({"success": True})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        body, err = await self._read_json(request)
        if err:
            return err
        content = body.get("content")
        if not isinstance(content, str):
            return web.json_response({"error": "content is required"}, status=400)
        files = body.get("files")
        if files is not None and not isinstance(files, list):
            return web.json_response({"error": "files must be a list"}, status=400)
        html = body.get("html")
        if isinstance(html, str):
            self._registry.store_snapshot(conversation_id, html)

        try:
            await self._registry.send_message(
                conversation_id,
                content,
                files=files,
                system_prompt=body.get("systemPrompt"),
            )
        except SpawnError as exc:
            return web.json_response({"error": str(exc)}, status=500)
        except ProcessMissingError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response({"success": True})

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        conversation_id = request.match_info["id"]
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                **CORS_HEADERS,
            },
        )
        await response.prepare(request)

        sink = QueueSink()
        self._registry.attach_stream(conversation_id, sink)
        logger.info(
            "[%s] SSE client connected req=%s",
            conversation_id, request.get("req_id", "unknown"),
        )
        try:
            while True:
                try:
                    payload = await sink.get(timeout=self._config.sse_keepalive_seconds)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if payload is None:
                    break
                await response.write(f"data: {json.dumps(payload)}\n\n".encode())
        except ConnectionResetError:
            logger.info("[%s] SSE client went away", conversation_id)
        except asyncio.CancelledError:
            pass
        finally:
            self._registry.detach_stream(conversation_id, sink)
            logger.info(
                "[%s] SSE client disconnected req=%s",
                conversation_id, request.get("req_id", "unknown"),
            )
        return response

    async def _handle_approve(self, request: web.Request) -> web.Response:
        return await self._handle_control(request, "approve")

    async def _handle_deny(self, request: web.Request) -> web.Response:
        return await self._handle_control(request, "deny")

    async def _handle_control(self, request: web.Request, action: str) -> web.Response:
        conversation_id = request.match_info["id"]
        body, err = await self._read_json(request)
        if err:
            return err
        request_id = body.get("requestId")
        try:
            if action == "approve":
                await self._registry.approve(conversation_id, request_id, body.get("data"))
            else:
                await self._registry.deny(conversation_id, request_id, body.get("reason"))
        except ProcessMissingError:
            return web.json_response({"error": "Claude CLI not started"}, status=400)
        return web.json_response({"success": True})

    async def _handle_put_html(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        html = body.get("html")
        if not isinstance(html, str):
            return web.json_response({"error": "html is required"}, status=400)
        self._registry.store_snapshot(request.match_info["id"], html)
        return web.json_response({"success": True})

    async def _handle_get_chunk(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        selectors = [s for s in request.query.getall("selector", []) if s.strip()]
        multi = request.query.get("selectors")
        if multi:
            selectors.extend(s.strip() for s in multi.split(",") if s.strip())
        if not selectors:
            return web.json_response({"error": "selector is required"}, status=400)

        # HTML parsing is CPU-bound; keep it off the event loop.
        loop = asyncio.get_running_loop()
        try:
            results = await loop.run_in_executor(
                None, self._registry.extract_chunks, conversation_id, selectors,
            )
        except SnapshotNotFoundError as exc:
            return web.json_response({"error": str(exc)}, status=404)

        if len(results) == 1 and not multi:
            return web.json_response(results[0].to_dict())
        return web.json_response({"results": [r.to_dict() for r in results]})

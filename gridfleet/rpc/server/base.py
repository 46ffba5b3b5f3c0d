"""Tool-call HTTP service shared by Instances and Dispatchers.

A service is a small Starlette app with two routes:

* ``POST /tools/call`` with ``{"name": ..., "arguments": {...}}``; the
  ``auth_token`` argument must match the service token.
* ``GET /health``, an unauthenticated liveness probe.

It is served by uvicorn on the ``host:port`` or unix socket named in the
service options.
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import os
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import psutil
import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from gridfleet.core.options import Options

logger = structlog.get_logger(__name__)

Tool = Callable[..., Awaitable[Any]]

SHUTDOWN_DELAY_SECONDS = 0.1


class ToolService:
    """Base class for services exposing async tools over HTTP.

    Args:
        options: Options the service was started with.
        token: Token clients must present; empty means "allow all".
    """

    name = "service"

    def __init__(self, options: Options, token: Optional[str]) -> None:
        self.options = options
        self.token = token
        self._tools: dict[str, Tool] = {}
        self._server: Optional[uvicorn.Server] = None
        self._app: Optional[Starlette] = None

        self.tool(self.alive)
        self.tool(self.consumed_pids)
        self.tool(self.shutdown)

    @property
    def url(self) -> Optional[str]:
        return self.options.url

    # ── Tool registry ─────────────────────────────────────────────

    def tool(self, fn: Tool, name: Optional[str] = None) -> Tool:
        """Expose *fn* as a remote tool."""
        self._tools[name or fn.__name__] = fn
        return fn

    @property
    def tools(self) -> list[str]:
        return sorted(self._tools)

    def _validate_token(self, provided: Optional[str]) -> bool:
        if not self.token:
            return True
        return hmac.compare_digest(str(provided or ""), self.token)

    # ── Common tools ──────────────────────────────────────────────

    async def alive(self) -> bool:
        return True

    async def consumed_pids(self) -> list[int]:
        """This process plus every descendant still running."""
        me = psutil.Process(os.getpid())
        return [me.pid] + [child.pid for child in me.children(recursive=True)]

    async def shutdown(self) -> bool:
        """Stop serving shortly after the reply has been sent."""
        await self.on_shutdown()
        logger.info("service_shutting_down", service=self.name, url=self.url)
        asyncio.get_running_loop().call_later(SHUTDOWN_DELAY_SECONDS, self.request_exit)
        return True

    async def on_startup(self) -> None:
        """Hook run once the app has started."""

    async def on_shutdown(self) -> None:
        """Hook run when ``shutdown`` is called, before the server exits."""

    def request_exit(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    # ── HTTP app ──────────────────────────────────────────────────

    async def handle_tool_call(self, request: Request) -> JSONResponse:
        """Dispatch an incoming tool call."""
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        tool_name = body.get("name", "")
        arguments = dict(body.get("arguments") or {})

        if not self._validate_token(arguments.pop("auth_token", None)):
            logger.warning("tool_call_unauthorized", service=self.name, tool=tool_name)
            return JSONResponse({"error": "Invalid token"}, status_code=401)

        tool = self._tools.get(tool_name)
        if tool is None:
            return JSONResponse({"error": f"Unknown tool: {tool_name}"}, status_code=404)

        try:
            result = await tool(**arguments)
        except Exception as e:
            logger.error("tool_call_failed", service=self.name, tool=tool_name, error=str(e))
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({"result": result})

    async def health(self, request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "service": self.name, "pid": os.getpid()})

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        await self.on_startup()
        yield

    @property
    def app(self) -> Starlette:
        if self._app is None:
            self._app = Starlette(
                routes=[
                    Route("/tools/call", self.handle_tool_call, methods=["POST"]),
                    Route("/health", self.health, methods=["GET"]),
                ],
                lifespan=self._lifespan,
            )
        return self._app

    def run(self) -> None:
        """Serve until ``shutdown`` is called. Blocks."""
        rpc = self.options.rpc
        if rpc.server_socket:
            config = uvicorn.Config(
                app=self.app, uds=rpc.server_socket, log_level="warning", access_log=False
            )
        else:
            config = uvicorn.Config(
                app=self.app,
                host=rpc.server_address or "localhost",
                port=rpc.server_port,
                log_level="warning",
                access_log=False,
            )
        self._server = uvicorn.Server(config)
        logger.info("service_starting", service=self.name, url=self.url, pid=os.getpid())
        self._server.run()
        logger.info("service_stopped", service=self.name, url=self.url)

"""
HTTP transport - one NDJSON response per run.

Uses aiohttp as an embedded server inside the running asyncio loop.
Admission errors become plain JSON error responses. Once a stream has
started, every failure is an in-band ``error`` event written by the
StepDriver.

Routes:
  POST /api/agent-builder              builder lane
  POST /api/chat/run                   assistant lane
  POST /api/public/{slug}/execute      public-execute lane
  POST /api/workflows/{id}/execute     workflow lane
  GET  /api/runs/{run_id}              one recorded run
  GET  /api/runs?sessionId=&lane=      recorded runs, newest first
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from agentrun.config import ServerConfig
from agentrun.errors import AdmissionError, MalformedRequestError
from agentrun.schemas.run import Identity, Lane, Run
from agentrun.sessions.entry_point import PreparedRun, SessionEntryPoint
from agentrun.storage.run_recorder import RunRecorder

logger = logging.getLogger(__name__)

NDJSON_CONTENT_TYPE = "application/x-ndjson"
USER_ID_HEADER = "X-User-Id"
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200

IdentityResolver = Callable[[web.Request], Identity | Awaitable[Identity]]


def header_identity(request: web.Request) -> Identity:
    """Default resolver: a non-empty ``X-User-Id`` header is an authenticated caller."""
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    return Identity(user_id=user_id or None)


class AgentRunServer:
    """
    Embedded HTTP server exposing the four lanes and run history.

    Lifecycle:
        server = AgentRunServer(entry_point, recorder, config)
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        entry_point: SessionEntryPoint,
        recorder: RunRecorder | None = None,
        config: ServerConfig | None = None,
        identity_resolver: IdentityResolver = header_identity,
    ):
        self._entry_point = entry_point
        self._recorder = recorder if recorder is not None else entry_point.recorder
        self._config = config or ServerConfig()
        self._identity_resolver = identity_resolver
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/agent-builder", self._handle_builder)
        app.router.add_post("/api/chat/run", self._handle_assistant)
        app.router.add_post("/api/public/{slug}/execute", self._handle_public)
        app.router.add_post("/api/workflows/{workflow_id}/execute", self._handle_workflow)
        app.router.add_get("/api/runs/{run_id}", self._handle_get_run)
        app.router.add_get("/api/runs", self._handle_list_runs)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"AgentRun server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("AgentRun server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # ------------------------------------------------------------------
    # Lane handlers
    # ------------------------------------------------------------------

    async def _handle_builder(self, request: web.Request) -> web.StreamResponse:
        async def admit() -> PreparedRun:
            identity = await self._resolve_identity(request)
            return await self._entry_point.open_builder(identity, await self._read_json(request))

        return await self._admit_and_stream(request, admit)

    async def _handle_assistant(self, request: web.Request) -> web.StreamResponse:
        async def admit() -> PreparedRun:
            identity = await self._resolve_identity(request)
            return await self._entry_point.open_assistant(
                identity, await self._read_json(request)
            )

        return await self._admit_and_stream(request, admit)

    async def _handle_public(self, request: web.Request) -> web.StreamResponse:
        slug = request.match_info["slug"]

        async def admit() -> PreparedRun:
            return await self._entry_point.open_public(slug, await self._read_json(request))

        return await self._admit_and_stream(request, admit)

    async def _handle_workflow(self, request: web.Request) -> web.StreamResponse:
        workflow_id = request.match_info["workflow_id"]

        async def admit() -> PreparedRun:
            identity = await self._resolve_identity(request)
            return await self._entry_point.open_workflow(
                identity, workflow_id, await self._read_json(request, allow_empty=True)
            )

        return await self._admit_and_stream(request, admit)

    async def _admit_and_stream(
        self,
        request: web.Request,
        admit: Callable[[], Awaitable[PreparedRun]],
    ) -> web.StreamResponse:
        try:
            prepared = await admit()
        except AdmissionError as e:
            logger.info(f"Rejected {request.method} {request.path}: {e.status} {e.message}")
            return web.json_response(e.to_dict(), status=e.status)
        return await self._stream(request, prepared)

    async def _stream(self, request: web.Request, prepared: PreparedRun) -> web.StreamResponse:
        """Forward channel events to the client as JSON lines.

        A failed write cancels the run; the driver still finalizes (charges
        and records) in its own task.
        """
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": NDJSON_CONTENT_TYPE,
                "Cache-Control": "no-cache",
                "X-Run-Id": prepared.run_id,
            },
        )
        await response.prepare(request)

        task = asyncio.create_task(prepared.run())
        try:
            async for event in prepared.channel:
                try:
                    await response.write(event.to_json_line().encode("utf-8"))
                except ConnectionError as e:
                    logger.info(f"Client write failed, cancelling run {prepared.run_id}: {e}")
                    prepared.cancel("client write failed")
                    break
        finally:
            if not task.done():
                prepared.cancel("client disconnected")
            await asyncio.shield(task)

        try:
            await response.write_eof()
        except ConnectionError:
            logger.debug(f"Client gone before end of stream for run {prepared.run_id}")
        return response

    # ------------------------------------------------------------------
    # History handlers
    # ------------------------------------------------------------------

    async def _handle_get_run(self, request: web.Request) -> web.Response:
        if self._recorder is None:
            return web.json_response({"error": "Run history unavailable"}, status=503)
        identity = await self._resolve_identity(request)
        run = await self._recorder.get(request.match_info["run_id"])
        if run is None or not self._visible(run, identity):
            return web.json_response({"error": "Run not found"}, status=404)
        return web.json_response(run.model_dump(mode="json"))

    async def _handle_list_runs(self, request: web.Request) -> web.Response:
        if self._recorder is None:
            return web.json_response({"error": "Run history unavailable"}, status=503)
        identity = await self._resolve_identity(request)

        try:
            limit = int(request.query.get("limit", DEFAULT_HISTORY_LIMIT))
            lane = Lane(request.query["lane"]) if "lane" in request.query else None
        except ValueError:
            return web.json_response({"error": "Invalid limit or lane"}, status=400)
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))

        runs = await self._recorder.list_runs(
            session_id=request.query.get("sessionId"),
            lane=lane,
            limit=MAX_HISTORY_LIMIT,
        )
        visible = [r for r in runs if self._visible(r, identity)][:limit]
        return web.json_response(
            {"runs": [r.model_dump(mode="json") for r in visible], "count": len(visible)}
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_identity(self, request: web.Request) -> Identity:
        identity = self._identity_resolver(request)
        if inspect.isawaitable(identity):
            identity = await identity
        return identity

    @staticmethod
    async def _read_json(request: web.Request, allow_empty: bool = False) -> Any:
        body = await request.read()
        if not body:
            if allow_empty:
                return {}
            raise MalformedRequestError("Invalid JSON body")
        try:
            return json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            raise MalformedRequestError("Invalid JSON body") from e

    @staticmethod
    def _visible(run: Run, identity: Identity) -> bool:
        """Runs owned by a user are only visible to that user."""
        return run.user_id is None or run.user_id == identity.user_id

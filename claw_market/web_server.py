"""HTTP gateway for marketplace operations."""

import asyncio
import json
import secrets
import signal
import sys
from pathlib import Path
from typing import Any

from aiohttp import web

from claw_market.config import Config, load_document, resolve_config_path, set_config, write_document
from claw_market.exceptions import ClawMarketError
from claw_market.logging import configure_logging, get_logger, log_security_event
from claw_market.service import MarketplaceService, ServiceResult

log = get_logger(__name__)

API_PREFIX = "/api/marketplace"
MAX_BODY_BYTES = 64 * 1024


class BodyError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


def _bearer_token(request: web.Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return value.strip()


async def read_json_body(request: web.Request, max_bytes: int = MAX_BODY_BYTES) -> dict[str, Any]:
    """Read a JSON object body no larger than ``max_bytes``.

    An empty body reads as ``{}``.
    """
    if request.content_length is not None and request.content_length > max_bytes:
        raise BodyError(413, "Payload too large")
    raw = await request.content.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise BodyError(413, "Payload too large")
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BodyError(400, "Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise BodyError(400, "JSON body must be an object")
    return body


class MarketplaceWebServer:
    """Serves install, uninstall and sync over the config document on disk."""

    def __init__(self, config: Config, config_path: Path | str | None = None, service: MarketplaceService | None = None):
        self.config = config
        self.config_path = resolve_config_path(config_path)
        self.service = service or MarketplaceService(config)
        self._lock = asyncio.Lock()

    @web.middleware
    async def auth_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        gateway = self.config.gateway
        expected = gateway.token.strip()
        if not expected:
            if gateway.allow_unauthenticated:
                return await handler(request)
            log_security_event(log, "Gateway token not configured; refusing request", path=request.path)
            return web.json_response({"ok": False, "error": "Unauthorized"}, status=401)

        provided = _bearer_token(request)
        if not provided or not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            log_security_event(log, "Rejected gateway request", path=request.path, remote=request.remote)
            return web.json_response({"ok": False, "error": "Unauthorized"}, status=401)
        return await handler(request)

    async def _respond(self, result: ServiceResult) -> web.Response:
        if result.changed and result.config is not None:
            await asyncio.to_thread(write_document, result.config, self.config_path)
            log.info("Configuration updated", path=str(self.config_path))
        return web.json_response(result.payload, status=result.status)

    async def _load(self) -> dict[str, Any]:
        return await asyncio.to_thread(load_document, self.config_path)

    async def _installed(self, request: web.Request) -> web.Response:
        """GET /api/marketplace/installed: list installed units."""
        try:
            doc = await self._load()
        except ClawMarketError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=500)
        return web.json_response(self.service.list_installed(doc))

    async def _install(self, request: web.Request) -> web.Response:
        """POST /api/marketplace/install: install a catalog unit."""
        try:
            body = await read_json_body(request)
        except BodyError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=exc.status)

        unit_id = body.get("id")
        if not isinstance(unit_id, str) or not unit_id.strip():
            return web.json_response({"ok": False, "error": "Missing 'id' in request body"}, status=400)
        unit_type = body.get("type") if isinstance(body.get("type"), str) else None

        async with self._lock:
            try:
                doc = await self._load()
            except ClawMarketError as exc:
                return web.json_response({"ok": False, "error": str(exc)}, status=500)
            result = await self.service.install_from_catalog(doc, unit_id, unit_type, pin=bool(body.get("pin")))
            return await self._respond(result)

    async def _uninstall(self, request: web.Request) -> web.Response:
        """POST /api/marketplace/uninstall: remove an installed unit."""
        try:
            body = await read_json_body(request)
        except BodyError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=exc.status)

        unit_id = body.get("id")
        if not isinstance(unit_id, str) or not unit_id.strip():
            return web.json_response({"ok": False, "error": "Missing 'id' in request body"}, status=400)
        unit_type = body.get("type")
        if unit_type not in ("extension", "skill"):
            return web.json_response(
                {"ok": False, "error": "Missing or invalid 'type' (must be 'extension' or 'skill')"},
                status=400,
            )

        async with self._lock:
            try:
                doc = await self._load()
            except ClawMarketError as exc:
                return web.json_response({"ok": False, "error": str(exc)}, status=500)
            result = await self.service.uninstall(doc, unit_id, unit_type)
            return await self._respond(result)

    async def _sync(self, request: web.Request) -> web.Response:
        """POST /api/marketplace/sync: update marketplace installs."""
        try:
            body = await read_json_body(request)
        except BodyError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=exc.status)

        async with self._lock:
            try:
                doc = await self._load()
            except ClawMarketError as exc:
                return web.json_response({"ok": False, "error": str(exc)}, status=500)
            result = await self.service.sync(doc, dry_run=bool(body.get("dryRun")))
            return await self._respond(result)

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self.auth_middleware], client_max_size=MAX_BODY_BYTES)
        app.router.add_get(f"{API_PREFIX}/installed", self._installed)
        app.router.add_post(f"{API_PREFIX}/install", self._install)
        app.router.add_post(f"{API_PREFIX}/uninstall", self._uninstall)
        app.router.add_post(f"{API_PREFIX}/sync", self._sync)
        return app


def create_app(
    config_path: Path | str | None = None,
    service: MarketplaceService | None = None,
    config: Config | None = None,
) -> web.Application:
    """Build the gateway application for the config file at ``config_path``."""
    config = config or Config.load(config_path)
    return MarketplaceWebServer(config, config_path, service).create_app()


async def _run_server(config: Config, config_path: Path | str | None, host: str, port: int) -> None:
    """Start the gateway and wait for a stop signal."""
    app = create_app(config_path, config=config)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    if not config.gateway.token.strip() and not config.gateway.allow_unauthenticated:
        log.warning("No gateway token configured; every request will be refused")
    print(f"\n  Claw Market gateway running at http://{host}:{port}{API_PREFIX}")
    print("  Press Ctrl+C to stop.\n")

    try:
        await stop_event.wait()
    finally:
        print("\nShutting down...")
        await runner.cleanup()


def run_web_server(
    config: Config,
    config_path: Path | str | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Entry point for running the gateway."""
    asyncio.run(
        _run_server(
            config,
            config_path,
            host or config.gateway.host,
            port or config.gateway.port,
        )
    )


def main() -> None:
    """Standalone entry point for claw-market-gateway."""
    cfg = Config.load()
    set_config(cfg)
    configure_logging(cfg)

    try:
        run_web_server(cfg)
    except KeyboardInterrupt:
        print("\nGateway stopped.")
    except Exception as e:
        print(f"Fatal error: {e}")
        sys.exit(1)

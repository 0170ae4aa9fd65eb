from __future__ import annotations

import io
import json
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .logging_utils import REQUEST_ID, setup_logging
from .metrics import PROXY_COUNT, REQ_LATENCY
from .registry import AppContext, build_context
from .runtime import MEDIA_TYPES, TenantRuntime, build_manifest
from .settings import settings
from .sources.base import RemoteSourceError
from .sources.drive import authorization_url, exchange_code
from .sources.ftp import FtpSource, probe_connection
from .tenants import ConfigMissing, InvalidConfig, config_from_form, truthy
from .utils import (
    content_disposition,
    extension_lower,
    new_tenant_key,
    normalize_tenant_key,
    sanitize_display_name,
    split_subtitles_path,
)

log = logging.getLogger("remote_subs.app")

_REQUEST_ID_JUNK = re.compile(r"[^A-Za-z0-9._-]")


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def get_context(request: Request) -> AppContext:
    ctx = request.app.state.context
    if ctx is None:
        ctx = build_context(settings)
        request.app.state.context = ctx
    return ctx


def _request_id(raw: Optional[str]) -> str:
    """Client supplied id reduced to a safe charset, or a fresh one."""
    rid = _REQUEST_ID_JUNK.sub("", raw or "")[:64]
    return rid or uuid.uuid4().hex[:16]


def _tenant_key(raw: str) -> str:
    key = normalize_tenant_key(raw)
    if key is None:
        raise HTTPException(status_code=404, detail="Not found")
    return key


def _runtime(ctx: AppContext, key: str) -> TenantRuntime:
    try:
        return ctx.registry.get(key)
    except ConfigMissing:
        raise HTTPException(status_code=404, detail="Config not found")


async def _read_payload(request: Request) -> Dict[str, Any]:
    """Read the whole body, then parse it as JSON or a urlencoded form."""
    body = await request.body()
    content_type = (request.headers.get("content-type") or "").lower()
    text = body.decode("utf-8", errors="replace")
    if "application/json" in content_type:
        try:
            data = json.loads(text or "{}")
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Malformed JSON body")
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")
        return data
    return dict(parse_qsl(text, keep_blank_values=True))


def _links(ctx: AppContext, key: str) -> Dict[str, str]:
    base = ctx.settings.base_url
    return {
        "key": key,
        "manifestUrl": f"{base}/u/{key}/manifest.json",
        "configureUrl": f"{base}/u/{key}/configure",
    }


def _save_config(ctx: AppContext, key: str, data: Dict[str, Any]) -> JSONResponse:
    previous = ctx.config_store.get(key)
    try:
        config = config_from_form(key, data, previous=previous)
    except InvalidConfig as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    ctx.config_store.set(key, config)
    # new parameters only take effect through an explicit rebuild
    ctx.registry.replace(key)
    log.info("Saved %s config for %s", config.remote_kind, key)
    return JSONResponse(_links(ctx, key))


def _probe_source(ctx: AppContext, data: Dict[str, Any]) -> FtpSource:
    return FtpSource(
        str(data.get("ftpHost") or "").strip(),
        user=str(data.get("ftpUser") or "anonymous"),
        password=str(data.get("ftpPass") or ""),
        secure=truthy(data.get("ftpSecure")),
        base_path=str(data.get("ftpBase") or "/").strip() or "/",
        timeout=ctx.settings.connection_test_timeout_seconds,
    )


# ---------------------------------------------------------------------
# App + middleware
# ---------------------------------------------------------------------
def create_app(context: Optional[AppContext] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Started")
        yield
        ctx = app.state.context
        if ctx is not None:
            await ctx.directory_cache.drain()
        log.info("Shutdown")

    app = FastAPI(title="Remote Subtitles", lifespan=lifespan)
    app.state.context = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = _request_id(request.headers.get("x-request-id"))
        token = REQUEST_ID.set(rid)
        try:
            response = await call_next(request)
        finally:
            REQUEST_ID.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/")
    async def index(request: Request) -> JSONResponse:
        ctx = get_context(request)
        return JSONResponse({"status": "ok", "manifest": "/manifest.json", "name": ctx.settings.addon_name})

    @app.get("/healthz")
    async def healthz(request: Request) -> JSONResponse:
        ctx = get_context(request)
        return JSONResponse({"status": "ok", "version": ctx.settings.addon_version})

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/manifest.json")
    async def root_manifest(request: Request) -> JSONResponse:
        ctx = get_context(request)
        return JSONResponse(build_manifest(ctx.settings))

    # -----------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------
    @app.post("/configure")
    async def configure_create(request: Request) -> JSONResponse:
        ctx = get_context(request)
        data = await _read_payload(request)
        return _save_config(ctx, new_tenant_key(), data)

    @app.get("/u/{raw_key}/configure")
    async def configure_show(raw_key: str, request: Request) -> JSONResponse:
        ctx = get_context(request)
        key = _tenant_key(raw_key)
        config = ctx.config_store.get(key)
        if config is None:
            raise HTTPException(status_code=404, detail="Config not found")
        return JSONResponse(config.public_view())

    @app.post("/u/{raw_key}/configure")
    async def configure_update(raw_key: str, request: Request) -> JSONResponse:
        ctx = get_context(request)
        key = _tenant_key(raw_key)
        data = await _read_payload(request)
        return _save_config(ctx, key, data)

    @app.post("/test-ftp")
    async def ftp_test(request: Request) -> JSONResponse:
        ctx = get_context(request)
        try:
            data = json.loads((await request.body()) or b"{}")
            if not isinstance(data, dict):
                raise ValueError("expected object")
        except ValueError:
            return JSONResponse({"ok": False, "error": "bad_json"}, status_code=400)
        result = await probe_connection(_probe_source(ctx, data), ctx.settings.connection_test_timeout_seconds)
        return JSONResponse(result)

    @app.post("/u/{raw_key}/test-ftp")
    async def ftp_test_tenant(raw_key: str, request: Request) -> JSONResponse:
        ctx = get_context(request)
        key = _tenant_key(raw_key)
        try:
            data = json.loads((await request.body()) or b"{}")
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        stored = ctx.config_store.get(key)
        merged: Dict[str, Any] = {}
        if stored is not None:
            merged = {
                "ftpHost": stored.ftp_host,
                "ftpUser": stored.ftp_user,
                "ftpPass": stored.ftp_pass,
                "ftpSecure": stored.ftp_secure,
                "ftpBase": stored.ftp_base,
            }
        merged.update({k: v for k, v in data.items() if v is not None})
        result = await probe_connection(_probe_source(ctx, merged), ctx.settings.connection_test_timeout_seconds)
        return JSONResponse(result)

    @app.get("/u/{raw_key}/connect-drive")
    async def connect_drive(raw_key: str, request: Request, folderId: Optional[str] = None) -> Response:
        ctx = get_context(request)
        key = _tenant_key(raw_key)
        config = ctx.config_store.get(key)
        if config is None:
            raise HTTPException(status_code=404, detail="Config not found")
        if not ctx.settings.google_client_id:
            return PlainTextResponse("Google Drive auth not configured", status_code=500)
        url = authorization_url(
            ctx.settings.google_client_id,
            f"{ctx.settings.base_url}/u/{key}/google-callback",
            state=folderId or config.drive_folder_id,
        )
        return RedirectResponse(url, status_code=302)

    @app.get("/u/{raw_key}/google-callback")
    async def google_callback(
        raw_key: str, request: Request, code: Optional[str] = None, state: Optional[str] = None
    ) -> Response:
        ctx = get_context(request)
        key = _tenant_key(raw_key)
        if not code:
            return PlainTextResponse("Missing code", status_code=400)
        config = ctx.config_store.get(key)
        if config is None:
            raise HTTPException(status_code=404, detail="Config not found")
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                tokens = await exchange_code(
                    client,
                    code,
                    client_id=ctx.settings.google_client_id or "",
                    client_secret=ctx.settings.google_client_secret or "",
                    redirect_uri=f"{ctx.settings.base_url}/u/{key}/google-callback",
                )
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("[drive] token exchange for %s failed: %s", key, exc)
            return PlainTextResponse("Auth failed", status_code=500)
        ctx.config_store.set(key, config.with_drive_tokens(tokens, folder_id=state))
        ctx.registry.invalidate(key)
        log.info("[drive] connected Google Drive for %s", key)
        return HTMLResponse("<h1>Google Drive connected</h1><p>You can close this page.</p>")

    # -----------------------------------------------------------------
    # Addon surface
    # -----------------------------------------------------------------
    @app.get("/u/{raw_key}/manifest.json")
    async def tenant_manifest(raw_key: str, request: Request) -> JSONResponse:
        ctx = get_context(request)
        runtime = _runtime(ctx, _tenant_key(raw_key))
        return JSONResponse(runtime.manifest)

    @app.api_route("/u/{raw_key}/subtitles/{media_type}/{item_path:path}", methods=["GET", "HEAD"])
    async def tenant_subtitles(raw_key: str, media_type: str, item_path: str, request: Request) -> Response:
        started = time.time()
        ctx = get_context(request)
        key = _tenant_key(raw_key)
        if media_type not in MEDIA_TYPES:
            raise HTTPException(status_code=404, detail="Unsupported media type")
        media_id, extras = split_subtitles_path(item_path)
        if not media_id:
            raise HTTPException(status_code=404, detail="Not found")
        runtime = _runtime(ctx, key)

        payload = await runtime.get_subtitles(media_type, media_id, extras)
        REQ_LATENCY.labels(route="subtitles").observe(time.time() - started)
        if request.method == "HEAD":
            return Response(status_code=200)
        return JSONResponse(payload)

    @app.api_route("/u/{raw_key}/file", methods=["GET", "HEAD"])
    async def tenant_file(
        raw_key: str,
        request: Request,
        path: Optional[str] = None,
        file_id: Optional[str] = Query(None, alias="id"),
        ext: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Response:
        started = time.time()
        ctx = get_context(request)
        key = _tenant_key(raw_key)
        identifier = path or file_id
        if not identifier or ".." in identifier:
            PROXY_COUNT.labels(status="400").inc()
            return PlainTextResponse("Bad path", status_code=400)
        runtime = _runtime(ctx, key)

        display_name = sanitize_display_name(name)
        extension = (ext or "").lower() or extension_lower(display_name)
        media_type = "text/vtt; charset=utf-8" if extension == ".vtt" else "text/plain; charset=utf-8"
        headers = {
            "Content-Disposition": content_disposition(display_name),
            "X-Content-Type-Options": "nosniff",
        }
        if request.method == "HEAD":
            return Response(status_code=200, media_type=media_type, headers=headers)

        sink = io.BytesIO()
        try:
            await runtime.download(identifier, sink)
        except RemoteSourceError as exc:
            log.warning("[proxy] key=%s %s failed: %s", key, identifier, exc)
            PROXY_COUNT.labels(status="502").inc()
            return PlainTextResponse("Remote proxy error", status_code=502)

        PROXY_COUNT.labels(status="200").inc()
        REQ_LATENCY.labels(route="file").observe(time.time() - started)
        return Response(content=sink.getvalue(), media_type=media_type, headers=headers)


setup_logging(settings.log_level, json_logs=settings.json_logs, log_file=settings.log_file)
app = create_app()

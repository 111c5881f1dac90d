#!/usr/bin/env python3
"""
Marketing Jobs Proxy - FastAPI + aiohttp
Validates DM-list / leads submissions, forwards them to the marketing backend,
and relays job results through same-origin URLs so the backend stays hidden.
"""

import argparse
import json
import os
import sys
import time
import traceback
from typing import Optional

import aiohttp
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from result_urls import RESULTS_PATH, rewrite_result_url
from submission_validators import SubmissionRejected, parse_leads_payload, prepare_dm_csv

app = FastAPI(title="Marketing Jobs Proxy")

APP_BOOT_TS = time.time()

BACKEND_URL_ENV = "MARKETING_BACKEND_URL"
DM_LIST_PATH = "/api/marketing/generate_dm_list"
LEADS_PATH = "/api/marketing/generate_leads"

RESULT_CHUNK_SIZE = 64 * 1024
DEFAULT_RESULT_CONTENT_TYPE = "text/csv; charset=utf-8"
TOKEN_ERROR_STATUSES = (400, 410)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}


def _resolve_backend_base_from_env() -> str:
    raw = str(os.getenv(BACKEND_URL_ENV) or "").strip()
    if not raw:
        raise RuntimeError(f"Environment variable {BACKEND_URL_ENV} is not set")
    return raw.rstrip("/")


def _upstream_timeout() -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(
        total=None,
        sock_connect=float(os.getenv("MARKETING_UPSTREAM_CONNECT_TIMEOUT", "10")),
        sock_read=float(os.getenv("MARKETING_UPSTREAM_READ_TIMEOUT", "120")),
    )


def _results_buffered() -> bool:
    return str(os.getenv("MARKETING_RESULTS_BUFFERED") or "").strip().lower() in {"1", "true", "yes", "on"}


@app.get("/api/health")
async def health():
    """Lightweight readiness probe. Never reports the backend location itself."""
    return {
        "ok": True,
        "app": "marketing-jobs-proxy",
        "uptimeSeconds": round(max(0.0, time.time() - APP_BOOT_TS), 3),
        "backendConfigured": bool(str(os.getenv(BACKEND_URL_ENV) or "").strip()),
    }


@app.middleware("http")
async def apply_cors_policy(request, call_next):
    response = await call_next(request)
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _internal_error(label: str) -> JSONResponse:
    """Log the active exception server-side and answer with a generic 500."""
    print(f"Proxy error ({label}):", file=sys.stderr)
    traceback.print_exc()
    return JSONResponse({"error": "Internal Server Error"}, status_code=500)


async def _relay_upstream_response(upstream: aiohttp.ClientResponse) -> Response:
    """Pass a non-accepted upstream answer through: JSON stays JSON, anything else becomes text."""
    content_type = upstream.headers.get("Content-Type", "")
    if "application/json" in content_type.lower():
        payload = await upstream.json(content_type=None)
        return JSONResponse(payload, status_code=upstream.status)
    text = await upstream.text(errors="replace")
    return PlainTextResponse(text, status_code=upstream.status)


async def _submit_to_upstream(backend_base: str, path: str, body: str, content_type: str) -> Response:
    async with aiohttp.ClientSession(timeout=_upstream_timeout()) as session:
        async with session.post(
            f"{backend_base}{path}",
            data=body.encode("utf-8"),
            headers={"Content-Type": content_type},
        ) as upstream:
            if upstream.status != 202:
                return await _relay_upstream_response(upstream)
            data = await upstream.json(content_type=None)

    # Expected: {turnId, resultUrl, ...}; only resultUrl is touched.
    rewritten = {**data, "resultUrl": rewrite_result_url(data.get("resultUrl"))}
    return JSONResponse(rewritten, status_code=202)


async def _iter_result_stream(first_chunk: bytes, chunks, session: aiohttp.ClientSession):
    try:
        if first_chunk:
            yield first_chunk
        async for chunk in chunks:
            yield chunk
    except Exception:
        # Headers are already out; re-raising aborts the connection instead of truncating silently.
        print("Streaming error (results):", file=sys.stderr)
        traceback.print_exc()
        raise
    finally:
        await session.close()


async def _relay_ready_result(upstream: aiohttp.ClientResponse, session: aiohttp.ClientSession) -> Response:
    """
    Relay a finished result as a byte stream with the upstream content headers.

    The first chunk is read before the response starts so a transport fault at
    that point can still become a 500. With MARKETING_RESULTS_BUFFERED set the
    whole body is read and sent with an explicit Content-Length instead.
    """
    headers = {"Content-Type": upstream.headers.get("Content-Type") or DEFAULT_RESULT_CONTENT_TYPE}
    disposition = upstream.headers.get("Content-Disposition")
    if disposition:
        headers["Content-Disposition"] = disposition

    if _results_buffered():
        body = await upstream.read()
        headers["Content-Length"] = str(len(body))
        return Response(body, status_code=200, headers=headers)

    chunks = upstream.content.iter_chunked(RESULT_CHUNK_SIZE)
    try:
        first_chunk = await anext(chunks, b"")
    except Exception:
        print("Streaming error (results):", file=sys.stderr)
        traceback.print_exc()
        return JSONResponse({"error": "Stream Error"}, status_code=500)
    # The body generator never starts when the client leaves before the first
    # send, so the session is also closed after the response. close() is idempotent.
    cleanup = BackgroundTasks()
    cleanup.add_task(session.close)
    return StreamingResponse(
        _iter_result_stream(first_chunk, chunks, session),
        status_code=200,
        headers=headers,
        background=cleanup,
    )

# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.options(DM_LIST_PATH)
@app.options(LEADS_PATH)
@app.options(RESULTS_PATH)
async def preflight():
    return Response(status_code=204)


@app.post(DM_LIST_PATH)
async def generate_dm_list(request: Request):
    """Validate a DM-list CSV and forward it to the marketing backend."""
    try:
        backend_base = _resolve_backend_base_from_env()
        csv_text = (await request.body()).decode("utf-8", errors="replace")
        # Content-Type is not enforced: browsers vary, the body shape decides.
        try:
            csv_to_send, _row_count = prepare_dm_csv(csv_text)
        except SubmissionRejected as exc:
            return JSONResponse(exc.as_payload(), status_code=400)
        return await _submit_to_upstream(backend_base, "/marketing/generate_dm_list", csv_to_send, "text/csv")
    except Exception:
        return _internal_error("generate_dm_list")


@app.post(LEADS_PATH)
async def generate_leads(request: Request):
    """Validate a leads payload and forward it to the marketing backend."""
    try:
        backend_base = _resolve_backend_base_from_env()
        raw = (await request.body()).decode("utf-8", errors="replace")
        try:
            payload = parse_leads_payload(raw)
        except SubmissionRejected as exc:
            return JSONResponse(exc.as_payload(), status_code=400)
        return await _submit_to_upstream(backend_base, "/marketing/generate_leads", json.dumps(payload), "application/json")
    except Exception:
        return _internal_error("generate_leads")


@app.get(RESULTS_PATH)
async def fetch_result(request: Request):
    """Relay the upstream result lookup: pending JSON, streamed CSV, or the upstream's own error."""
    try:
        backend_base = _resolve_backend_base_from_env()
        query = request.url.query
        target = f"{backend_base}/results?{query}" if query else f"{backend_base}/results"
        session = aiohttp.ClientSession(timeout=_upstream_timeout())
        streaming = False
        try:
            upstream = await session.get(target)
            if upstream.status == 200:
                response = await _relay_ready_result(upstream, session)
                streaming = isinstance(response, StreamingResponse)
                return response
            if upstream.status == 202:
                return JSONResponse(await upstream.json(content_type=None), status_code=202)
            if upstream.status in TOKEN_ERROR_STATUSES:
                return Response(
                    await upstream.read(),
                    status_code=upstream.status,
                    media_type=upstream.headers.get("Content-Type"),
                )
            return await _relay_upstream_response(upstream)
        finally:
            if not streaming:
                await session.close()
    except Exception:
        return _internal_error("results")


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the marketing jobs proxy server.")
    parser.add_argument("--host", default=os.getenv("MARKETING_PROXY_HOST", "127.0.0.1"), help="Bind host")
    parser.add_argument("--port", type=int, default=int(os.getenv("MARKETING_PROXY_PORT", "8000")), help="Bind port")
    parser.add_argument("--backend-url", default=None, help=f"Marketing backend base URL (overrides {BACKEND_URL_ENV})")
    parser.add_argument("--log-level", default=os.getenv("MARKETING_PROXY_LOG_LEVEL", "info"), help="uvicorn log level")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = _build_arg_parser().parse_args(argv)
    if args.backend_url:
        os.environ[BACKEND_URL_ENV] = str(args.backend_url)
    if not str(os.getenv(BACKEND_URL_ENV) or "").strip():
        print(f"Warning: {BACKEND_URL_ENV} is not set; every endpoint will answer 500.", file=sys.stderr)
    import uvicorn

    uvicorn.run(
        app,
        host=str(args.host),
        port=int(args.port),
        log_level=str(args.log_level).lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()

import os
import json
import logging
import httpx
import time
import asyncio
import uuid
from typing import Dict, Optional

import azure.functions as func

logger = logging.getLogger("music_proxy")

DEFAULT_UPSTREAM_BASE = "https://music-dl.sayqz.com/api"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# QQ audio hosts reject https, so their stream is always fetched over http.
QQ_STREAM_HOST = "qqmusic.qq.com"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Range, Content-Type",
}

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
STREAM_HEADERS = ("Content-Length", "Content-Range", "Accept-Ranges")
DROPPED_HEADERS = {
    "connection",
    "keep-alive",
    "transfer-encoding",
    "content-encoding",
    "access-control-allow-origin",
    "access-control-allow-methods",
    "access-control-allow-headers",
    "access-control-expose-headers",
}

DEFAULT_COVER_TYPE = "image/jpeg"
DEFAULT_COVER_CACHE = "public, max-age=86400"

# Browser session and Functions host credentials that reach the trigger.
MASKED_HEADERS = {
    "cookie",
    "authorization",
    "proxy-authorization",
    "x-functions-key",
    "x-ms-client-principal",
}


def _sanitize_headers(h: Dict[str, str]) -> Dict[str, str]:
    return {k: "***" if k.lower() in MASKED_HEADERS else v for k, v in h.items()}


def _upstream_url(raw_query: str) -> str:
    base = os.getenv("MUSIC_UPSTREAM_BASE", DEFAULT_UPSTREAM_BASE)
    return f"{base}?{raw_query}" if raw_query else base


def _forward_headers(req: func.HttpRequest) -> Dict[str, str]:
    headers = {"user-agent": os.getenv("USER_AGENT", DEFAULT_USER_AGENT)}
    if os.getenv("FORWARD_USER_AGENT", "false").lower() == "true":
        caller_ua = req.headers.get("user-agent")
        if caller_ua:
            headers["user-agent"] = caller_ua
    for h in ("range", "accept"):
        v = req.headers.get(h)
        if v:
            headers[h] = v
    return headers


def _cors(trace_id: str) -> Dict[str, str]:
    hdrs = dict(CORS_HEADERS)
    hdrs["X-Trace-Id"] = trace_id
    return hdrs


def _json_response(status: int, payload: dict, trace_id: str) -> func.HttpResponse:
    hdrs = _cors(trace_id)
    hdrs["Content-Type"] = "application/json"
    return func.HttpResponse(
        status_code=status,
        mimetype="application/json",
        body=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
        headers=hdrs,
    )


def _client(follow_redirects: bool) -> httpx.Client:
    timeout = float(os.getenv("UPSTREAM_TIMEOUT_S", "30"))
    return httpx.Client(timeout=timeout, follow_redirects=follow_redirects)


async def _fetch(method: str, url: str, headers: Dict[str, str], follow_redirects: bool) -> httpx.Response:
    def _do_sync():
        with _client(follow_redirects) as client:
            return client.request(method, url, headers=headers)

    return await asyncio.to_thread(_do_sync)


def _body(resp: httpx.Response, method: str) -> bytes:
    return b"" if method == "HEAD" else resp.content


def _mimetype(content_type: str) -> str:
    return content_type.split(";")[0].strip()


def _with_scheme(url: str, scheme: str) -> str:
    return str(httpx.URL(url).copy_with(scheme=scheme))


def _upstream_error(resp: httpx.Response, error: str, trace_id: str) -> func.HttpResponse:
    body = {"error": error, "status": resp.status_code, "statusText": resp.reason_phrase}
    return _json_response(resp.status_code, body, trace_id)


def _passthrough(resp: httpx.Response, method: str, trace_id: str) -> func.HttpResponse:
    """Relay an upstream response as-is, with CORS headers layered on top."""
    hdrs: Dict[str, str] = {}
    decoded = "content-encoding" in resp.headers
    for k, v in resp.headers.items():
        kl = k.lower()
        if kl in DROPPED_HEADERS:
            continue
        # httpx hands us the decoded body, so the upstream length no longer applies
        if kl == "content-length" and decoded:
            continue
        hdrs[k] = v
    hdrs.update(_cors(trace_id))
    content_type = resp.headers.get("Content-Type", "application/octet-stream")
    return func.HttpResponse(
        status_code=resp.status_code,
        mimetype=_mimetype(content_type),
        body=_body(resp, method),
        headers=hdrs,
    )


async def _fetch_stream(
    method: str,
    target: str,
    headers: Dict[str, str],
    trace_id: str,
) -> func.HttpResponse:
    # Audio bytes must arrive unencoded or Content-Range stops matching the body.
    stream_headers = dict(headers)
    stream_headers["accept-encoding"] = "identity"
    try:
        resp = await _fetch(method, target, stream_headers, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.warning("stream_fetch_failed", extra={"url": target, "error_type": type(e).__name__})
        return _json_response(500, {"error": "Failed to fetch audio stream", "message": str(e), "url": target}, trace_id)

    if not resp.is_success:
        return _upstream_error(resp, "Failed to fetch audio", trace_id)

    hdrs = _cors(trace_id)
    content_type = resp.headers.get("Content-Type", "audio/mpeg")
    hdrs["Content-Type"] = content_type
    for h in STREAM_HEADERS:
        v = resp.headers.get(h)
        if v:
            hdrs[h] = v
    return func.HttpResponse(
        status_code=resp.status_code,
        mimetype=_mimetype(content_type),
        body=_body(resp, method),
        headers=hdrs,
    )


async def _proxy_stream(
    method: str,
    upstream_url: str,
    headers: Dict[str, str],
    source: Optional[str],
    trace_id: str,
) -> func.HttpResponse:
    """Resolve the upstream play-url redirect by hand and relay the audio bytes.

    The upstream answers ``type=url`` with a redirect to the platform's CDN.
    QQ locations are downgraded to http, every other platform is upgraded to
    https, and the target is fetched and streamed back on the same origin.
    """
    primary = await _fetch(method, upstream_url, headers, follow_redirects=False)
    location = primary.headers.get("Location")
    if primary.status_code in REDIRECT_STATUSES and location:
        target = str(primary.url.join(location))
        if source == "qq" or QQ_STREAM_HOST in target:
            target = _with_scheme(target, "http")
        else:
            target = _with_scheme(target, "https")
        logger.info("stream_redirect", extra={"source": source, "status": primary.status_code, "target_host": httpx.URL(target).host})
        return await _fetch_stream(method, target, headers, trace_id)

    if not primary.is_success:
        return _upstream_error(primary, "Failed to fetch audio", trace_id)
    return _passthrough(primary, method, trace_id)


async def _proxy_cover(
    method: str,
    upstream_url: str,
    headers: Dict[str, str],
    trace_id: str,
) -> func.HttpResponse:
    """Proxy cover bytes for hosts whose certificates browsers refuse."""
    try:
        resp = await _fetch(method, upstream_url, headers, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.warning("cover_fetch_failed", extra={"url": upstream_url, "error_type": type(e).__name__})
        return _json_response(500, {"error": "Failed to fetch image", "message": str(e), "url": upstream_url}, trace_id)

    if not resp.is_success:
        return _upstream_error(resp, "Failed to fetch image", trace_id)

    hdrs = _cors(trace_id)
    content_type = resp.headers.get("Content-Type") or DEFAULT_COVER_TYPE
    hdrs["Content-Type"] = content_type
    hdrs["Cache-Control"] = resp.headers.get("Cache-Control") or DEFAULT_COVER_CACHE
    return func.HttpResponse(
        status_code=200,
        mimetype=_mimetype(content_type),
        body=_body(resp, method),
        headers=hdrs,
    )


async def proxy_music_request(req: func.HttpRequest) -> func.HttpResponse:
    # Optional request debugging (disabled by default).
    debug_req = os.getenv("DEBUG_REQUEST_LOG", "false").lower() == "true"
    trace_id = str(uuid.uuid4())
    method = req.method.upper()

    if method == "OPTIONS":
        return func.HttpResponse(status_code=200, headers=_cors(trace_id))

    if method not in ("GET", "HEAD"):
        return _json_response(405, {"error": "Method not allowed"}, trace_id)

    # Keep the inbound query byte-for-byte; the upstream sees exactly what the client sent.
    raw_query = req.url.split("?", 1)[1] if "?" in req.url else ""
    raw_query = raw_query.split("#", 1)[0]
    params = httpx.QueryParams(raw_query)
    kind = params.get("type")
    source = params.get("source")
    url = _upstream_url(raw_query)
    headers = _forward_headers(req)

    if debug_req:
        debug_payload = {
            "method": method,
            "type": kind,
            "source": source,
            "upstream_url": url,
            "headers": _sanitize_headers(dict(req.headers) if req.headers else {}),
        }
        logger.info("http_request_debug: " + json.dumps(debug_payload))

    started = time.perf_counter()
    try:
        if kind == "url":
            resp = await _proxy_stream(method, url, headers, source, trace_id)
        elif kind == "pic" and source == "kuwo":
            resp = await _proxy_cover(method, url, headers, trace_id)
        else:
            resp = _passthrough(await _fetch(method, url, headers, follow_redirects=True), method, trace_id)
    except httpx.TimeoutException as e:
        logger.warning("Timeout contacting music upstream", extra={"type": kind, "source": source})
        return _error_response(504, "timeout", trace_id, e)
    except httpx.RequestError as e:
        logger.exception("RequestError contacting music upstream", extra={"type": kind, "source": source})
        return _error_response(502, "bad_gateway", trace_id, e)
    except Exception as e:
        logger.exception("Unexpected error contacting music upstream", extra={"type": kind, "source": source})
        return _error_response(500, "internal_error", trace_id, e)

    elapsed_ms = (time.perf_counter() - started) * 1000
    telemetry = {
        "event": "music_proxy_call",
        "method": method,
        "type": kind,
        "source": source,
        "status": resp.status_code,
        "elapsed_ms": round(elapsed_ms, 2),
        "trace_id": trace_id,
    }
    logger.info("music_proxy: " + json.dumps(telemetry))
    return resp


def _error_response(status: int, error: str, trace_id: str, exc: Exception) -> func.HttpResponse:
    body = {"error": error, "trace_id": trace_id}
    if os.getenv("DEBUG_ERRORS", "false").lower() == "true":
        body["detail"] = str(exc)
    return _json_response(status, body, trace_id)

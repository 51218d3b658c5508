"""
The `http` library: HTTP requests via httpx, gated by the sandbox's
network capability.

Responses are dicts: {"status": int, "headers": dict, "body": str,
"json": parsed body or None}. Non-2xx statuses are returned, not raised;
transport failures raise OSError in the script.
"""
from typing import Any, Dict, Optional

import httpx

from quill.quill_datatypes import QuillDict, to_python
from quill.quill_errors import QuillTypeError, QuillValueError
from quill.quill_library import LibraryBuilder
from quill.quill_sandbox import SandboxConfig, check_network
from quill.quill_serialize import serialize, try_deserialize

DEFAULT_TIMEOUT = 10.0


def _as_mapping(value, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, QuillDict):
        raise QuillTypeError(f"'{name}' must be a dict")
    return {str(k): str(v) for k, v in to_python(value).items()}


def _package_response(resp: httpx.Response) -> QuillDict:
    content_type = resp.headers.get("Content-Type")
    return QuillDict({
        "status": int(resp.status_code),
        # Lower-case header keys for consistent lookups
        "headers": QuillDict({str(k).lower(): v for k, v in resp.headers.items()}),
        "body": resp.text,
        "json": try_deserialize(resp.content, content_type=content_type),
    })


async def http_request(method: str, url: str, *, ctx, headers=None, params=None, data=None,
                       json=None, timeout: Optional[float] = None, retries: int = 0,
                       backoff: float = 0.2) -> QuillDict:
    """Core HTTP helper: retries transport errors, never raises on status."""
    if not url.startswith(("http://", "https://")):
        raise QuillValueError(f"unsupported URL scheme in '{url}'")
    request_headers = _as_mapping(headers, "headers")
    body = None
    if json is not None:
        body = serialize(json, fmt="json").encode("utf-8")
        request_headers.setdefault("Content-Type", "application/json")
    elif data is not None:
        if not isinstance(data, str):
            raise QuillTypeError("'data' must be a str; use json= for structured bodies")
        body = data.encode("utf-8")
        request_headers.setdefault("Content-Type", "text/plain; charset=utf-8")

    limit = float(timeout) if timeout is not None else DEFAULT_TIMEOUT
    remaining = ctx.remaining()
    if remaining is not None:
        limit = min(limit, remaining)

    async with httpx.AsyncClient(timeout=limit, follow_redirects=True) as client:
        for attempt in range(retries + 1):
            try:
                resp = await ctx.wait_for(client.request(
                    method.upper(),
                    url,
                    headers=request_headers,
                    params=_as_mapping(params, "params"),
                    content=body,
                ))
                return _package_response(resp)
            except httpx.HTTPError as e:
                if attempt < retries:
                    await ctx.sleep(backoff * (2 ** attempt))
                    continue
                raise OSError(f"{method.upper()} {url} failed: {e}") from None


def _bind(config: Optional[SandboxConfig]) -> Dict[str, Any]:
    def gate(url: str, ctx):
        ctx.check()
        check_network(config, url)
        if ctx.sandbox is not None and ctx.sandbox is not config:
            check_network(ctx.sandbox, url)

    async def request(method: str, url: str, *, ctx, **options):
        """request(method, url, headers=None, params=None, data=None, json=None, timeout=None, retries=0)"""
        gate(url, ctx)
        return await http_request(method, url, ctx=ctx, **options)

    async def get(url: str, *, ctx, **options):
        gate(url, ctx)
        return await http_request("GET", url, ctx=ctx, **options)

    async def post(url: str, *, ctx, **options):
        gate(url, ctx)
        return await http_request("POST", url, ctx=ctx, **options)

    async def put(url: str, *, ctx, **options):
        gate(url, ctx)
        return await http_request("PUT", url, ctx=ctx, **options)

    async def delete(url: str, *, ctx, **options):
        gate(url, ctx)
        return await http_request("DELETE", url, ctx=ctx, **options)

    return {"request": request, "get": get, "post": post, "put": put, "delete": delete}


HTTP_TEMPLATE = (LibraryBuilder("http", "HTTP client (requires network access)")
                 .template(_bind)
                 .build())

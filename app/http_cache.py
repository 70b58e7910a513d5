"""
Conditional-GET support: weak ETags computed over the serialised payload.

The ETag is recomputed on every response, cache hit or miss, so its cost
is linear in the payload size.  Matching is an exact string comparison
with the ``If-None-Match`` header, weak prefix included.
"""
import hashlib
import json
from typing import Any

from fastapi.responses import Response


def serialize_payload(payload: Any) -> bytes:
    """Canonical JSON bytes: compact separators, UTF-8, insertion key order."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_etag(body: bytes) -> str:
    return 'W/"' + hashlib.sha1(body).hexdigest() + '"'


def build_conditional_response(
    payload: Any,
    if_none_match: str | None,
    max_age: int = 300,
) -> Response:
    """Return 304 when *if_none_match* equals the payload's ETag, else 200."""
    body = serialize_payload(payload)
    etag = compute_etag(body)
    headers = {
        "ETag": etag,
        "Cache-Control": f"public, max-age={max_age}",
    }
    if if_none_match is not None and if_none_match == etag:
        return Response(status_code=304, headers=headers)
    return Response(content=body, status_code=200, headers=headers, media_type="application/json")

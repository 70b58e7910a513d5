import json
import logging
import re
from urllib.parse import parse_qsl

from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

# Best-effort signal for the logs; this is not an input filter.
SUSPICIOUS_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bUNION\b.*\bSELECT\b",
        r"\bOR\b.*=.*",
        r"\bAND\b.*=.*",
        r";.*\bDROP\b",
        r";.*\bDELETE\b",
        r";.*\bUPDATE\b",
        r";.*\bINSERT\b",
        r"\bEXEC\b|\bEXECUTE\b",
        r"--",
        r"/\*.*\*/",
    )
)

SECURITY_HEADERS: tuple[tuple[bytes, bytes], ...] = (
    (b"x-content-type-options", b"nosniff"),
    (b"x-frame-options", b"DENY"),
    (b"x-xss-protection", b"1; mode=block"),
    (b"referrer-policy", b"strict-origin-when-cross-origin"),
    (
        b"content-security-policy",
        b"default-src 'self'; script-src 'self' 'unsafe-inline'; "
        b"style-src 'self' 'unsafe-inline'; img-src 'self' data: https:;",
    ),
)

# Bodies larger than this are passed through without inspection.
MAX_INSPECTED_BODY = 64 * 1024


def looks_like_sql_injection(value: str) -> bool:
    return any(pattern.search(value) for pattern in SUSPICIOUS_PATTERNS)


def _flatten(data, prefix: str = ""):
    if isinstance(data, dict):
        for key, value in data.items():
            yield from _flatten(value, f"{prefix}.{key}" if prefix else str(key))
    elif isinstance(data, list):
        for index, value in enumerate(data):
            yield from _flatten(value, f"{prefix}.{index}")
    elif isinstance(data, str):
        yield prefix, data


def _body_params(content_type: str, body: bytes):
    if not body:
        return []
    if content_type.startswith("application/json"):
        try:
            return list(_flatten(json.loads(body)))
        except ValueError:
            return []
    if content_type.startswith("application/x-www-form-urlencoded"):
        return parse_qsl(body.decode("latin-1"), keep_blank_values=True)
    return []


class SecurityHeadersMiddleware:
    """
    Pure ASGI middleware that

    - adds the standard hardening headers to every HTTP response, and
    - logs a warning for every query-string or JSON / urlencoded body value
      matching a known SQL-injection pattern.

    Requests are never rejected here; parameter binding in the data layer
    is what actually prevents injection.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        params = parse_qsl(scope.get("query_string", b"").decode("latin-1"), keep_blank_values=True)

        content_type = headers.get("content-type", "")
        length = headers.get("content-length", "")
        if length.isdigit() and 0 < int(length) <= MAX_INSPECTED_BODY and not content_type.startswith("multipart/"):
            body, receive = await self._buffer_body(receive)
            params.extend(_body_params(content_type, body))

        for name, value in params:
            if looks_like_sql_injection(value):
                client = scope.get("client") or ("unknown", 0)
                logger.warning(
                    "Potential SQL injection attempt detected: ip=%s path=%s parameter=%s value=%r user_agent=%r",
                    client[0],
                    scope.get("path"),
                    name,
                    value,
                    headers.get("user-agent"),
                )

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.extend(SECURITY_HEADERS)
                message["headers"] = response_headers
            await send(message)

        await self.app(scope, receive, send_wrapper)

    @staticmethod
    async def _buffer_body(receive: Receive) -> tuple[bytes, Receive]:
        """Drain the request body and return a receive callable that replays it."""
        chunks: list[bytes] = []
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                # Disconnect before the body finished; hand it on untouched.
                pending = message

                async def replay_disconnect() -> Message:
                    return pending

                return b"".join(chunks), replay_disconnect
            chunks.append(message.get("body", b""))
            more_body = message.get("more_body", False)

        body = b"".join(chunks)
        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return body, replay

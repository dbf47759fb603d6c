"""Response handling shared by the HTTP-based source clients."""

from __future__ import annotations

from typing import Any

import httpx

from questline.errors import AuthenticationError, TransientSourceError

DEFAULT_TIMEOUT = httpx.Timeout(20.0, connect=10.0)


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        message = payload.get("error_description") or payload.get("message") or error_payload
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "unknown error"


def decode_response(source: str, response: httpx.Response, *, allow_empty: bool = False) -> Any:
    """Map a response to its JSON body or to the matching error type.

    401/403 raise :class:`AuthenticationError`; every other non-2xx status and
    undecodable bodies raise :class:`TransientSourceError`.
    """
    if response.status_code in (401, 403):
        raise AuthenticationError(source, safe_error_message(response))

    if response.status_code < 200 or response.status_code >= 300:
        raise TransientSourceError(
            source,
            safe_error_message(response),
            status_code=response.status_code,
        )

    if allow_empty and not response.content:
        return None

    try:
        return response.json()
    except ValueError as exc:
        raise TransientSourceError(
            source,
            "invalid JSON payload",
            status_code=response.status_code,
        ) from exc


async def send(
    source: str,
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, turning transport failures into :class:`TransientSourceError`."""
    try:
        return await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise TransientSourceError(source, f"{method} {url}: {exc}") from exc

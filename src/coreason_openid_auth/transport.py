# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid_auth

"""
Secure HTTP helpers for talking to token issuers.
"""

import json
from typing import Any

import httpx
from loguru import logger

from coreason_openid_auth.exceptions import InsecureTransportError, KeyFetchError, OversizedResponseError


def _require_https(url: httpx.URL) -> None:
    if url.scheme != "https":
        logger.warning(f"Security violation: refused non-https request to {url}")
        raise InsecureTransportError(f"Refusing to fetch {url} over '{url.scheme}'")


class SecureAsyncTransport(httpx.AsyncHTTPTransport):
    """
    An HTTP transport that only lets https requests through.

    Redirects are re-sent through the transport, so a redirect to a plain http
    location is refused as well.
    """

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        _require_https(request.url)
        return await super().handle_async_request(request)


async def safe_json_fetch(client: httpx.AsyncClient, url: str, max_bytes: int) -> dict[str, Any]:
    """
    GETs a JSON object over https, refusing bodies larger than `max_bytes`.

    Args:
        client: The async HTTP client.
        url: The https URL to fetch.
        max_bytes: The largest accepted body.

    Returns:
        dict[str, Any]: The decoded JSON object.

    Raises:
        InsecureTransportError: If the URL is not https.
        OversizedResponseError: If the body exceeds `max_bytes`.
        KeyFetchError: If the URL is invalid or the body is not a JSON object.
        httpx.HTTPError: For network errors and non-2xx statuses.
    """
    try:
        target = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise KeyFetchError(f"Invalid URL {url!r}: {e}") from e
    _require_https(target)

    async with client.stream("GET", target, headers={"Accept": "application/json"}) as response:
        response.raise_for_status()

        declared = response.headers.get("Content-Length")
        if declared is not None and declared.isdigit() and int(declared) > max_bytes:
            raise OversizedResponseError(f"Response from {url} declares {declared} bytes (limit {max_bytes})")

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > max_bytes:
                raise OversizedResponseError(f"Response from {url} exceeds {max_bytes} bytes")

    try:
        data = json.loads(bytes(body))
    except ValueError as e:
        raise KeyFetchError(f"Response from {url} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise KeyFetchError(f"Response from {url} is not a JSON object")
    return data

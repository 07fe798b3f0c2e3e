"""Signing client used by the control center to call an agent."""

from __future__ import annotations

import json
import ssl
import time
from typing import Any

import aiohttp

from cdxagent.common.hmac import SignatureEngine, canonical_path

DEFAULT_TIMESTAMP_HEADER = "X-CDX-Timestamp"
DEFAULT_SIGNATURE_HEADER = "X-CDX-Signature"


def sign_request(
    secret: str | bytes,
    method: str,
    path: str,
    body: str | bytes = b"",
    timestamp: int | str | None = None,
    timestamp_header: str = DEFAULT_TIMESTAMP_HEADER,
    signature_header: str = DEFAULT_SIGNATURE_HEADER,
) -> dict[str, str]:
    """
    Build the authentication headers for one request.

    Args:
        secret: Shared secret configured on the agent
        method: HTTP method
        path: Request path, percent-decoded; a query string, if present,
            is not signed
        body: Exact bytes that will be sent as the request body
        timestamp: Seconds since the epoch (defaults to now)

    Returns:
        Headers to merge into the outgoing request
    """
    ts = str(int(time.time()) if timestamp is None else timestamp)
    signature = SignatureEngine(secret).generate_signature(ts, method, canonical_path(path), body)
    return {timestamp_header: ts, signature_header: signature}


class AgentClientError(Exception):
    """Transport-level failure talking to an agent."""


class AgentClient:
    """Async HTTP client that signs every request."""

    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout: float = 30.0,
        ssl_context: ssl.SSLContext | None = None,
        timestamp_header: str = DEFAULT_TIMESTAMP_HEADER,
        signature_header: str = DEFAULT_SIGNATURE_HEADER,
    ):
        self._base_url = base_url.rstrip("/")
        self._secret = secret
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._ssl_context = ssl_context
        self._timestamp_header = timestamp_header
        self._signature_header = signature_header
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> AgentClient:
        connector = aiohttp.TCPConnector(ssl=self._ssl_context) if self._ssl_context else None
        self._session = aiohttp.ClientSession(connector=connector, timeout=self._timeout)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> tuple[int, Any]:
        """
        Send a signed request.

        Returns:
            Tuple of (status_code, decoded_json_or_text)
        """
        if self._session is None:
            raise AgentClientError("Client session not started; use 'async with'")

        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        headers = sign_request(
            self._secret,
            method,
            path,
            body,
            timestamp_header=self._timestamp_header,
            signature_header=self._signature_header,
        )
        if body:
            headers["Content-Type"] = "application/json"

        try:
            async with self._session.request(
                method.upper(),
                f"{self._base_url}{path}",
                data=body or None,
                params=params,
                headers=headers,
            ) as response:
                try:
                    data = await response.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    data = await response.text()
                return response.status, data
        except aiohttp.ClientError as exc:
            raise AgentClientError(str(exc)) from exc

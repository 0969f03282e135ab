from __future__ import annotations
from typing import Mapping, Optional

import httpx

from ..config import SETTINGS
from ..errors import TransportFailure
from ..models.records import Response
from .base import Transport

_headers = {
    "User-Agent": SETTINGS.user_agent,
    "Accept": "application/json, text/plain, */*",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
}


class HttpxTransport(Transport):
    """
    httpx-backed transport with polite default headers.

    Pass ``client`` to reuse a connection pool; otherwise a short-lived client
    is opened per call.
    """

    def __init__(self, client: Optional[httpx.Client] = None, default_headers: Optional[Mapping[str, str]] = None):
        self._client = client
        self._default_headers = dict(_headers if default_headers is None else default_headers)

    def execute(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Optional[bytes],
        timeout: float,
    ) -> Response:
        merged = {**self._default_headers, **dict(headers)}
        try:
            if self._client is not None:
                r = self._client.request(method, url, headers=merged, content=body, timeout=timeout)
            else:
                with httpx.Client(timeout=timeout, follow_redirects=True) as c:
                    r = c.request(method, url, headers=merged, content=body)
        except httpx.HTTPError as e:
            raise TransportFailure(f"{type(e).__name__}: {e}") from e
        return Response(status=r.status_code, headers=dict(r.headers), body=r.content)

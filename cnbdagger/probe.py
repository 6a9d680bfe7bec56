"""HTTP checks against a ready instance."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from cnbdagger.exceptions import ProbeError

logger = logging.getLogger(__name__)


class HTTPProbe:
    """
    Thin httpx client bound to an instance base URL.

    Usage:
        with HTTPProbe("http://localhost:32768") as probe:
            probe.get("/health")
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def get(self, path: str = "/") -> httpx.Response:
        """
        GET path and require a 2xx response.

        Raises:
            ProbeError: On transport failure or non-2xx status.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._client.get(path)
        except httpx.HTTPError as exc:
            raise ProbeError(f"GET {url} failed: {exc}", url=url) from exc

        if not response.is_success:
            raise ProbeError(
                f"received bad response from application: GET {url} -> {response.status_code}",
                url=url,
                status_code=response.status_code,
            )
        logger.debug("GET %s -> %d", url, response.status_code)
        return response

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HTTPProbe":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

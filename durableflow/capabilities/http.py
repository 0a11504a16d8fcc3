"""
HTTP capability backed by httpx.
"""

from typing import Any, Dict, Optional
import logging

import httpx

from durableflow.config import settings


logger = logging.getLogger(__name__)


class HttpClient:
    """
    Async HTTP client used by http nodes.

    A fresh ``httpx.AsyncClient`` is opened per request so no connection
    outlives the node that made it.

    Args:
        timeout: Default request timeout in seconds
        transport: Optional httpx transport (e.g. ``httpx.MockTransport``)
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        content: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Send a request and return the response.

        Raises:
            httpx.HTTPError: On transport failures and timeouts
        """
        async with httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            transport=self.transport,
        ) as client:
            logger.debug(f"HTTP {method.upper()} {url}")
            return await client.request(
                method.upper(),
                url,
                headers=headers,
                params=params,
                json=json,
                content=content,
            )

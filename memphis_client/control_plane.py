"""
Control-plane REST client.

Resource lifecycle calls (factories, stations, producers, consumers) are
plain authenticated POSTs against the control plane's HTTP API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from memphis_client.exceptions import ControlPlaneError

logger = logging.getLogger(__name__)

CREATE_FACTORY = "/api/factories/createFactory"
REMOVE_FACTORY = "/api/factories/removeFactory"
CREATE_STATION = "/api/stations/createStation"
REMOVE_STATION = "/api/stations/removeStation"
CREATE_PRODUCER = "/api/producers/createProducer"
DESTROY_PRODUCER = "/api/producers/destroyProducer"
CREATE_CONSUMER = "/api/consumers/createConsumer"
DESTROY_CONSUMER = "/api/consumers/destroyConsumer"


class ControlPlaneClient:
    """
    Thin wrapper over ``httpx.AsyncClient`` for the control-plane API.

    Args:
        host: Control-plane host, without scheme
        port: Control-plane port
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``
        timeout_ms: Per-request timeout in milliseconds
    """

    def __init__(
        self,
        host: str,
        port: int,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_ms: int = 15000,
    ):
        self.base_url = f"http://{host}:{port}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=timeout_ms / 1000.0,
        )

    async def post(self, path: str, body: Dict[str, Any], access_token: str) -> Dict[str, Any]:
        """
        POST ``body`` as JSON with a bearer token.

        Returns:
            The decoded JSON response, or an empty dict for an empty body

        Raises:
            ControlPlaneError: On a non-2xx status or an HTTP transport failure
        """
        try:
            response = await self._client.post(
                path,
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.error("Control-plane request failed", extra={
                "path": path,
                "error": str(e),
            })
            raise ControlPlaneError(f"{path} failed: {e}") from e

        if not response.is_success:
            logger.error("Control-plane request rejected", extra={
                "path": path,
                "status_code": response.status_code,
            })
            raise ControlPlaneError(
                f"{path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        logger.debug("Control-plane request ok", extra={"path": path})
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def aclose(self) -> None:
        await self._client.aclose()

"""
HTTP Actuator - Delegates extension operations to a provisioning service.

Each operation is a POST to ``{base_url}/{operation}`` with the Extension and
its Cluster as JSON. The response status decides the outcome: 2xx is success,
timeouts, conflicts, throttling and server errors are retriable, any other
client error is terminal.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from actuators.base import Actuator, OperationResult
from errors import RetriableError, TerminalError
from resources import Cluster, Extension

logger = logging.getLogger(__name__)

RETRIABLE_STATUSES = frozenset({408, 409, 425, 429})


def classify_response(
    operation: str, status: int, body: Dict[str, Any]
) -> OperationResult:
    """
    Turn a provisioning service response into an operation outcome.

    Args:
        operation: Operation name, used in error messages.
        status: HTTP status code.
        body: Decoded response body ({} if empty or not JSON).

    Returns:
        OperationResult for 2xx responses.

    Raises:
        RetriableError: For 408/409/425/429 and 5xx responses.
        TerminalError: For all other non-2xx responses.
    """
    if 200 <= status < 300:
        requeue_after = body.get("requeueAfter")
        return OperationResult(
            requeue_after=float(requeue_after) if requeue_after is not None else None,
            message=body.get("message", ""),
        )

    message = body.get("message") or f"{operation} failed with HTTP {status}"
    if status in RETRIABLE_STATUSES or status >= 500:
        raise RetriableError(message)
    raise TerminalError(message, codes=body.get("codes"))


class HTTPActuator(Actuator):
    """
    Actuator that calls a remote provisioning service.

    The service is responsible for one extension type, configured through
    ``extension_type``.
    """

    def __init__(self):
        self.base_url: str = ""
        self.token: Optional[str] = None
        self.timeout: int = 300
        self._extension_type: str = ""
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def extension_type(self) -> str:
        return self._extension_type

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP actuator configuration from environment variables."""
        return {
            "base_url": os.getenv("HTTP_ACTUATOR_BASE_URL", ""),
            "extension_type": os.getenv("HTTP_ACTUATOR_EXTENSION_TYPE", ""),
            "token": os.getenv("HTTP_ACTUATOR_TOKEN", ""),
            "timeout": int(os.getenv("HTTP_ACTUATOR_TIMEOUT", "300")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the actuator with configuration."""
        self.base_url = config.get("base_url", self.base_url).rstrip("/")
        self._extension_type = config.get("extension_type", self._extension_type)
        self.token = config.get("token") or None
        self.timeout = config.get("timeout", self.timeout)

        if not self.base_url:
            raise ValueError("HTTP actuator requires 'base_url'")
        if not self._extension_type:
            raise ValueError("HTTP actuator requires 'extension_type'")

        logger.debug(
            f"HTTP actuator initialized: base_url={self.base_url}, "
            f"extension_type={self._extension_type}, timeout={self.timeout}s"
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def _call(
        self, operation: str, extension: Extension, cluster: Optional[Cluster]
    ) -> OperationResult:
        url = f"{self.base_url}/{operation}"
        payload = {
            "extension": extension.to_dict(),
            "cluster": cluster.to_dict() if cluster else None,
        }

        logger.info(f"Calling {operation} for extension {extension.key}")
        try:
            async with self._get_session().post(url, json=payload) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {"message": await response.text()}
                if not body:
                    body = {}
                elif not isinstance(body, dict):
                    # JSON that is not an object only carries a message
                    body = {"message": str(body)}
                return classify_response(operation, response.status, body)
        except aiohttp.ClientError as e:
            raise RetriableError(f"{operation} request to {url} failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise RetriableError(f"{operation} request to {url} timed out") from e

    async def reconcile(self, extension, cluster) -> OperationResult:
        return await self._call("reconcile", extension, cluster)

    async def delete(self, extension, cluster) -> OperationResult:
        return await self._call("delete", extension, cluster)

    async def force_delete(self, extension, cluster) -> OperationResult:
        return await self._call("force-delete", extension, cluster)

    async def migrate(self, extension, cluster) -> OperationResult:
        return await self._call("migrate", extension, cluster)

    async def restore(self, extension, cluster) -> OperationResult:
        return await self._call("restore", extension, cluster)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

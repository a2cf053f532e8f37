"""HTTP notifier posting camelCase JSON to the downstream ledger."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from .base import BaseNotifier, ChangeKind, NotificationAck

logger = logging.getLogger(__name__)


class HttpNotifier(BaseNotifier):
    """POST ``{<camelCase keys>, changeKind}`` to ``<base_url><endpoint>``.

    Transport errors and non-2xx responses are reported as an unsuccessful
    :class:`NotificationAck`; nothing is raised to the caller.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def payload(entity_keys: Mapping[str, Any], change_kind: ChangeKind) -> dict[str, Any]:
        body = {to_camel(k): _jsonable(v) for k, v in entity_keys.items()}
        body["changeKind"] = change_kind.value
        return body

    async def notify(
        self,
        entity: str,
        entity_keys: Mapping[str, Any],
        change_kind: ChangeKind,
        endpoint: Optional[str] = None,
    ) -> NotificationAck:
        path = endpoint or f"/{entity.replace('_', '-')}"
        if not path.startswith("/"):
            path = "/" + path
        url = f"{self.base_url}{path}"
        body = self.payload(entity_keys, change_kind)
        logger.debug(f"Notifying {url} with {body}")
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as exc:
            logger.error(f"Notification to {url} failed: {exc}")
            return NotificationAck(success=False, message=f"Error calling downstream API: {exc}")

        if response.is_success:
            if not response.content:
                return NotificationAck(success=True, message="Operation completed successfully")
            try:
                ack = NotificationAck.model_validate_json(response.content)
            except ValidationError:
                logger.warning(f"Unexpected response body from {url}, treating as success")
                return NotificationAck(
                    success=True, message="Operation completed but response format was unexpected"
                )
            if not ack.success:
                logger.warning(f"Downstream {url} returned success=false: {ack.message}")
            return ack

        message = f"HTTP {response.status_code}"
        try:
            error = NotificationAck.model_validate_json(response.content)
            if error.message:
                message = f"{message}: {error.message}"
        except ValidationError:
            pass
        logger.warning(f"Notification to {url} failed: {message}")
        return NotificationAck(success=False, message=message)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)

"""Remote store client used by push, pull and the connection probe."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

from core.sync_types import ChangeType, parse_change_type
from datetime_utils import parse_rfc3339, to_rfc3339_utc, utc_now
from services.sync_errors import RemoteError, SyncConfigurationError
from services.sync_log import get_sync_logger


logger = get_sync_logger("remote")


@dataclass(frozen=True)
class RemoteAck:
    remote_id: Optional[str] = None


@dataclass(frozen=True)
class RemoteChange:
    table_name: str
    record_id: str
    change_type: ChangeType
    data: Dict[str, Any]
    server_updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RemoteChange":
        table = payload.get("table_name") or payload.get("table")
        record = payload.get("record_id") or payload.get("id")
        if not table or record in (None, ""):
            raise ValueError(f"Malformed remote change: {payload!r}")
        return cls(
            table_name=str(table),
            record_id=str(record),
            change_type=parse_change_type(payload.get("change_type") or ChangeType.UPDATE),
            data=dict(payload.get("data") or {}),
            server_updated_at=parse_rfc3339(payload.get("server_updated_at")),
        )


@dataclass(frozen=True)
class ChangeBatch:
    changes: List[RemoteChange]
    watermark: Optional[str] = None


class RemoteStore(Protocol):
    """What the engine needs from a remote back end."""

    def is_configured(self) -> bool: ...

    async def upsert(self, table_name: str, record_id: str, data: Dict[str, Any]) -> RemoteAck: ...

    async def delete(self, table_name: str, record_id: str, data: Optional[Dict[str, Any]] = None) -> RemoteAck: ...

    async def get_changes(self, since: Optional[str]) -> ChangeBatch: ...

    async def ping(self) -> bool: ...


class RestRemoteStore:
    """``RemoteStore`` over the REST sync API.

    The underlying ``httpx.AsyncClient`` is created lazily; use ``async with``
    or :meth:`aclose` to release it.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        table_prefix: str = "",
        device_id: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = (url or "").rstrip("/")
        self.api_key = api_key or ""
        self.table_prefix = table_prefix or ""
        self.device_id = device_id
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def is_configured(self) -> bool:
        return bool(self.url and self.api_key)

    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        if self.device_id:
            headers["X-Device-Id"] = self.device_id
        return headers

    def _http(self) -> httpx.AsyncClient:
        if not self.is_configured():
            raise SyncConfigurationError("Remote store is not configured (url and api key are required)")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RestRemoteStore":
        self._http()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _record_path(self, table_name: str, record_id: str) -> str:
        return f"/api/sync/{quote(self.table_prefix + table_name)}/{quote(str(record_id), safe='')}"

    async def _send(self, method: str, path: str, **kwargs) -> Any:
        response = await self._http().request(method, path, **kwargs)
        if response.status_code >= 400:
            detail = response.text[:200] if response.text else response.reason_phrase
            raise RemoteError(f"HTTP {response.status_code}: {detail}", response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _ack(body: Any, fallback: str) -> RemoteAck:
        if isinstance(body, dict):
            remote_id = body.get("id") or body.get("remote_id")
            if remote_id is not None:
                return RemoteAck(remote_id=str(remote_id))
        return RemoteAck(remote_id=fallback)

    # ------------------------------------------------------------------
    async def upsert(self, table_name: str, record_id: str, data: Dict[str, Any]) -> RemoteAck:
        body = await self._send("PUT", self._record_path(table_name, record_id), json=data or {})
        logger.debug("Upserted %s:%s", table_name, record_id)
        return self._ack(body, record_id)

    async def delete(
        self, table_name: str, record_id: str, data: Optional[Dict[str, Any]] = None
    ) -> RemoteAck:
        """Soft delete: the record stays remotely with ``deleted_at`` set."""

        payload = dict(data or {})
        payload["deleted_at"] = payload.get("deleted_at") or to_rfc3339_utc(utc_now())
        body = await self._send("PUT", self._record_path(table_name, record_id), json=payload)
        logger.debug("Deleted %s:%s", table_name, record_id)
        return self._ack(body, record_id)

    async def get_changes(self, since: Optional[str]) -> ChangeBatch:
        params = {"since": since} if since else {}
        body = await self._send("GET", "/api/sync/changes", params=params)
        if body is None:
            return ChangeBatch(changes=[], watermark=since)
        if isinstance(body, list):
            raw, watermark = body, None
        elif isinstance(body, dict):
            raw, watermark = body.get("changes") or [], body.get("watermark")
        else:
            raise RemoteError("Unexpected changes payload", retryable=False)
        changes = [RemoteChange.from_dict(item) for item in raw]
        if watermark is None:
            stamps = [c.server_updated_at for c in changes if c.server_updated_at]
            watermark = to_rfc3339_utc(max(stamps)) if stamps else since
        return ChangeBatch(changes=changes, watermark=watermark)

    async def ping(self) -> bool:
        response = await self._http().get("/api/sync/ping")
        return response.status_code < 500


__all__ = ["ChangeBatch", "RemoteAck", "RemoteChange", "RemoteStore", "RestRemoteStore"]

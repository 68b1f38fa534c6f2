"""
REMOTE BACKEND CONTRACT & HTTP CLIENT

This module provides:
1. RemoteBackend: the per-table push/pull contract the coordinator talks to
2. PushAck: outcome of delivering one queue item
3. HttpRemoteBackend: PostgREST-style REST implementation over httpx

Failure classes:
- Network errors, timeouts and 5xx responses raise SyncTransportError
  (retryable, the run fails)
- Other 4xx responses on push return a rejected PushAck (the item stays
  queued and its attempts grow)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

import httpx

from .errors import SyncTransportError
from .models import SyncQueueItem
from .serialization import serialize_doc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushAck:
    accepted: bool
    remote_id: Optional[str] = None
    error: Optional[str] = None


class RemoteBackend(ABC):
    """Authenticated remote store, one table per synced collection"""

    @abstractmethod
    async def push(self, item: SyncQueueItem) -> PushAck:
        """Deliver one queued mutation"""

    @abstractmethod
    async def pull(self, table: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """All remote records of a table, optionally only those updated after `since`"""

    @abstractmethod
    async def fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Current remote version of one record, None when absent"""

    async def close(self) -> None:
        return None


class HttpRemoteBackend(RemoteBackend):
    """
    REST backend speaking the PostgREST dialect (Supabase `/rest/v1`).

    Usage:
        backend = HttpRemoteBackend(settings.remote_base_url, api_key, token)
        ack = await backend.push(item)
        rows = await backend.pull("payments", since=last_sync)
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if api_key:
            headers["apikey"] = api_key
        if access_token or api_key:
            headers["Authorization"] = f"Bearer {access_token or api_key}"

        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"[SYNC] Remote {method} {path} timed out")
            raise SyncTransportError(f"Remote backend timed out on {method} {path}")
        except httpx.HTTPError as e:
            logger.error(f"[SYNC] Remote {method} {path} failed: {e}")
            raise SyncTransportError(f"Remote backend unreachable: {e}")

        if response.status_code >= 500:
            logger.error(f"[SYNC] Remote error: {response.status_code} - {response.text}")
            raise SyncTransportError(
                f"Remote backend error {response.status_code} on {method} {path}",
                status_code=response.status_code
            )
        return response

    @staticmethod
    def _first_id(response: httpx.Response) -> Optional[str]:
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, list):
            body = body[0] if body else None
        if isinstance(body, dict) and body.get("id") is not None:
            return str(body["id"])
        return None

    async def push(self, item: SyncQueueItem) -> PushAck:
        table = item.table
        payload = serialize_doc(item.payload)
        prefer = {"Prefer": "return=representation"}

        if item.action == "INSERT":
            response = await self._request(
                "POST", f"/{table}",
                json=[payload],
                headers={"Prefer": "resolution=merge-duplicates,return=representation"}
            )
        elif item.action == "UPDATE":
            response = await self._request(
                "PATCH", f"/{table}",
                params={"id": f"eq.{item.record_id}"},
                json=payload,
                headers=prefer
            )
        else:
            response = await self._request(
                "DELETE", f"/{table}",
                params={"id": f"eq.{item.record_id}"}
            )
            # Already gone remotely
            if response.status_code == 404:
                return PushAck(accepted=True)

        if response.is_success:
            return PushAck(accepted=True, remote_id=self._first_id(response))

        logger.warning(
            f"[SYNC] Remote rejected {item.action} {table}:{item.record_id}: "
            f"{response.status_code} - {response.text}"
        )
        return PushAck(accepted=False, error=f"{response.status_code}: {response.text}")

    async def pull(self, table: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        params = {"select": "*", "order": "updated_at.asc"}
        if since is not None:
            params["updated_at"] = f"gt.{since.isoformat()}"

        response = await self._request("GET", f"/{table}", params=params)
        if not response.is_success:
            raise SyncTransportError(
                f"Pull of {table} rejected: {response.status_code} - {response.text}",
                status_code=response.status_code
            )
        rows = response.json()
        return rows if isinstance(rows, list) else []

    async def fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request(
            "GET", f"/{table}",
            params={"select": "*", "id": f"eq.{record_id}"}
        )
        if response.status_code == 404 or not response.is_success:
            return None
        rows = response.json()
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows or None


class UnconfiguredBackend(RemoteBackend):
    """Stand-in used when no REMOTE_BASE_URL is set: every call is a transport failure"""

    async def push(self, item: SyncQueueItem) -> PushAck:
        raise SyncTransportError("No remote backend configured")

    async def pull(self, table: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        raise SyncTransportError("No remote backend configured")

    async def fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise SyncTransportError("No remote backend configured")

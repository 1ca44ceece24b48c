from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx

from .config import CONFIG

logger = logging.getLogger(__name__)


class SupabaseError(Exception):
    """A store request failed in transport or was rejected by the server."""

    def __init__(
        self,
        action: str,
        status_code: int,
        detail: str,
        *,
        object_label: Optional[str] = None,
    ) -> None:
        label = f" ({object_label})" if object_label else ""
        super().__init__(f"Supabase {action} failed{label}: status={status_code}, body={detail}")
        self.action = action
        self.status_code = status_code
        self.detail = detail
        self.object_label = object_label


@lru_cache
def _supabase_config() -> tuple[str, str]:
    url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL")
    service_role = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not service_role:
        raise RuntimeError("Missing SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY for store access.")
    return url.rstrip("/"), service_role


async def _describe_response(resp: httpx.Response) -> str:
    try:
        return resp.text or "<empty response>"
    except Exception:
        return "<unable to read response>"


async def _raise_supabase_error(
    resp: httpx.Response,
    action: str,
    *,
    object_label: Optional[str] = None,
) -> None:
    detail = await _describe_response(resp)
    status = resp.status_code if resp.status_code >= 400 else 500
    raise SupabaseError(action, status, detail, object_label=object_label)


@dataclass
class SupabaseClient:
    base_url: str
    api_key: str
    access_token: str
    timeout: float = CONFIG.request_timeout_seconds

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=self._headers(headers),
                )
        except httpx.HTTPError as exc:
            logger.warning("Store unreachable for %s %s: %s", method, table, exc)
            raise SupabaseError(method.lower(), 503, str(exc), object_label=f"table={table}") from exc

    async def select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = await self.request("GET", table, params=params)
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "select", object_label=f"table={table}")
        return resp.json()

    async def upsert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        on_conflict: str,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=payload,
            headers={
                "Prefer": "resolution=merge-duplicates,return=representation",
            },
        )
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "upsert", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def update(
        self,
        table: str,
        payload: Dict[str, Any],
        params: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "PATCH",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "update", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def rpc(self, fn: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self.request("POST", f"rpc/{fn}", json=payload)
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "rpc", object_label=f"fn={fn}")
        return resp.json() if resp.content else None

    async def delete(self, table: str, params: Dict[str, Any]) -> None:
        resp = await self.request("DELETE", table, params=params)
        if resp.status_code >= 400:
            await _raise_supabase_error(resp, "delete", object_label=f"table={table}")


@lru_cache
def get_admin_client() -> SupabaseClient:
    base_url, service_role = _supabase_config()
    return SupabaseClient(base_url=base_url, api_key=service_role, access_token=service_role)

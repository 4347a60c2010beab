"""Async client for a Redis-over-REST key-value service (Vercel KV / Upstash)."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import CONFIG

logger = logging.getLogger(__name__)


class KVError(RuntimeError):
    """The KV service rejected a command or could not be reached."""


def _describe_response(resp: httpx.Response) -> str:
    text = resp.text or "<empty response>"
    if len(text) > 200:
        text = text[:197] + "..."
    return text


@dataclass
class KVClient:
    base_url: str
    token: str
    timeout: float = 10.0
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: Any) -> Any:
        url = f"{self.base_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise KVError(f"KV request to {path or '/'} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise KVError(f"KV request failed: status={resp.status_code}, body={_describe_response(resp)}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise KVError(f"KV response is not JSON: {_describe_response(resp)}") from exc

    async def command(self, *args: Any) -> Any:
        data = await self._post("", [str(arg) for arg in args])
        if isinstance(data, dict) and data.get("error"):
            raise KVError(f"KV command {args[0]} failed: {data['error']}")
        return data.get("result") if isinstance(data, dict) else None

    async def pipeline(self, commands: Sequence[Sequence[Any]]) -> List[Any]:
        if not commands:
            return []
        payload = [[str(arg) for arg in cmd] for cmd in commands]
        data = await self._post("/pipeline", payload)
        results: List[Any] = []
        for index, item in enumerate(data or []):
            if isinstance(item, dict) and item.get("error"):
                raise KVError(f"KV pipeline command #{index} failed: {item['error']}")
            results.append(item.get("result") if isinstance(item, dict) else None)
        return results

    async def get(self, key: str) -> Optional[str]:
        return await self.command("GET", key)

    async def set(self, key: str, value: str, *, ex: Optional[int] = None) -> None:
        if ex:
            await self.command("SET", key, value, "EX", ex)
        else:
            await self.command("SET", key, value)

    async def delete(self, key: str) -> None:
        await self.command("DEL", key)

    async def hgetall(self, key: str) -> Dict[str, str]:
        result = await self.command("HGETALL", key)
        if not result:
            return {}
        if isinstance(result, dict):
            return {str(k): str(v) for k, v in result.items()}
        return {str(result[i]): str(result[i + 1]) for i in range(0, len(result) - 1, 2)}


@lru_cache
def get_kv_client() -> KVClient:
    if not CONFIG.kv_rest_api_url or not CONFIG.kv_rest_api_token:
        raise RuntimeError("Missing KV_REST_API_URL/KV_REST_API_TOKEN for KV access.")
    logger.info("kv client configured", extra={"kv_url": CONFIG.kv_rest_api_url})
    return KVClient(base_url=CONFIG.kv_rest_api_url, token=CONFIG.kv_rest_api_token)

"""Firebase Realtime Database REST store (httpx)."""
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from labwatch_shared.exceptions import StoreError
from labwatch_shared.paths import split_path
from labwatch_shared.store.base import RemoteStateStore

logger = logging.getLogger(__name__)


class FirebaseStore(RemoteStateStore):
    """Talks to `{base_url}/{path}.json` with GET/PUT/POST/DELETE.

    `token` is sent as the `auth` query parameter (database secret or ID token).
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = 10,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _url(self, path: str) -> str:
        return "/" + "/".join(quote(p, safe="") for p in split_path(path)) + ".json"

    def _params(self, **extra) -> dict:
        params = dict(extra)
        if self.token:
            params["auth"] = self.token
        return params

    async def _request(self, method: str, path: str, json_body: Any = None, **params) -> Any:
        try:
            client = await self._get_client()
            kwargs = {"params": self._params(**params)}
            if method in ("PUT", "POST"):
                kwargs["json"] = json_body
            resp = await client.request(method, self._url(path), **kwargs)
            resp.raise_for_status()
            if not resp.content:
                return None
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise StoreError(
                f"Firebase {method} failed with HTTP {e.response.status_code}",
                path=path,
                detail=e.response.text[:500],
            ) from e
        except httpx.HTTPError as e:
            raise StoreError(f"Firebase {method} failed: {e}", path=path) from e
        except ValueError as e:
            raise StoreError(f"Invalid JSON from Firebase: {e}", path=path) from e

    async def get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def set(self, path: str, value: Any) -> None:
        if value is None:
            await self.delete(path)
            return
        await self._request("PUT", path, value)

    async def push(self, path: str, value: Any) -> str:
        data = await self._request("POST", path, value)
        if not isinstance(data, dict) or "name" not in data:
            raise StoreError("Firebase push returned no key", path=path)
        return data["name"]

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def keys(self, path: str) -> list[str]:
        data = await self._request("GET", path, shallow="true")
        if not isinstance(data, dict):
            return []
        return sorted(data)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

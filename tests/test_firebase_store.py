"""Firebase REST 存储测试（httpx.MockTransport）。"""
import json

import httpx
import pytest

from labwatch_shared.exceptions import StoreError
from labwatch_shared.store.firebase_store import FirebaseStore


def _store(handler, token="secret"):
    return FirebaseStore("https://lab.firebaseio.com", token=token, transport=httpx.MockTransport(handler))


class TestFirebaseStore:
    @pytest.mark.asyncio
    async def test_get(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"PCName": "pc-01"})

        s = _store(handler)
        assert await s.get("machines/pc-01/current") == {"PCName": "pc-01"}
        assert seen[0].url.path == "/machines/pc-01/current.json"
        assert seen[0].url.params["auth"] == "secret"
        await s.close()

    @pytest.mark.asyncio
    async def test_segments_are_quoted(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=None)

        s = _store(handler, token="")
        assert await s.get("lab_messages/LAB A") is None
        assert seen[0].url.raw_path.startswith(b"/lab_messages/LAB%20A.json")
        assert "auth" not in seen[0].url.params

    @pytest.mark.asyncio
    async def test_put_and_delete(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.content))
            return httpx.Response(200, json=None)

        s = _store(handler)
        await s.set("commands/pc-01", "KILL_FORBIDDEN")
        await s.set("commands/pc-01", None)
        assert seen[0] == ("PUT", b'"KILL_FORBIDDEN"')
        assert seen[1][0] == "DELETE"

    @pytest.mark.asyncio
    async def test_push_returns_name(self):
        def handler(request):
            assert request.method == "POST"
            return httpx.Response(200, json={"name": "-Nabc"})

        assert await _store(handler).push("machines/pc-01/history", {"A": 1}) == "-Nabc"

    @pytest.mark.asyncio
    async def test_push_without_name(self):
        s = _store(lambda request: httpx.Response(200, json={}))
        with pytest.raises(StoreError):
            await s.push("h", {"A": 1})

    @pytest.mark.asyncio
    async def test_keys_shallow(self):
        def handler(request):
            assert request.url.params["shallow"] == "true"
            return httpx.Response(200, json={"pc-02": True, "pc-01": True})

        assert await _store(handler).keys("machines") == ["pc-01", "pc-02"]

    @pytest.mark.asyncio
    async def test_http_error(self):
        s = _store(lambda request: httpx.Response(401, text="Permission denied"))
        with pytest.raises(StoreError) as exc:
            await s.get("machines")
        assert "401" in str(exc.value)
        assert exc.value.detail == "Permission denied"

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        with pytest.raises(StoreError):
            await _store(handler).get("machines")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        s = _store(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(StoreError):
            await s.get("machines")

    @pytest.mark.asyncio
    async def test_put_body_is_json(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=None)

        await _store(handler).set("groups/LAB A/classMode", True)
        assert bodies == [True]

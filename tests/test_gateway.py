"""Tests for the REST gateway."""

import json

import httpx
import pytest

from anchor.errors import AnchorError, ErrorKind
from anchor.gateway import Order, RestGateway, RetryPolicy, eq, escape_like, ilike, in_, is_null


def make_gateway(handler, attempts=2):
    return RestGateway(
        "https://xyz.supabase.co/",
        "anon-key",
        access_token="user-jwt",
        retry=RetryPolicy(attempts=attempts, delay=0, timeout=1.0),
        transport=httpx.MockTransport(handler),
    )


class TestFilters:
    """Tests for PostgREST filter encoding."""

    def test_eq(self):
        assert eq("user_id", "u1").to_param() == ("user_id", "eq.u1")

    def test_eq_bool(self):
        assert eq("is_default", True).to_param() == ("is_default", "eq.true")

    def test_in(self):
        assert in_("link_id", ["a", "b"]).to_param() == ("link_id", "in.(a,b)")

    def test_ilike(self):
        assert ilike("name", "Py%").to_param() == ("name", "ilike.Py%")

    def test_is_null(self):
        assert is_null("space_id").to_param() == ("space_id", "is.null")

    def test_escape_like(self):
        assert escape_like("100%_done") == "100\\%\\_done"

    def test_escape_like_asterisk(self):
        assert escape_like("c*") == "c\\*"
        assert ilike("name", escape_like("c*")).to_param() == ("name", "ilike.c\\*")

    def test_order(self):
        assert Order("created_at", ascending=False).to_param() == "created_at.desc"


class TestRequests:
    """Tests for request construction."""

    @pytest.mark.asyncio
    async def test_select_params_and_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"id": "l1"}])

        gw = make_gateway(handler)
        rows = await gw.select(
            "links",
            filters=[eq("user_id", "u1")],
            order=[Order("created_at", ascending=False)],
            offset=30,
            limit=30,
        )

        assert rows == [{"id": "l1"}]
        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/links"
        params = request.url.params
        assert params["select"] == "*"
        assert params["user_id"] == "eq.u1"
        assert params["order"] == "created_at.desc"
        assert params["offset"] == "30"
        assert params["limit"] == "30"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer user-jwt"
        assert "Prefer" not in request.headers

    @pytest.mark.asyncio
    async def test_insert_asks_for_representation(self):
        seen = []

        def handler(request):
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(201, json=[{**body, "id": "t1"}])

        gw = make_gateway(handler)
        rows = await gw.insert("tags", {"name": "python"})

        assert rows == [{"name": "python", "id": "t1"}]
        assert seen[0].method == "POST"
        assert seen[0].headers["Prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_delete_empty_body(self):
        gw = make_gateway(lambda request: httpx.Response(204))
        assert await gw.delete("links", [eq("id", "l1")]) == []

    @pytest.mark.asyncio
    async def test_update_requires_filter(self):
        gw = make_gateway(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(ValueError):
            await gw.update("links", {"note": "x"}, [])

    @pytest.mark.asyncio
    async def test_falls_back_to_api_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        gw = RestGateway("https://xyz.supabase.co", "anon-key", transport=httpx.MockTransport(handler))
        await gw.select("spaces")
        assert seen[0].headers["Authorization"] == "Bearer anon-key"


class TestRetry:
    """Tests for the retry policy."""

    @pytest.mark.asyncio
    async def test_retries_server_error_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, json={"message": "unavailable"})
            return httpx.Response(200, json=[{"id": "l1"}])

        gw = make_gateway(handler)
        assert await gw.select("links") == [{"id": "l1"}]
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"message": "boom"})

        gw = make_gateway(handler, attempts=3)
        with pytest.raises(AnchorError) as exc_info:
            await gw.select("links")

        assert exc_info.value.kind is ErrorKind.NETWORK
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_conflict_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(409, json={"code": "23505", "message": "duplicate key value"})

        gw = make_gateway(handler)
        with pytest.raises(AnchorError) as exc_info:
            await gw.insert("links", {"url": "https://a.com"})

        assert exc_info.value.kind is ErrorKind.CONFLICT
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        gw = make_gateway(handler)
        with pytest.raises(AnchorError) as exc_info:
            await gw.select("links")

        assert exc_info.value.kind is ErrorKind.NETWORK
        assert "timed out" in exc_info.value.message
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_connect_error_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gw = make_gateway(handler, attempts=1)
        with pytest.raises(AnchorError) as exc_info:
            await gw.select("links")
        assert exc_info.value.kind is ErrorKind.NETWORK

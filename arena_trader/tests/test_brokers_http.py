"""
REST broker adapter tests against httpx.MockTransport.
"""
import json
from types import SimpleNamespace

import httpx
import pytest
import requests

from arena_trader.brokers.alpaca import AlpacaBroker, extract_alpaca_fill
from arena_trader.brokers.fulfillment import OrderState, RetryPolicy
from arena_trader.brokers.http import HttpBroker
from arena_trader.brokers.ibkr import InteractiveBrokersBroker
from arena_trader.brokers.schwab import SchwabBroker
from arena_trader.brokers.tradier import TradierBroker
from arena_trader.brokers.webull import WebullBroker
from arena_trader.tracking import ApiCallTracker

FAST = RetryPolicy(max_attempts=3, interval_sec=0)


def tradier_handler(order_status="filled", submit_status=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if seen is not None:
            seen.append(request)
        if path.endswith("/markets/quotes"):
            return httpx.Response(200, json={"quotes": {"quote": {"symbol": "AAPL", "last": 150.0}}})
        if path.endswith("/orders") and request.method == "POST":
            if submit_status != 200:
                return httpx.Response(submit_status, text="insufficient buying power")
            return httpx.Response(200, json={"order": {"id": 4242, "status": "ok"}})
        if path.endswith("/orders/4242"):
            return httpx.Response(
                200,
                json={
                    "order": {
                        "id": 4242,
                        "status": order_status,
                        "avg_fill_price": 150.25,
                        "exec_quantity": 10,
                        "reason_description": "Halted symbol",
                    }
                },
            )
        if path.endswith("/markets/clock"):
            return httpx.Response(200, json={"clock": {"state": "open"}})
        return httpx.Response(404)

    return handler


def tradier(handler, tracker=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TradierBroker("token", "VA000001", client=client, policy=FAST, tracker=tracker or ApiCallTracker())


class TestTradier:
    @pytest.mark.asyncio
    async def test_market_buy_fills(self):
        seen = []
        broker = tradier(tradier_handler(seen=seen))
        result = await broker.submit_buy("AAPL", 10, "agent-1")

        assert result.success is True
        assert result.executed_price == pytest.approx(150.25)
        assert result.executed_quantity == 10
        assert result.slippage == pytest.approx(2.5)
        assert result.order_id == "4242"
        assert result.broker == "Tradier"

        order_post = next(r for r in seen if r.method == "POST")
        assert order_post.headers["Authorization"] == "Bearer token"
        assert b"side=buy" in order_post.content
        assert b"type=market" in order_post.content
        await broker.aclose()

    @pytest.mark.asyncio
    async def test_rejected_order(self):
        broker = tradier(tradier_handler(order_status="rejected"))
        result = await broker.submit_sell("AAPL", 10, "agent-1")
        assert result.success is False
        assert result.error == "Halted symbol"
        assert result.is_pending is False

    @pytest.mark.asyncio
    async def test_open_order_times_out_pending(self):
        broker = tradier(tradier_handler(order_status="open"))
        result = await broker.submit_buy("AAPL", 10, "agent-1")
        assert result.success is False
        assert result.is_pending is True
        assert result.order_id == "4242"

    @pytest.mark.asyncio
    async def test_http_error_becomes_failed_result(self):
        tracker = ApiCallTracker()
        broker = tradier(tradier_handler(submit_status=400), tracker=tracker)
        result = await broker.submit_buy("AAPL", 10, "agent-1")
        assert result.success is False
        assert "400" in result.error
        assert "insufficient buying power" in result.error
        assert tracker.errors_today == 1

    @pytest.mark.asyncio
    async def test_market_clock(self):
        assert await tradier(tradier_handler()).is_market_open() is True

    def test_extract_fill(self):
        update = TradierBroker.extract_fill({"order": {"status": "canceled"}})
        assert update.state == OrderState.CANCELLED
        assert TradierBroker.extract_fill({"order": {"status": "pending"}}).state == OrderState.POLLING
        assert TradierBroker.extract_fill(None).state == OrderState.POLLING

    def test_missing_credentials(self):
        with pytest.raises(ValueError):
            TradierBroker("", "VA000001")


def webull_handler(tokens):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/oauth/token":
            tokens.append(json.loads(request.content))
            return httpx.Response(200, json={"access_token": "wb-token", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer wb-token"
        if path == "/api/v1/quote":
            return httpx.Response(200, json={"data": {"last_price": 50.0}})
        if path == "/api/v1/trade/order" and request.method == "POST":
            body = json.loads(request.content)
            assert body["action"] == "SELL"
            assert body["order_type"] == "MARKET"
            return httpx.Response(200, json={"data": {"order_id": "wb-1"}})
        if path == "/api/v1/trade/order/wb-1":
            return httpx.Response(
                200, json={"data": {"status": "FILLED", "avg_fill_price": 49.9, "filled_quantity": 4}}
            )
        return httpx.Response(404)

    return handler


class TestWebull:
    @pytest.mark.asyncio
    async def test_sell_fills_with_single_token_fetch(self):
        tokens = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(webull_handler(tokens)))
        broker = WebullBroker("key", "secret", "acct", client=client, policy=FAST, tracker=ApiCallTracker())

        result = await broker.submit_sell("KO", 4, "agent-1")

        assert result.success is True
        assert result.executed_price == pytest.approx(49.9)
        assert result.executed_quantity == 4
        assert len(tokens) == 1
        assert tokens[0]["grant_type"] == "client_credentials"

    def test_rejection_reason(self):
        update = WebullBroker.extract_fill({"data": {"status": "REJECTED", "reject_reason": "PDT restriction"}})
        assert update.state == OrderState.REJECTED
        assert update.reason == "PDT restriction"

    def test_missing_credentials(self):
        with pytest.raises(ValueError):
            WebullBroker("key", "", "acct")


class TestAlpacaFill:
    def test_filled(self):
        order = SimpleNamespace(status=SimpleNamespace(value="filled"), filled_avg_price="101.5", filled_qty="3")
        update = extract_alpaca_fill(order)
        assert update.state == OrderState.FILLED
        assert update.filled_price == pytest.approx(101.5)
        assert update.filled_quantity == 3

    def test_expired_is_rejected(self):
        assert extract_alpaca_fill(SimpleNamespace(status="expired")).state == OrderState.REJECTED

    def test_accepted_keeps_polling(self):
        assert extract_alpaca_fill(SimpleNamespace(status="accepted")).state == OrderState.POLLING


def schwab_handler(order_payload):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth/token":
            assert request.headers["Authorization"].startswith("Basic ")
            return httpx.Response(200, json={"access_token": "sw", "expires_in": 1800, "refresh_token": "rt-2"})
        if path == "/marketdata/v1/quotes":
            return httpx.Response(200, json={"MSFT": {"quote": {"lastPrice": 400.0}}})
        if path == "/trader/v1/accounts/hash1/orders" and request.method == "POST":
            body = json.loads(request.content)
            assert body["orderLegCollection"][0]["instruction"] == "BUY"
            return httpx.Response(201, headers={"Location": "https://api.schwabapi.com/trader/v1/accounts/hash1/orders/777"})
        if path == "/trader/v1/accounts/hash1/orders/777":
            return httpx.Response(200, json=order_payload)
        return httpx.Response(404)

    return handler


class TestSchwab:
    @pytest.mark.asyncio
    async def test_order_id_from_location_header(self):
        payload = {
            "status": "FILLED",
            "filledQuantity": 2,
            "orderActivityCollection": [{"executionLegs": [{"price": 400.4}]}],
        }
        client = httpx.AsyncClient(transport=httpx.MockTransport(schwab_handler(payload)))

        broker = SchwabBroker("id", "secret", "hash1", "rt-1", client=client, policy=FAST, tracker=ApiCallTracker())
        result = await broker.submit_buy("MSFT", 2, "agent-1")

        assert result.success is True
        assert result.order_id == "777"
        assert result.executed_price == pytest.approx(400.4)
        assert broker.refresh_token == "rt-2"


class TestInteractiveBrokers:
    def test_extract_fill(self):

        filled = InteractiveBrokersBroker.extract_fill({"order_status": "Filled", "average_price": "99.5", "cum_fill": "3"})
        assert filled.state == OrderState.FILLED
        assert filled.filled_price == pytest.approx(99.5)
        inactive = InteractiveBrokersBroker.extract_fill({"order_status": "Inactive", "text": "Outside RTH"})
        assert inactive.state == OrderState.REJECTED
        assert inactive.reason == "Outside RTH"

    @pytest.mark.asyncio
    async def test_precautionary_reply_is_confirmed(self):

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/iserver/secdef/search"):
                return httpx.Response(200, json=[{"conid": 265598, "sections": [{"secType": "STK"}]}])
            if path.endswith("/iserver/account/DU1/orders"):
                return httpx.Response(200, json=[{"id": "reply-1", "message": ["Order size warning"]}])
            if path.endswith("/iserver/reply/reply-1"):
                return httpx.Response(200, json=[{"order_id": "ib-9"}])
            return httpx.Response(404)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        broker = InteractiveBrokersBroker("DU1", gateway_url="https://gw/v1/api", client=client,
                                          policy=FAST, tracker=ApiCallTracker())
        assert await broker._submit_order("buy", "AAPL", 5) == "ib-9"


class Unreachable:
    """TradingClient stand-in whose transport is down."""

    def get_clock(self):
        raise requests.exceptions.ConnectionError("connection refused")

    def cancel_orders(self):
        raise requests.exceptions.ConnectionError("connection refused")


class TestAlpacaNetworkErrors:
    def broker(self, tracker):
        return AlpacaBroker("key", "secret", trading_client=Unreachable(), data_client=Unreachable(),
                            tracker=tracker)

    @pytest.mark.asyncio
    async def test_market_clock_connection_error(self):
        tracker = ApiCallTracker()
        assert await self.broker(tracker).is_market_open() is False
        assert tracker.errors_today == 1

    @pytest.mark.asyncio
    async def test_cancel_all_connection_error(self):
        tracker = ApiCallTracker()
        error = await self.broker(tracker).cancel_all_orders()
        assert error == "Alpaca cancel failed: ConnectionError: connection refused"
        assert tracker.errors_today == 1


class TestTradierCancelAll:
    @pytest.mark.asyncio
    async def test_non_json_body_is_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        error = await tradier(handler).cancel_all_orders()
        assert error is not None
        assert "Invalid JSON" in error

    @pytest.mark.asyncio
    async def test_no_open_orders(self):
        deleted = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "DELETE":
                deleted.append(request)
            return httpx.Response(200, json={"orders": "null"})

        assert await tradier(handler).cancel_all_orders() is None
        assert deleted == []

    @pytest.mark.asyncio
    async def test_cancels_open_orders_only(self):
        deleted = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "DELETE":
                deleted.append(request.url.path)
                return httpx.Response(200, json={"order": {"status": "ok"}})
            return httpx.Response(
                200, json={"orders": {"order": [{"id": 1, "status": "open"}, {"id": 2, "status": "filled"}]}}
            )

        assert await tradier(handler).cancel_all_orders() is None
        assert deleted == ["/v1/accounts/VA000001/orders/1"]


class TestHttpBrokerHooks:
    def test_adapter_without_hooks_cannot_be_built(self):
        class HalfBuilt(HttpBroker):
            name = "Half"

            async def get_account(self):
                return None

            async def is_market_open(self):
                return True

            async def cancel_all_orders(self):
                return None

        with pytest.raises(TypeError):
            HalfBuilt(tracker=ApiCallTracker())

from __future__ import annotations

from typing import Any

import pytest

from perpdesk.services import okx_sdk_adapter
from perpdesk.services.okx_sdk_adapter import OkxAccountAdapter, OkxTradeAdapter


class _FakeAccountAPI:
    def __init__(self) -> None:
        self.raw_calls: list[dict[str, Any]] = []
        self.position_calls: list[dict[str, Any]] = []

    def _request_with_params(self, method: str, path: str, params: dict[str, Any]):
        self.raw_calls.append({"method": method, "path": path, "params": params})
        return {"data": []}

    def get_positions(self, **kwargs: Any):
        self.position_calls.append(kwargs)
        return {"data": []}


class _FakeTradeAPI:
    def __init__(self) -> None:
        self.raw_calls: list[dict[str, Any]] = []
        self.algo_orders: list[dict[str, Any]] = []
        self.cancelled_algos: list[list[dict[str, Any]]] = []
        self.pending_queries: list[dict[str, Any]] = []

    def _request_with_params(self, method: str, path: str, params: Any):
        self.raw_calls.append({"method": method, "path": path, "params": params})
        return {"data": []}

    def place_algo_order(self, **kwargs: Any):
        self.algo_orders.append(kwargs)
        return {"data": []}

    def cancel_algo_order(self, params):
        self.cancelled_algos.append(params)
        return {"data": []}

    def order_algo_pending(self, **kwargs: Any):
        self.pending_queries.append(kwargs)
        return {"data": []}


@pytest.fixture
def sdk_consts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(okx_sdk_adapter, "GET", "GET")
    monkeypatch.setattr(okx_sdk_adapter, "POST", "POST")
    monkeypatch.setattr(okx_sdk_adapter, "POSITION_INFO", "/api/v5/account/positions")
    monkeypatch.setattr(okx_sdk_adapter, "PLACE_ALGO_ORDER", "/api/v5/trade/order-algo")
    monkeypatch.setattr(okx_sdk_adapter, "CANCEL_ALGOS", "/api/v5/trade/cancel-algos")


def test_account_adapter_routes_sub_account_positions(sdk_consts: None) -> None:
    api = _FakeAccountAPI()
    adapter = OkxAccountAdapter(api, sub_account="alpha")

    adapter.get_positions(instType="SWAP")

    assert api.raw_calls, "Expected sub-account positions to use raw request method"
    assert api.raw_calls[0]["params"] == {"instType": "SWAP", "subAcct": "alpha"}
    assert not api.position_calls


def test_account_adapter_falls_back_without_sub_account() -> None:
    api = _FakeAccountAPI()
    adapter = OkxAccountAdapter(api)

    adapter.get_positions(instType="SWAP")

    assert api.position_calls == [{"instType": "SWAP", "instId": ""}]


def test_account_adapter_without_client_returns_empty() -> None:
    adapter = OkxAccountAdapter(None)

    assert adapter.available is False
    assert adapter.get_positions() == {"data": []}


def test_trade_adapter_place_algo_order_with_sub_account(sdk_consts: None) -> None:
    api = _FakeTradeAPI()
    adapter = OkxTradeAdapter(api, sub_account="beta")

    adapter.place_algo_order(
        instId="BTC-USDT-SWAP",
        tdMode="cross",
        side="sell",
        ordType="conditional",
        sz="1",
        tpTriggerPx="100",
        tpOrdPx="-1",
        posSide=None,
    )

    assert api.raw_calls, "Sub-account algo orders should use raw request"
    params = api.raw_calls[0]["params"]
    assert params["subAcct"] == "beta"
    assert "posSide" not in params


def test_trade_adapter_place_algo_order_without_sub_account() -> None:
    api = _FakeTradeAPI()
    adapter = OkxTradeAdapter(api)

    adapter.place_algo_order(
        instId="BTC-USDT-SWAP",
        tdMode="cross",
        side="sell",
        ordType="conditional",
        sz="1",
        slTriggerPx="95",
        slOrdPx="-1",
    )

    assert api.algo_orders[0]["slTriggerPx"] == "95"
    assert "subAcct" not in api.algo_orders[0]


def test_trade_adapter_cancel_algo_order_with_sub_account(sdk_consts: None) -> None:
    api = _FakeTradeAPI()
    adapter = OkxTradeAdapter(api, sub_account="beta")

    adapter.cancel_algo_order("BTC-USDT-SWAP", ["123", ""])

    params = api.raw_calls[0]["params"]
    assert params == [{"instId": "BTC-USDT-SWAP", "algoId": "123", "subAcct": "beta"}]


def test_trade_adapter_cancel_algo_order_without_sub_account() -> None:
    api = _FakeTradeAPI()
    adapter = OkxTradeAdapter(api)

    adapter.cancel_algo_order("BTC-USDT-SWAP", ["123"])

    assert api.cancelled_algos == [[{"instId": "BTC-USDT-SWAP", "algoId": "123"}]]


def test_trade_adapter_cancel_without_ids_skips_request() -> None:
    api = _FakeTradeAPI()
    adapter = OkxTradeAdapter(api)

    response = adapter.cancel_algo_order("BTC-USDT-SWAP", [])

    assert response == {"code": "0", "data": []}
    assert not api.cancelled_algos


def test_trade_adapter_lists_pending_algos_through_sdk_helper() -> None:
    api = _FakeTradeAPI()
    adapter = OkxTradeAdapter(api)

    adapter.list_pending_algo_orders(instId="BTC-USDT-SWAP")

    assert api.pending_queries == [{"ordType": "conditional", "instId": "BTC-USDT-SWAP"}]


def test_trade_adapter_lists_pending_algos_for_sub_account(sdk_consts: None) -> None:
    api = _FakeTradeAPI()
    adapter = OkxTradeAdapter(api, sub_account="beta")

    adapter.list_pending_algo_orders()

    call = api.raw_calls[0]
    assert call["path"] == okx_sdk_adapter.ORDERS_ALGO_PENDING_PATH
    assert call["params"] == {"ordType": "conditional", "subAcct": "beta"}


def test_trade_adapter_requires_client() -> None:
    adapter = OkxTradeAdapter(None)

    with pytest.raises(RuntimeError):
        adapter.place_algo_order(instId="BTC-USDT-SWAP")
